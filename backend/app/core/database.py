import logging
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from app.core.config import Settings

logger = logging.getLogger(__name__)


class MongoConnection:
    """Owns the Motor client for one application instance."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self._client: Optional[AsyncIOMotorClient] = None
        self._database: Optional[AsyncIOMotorDatabase] = None

    async def connect(self) -> AsyncIOMotorDatabase:
        """Connect to MongoDB."""
        self._client = AsyncIOMotorClient(self.settings.MONGODB_URI)
        self._database = self._client[self.settings.MONGODB_DB_NAME]
        logger.info(f"Connected to MongoDB: {self.settings.MONGODB_DB_NAME}")
        return self._database

    async def close(self):
        """Close MongoDB connection."""
        if self._client:
            self._client.close()
            self._client = None
            self._database = None
            logger.info("Closed MongoDB connection")

    @property
    def database(self) -> AsyncIOMotorDatabase:
        """Get MongoDB database instance."""
        if self._database is None:
            raise RuntimeError("MongoDB connection is not open")
        return self._database
