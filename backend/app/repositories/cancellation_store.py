"""Event cancellation persistence. One cancellation per event, enforced on insert."""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import DESCENDING
from pymongo.errors import DuplicateKeyError

from app.core.exceptions import CancellationAlreadyExistsError
from app.models.cancellation import CancellationStatus, EventCancellation
from app.utils.helpers import format_document

logger = logging.getLogger(__name__)


class CancellationStore(ABC):
    """Storage interface for event cancellations."""

    @abstractmethod
    async def insert(self, cancellation: EventCancellation) -> EventCancellation:
        """
        Insert a new cancellation record.

        Raises:
            CancellationAlreadyExistsError: The event already has one
        """

    @abstractmethod
    async def save(self, cancellation: EventCancellation) -> None:
        pass

    @abstractmethod
    async def get(self, cancellation_id: str) -> Optional[EventCancellation]:
        pass

    @abstractmethod
    async def get_for_event(self, event_id: str) -> Optional[EventCancellation]:
        pass

    @abstractmethod
    async def find(
        self,
        organizer_id: Optional[str] = None,
        status: Optional[CancellationStatus] = None
    ) -> List[EventCancellation]:
        """Matching cancellations, newest first."""

    @abstractmethod
    async def delete(self, cancellation_id: str) -> None:
        pass


class InMemoryCancellationStore(CancellationStore):

    def __init__(self):
        self._cancellations: Dict[str, EventCancellation] = {}
        self._by_event: Dict[str, str] = {}  # event_id -> cancellation_id
        self._lock = asyncio.Lock()

    async def insert(self, cancellation: EventCancellation) -> EventCancellation:
        async with self._lock:
            if cancellation.event_id in self._by_event:
                raise CancellationAlreadyExistsError(cancellation.event_id)
            self._cancellations[cancellation.id] = cancellation.model_copy(deep=True)
            self._by_event[cancellation.event_id] = cancellation.id
        return cancellation

    async def save(self, cancellation: EventCancellation) -> None:
        async with self._lock:
            self._cancellations[cancellation.id] = cancellation.model_copy(deep=True)

    async def get(self, cancellation_id: str) -> Optional[EventCancellation]:
        cancellation = self._cancellations.get(cancellation_id)
        return cancellation.model_copy(deep=True) if cancellation else None

    async def get_for_event(self, event_id: str) -> Optional[EventCancellation]:
        cancellation_id = self._by_event.get(event_id)
        if cancellation_id is None:
            return None
        return await self.get(cancellation_id)

    async def find(
        self,
        organizer_id: Optional[str] = None,
        status: Optional[CancellationStatus] = None
    ) -> List[EventCancellation]:
        results = [
            c.model_copy(deep=True) for c in self._cancellations.values()
            if (organizer_id is None or c.organizer_id == organizer_id)
            and (status is None or c.status == status)
        ]
        results.sort(key=lambda c: c.created_at, reverse=True)
        return results

    async def delete(self, cancellation_id: str) -> None:
        async with self._lock:
            cancellation = self._cancellations.pop(cancellation_id, None)
            if cancellation is not None:
                self._by_event.pop(cancellation.event_id, None)


class MongoCancellationStore(CancellationStore):
    """MongoDB-backed store with a unique index on ``event_id``."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def ensure_indexes(self) -> None:
        await self.db.event_cancellations.create_index("id", unique=True)
        await self.db.event_cancellations.create_index("event_id", unique=True)
        await self.db.event_cancellations.create_index("organizer_id")
        logger.info("Cancellation store indexes ensured")

    @staticmethod
    def _document(cancellation: EventCancellation) -> dict:
        document = cancellation.model_dump(mode="json")
        document["created_at"] = cancellation.created_at
        return document

    @staticmethod
    def _to_cancellation(document: dict) -> EventCancellation:
        return EventCancellation(**format_document(document))

    async def insert(self, cancellation: EventCancellation) -> EventCancellation:
        try:
            await self.db.event_cancellations.insert_one(self._document(cancellation))
        except DuplicateKeyError:
            raise CancellationAlreadyExistsError(cancellation.event_id)
        return cancellation

    async def save(self, cancellation: EventCancellation) -> None:
        await self.db.event_cancellations.replace_one(
            {"id": cancellation.id},
            self._document(cancellation),
            upsert=True
        )

    async def get(self, cancellation_id: str) -> Optional[EventCancellation]:
        document = await self.db.event_cancellations.find_one({"id": cancellation_id})
        return self._to_cancellation(document) if document else None

    async def get_for_event(self, event_id: str) -> Optional[EventCancellation]:
        document = await self.db.event_cancellations.find_one({"event_id": event_id})
        return self._to_cancellation(document) if document else None

    async def find(
        self,
        organizer_id: Optional[str] = None,
        status: Optional[CancellationStatus] = None
    ) -> List[EventCancellation]:
        query = {}
        if organizer_id is not None:
            query["organizer_id"] = organizer_id
        if status is not None:
            query["status"] = status.value

        cursor = self.db.event_cancellations.find(query).sort("created_at", DESCENDING)
        documents = await cursor.to_list(length=None)
        return [self._to_cancellation(document) for document in documents]

    async def delete(self, cancellation_id: str) -> None:
        await self.db.event_cancellations.delete_one({"id": cancellation_id})
