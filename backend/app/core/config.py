from typing import List
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Storage
    STORAGE_BACKEND: str = "memory"  # memory | mongo
    MONGODB_URI: str = "mongodb://localhost:27017"
    MONGODB_DB_NAME: str = "eventpass_refunds"

    # Money
    DEFAULT_CURRENCY: str = "UGX"

    # Refund processing
    REFUND_MAX_ATTEMPTS: int = 3  # First attempt plus retries

    # Cancellation processing
    CANCELLATION_CONFIRMATION_PHRASE: str = "CONFIRM"
    CANCELLATION_WORKER_POOL_SIZE: int = 8
    CANCELLATION_PROCESSING_FEE_ESTIMATE: float = 0.01  # Share of refund total used for impact estimates
    CANCELLATION_DEDUCTED_FEE_PERCENTAGE: float = 0.05  # Applied when the plan deducts fees
    COMPENSATION_DEADLINE_DAYS: int = 5

    # Event streams
    EVENT_BUS_QUEUE_SIZE: int = 100
    EVENT_BUS_OVERFLOW: str = "drop_oldest"  # drop_oldest | block

    # Application Settings
    BACKEND_CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://localhost:8000"]
    API_V1_PREFIX: str = "/api"
    PROJECT_NAME: str = "EventPass Refunds"

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore"
    )


# Global settings instance
settings = Settings()
