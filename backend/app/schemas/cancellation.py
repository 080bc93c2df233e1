"""Cancellation schemas for API request/response validation."""

from typing import Optional, List
from pydantic import BaseModel, Field

from app.models.cancellation import CancellationImpact, CancellationReason, CancellationWarning, EventCancellation


class CancellationCreateRequest(BaseModel):
    """Schema for starting an event cancellation."""
    event_id: str
    reason: CancellationReason
    note: Optional[str] = Field(None, max_length=1000)

    class Config:
        json_schema_extra = {
            "example": {
                "event_id": "evt_kampala_jazz",
                "reason": "venue_issue",
                "note": "Venue flooded"
            }
        }


class CancellationConfirmRequest(BaseModel):
    confirmation_code: str

    class Config:
        json_schema_extra = {
            "example": {
                "confirmation_code": "CONFIRM"
            }
        }


class ImpactResponse(BaseModel):
    impact: CancellationImpact
    warnings: List[CancellationWarning]


class CancellationListResponse(BaseModel):
    cancellations: List[EventCancellation]
    total: int
