"""Refund schemas for API request/response validation."""

from datetime import datetime
from typing import Optional, List
from pydantic import BaseModel, Field

from app.models.refund import RefundReason, RefundRequest, RefundTransaction


class RefundSubmitRequest(BaseModel):
    """Schema for a ticket holder's refund request."""
    ticket_id: str
    reason: RefundReason
    note: Optional[str] = Field(None, max_length=500)

    class Config:
        json_schema_extra = {
            "example": {
                "ticket_id": "tkt_8f2k1",
                "reason": "cannot_attend",
                "note": "Travelling that weekend"
            }
        }


class RefundApproveRequest(BaseModel):
    approved_amount: Optional[float] = Field(None, gt=0)
    note: Optional[str] = None


class RefundRejectRequest(BaseModel):
    note: str = Field(..., min_length=1, max_length=500)


class ManualRefundRequest(BaseModel):
    """Schema for an organizer-issued refund."""
    ticket_id: str
    amount: float = Field(..., gt=0)
    reason: RefundReason = RefundReason.ORGANIZER_DECISION
    note: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "ticket_id": "tkt_8f2k1",
                "amount": 50000,
                "reason": "organizer_decision",
                "note": "Goodwill refund for late gate opening"
            }
        }


class RescheduleRefundRequest(BaseModel):
    deadline: datetime


class RefundListResponse(BaseModel):
    refunds: List[RefundRequest]
    total: int


class RefundTransactionListResponse(BaseModel):
    transactions: List[RefundTransaction]
    total: int
