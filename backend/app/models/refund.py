"""Refund models: policies, requests with audit trail, settlement transactions."""

from datetime import datetime
from typing import Dict, List, Optional
from enum import Enum
from pydantic import BaseModel, Field

from app.utils.helpers import generate_id, round_money


class RefundStatus(str, Enum):
    """Refund status enumeration."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class RefundReason(str, Enum):
    """Why a refund is being requested."""
    EVENT_CANCELLED = "event_cancelled"
    EVENT_RESCHEDULED = "event_rescheduled"
    CANNOT_ATTEND = "cannot_attend"
    DUPLICATE_PURCHASE = "duplicate_purchase"
    ORGANIZER_DECISION = "organizer_decision"
    FRAUDULENT = "fraudulent"
    TICKET_DOWNGRADE = "ticket_downgrade"
    OTHER = "other"

    @property
    def is_auto_approved(self) -> bool:
        """Reasons that skip operator review."""
        return self in (
            RefundReason.EVENT_CANCELLED,
            RefundReason.DUPLICATE_PURCHASE,
            RefundReason.FRAUDULENT,
        )


USER_SELECTABLE_REASONS = [
    RefundReason.CANNOT_ATTEND,
    RefundReason.DUPLICATE_PURCHASE,
    RefundReason.EVENT_RESCHEDULED,
    RefundReason.OTHER,
]


class RefundPaymentMethod(str, Enum):
    """Payment rails a refund can be settled on."""
    MTN_MOBILE_MONEY = "mtn_mobile_money"
    AIRTEL_MONEY = "airtel_money"
    CARD = "card"
    BANK_TRANSFER = "bank_transfer"
    WALLET = "wallet"

    @property
    def is_mobile_money(self) -> bool:
        return self in (RefundPaymentMethod.MTN_MOBILE_MONEY, RefundPaymentMethod.AIRTEL_MONEY)


class RefundPolicy(BaseModel):
    """Refund rules for an event, optionally narrowed to one ticket type."""
    id: str = Field(default_factory=lambda: generate_id("pol"))
    event_id: str
    ticket_type_id: Optional[str] = None  # None = applies to all ticket types

    # Core policy settings
    is_refundable: bool = True
    refund_deadline_hours: int = Field(default=48, ge=0)  # Hours before event when refunds are cut off
    refund_percentage: float = Field(default=1.0, ge=0, le=1)
    processing_fee_percentage: float = Field(default=0.05, ge=0, le=1)

    # Time-based rules
    full_refund_deadline_hours: Optional[int] = 72
    partial_refund_deadline_hours: Optional[int] = 24
    partial_refund_percentage: Optional[float] = Field(default=0.5, ge=0, le=1)

    # Special conditions
    allow_rescheduled_event_refund: bool = True
    allow_transfer: bool = True
    requires_approval: bool = False
    max_refunds_per_user: Optional[int] = None

    policy_text: str = ""
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        populate_by_name = True
        json_schema_extra = {
            "example": {
                "event_id": "evt_123",
                "is_refundable": True,
                "refund_deadline_hours": 48,
                "refund_percentage": 1.0,
                "processing_fee_percentage": 0.05,
                "full_refund_deadline_hours": 72,
                "partial_refund_deadline_hours": 24,
                "partial_refund_percentage": 0.5
            }
        }

    @classmethod
    def default_policy(cls, event_id: str) -> "RefundPolicy":
        """Policy applied to events without a custom policy."""
        return cls(
            event_id=event_id,
            is_refundable=True,
            refund_deadline_hours=48,
            refund_percentage=1.0,
            processing_fee_percentage=0.05,
            full_refund_deadline_hours=72,
            partial_refund_deadline_hours=24,
            partial_refund_percentage=0.5,
            policy_text=(
                "Full refunds available up to 72 hours before the event. "
                "50% refund available 24-72 hours before. "
                "No refunds within 24 hours of the event."
            )
        )

    @classmethod
    def non_refundable(cls, event_id: str) -> "RefundPolicy":
        return cls(
            event_id=event_id,
            is_refundable=False,
            refund_deadline_hours=0,
            refund_percentage=0,
            processing_fee_percentage=0,
            full_refund_deadline_hours=None,
            partial_refund_deadline_hours=None,
            partial_refund_percentage=None,
            policy_text=(
                "This ticket is non-refundable. In case of event cancellation, "
                "a full refund will be processed automatically."
            )
        )


class RefundStatusChange(BaseModel):
    """One audit trail entry."""
    from_status: Optional[RefundStatus] = None
    to_status: RefundStatus
    changed_at: datetime = Field(default_factory=datetime.utcnow)
    changed_by: Optional[str] = None  # user_id or "system"
    note: Optional[str] = None


class RefundRequest(BaseModel):
    """A refund request for one ticket and its audit trail."""
    id: str = Field(default_factory=lambda: generate_id("rfr"))
    ticket_id: str
    ticket_number: str
    event_id: str
    event_title: str
    organizer_id: Optional[str] = None
    user_id: str
    user_name: str = "Ticket holder"
    user_email: Optional[str] = None
    user_phone: Optional[str] = None

    # Request details
    reason: RefundReason
    user_note: Optional[str] = None
    requested_amount: float = Field(gt=0)
    approved_amount: Optional[float] = None
    processing_fee_percentage: float = Field(default=0.0, ge=0, le=1)
    currency: str = "UGX"

    # Original payment info
    original_payment_method: RefundPaymentMethod
    original_payment_reference: str = ""
    original_purchase_date: Optional[datetime] = None

    # Status tracking
    status: RefundStatus = RefundStatus.PENDING
    requested_at: datetime = Field(default_factory=datetime.utcnow)
    requested_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    reviewed_by: Optional[str] = None
    reviewer_note: Optional[str] = None
    processed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None

    # Settlement attempts
    attempt_count: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=3, ge=1)

    # Audit trail
    status_history: List[RefundStatusChange] = Field(default_factory=list)

    class Config:
        populate_by_name = True

    def model_post_init(self, __context) -> None:
        if not self.status_history:
            self.status_history.append(RefundStatusChange(
                from_status=None,
                to_status=self.status,
                changed_at=self.requested_at,
                changed_by=self.requested_by or self.user_id,
                note="Refund request submitted"
            ))

    @property
    def settlement_amount(self) -> float:
        """Amount the settlement is computed from."""
        if self.approved_amount is not None:
            return self.approved_amount
        return self.requested_amount

    @property
    def retries_remaining(self) -> int:
        return max(0, self.max_attempts - self.attempt_count)

    @property
    def is_retryable(self) -> bool:
        return self.status == RefundStatus.FAILED and self.retries_remaining > 0

    @property
    def is_final(self) -> bool:
        """Final for ticket-level purposes; a retryable failure is not final."""
        if self.status in (RefundStatus.COMPLETED, RefundStatus.REJECTED):
            return True
        if self.status == RefundStatus.FAILED:
            return not self.is_retryable
        return False

    @property
    def is_active(self) -> bool:
        return not self.is_final

    def record_transition(
        self,
        to_status: RefundStatus,
        changed_by: Optional[str] = None,
        note: Optional[str] = None,
        changed_at: Optional[datetime] = None
    ) -> RefundStatusChange:
        """Move to ``to_status`` and append the audit entry."""
        change = RefundStatusChange(
            from_status=self.status,
            to_status=to_status,
            changed_at=changed_at or datetime.utcnow(),
            changed_by=changed_by,
            note=note
        )
        self.status = to_status
        self.status_history.append(change)
        return change


class RefundTransaction(BaseModel):
    """Financial record of one settlement attempt."""
    id: str = Field(default_factory=lambda: generate_id("rtx"))
    refund_request_id: str
    ticket_id: str
    event_id: str
    user_id: str
    organizer_id: Optional[str] = None
    attempt_number: int = Field(default=1, ge=1)

    # Financial details
    original_amount: float
    refund_amount: float
    processing_fee: float = 0.0
    net_refund: float = 0.0  # refund_amount - processing_fee
    currency: str = "UGX"

    # Payment details
    payment_method: RefundPaymentMethod
    payment_reference: str = ""
    transaction_reference: str = ""  # External payment provider reference

    status: RefundStatus = RefundStatus.PROCESSING
    reason: RefundReason

    # Timestamps
    initiated_at: datetime = Field(default_factory=datetime.utcnow)
    processed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None

    processed_by: Optional[str] = None
    notes: Optional[str] = None

    class Config:
        populate_by_name = True

    def model_post_init(self, __context) -> None:
        self.net_refund = round_money(self.refund_amount - self.processing_fee)

    @property
    def is_terminal(self) -> bool:
        return self.status in (RefundStatus.COMPLETED, RefundStatus.FAILED)


class RefundEligibilityResult(BaseModel):
    """Result of checking refund eligibility."""
    is_eligible: bool
    reason: str
    refundable_amount: float = 0.0
    refund_percentage: float = 0.0
    processing_fee: float = 0.0
    net_refund: float = 0.0
    deadline: Optional[datetime] = None
    policy: Optional[RefundPolicy] = None

    @classmethod
    def eligible(
        cls,
        amount: float,
        percentage: float,
        fee: float,
        deadline: Optional[datetime],
        policy: RefundPolicy
    ) -> "RefundEligibilityResult":
        return cls(
            is_eligible=True,
            reason="Eligible for refund",
            refundable_amount=round_money(amount),
            refund_percentage=percentage,
            processing_fee=round_money(fee),
            net_refund=round_money(amount - fee),
            deadline=deadline,
            policy=policy
        )

    @classmethod
    def not_eligible(cls, reason: str) -> "RefundEligibilityResult":
        return cls(is_eligible=False, reason=reason)

    @property
    def fee_percentage(self) -> float:
        if self.refundable_amount <= 0:
            return 0.0
        return self.processing_fee / self.refundable_amount


class RefundAnalytics(BaseModel):
    """Refund reporting over a period."""
    event_id: Optional[str] = None
    organizer_id: Optional[str] = None
    period_start: datetime
    period_end: datetime

    total_requests: int = 0
    pending_requests: int = 0
    approved_requests: int = 0
    rejected_requests: int = 0
    completed_refunds: int = 0
    failed_refunds: int = 0

    total_amount_requested: float = 0.0
    total_amount_refunded: float = 0.0
    total_processing_fees: float = 0.0

    average_processing_time_hours: float = 0.0
    refund_rate: float = 0.0  # Refunded tickets / tickets sold

    top_reasons: Dict[str, int] = Field(default_factory=dict)
