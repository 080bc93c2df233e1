"""Event cancellation models: impact snapshot, compensation plan, processing record."""

from datetime import datetime, timedelta
from typing import Dict, List, Optional
from enum import Enum
from pydantic import BaseModel, Field

from app.models.refund import RefundPaymentMethod
from app.utils.helpers import generate_id


class CancellationStatus(str, Enum):
    """Lifecycle of an event cancellation."""
    DRAFT = "draft"              # Started but not confirmed
    CONFIRMING = "confirming"    # Confirmed, waiting to be processed
    PROCESSING = "processing"
    COMPLETED = "completed"      # Compensated, possibly with recorded failures
    FAILED = "failed"            # Pipeline aborted, needs manual intervention

    @property
    def is_reversible(self) -> bool:
        return self in (CancellationStatus.DRAFT, CancellationStatus.CONFIRMING)


class CancellationReason(str, Enum):
    """Why an event is being cancelled."""
    ORGANIZER_DECISION = "organizer_decision"
    VENUE_ISSUE = "venue_issue"
    FORCE_MAJEURE = "force_majeure"
    REGULATION = "regulation"
    LOW_SALES = "low_sales"
    DUPLICATE = "duplicate"
    ADMIN_ACTION = "admin_action"

    @property
    def warrants_full_refund(self) -> bool:
        # Low sales still refunds in full; it only affects the organizer payout
        return True

    @property
    def is_admin_only(self) -> bool:
        return self == CancellationReason.ADMIN_ACTION


class CompensationType(str, Enum):
    """How attendees are compensated."""
    FULL_REFUND = "full_refund"
    PARTIAL_REFUND = "partial_refund"
    EVENT_CREDIT = "event_credit"


class ProcessingMethod(str, Enum):
    """Who settles the refunds."""
    AUTOMATIC = "automatic"  # System processes all refunds
    MANUAL = "manual"        # Organizer handles settlement
    HYBRID = "hybrid"        # System processes, exceptions handled manually


class PlatformFeeHandling(str, Enum):
    """Who absorbs the processing fee."""
    WAIVE = "waive"
    DEDUCT = "deduct"
    ORGANIZER = "organizer"


class ProcessingErrorType(str, Enum):
    REFUND_FAILED = "refund_failed"
    NOTIFICATION_FAILED = "notification_failed"
    TICKET_UPDATE_FAILED = "ticket_update_failed"
    PAYMENT_CANCELLATION_FAILED = "payment_cancellation_failed"
    UNKNOWN = "unknown"


# Per-ticket errors that retry_failed_refunds picks up again
RETRYABLE_ERROR_TYPES = (ProcessingErrorType.REFUND_FAILED, ProcessingErrorType.UNKNOWN)


class WarningSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class CancellationWarning(BaseModel):
    """Edge case the organizer should see before confirming."""
    code: str
    count: int
    title: str
    description: str
    severity: WarningSeverity = WarningSeverity.INFO


def _plural(count: int, noun: str) -> str:
    return f"{count} {noun}{'' if count == 1 else 's'}"


class TicketTypeImpact(BaseModel):
    ticket_type_id: str
    name: str
    tickets_sold: int = 0
    revenue: float = 0.0
    refund_amount: float = 0.0


class PaymentMethodImpact(BaseModel):
    payment_method: RefundPaymentMethod
    ticket_count: int = 0
    refund_amount: float = 0.0
    estimated_processing_time: str = ""


class CancellationImpact(BaseModel):
    """Snapshot of what cancelling an event affects. Never recomputed."""
    event_id: str
    calculated_at: datetime = Field(default_factory=datetime.utcnow)

    # Ticket statistics
    tickets_sold: int = 0
    attendees_count: int = 0  # Unique holders
    check_ins_completed: int = 0
    pending_payments: int = 0
    transferred_tickets: int = 0
    previously_refunded_tickets: int = 0

    # Financial impact
    gross_revenue: float = 0.0
    refund_total: float = 0.0
    platform_fees_retained: float = 0.0
    processing_fees_estimate: float = 0.0
    net_refund_amount: float = 0.0
    organizer_payout_adjustment: float = 0.0
    currency: str = "UGX"

    ticket_type_breakdown: List[TicketTypeImpact] = Field(default_factory=list)
    payment_method_breakdown: List[PaymentMethodImpact] = Field(default_factory=list)

    @property
    def warnings(self) -> List[CancellationWarning]:
        warnings = []
        if self.check_ins_completed > 0:
            warnings.append(CancellationWarning(
                code="checked_in",
                count=self.check_ins_completed,
                title=f"{_plural(self.check_ins_completed, 'Attendee')} Already Checked In",
                description="These attendees have already used their tickets. They will still receive refunds."
            ))
        if self.pending_payments > 0:
            warnings.append(CancellationWarning(
                code="pending_payments",
                count=self.pending_payments,
                title=_plural(self.pending_payments, "Pending Payment"),
                description="Payments still processing. These will be cancelled and not charged.",
                severity=WarningSeverity.WARNING
            ))
        if self.transferred_tickets > 0:
            warnings.append(CancellationWarning(
                code="transferred",
                count=self.transferred_tickets,
                title=_plural(self.transferred_tickets, "Transferred Ticket"),
                description="Tickets transferred to new owners. Refunds go to current ticket holders."
            ))
        if self.previously_refunded_tickets > 0:
            warnings.append(CancellationWarning(
                code="previously_refunded",
                count=self.previously_refunded_tickets,
                title=_plural(self.previously_refunded_tickets, "Previously Refunded Ticket"),
                description="These tickets were already refunded and will be skipped."
            ))
        return warnings


class NotificationTemplate(BaseModel):
    """Attendee notification template with ``{{placeholder}}`` fields."""
    subject: str
    body: str
    include_refund_details: bool = True
    include_timeline: bool = True
    include_support_contact: bool = True

    @classmethod
    def default_cancellation(cls) -> "NotificationTemplate":
        return cls(
            subject="Event Cancelled: {{event_name}}",
            body=(
                "We regret to inform you that {{event_name}} scheduled for {{event_date}} "
                "has been cancelled.\n"
                "\n"
                "{{#refund_details}}\n"
                "Refund Details:\n"
                "Amount: {{refund_amount}}\n"
                "Method: {{refund_method}}\n"
                "Timeline: {{refund_timeline}}\n"
                "{{/refund_details}}\n"
                "\n"
                "We apologize for any inconvenience. If you have questions, "
                "please contact our support team.\n"
                "\n"
                "- The EventPass Team"
            )
        )


class CompensationPlan(BaseModel):
    """How attendees of a cancelled event are compensated."""
    id: str = Field(default_factory=lambda: generate_id("cmp"))
    event_id: str

    compensation_type: CompensationType = CompensationType.FULL_REFUND
    refund_percentage: float = Field(default=1.0, ge=0, le=1)
    credit_multiplier: Optional[float] = Field(default=None, gt=0)  # e.g. 1.1 for a 110% credit

    processing_method: ProcessingMethod = ProcessingMethod.AUTOMATIC
    processing_deadline: datetime = Field(default_factory=lambda: datetime.utcnow() + timedelta(days=5))

    total_refund_amount: float = 0.0
    platform_fee_handling: PlatformFeeHandling = PlatformFeeHandling.WAIVE
    estimated_processing_fees: float = 0.0

    organizer_note: Optional[str] = None
    internal_note: Optional[str] = None

    notification_template: Optional[NotificationTemplate] = None

    class Config:
        populate_by_name = True

    def amount_for(self, price: float) -> float:
        """Compensation owed for a ticket bought at ``price``."""
        if self.compensation_type == CompensationType.FULL_REFUND:
            return price
        amount = price * self.refund_percentage
        if self.compensation_type == CompensationType.EVENT_CREDIT:
            amount *= self.credit_multiplier or 1.0
        return amount


class CancellationProcessingError(BaseModel):
    """Failure recorded while processing a cancellation."""
    id: str = Field(default_factory=lambda: generate_id("cpe"))
    ticket_id: Optional[str] = None
    refund_request_id: Optional[str] = None
    error_type: ProcessingErrorType
    message: str
    occurred_at: datetime = Field(default_factory=datetime.utcnow)
    resolved: bool = False
    resolved_at: Optional[datetime] = None
    resolution: Optional[str] = None

    def resolve(self, resolution: str, resolved_at: Optional[datetime] = None) -> None:
        self.resolved = True
        self.resolved_at = resolved_at or datetime.utcnow()
        self.resolution = resolution


class CancellationStatusChange(BaseModel):
    from_status: Optional[CancellationStatus] = None
    to_status: CancellationStatus
    changed_at: datetime = Field(default_factory=datetime.utcnow)
    changed_by: Optional[str] = None
    note: Optional[str] = None


class EventCancellation(BaseModel):
    """Complete record of an event cancellation."""
    id: str = Field(default_factory=lambda: generate_id("can"))
    event_id: str
    event_title: str
    event_date: Optional[datetime] = None
    organizer_id: str

    reason: CancellationReason
    reason_note: Optional[str] = None
    status: CancellationStatus = CancellationStatus.DRAFT

    impact: CancellationImpact
    compensation_plan: CompensationPlan

    # Timestamps
    created_at: datetime = Field(default_factory=datetime.utcnow)
    confirmed_at: Optional[datetime] = None
    processing_started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    # Audit
    initiated_by: str
    confirmed_by: Optional[str] = None
    confirmation_code: Optional[str] = None  # As typed by the organizer

    # Processing results
    refund_requests_created: int = 0
    refunds_processed: int = 0
    refunds_failed: int = 0
    refunds_skipped: int = 0  # Tickets that were already refunded
    notifications_sent: int = 0
    notifications_failed: int = 0

    processing_errors: List[CancellationProcessingError] = Field(default_factory=list)
    status_history: List[CancellationStatusChange] = Field(default_factory=list)

    class Config:
        populate_by_name = True

    def model_post_init(self, __context) -> None:
        if not self.status_history:
            self.status_history.append(CancellationStatusChange(
                to_status=self.status,
                changed_at=self.created_at,
                changed_by=self.initiated_by,
                note="Cancellation started"
            ))

    @property
    def is_reversible(self) -> bool:
        return self.status.is_reversible

    @property
    def fully_failed(self) -> bool:
        """Completed without a single successful refund."""
        return (
            self.status == CancellationStatus.COMPLETED
            and self.refunds_failed > 0
            and self.refunds_processed == 0
        )

    @property
    def unresolved_refund_errors(self) -> List[CancellationProcessingError]:
        return [
            error for error in self.processing_errors
            if error.error_type in RETRYABLE_ERROR_TYPES and error.ticket_id and not error.resolved
        ]

    def record_transition(
        self,
        to_status: CancellationStatus,
        changed_by: Optional[str] = None,
        note: Optional[str] = None,
        changed_at: Optional[datetime] = None
    ) -> None:
        self.status_history.append(CancellationStatusChange(
            from_status=self.status,
            to_status=to_status,
            changed_at=changed_at or datetime.utcnow(),
            changed_by=changed_by,
            note=note
        ))
        self.status = to_status


class ProcessingPhase(str, Enum):
    UPDATING_EVENT = "updating_event"
    INVALIDATING_TICKETS = "invalidating_tickets"
    PROCESSING_REFUNDS = "processing_refunds"
    SENDING_NOTIFICATIONS = "sending_notifications"
    FINALIZING = "finalizing"


class CancellationProgress(BaseModel):
    """Progress update published while a cancellation is processed."""
    cancellation_id: str
    phase: ProcessingPhase
    current_step: int
    total_steps: int
    message: str

    @property
    def progress(self) -> float:
        if self.total_steps <= 0:
            return 0.0
        return self.current_step / self.total_steps


class NotificationPreview(BaseModel):
    subject: str
    body: str
    recipient_count: int
    sample_recipients: List[str] = Field(default_factory=list)


class CancellationNotificationResult(BaseModel):
    sent: int = 0
    failed: int = 0
    errors: List[str] = Field(default_factory=list)


class CancellationAnalytics(BaseModel):
    """Cancellation reporting for an organizer over a period."""
    organizer_id: str
    period_start: datetime
    period_end: datetime

    total_cancellations: int = 0
    cancellations_by_reason: Dict[str, int] = Field(default_factory=dict)
    total_refunds_issued: float = 0.0
    average_processing_time_seconds: float = 0.0
    success_rate: float = 1.0
