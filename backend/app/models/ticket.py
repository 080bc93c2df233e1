"""Ticket and event read model consumed by the refund core."""

from datetime import datetime
from typing import Optional
from enum import Enum
from pydantic import BaseModel, Field

from app.models.refund import RefundPaymentMethod


class TicketScanStatus(str, Enum):
    """Ticket usage state."""
    UNUSED = "unused"
    SCANNED = "scanned"
    EXPIRED = "expired"
    INVALIDATED = "invalidated"  # Voided by an event cancellation


class TicketPaymentStatus(str, Enum):
    """State of the purchase payment behind a ticket."""
    COMPLETED = "completed"
    PENDING = "pending"


class EventStatus(str, Enum):
    """Event lifecycle status."""
    DRAFT = "draft"
    PUBLISHED = "published"
    ONGOING = "ongoing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TicketType(BaseModel):
    """Ticket tier (e.g. VIP, Regular)."""
    id: str
    name: str
    price: float = Field(ge=0)


class Ticket(BaseModel):
    """A purchased ticket."""
    id: str
    ticket_number: str  # e.g. "TKT-001234"
    order_number: str   # Shared by tickets bought together, e.g. "ORD-789012"
    event_id: str
    event_title: str
    ticket_type: TicketType
    user_id: str
    user_name: str = "Ticket holder"
    user_email: Optional[str] = None
    user_phone: Optional[str] = None
    purchase_date: datetime = Field(default_factory=datetime.utcnow)
    scan_status: TicketScanStatus = TicketScanStatus.UNUSED
    scan_date: Optional[datetime] = None

    # Purchase payment
    payment_method: RefundPaymentMethod = RefundPaymentMethod.MTN_MOBILE_MONEY
    payment_reference: str = ""
    payment_status: TicketPaymentStatus = TicketPaymentStatus.COMPLETED
    currency: str = "UGX"

    is_transferred: bool = False

    class Config:
        populate_by_name = True

    @property
    def price(self) -> float:
        return self.ticket_type.price

    @property
    def is_used(self) -> bool:
        return self.scan_status == TicketScanStatus.SCANNED

    @property
    def is_sold(self) -> bool:
        """Paid tickets count as sold; pending purchases do not."""
        return self.payment_status == TicketPaymentStatus.COMPLETED


class Event(BaseModel):
    """An event tickets are sold for."""
    id: str
    title: str
    organizer_id: str
    start_date: datetime
    end_date: Optional[datetime] = None
    status: EventStatus = EventStatus.PUBLISHED

    class Config:
        populate_by_name = True
