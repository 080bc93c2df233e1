"""
Shared builders for refund and cancellation tests.
"""

from datetime import datetime, timedelta

import pytest

from app.models.refund import RefundPaymentMethod
from app.models.ticket import Event, EventStatus, Ticket, TicketType
from app.repositories.cancellation_store import InMemoryCancellationStore
from app.repositories.refund_store import InMemoryRefundStore
from app.repositories.ticket_directory import InMemoryTicketDirectory
from app.services.analytics import AnalyticsTracker
from app.services.cancellation_service import CancellationService
from app.services.event_bus import EventBus
from app.services.notification_service import NotificationService
from app.services.refund_service import RefundService
from app.services.settlement.simulation import SimulationSettlementGateway

NOW = datetime(2026, 3, 1, 12, 0, 0)

ORGANIZER_ID = "org_kampala_live"


class SteppingClock:
    """Clock that moves forward one second per reading."""

    def __init__(self, start: datetime = NOW):
        self.current = start

    def __call__(self) -> datetime:
        self.current += timedelta(seconds=1)
        return self.current


def make_event(event_id: str = "evt_jazz", hours_until_start: float = 100, **overrides) -> Event:
    data = {
        "id": event_id,
        "title": "Kampala Jazz Night",
        "organizer_id": ORGANIZER_ID,
        "start_date": NOW + timedelta(hours=hours_until_start),
        "status": EventStatus.PUBLISHED,
    }
    data.update(overrides)
    return Event(**data)


def make_ticket(
    number: int = 1,
    event_id: str = "evt_jazz",
    price: float = 100000,
    phone: str = "+256772123456",
    **overrides
) -> Ticket:
    data = {
        "id": f"tkt_{number:04d}",
        "ticket_number": f"TKT-{number:06d}",
        "order_number": f"ORD-{number:06d}",
        "event_id": event_id,
        "event_title": "Kampala Jazz Night",
        "ticket_type": TicketType(id="tt_regular", name="Regular", price=price),
        "user_id": f"usr_{number:04d}",
        "user_name": f"Holder {number}",
        "user_email": f"holder{number}@example.com",
        "user_phone": phone,
        "purchase_date": NOW - timedelta(days=10) + timedelta(minutes=number),
        "payment_method": RefundPaymentMethod.MTN_MOBILE_MONEY,
        "payment_reference": f"PAY-{number:06d}",
    }
    data.update(overrides)
    return Ticket(**data)


@pytest.fixture
def clock():
    return SteppingClock()


@pytest.fixture
def tickets():
    return InMemoryTicketDirectory()


@pytest.fixture
def refund_store():
    return InMemoryRefundStore()


@pytest.fixture
def gateway():
    return SimulationSettlementGateway(failure_rate=0.0, seed=7)


@pytest.fixture
def event_bus():
    return EventBus(maxsize=1000)


@pytest.fixture
def refund_service(refund_store, tickets, gateway, event_bus, clock):
    return RefundService(refund_store, tickets, gateway, event_bus, max_attempts=3, clock=clock)


@pytest.fixture
def analytics():
    return AnalyticsTracker()


@pytest.fixture
def notification_service():
    return NotificationService()


@pytest.fixture
def cancellation_service(tickets, refund_service, notification_service, analytics, event_bus, clock):
    return CancellationService(
        InMemoryCancellationStore(),
        tickets,
        refund_service,
        notification_service,
        analytics,
        event_bus,
        confirmation_phrase="CONFIRM",
        worker_pool_size=4,
        clock=clock
    )
