"""
Ticket and event read model.

Ticket issuance lives elsewhere; the refund core only reads tickets and
events, plus the two writes an event cancellation needs: marking the event
cancelled and invalidating its tickets.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from app.models.ticket import Event, EventStatus, Ticket, TicketScanStatus
from app.utils.helpers import format_document

logger = logging.getLogger(__name__)


class TicketDirectory(ABC):

    @abstractmethod
    async def get_ticket(self, ticket_id: str) -> Optional[Ticket]:
        pass

    @abstractmethod
    async def get_event(self, event_id: str) -> Optional[Event]:
        pass

    @abstractmethod
    async def get_event_tickets(self, event_id: str) -> List[Ticket]:
        pass

    @abstractmethod
    async def mark_event_cancelled(self, event_id: str) -> None:
        pass

    @abstractmethod
    async def invalidate_tickets(self, event_id: str) -> int:
        """Invalidate every unused ticket of an event. Returns how many changed."""


class InMemoryTicketDirectory(TicketDirectory):

    def __init__(self):
        self._tickets: Dict[str, Ticket] = {}
        self._events: Dict[str, Event] = {}

    def add_event(self, event: Event) -> Event:
        self._events[event.id] = event.model_copy(deep=True)
        return event

    def add_ticket(self, ticket: Ticket) -> Ticket:
        self._tickets[ticket.id] = ticket.model_copy(deep=True)
        return ticket

    async def get_ticket(self, ticket_id: str) -> Optional[Ticket]:
        ticket = self._tickets.get(ticket_id)
        return ticket.model_copy(deep=True) if ticket else None

    async def get_event(self, event_id: str) -> Optional[Event]:
        event = self._events.get(event_id)
        return event.model_copy(deep=True) if event else None

    async def get_event_tickets(self, event_id: str) -> List[Ticket]:
        tickets = [t.model_copy(deep=True) for t in self._tickets.values() if t.event_id == event_id]
        tickets.sort(key=lambda t: t.purchase_date)
        return tickets

    async def mark_event_cancelled(self, event_id: str) -> None:
        event = self._events.get(event_id)
        if event is not None:
            event.status = EventStatus.CANCELLED

    async def invalidate_tickets(self, event_id: str) -> int:
        changed = 0
        for ticket in self._tickets.values():
            if ticket.event_id == event_id and ticket.scan_status == TicketScanStatus.UNUSED:
                ticket.scan_status = TicketScanStatus.INVALIDATED
                changed += 1
        return changed


class MongoTicketDirectory(TicketDirectory):
    """Reads the ``tickets`` and ``events`` collections owned by the ticketing service."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def get_ticket(self, ticket_id: str) -> Optional[Ticket]:
        document = await self.db.tickets.find_one({"id": ticket_id})
        return Ticket(**format_document(document)) if document else None

    async def get_event(self, event_id: str) -> Optional[Event]:
        document = await self.db.events.find_one({"id": event_id})
        return Event(**format_document(document)) if document else None

    async def get_event_tickets(self, event_id: str) -> List[Ticket]:
        cursor = self.db.tickets.find({"event_id": event_id}).sort("purchase_date", 1)
        documents = await cursor.to_list(length=None)
        return [Ticket(**format_document(document)) for document in documents]

    async def mark_event_cancelled(self, event_id: str) -> None:
        await self.db.events.update_one(
            {"id": event_id},
            {"$set": {"status": EventStatus.CANCELLED.value}}
        )

    async def invalidate_tickets(self, event_id: str) -> int:
        result = await self.db.tickets.update_many(
            {"event_id": event_id, "scan_status": TicketScanStatus.UNUSED.value},
            {"$set": {"scan_status": TicketScanStatus.INVALIDATED.value}}
        )
        logger.info(f"Invalidated {result.modified_count} tickets for event {event_id}")
        return result.modified_count
