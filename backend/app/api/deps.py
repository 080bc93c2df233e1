from typing import Optional
from fastapi import Depends, Header, HTTPException, Request, status

from app.core.container import ServiceContainer
from app.core.exceptions import EventNotFoundError, TicketNotFoundError
from app.models.ticket import Event, Ticket
from app.repositories.ticket_directory import TicketDirectory
from app.services.cancellation_service import CancellationService
from app.services.refund_service import RefundService


def get_container(request: Request) -> ServiceContainer:
    """Dependency to get the application's service container."""
    return request.app.state.container


def get_refund_service(container: ServiceContainer = Depends(get_container)) -> RefundService:
    return container.refund_service


def get_cancellation_service(container: ServiceContainer = Depends(get_container)) -> CancellationService:
    return container.cancellation_service


def get_ticket_directory(container: ServiceContainer = Depends(get_container)) -> TicketDirectory:
    return container.tickets


async def get_actor(x_actor_id: Optional[str] = Header(None)) -> str:
    """
    Dependency to get the acting user.

    Authentication happens upstream; the gateway forwards the user id.

    Raises:
        HTTPException: If the header is missing
    """
    if not x_actor_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Actor-Id header"
        )
    return x_actor_id


async def load_ticket(tickets: TicketDirectory, ticket_id: str) -> Ticket:
    ticket = await tickets.get_ticket(ticket_id)
    if ticket is None:
        raise TicketNotFoundError(ticket_id)
    return ticket


async def load_event(tickets: TicketDirectory, event_id: str) -> Event:
    event = await tickets.get_event(event_id)
    if event is None:
        raise EventNotFoundError(event_id)
    return event


async def get_actor_role(x_actor_role: Optional[str] = Header(None)) -> str:
    """Role forwarded by the gateway alongside the actor id."""
    return (x_actor_role or "user").lower()
