"""
Event cancellation API routes.

Handles the impact preview, the draft/confirm/process flow, retries of
failed refunds, attendee notices and reporting.
"""

from datetime import datetime
from fastapi import APIRouter, Depends, Response, status

from app.api.deps import get_actor, get_actor_role, get_cancellation_service, get_ticket_directory, load_event
from app.core.exceptions import CancellationNotFoundError, PermissionDeniedError
from app.models.cancellation import (
    CancellationAnalytics,
    CancellationNotificationResult,
    CompensationPlan,
    EventCancellation,
    NotificationPreview,
)
from app.repositories.ticket_directory import TicketDirectory
from app.schemas.cancellation import (
    CancellationConfirmRequest,
    CancellationCreateRequest,
    CancellationListResponse,
    ImpactResponse,
)
from app.services.cancellation_service import CancellationService

router = APIRouter()

ADMIN_ROLE = "admin"


async def _load_owned(
    cancellation_service: CancellationService,
    cancellation_id: str,
    actor: str,
    role: str
) -> EventCancellation:
    cancellation = await cancellation_service.get_cancellation(cancellation_id)
    if cancellation is None:
        raise CancellationNotFoundError(cancellation_id)
    if cancellation.organizer_id != actor and role != ADMIN_ROLE:
        raise PermissionDeniedError("Only the event organizer can manage this cancellation")
    return cancellation


@router.get("/impact/{event_id}", response_model=ImpactResponse)
async def get_cancellation_impact(
    event_id: str,
    actor: str = Depends(get_actor),
    role: str = Depends(get_actor_role),
    cancellation_service: CancellationService = Depends(get_cancellation_service),
    tickets: TicketDirectory = Depends(get_ticket_directory)
):
    """
    Preview what cancelling an event affects.

    **Returns:**
    - Tickets sold, attendees, check-ins
    - Revenue and refund totals
    - Warnings to review before confirming
    """
    event = await load_event(tickets, event_id)
    if event.organizer_id != actor and role != ADMIN_ROLE:
        raise PermissionDeniedError("Only the event organizer can cancel this event")

    impact = await cancellation_service.calculate_impact(event)
    return ImpactResponse(impact=impact, warnings=impact.warnings)


@router.post("", response_model=EventCancellation, status_code=status.HTTP_201_CREATED)
async def create_cancellation(
    request: CancellationCreateRequest,
    actor: str = Depends(get_actor),
    role: str = Depends(get_actor_role),
    cancellation_service: CancellationService = Depends(get_cancellation_service),
    tickets: TicketDirectory = Depends(get_ticket_directory)
):
    """Start cancelling an event. Nothing happens to tickets until the draft is confirmed and processed."""
    event = await load_event(tickets, request.event_id)
    if event.organizer_id != actor and role != ADMIN_ROLE:
        raise PermissionDeniedError("Only the event organizer can cancel this event")

    return await cancellation_service.create_cancellation(
        event,
        request.reason,
        request.note,
        initiated_by=actor,
        is_admin=role == ADMIN_ROLE
    )


@router.get("/events/{event_id}", response_model=EventCancellation)
async def get_event_cancellation(
    event_id: str,
    cancellation_service: CancellationService = Depends(get_cancellation_service)
):
    cancellation = await cancellation_service.get_cancellation_for_event(event_id)
    if cancellation is None:
        raise CancellationNotFoundError(f"event {event_id}")
    return cancellation


@router.get("/mine", response_model=CancellationListResponse)
async def get_my_cancellations(
    actor: str = Depends(get_actor),
    cancellation_service: CancellationService = Depends(get_cancellation_service)
):
    cancellations = await cancellation_service.get_organizer_cancellations(actor)
    return CancellationListResponse(cancellations=cancellations, total=len(cancellations))


@router.get("/analytics", response_model=CancellationAnalytics)
async def get_cancellation_analytics(
    period_start: datetime,
    period_end: datetime,
    actor: str = Depends(get_actor),
    cancellation_service: CancellationService = Depends(get_cancellation_service)
):
    return await cancellation_service.get_cancellation_analytics(actor, period_start, period_end)


@router.get("/{cancellation_id}", response_model=EventCancellation)
async def get_cancellation(
    cancellation_id: str,
    actor: str = Depends(get_actor),
    role: str = Depends(get_actor_role),
    cancellation_service: CancellationService = Depends(get_cancellation_service)
):
    return await _load_owned(cancellation_service, cancellation_id, actor, role)


@router.put("/{cancellation_id}/plan", response_model=EventCancellation)
async def update_compensation_plan(
    cancellation_id: str,
    plan: CompensationPlan,
    actor: str = Depends(get_actor),
    role: str = Depends(get_actor_role),
    cancellation_service: CancellationService = Depends(get_cancellation_service)
):
    """Replace the compensation plan while the cancellation is still a draft."""
    await _load_owned(cancellation_service, cancellation_id, actor, role)
    return await cancellation_service.update_compensation_plan(cancellation_id, plan)


@router.post("/{cancellation_id}/confirm", response_model=EventCancellation)
async def confirm_cancellation(
    cancellation_id: str,
    request: CancellationConfirmRequest,
    actor: str = Depends(get_actor),
    role: str = Depends(get_actor_role),
    cancellation_service: CancellationService = Depends(get_cancellation_service)
):
    """Confirm the cancellation by typing the confirmation phrase."""
    await _load_owned(cancellation_service, cancellation_id, actor, role)
    return await cancellation_service.confirm_cancellation(cancellation_id, request.confirmation_code, actor)


@router.delete("/{cancellation_id}", status_code=status.HTTP_204_NO_CONTENT)
async def cancel_draft(
    cancellation_id: str,
    actor: str = Depends(get_actor),
    role: str = Depends(get_actor_role),
    cancellation_service: CancellationService = Depends(get_cancellation_service)
):
    """Discard a cancellation that has not started processing."""
    await _load_owned(cancellation_service, cancellation_id, actor, role)
    await cancellation_service.cancel_draft(cancellation_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{cancellation_id}/process", response_model=EventCancellation)
async def process_cancellation(
    cancellation_id: str,
    actor: str = Depends(get_actor),
    role: str = Depends(get_actor_role),
    cancellation_service: CancellationService = Depends(get_cancellation_service)
):
    """
    Run the cancellation: cancel the event, void its tickets, refund every
    ticket holder and notify them.

    Individual refund failures do not fail the request; they are listed in
    ``processing_errors`` and can be retried.
    """
    await _load_owned(cancellation_service, cancellation_id, actor, role)
    return await cancellation_service.process_cancellation(cancellation_id)


@router.post("/{cancellation_id}/retry", response_model=EventCancellation)
async def retry_failed_refunds(
    cancellation_id: str,
    actor: str = Depends(get_actor),
    role: str = Depends(get_actor_role),
    cancellation_service: CancellationService = Depends(get_cancellation_service)
):
    await _load_owned(cancellation_service, cancellation_id, actor, role)
    return await cancellation_service.retry_failed_refunds(cancellation_id)


@router.get("/{cancellation_id}/notification-preview", response_model=NotificationPreview)
async def preview_notification(
    cancellation_id: str,
    actor: str = Depends(get_actor),
    role: str = Depends(get_actor_role),
    cancellation_service: CancellationService = Depends(get_cancellation_service)
):
    cancellation = await _load_owned(cancellation_service, cancellation_id, actor, role)
    return await cancellation_service.preview_notification(cancellation)


@router.post("/{cancellation_id}/notifications", response_model=CancellationNotificationResult)
async def send_notifications(
    cancellation_id: str,
    actor: str = Depends(get_actor),
    role: str = Depends(get_actor_role),
    cancellation_service: CancellationService = Depends(get_cancellation_service)
):
    """Resend the cancellation notice to every ticket holder."""
    await _load_owned(cancellation_service, cancellation_id, actor, role)
    return await cancellation_service.send_notifications(cancellation_id)
