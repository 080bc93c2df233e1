"""
Refund API routes.

Handles eligibility checks, submission, organizer review, settlement,
retries, refund policies and reporting.
"""

from datetime import datetime
from typing import Optional
from fastapi import APIRouter, Depends, Query, status

from app.api.deps import get_actor, get_refund_service, get_ticket_directory, load_event, load_ticket
from app.core.exceptions import PermissionDeniedError, RefundRequestNotFoundError
from app.models.refund import (
    RefundAnalytics,
    RefundEligibilityResult,
    RefundPolicy,
    RefundRequest,
    RefundStatus,
    RefundTransaction,
)
from app.repositories.ticket_directory import TicketDirectory
from app.schemas.refund import (
    ManualRefundRequest,
    RefundApproveRequest,
    RefundListResponse,
    RefundRejectRequest,
    RefundSubmitRequest,
    RefundTransactionListResponse,
    RescheduleRefundRequest,
)
from app.services.refund_service import RefundService

router = APIRouter()


async def _require_organizer(tickets: TicketDirectory, event_id: str, actor: str) -> None:
    event = await load_event(tickets, event_id)
    if event.organizer_id != actor:
        raise PermissionDeniedError("Only the event organizer can perform this action")


async def _load_for_organizer(
    refund_service: RefundService,
    tickets: TicketDirectory,
    request_id: str,
    actor: str
) -> RefundRequest:
    refund = await refund_service.get_refund_request(request_id)
    if refund is None:
        raise RefundRequestNotFoundError(request_id)
    await _require_organizer(tickets, refund.event_id, actor)
    return refund


async def _load_visible(refund_service: RefundService, request_id: str, actor: str) -> RefundRequest:
    """The requester and the event organizer can see a refund; it carries the holder's contact details."""
    refund = await refund_service.get_refund_request(request_id)
    if refund is None:
        raise RefundRequestNotFoundError(request_id)
    if actor not in (refund.user_id, refund.organizer_id):
        raise PermissionDeniedError("You do not have access to this refund request")
    return refund


@router.get("/eligibility/{ticket_id}", response_model=RefundEligibilityResult)
async def check_eligibility(
    ticket_id: str,
    refund_service: RefundService = Depends(get_refund_service),
    tickets: TicketDirectory = Depends(get_ticket_directory)
):
    """
    Check whether a ticket can be refunded right now.

    Ineligible tickets are not an error: the response carries the reason.
    """
    ticket = await load_ticket(tickets, ticket_id)
    event = await load_event(tickets, ticket.event_id)
    return await refund_service.check_eligibility(ticket, event)


@router.post("", response_model=RefundRequest, status_code=status.HTTP_201_CREATED)
async def submit_refund(
    request: RefundSubmitRequest,
    actor: str = Depends(get_actor),
    refund_service: RefundService = Depends(get_refund_service),
    tickets: TicketDirectory = Depends(get_ticket_directory)
):
    """
    Request a refund for a ticket.

    **Validations:**
    - Ticket must belong to the caller
    - Ticket must be unused and have no open or completed refund
    - The event's refund policy must allow it
    """
    ticket = await load_ticket(tickets, request.ticket_id)
    if ticket.user_id != actor:
        raise PermissionDeniedError("You can only request refunds for your own tickets")
    event = await load_event(tickets, ticket.event_id)

    return await refund_service.submit_refund(ticket, event, request.reason, request.note, requested_by=actor)


@router.post("/manual", response_model=RefundRequest, status_code=status.HTTP_201_CREATED)
async def issue_manual_refund(
    request: ManualRefundRequest,
    actor: str = Depends(get_actor),
    refund_service: RefundService = Depends(get_refund_service),
    tickets: TicketDirectory = Depends(get_ticket_directory)
):
    """Issue an organizer refund for a ticket (approved immediately, settled in the background)."""
    ticket = await load_ticket(tickets, request.ticket_id)
    event = await load_event(tickets, ticket.event_id)
    if event.organizer_id != actor:
        raise PermissionDeniedError("Only the event organizer can issue refunds")

    return await refund_service.issue_manual_refund(
        ticket,
        request.amount,
        request.reason,
        note=request.note,
        issued_by=actor,
        event=event
    )


@router.get("/mine", response_model=RefundListResponse)
async def get_my_refunds(
    actor: str = Depends(get_actor),
    refund_service: RefundService = Depends(get_refund_service)
):
    refunds = await refund_service.get_user_refund_requests(actor)
    return RefundListResponse(refunds=refunds, total=len(refunds))


@router.get("/analytics", response_model=RefundAnalytics)
async def get_refund_analytics(
    period_start: datetime,
    period_end: datetime,
    event_id: Optional[str] = Query(None),
    organizer_id: Optional[str] = Query(None),
    actor: str = Depends(get_actor),
    refund_service: RefundService = Depends(get_refund_service),
    tickets: TicketDirectory = Depends(get_ticket_directory)
):
    """Refund statistics for the caller's events, for requests made within the period."""
    if organizer_id is not None and organizer_id != actor:
        raise PermissionDeniedError("You can only view analytics for your own events")
    if event_id is not None:
        await _require_organizer(tickets, event_id, actor)
    return await refund_service.get_refund_analytics(period_start, period_end, event_id, actor)


@router.get("/events/{event_id}", response_model=RefundListResponse)
async def get_event_refunds(
    event_id: str,
    status_filter: Optional[RefundStatus] = Query(None, alias="status"),
    actor: str = Depends(get_actor),
    refund_service: RefundService = Depends(get_refund_service),
    tickets: TicketDirectory = Depends(get_ticket_directory)
):
    await _require_organizer(tickets, event_id, actor)
    refunds = await refund_service.get_event_refund_requests(event_id, status_filter)
    return RefundListResponse(refunds=refunds, total=len(refunds))


@router.get("/events/{event_id}/transactions", response_model=RefundTransactionListResponse)
async def get_event_transactions(
    event_id: str,
    actor: str = Depends(get_actor),
    refund_service: RefundService = Depends(get_refund_service),
    tickets: TicketDirectory = Depends(get_ticket_directory)
):
    await _require_organizer(tickets, event_id, actor)
    transactions = await refund_service.get_refund_transactions(event_id)
    return RefundTransactionListResponse(transactions=transactions, total=len(transactions))


@router.get("/events/{event_id}/policy", response_model=RefundPolicy)
async def get_refund_policy(
    event_id: str,
    ticket_type_id: Optional[str] = Query(None),
    refund_service: RefundService = Depends(get_refund_service)
):
    return await refund_service.get_refund_policy(event_id, ticket_type_id)


@router.put("/events/{event_id}/policy", response_model=RefundPolicy)
async def set_refund_policy(
    event_id: str,
    policy: RefundPolicy,
    actor: str = Depends(get_actor),
    refund_service: RefundService = Depends(get_refund_service),
    tickets: TicketDirectory = Depends(get_ticket_directory)
):
    await _require_organizer(tickets, event_id, actor)
    policy.event_id = event_id
    return await refund_service.set_refund_policy(policy)


@router.post("/events/{event_id}/reschedule", response_model=RefundPolicy)
async def open_reschedule_refunds(
    event_id: str,
    request: RescheduleRefundRequest,
    actor: str = Depends(get_actor),
    refund_service: RefundService = Depends(get_refund_service),
    tickets: TicketDirectory = Depends(get_ticket_directory)
):
    """Open full, fee-free refunds until the given deadline after an event is rescheduled."""
    await _require_organizer(tickets, event_id, actor)
    return await refund_service.mark_tickets_refundable_for_reschedule(event_id, request.deadline)


@router.get("/organizers/{organizer_id}", response_model=RefundListResponse)
async def get_organizer_refunds(
    organizer_id: str,
    status_filter: Optional[RefundStatus] = Query(None, alias="status"),
    actor: str = Depends(get_actor),
    refund_service: RefundService = Depends(get_refund_service)
):
    if organizer_id != actor:
        raise PermissionDeniedError("You can only view your own refund requests")
    refunds = await refund_service.get_organizer_refund_requests(organizer_id, status_filter)
    return RefundListResponse(refunds=refunds, total=len(refunds))


@router.get("/{request_id}", response_model=RefundRequest)
async def get_refund_request(
    request_id: str,
    actor: str = Depends(get_actor),
    refund_service: RefundService = Depends(get_refund_service)
):
    return await _load_visible(refund_service, request_id, actor)


@router.get("/{request_id}/transactions", response_model=RefundTransactionListResponse)
async def get_request_transactions(
    request_id: str,
    actor: str = Depends(get_actor),
    refund_service: RefundService = Depends(get_refund_service)
):
    """Every settlement attempt of a refund request, oldest first."""
    await _load_visible(refund_service, request_id, actor)
    transactions = await refund_service.get_request_transactions(request_id)
    return RefundTransactionListResponse(transactions=transactions, total=len(transactions))


@router.post("/{request_id}/cancel", response_model=RefundRequest)
async def cancel_refund_request(
    request_id: str,
    actor: str = Depends(get_actor),
    refund_service: RefundService = Depends(get_refund_service)
):
    """Withdraw a pending refund request."""
    return await refund_service.cancel_refund_request(request_id, actor)


@router.post("/{request_id}/approve", response_model=RefundRequest)
async def approve_refund(
    request_id: str,
    request: RefundApproveRequest,
    actor: str = Depends(get_actor),
    refund_service: RefundService = Depends(get_refund_service),
    tickets: TicketDirectory = Depends(get_ticket_directory)
):
    """Approve a pending request. Settlement starts in the background."""
    await _load_for_organizer(refund_service, tickets, request_id, actor)
    return await refund_service.approve_refund(request_id, actor, request.approved_amount, request.note)


@router.post("/{request_id}/reject", response_model=RefundRequest)
async def reject_refund(
    request_id: str,
    request: RefundRejectRequest,
    actor: str = Depends(get_actor),
    refund_service: RefundService = Depends(get_refund_service),
    tickets: TicketDirectory = Depends(get_ticket_directory)
):
    await _load_for_organizer(refund_service, tickets, request_id, actor)
    return await refund_service.reject_refund(request_id, actor, request.note)


@router.post("/{request_id}/process", response_model=RefundTransaction)
async def process_refund(
    request_id: str,
    actor: str = Depends(get_actor),
    refund_service: RefundService = Depends(get_refund_service),
    tickets: TicketDirectory = Depends(get_ticket_directory)
):
    """Settle an approved refund now. Provider failures come back as a failed transaction."""
    await _load_for_organizer(refund_service, tickets, request_id, actor)
    return await refund_service.process_refund(request_id, actor)


@router.post("/{request_id}/retry", response_model=RefundTransaction)
async def retry_refund(
    request_id: str,
    actor: str = Depends(get_actor),
    refund_service: RefundService = Depends(get_refund_service),
    tickets: TicketDirectory = Depends(get_ticket_directory)
):
    """Retry a failed settlement with a new transaction."""
    await _load_for_organizer(refund_service, tickets, request_id, actor)
    return await refund_service.retry_refund(request_id, actor)
