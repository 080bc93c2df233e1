"""
Refund service - refund request lifecycle and settlement.

Handles eligibility, submission, review, settlement through the payment
gateway, retries after provider failures, and recovery of settlements
interrupted by a crash. Every mutation of a request happens under that
request's lock and appends exactly one audit entry.
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set, Tuple

from app.core.exceptions import (
    ActiveRefundExistsError,
    AlreadyProcessedError,
    EventNotFoundError,
    InvalidAmountError,
    InvalidTransitionError,
    MaxRefundsExceededError,
    NotEligibleError,
    PermissionDeniedError,
    ReasonNotSelectableError,
    RefundRequestNotFoundError,
    RetriesExhaustedError,
    TicketAlreadyRefundedError,
    TicketAlreadyUsedError,
    ValidationError,
)
from app.models.refund import (
    USER_SELECTABLE_REASONS,
    RefundAnalytics,
    RefundEligibilityResult,
    RefundPaymentMethod,
    RefundPolicy,
    RefundReason,
    RefundRequest,
    RefundStatus,
    RefundStatusChange,
    RefundTransaction,
)
from app.models.ticket import Event, EventStatus, Ticket
from app.repositories.refund_store import RefundStore
from app.repositories.ticket_directory import TicketDirectory
from app.services.event_bus import EventBus
from app.services.refund_policy import RefundPolicyEvaluator
from app.services.settlement.base import SettlementGateway, SettlementResult
from app.utils.helpers import round_money
from app.utils.locks import KeyedLock

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


class RefundService:
    """Refund request state machine."""

    # Valid status transitions
    STATUS_TRANSITIONS = {
        RefundStatus.PENDING: [RefundStatus.APPROVED, RefundStatus.REJECTED],
        RefundStatus.APPROVED: [RefundStatus.PROCESSING],
        RefundStatus.PROCESSING: [RefundStatus.COMPLETED, RefundStatus.FAILED],
        RefundStatus.FAILED: [RefundStatus.PROCESSING],  # Retry
        RefundStatus.COMPLETED: [],  # Final state
        RefundStatus.REJECTED: []    # Final state
    }

    def __init__(
        self,
        store: RefundStore,
        tickets: TicketDirectory,
        gateway: SettlementGateway,
        event_bus: EventBus,
        evaluator: Optional[RefundPolicyEvaluator] = None,
        max_attempts: int = 3,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.store = store
        self.tickets = tickets
        self.gateway = gateway
        self.event_bus = event_bus
        self.clock = clock or datetime.utcnow
        self.evaluator = evaluator or RefundPolicyEvaluator(clock=self.clock)
        self.max_attempts = max_attempts
        self._locks = KeyedLock()
        self._background: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    @classmethod
    def validate_status_transition(
        cls,
        current_status: RefundStatus,
        new_status: RefundStatus
    ) -> Tuple[bool, Optional[str]]:
        """
        Validate if status transition is allowed.
        Returns (is_valid, error_message)
        """
        valid_next_statuses = cls.STATUS_TRANSITIONS.get(current_status, [])
        if new_status in valid_next_statuses:
            return True, None
        return False, str(InvalidTransitionError(current_status, new_status, valid_next_statuses))

    def _check_transition(self, request: RefundRequest, new_status: RefundStatus) -> None:
        allowed = self.STATUS_TRANSITIONS.get(request.status, [])
        if new_status not in allowed:
            raise InvalidTransitionError(request.status, new_status, allowed)

    def _transition(
        self,
        request: RefundRequest,
        new_status: RefundStatus,
        changed_by: Optional[str],
        note: Optional[str] = None
    ) -> None:
        self._check_transition(request, new_status)
        old_status = request.status
        request.record_transition(new_status, changed_by=changed_by, note=note, changed_at=self.clock())
        logger.info(f"Refund {request.id}: {old_status.value} -> {new_status.value} by {changed_by}")

    async def _load(self, request_id: str) -> RefundRequest:
        request = await self.store.get_request(request_id)
        if request is None:
            raise RefundRequestNotFoundError(request_id)
        return request

    async def _publish(self, request: RefundRequest) -> None:
        await self.event_bus.refund_status_changed.publish(request.model_copy(deep=True))

    # ------------------------------------------------------------------
    # Policies and eligibility
    # ------------------------------------------------------------------

    async def get_refund_policy(self, event_id: str, ticket_type_id: Optional[str] = None) -> RefundPolicy:
        """Ticket-type policy, then event policy, then the default policy."""
        if ticket_type_id:
            policy = await self.store.get_policy(event_id, ticket_type_id)
            if policy:
                return policy
        policy = await self.store.get_policy(event_id, None)
        return policy or RefundPolicy.default_policy(event_id)

    async def set_refund_policy(self, policy: RefundPolicy) -> RefundPolicy:
        policy.updated_at = self.clock()
        await self.store.save_policy(policy)
        logger.info(f"Refund policy set for event {policy.event_id} (ticket type {policy.ticket_type_id or 'all'})")
        return policy

    async def check_eligibility(self, ticket: Ticket, event: Event) -> RefundEligibilityResult:
        """Evaluate eligibility against the ticket's current refund history."""
        existing = await self.store.find_requests(ticket_id=ticket.id)
        policy = await self.get_refund_policy(event.id, ticket.ticket_type.id)
        return self.evaluator.evaluate(
            ticket,
            event,
            policy,
            has_active_request=any(r.is_active for r in existing),
            has_completed_refund=any(r.status == RefundStatus.COMPLETED for r in existing),
            now=self.clock()
        )

    async def mark_tickets_refundable_for_reschedule(self, event_id: str, deadline: datetime) -> RefundPolicy:
        """
        Open full, fee-free refunds for a rescheduled event until ``deadline``.

        Args:
            event_id: Rescheduled event
            deadline: Last moment a refund can be requested

        Returns:
            The event-wide policy now in force
        """
        event = await self.tickets.get_event(event_id)
        if event is None:
            raise EventNotFoundError(event_id)

        current = await self.store.get_policy(event_id, None)
        hours_before_event = int((event.start_date - deadline).total_seconds() // 3600)

        policy = RefundPolicy(
            event_id=event_id,
            is_refundable=True,
            refund_deadline_hours=max(0, hours_before_event),
            refund_percentage=1.0,
            processing_fee_percentage=0.0,
            full_refund_deadline_hours=None,
            partial_refund_deadline_hours=None,
            partial_refund_percentage=None,
            allow_rescheduled_event_refund=True,
            policy_text=(
                "Full refunds available due to event reschedule. "
                f"Deadline: {deadline.strftime('%Y-%m-%d %H:%M')} UTC"
            )
        )
        if current:
            policy.id = current.id
            policy.created_at = current.created_at

        return await self.set_refund_policy(policy)

    # ------------------------------------------------------------------
    # Submission and review
    # ------------------------------------------------------------------

    async def submit_refund(
        self,
        ticket: Ticket,
        event: Event,
        reason: RefundReason,
        note: Optional[str] = None,
        requested_by: Optional[str] = None
    ) -> RefundRequest:
        """
        Submit a refund request for a ticket.

        Auto-approved reasons (event cancelled, duplicate purchase, fraud)
        skip review and are queued for settlement right away.

        Args:
            ticket: Ticket to refund
            event: Event the ticket belongs to
            reason: Refund reason
            note: Optional note from the requester
            requested_by: Acting user, defaults to the ticket holder

        Returns:
            The created refund request

        Raises:
            TicketAlreadyUsedError: Ticket was scanned
            ActiveRefundExistsError: Ticket already has an open request
            TicketAlreadyRefundedError: Ticket was already refunded
            NotEligibleError: Policy does not allow a refund
            MaxRefundsExceededError: Per-user refund limit reached
            ReasonNotSelectableError: Holder picked an operator-only reason
        """
        if requested_by in (None, ticket.user_id) and reason not in USER_SELECTABLE_REASONS:
            raise ReasonNotSelectableError(reason)

        eligibility = await self.check_eligibility(ticket, event)
        if not eligibility.is_eligible:
            if ticket.is_used:
                raise TicketAlreadyUsedError()
            existing = await self.store.find_requests(ticket_id=ticket.id)
            active = next((r for r in existing if r.is_active), None)
            if active:
                raise ActiveRefundExistsError(ticket.id, active.id)
            if any(r.status == RefundStatus.COMPLETED for r in existing):
                raise TicketAlreadyRefundedError(ticket.id)
            raise NotEligibleError(eligibility.reason)

        if eligibility.refundable_amount <= 0:
            raise InvalidAmountError("There is nothing to refund for this ticket")

        policy = eligibility.policy
        if policy and policy.max_refunds_per_user is not None:
            user_requests = await self.store.find_requests(user_id=ticket.user_id, event_id=event.id)
            counted = [r for r in user_requests if r.status != RefundStatus.REJECTED]
            if len(counted) >= policy.max_refunds_per_user:
                raise MaxRefundsExceededError(policy.max_refunds_per_user)

        now = self.clock()
        requested_by = requested_by or ticket.user_id
        fee_percentage = 0.0 if event.status == EventStatus.CANCELLED else policy.processing_fee_percentage
        status = RefundStatus.APPROVED if reason.is_auto_approved else RefundStatus.PENDING
        creation_note = f"Auto-approved: {reason.value}" if reason.is_auto_approved else "Refund request submitted"

        request = RefundRequest(
            ticket_id=ticket.id,
            ticket_number=ticket.ticket_number,
            event_id=event.id,
            event_title=event.title,
            organizer_id=event.organizer_id,
            user_id=ticket.user_id,
            user_name=ticket.user_name,
            user_email=ticket.user_email,
            user_phone=ticket.user_phone,
            reason=reason,
            user_note=note,
            requested_amount=eligibility.refundable_amount,
            processing_fee_percentage=fee_percentage,
            currency=ticket.currency,
            original_payment_method=ticket.payment_method,
            original_payment_reference=ticket.payment_reference or f"PAY-{ticket.order_number}",
            original_purchase_date=ticket.purchase_date,
            status=status,
            requested_at=now,
            requested_by=requested_by,
            max_attempts=self.max_attempts,
            status_history=[RefundStatusChange(
                from_status=None,
                to_status=status,
                changed_at=now,
                changed_by=requested_by,
                note=creation_note
            )]
        )

        await self.store.insert_request(request)
        logger.info(
            f"Refund request {request.id} submitted for ticket {ticket.ticket_number}: "
            f"{request.requested_amount} {request.currency} ({status.value})"
        )
        await self._publish(request)

        if status == RefundStatus.APPROVED:
            self._schedule_processing(request.id)

        return request

    async def cancel_refund_request(self, request_id: str, cancelled_by: str) -> RefundRequest:
        """Withdraw a pending request. Only the requester may do this."""
        async with self._locks.acquire(request_id):
            request = await self._load(request_id)
            if cancelled_by != request.user_id:
                raise PermissionDeniedError("Only the requester can cancel this refund request")
            self._check_transition(request, RefundStatus.REJECTED)

            request.reviewed_at = self.clock()
            request.reviewed_by = cancelled_by
            request.reviewer_note = "Cancelled by requester"
            self._transition(request, RefundStatus.REJECTED, cancelled_by, "Cancelled by requester")
            await self.store.save_request(request)

        await self._publish(request)
        return request

    async def approve_refund(
        self,
        request_id: str,
        approved_by: str,
        approved_amount: Optional[float] = None,
        note: Optional[str] = None,
        process: bool = True
    ) -> RefundRequest:
        """
        Approve a pending request, optionally for a reduced amount.

        Args:
            request_id: Request to approve
            approved_by: Reviewer
            approved_amount: Amount to refund, defaults to the requested amount
            note: Reviewer note
            process: Queue settlement after approval

        Raises:
            InvalidTransitionError: Request is not pending
            InvalidAmountError: Amount is not in (0, requested_amount]
        """
        async with self._locks.acquire(request_id):
            request = await self._load(request_id)
            self._check_transition(request, RefundStatus.APPROVED)

            amount = request.requested_amount if approved_amount is None else approved_amount
            if amount <= 0 or amount > request.requested_amount:
                raise InvalidAmountError(
                    f"Approved amount must be greater than 0 and at most {request.requested_amount}"
                )

            request.approved_amount = round_money(amount)
            request.reviewed_at = self.clock()
            request.reviewed_by = approved_by
            request.reviewer_note = note
            self._transition(request, RefundStatus.APPROVED, approved_by, note or "Refund approved")
            await self.store.save_request(request)

        await self._publish(request)
        if process:
            self._schedule_processing(request.id)
        return request

    async def reject_refund(self, request_id: str, rejected_by: str, note: str) -> RefundRequest:
        """Reject a pending request. A note explaining why is required."""
        if not note or not note.strip():
            raise ValidationError("A note is required when rejecting a refund")

        async with self._locks.acquire(request_id):
            request = await self._load(request_id)
            self._check_transition(request, RefundStatus.REJECTED)

            request.reviewed_at = self.clock()
            request.reviewed_by = rejected_by
            request.reviewer_note = note
            self._transition(request, RefundStatus.REJECTED, rejected_by, note)
            await self.store.save_request(request)

        await self._publish(request)
        return request

    async def issue_manual_refund(
        self,
        ticket: Ticket,
        amount: float,
        reason: RefundReason,
        note: Optional[str] = None,
        issued_by: Optional[str] = None,
        *,
        event: Optional[Event] = None,
        payment_method: Optional[RefundPaymentMethod] = None,
        processing_fee_percentage: float = 0.0,
        max_amount: Optional[float] = None,
        process: bool = True
    ) -> RefundRequest:
        """
        Issue an organizer refund, created directly in ``approved``.

        Args:
            ticket: Ticket to refund
            amount: Amount to refund
            reason: Refund reason
            note: Reviewer note
            issued_by: Organizer or operator issuing the refund
            event: Ticket's event, used for the organizer reference
            payment_method: Settle on this rail instead of the original one
            processing_fee_percentage: Share of the amount kept as fee
            max_amount: Upper bound for ``amount``, defaults to the ticket price
            process: Queue settlement right away

        Raises:
            InvalidAmountError: Amount is not in (0, max_amount]
            ActiveRefundExistsError: Ticket already has an open request
            TicketAlreadyRefundedError: Ticket was already refunded
        """
        limit = ticket.price if max_amount is None else max_amount
        if amount <= 0 or amount > limit:
            raise InvalidAmountError(f"Refund amount must be greater than 0 and at most {limit}")

        now = self.clock()
        reviewer_note = note or "Manual refund issued by organizer"
        request = RefundRequest(
            ticket_id=ticket.id,
            ticket_number=ticket.ticket_number,
            event_id=ticket.event_id,
            event_title=event.title if event else ticket.event_title,
            organizer_id=event.organizer_id if event else None,
            user_id=ticket.user_id,
            user_name=ticket.user_name,
            user_email=ticket.user_email,
            user_phone=ticket.user_phone,
            reason=reason,
            requested_amount=round_money(amount),
            approved_amount=round_money(amount),
            processing_fee_percentage=processing_fee_percentage,
            currency=ticket.currency,
            original_payment_method=payment_method or ticket.payment_method,
            original_payment_reference=ticket.payment_reference or f"PAY-{ticket.order_number}",
            original_purchase_date=ticket.purchase_date,
            status=RefundStatus.APPROVED,
            requested_at=now,
            requested_by=issued_by,
            reviewed_at=now,
            reviewed_by=issued_by,
            reviewer_note=reviewer_note,
            max_attempts=self.max_attempts,
            status_history=[RefundStatusChange(
                from_status=None,
                to_status=RefundStatus.APPROVED,
                changed_at=now,
                changed_by=issued_by,
                note=reviewer_note
            )]
        )

        await self.store.insert_request(request)
        logger.info(f"Manual refund {request.id} issued for ticket {ticket.ticket_number}: {request.approved_amount}")
        await self._publish(request)

        if process:
            self._schedule_processing(request.id)
        return request

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    def _schedule_processing(self, request_id: str) -> None:
        task = asyncio.create_task(self._process_in_background(request_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _process_in_background(self, request_id: str) -> None:
        try:
            await self.process_refund(request_id, SYSTEM_ACTOR)
        except (AlreadyProcessedError, InvalidTransitionError) as e:
            # Someone else processed or reviewed it first
            logger.info(f"Skipped queued processing of refund {request_id}: {e.message}")
        except Exception:
            logger.exception(f"Queued processing of refund {request_id} failed")

    async def wait_for_pending_processing(self) -> None:
        """Wait until every queued settlement has finished."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def process_refund(self, request_id: str, processed_by: Optional[str] = None) -> RefundTransaction:
        """
        Settle an approved refund through the payment gateway.

        The request is persisted as ``processing`` and the transaction is
        recorded before the provider is called, so a crash mid-settlement
        leaves a trail that recovery can finish.

        Returns:
            The transaction, completed or failed. A provider failure is not raised.

        Raises:
            AlreadyProcessedError: Request is processing or completed
            InvalidTransitionError: Request is not approved
        """
        async with self._locks.acquire(request_id):
            request = await self._load(request_id)
            if request.status in (RefundStatus.PROCESSING, RefundStatus.COMPLETED):
                raise AlreadyProcessedError(f"Refund {request_id} is already {request.status.value}")
            if request.status == RefundStatus.FAILED:
                raise InvalidTransitionError(
                    request.status,
                    RefundStatus.PROCESSING,
                    message="Failed refunds must be retried, not processed again"
                )
            self._check_transition(request, RefundStatus.PROCESSING)
            return await self._settle(request, processed_by, "Processing refund")

    async def retry_refund(self, request_id: str, retried_by: Optional[str] = None) -> RefundTransaction:
        """
        Retry a failed settlement with a new transaction.

        Raises:
            InvalidTransitionError: Request is not failed
            RetriesExhaustedError: No attempts left
        """
        async with self._locks.acquire(request_id):
            request = await self._load(request_id)
            if request.status != RefundStatus.FAILED:
                raise InvalidTransitionError(
                    request.status,
                    RefundStatus.PROCESSING,
                    message=f"Only failed refunds can be retried (current status: {request.status.value})"
                )
            if request.attempt_count >= request.max_attempts:
                raise RetriesExhaustedError(request_id, request.attempt_count)
            return await self._settle(request, retried_by, f"Retrying refund (attempt {request.attempt_count + 1})")

    def _new_transaction(self, request: RefundRequest, actor: Optional[str]) -> RefundTransaction:
        amount = request.settlement_amount
        return RefundTransaction(
            refund_request_id=request.id,
            ticket_id=request.ticket_id,
            event_id=request.event_id,
            user_id=request.user_id,
            organizer_id=request.organizer_id,
            attempt_number=request.attempt_count,
            original_amount=request.requested_amount,
            refund_amount=amount,
            processing_fee=round_money(amount * request.processing_fee_percentage),
            currency=request.currency,
            payment_method=request.original_payment_method,
            payment_reference=request.original_payment_reference,
            reason=request.reason,
            initiated_at=self.clock(),
            processed_by=actor or SYSTEM_ACTOR
        )

    async def _settle(self, request: RefundRequest, actor: Optional[str], note: str) -> RefundTransaction:
        # Caller holds the request lock
        request.attempt_count += 1
        request.processed_at = self.clock()
        request.failure_reason = None
        self._transition(request, RefundStatus.PROCESSING, actor or SYSTEM_ACTOR, note)
        await self.store.save_request(request)

        transaction = self._new_transaction(request, actor)
        await self.store.insert_transaction(transaction)
        await self._publish(request)

        return await self._dispatch(request, transaction, actor)

    async def _dispatch(
        self,
        request: RefundRequest,
        transaction: RefundTransaction,
        actor: Optional[str]
    ) -> RefundTransaction:
        try:
            result = await self.gateway.settle(request, transaction)
        except Exception as e:
            logger.exception(f"Settlement of {transaction.id} raised")
            result = SettlementResult.failed(transaction.payment_method.value, str(e) or type(e).__name__)

        now = self.clock()
        actor = actor or SYSTEM_ACTOR
        if result.success:
            transaction.status = RefundStatus.COMPLETED
            transaction.transaction_reference = result.provider_reference or ""
            transaction.processed_at = now
            transaction.completed_at = now
            request.completed_at = now
            self._transition(
                request,
                RefundStatus.COMPLETED,
                actor,
                f"Refund completed. Reference: {transaction.transaction_reference}"
            )
        else:
            transaction.status = RefundStatus.FAILED
            transaction.processed_at = now
            transaction.failed_at = now
            transaction.failure_reason = result.failure_reason
            request.failure_reason = result.failure_reason
            self._transition(request, RefundStatus.FAILED, actor, f"Refund failed: {result.failure_reason}")
            if request.retries_remaining == 0:
                logger.warning(f"Refund {request.id} failed after {request.attempt_count} attempts")

        await self.store.save_transaction(transaction)
        await self.store.save_request(request)
        await self._publish(request)
        return transaction

    async def recover_in_flight_refunds(self) -> List[RefundRequest]:
        """
        Finish settlements interrupted by a restart.

        For each request left in ``processing``:
        - its attempt's transaction is final: copy the outcome onto the request
        - the transaction is still processing: re-dispatch it with the same
          idempotency key
        - no transaction was recorded: record one and dispatch it

        Returns:
            The recovered requests
        """
        in_flight = await self.store.find_requests(status=RefundStatus.PROCESSING)
        if in_flight:
            logger.info(f"Recovering {len(in_flight)} in-flight refunds")
        return [await self.recover_refund(request.id) for request in in_flight]

    async def recover_refund(self, request_id: str) -> RefundRequest:
        """
        Wait for any settlement of this request to finish, then complete an
        interrupted one. Requests not in ``processing`` are returned as they are.
        """
        async with self._locks.acquire(request_id):
            request = await self._load(request_id)
            if request.status != RefundStatus.PROCESSING:
                return request

            transaction = await self.store.latest_transaction(request.id)
            if transaction is None or transaction.attempt_number != request.attempt_count:
                transaction = self._new_transaction(request, SYSTEM_ACTOR)
                await self.store.insert_transaction(transaction)
                await self._dispatch(request, transaction, SYSTEM_ACTOR)
            elif transaction.status == RefundStatus.PROCESSING:
                await self._dispatch(request, transaction, SYSTEM_ACTOR)
            else:
                self._apply_final_transaction(request, transaction)
                await self.store.save_request(request)
                await self._publish(request)

            logger.info(f"Recovered refund {request.id}: {request.status.value}")
            return request

    def _apply_final_transaction(self, request: RefundRequest, transaction: RefundTransaction) -> None:
        if transaction.status == RefundStatus.COMPLETED:
            request.completed_at = transaction.completed_at or self.clock()
            self._transition(
                request,
                RefundStatus.COMPLETED,
                SYSTEM_ACTOR,
                f"Recovered: refund completed. Reference: {transaction.transaction_reference}"
            )
        else:
            request.failure_reason = transaction.failure_reason
            self._transition(
                request,
                RefundStatus.FAILED,
                SYSTEM_ACTOR,
                f"Recovered: refund failed: {transaction.failure_reason}"
            )

    # ------------------------------------------------------------------
    # Automation
    # ------------------------------------------------------------------

    async def process_event_cancellation_refunds(
        self,
        event_id: str,
        approved_by: str = SYSTEM_ACTOR,
        process: bool = False
    ) -> List[RefundRequest]:
        """Auto-approve every pending request of a cancelled event."""
        approved = []
        for pending in await self.store.find_requests(event_id=event_id, status=RefundStatus.PENDING):
            try:
                request = await self.approve_refund(
                    pending.id,
                    approved_by,
                    note="Auto-approved due to event cancellation",
                    process=process
                )
            except InvalidTransitionError:
                # Reviewed concurrently
                continue
            approved.append(request)

        logger.info(f"Auto-approved {len(approved)} pending refunds for cancelled event {event_id}")
        return approved

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_refund_request(self, request_id: str) -> Optional[RefundRequest]:
        return await self.store.get_request(request_id)

    async def get_refund_request_for_ticket(self, ticket_id: str) -> Optional[RefundRequest]:
        return await self.store.get_request_for_ticket(ticket_id)

    async def get_ticket_refund_requests(self, ticket_id: str) -> List[RefundRequest]:
        return await self.store.find_requests(ticket_id=ticket_id)

    async def get_user_refund_requests(self, user_id: str) -> List[RefundRequest]:
        return await self.store.find_requests(user_id=user_id)

    async def get_event_refund_requests(
        self,
        event_id: str,
        status: Optional[RefundStatus] = None
    ) -> List[RefundRequest]:
        return await self.store.find_requests(event_id=event_id, status=status)

    async def get_organizer_refund_requests(
        self,
        organizer_id: str,
        status: Optional[RefundStatus] = None
    ) -> List[RefundRequest]:
        return await self.store.find_requests(organizer_id=organizer_id, status=status)

    async def get_refund_transaction(self, transaction_id: str) -> Optional[RefundTransaction]:
        return await self.store.get_transaction(transaction_id)

    async def get_refund_transactions(self, event_id: str) -> List[RefundTransaction]:
        return await self.store.find_transactions(event_id=event_id)

    async def get_request_transactions(self, request_id: str) -> List[RefundTransaction]:
        """Every settlement attempt of a request, oldest first."""
        transactions = await self.store.find_transactions(refund_request_id=request_id)
        return sorted(transactions, key=lambda t: t.attempt_number)

    # ------------------------------------------------------------------
    # Analytics
    # ------------------------------------------------------------------

    async def get_refund_analytics(
        self,
        period_start: datetime,
        period_end: datetime,
        event_id: Optional[str] = None,
        organizer_id: Optional[str] = None
    ) -> RefundAnalytics:
        """Refund statistics for requests made within the period."""
        requests = await self.store.find_requests(event_id=event_id, organizer_id=organizer_id)
        requests = [r for r in requests if period_start <= r.requested_at <= period_end]

        counts: Dict[RefundStatus, int] = {status: 0 for status in RefundStatus}
        reasons: Dict[str, int] = {}
        for request in requests:
            counts[request.status] += 1
            reasons[request.reason.value] = reasons.get(request.reason.value, 0) + 1

        completed = [r for r in requests if r.status == RefundStatus.COMPLETED]
        total_fees = 0.0
        for request in completed:
            for transaction in await self.store.find_transactions(refund_request_id=request.id):
                if transaction.status == RefundStatus.COMPLETED:
                    total_fees += transaction.processing_fee

        durations = [
            (r.completed_at - r.requested_at).total_seconds() / 3600
            for r in completed if r.completed_at
        ]

        refund_rate = 0.0
        if event_id:
            sold = [t for t in await self.tickets.get_event_tickets(event_id) if t.is_sold]
            if sold:
                refund_rate = len({r.ticket_id for r in completed}) / len(sold)

        top_reasons = dict(sorted(reasons.items(), key=lambda item: item[1], reverse=True))

        return RefundAnalytics(
            event_id=event_id,
            organizer_id=organizer_id,
            period_start=period_start,
            period_end=period_end,
            total_requests=len(requests),
            pending_requests=counts[RefundStatus.PENDING],
            approved_requests=counts[RefundStatus.APPROVED],
            rejected_requests=counts[RefundStatus.REJECTED],
            completed_refunds=counts[RefundStatus.COMPLETED],
            failed_refunds=counts[RefundStatus.FAILED],
            total_amount_requested=round_money(sum(r.requested_amount for r in requests)),
            total_amount_refunded=round_money(sum(r.settlement_amount for r in completed)),
            total_processing_fees=round_money(total_fees),
            average_processing_time_hours=round(sum(durations) / len(durations), 2) if durations else 0.0,
            refund_rate=round(refund_rate, 4),
            top_reasons=top_reasons
        )
