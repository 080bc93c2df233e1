"""
Tests for refund functionality.

This test suite validates the refund service methods and ensures:
- Eligible tickets can be submitted, ineligible ones are refused
- A ticket never has two open refund requests, even under concurrency
- Review validations leave the request untouched when they fail
- Settlement failures become failed transactions that can be retried
- Every transition is recorded in the audit trail and published
- Settlements interrupted by a crash are finished exactly once
"""

import asyncio
from datetime import timedelta

import pytest

from app.core.exceptions import (
    ActiveRefundExistsError,
    AlreadyProcessedError,
    EventNotFoundError,
    InvalidAmountError,
    InvalidTransitionError,
    MaxRefundsExceededError,
    NotEligibleError,
    PermissionDeniedError,
    RefundRequestNotFoundError,
    RetriesExhaustedError,
    TicketAlreadyRefundedError,
    ReasonNotSelectableError,
    TicketAlreadyUsedError,
    ValidationError,
)
from app.models.refund import RefundPolicy, RefundReason, RefundStatus, RefundTransaction
from app.models.ticket import EventStatus, TicketScanStatus
from app.services.refund_service import RefundService
from app.services.settlement.simulation import SIMULATED_FAILURE_REASON

from conftest import NOW, ORGANIZER_ID, make_event, make_ticket


def register(tickets, event=None, *ticket_list):
    event = event or make_event()
    tickets.add_event(event)
    for ticket in ticket_list:
        tickets.add_ticket(ticket)
    return event


class TestStatusTransitions:
    """Test the transition table."""

    def test_valid_transition(self):
        """Test pending can be approved."""
        is_valid, error = RefundService.validate_status_transition(RefundStatus.PENDING, RefundStatus.APPROVED)
        assert is_valid is True
        assert error is None

    def test_invalid_transition(self):
        """Test pending cannot jump to completed."""
        is_valid, error = RefundService.validate_status_transition(RefundStatus.PENDING, RefundStatus.COMPLETED)
        assert is_valid is False
        assert "Valid transitions: approved, rejected" in error

    def test_final_state(self):
        """Test completed requests cannot move."""
        is_valid, error = RefundService.validate_status_transition(RefundStatus.COMPLETED, RefundStatus.FAILED)
        assert is_valid is False
        assert "final state" in error

    def test_failed_can_be_retried(self):
        """Test failed moves back to processing on retry."""
        is_valid, _ = RefundService.validate_status_transition(RefundStatus.FAILED, RefundStatus.PROCESSING)
        assert is_valid is True


class TestSubmitRefund:
    """Test refund submission."""

    @pytest.mark.asyncio
    async def test_submit_creates_pending_request(self, refund_service, tickets):
        """Test a regular submission waits for review."""
        ticket = make_ticket()
        event = register(tickets, None, ticket)

        request = await refund_service.submit_refund(ticket, event, RefundReason.CANNOT_ATTEND, "Travelling")

        assert request.status == RefundStatus.PENDING
        assert request.requested_amount == 100000
        assert request.processing_fee_percentage == 0.05
        assert request.original_payment_reference == "PAY-000001"
        assert request.organizer_id == ORGANIZER_ID
        assert len(request.status_history) == 1
        assert request.status_history[0].from_status is None
        assert request.status_history[0].note == "Refund request submitted"

    @pytest.mark.asyncio
    async def test_partial_window_amount(self, refund_service, tickets):
        """Test the requested amount follows the refund window."""
        ticket = make_ticket()
        event = register(tickets, make_event(hours_until_start=50), ticket)

        request = await refund_service.submit_refund(ticket, event, RefundReason.CANNOT_ATTEND)

        assert request.requested_amount == 50000

    @pytest.mark.asyncio
    async def test_payment_reference_falls_back_to_order(self, refund_service, tickets):
        """Test tickets without a payment reference use the order number."""
        ticket = make_ticket(payment_reference="")
        event = register(tickets, None, ticket)

        request = await refund_service.submit_refund(ticket, event, RefundReason.OTHER)

        assert request.original_payment_reference == "PAY-ORD-000001"

    @pytest.mark.asyncio
    async def test_auto_approved_reason_settles(self, refund_service, tickets, gateway):
        """Test auto-approved reasons skip review and settle in the background."""
        ticket = make_ticket()
        event = register(tickets, None, ticket)

        request = await refund_service.submit_refund(ticket, event, RefundReason.DUPLICATE_PURCHASE)
        assert request.status == RefundStatus.APPROVED
        assert request.status_history[0].note == "Auto-approved: duplicate_purchase"

        await refund_service.wait_for_pending_processing()

        settled = await refund_service.get_refund_request(request.id)
        assert settled.status == RefundStatus.COMPLETED
        assert [c.to_status for c in settled.status_history] == [
            RefundStatus.APPROVED,
            RefundStatus.PROCESSING,
            RefundStatus.COMPLETED,
        ]
        assert len(gateway.calls) == 1

    @pytest.mark.asyncio
    async def test_holder_cannot_pick_operator_reason(self, refund_service, tickets, gateway):
        """Test holders are limited to the reasons offered to them."""
        ticket = make_ticket()
        event = register(tickets, None, ticket)

        for reason in (RefundReason.FRAUDULENT, RefundReason.EVENT_CANCELLED, RefundReason.ORGANIZER_DECISION):
            with pytest.raises(ReasonNotSelectableError):
                await refund_service.submit_refund(ticket, event, reason, requested_by=ticket.user_id)

        await refund_service.wait_for_pending_processing()
        assert await refund_service.get_ticket_refund_requests(ticket.id) == []
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_staff_may_pick_operator_reason(self, refund_service, tickets):
        """Test someone other than the holder can file an operator reason."""
        ticket = make_ticket()
        event = register(tickets, None, ticket)

        request = await refund_service.submit_refund(
            ticket, event, RefundReason.FRAUDULENT, requested_by="adm_ops"
        )

        assert request.status == RefundStatus.APPROVED
        assert request.requested_by == "adm_ops"

    @pytest.mark.asyncio
    async def test_cancelled_event_has_no_fee(self, refund_service, tickets):
        """Test refunds for cancelled events are fee-free."""
        ticket = make_ticket()
        event = register(tickets, make_event(hours_until_start=5, status=EventStatus.CANCELLED), ticket)

        request = await refund_service.submit_refund(ticket, event, RefundReason.CANNOT_ATTEND)
        await refund_service.wait_for_pending_processing()

        transactions = await refund_service.get_request_transactions(request.id)
        assert request.processing_fee_percentage == 0
        assert transactions[0].net_refund == 100000

    @pytest.mark.asyncio
    async def test_used_ticket_rejected(self, refund_service, tickets):
        """Test scanned tickets raise TicketAlreadyUsedError."""
        ticket = make_ticket(scan_status=TicketScanStatus.SCANNED)
        event = register(tickets, None, ticket)

        with pytest.raises(TicketAlreadyUsedError):
            await refund_service.submit_refund(ticket, event, RefundReason.CANNOT_ATTEND)

    @pytest.mark.asyncio
    async def test_deadline_passed_rejected(self, refund_service, tickets):
        """Test tickets past the deadline raise NotEligibleError with the reason."""
        ticket = make_ticket()
        event = register(tickets, make_event(hours_until_start=30), ticket)

        with pytest.raises(NotEligibleError) as exc_info:
            await refund_service.submit_refund(ticket, event, RefundReason.CANNOT_ATTEND)

        assert "48+ hours" in exc_info.value.message
        assert await refund_service.get_ticket_refund_requests(ticket.id) == []

    @pytest.mark.asyncio
    async def test_second_request_rejected(self, refund_service, tickets):
        """Test a ticket with an open request cannot get another one."""
        ticket = make_ticket()
        event = register(tickets, None, ticket)
        first = await refund_service.submit_refund(ticket, event, RefundReason.CANNOT_ATTEND)

        with pytest.raises(ActiveRefundExistsError) as exc_info:
            await refund_service.submit_refund(ticket, event, RefundReason.OTHER)

        assert exc_info.value.request_id == first.id
        assert exc_info.value.status_code == 409

    @pytest.mark.asyncio
    async def test_refunded_ticket_rejected(self, refund_service, tickets):
        """Test a refunded ticket cannot be refunded again."""
        ticket = make_ticket()
        event = register(tickets, None, ticket)
        request = await refund_service.submit_refund(ticket, event, RefundReason.CANNOT_ATTEND)
        await refund_service.approve_refund(request.id, ORGANIZER_ID, process=False)
        await refund_service.process_refund(request.id)

        with pytest.raises(TicketAlreadyRefundedError):
            await refund_service.submit_refund(ticket, event, RefundReason.OTHER)

    @pytest.mark.asyncio
    async def test_concurrent_submissions_create_one_request(self, refund_service, tickets):
        """Test racing submissions for one ticket leave exactly one request."""
        ticket = make_ticket()
        event = register(tickets, None, ticket)

        results = await asyncio.gather(
            *(refund_service.submit_refund(ticket, event, RefundReason.CANNOT_ATTEND) for _ in range(5)),
            return_exceptions=True
        )

        created = [r for r in results if not isinstance(r, Exception)]
        errors = [r for r in results if isinstance(r, Exception)]
        assert len(created) == 1
        assert all(isinstance(e, ActiveRefundExistsError) for e in errors)
        assert len(await refund_service.get_ticket_refund_requests(ticket.id)) == 1

    @pytest.mark.asyncio
    async def test_max_refunds_per_user(self, refund_service, tickets):
        """Test the per-user refund limit of a policy."""
        first = make_ticket(1)
        second = make_ticket(2, user_id="usr_0001")
        event = register(tickets, None, first, second)
        await refund_service.set_refund_policy(RefundPolicy(event_id=event.id, max_refunds_per_user=1))

        await refund_service.submit_refund(first, event, RefundReason.CANNOT_ATTEND)

        with pytest.raises(MaxRefundsExceededError):
            await refund_service.submit_refund(second, event, RefundReason.CANNOT_ATTEND)

    @pytest.mark.asyncio
    async def test_submission_published(self, refund_service, tickets, event_bus):
        """Test new requests are published on the status channel."""
        subscription = event_bus.refund_status_changed.subscribe()
        ticket = make_ticket()
        event = register(tickets, None, ticket)

        request = await refund_service.submit_refund(ticket, event, RefundReason.CANNOT_ATTEND)

        published = subscription.drain()
        assert [r.id for r in published] == [request.id]
        assert published[0].status == RefundStatus.PENDING


class TestReview:
    """Test approval, rejection and withdrawal."""

    @pytest.mark.asyncio
    async def test_approve_reduced_amount(self, refund_service, tickets):
        """Test approving less than requested."""
        ticket = make_ticket()
        event = register(tickets, None, ticket)
        request = await refund_service.submit_refund(ticket, event, RefundReason.CANNOT_ATTEND)

        approved = await refund_service.approve_refund(request.id, ORGANIZER_ID, 60000, "Half used", process=False)

        assert approved.status == RefundStatus.APPROVED
        assert approved.approved_amount == 60000
        assert approved.reviewed_by == ORGANIZER_ID
        assert approved.settlement_amount == 60000

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -10, 100001])
    async def test_approve_amount_out_of_bounds(self, refund_service, tickets, amount):
        """Test approved amounts must be in (0, requested]."""
        ticket = make_ticket()
        event = register(tickets, None, ticket)
        request = await refund_service.submit_refund(ticket, event, RefundReason.CANNOT_ATTEND)

        with pytest.raises(InvalidAmountError):
            await refund_service.approve_refund(request.id, ORGANIZER_ID, amount, process=False)

        unchanged = await refund_service.get_refund_request(request.id)
        assert unchanged.status == RefundStatus.PENDING
        assert len(unchanged.status_history) == 1

    @pytest.mark.asyncio
    async def test_reject_requires_note(self, refund_service, tickets):
        """Test rejecting without a note fails and changes nothing."""
        ticket = make_ticket()
        event = register(tickets, None, ticket)
        request = await refund_service.submit_refund(ticket, event, RefundReason.CANNOT_ATTEND)

        with pytest.raises(ValidationError):
            await refund_service.reject_refund(request.id, ORGANIZER_ID, "  ")

        unchanged = await refund_service.get_refund_request(request.id)
        assert unchanged.status == RefundStatus.PENDING

    @pytest.mark.asyncio
    async def test_reject_frees_ticket(self, refund_service, tickets):
        """Test a rejected request no longer blocks the ticket."""
        ticket = make_ticket()
        event = register(tickets, None, ticket)
        request = await refund_service.submit_refund(ticket, event, RefundReason.CANNOT_ATTEND)

        rejected = await refund_service.reject_refund(request.id, ORGANIZER_ID, "Outside policy")
        again = await refund_service.submit_refund(ticket, event, RefundReason.OTHER)

        assert rejected.status == RefundStatus.REJECTED
        assert rejected.status_history[-1].note == "Outside policy"
        assert again.status == RefundStatus.PENDING

    @pytest.mark.asyncio
    async def test_cannot_approve_twice(self, refund_service, tickets):
        """Test approving an approved request is an invalid transition."""
        ticket = make_ticket()
        event = register(tickets, None, ticket)
        request = await refund_service.submit_refund(ticket, event, RefundReason.CANNOT_ATTEND)
        await refund_service.approve_refund(request.id, ORGANIZER_ID, process=False)

        with pytest.raises(InvalidTransitionError):
            await refund_service.approve_refund(request.id, ORGANIZER_ID, process=False)

    @pytest.mark.asyncio
    async def test_cancel_by_requester(self, refund_service, tickets):
        """Test the requester can withdraw a pending request."""
        ticket = make_ticket()
        event = register(tickets, None, ticket)
        request = await refund_service.submit_refund(ticket, event, RefundReason.CANNOT_ATTEND)

        cancelled = await refund_service.cancel_refund_request(request.id, ticket.user_id)

        assert cancelled.status == RefundStatus.REJECTED
        assert cancelled.status_history[-1].note == "Cancelled by requester"

    @pytest.mark.asyncio
    async def test_cancel_by_someone_else(self, refund_service, tickets):
        """Test only the requester can withdraw."""
        ticket = make_ticket()
        event = register(tickets, None, ticket)
        request = await refund_service.submit_refund(ticket, event, RefundReason.CANNOT_ATTEND)

        with pytest.raises(PermissionDeniedError):
            await refund_service.cancel_refund_request(request.id, "usr_intruder")

    @pytest.mark.asyncio
    async def test_unknown_request(self, refund_service):
        """Test reviewing a missing request."""
        with pytest.raises(RefundRequestNotFoundError):
            await refund_service.approve_refund("rfr_missing", ORGANIZER_ID)


class TestSettlement:
    """Test processing, failures and retries."""

    async def _approved(self, refund_service, tickets, **ticket_overrides):
        ticket = make_ticket(**ticket_overrides)
        event = register(tickets, None, ticket)
        request = await refund_service.submit_refund(ticket, event, RefundReason.CANNOT_ATTEND)
        return await refund_service.approve_refund(request.id, ORGANIZER_ID, process=False)

    @pytest.mark.asyncio
    async def test_process_completes(self, refund_service, tickets):
        """Test a successful settlement completes request and transaction."""
        request = await self._approved(refund_service, tickets)

        transaction = await refund_service.process_refund(request.id, ORGANIZER_ID)

        completed = await refund_service.get_refund_request(request.id)
        assert transaction.status == RefundStatus.COMPLETED
        assert transaction.attempt_number == 1
        assert transaction.refund_amount == 100000
        assert transaction.processing_fee == 5000
        assert transaction.net_refund == 95000
        assert transaction.transaction_reference.startswith("SIM_MTN_")
        assert completed.status == RefundStatus.COMPLETED
        assert completed.completed_at is not None
        assert completed.status_history[-1].note == f"Refund completed. Reference: {transaction.transaction_reference}"
        assert len(completed.status_history) == 4

    @pytest.mark.asyncio
    async def test_process_twice(self, refund_service, tickets):
        """Test a completed refund cannot be processed again."""
        request = await self._approved(refund_service, tickets)
        await refund_service.process_refund(request.id)

        with pytest.raises(AlreadyProcessedError):
            await refund_service.process_refund(request.id)

    @pytest.mark.asyncio
    async def test_pending_cannot_be_processed(self, refund_service, tickets):
        """Test unapproved requests cannot be settled."""
        ticket = make_ticket()
        event = register(tickets, None, ticket)
        request = await refund_service.submit_refund(ticket, event, RefundReason.CANNOT_ATTEND)

        with pytest.raises(InvalidTransitionError):
            await refund_service.process_refund(request.id)

    @pytest.mark.asyncio
    async def test_provider_failure(self, refund_service, tickets, gateway):
        """Test a provider failure is recorded, not raised."""
        request = await self._approved(refund_service, tickets)
        gateway.fail_next()

        transaction = await refund_service.process_refund(request.id)

        failed = await refund_service.get_refund_request(request.id)
        assert transaction.status == RefundStatus.FAILED
        assert transaction.failure_reason == SIMULATED_FAILURE_REASON
        assert failed.status == RefundStatus.FAILED
        assert failed.failure_reason == SIMULATED_FAILURE_REASON
        assert failed.status_history[-1].note == f"Refund failed: {SIMULATED_FAILURE_REASON}"
        assert failed.is_retryable is True

    @pytest.mark.asyncio
    async def test_failed_must_be_retried(self, refund_service, tickets, gateway):
        """Test failed refunds go through retry, not process."""
        request = await self._approved(refund_service, tickets)
        gateway.fail_next()
        await refund_service.process_refund(request.id)

        with pytest.raises(InvalidTransitionError) as exc_info:
            await refund_service.process_refund(request.id)

        assert exc_info.value.message == "Failed refunds must be retried, not processed again"

    @pytest.mark.asyncio
    async def test_retry_creates_new_transaction(self, refund_service, tickets, gateway):
        """Test each retry is a new transaction with its own idempotency key."""
        request = await self._approved(refund_service, tickets)
        gateway.fail_next()
        first = await refund_service.process_refund(request.id)

        second = await refund_service.retry_refund(request.id, ORGANIZER_ID)

        transactions = await refund_service.get_request_transactions(request.id)
        completed = await refund_service.get_refund_request(request.id)
        assert second.status == RefundStatus.COMPLETED
        assert second.id != first.id
        assert [t.attempt_number for t in transactions] == [1, 2]
        assert [t.status for t in transactions] == [RefundStatus.FAILED, RefundStatus.COMPLETED]
        assert completed.status == RefundStatus.COMPLETED
        assert completed.failure_reason is None
        assert gateway.calls == [first.id, second.id]

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, refund_service, tickets, gateway):
        """Test the attempt limit."""
        request = await self._approved(refund_service, tickets)
        gateway.fail_next(3)
        await refund_service.process_refund(request.id)
        await refund_service.retry_refund(request.id)
        await refund_service.retry_refund(request.id)

        with pytest.raises(RetriesExhaustedError):
            await refund_service.retry_refund(request.id)

        exhausted = await refund_service.get_refund_request(request.id)
        assert exhausted.attempt_count == 3
        assert exhausted.is_final is True
        assert len(await refund_service.get_request_transactions(request.id)) == 3

    @pytest.mark.asyncio
    async def test_retry_requires_failed(self, refund_service, tickets):
        """Test only failed refunds can be retried."""
        request = await self._approved(refund_service, tickets)

        with pytest.raises(InvalidTransitionError):
            await refund_service.retry_refund(request.id)

    @pytest.mark.asyncio
    async def test_gateway_exception_becomes_failure(self, refund_service, tickets, gateway):
        """Test an exception from the gateway fails the attempt instead of escaping."""
        request = await self._approved(refund_service, tickets)

        async def explode(*args, **kwargs):
            raise RuntimeError("socket closed")

        gateway.transfer_mobile_money = explode
        transaction = await refund_service.process_refund(request.id)

        assert transaction.status == RefundStatus.FAILED
        assert transaction.failure_reason == "socket closed"

    @pytest.mark.asyncio
    async def test_each_transition_published(self, refund_service, tickets, event_bus):
        """Test processing publishes processing and completed snapshots."""
        request = await self._approved(refund_service, tickets)
        subscription = event_bus.refund_status_changed.subscribe()

        await refund_service.process_refund(request.id)

        statuses = [r.status for r in subscription.drain()]
        assert statuses == [RefundStatus.PROCESSING, RefundStatus.COMPLETED]

    @pytest.mark.asyncio
    async def test_concurrent_processing_settles_once(self, refund_service, tickets, gateway):
        """Test racing process calls pay out once."""
        request = await self._approved(refund_service, tickets)

        results = await asyncio.gather(
            *(refund_service.process_refund(request.id) for _ in range(3)),
            return_exceptions=True
        )

        assert sum(1 for r in results if isinstance(r, RefundTransaction)) == 1
        assert all(isinstance(r, AlreadyProcessedError) for r in results if isinstance(r, Exception))
        assert len(gateway.calls) == 1


class TestManualRefund:
    """Test organizer-issued refunds."""

    @pytest.mark.asyncio
    async def test_issue_manual_refund(self, refund_service, tickets):
        """Test a manual refund is created approved and settles."""
        ticket = make_ticket()
        event = register(tickets, make_event(hours_until_start=2), ticket)

        request = await refund_service.issue_manual_refund(
            ticket, 40000, RefundReason.ORGANIZER_DECISION, issued_by=ORGANIZER_ID, event=event
        )
        await refund_service.wait_for_pending_processing()

        settled = await refund_service.get_refund_request(request.id)
        assert request.status == RefundStatus.APPROVED
        assert request.reviewer_note == "Manual refund issued by organizer"
        assert settled.status == RefundStatus.COMPLETED
        assert settled.approved_amount == 40000

    @pytest.mark.asyncio
    async def test_manual_refund_above_price(self, refund_service, tickets):
        """Test manual refunds cannot exceed the ticket price."""
        ticket = make_ticket()
        register(tickets, None, ticket)

        with pytest.raises(InvalidAmountError):
            await refund_service.issue_manual_refund(ticket, 150000, RefundReason.OTHER, issued_by=ORGANIZER_ID)


class TestRecovery:
    """Test finishing settlements interrupted by a crash."""

    async def _interrupted(self, refund_service, refund_store, tickets, record_transaction=True):
        ticket = make_ticket()
        event = register(tickets, None, ticket)
        request = await refund_service.submit_refund(ticket, event, RefundReason.CANNOT_ATTEND)
        await refund_service.approve_refund(request.id, ORGANIZER_ID, process=False)

        # State left behind by a crash between persisting and calling the provider
        stored = await refund_store.get_request(request.id)
        stored.attempt_count = 1
        stored.record_transition(RefundStatus.PROCESSING, changed_by="system", note="Processing refund")
        await refund_store.save_request(stored)

        transaction = None
        if record_transaction:
            transaction = RefundTransaction(
                refund_request_id=stored.id,
                ticket_id=stored.ticket_id,
                event_id=stored.event_id,
                user_id=stored.user_id,
                attempt_number=1,
                original_amount=stored.requested_amount,
                refund_amount=stored.settlement_amount,
                processing_fee=stored.settlement_amount * stored.processing_fee_percentage,
                payment_method=stored.original_payment_method,
                payment_reference=stored.original_payment_reference,
                reason=stored.reason
            )
            await refund_store.insert_transaction(transaction)
        return stored, transaction

    @pytest.mark.asyncio
    async def test_redispatches_processing_transaction(self, refund_service, refund_store, tickets, gateway):
        """Test a transaction left processing is re-sent with the same key."""
        request, transaction = await self._interrupted(refund_service, refund_store, tickets)

        recovered = await refund_service.recover_in_flight_refunds()

        assert [r.id for r in recovered] == [request.id]
        assert recovered[0].status == RefundStatus.COMPLETED
        assert gateway.calls == [transaction.id]

    @pytest.mark.asyncio
    async def test_provider_already_paid(self, refund_service, refund_store, tickets, gateway):
        """Test recovery does not pay twice when the provider already settled the attempt."""
        request, transaction = await self._interrupted(refund_service, refund_store, tickets)
        first = await gateway.settle(request, transaction)

        await refund_service.recover_in_flight_refunds()

        stored = await refund_store.get_transaction(transaction.id)
        assert stored.transaction_reference == first.provider_reference
        assert gateway.calls == [transaction.id]

    @pytest.mark.asyncio
    async def test_missing_transaction_is_recorded(self, refund_service, refund_store, tickets, gateway):
        """Test a crash before the transaction was written records one and settles it."""
        request, _ = await self._interrupted(refund_service, refund_store, tickets, record_transaction=False)

        await refund_service.recover_in_flight_refunds()

        transactions = await refund_service.get_request_transactions(request.id)
        assert len(transactions) == 1
        assert transactions[0].attempt_number == 1
        assert transactions[0].status == RefundStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_final_transaction_copied_to_request(self, refund_service, refund_store, tickets, gateway):
        """Test a crash after the transaction was finalized only updates the request."""
        request, transaction = await self._interrupted(refund_service, refund_store, tickets)
        transaction.status = RefundStatus.FAILED
        transaction.failure_reason = "Payment provider timeout"
        await refund_store.save_transaction(transaction)

        recovered = await refund_service.recover_refund(request.id)

        assert recovered.status == RefundStatus.FAILED
        assert recovered.status_history[-1].note == "Recovered: refund failed: Payment provider timeout"
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_nothing_to_recover(self, refund_service):
        """Test recovery with no in-flight refunds."""
        assert await refund_service.recover_in_flight_refunds() == []


class TestPoliciesAndQueries:
    """Test policy resolution, reschedules and reporting."""

    @pytest.mark.asyncio
    async def test_policy_resolution_order(self, refund_service):
        """Test ticket-type policy, then event policy, then default."""
        assert (await refund_service.get_refund_policy("evt_jazz")).refund_deadline_hours == 48

        await refund_service.set_refund_policy(RefundPolicy(event_id="evt_jazz", refund_deadline_hours=24))
        await refund_service.set_refund_policy(
            RefundPolicy(event_id="evt_jazz", ticket_type_id="tt_vip", refund_deadline_hours=96)
        )

        assert (await refund_service.get_refund_policy("evt_jazz", "tt_regular")).refund_deadline_hours == 24
        assert (await refund_service.get_refund_policy("evt_jazz", "tt_vip")).refund_deadline_hours == 96

    @pytest.mark.asyncio
    async def test_reschedule_opens_full_refunds(self, refund_service, tickets):
        """Test a reschedule makes tickets refundable in full until the deadline."""
        ticket = make_ticket()
        event = register(tickets, make_event(hours_until_start=30), ticket)

        policy = await refund_service.mark_tickets_refundable_for_reschedule(event.id, NOW + timedelta(hours=6))
        eligibility = await refund_service.check_eligibility(ticket, event)

        assert policy.refund_deadline_hours == 24
        assert policy.processing_fee_percentage == 0
        assert eligibility.is_eligible is True
        assert eligibility.refund_percentage == 1.0
        assert eligibility.processing_fee == 0

    @pytest.mark.asyncio
    async def test_reschedule_unknown_event(self, refund_service):
        """Test rescheduling a missing event."""
        with pytest.raises(EventNotFoundError):
            await refund_service.mark_tickets_refundable_for_reschedule("evt_missing", NOW)

    @pytest.mark.asyncio
    async def test_cancellation_auto_approves_pending(self, refund_service, tickets):
        """Test pending requests of a cancelled event are approved in bulk."""
        first, second = make_ticket(1), make_ticket(2)
        event = register(tickets, None, first, second)
        await refund_service.submit_refund(first, event, RefundReason.CANNOT_ATTEND)
        await refund_service.submit_refund(second, event, RefundReason.OTHER)

        approved = await refund_service.process_event_cancellation_refunds(event.id)

        assert len(approved) == 2
        assert all(r.status == RefundStatus.APPROVED for r in approved)

    @pytest.mark.asyncio
    async def test_analytics(self, refund_service, tickets, gateway):
        """Test refund statistics for an event."""
        ticket_list = [make_ticket(n) for n in range(1, 5)]
        event = register(tickets, None, *ticket_list)

        completed = await refund_service.submit_refund(ticket_list[0], event, RefundReason.CANNOT_ATTEND)
        await refund_service.approve_refund(completed.id, ORGANIZER_ID, process=False)
        await refund_service.process_refund(completed.id)
        rejected = await refund_service.submit_refund(ticket_list[1], event, RefundReason.OTHER)
        await refund_service.reject_refund(rejected.id, ORGANIZER_ID, "Outside policy")
        await refund_service.submit_refund(ticket_list[2], event, RefundReason.CANNOT_ATTEND)

        analytics = await refund_service.get_refund_analytics(
            NOW - timedelta(days=1), NOW + timedelta(days=1), event_id=event.id
        )

        assert analytics.total_requests == 3
        assert analytics.completed_refunds == 1
        assert analytics.rejected_requests == 1
        assert analytics.pending_requests == 1
        assert analytics.total_amount_refunded == 100000
        assert analytics.total_processing_fees == 5000
        assert analytics.refund_rate == 0.25
        assert analytics.top_reasons["cannot_attend"] == 2
