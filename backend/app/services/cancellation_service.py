"""
Cancellation service - whole-event cancellation with compensation.

An organizer drafts a cancellation (impact snapshot plus compensation plan),
confirms it by typing the confirmation phrase, then the pipeline:

1. marks the event cancelled
2. invalidates its tickets
3. compensates every sold ticket on a bounded worker pool
4. notifies ticket holders
5. finalizes the record

Provider failures on individual tickets never abort the pipeline; they are
recorded as ``refund_failed`` errors and can be retried later. Running the
pipeline again for the same cancellation is safe: tickets that already have
a completed refund are not paid twice.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel

from app.core.config import settings
from app.core.exceptions import (
    ActiveRefundExistsError,
    AlreadyProcessedError,
    AppError,
    CancellationAlreadyExistsError,
    CancellationNotFoundError,
    CancellationNotReversibleError,
    InvalidCancellationStateError,
    InvalidConfirmationCodeError,
    InvalidTransitionError,
    PermissionDeniedError,
    ValidationError,
)
from app.models.cancellation import (
    CancellationAnalytics,
    CancellationImpact,
    CancellationNotificationResult,
    CancellationProcessingError,
    CancellationProgress,
    CancellationReason,
    CancellationStatus,
    CompensationPlan,
    CompensationType,
    EventCancellation,
    NotificationPreview,
    NotificationTemplate,
    PaymentMethodImpact,
    PlatformFeeHandling,
    ProcessingErrorType,
    ProcessingMethod,
    ProcessingPhase,
    TicketTypeImpact,
)
from app.models.refund import RefundPaymentMethod, RefundReason, RefundRequest, RefundStatus
from app.models.ticket import Event, EventStatus, Ticket
from app.repositories.cancellation_store import CancellationStore
from app.repositories.ticket_directory import TicketDirectory
from app.config.settlement_config import get_processing_time
from app.services.analytics import AnalyticsTracker, CancellationAnalyticsEvent
from app.services.event_bus import EventBus
from app.services.notification_service import NotificationService
from app.services.refund_service import SYSTEM_ACTOR, RefundService
from app.utils.helpers import round_money
from app.utils.locks import KeyedLock

logger = logging.getLogger(__name__)

# Outcomes of compensating one ticket
OUTCOME_PROCESSED = "processed"
OUTCOME_FAILED = "failed"
OUTCOME_SKIPPED = "skipped"
OUTCOME_AWAITING_MANUAL = "awaiting_manual"


class TicketOutcome(BaseModel):
    ticket_id: str
    outcome: str
    refund_request_id: Optional[str] = None
    message: Optional[str] = None
    error_type: ProcessingErrorType = ProcessingErrorType.REFUND_FAILED


class _ProcessingRun:
    """Step counter and per-ticket outcomes of one pipeline run, behind one lock."""

    def __init__(self, service: "CancellationService", cancellation_id: str, total_steps: int):
        self.service = service
        self.cancellation_id = cancellation_id
        self.total_steps = total_steps
        self.step = 0
        self.outcomes: Dict[str, TicketOutcome] = {}
        self._lock = asyncio.Lock()

    async def advance(self, phase: ProcessingPhase, message: str) -> None:
        async with self._lock:
            self.step = min(self.step + 1, self.total_steps)
            await self.service.event_bus.cancellation_progress.publish(CancellationProgress(
                cancellation_id=self.cancellation_id,
                phase=phase,
                current_step=self.step,
                total_steps=self.total_steps,
                message=message
            ))

    async def finish(self, phase: ProcessingPhase, message: str) -> None:
        async with self._lock:
            self.step = self.total_steps
            await self.service.event_bus.cancellation_progress.publish(CancellationProgress(
                cancellation_id=self.cancellation_id,
                phase=phase,
                current_step=self.step,
                total_steps=self.total_steps,
                message=message
            ))

    async def record(self, outcome: TicketOutcome) -> None:
        async with self._lock:
            self.outcomes[outcome.ticket_id] = outcome

    def count(self, outcome: str) -> int:
        return sum(1 for o in self.outcomes.values() if o.outcome == outcome)


class CancellationService:
    """Event cancellation orchestrator."""

    def __init__(
        self,
        store: CancellationStore,
        tickets: TicketDirectory,
        refund_service: RefundService,
        notification_service: NotificationService,
        analytics: AnalyticsTracker,
        event_bus: EventBus,
        confirmation_phrase: str = settings.CANCELLATION_CONFIRMATION_PHRASE,
        worker_pool_size: int = settings.CANCELLATION_WORKER_POOL_SIZE,
        processing_fee_estimate: float = settings.CANCELLATION_PROCESSING_FEE_ESTIMATE,
        deducted_fee_percentage: float = settings.CANCELLATION_DEDUCTED_FEE_PERCENTAGE,
        deadline_days: int = settings.COMPENSATION_DEADLINE_DAYS,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.store = store
        self.tickets = tickets
        self.refund_service = refund_service
        self.notification_service = notification_service
        self.analytics = analytics
        self.event_bus = event_bus
        self.confirmation_phrase = confirmation_phrase.strip().upper()
        self.worker_pool_size = max(1, worker_pool_size)
        self.processing_fee_estimate = processing_fee_estimate
        self.deducted_fee_percentage = deducted_fee_percentage
        self.deadline_days = deadline_days
        self.clock = clock or datetime.utcnow
        self._locks = KeyedLock()

    async def _load(self, cancellation_id: str) -> EventCancellation:
        cancellation = await self.store.get(cancellation_id)
        if cancellation is None:
            raise CancellationNotFoundError(cancellation_id)
        return cancellation

    async def _publish(self, cancellation: EventCancellation) -> None:
        await self.event_bus.cancellation_status_changed.publish(cancellation.model_copy(deep=True))

    def _transition(
        self,
        cancellation: EventCancellation,
        status: CancellationStatus,
        changed_by: Optional[str],
        note: Optional[str] = None,
        changed_at: Optional[datetime] = None
    ) -> None:
        old_status = cancellation.status
        cancellation.record_transition(
            status,
            changed_by=changed_by,
            note=note,
            changed_at=changed_at or self.clock()
        )
        logger.info(f"Cancellation {cancellation.id}: {old_status.value} -> {status.value}")

    # ------------------------------------------------------------------
    # Impact
    # ------------------------------------------------------------------

    async def calculate_impact(self, event: Event) -> CancellationImpact:
        """
        Snapshot of what cancelling ``event`` affects.

        Only paid tickets count as sold. Tickets that already have a
        completed refund are excluded from the refund total.
        """
        tickets = await self.tickets.get_event_tickets(event.id)
        sold = [t for t in tickets if t.is_sold]

        requests = await self.refund_service.get_event_refund_requests(event.id)
        refunded_ticket_ids = {r.ticket_id for r in requests if r.status == RefundStatus.COMPLETED}
        refundable = [t for t in sold if t.id not in refunded_ticket_ids]

        gross_revenue = sum(t.price for t in sold)
        refund_total = sum(t.price for t in refundable)
        fees_estimate = refund_total * self.processing_fee_estimate

        ticket_types: Dict[str, TicketTypeImpact] = {}
        for ticket in sold:
            entry = ticket_types.setdefault(ticket.ticket_type.id, TicketTypeImpact(
                ticket_type_id=ticket.ticket_type.id,
                name=ticket.ticket_type.name
            ))
            entry.tickets_sold += 1
            entry.revenue += ticket.price
            if ticket.id not in refunded_ticket_ids:
                entry.refund_amount += ticket.price

        methods: Dict[RefundPaymentMethod, PaymentMethodImpact] = {}
        for ticket in refundable:
            entry = methods.setdefault(ticket.payment_method, PaymentMethodImpact(
                payment_method=ticket.payment_method,
                estimated_processing_time=get_processing_time(ticket.payment_method.value)
            ))
            entry.ticket_count += 1
            entry.refund_amount += ticket.price

        return CancellationImpact(
            event_id=event.id,
            calculated_at=self.clock(),
            tickets_sold=len(sold),
            attendees_count=len({t.user_id for t in sold}),
            check_ins_completed=sum(1 for t in sold if t.is_used),
            pending_payments=len(tickets) - len(sold),
            transferred_tickets=sum(1 for t in sold if t.is_transferred),
            previously_refunded_tickets=len(refunded_ticket_ids & {t.id for t in sold}),
            gross_revenue=round_money(gross_revenue),
            refund_total=round_money(refund_total),
            platform_fees_retained=0.0,  # Waived on cancellation
            processing_fees_estimate=round_money(fees_estimate),
            net_refund_amount=round_money(refund_total - fees_estimate),
            organizer_payout_adjustment=round_money(-refund_total),
            currency=sold[0].currency if sold else settings.DEFAULT_CURRENCY,
            ticket_type_breakdown=list(ticket_types.values()),
            payment_method_breakdown=list(methods.values())
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def create_cancellation(
        self,
        event: Event,
        reason: CancellationReason,
        note: Optional[str],
        initiated_by: str,
        is_admin: bool = False
    ) -> EventCancellation:
        """
        Start cancelling an event. The record is a draft until confirmed.

        Raises:
            CancellationAlreadyExistsError: Event is cancelled or has a cancellation
            InvalidCancellationStateError: Event has already ended
            PermissionDeniedError: Admin-only reason used by a non-admin
        """
        if reason.is_admin_only and not is_admin:
            raise PermissionDeniedError("Only administrators can cancel an event for this reason")
        if event.status == EventStatus.CANCELLED:
            raise CancellationAlreadyExistsError(event.id)
        if event.status == EventStatus.COMPLETED:
            raise InvalidCancellationStateError("Events that have ended cannot be cancelled")

        impact = await self.calculate_impact(event)
        now = self.clock()

        plan = CompensationPlan(
            event_id=event.id,
            compensation_type=(
                CompensationType.FULL_REFUND if reason.warrants_full_refund else CompensationType.PARTIAL_REFUND
            ),
            refund_percentage=1.0,
            processing_deadline=now + timedelta(days=self.deadline_days),
            total_refund_amount=impact.refund_total,
            estimated_processing_fees=impact.processing_fees_estimate,
            notification_template=NotificationTemplate.default_cancellation()
        )

        cancellation = EventCancellation(
            event_id=event.id,
            event_title=event.title,
            event_date=event.start_date,
            organizer_id=event.organizer_id,
            reason=reason,
            reason_note=note,
            impact=impact,
            compensation_plan=plan,
            created_at=now,
            initiated_by=initiated_by
        )

        await self.store.insert(cancellation)

        self.analytics.track(CancellationAnalyticsEvent.CANCEL_STARTED, {
            "event_id": event.id,
            "reason": reason.value,
            "tickets_sold": impact.tickets_sold,
            "refund_total": impact.refund_total
        })
        await self._publish(cancellation)
        return cancellation

    async def update_compensation_plan(self, cancellation_id: str, plan: CompensationPlan) -> EventCancellation:
        """
        Replace the compensation plan of a draft or confirming cancellation.

        Totals are recomputed from the impact snapshot.
        """
        if plan.compensation_type != CompensationType.FULL_REFUND and plan.refund_percentage <= 0:
            raise ValidationError("Refund percentage must be greater than 0")

        async with self._locks.acquire(cancellation_id):
            cancellation = await self._load(cancellation_id)
            if not cancellation.is_reversible:
                raise CancellationNotReversibleError()

            plan.event_id = cancellation.event_id
            total = plan.amount_for(cancellation.impact.refund_total)
            plan.total_refund_amount = round_money(total)
            if plan.platform_fee_handling == PlatformFeeHandling.DEDUCT:
                plan.estimated_processing_fees = round_money(total * self.deducted_fee_percentage)
            else:
                plan.estimated_processing_fees = round_money(total * self.processing_fee_estimate)

            cancellation.compensation_plan = plan
            await self.store.save(cancellation)

        logger.info(f"Compensation plan for cancellation {cancellation_id}: {plan.compensation_type.value}")
        await self._publish(cancellation)
        return cancellation

    async def confirm_cancellation(
        self,
        cancellation_id: str,
        confirmation_code: str,
        confirmed_by: str
    ) -> EventCancellation:
        """
        Confirm with the typed confirmation phrase (case and surrounding
        whitespace are ignored). Confirming again records the new actor.

        Raises:
            InvalidConfirmationCodeError: Phrase does not match
            CancellationNotReversibleError: Already processing or finished
        """
        if not confirmed_by:
            raise ValidationError("Confirming a cancellation requires an actor")
        if (confirmation_code or "").strip().upper() != self.confirmation_phrase:
            raise InvalidConfirmationCodeError(self.confirmation_phrase)

        async with self._locks.acquire(cancellation_id):
            cancellation = await self._load(cancellation_id)
            if not cancellation.is_reversible:
                raise CancellationNotReversibleError()

            cancellation.confirmed_at = self.clock()
            cancellation.confirmed_by = confirmed_by
            cancellation.confirmation_code = confirmation_code
            self._transition(
                cancellation,
                CancellationStatus.CONFIRMING,
                confirmed_by,
                "Cancellation confirmed",
                changed_at=cancellation.confirmed_at
            )
            await self.store.save(cancellation)

        self.analytics.track(CancellationAnalyticsEvent.CANCEL_CONFIRMED, {
            "cancellation_id": cancellation_id,
            "event_id": cancellation.event_id
        })
        await self._publish(cancellation)
        return cancellation

    async def cancel_draft(self, cancellation_id: str) -> None:
        """Discard a cancellation that has not started processing."""
        async with self._locks.acquire(cancellation_id):
            cancellation = await self._load(cancellation_id)
            if not cancellation.is_reversible:
                raise CancellationNotReversibleError()
            await self.store.delete(cancellation_id)

        logger.info(f"Cancellation draft {cancellation_id} for event {cancellation.event_id} discarded")

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def process_cancellation(self, cancellation_id: str) -> EventCancellation:
        """
        Run the cancellation pipeline for a confirmed cancellation.

        Returns:
            The record, ``completed`` (possibly with recorded refund failures)
            or ``failed`` if the event or its tickets could not be updated.

        Raises:
            InvalidCancellationStateError: Not confirmed
        """
        async with self._locks.acquire(cancellation_id):
            cancellation = await self._load(cancellation_id)
            if cancellation.status != CancellationStatus.CONFIRMING:
                raise InvalidCancellationStateError("Cancellation must be confirmed before processing")

            cancellation.processing_started_at = self.clock()
            self._transition(cancellation, CancellationStatus.PROCESSING, SYSTEM_ACTOR, "Processing started")
            await self.store.save(cancellation)
            await self._publish(cancellation)

            return await self._run_pipeline(cancellation)

    async def resume_interrupted_cancellations(self) -> List[EventCancellation]:
        """Re-run the pipeline for cancellations left in ``processing`` by a restart."""
        resumed = []
        for stale in await self.store.find(status=CancellationStatus.PROCESSING):
            async with self._locks.acquire(stale.id):
                cancellation = await self._load(stale.id)
                if cancellation.status != CancellationStatus.PROCESSING:
                    continue
                logger.info(f"Resuming cancellation {cancellation.id} for event {cancellation.event_id}")
                resumed.append(await self._run_pipeline(cancellation))
        return resumed

    async def _run_pipeline(self, cancellation: EventCancellation) -> EventCancellation:
        # Caller holds the cancellation lock
        event = await self.tickets.get_event(cancellation.event_id)
        sold = [t for t in await self.tickets.get_event_tickets(cancellation.event_id) if t.is_sold]
        run = _ProcessingRun(self, cancellation.id, total_steps=len(sold) + 4)

        try:
            await run.advance(ProcessingPhase.UPDATING_EVENT, "Marking event as cancelled...")
            await self.tickets.mark_event_cancelled(cancellation.event_id)

            await run.advance(ProcessingPhase.INVALIDATING_TICKETS, "Invalidating tickets and QR codes...")
            invalidated = await self.tickets.invalidate_tickets(cancellation.event_id)
            logger.info(f"Invalidated {invalidated} tickets for event {cancellation.event_id}")
        except Exception as e:
            logger.exception(f"Cancellation {cancellation.id} aborted while updating the event")
            return await self._abort(cancellation, str(e) or type(e).__name__)

        if event is not None:
            event.status = EventStatus.CANCELLED

        semaphore = asyncio.Semaphore(self.worker_pool_size)
        total = len(sold)

        async def worker(index: int, ticket: Ticket) -> None:
            async with semaphore:
                await run.advance(ProcessingPhase.PROCESSING_REFUNDS, f"Processing refund {index + 1} of {total}...")
                await run.record(await self._compensate_ticket(cancellation, ticket, event))

        await asyncio.gather(*(worker(i, ticket) for i, ticket in enumerate(sold)))
        self._apply_outcomes(cancellation, run)

        self.analytics.track(CancellationAnalyticsEvent.REFUNDS_TRIGGERED, {
            "cancellation_id": cancellation.id,
            "refunds_created": cancellation.refund_requests_created
        })

        await run.advance(ProcessingPhase.SENDING_NOTIFICATIONS, "Sending notifications to attendees...")
        if cancellation.notifications_sent + cancellation.notifications_failed == 0:
            await self._notify(cancellation, sold)

        await run.finish(ProcessingPhase.FINALIZING, "Finalizing cancellation...")
        cancellation.completed_at = self.clock()
        self._transition(cancellation, CancellationStatus.COMPLETED, SYSTEM_ACTOR, self._summary(cancellation))
        await self.store.save(cancellation)
        await self._publish(cancellation)

        self.analytics.track(CancellationAnalyticsEvent.CANCEL_COMPLETED, {
            "cancellation_id": cancellation.id,
            "refunds_processed": cancellation.refunds_processed,
            "refunds_failed": cancellation.refunds_failed,
            "refunds_skipped": cancellation.refunds_skipped
        })
        if cancellation.fully_failed:
            logger.error(f"Cancellation {cancellation.id} completed but every refund failed")
        return cancellation

    async def _abort(self, cancellation: EventCancellation, message: str) -> EventCancellation:
        cancellation.processing_errors.append(CancellationProcessingError(
            error_type=ProcessingErrorType.TICKET_UPDATE_FAILED,
            message=message
        ))
        self._transition(cancellation, CancellationStatus.FAILED, SYSTEM_ACTOR, f"Processing aborted: {message}")
        await self.store.save(cancellation)
        await self._publish(cancellation)
        self.analytics.track(CancellationAnalyticsEvent.CANCEL_FAILED, {
            "cancellation_id": cancellation.id,
            "error": message
        })
        return cancellation

    @staticmethod
    def _summary(cancellation: EventCancellation) -> str:
        return (
            f"{cancellation.refunds_processed} refunded, {cancellation.refunds_failed} failed, "
            f"{cancellation.refunds_skipped} already refunded"
        )

    def _apply_outcomes(self, cancellation: EventCancellation, run: _ProcessingRun) -> None:
        """Set counters from this run's outcomes and reconcile the error list."""
        cancellation.refunds_processed = run.count(OUTCOME_PROCESSED)
        cancellation.refunds_failed = run.count(OUTCOME_FAILED)
        cancellation.refunds_skipped = run.count(OUTCOME_SKIPPED)
        cancellation.refund_requests_created = (
            cancellation.refunds_processed + cancellation.refunds_failed + run.count(OUTCOME_AWAITING_MANUAL)
        )

        open_errors = {e.ticket_id: e for e in cancellation.unresolved_refund_errors}
        for outcome in run.outcomes.values():
            existing = open_errors.get(outcome.ticket_id)
            if outcome.outcome == OUTCOME_FAILED:
                if existing is None:
                    cancellation.processing_errors.append(CancellationProcessingError(
                        ticket_id=outcome.ticket_id,
                        refund_request_id=outcome.refund_request_id,
                        error_type=outcome.error_type,
                        message=outcome.message or "Refund failed"
                    ))
                else:
                    existing.error_type = outcome.error_type
                    existing.message = outcome.message or existing.message
                    existing.refund_request_id = outcome.refund_request_id or existing.refund_request_id
            elif existing is not None and outcome.outcome == OUTCOME_PROCESSED:
                existing.resolve("Refund completed", self.clock())

    def _compensation_for(self, cancellation: EventCancellation, ticket: Ticket):
        plan = cancellation.compensation_plan
        amount = round_money(plan.amount_for(ticket.price))
        method = RefundPaymentMethod.WALLET if plan.compensation_type == CompensationType.EVENT_CREDIT else None
        fee = self.deducted_fee_percentage if plan.platform_fee_handling == PlatformFeeHandling.DEDUCT else 0.0
        return amount, method, fee

    async def _compensate_ticket(
        self,
        cancellation: EventCancellation,
        ticket: Ticket,
        event: Optional[Event]
    ) -> TicketOutcome:
        """
        Bring one ticket's refund to a final state.

        Reuses whatever request the ticket already has: a completed one is
        left alone, a pending one is approved, an approved one is settled,
        a failed one is retried. Otherwise a new request is issued.
        """
        manual = cancellation.compensation_plan.processing_method == ProcessingMethod.MANUAL

        # A concurrent submission or settlement can change the request under us; look again
        for _ in range(3):
            try:
                requests = await self.refund_service.get_ticket_refund_requests(ticket.id)
                completed = next((r for r in requests if r.status == RefundStatus.COMPLETED), None)
                if completed is not None:
                    return self._completed_outcome(cancellation, ticket, completed)

                request = next((r for r in requests if r.is_active), None)
                if request is None:
                    amount, method, fee = self._compensation_for(cancellation, ticket)
                    if amount <= 0:
                        return TicketOutcome(ticket_id=ticket.id, outcome=OUTCOME_SKIPPED, message="Nothing to refund")
                    request = await self.refund_service.issue_manual_refund(
                        ticket,
                        amount,
                        RefundReason.EVENT_CANCELLED,
                        note=f"Event cancelled: {cancellation.reason.value}",
                        issued_by=cancellation.confirmed_by or cancellation.initiated_by,
                        event=event,
                        payment_method=method,
                        processing_fee_percentage=fee,
                        max_amount=amount,
                        process=False
                    )

                return await self._settle_request(request, manual)
            except (ActiveRefundExistsError, AlreadyProcessedError, InvalidTransitionError):
                continue
            except AppError as e:
                logger.warning(f"Refund for ticket {ticket.ticket_number} failed: {e.message}")
                return TicketOutcome(ticket_id=ticket.id, outcome=OUTCOME_FAILED, message=e.message)
            except Exception as e:
                logger.exception(f"Unexpected error compensating ticket {ticket.ticket_number}")
                return TicketOutcome(
                    ticket_id=ticket.id,
                    outcome=OUTCOME_FAILED,
                    message=str(e) or type(e).__name__,
                    error_type=ProcessingErrorType.UNKNOWN
                )

        return TicketOutcome(
            ticket_id=ticket.id,
            outcome=OUTCOME_FAILED,
            message="Refund request for this ticket kept changing; retry later"
        )

    async def _settle_request(self, request: RefundRequest, manual: bool) -> TicketOutcome:
        if request.status == RefundStatus.PROCESSING:
            request = await self.refund_service.recover_refund(request.id)

        if request.status == RefundStatus.PENDING:
            request = await self.refund_service.approve_refund(
                request.id,
                SYSTEM_ACTOR,
                note="Auto-approved due to event cancellation",
                process=False
            )

        if manual and request.status in (RefundStatus.APPROVED, RefundStatus.FAILED):
            return TicketOutcome(
                ticket_id=request.ticket_id,
                outcome=OUTCOME_AWAITING_MANUAL,
                refund_request_id=request.id
            )

        if request.status == RefundStatus.APPROVED:
            await self.refund_service.process_refund(request.id, SYSTEM_ACTOR)
        elif request.status == RefundStatus.FAILED and request.is_retryable:
            await self.refund_service.retry_refund(request.id, SYSTEM_ACTOR)

        request = await self.refund_service.get_refund_request(request.id)
        if request.status == RefundStatus.COMPLETED:
            return TicketOutcome(ticket_id=request.ticket_id, outcome=OUTCOME_PROCESSED, refund_request_id=request.id)
        return TicketOutcome(
            ticket_id=request.ticket_id,
            outcome=OUTCOME_FAILED,
            refund_request_id=request.id,
            message=request.failure_reason or f"Refund is {request.status.value}"
        )

    @staticmethod
    def _completed_outcome(cancellation: EventCancellation, ticket: Ticket, request: RefundRequest) -> TicketOutcome:
        started = cancellation.processing_started_at
        # Refunded before this cancellation began processing
        if started and request.completed_at and request.completed_at < started:
            return TicketOutcome(ticket_id=ticket.id, outcome=OUTCOME_SKIPPED, refund_request_id=request.id)
        return TicketOutcome(ticket_id=ticket.id, outcome=OUTCOME_PROCESSED, refund_request_id=request.id)

    async def _notify(self, cancellation: EventCancellation, sold: List[Ticket]) -> None:
        recipients = self.notification_service.build_recipients(cancellation, sold)
        try:
            result = await self.notification_service.send(cancellation, recipients)
        except Exception as e:
            logger.exception(f"Sending notices for cancellation {cancellation.id} failed")
            result = CancellationNotificationResult(
                failed=len(recipients),
                errors=[str(e) or type(e).__name__]
            )

        cancellation.notifications_sent = result.sent
        cancellation.notifications_failed = result.failed
        for message in result.errors:
            cancellation.processing_errors.append(CancellationProcessingError(
                error_type=ProcessingErrorType.NOTIFICATION_FAILED,
                message=message
            ))

        self.analytics.track(CancellationAnalyticsEvent.ATTENDEES_NOTIFIED, {
            "cancellation_id": cancellation.id,
            "notifications_sent": result.sent
        })

    async def retry_failed_refunds(self, cancellation_id: str) -> EventCancellation:
        """
        Retry the refunds a completed cancellation could not settle.

        Raises:
            InvalidCancellationStateError: Not completed or nothing failed
        """
        async with self._locks.acquire(cancellation_id):
            cancellation = await self._load(cancellation_id)
            if cancellation.status != CancellationStatus.COMPLETED or cancellation.refunds_failed == 0:
                raise InvalidCancellationStateError("No failed refunds to retry")

            event = await self.tickets.get_event(cancellation.event_id)
            errors = [e for e in cancellation.unresolved_refund_errors if e.ticket_id]
            run = _ProcessingRun(self, cancellation.id, total_steps=len(errors))
            semaphore = asyncio.Semaphore(self.worker_pool_size)

            async def worker(error: CancellationProcessingError) -> None:
                async with semaphore:
                    ticket = await self.tickets.get_ticket(error.ticket_id)
                    if ticket is None:
                        return
                    await run.advance(ProcessingPhase.PROCESSING_REFUNDS, f"Retrying refund for {ticket.ticket_number}...")
                    await run.record(await self._compensate_ticket(cancellation, ticket, event))

            await asyncio.gather(*(worker(error) for error in errors))

            recovered = 0
            for error in errors:
                outcome = run.outcomes.get(error.ticket_id)
                if outcome is None:
                    continue
                if outcome.outcome == OUTCOME_PROCESSED:
                    error.resolve("Retry successful", self.clock())
                    recovered += 1
                elif outcome.outcome == OUTCOME_FAILED:
                    error.error_type = outcome.error_type
                    error.message = outcome.message or error.message

            cancellation.refunds_processed += recovered
            cancellation.refunds_failed = max(0, cancellation.refunds_failed - recovered)
            await self.store.save(cancellation)

        logger.info(
            f"Retried {len(errors)} refunds for cancellation {cancellation_id}: "
            f"{recovered} recovered, {cancellation.refunds_failed} still failing"
        )
        await self._publish(cancellation)
        return cancellation

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    async def preview_notification(self, cancellation: EventCancellation) -> NotificationPreview:
        tickets = await self.tickets.get_event_tickets(cancellation.event_id)
        recipients = self.notification_service.build_recipients(cancellation, tickets)
        return self.notification_service.preview(cancellation, recipients)

    async def send_notifications(self, cancellation_id: str) -> CancellationNotificationResult:
        """Send (or resend) the cancellation notice to every ticket holder."""
        cancellation = await self._load(cancellation_id)
        tickets = await self.tickets.get_event_tickets(cancellation.event_id)
        recipients = self.notification_service.build_recipients(cancellation, tickets)
        return await self.notification_service.send(cancellation, recipients)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_cancellation(self, cancellation_id: str) -> Optional[EventCancellation]:
        return await self.store.get(cancellation_id)

    async def get_cancellation_for_event(self, event_id: str) -> Optional[EventCancellation]:
        return await self.store.get_for_event(event_id)

    async def get_organizer_cancellations(self, organizer_id: str) -> List[EventCancellation]:
        return await self.store.find(organizer_id=organizer_id)

    async def get_cancellation_analytics(
        self,
        organizer_id: str,
        period_start: datetime,
        period_end: datetime
    ) -> CancellationAnalytics:
        cancellations = [
            c for c in await self.store.find(organizer_id=organizer_id)
            if period_start <= c.created_at <= period_end
        ]

        by_reason: Dict[str, int] = {}
        for cancellation in cancellations:
            by_reason[cancellation.reason.value] = by_reason.get(cancellation.reason.value, 0) + 1

        total_refunded = 0.0
        durations = []
        processed = failed = 0
        for cancellation in cancellations:
            if cancellation.status != CancellationStatus.COMPLETED:
                continue
            processed += cancellation.refunds_processed
            failed += cancellation.refunds_failed
            if cancellation.processing_started_at and cancellation.completed_at:
                durations.append((cancellation.completed_at - cancellation.processing_started_at).total_seconds())
            for transaction in await self.refund_service.get_refund_transactions(cancellation.event_id):
                if transaction.status == RefundStatus.COMPLETED:
                    total_refunded += transaction.refund_amount

        return CancellationAnalytics(
            organizer_id=organizer_id,
            period_start=period_start,
            period_end=period_end,
            total_cancellations=len(cancellations),
            cancellations_by_reason=by_reason,
            total_refunds_issued=round_money(total_refunded),
            average_processing_time_seconds=round(sum(durations) / len(durations), 2) if durations else 0.0,
            success_rate=round(processed / (processed + failed), 4) if processed + failed else 1.0
        )
