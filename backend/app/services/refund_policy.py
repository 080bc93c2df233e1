"""
Refund eligibility rules.

The evaluator is pure: it reads a ticket, its event and a policy, and
decides whether a refund is allowed and for how much. It never touches
storage and never raises for an ineligible ticket.
"""

from datetime import datetime, timedelta
from typing import Callable, Optional

from app.models.refund import RefundEligibilityResult, RefundPolicy
from app.models.ticket import Event, EventStatus, Ticket

Clock = Callable[[], datetime]


class RefundPolicyEvaluator:
    """Evaluates refund eligibility against a refund policy."""

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or datetime.utcnow

    def evaluate(
        self,
        ticket: Ticket,
        event: Event,
        policy: Optional[RefundPolicy] = None,
        *,
        has_active_request: bool = False,
        has_completed_refund: bool = False,
        now: Optional[datetime] = None
    ) -> RefundEligibilityResult:
        """
        Decide whether ``ticket`` can be refunded.

        Rules are checked in order; the first one that applies wins.

        Args:
            ticket: Ticket to refund
            event: Event the ticket belongs to
            policy: Resolved policy, or None for the default policy
            has_active_request: The ticket already has a non-final request
            has_completed_refund: The ticket was already refunded
            now: Evaluation time, defaults to the clock

        Returns:
            Eligibility result with amount, percentage, fee and net refund
        """
        if ticket.is_used:
            return RefundEligibilityResult.not_eligible("This ticket has already been used")

        if has_active_request:
            return RefundEligibilityResult.not_eligible("A refund request is already pending for this ticket")

        if has_completed_refund:
            return RefundEligibilityResult.not_eligible("This ticket has already been refunded")

        if event.status == EventStatus.CANCELLED:
            # Cancelled events refund in full with no fee, whatever the policy says
            return RefundEligibilityResult.eligible(
                amount=ticket.price,
                percentage=1.0,
                fee=0.0,
                deadline=None,
                policy=policy or RefundPolicy.default_policy(event.id)
            )

        if event.status == EventStatus.COMPLETED:
            return RefundEligibilityResult.not_eligible("The event has already ended")

        policy = policy or RefundPolicy.default_policy(event.id)

        if not policy.is_refundable:
            return RefundEligibilityResult.not_eligible("This ticket type is non-refundable")

        now = now or self.clock()
        hours_until_event = (event.start_date - now).total_seconds() / 3600

        if hours_until_event < policy.refund_deadline_hours:
            return RefundEligibilityResult.not_eligible(
                f"Refund deadline has passed (must be {policy.refund_deadline_hours}+ hours before event)"
            )

        percentage = self.refund_percentage(policy, hours_until_event)
        amount = ticket.price * percentage
        fee = amount * policy.processing_fee_percentage

        return RefundEligibilityResult.eligible(
            amount=amount,
            percentage=percentage,
            fee=fee,
            deadline=self.refund_deadline(event, policy),
            policy=policy
        )

    @staticmethod
    def refund_percentage(policy: RefundPolicy, hours_until_event: float) -> float:
        """Share of the ticket price refunded this many hours before the event."""
        if policy.full_refund_deadline_hours is not None and hours_until_event >= policy.full_refund_deadline_hours:
            return 1.0
        if (
            policy.partial_refund_deadline_hours is not None
            and policy.partial_refund_percentage is not None
            and hours_until_event >= policy.partial_refund_deadline_hours
        ):
            return policy.partial_refund_percentage
        return policy.refund_percentage

    @staticmethod
    def refund_deadline(event: Event, policy: RefundPolicy) -> datetime:
        return event.start_date - timedelta(hours=policy.refund_deadline_hours)
