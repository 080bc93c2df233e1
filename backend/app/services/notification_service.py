"""
Cancellation notices to ticket holders.

Templates use ``{{placeholder}}`` fields and an optional
``{{#refund_details}}...{{/refund_details}}`` section. Delivery goes through
a ``NotificationSender``; the default sender writes to an in-memory outbox
and the log, leaving push/SMS/email delivery to the messaging platform.
"""

import logging
import re
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from app.config.settlement_config import get_processing_time
from app.models.cancellation import (
    CancellationNotificationResult,
    CompensationType,
    EventCancellation,
    NotificationPreview,
    NotificationTemplate,
)
from app.models.refund import RefundPaymentMethod
from app.models.ticket import Ticket
from app.utils.phone_validator import mask_phone

logger = logging.getLogger(__name__)

REFUND_DETAILS_SECTION = re.compile(r"\{\{#refund_details\}\}(.*?)\{\{/refund_details\}\}\n?", re.DOTALL)
PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")

SAMPLE_RECIPIENT_COUNT = 3


def format_money(amount: float, currency: str = "UGX") -> str:
    """Format an amount for display, e.g. ``UGX 150,000``."""
    return f"{currency} {amount:,.0f}"


class NotificationRecipient(BaseModel):
    """A ticket holder and what they are owed."""
    user_id: str
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    ticket_count: int = 0
    refund_amount: float = 0.0
    payment_method: RefundPaymentMethod = RefundPaymentMethod.MTN_MOBILE_MONEY

    @property
    def contact(self) -> Optional[str]:
        return self.email or self.phone


class OutboundMessage(BaseModel):
    recipient_id: str
    to: str
    subject: str
    body: str
    queued_at: datetime = Field(default_factory=datetime.utcnow)


class NotificationDeliveryError(Exception):
    """Raised by a sender when a message cannot be delivered."""


class NotificationSender(ABC):

    @abstractmethod
    async def send(self, recipient: NotificationRecipient, subject: str, body: str) -> None:
        """Deliver one message; raise NotificationDeliveryError on failure."""


class OutboxNotificationSender(NotificationSender):
    """Queues messages in memory for the messaging platform to pick up."""

    def __init__(self):
        self.outbox: List[OutboundMessage] = []

    async def send(self, recipient: NotificationRecipient, subject: str, body: str) -> None:
        if not recipient.contact:
            raise NotificationDeliveryError(f"No email or phone number for recipient {recipient.user_id}")

        self.outbox.append(OutboundMessage(recipient_id=recipient.user_id, to=recipient.contact, subject=subject, body=body))
        shown = recipient.email or mask_phone(recipient.phone)
        logger.info(f"Queued cancellation notice for {shown}")


class NotificationService:
    """Renders and sends cancellation notices."""

    def __init__(self, sender: Optional[NotificationSender] = None):
        self.sender = sender or OutboxNotificationSender()

    @staticmethod
    def render(template: NotificationTemplate, context: Dict[str, str]) -> Dict[str, str]:
        """
        Fill a template.

        Unknown placeholders are left as they are. The refund details
        section is kept or removed according to the template.

        Returns:
            {"subject": ..., "body": ...}
        """
        body = template.body
        if template.include_refund_details:
            body = REFUND_DETAILS_SECTION.sub(lambda m: m.group(1).lstrip("\n"), body)
        else:
            body = REFUND_DETAILS_SECTION.sub("", body)

        def fill(text: str) -> str:
            return PLACEHOLDER.sub(lambda m: context.get(m.group(1), m.group(0)), text)

        return {"subject": fill(template.subject), "body": fill(body)}

    @staticmethod
    def build_recipients(cancellation: EventCancellation, tickets: List[Ticket]) -> List[NotificationRecipient]:
        """One recipient per ticket holder, with the total they are owed."""
        plan = cancellation.compensation_plan
        recipients: Dict[str, NotificationRecipient] = {}
        for ticket in tickets:
            if not ticket.is_sold:
                continue
            recipient = recipients.get(ticket.user_id)
            if recipient is None:
                recipient = NotificationRecipient(
                    user_id=ticket.user_id,
                    name=ticket.user_name,
                    email=ticket.user_email,
                    phone=ticket.user_phone,
                    payment_method=ticket.payment_method
                )
                recipients[ticket.user_id] = recipient
            recipient.ticket_count += 1
            recipient.refund_amount += plan.amount_for(ticket.price)
        return list(recipients.values())

    @staticmethod
    def _context(cancellation: EventCancellation, refund_amount: float, method: RefundPaymentMethod) -> Dict[str, str]:
        if cancellation.compensation_plan.compensation_type == CompensationType.EVENT_CREDIT:
            refund_method = "EventPass wallet credit"
            timeline = get_processing_time(RefundPaymentMethod.WALLET.value)
        else:
            refund_method = "original payment method"
            timeline = get_processing_time(method.value)

        event_date = (
            cancellation.event_date.strftime("%d %B %Y")
            if cancellation.event_date else "the scheduled date"
        )
        return {
            "event_name": cancellation.event_title,
            "event_date": event_date,
            "refund_amount": format_money(refund_amount, cancellation.impact.currency),
            "refund_method": refund_method,
            "refund_timeline": timeline
        }

    def preview(self, cancellation: EventCancellation, recipients: List[NotificationRecipient]) -> NotificationPreview:
        """Render the notice as the organizer will see it before confirming."""
        template = cancellation.compensation_plan.notification_template or NotificationTemplate.default_cancellation()
        context = self._context(
            cancellation,
            cancellation.impact.refund_total,
            RefundPaymentMethod.MTN_MOBILE_MONEY
        )
        context["refund_timeline"] = "1-5 business days"
        rendered = self.render(template, context)

        return NotificationPreview(
            subject=rendered["subject"],
            body=rendered["body"],
            recipient_count=len(recipients),
            sample_recipients=[r.contact for r in recipients if r.contact][:SAMPLE_RECIPIENT_COUNT]
        )

    async def send(
        self,
        cancellation: EventCancellation,
        recipients: List[NotificationRecipient]
    ) -> CancellationNotificationResult:
        """
        Send the notice to every recipient.

        Delivery failures are counted and reported, never raised.
        """
        template = cancellation.compensation_plan.notification_template or NotificationTemplate.default_cancellation()
        result = CancellationNotificationResult()

        for recipient in recipients:
            rendered = self.render(
                template,
                self._context(cancellation, recipient.refund_amount, recipient.payment_method)
            )
            try:
                await self.sender.send(recipient, rendered["subject"], rendered["body"])
                result.sent += 1
            except NotificationDeliveryError as e:
                result.failed += 1
                result.errors.append(str(e))
                logger.warning(f"Cancellation notice not delivered: {str(e)}")

        logger.info(
            f"Cancellation notices for {cancellation.event_title}: {result.sent} sent, {result.failed} failed"
        )
        return result
