"""
Tests for cancellation notices.
"""

from datetime import datetime

import pytest

from app.models.cancellation import (
    CancellationImpact,
    CancellationReason,
    CompensationPlan,
    CompensationType,
    EventCancellation,
    NotificationTemplate,
)
from app.models.refund import RefundPaymentMethod
from app.models.ticket import TicketPaymentStatus
from app.services.notification_service import (
    NotificationRecipient,
    NotificationService,
    OutboxNotificationSender,
    format_money,
)

from conftest import make_ticket


def make_cancellation(compensation_type=CompensationType.FULL_REFUND, **plan_overrides):
    plan = CompensationPlan(
        event_id="evt_jazz",
        compensation_type=compensation_type,
        notification_template=NotificationTemplate.default_cancellation(),
        **plan_overrides
    )
    return EventCancellation(
        event_id="evt_jazz",
        event_title="Kampala Jazz Night",
        event_date=datetime(2026, 3, 5, 19, 0),
        organizer_id="org_kampala_live",
        reason=CancellationReason.VENUE_ISSUE,
        impact=CancellationImpact(event_id="evt_jazz", refund_total=300000),
        compensation_plan=plan,
        initiated_by="org_kampala_live"
    )


class TestRender:
    """Test template rendering."""

    def test_placeholders_filled(self):
        """Test known placeholders are replaced and unknown ones kept."""
        template = NotificationTemplate(subject="{{event_name}} update", body="Hi {{name}}, {{event_name}} moved.")

        rendered = NotificationService.render(template, {"event_name": "Jazz Night"})

        assert rendered["subject"] == "Jazz Night update"
        assert rendered["body"] == "Hi {{name}}, Jazz Night moved."

    def test_refund_section_kept(self):
        """Test the refund details section is unwrapped when included."""
        rendered = NotificationService.render(
            NotificationTemplate.default_cancellation(),
            {"refund_amount": "UGX 100,000", "refund_method": "original payment method", "refund_timeline": "Instant"}
        )

        assert "Refund Details:" in rendered["body"]
        assert "Amount: UGX 100,000" in rendered["body"]
        assert "{{#refund_details}}" not in rendered["body"]

    def test_refund_section_removed(self):
        """Test the refund details section is dropped when excluded."""
        template = NotificationTemplate.default_cancellation()
        template.include_refund_details = False

        rendered = NotificationService.render(template, {})

        assert "Refund Details:" not in rendered["body"]
        assert "{{/refund_details}}" not in rendered["body"]

    def test_format_money(self):
        """Test amounts are grouped without decimals."""
        assert format_money(150000) == "UGX 150,000"
        assert format_money(2500.4, "KES") == "KES 2,500"


class TestRecipients:
    """Test recipient building."""

    def test_one_recipient_per_holder(self):
        """Test holders with several tickets get one notice with the total."""
        tickets = [
            make_ticket(1),
            make_ticket(2, user_id="usr_0001"),
            make_ticket(3),
            make_ticket(4, payment_status=TicketPaymentStatus.PENDING),
        ]

        recipients = NotificationService.build_recipients(make_cancellation(), tickets)

        assert [r.user_id for r in recipients] == ["usr_0001", "usr_0003"]
        assert recipients[0].ticket_count == 2
        assert recipients[0].refund_amount == 200000

    def test_partial_plan_amounts(self):
        """Test recipients are owed the plan amount."""
        cancellation = make_cancellation(CompensationType.PARTIAL_REFUND, refund_percentage=0.25)

        recipients = NotificationService.build_recipients(cancellation, [make_ticket(1)])

        assert recipients[0].refund_amount == 25000


class TestSend:
    """Test delivery."""

    @pytest.mark.asyncio
    async def test_send_queues_messages(self):
        """Test each recipient gets a rendered message in the outbox."""
        sender = OutboxNotificationSender()
        service = NotificationService(sender)
        cancellation = make_cancellation()
        recipients = service.build_recipients(cancellation, [make_ticket(1), make_ticket(2)])

        result = await service.send(cancellation, recipients)

        assert result.sent == 2
        assert result.failed == 0
        assert sender.outbox[0].to == "holder1@example.com"
        assert sender.outbox[0].subject == "Event Cancelled: Kampala Jazz Night"
        assert "05 March 2026" in sender.outbox[0].body
        assert "Timeline: 1-24 hours" in sender.outbox[0].body

    @pytest.mark.asyncio
    async def test_unreachable_recipient_counted(self):
        """Test recipients without contact details are reported, not raised."""
        service = NotificationService()
        recipients = [
            NotificationRecipient(user_id="usr_0001", name="Holder 1", email="holder1@example.com"),
            NotificationRecipient(user_id="usr_0002", name="Holder 2"),
        ]

        result = await service.send(make_cancellation(), recipients)

        assert result.sent == 1
        assert result.failed == 1
        assert "usr_0002" in result.errors[0]

    @pytest.mark.asyncio
    async def test_credit_wording(self):
        """Test event credit notices mention the wallet."""
        sender = OutboxNotificationSender()
        service = NotificationService(sender)
        cancellation = make_cancellation(CompensationType.EVENT_CREDIT, credit_multiplier=1.2)
        recipients = [NotificationRecipient(
            user_id="usr_0001",
            name="Holder 1",
            phone="+256772123456",
            refund_amount=120000,
            payment_method=RefundPaymentMethod.AIRTEL_MONEY
        )]

        await service.send(cancellation, recipients)

        assert "Method: EventPass wallet credit" in sender.outbox[0].body
        assert "Amount: UGX 120,000" in sender.outbox[0].body
        assert sender.outbox[0].to == "+256772123456"

    def test_preview(self):
        """Test the preview shows the total and a sample of recipients."""
        service = NotificationService()
        recipients = service.build_recipients(make_cancellation(), [make_ticket(n) for n in range(1, 6)])

        preview = service.preview(make_cancellation(), recipients)

        assert preview.recipient_count == 5
        assert len(preview.sample_recipients) == 3
        assert "Amount: UGX 300,000" in preview.body
