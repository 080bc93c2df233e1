"""
Tests for the refund and cancellation API.
"""

from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from app.core.container import ServiceContainer
from app.main import create_app
from app.repositories.ticket_directory import InMemoryTicketDirectory
from app.services.settlement.simulation import SimulationSettlementGateway

from conftest import ORGANIZER_ID, make_event, make_ticket

HOLDER = {"X-Actor-Id": "usr_0001"}
ORGANIZER = {"X-Actor-Id": ORGANIZER_ID}
ADMIN = {"X-Actor-Id": "adm_ops", "X-Actor-Role": "admin"}
STRANGER = {"X-Actor-Id": "usr_stranger"}


@pytest.fixture
def client():
    tickets = InMemoryTicketDirectory()
    tickets.add_event(make_event(start_date=datetime.utcnow() + timedelta(hours=100)))
    for number in range(1, 4):
        tickets.add_ticket(make_ticket(number))

    container = ServiceContainer(tickets=tickets, gateway=SimulationSettlementGateway(failure_rate=0.0, seed=7))
    with TestClient(create_app(container)) as test_client:
        yield test_client


def submit(client, ticket_id="tkt_0001", reason="cannot_attend", headers=HOLDER):
    return client.post("/api/refunds", json={"ticket_id": ticket_id, "reason": reason}, headers=headers)


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["service"] == "eventpass-refunds"


class TestRefundRoutes:
    """Test refund endpoints."""

    def test_missing_actor(self, client):
        """Test requests without an actor are rejected."""
        response = client.post("/api/refunds", json={"ticket_id": "tkt_0001", "reason": "cannot_attend"})

        assert response.status_code == 401
        assert response.json()["detail"] == "Missing X-Actor-Id header"

    def test_eligibility(self, client):
        """Test the eligibility check."""
        response = client.get("/api/refunds/eligibility/tkt_0001")

        assert response.status_code == 200
        body = response.json()
        assert body["is_eligible"] is True
        assert body["refundable_amount"] == 100000
        assert body["net_refund"] == 95000

    def test_unknown_ticket(self, client):
        response = client.get("/api/refunds/eligibility/tkt_9999")

        assert response.status_code == 404
        assert response.json()["detail"] == "Ticket not found: tkt_9999"

    def test_submit_and_review(self, client):
        """Test a holder submits and the organizer rejects."""
        created = submit(client)
        assert created.status_code == 201
        request_id = created.json()["id"]

        rejected = client.post(f"/api/refunds/{request_id}/reject", json={"note": "Outside policy"}, headers=ORGANIZER)

        assert rejected.status_code == 200
        assert rejected.json()["status"] == "rejected"
        assert len(rejected.json()["status_history"]) == 2

    def test_duplicate_submission_conflict(self, client):
        """Test a second open request answers 409."""
        submit(client)

        response = submit(client)

        assert response.status_code == 409
        assert response.json()["detail"] == "A refund has already been requested for this ticket"

    def test_submit_someone_elses_ticket(self, client):
        """Test holders can only refund their own tickets."""
        response = submit(client, ticket_id="tkt_0002")

        assert response.status_code == 403

    def test_holder_reason_restricted(self, client):
        """Test holders cannot file reasons that skip review."""
        response = submit(client, reason="fraudulent")

        assert response.status_code == 422
        assert response.json()["detail"] == "Refund reason 'fraudulent' cannot be chosen by ticket holders"
        assert client.get("/api/refunds/mine", headers=HOLDER).json()["total"] == 0

    def test_settlement_is_organizer_only(self, client):
        """Test holders and strangers cannot trigger settlement or retries."""
        request_id = submit(client).json()["id"]

        for headers in (HOLDER, STRANGER):
            assert client.post(f"/api/refunds/{request_id}/process", headers=headers).status_code == 403
            assert client.post(f"/api/refunds/{request_id}/retry", headers=headers).status_code == 403

    def test_refund_visible_to_parties_only(self, client):
        """Test only the requester and the organizer can read a refund."""
        request_id = submit(client).json()["id"]

        assert client.get(f"/api/refunds/{request_id}", headers=HOLDER).status_code == 200
        assert client.get(f"/api/refunds/{request_id}", headers=ORGANIZER).status_code == 200
        assert client.get(f"/api/refunds/{request_id}", headers=STRANGER).status_code == 403
        assert client.get(f"/api/refunds/{request_id}/transactions", headers=STRANGER).status_code == 403

    def test_analytics_scoped_to_caller(self, client):
        """Test analytics cover the caller's own events."""
        submit(client)
        period = {"period_start": "2020-01-01T00:00:00", "period_end": "2100-01-01T00:00:00"}

        own = client.get("/api/refunds/analytics", params=period, headers=ORGANIZER)
        other = client.get("/api/refunds/analytics", params={**period, "organizer_id": "org_other"}, headers=ORGANIZER)
        by_holder = client.get("/api/refunds/analytics", params={**period, "event_id": "evt_jazz"}, headers=HOLDER)

        assert own.status_code == 200
        assert own.json()["total_requests"] == 1
        assert other.status_code == 403
        assert by_holder.status_code == 403

    def test_only_organizer_reviews(self, client):
        """Test a holder cannot approve their own request."""
        request_id = submit(client).json()["id"]

        response = client.post(f"/api/refunds/{request_id}/approve", json={}, headers=HOLDER)

        assert response.status_code == 403

    def test_approve_reduced_amount(self, client):
        """Test approving a reduced amount; settlement continues in the background."""
        request_id = submit(client).json()["id"]
        approved = client.post(
            f"/api/refunds/{request_id}/approve",
            json={"approved_amount": 80000, "note": "Partial"},
            headers=ORGANIZER
        )
        assert approved.status_code == 200
        assert approved.json()["approved_amount"] == 80000

        transactions = client.get(f"/api/refunds/{request_id}/transactions", headers=ORGANIZER)
        refund = client.get(f"/api/refunds/{request_id}", headers=HOLDER)

        assert transactions.status_code == 200
        assert refund.json()["status"] in ("approved", "processing", "completed")

    def test_invalid_approved_amount(self, client):
        """Test request validation on approved amounts."""
        request_id = submit(client).json()["id"]

        response = client.post(f"/api/refunds/{request_id}/approve", json={"approved_amount": 0}, headers=ORGANIZER)

        assert response.status_code == 422

    def test_retry_requires_failure(self, client):
        """Test retrying a pending request is a validation error."""
        request_id = submit(client).json()["id"]

        response = client.post(f"/api/refunds/{request_id}/retry", headers=ORGANIZER)

        assert response.status_code == 422
        assert "Only failed refunds can be retried" in response.json()["detail"]

    def test_my_refunds(self, client):
        submit(client)

        response = client.get("/api/refunds/mine", headers=HOLDER)

        assert response.json()["total"] == 1

    def test_event_refunds_for_organizer_only(self, client):
        """Test listing an event's refunds."""
        submit(client)

        assert client.get("/api/refunds/events/evt_jazz", headers=ORGANIZER).json()["total"] == 1
        assert client.get("/api/refunds/events/evt_jazz", headers=HOLDER).status_code == 403

    def test_policy_round_trip(self, client):
        """Test setting and reading an event policy."""
        response = client.put(
            "/api/refunds/events/evt_jazz/policy",
            json={"event_id": "ignored", "refund_deadline_hours": 24, "processing_fee_percentage": 0.02},
            headers=ORGANIZER
        )
        assert response.status_code == 200

        policy = client.get("/api/refunds/events/evt_jazz/policy").json()

        assert policy["event_id"] == "evt_jazz"
        assert policy["refund_deadline_hours"] == 24

    def test_manual_refund(self, client):
        """Test an organizer-issued refund."""
        response = client.post(
            "/api/refunds/manual",
            json={"ticket_id": "tkt_0003", "amount": 30000},
            headers=ORGANIZER
        )

        assert response.status_code == 201
        assert response.json()["status"] == "approved"
        assert response.json()["reason"] == "organizer_decision"


class TestCancellationRoutes:
    """Test cancellation endpoints."""

    def test_impact(self, client):
        response = client.get("/api/cancellations/impact/evt_jazz", headers=ORGANIZER)

        assert response.status_code == 200
        assert response.json()["impact"]["tickets_sold"] == 3
        assert response.json()["warnings"] == []

    def test_impact_other_organizer(self, client):
        response = client.get("/api/cancellations/impact/evt_jazz", headers={"X-Actor-Id": "org_other"})

        assert response.status_code == 403

    def test_full_flow(self, client):
        """Test draft, confirm and process through the API."""
        created = client.post(
            "/api/cancellations",
            json={"event_id": "evt_jazz", "reason": "venue_issue", "note": "Venue flooded"},
            headers=ORGANIZER
        )
        assert created.status_code == 201
        cancellation_id = created.json()["id"]

        wrong = client.post(
            f"/api/cancellations/{cancellation_id}/confirm",
            json={"confirmation_code": "yes"},
            headers=ORGANIZER
        )
        assert wrong.status_code == 422

        confirmed = client.post(
            f"/api/cancellations/{cancellation_id}/confirm",
            json={"confirmation_code": "confirm"},
            headers=ORGANIZER
        )
        assert confirmed.json()["status"] == "confirming"

        processed = client.post(f"/api/cancellations/{cancellation_id}/process", headers=ORGANIZER)

        assert processed.status_code == 200
        body = processed.json()
        assert body["status"] == "completed"
        assert body["refunds_processed"] == 3
        assert body["notifications_sent"] == 3

        event_refunds = client.get("/api/refunds/events/evt_jazz", headers=ORGANIZER).json()
        assert all(r["status"] == "completed" for r in event_refunds["refunds"])

    def test_admin_only_reason(self, client):
        """Test the admin action reason requires the admin role."""
        payload = {"event_id": "evt_jazz", "reason": "admin_action"}

        assert client.post("/api/cancellations", json=payload, headers=ORGANIZER).status_code == 403
        assert client.post("/api/cancellations", json=payload, headers=ADMIN).status_code == 201

    def test_discard_draft(self, client):
        created = client.post("/api/cancellations", json={"event_id": "evt_jazz", "reason": "low_sales"}, headers=ORGANIZER)
        cancellation_id = created.json()["id"]

        response = client.delete(f"/api/cancellations/{cancellation_id}", headers=ORGANIZER)

        assert response.status_code == 204
        assert client.get(f"/api/cancellations/{cancellation_id}", headers=ORGANIZER).status_code == 404

    def test_notification_preview(self, client):
        created = client.post("/api/cancellations", json={"event_id": "evt_jazz", "reason": "venue_issue"}, headers=ORGANIZER)

        response = client.get(f"/api/cancellations/{created.json()['id']}/notification-preview", headers=ORGANIZER)

        assert response.status_code == 200
        assert response.json()["recipient_count"] == 3
