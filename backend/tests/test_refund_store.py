"""
Tests for refund, cancellation and wallet persistence.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from pymongo.errors import DuplicateKeyError

from app.core.exceptions import (
    ActiveRefundExistsError,
    AlreadyProcessedError,
    CancellationAlreadyExistsError,
    TicketAlreadyRefundedError,
)
from app.models.cancellation import CancellationImpact, CompensationPlan, EventCancellation, CancellationReason
from app.models.refund import RefundPaymentMethod, RefundPolicy, RefundReason, RefundRequest, RefundStatus, RefundTransaction
from app.repositories.cancellation_store import InMemoryCancellationStore, MongoCancellationStore
from app.repositories.refund_store import InMemoryRefundStore, MongoRefundStore
from app.repositories.wallet_store import InMemoryWalletStore


def make_request(ticket_id="tkt_0001", **overrides):
    data = {
        "ticket_id": ticket_id,
        "ticket_number": "TKT-000001",
        "event_id": "evt_jazz",
        "event_title": "Kampala Jazz Night",
        "organizer_id": "org_kampala_live",
        "user_id": "usr_0001",
        "reason": RefundReason.CANNOT_ATTEND,
        "requested_amount": 100000,
        "original_payment_method": RefundPaymentMethod.MTN_MOBILE_MONEY,
    }
    data.update(overrides)
    return RefundRequest(**data)


def make_transaction(request, **overrides):
    data = {
        "refund_request_id": request.id,
        "ticket_id": request.ticket_id,
        "event_id": request.event_id,
        "user_id": request.user_id,
        "original_amount": request.requested_amount,
        "refund_amount": request.requested_amount,
        "payment_method": request.original_payment_method,
        "reason": request.reason,
    }
    data.update(overrides)
    return RefundTransaction(**data)


def make_cancellation(event_id="evt_jazz"):
    return EventCancellation(
        event_id=event_id,
        event_title="Kampala Jazz Night",
        organizer_id="org_kampala_live",
        reason=CancellationReason.VENUE_ISSUE,
        impact=CancellationImpact(event_id=event_id),
        compensation_plan=CompensationPlan(event_id=event_id),
        initiated_by="org_kampala_live"
    )


class TestInMemoryRefundStore:
    """Test the per-ticket rule in memory."""

    @pytest.mark.asyncio
    async def test_second_active_request_rejected(self):
        """Test two open requests for one ticket."""
        store = InMemoryRefundStore()
        first = await store.insert_request(make_request())

        with pytest.raises(ActiveRefundExistsError) as exc_info:
            await store.insert_request(make_request())

        assert exc_info.value.request_id == first.id

    @pytest.mark.asyncio
    async def test_completed_request_blocks_ticket(self):
        """Test a refunded ticket cannot get a new request."""
        store = InMemoryRefundStore()
        await store.insert_request(make_request(status=RefundStatus.COMPLETED))

        with pytest.raises(TicketAlreadyRefundedError):
            await store.insert_request(make_request())

    @pytest.mark.asyncio
    async def test_rejected_request_does_not_block(self):
        """Test rejected requests free the ticket."""
        store = InMemoryRefundStore()
        await store.insert_request(make_request(status=RefundStatus.REJECTED))

        await store.insert_request(make_request())

        assert len(await store.find_requests(ticket_id="tkt_0001")) == 2

    @pytest.mark.asyncio
    async def test_concurrent_inserts(self):
        """Test racing inserts for one ticket keep a single request."""
        store = InMemoryRefundStore()

        results = await asyncio.gather(
            *(store.insert_request(make_request()) for _ in range(10)),
            return_exceptions=True
        )

        assert sum(1 for r in results if isinstance(r, RefundRequest)) == 1
        assert len(await store.find_requests(ticket_id="tkt_0001")) == 1

    @pytest.mark.asyncio
    async def test_records_are_copied(self):
        """Test mutating a returned record does not change the stored one."""
        store = InMemoryRefundStore()
        request = await store.insert_request(make_request())

        loaded = await store.get_request(request.id)
        loaded.status = RefundStatus.APPROVED

        assert (await store.get_request(request.id)).status == RefundStatus.PENDING

    @pytest.mark.asyncio
    async def test_final_transaction_cannot_change(self):
        """Test a completed transaction is immutable."""
        store = InMemoryRefundStore()
        transaction = make_transaction(make_request(), status=RefundStatus.COMPLETED)
        await store.insert_transaction(transaction)

        transaction.status = RefundStatus.FAILED
        with pytest.raises(AlreadyProcessedError):
            await store.save_transaction(transaction)

    @pytest.mark.asyncio
    async def test_latest_transaction(self):
        """Test the latest transaction is the highest attempt."""
        store = InMemoryRefundStore()
        request = make_request()
        await store.insert_transaction(make_transaction(request, attempt_number=1))
        second = await store.insert_transaction(make_transaction(request, attempt_number=2))

        assert (await store.latest_transaction(request.id)).id == second.id
        assert await store.latest_transaction("rfr_missing") is None

    @pytest.mark.asyncio
    async def test_policy_lookup_is_exact(self):
        """Test event-wide and ticket-type policies are stored separately."""
        store = InMemoryRefundStore()
        await store.save_policy(RefundPolicy(event_id="evt_jazz", ticket_type_id="tt_vip", refund_deadline_hours=96))

        assert await store.get_policy("evt_jazz") is None
        assert (await store.get_policy("evt_jazz", "tt_vip")).refund_deadline_hours == 96


class TestMongoRefundStore:
    """Test the MongoDB store against a mocked database."""

    @pytest.mark.asyncio
    async def test_insert_marks_blocking(self):
        """Test inserted documents carry the blocking flag used by the index."""
        mock_db = MagicMock()
        mock_db.refund_requests.insert_one = AsyncMock()
        store = MongoRefundStore(mock_db)

        await store.insert_request(make_request())

        document = mock_db.refund_requests.insert_one.call_args[0][0]
        assert document["blocks_ticket"] is True
        assert document["status"] == "pending"

    @pytest.mark.asyncio
    async def test_duplicate_active_request(self):
        """Test a duplicate key error maps to ActiveRefundExistsError."""
        existing = make_request()
        mock_db = MagicMock()
        mock_db.refund_requests.insert_one = AsyncMock(side_effect=DuplicateKeyError("duplicate"))
        mock_db.refund_requests.find_one = AsyncMock(return_value=existing.model_dump(mode="json"))
        store = MongoRefundStore(mock_db)

        with pytest.raises(ActiveRefundExistsError) as exc_info:
            await store.insert_request(make_request())

        assert exc_info.value.request_id == existing.id

    @pytest.mark.asyncio
    async def test_duplicate_completed_request(self):
        """Test a duplicate against a completed refund maps to TicketAlreadyRefundedError."""
        existing = make_request(status=RefundStatus.COMPLETED)
        mock_db = MagicMock()
        mock_db.refund_requests.insert_one = AsyncMock(side_effect=DuplicateKeyError("duplicate"))
        mock_db.refund_requests.find_one = AsyncMock(return_value=existing.model_dump(mode="json"))
        store = MongoRefundStore(mock_db)

        with pytest.raises(TicketAlreadyRefundedError):
            await store.insert_request(make_request())

    @pytest.mark.asyncio
    async def test_get_request_strips_internal_fields(self):
        """Test stored documents load back into a request."""
        stored = MongoRefundStore._request_document(make_request())
        stored["_id"] = "64f0c0ffee"
        mock_db = MagicMock()
        mock_db.refund_requests.find_one = AsyncMock(return_value=stored)
        store = MongoRefundStore(mock_db)

        request = await store.get_request(stored["id"])

        assert request.id == stored["id"]
        assert request.status == RefundStatus.PENDING

    @pytest.mark.asyncio
    async def test_find_requests_query(self):
        """Test filters are translated into the query."""
        mock_cursor = MagicMock()
        mock_cursor.to_list = AsyncMock(return_value=[])
        mock_db = MagicMock()
        mock_db.refund_requests.find = MagicMock(return_value=mock_cursor)
        mock_cursor.sort = MagicMock(return_value=mock_cursor)
        store = MongoRefundStore(mock_db)

        await store.find_requests(event_id="evt_jazz", status=RefundStatus.FAILED)

        mock_db.refund_requests.find.assert_called_once_with({"event_id": "evt_jazz", "status": "failed"})

    @pytest.mark.asyncio
    async def test_save_final_transaction(self):
        """Test updating a transaction that is no longer processing."""
        mock_db = MagicMock()
        mock_db.refund_transactions.replace_one = AsyncMock(return_value=MagicMock(matched_count=0))
        store = MongoRefundStore(mock_db)

        with pytest.raises(AlreadyProcessedError):
            await store.save_transaction(make_transaction(make_request(), status=RefundStatus.COMPLETED))

        query = mock_db.refund_transactions.replace_one.call_args[0][0]
        assert query["status"] == "processing"


class TestCancellationStores:
    """Test one cancellation per event."""

    @pytest.mark.asyncio
    async def test_in_memory_duplicate(self):
        """Test a second cancellation for the same event."""
        store = InMemoryCancellationStore()
        await store.insert(make_cancellation())

        with pytest.raises(CancellationAlreadyExistsError):
            await store.insert(make_cancellation())

    @pytest.mark.asyncio
    async def test_delete_frees_event(self):
        """Test deleting a draft allows a new cancellation."""
        store = InMemoryCancellationStore()
        first = await store.insert(make_cancellation())

        await store.delete(first.id)
        await store.insert(make_cancellation())

        assert (await store.get_for_event("evt_jazz")).id != first.id

    @pytest.mark.asyncio
    async def test_mongo_duplicate(self):
        """Test the unique index error is mapped."""
        mock_db = MagicMock()
        mock_db.event_cancellations.insert_one = AsyncMock(side_effect=DuplicateKeyError("duplicate"))
        store = MongoCancellationStore(mock_db)

        with pytest.raises(CancellationAlreadyExistsError):
            await store.insert(make_cancellation())


class TestWalletStore:
    """Test wallet credits."""

    @pytest.mark.asyncio
    async def test_credit_is_idempotent(self):
        """Test replaying a credit key does not credit twice."""
        store = InMemoryWalletStore()

        first = await store.credit("usr_0001", 110000, "UGX", "rtx_1")
        again = await store.credit("usr_0001", 110000, "UGX", "rtx_1")
        await store.credit("usr_0001", 5000, "UGX", "rtx_2")

        assert again.id == first.id
        assert await store.get_balance("usr_0001") == 115000
        assert len(await store.get_credits("usr_0001")) == 2
