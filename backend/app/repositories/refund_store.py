"""
Refund persistence: requests, settlement transactions and policies.

Two implementations share one interface:
- InMemoryRefundStore: development and tests
- MongoRefundStore: MongoDB via Motor

Both enforce the per-ticket rule atomically: a ticket has at most one
request that is either active or completed.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError

from app.core.exceptions import (
    ActiveRefundExistsError,
    AlreadyProcessedError,
    TicketAlreadyRefundedError,
)
from app.models.refund import RefundPolicy, RefundRequest, RefundStatus, RefundTransaction
from app.utils.helpers import format_document

logger = logging.getLogger(__name__)


def _blocks_ticket(request: RefundRequest) -> bool:
    """Whether this request prevents a new request for the same ticket."""
    return request.is_active or request.status == RefundStatus.COMPLETED


def _raise_for_blocking(request: RefundRequest) -> None:
    if request.status == RefundStatus.COMPLETED:
        raise TicketAlreadyRefundedError(request.ticket_id)
    raise ActiveRefundExistsError(request.ticket_id, request.id)


class RefundStore(ABC):
    """Storage interface for the refund core."""

    # Requests

    @abstractmethod
    async def insert_request(self, request: RefundRequest) -> RefundRequest:
        """
        Insert a new request unless the ticket already has an active or
        completed one.

        Raises:
            ActiveRefundExistsError: An active request exists for the ticket
            TicketAlreadyRefundedError: The ticket was already refunded
        """

    @abstractmethod
    async def save_request(self, request: RefundRequest) -> None:
        pass

    @abstractmethod
    async def get_request(self, request_id: str) -> Optional[RefundRequest]:
        pass

    @abstractmethod
    async def find_requests(
        self,
        ticket_id: Optional[str] = None,
        user_id: Optional[str] = None,
        event_id: Optional[str] = None,
        organizer_id: Optional[str] = None,
        status: Optional[RefundStatus] = None
    ) -> List[RefundRequest]:
        """Matching requests, newest first."""

    # Transactions

    @abstractmethod
    async def insert_transaction(self, transaction: RefundTransaction) -> RefundTransaction:
        pass

    @abstractmethod
    async def save_transaction(self, transaction: RefundTransaction) -> None:
        """
        Persist a transaction update.

        Raises:
            AlreadyProcessedError: The stored transaction is already final
        """

    @abstractmethod
    async def get_transaction(self, transaction_id: str) -> Optional[RefundTransaction]:
        pass

    @abstractmethod
    async def find_transactions(
        self,
        refund_request_id: Optional[str] = None,
        event_id: Optional[str] = None
    ) -> List[RefundTransaction]:
        """Matching transactions, newest first."""

    # Policies

    @abstractmethod
    async def save_policy(self, policy: RefundPolicy) -> None:
        pass

    @abstractmethod
    async def get_policy(self, event_id: str, ticket_type_id: Optional[str] = None) -> Optional[RefundPolicy]:
        """Exact match on (event_id, ticket_type_id); None ticket type means event-wide."""

    async def latest_transaction(self, refund_request_id: str) -> Optional[RefundTransaction]:
        transactions = await self.find_transactions(refund_request_id=refund_request_id)
        if not transactions:
            return None
        return max(transactions, key=lambda t: t.attempt_number)

    async def get_request_for_ticket(self, ticket_id: str) -> Optional[RefundRequest]:
        """The most recent request for a ticket."""
        requests = await self.find_requests(ticket_id=ticket_id)
        return requests[0] if requests else None


class InMemoryRefundStore(RefundStore):
    """Dictionary-backed store. Records are copied in and out."""

    def __init__(self):
        self._requests: Dict[str, RefundRequest] = {}
        self._transactions: Dict[str, RefundTransaction] = {}
        self._policies: Dict[tuple, RefundPolicy] = {}
        self._lock = asyncio.Lock()

    async def insert_request(self, request: RefundRequest) -> RefundRequest:
        async with self._lock:
            for existing in self._requests.values():
                if existing.ticket_id == request.ticket_id and _blocks_ticket(existing):
                    _raise_for_blocking(existing)
            self._requests[request.id] = request.model_copy(deep=True)
        return request

    async def save_request(self, request: RefundRequest) -> None:
        async with self._lock:
            self._requests[request.id] = request.model_copy(deep=True)

    async def get_request(self, request_id: str) -> Optional[RefundRequest]:
        request = self._requests.get(request_id)
        return request.model_copy(deep=True) if request else None

    async def find_requests(
        self,
        ticket_id: Optional[str] = None,
        user_id: Optional[str] = None,
        event_id: Optional[str] = None,
        organizer_id: Optional[str] = None,
        status: Optional[RefundStatus] = None
    ) -> List[RefundRequest]:
        results = []
        for request in self._requests.values():
            if ticket_id is not None and request.ticket_id != ticket_id:
                continue
            if user_id is not None and request.user_id != user_id:
                continue
            if event_id is not None and request.event_id != event_id:
                continue
            if organizer_id is not None and request.organizer_id != organizer_id:
                continue
            if status is not None and request.status != status:
                continue
            results.append(request.model_copy(deep=True))
        results.sort(key=lambda r: r.requested_at, reverse=True)
        return results

    async def insert_transaction(self, transaction: RefundTransaction) -> RefundTransaction:
        async with self._lock:
            self._transactions[transaction.id] = transaction.model_copy(deep=True)
        return transaction

    async def save_transaction(self, transaction: RefundTransaction) -> None:
        async with self._lock:
            stored = self._transactions.get(transaction.id)
            if stored is not None and stored.is_terminal:
                raise AlreadyProcessedError(f"Refund transaction {transaction.id} is already {stored.status.value}")
            self._transactions[transaction.id] = transaction.model_copy(deep=True)

    async def get_transaction(self, transaction_id: str) -> Optional[RefundTransaction]:
        transaction = self._transactions.get(transaction_id)
        return transaction.model_copy(deep=True) if transaction else None

    async def find_transactions(
        self,
        refund_request_id: Optional[str] = None,
        event_id: Optional[str] = None
    ) -> List[RefundTransaction]:
        results = [
            t.model_copy(deep=True) for t in self._transactions.values()
            if (refund_request_id is None or t.refund_request_id == refund_request_id)
            and (event_id is None or t.event_id == event_id)
        ]
        results.sort(key=lambda t: t.initiated_at, reverse=True)
        return results

    async def save_policy(self, policy: RefundPolicy) -> None:
        self._policies[(policy.event_id, policy.ticket_type_id)] = policy.model_copy(deep=True)

    async def get_policy(self, event_id: str, ticket_type_id: Optional[str] = None) -> Optional[RefundPolicy]:
        policy = self._policies.get((event_id, ticket_type_id))
        return policy.model_copy(deep=True) if policy else None


class MongoRefundStore(RefundStore):
    """
    MongoDB-backed store.

    Per-ticket uniqueness relies on a partial unique index over
    ``ticket_id`` restricted to documents with ``blocks_ticket: true``.
    """

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def ensure_indexes(self) -> None:
        await self.db.refund_requests.create_index("id", unique=True)
        await self.db.refund_requests.create_index(
            "ticket_id",
            unique=True,
            name="one_open_refund_per_ticket",
            partialFilterExpression={"blocks_ticket": True}
        )
        await self.db.refund_requests.create_index([("event_id", ASCENDING), ("status", ASCENDING)])
        await self.db.refund_requests.create_index("user_id")
        await self.db.refund_transactions.create_index("id", unique=True)
        await self.db.refund_transactions.create_index("refund_request_id")
        await self.db.refund_transactions.create_index("event_id")
        await self.db.refund_policies.create_index(
            [("event_id", ASCENDING), ("ticket_type_id", ASCENDING)],
            unique=True
        )
        logger.info("Refund store indexes ensured")

    @staticmethod
    def _request_document(request: RefundRequest) -> dict:
        document = request.model_dump(mode="json")
        document["requested_at"] = request.requested_at
        document["blocks_ticket"] = _blocks_ticket(request)
        return document

    @staticmethod
    def _to_request(document: dict) -> RefundRequest:
        document = format_document(document)
        document.pop("blocks_ticket", None)
        return RefundRequest(**document)

    @staticmethod
    def _to_transaction(document: dict) -> RefundTransaction:
        return RefundTransaction(**format_document(document))

    async def insert_request(self, request: RefundRequest) -> RefundRequest:
        try:
            await self.db.refund_requests.insert_one(self._request_document(request))
        except DuplicateKeyError:
            existing = await self.db.refund_requests.find_one({
                "ticket_id": request.ticket_id,
                "blocks_ticket": True
            })
            if existing:
                _raise_for_blocking(self._to_request(existing))
            raise ActiveRefundExistsError(request.ticket_id)
        return request

    async def save_request(self, request: RefundRequest) -> None:
        await self.db.refund_requests.replace_one(
            {"id": request.id},
            self._request_document(request),
            upsert=True
        )

    async def get_request(self, request_id: str) -> Optional[RefundRequest]:
        document = await self.db.refund_requests.find_one({"id": request_id})
        return self._to_request(document) if document else None

    async def find_requests(
        self,
        ticket_id: Optional[str] = None,
        user_id: Optional[str] = None,
        event_id: Optional[str] = None,
        organizer_id: Optional[str] = None,
        status: Optional[RefundStatus] = None
    ) -> List[RefundRequest]:
        query = {}
        if ticket_id is not None:
            query["ticket_id"] = ticket_id
        if user_id is not None:
            query["user_id"] = user_id
        if event_id is not None:
            query["event_id"] = event_id
        if organizer_id is not None:
            query["organizer_id"] = organizer_id
        if status is not None:
            query["status"] = status.value

        cursor = self.db.refund_requests.find(query).sort("requested_at", DESCENDING)
        documents = await cursor.to_list(length=None)
        return [self._to_request(document) for document in documents]

    async def insert_transaction(self, transaction: RefundTransaction) -> RefundTransaction:
        document = transaction.model_dump(mode="json")
        document["initiated_at"] = transaction.initiated_at
        await self.db.refund_transactions.insert_one(document)
        return transaction

    async def save_transaction(self, transaction: RefundTransaction) -> None:
        document = transaction.model_dump(mode="json")
        document["initiated_at"] = transaction.initiated_at
        result = await self.db.refund_transactions.replace_one(
            {"id": transaction.id, "status": RefundStatus.PROCESSING.value},
            document
        )
        if result.matched_count == 0:
            raise AlreadyProcessedError(f"Refund transaction {transaction.id} is already final")

    async def get_transaction(self, transaction_id: str) -> Optional[RefundTransaction]:
        document = await self.db.refund_transactions.find_one({"id": transaction_id})
        return self._to_transaction(document) if document else None

    async def find_transactions(
        self,
        refund_request_id: Optional[str] = None,
        event_id: Optional[str] = None
    ) -> List[RefundTransaction]:
        query = {}
        if refund_request_id is not None:
            query["refund_request_id"] = refund_request_id
        if event_id is not None:
            query["event_id"] = event_id

        cursor = self.db.refund_transactions.find(query).sort("initiated_at", DESCENDING)
        documents = await cursor.to_list(length=None)
        return [self._to_transaction(document) for document in documents]

    async def save_policy(self, policy: RefundPolicy) -> None:
        await self.db.refund_policies.replace_one(
            {"event_id": policy.event_id, "ticket_type_id": policy.ticket_type_id},
            policy.model_dump(mode="json"),
            upsert=True
        )

    async def get_policy(self, event_id: str, ticket_type_id: Optional[str] = None) -> Optional[RefundPolicy]:
        document = await self.db.refund_policies.find_one({
            "event_id": event_id,
            "ticket_type_id": ticket_type_id
        })
        return RefundPolicy(**format_document(document)) if document else None
