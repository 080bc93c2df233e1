"""EventPass wallet balances and their credit ledger."""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pydantic import BaseModel, Field
from pymongo.errors import DuplicateKeyError

from app.utils.helpers import format_document, generate_id, round_money


class WalletCredit(BaseModel):
    """One credit applied to a user's wallet."""
    id: str = Field(default_factory=lambda: generate_id("wcr"))
    user_id: str
    amount: float
    currency: str = "UGX"
    idempotency_key: str
    created_at: datetime = Field(default_factory=datetime.utcnow)


class WalletStore(ABC):

    @abstractmethod
    async def credit(self, user_id: str, amount: float, currency: str, idempotency_key: str) -> WalletCredit:
        """Apply a credit once per idempotency key; replays return the original credit."""

    @abstractmethod
    async def get_balance(self, user_id: str) -> float:
        pass

    @abstractmethod
    async def get_credits(self, user_id: str) -> List[WalletCredit]:
        pass


class InMemoryWalletStore(WalletStore):

    def __init__(self):
        self._credits: Dict[str, WalletCredit] = {}  # idempotency_key -> credit
        self._lock = asyncio.Lock()

    async def credit(self, user_id: str, amount: float, currency: str, idempotency_key: str) -> WalletCredit:
        async with self._lock:
            existing = self._credits.get(idempotency_key)
            if existing is not None:
                return existing
            credit = WalletCredit(
                user_id=user_id,
                amount=round_money(amount),
                currency=currency,
                idempotency_key=idempotency_key
            )
            self._credits[idempotency_key] = credit
            return credit

    async def get_balance(self, user_id: str) -> float:
        return round_money(sum(c.amount for c in self._credits.values() if c.user_id == user_id))

    async def get_credits(self, user_id: str) -> List[WalletCredit]:
        return [c for c in self._credits.values() if c.user_id == user_id]


class MongoWalletStore(WalletStore):

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def ensure_indexes(self) -> None:
        await self.db.wallet_credits.create_index("idempotency_key", unique=True)
        await self.db.wallet_credits.create_index("user_id")

    async def _find_credit(self, idempotency_key: str) -> Optional[WalletCredit]:
        document = await self.db.wallet_credits.find_one({"idempotency_key": idempotency_key})
        return WalletCredit(**format_document(document)) if document else None

    async def credit(self, user_id: str, amount: float, currency: str, idempotency_key: str) -> WalletCredit:
        existing = await self._find_credit(idempotency_key)
        if existing is not None:
            return existing

        credit = WalletCredit(
            user_id=user_id,
            amount=round_money(amount),
            currency=currency,
            idempotency_key=idempotency_key
        )
        try:
            await self.db.wallet_credits.insert_one(credit.model_dump())
        except DuplicateKeyError:
            # Lost the race to a concurrent replay of the same key
            return await self._find_credit(idempotency_key)
        return credit

    async def get_balance(self, user_id: str) -> float:
        credits = await self.get_credits(user_id)
        return round_money(sum(c.amount for c in credits))

    async def get_credits(self, user_id: str) -> List[WalletCredit]:
        cursor = self.db.wallet_credits.find({"user_id": user_id})
        documents = await cursor.to_list(length=None)
        return [WalletCredit(**format_document(document)) for document in documents]
