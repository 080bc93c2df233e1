import logging

from app.repositories.wallet_store import WalletStore
from app.services.settlement.base import SettlementResult

logger = logging.getLogger(__name__)


class WalletCreditService:
    """Credits EventPass wallets. Used for wallet payments, bank transfers and event credit."""

    provider = "wallet"

    def __init__(self, wallet_store: WalletStore):
        self.wallet_store = wallet_store

    async def credit(self, user_id: str, amount: float, currency: str, idempotency_key: str) -> SettlementResult:
        credit = await self.wallet_store.credit(user_id, amount, currency, idempotency_key)
        logger.info(f"Credited {credit.amount} {credit.currency} to wallet of user {user_id}")
        return SettlementResult.succeeded(self.provider, credit.id)
