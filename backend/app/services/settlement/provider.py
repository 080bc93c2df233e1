"""
Settlement against the real payment providers (SANDBOX and PRODUCTION modes).
"""

import logging

from app.models.refund import RefundPaymentMethod
from app.repositories.wallet_store import WalletStore
from app.services.settlement.base import SettlementGateway, SettlementResult
from app.services.settlement.card import CardRefundClient
from app.services.settlement.mobile_money import AirtelDisbursementClient, MTNDisbursementClient
from app.services.settlement.wallet import WalletCreditService
from app.utils.phone_validator import detect_provider, mask_phone, validate_ugandan_phone

logger = logging.getLogger(__name__)


class ProviderSettlementGateway(SettlementGateway):
    """Routes settlements to MTN, Airtel, the card acquirer or the wallet."""

    def __init__(self, wallet_store: WalletStore):
        self.mtn_client = MTNDisbursementClient()
        self.airtel_client = AirtelDisbursementClient()
        self.card_client = CardRefundClient()
        self.wallet_service = WalletCreditService(wallet_store)

    async def transfer_mobile_money(
        self,
        phone_number: str,
        amount: float,
        currency: str,
        reference: str,
        provider: RefundPaymentMethod,
        idempotency_key: str
    ) -> SettlementResult:
        is_valid, cleaned_phone, error = validate_ugandan_phone(phone_number)
        if not is_valid:
            return SettlementResult.failed(provider.value, f"Invalid phone number: {error}")

        detected = detect_provider(cleaned_phone)
        if detected and detected != provider.value:
            logger.warning(
                f"Number {mask_phone(cleaned_phone)} looks like {detected}, "
                f"settling on original rail {provider.value}"
            )

        if provider == RefundPaymentMethod.AIRTEL_MONEY:
            return await self.airtel_client.transfer(cleaned_phone, amount, currency, reference, idempotency_key)
        return await self.mtn_client.transfer(cleaned_phone, amount, currency, reference, idempotency_key)

    async def refund_card(
        self,
        original_transaction_reference: str,
        amount: float,
        currency: str,
        idempotency_key: str
    ) -> SettlementResult:
        return await self.card_client.refund(original_transaction_reference, amount, idempotency_key)

    async def credit_wallet(
        self,
        user_id: str,
        amount: float,
        currency: str,
        idempotency_key: str
    ) -> SettlementResult:
        return await self.wallet_service.credit(user_id, amount, currency, idempotency_key)
