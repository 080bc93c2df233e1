"""
Settlement gateway interface.

A gateway moves refund money back to the ticket holder on one of three
rails: mobile money, card refund or EventPass wallet credit. Gateways never
retry; the refund state machine owns retries. Every call carries an
idempotency key (the refund transaction id) so that re-dispatching the same
attempt after a crash cannot pay twice.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

from pydantic import BaseModel

from app.models.refund import RefundPaymentMethod, RefundRequest, RefundTransaction

logger = logging.getLogger(__name__)


class SettlementResult(BaseModel):
    """Outcome of one settlement call."""
    success: bool
    provider: str
    provider_reference: Optional[str] = None
    failure_reason: Optional[str] = None

    @classmethod
    def succeeded(cls, provider: str, reference: str) -> "SettlementResult":
        return cls(success=True, provider=provider, provider_reference=reference)

    @classmethod
    def failed(cls, provider: str, reason: str) -> "SettlementResult":
        return cls(success=False, provider=provider, failure_reason=reason)


class SettlementGateway(ABC):
    """Moves refund money on the rail the ticket was paid with."""

    @abstractmethod
    async def transfer_mobile_money(
        self,
        phone_number: str,
        amount: float,
        currency: str,
        reference: str,
        provider: RefundPaymentMethod,
        idempotency_key: str
    ) -> SettlementResult:
        """
        Send a mobile money disbursement.

        Args:
            phone_number: Recipient MSISDN
            amount: Net amount to send
            currency: ISO currency code
            reference: Original payment reference
            provider: mtn_mobile_money or airtel_money
            idempotency_key: Stable key for this settlement attempt
        """

    @abstractmethod
    async def refund_card(
        self,
        original_transaction_reference: str,
        amount: float,
        currency: str,
        idempotency_key: str
    ) -> SettlementResult:
        """Refund against the original card charge."""

    @abstractmethod
    async def credit_wallet(
        self,
        user_id: str,
        amount: float,
        currency: str,
        idempotency_key: str
    ) -> SettlementResult:
        """Credit the user's EventPass wallet."""

    async def settle(self, request: RefundRequest, transaction: RefundTransaction) -> SettlementResult:
        """
        Dispatch a transaction to the rail matching its payment method.

        Bank transfers are settled as wallet credits.
        """
        method = transaction.payment_method
        logger.info(
            f"Settling {transaction.id} ({method.value}) for {transaction.net_refund} {transaction.currency}"
        )

        if method.is_mobile_money:
            return await self.transfer_mobile_money(
                phone_number=request.user_phone or "",
                amount=transaction.net_refund,
                currency=transaction.currency,
                reference=transaction.payment_reference,
                provider=method,
                idempotency_key=transaction.id
            )

        if method == RefundPaymentMethod.CARD:
            return await self.refund_card(
                original_transaction_reference=transaction.payment_reference,
                amount=transaction.net_refund,
                currency=transaction.currency,
                idempotency_key=transaction.id
            )

        return await self.credit_wallet(
            user_id=transaction.user_id,
            amount=transaction.net_refund,
            currency=transaction.currency,
            idempotency_key=transaction.id
        )
