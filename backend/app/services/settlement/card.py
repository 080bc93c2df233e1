"""Card refunds through the card acquirer (Flutterwave v3)."""

import asyncio
import logging

import requests

from app.config.settlement_config import SETTLEMENT_CONFIG, get_provider_config, get_provider_url
from app.services.settlement.base import SettlementResult

logger = logging.getLogger(__name__)


class CardRefundClient:
    """Refunds a previous card charge, fully or partially."""

    provider = "card"

    def __init__(self):
        self.config = get_provider_config("card")
        self.base_url = get_provider_url("card")
        self.secret_key = self.config.get("secret_key")
        self.timeout = SETTLEMENT_CONFIG["request_timeout_seconds"]

    def _refund(self, charge_id: str, amount: float, idempotency_key: str) -> SettlementResult:
        response = requests.post(
            f"{self.base_url}/transactions/{charge_id}/refund",
            headers={
                "Authorization": f"Bearer {self.secret_key}",
                "X-Idempotency-Key": idempotency_key,
                "Content-Type": "application/json"
            },
            json={"amount": amount},
            timeout=self.timeout
        )
        response.raise_for_status()

        data = response.json()
        if data.get("status") == "success":
            refund_id = str(data.get("data", {}).get("id", idempotency_key))
            logger.info(f"Card refund accepted for charge {charge_id}: {refund_id}")
            return SettlementResult.succeeded(self.provider, refund_id)

        return SettlementResult.failed(self.provider, data.get("message") or "Card refund was declined")

    async def refund(self, charge_id: str, amount: float, idempotency_key: str) -> SettlementResult:
        """
        Refund ``amount`` against the charge ``charge_id``.

        Returns:
            Settlement result; network errors are reported as failures
        """
        if not charge_id:
            return SettlementResult.failed(self.provider, "Missing original card transaction reference")

        try:
            return await asyncio.to_thread(self._refund, charge_id, amount, idempotency_key)
        except requests.exceptions.RequestException as e:
            logger.error(f"Card refund failed for charge {charge_id}: {str(e)}")
            return SettlementResult.failed(self.provider, f"Card acquirer request failed: {str(e)}")
