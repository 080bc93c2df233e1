"""
Simulated settlement for local development and tests.

Behaviour:
- Phone numbers ending in the configured failure pattern (9999) always fail
- Otherwise a call fails with probability ``failure_rate`` (seeded RNG)
- ``fail_next(n)`` forces the next n calls to fail
- Calls are idempotent: replaying a key returns the first result
"""

import logging
import random
import secrets
from typing import Dict, List, Optional

from app.config.settlement_config import SETTLEMENT_CONFIG
from app.models.refund import RefundPaymentMethod
from app.services.settlement.base import SettlementGateway, SettlementResult
from app.utils.phone_validator import mask_phone, validate_ugandan_phone

logger = logging.getLogger(__name__)

SIMULATED_FAILURE_REASON = "Payment provider timeout"


class SimulationSettlementGateway(SettlementGateway):
    """Settlement gateway that never leaves the process."""

    def __init__(
        self,
        failure_rate: Optional[float] = None,
        seed: Optional[int] = None,
        failure_pattern: Optional[str] = None
    ):
        simulation_config = SETTLEMENT_CONFIG["simulation"]
        self.failure_rate = simulation_config["failure_rate"] if failure_rate is None else failure_rate
        self.failure_pattern = failure_pattern or simulation_config["auto_failure_pattern"]
        if seed is None and simulation_config["seed"]:
            seed = int(simulation_config["seed"])
        self._random = random.Random(seed)
        self._forced_failures = 0
        self._results: Dict[str, SettlementResult] = {}
        self.calls: List[str] = []  # Idempotency keys actually settled, in order

    def fail_next(self, count: int = 1) -> None:
        """Force the next ``count`` settlements to fail."""
        self._forced_failures += count

    def _should_fail(self) -> bool:
        if self._forced_failures > 0:
            self._forced_failures -= 1
            return True
        return self.failure_rate > 0 and self._random.random() < self.failure_rate

    def _record(self, idempotency_key: str, result: SettlementResult) -> SettlementResult:
        self._results[idempotency_key] = result
        self.calls.append(idempotency_key)
        return result

    async def transfer_mobile_money(
        self,
        phone_number: str,
        amount: float,
        currency: str,
        reference: str,
        provider: RefundPaymentMethod,
        idempotency_key: str
    ) -> SettlementResult:
        if idempotency_key in self._results:
            logger.info(f"[SIMULATION] Replayed settlement {idempotency_key}")
            return self._results[idempotency_key]

        is_valid, cleaned_phone, error = validate_ugandan_phone(phone_number)
        if not is_valid:
            return self._record(idempotency_key, SettlementResult.failed(provider.value, f"Invalid phone number: {error}"))

        if cleaned_phone.endswith(self.failure_pattern):
            logger.info(f"[SIMULATION] Auto-failure pattern detected for {mask_phone(cleaned_phone)}")
            return self._record(
                idempotency_key,
                SettlementResult.failed(provider.value, "Recipient account rejected the transfer")
            )

        if self._should_fail():
            logger.info(f"[SIMULATION] Simulated {provider.value} failure for {idempotency_key}")
            return self._record(idempotency_key, SettlementResult.failed(provider.value, SIMULATED_FAILURE_REASON))

        prefix = "MTN" if provider == RefundPaymentMethod.MTN_MOBILE_MONEY else "AIR"
        reference_id = f"SIM_{prefix}_{secrets.token_hex(6).upper()}"
        logger.info(f"[SIMULATION] Sent {amount} {currency} to {mask_phone(cleaned_phone)}: {reference_id}")
        return self._record(idempotency_key, SettlementResult.succeeded(provider.value, reference_id))

    async def refund_card(
        self,
        original_transaction_reference: str,
        amount: float,
        currency: str,
        idempotency_key: str
    ) -> SettlementResult:
        if idempotency_key in self._results:
            return self._results[idempotency_key]

        if self._should_fail():
            return self._record(idempotency_key, SettlementResult.failed("card", SIMULATED_FAILURE_REASON))

        reference_id = f"SIM_CARD_{secrets.token_hex(6).upper()}"
        logger.info(f"[SIMULATION] Card refund of {amount} {currency} on {original_transaction_reference}")
        return self._record(idempotency_key, SettlementResult.succeeded("card", reference_id))

    async def credit_wallet(
        self,
        user_id: str,
        amount: float,
        currency: str,
        idempotency_key: str
    ) -> SettlementResult:
        if idempotency_key in self._results:
            return self._results[idempotency_key]

        # Wallet credits are internal and only fail when forced
        if self._forced_failures > 0:
            self._forced_failures -= 1
            return self._record(idempotency_key, SettlementResult.failed("wallet", SIMULATED_FAILURE_REASON))

        reference_id = f"SIM_WAL_{secrets.token_hex(6).upper()}"
        logger.info(f"[SIMULATION] Wallet credit of {amount} {currency} for user {user_id}")
        return self._record(idempotency_key, SettlementResult.succeeded("wallet", reference_id))
