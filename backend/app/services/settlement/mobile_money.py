"""
Mobile money disbursement clients for Uganda.

- MTN MoMo Disbursement API: https://momodeveloper.mtn.com/
- Airtel Money Disbursement API: https://developers.airtel.africa/

HTTP calls use ``requests`` and run in a worker thread so they never block
the event loop.
"""

import asyncio
import base64
import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional

import requests

from app.config.settlement_config import SETTLEMENT_CONFIG, get_provider_config, get_provider_url
from app.services.settlement.base import SettlementResult
from app.utils.phone_validator import mask_phone

logger = logging.getLogger(__name__)


def reference_id_for(idempotency_key: str) -> str:
    """Stable UUID for a settlement attempt, so a replay reuses the provider reference."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"eventpass-refund:{idempotency_key}"))


class MTNDisbursementClient:
    """MTN Mobile Money disbursement (payout) client."""

    provider = "mtn_mobile_money"

    def __init__(self):
        self.config = get_provider_config("mtn_mobile_money")
        self.base_url = get_provider_url("mtn_mobile_money")
        self.subscription_key = self.config.get("subscription_key")
        self.api_user = self.config.get("api_user")
        self.api_key = self.config.get("api_key")
        self.target_environment = self.config.get("target_environment", "sandbox")
        self.timeout = SETTLEMENT_CONFIG["request_timeout_seconds"]
        self._access_token: Optional[str] = None
        self._token_expires_at: Optional[datetime] = None

    def _get_access_token(self) -> str:
        # Reuse the cached token until shortly before it expires
        if self._access_token and self._token_expires_at:
            if datetime.utcnow() < self._token_expires_at:
                return self._access_token

        credentials = f"{self.api_user}:{self.api_key}"
        encoded_credentials = base64.b64encode(credentials.encode()).decode()

        response = requests.post(
            f"{self.base_url}/disbursement/token/",
            headers={
                "Authorization": f"Basic {encoded_credentials}",
                "Ocp-Apim-Subscription-Key": self.subscription_key
            },
            timeout=self.timeout
        )
        response.raise_for_status()

        data = response.json()
        self._access_token = data["access_token"]
        expires_in = data.get("expires_in", 3600)
        self._token_expires_at = datetime.utcnow() + timedelta(seconds=expires_in - 300)

        logger.info("Obtained MTN MoMo disbursement token")
        return self._access_token

    def _transfer(self, msisdn: str, amount: float, currency: str, reference: str, idempotency_key: str) -> SettlementResult:
        access_token = self._get_access_token()
        reference_id = reference_id_for(idempotency_key)

        response = requests.post(
            f"{self.base_url}/disbursement/v1_0/transfer",
            headers={
                "Authorization": f"Bearer {access_token}",
                "X-Reference-Id": reference_id,
                "X-Target-Environment": self.target_environment,
                "Ocp-Apim-Subscription-Key": self.subscription_key,
                "Content-Type": "application/json"
            },
            json={
                "amount": str(int(round(amount))),
                "currency": currency,
                "externalId": idempotency_key,
                "payee": {
                    "partyIdType": "MSISDN",
                    "partyId": msisdn.lstrip("+")
                },
                "payerMessage": f"EventPass refund {reference}",
                "payeeNote": "EventPass ticket refund"
            },
            timeout=self.timeout
        )

        # 202 Accepted for a new transfer, 409 when this reference was already submitted
        if response.status_code in (202, 409):
            logger.info(f"MTN MoMo transfer accepted for {mask_phone(msisdn)}: {reference_id}")
            return SettlementResult.succeeded(self.provider, reference_id)

        return SettlementResult.failed(
            self.provider,
            f"MTN MoMo rejected the transfer (HTTP {response.status_code})"
        )

    async def transfer(
        self,
        msisdn: str,
        amount: float,
        currency: str,
        reference: str,
        idempotency_key: str
    ) -> SettlementResult:
        """
        Send a disbursement to an MTN subscriber.

        Args:
            msisdn: Normalized recipient number (+256...)
            amount: Amount in whole shillings
            currency: Currency code
            reference: Original payment reference, shown to the recipient
            idempotency_key: Refund transaction id

        Returns:
            Settlement result; network errors are reported as failures
        """
        try:
            return await asyncio.to_thread(self._transfer, msisdn, amount, currency, reference, idempotency_key)
        except requests.exceptions.RequestException as e:
            logger.error(f"MTN MoMo transfer failed: {str(e)}")
            return SettlementResult.failed(self.provider, f"MTN MoMo request failed: {str(e)}")


class AirtelDisbursementClient:
    """Airtel Money disbursement client."""

    provider = "airtel_money"

    def __init__(self):
        self.config = get_provider_config("airtel_money")
        self.base_url = get_provider_url("airtel_money")
        self.client_id = self.config.get("client_id")
        self.client_secret = self.config.get("client_secret")
        self.pin = self.config.get("disbursement_pin")
        self.country = self.config.get("country", "UG")
        self.timeout = SETTLEMENT_CONFIG["request_timeout_seconds"]
        self._access_token: Optional[str] = None
        self._token_expires_at: Optional[datetime] = None

    def _get_access_token(self) -> str:
        if self._access_token and self._token_expires_at:
            if datetime.utcnow() < self._token_expires_at:
                return self._access_token

        response = requests.post(
            f"{self.base_url}/auth/oauth2/token",
            json={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "grant_type": "client_credentials"
            },
            timeout=self.timeout
        )
        response.raise_for_status()

        data = response.json()
        self._access_token = data["access_token"]
        expires_in = int(data.get("expires_in", 3600))
        self._token_expires_at = datetime.utcnow() + timedelta(seconds=expires_in - 300)

        logger.info("Obtained Airtel Money token")
        return self._access_token

    def _transfer(self, msisdn: str, amount: float, currency: str, reference: str, idempotency_key: str) -> SettlementResult:
        access_token = self._get_access_token()

        response = requests.post(
            f"{self.base_url}/standard/v1/disbursements/",
            headers={
                "Authorization": f"Bearer {access_token}",
                "X-Country": self.country,
                "X-Currency": currency,
                "Content-Type": "application/json"
            },
            json={
                "payee": {"msisdn": msisdn.lstrip("+")[3:]},  # Airtel expects the number without 256
                "reference": reference or idempotency_key,
                "pin": self.pin,
                "transaction": {
                    "amount": int(round(amount)),
                    "id": idempotency_key
                }
            },
            timeout=self.timeout
        )
        response.raise_for_status()

        data = response.json()
        status = data.get("status", {})
        if status.get("success"):
            provider_reference = data.get("data", {}).get("transaction", {}).get("reference_id") or idempotency_key
            logger.info(f"Airtel Money transfer accepted for {mask_phone(msisdn)}: {provider_reference}")
            return SettlementResult.succeeded(self.provider, provider_reference)

        return SettlementResult.failed(
            self.provider,
            status.get("message") or "Airtel Money rejected the transfer"
        )

    async def transfer(
        self,
        msisdn: str,
        amount: float,
        currency: str,
        reference: str,
        idempotency_key: str
    ) -> SettlementResult:
        """Send a disbursement to an Airtel subscriber."""
        try:
            return await asyncio.to_thread(self._transfer, msisdn, amount, currency, reference, idempotency_key)
        except requests.exceptions.RequestException as e:
            logger.error(f"Airtel Money transfer failed: {str(e)}")
            return SettlementResult.failed(self.provider, f"Airtel Money request failed: {str(e)}")
