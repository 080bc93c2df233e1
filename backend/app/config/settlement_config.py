"""
Settlement rail configuration for refund payouts.

Supports three operating modes:
- SIMULATION: Simulated settlements for local development (no real API calls)
- SANDBOX: Provider sandbox APIs (for development/staging)
- PRODUCTION: Real payouts against live APIs
"""

import os
from typing import Dict, Any


# Settlement operating mode
SETTLEMENT_MODE = os.getenv("SETTLEMENT_MODE", "SIMULATION")  # SIMULATION | SANDBOX | PRODUCTION

# Settlement configuration
SETTLEMENT_CONFIG: Dict[str, Any] = {
    "mode": SETTLEMENT_MODE,

    # MTN Mobile Money (Disbursement product)
    "mtn_mobile_money": {
        "sandbox_url": "https://sandbox.momodeveloper.mtn.com",
        "production_url": "https://proxy.momoapi.mtn.com",
        "subscription_key": os.getenv("MTN_DISBURSEMENT_SUBSCRIPTION_KEY", ""),
        "api_user": os.getenv("MTN_API_USER", ""),
        "api_key": os.getenv("MTN_API_KEY", ""),
        "target_environment": "sandbox" if SETTLEMENT_MODE == "SANDBOX" else "mtnuganda"
    },

    # Airtel Money (Disbursement API)
    "airtel_money": {
        "sandbox_url": "https://openapiuat.airtel.africa",
        "production_url": "https://openapi.airtel.africa",
        "client_id": os.getenv("AIRTEL_CLIENT_ID", ""),
        "client_secret": os.getenv("AIRTEL_CLIENT_SECRET", ""),
        "disbursement_pin": os.getenv("AIRTEL_DISBURSEMENT_PIN", ""),
        "country": "UG",
        "currency": "UGX"
    },

    # Card acquirer (refunds against the original charge)
    "card": {
        "sandbox_url": "https://api.flutterwave.com/v3",
        "production_url": "https://api.flutterwave.com/v3",
        "secret_key": os.getenv("CARD_ACQUIRER_SECRET_KEY", "")
    },

    # Settlement Settings
    "request_timeout_seconds": int(os.getenv("SETTLEMENT_TIMEOUT_SECONDS", "30")),
    "currency": "UGX",  # Ugandan shilling

    # Estimated time for funds to reach the ticket holder
    "processing_times": {
        "mtn_mobile_money": "1-24 hours",
        "airtel_money": "1-24 hours",
        "card": "3-5 business days",
        "bank_transfer": "2-3 business days",
        "wallet": "Instant"
    },

    # Simulation Settings (for SIMULATION mode only)
    "simulation": {
        "failure_rate": float(os.getenv("SIMULATION_FAILURE_RATE", "0.0")),
        "auto_failure_pattern": "9999",  # Phone numbers ending in 9999 always fail
        "seed": os.getenv("SIMULATION_SEED")
    }
}


def get_provider_config(provider: str) -> Dict[str, Any]:
    """
    Get configuration for a specific settlement provider.

    Args:
        provider: Provider name ("mtn_mobile_money", "airtel_money", "card")

    Returns:
        Provider configuration dictionary
    """
    return SETTLEMENT_CONFIG.get(provider, {})


def get_provider_url(provider: str) -> str:
    """
    Get the appropriate API URL for a provider based on the current mode.

    Args:
        provider: Provider name

    Returns:
        API URL for the provider
    """
    config = get_provider_config(provider)
    if SETTLEMENT_MODE == "PRODUCTION":
        return config.get("production_url", "")
    else:
        return config.get("sandbox_url", "")


def get_processing_time(payment_method: str) -> str:
    """Human-readable settlement time for a payment method."""
    return SETTLEMENT_CONFIG["processing_times"].get(payment_method, "1-5 business days")
