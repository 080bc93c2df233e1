"""
Tests for settlement configuration.
"""

import pytest
from app.config.settlement_config import (
    SETTLEMENT_CONFIG,
    get_provider_config,
    get_provider_url,
    get_processing_time
)


class TestSettlementConfig:
    """Test settlement configuration."""

    def test_settlement_mode_exists(self):
        """Test settlement mode is configured."""
        assert "mode" in SETTLEMENT_CONFIG
        assert SETTLEMENT_CONFIG["mode"] in ["SIMULATION", "SANDBOX", "PRODUCTION"]

    def test_providers_configured(self):
        """Test all settlement rails are configured."""
        assert "mtn_mobile_money" in SETTLEMENT_CONFIG
        assert "airtel_money" in SETTLEMENT_CONFIG
        assert "card" in SETTLEMENT_CONFIG

    def test_timeout_configured(self):
        """Test request timeout is configured."""
        assert SETTLEMENT_CONFIG["request_timeout_seconds"] > 0

    def test_currency_is_ugx(self):
        """Test settlement currency."""
        assert SETTLEMENT_CONFIG["currency"] == "UGX"

    def test_simulation_failure_pattern(self):
        """Test the magic failing phone suffix."""
        assert SETTLEMENT_CONFIG["simulation"]["auto_failure_pattern"] == "9999"


class TestProviderHelpers:
    """Test configuration helper functions."""

    def test_get_provider_config(self):
        """Test getting a provider's configuration."""
        config = get_provider_config("airtel_money")
        assert config["country"] == "UG"
        assert "client_id" in config

    def test_get_unknown_provider_config(self):
        """Test unknown providers have an empty configuration."""
        assert get_provider_config("paypal") == {}

    def test_get_provider_url(self):
        """Test a provider URL is returned for the current mode."""
        url = get_provider_url("mtn_mobile_money")
        assert url.startswith("https://")

    @pytest.mark.parametrize("method,expected", [
        ("mtn_mobile_money", "1-24 hours"),
        ("card", "3-5 business days"),
        ("wallet", "Instant"),
    ])
    def test_processing_times(self, method, expected):
        """Test processing time estimates per payment method."""
        assert get_processing_time(method) == expected

    def test_processing_time_fallback(self):
        """Test the fallback estimate."""
        assert get_processing_time("cheque") == "1-5 business days"
