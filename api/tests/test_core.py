"""
Tests for the credential codec, settings parsing, security helpers and
service endpoints
"""
import base64

import httpx
import pytest

from tradelink.core import security
from tradelink.core.codec import decode_secure_data, encode_secure_data
from tradelink.core.config import Settings
from tradelink.core.exceptions import ExchangeRejected, InternalError, NetworkFailure
from tradelink.services.broker_service import classify_exchange_failure


class TestCodec:

    @pytest.mark.unit
    @pytest.mark.parametrize("value", ["X", "FYCLIENT-100", "s3cr3t/+=", "ключ"])
    def test_round_trip(self, value):
        assert decode_secure_data(encode_secure_data(value)) == value

    @pytest.mark.unit
    def test_encoding_is_plain_base64(self):
        assert encode_secure_data("X") == base64.b64encode(b"X").decode()

    @pytest.mark.unit
    @pytest.mark.parametrize("value", [None, ""])
    def test_unset_values_encode_to_none(self, value):
        assert encode_secure_data(value) is None

    @pytest.mark.unit
    @pytest.mark.parametrize("value", ["ABC-100", "plain secret!", "not base64 at all"])
    def test_non_base64_passes_through(self, value):
        assert decode_secure_data(value) == value

    @pytest.mark.unit
    def test_binary_payload_passes_through(self):
        encoded = base64.b64encode(b"\x00\x01\xff").decode()

        assert decode_secure_data(encoded) == encoded


class TestSettings:

    @pytest.mark.unit
    def test_comma_separated_hosts(self, monkeypatch):
        monkeypatch.setenv("ALLOWED_HOSTS", "api.example.com, localhost")

        assert Settings().ALLOWED_HOSTS == ["api.example.com", "localhost"]

    @pytest.mark.unit
    def test_sync_database_driver_is_rejected(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgresql://user:pw@localhost/db")

        with pytest.raises(ValueError):
            Settings()

    @pytest.mark.unit
    def test_fyers_redirect_uri(self, monkeypatch):
        monkeypatch.setenv("APP_BASE_URL", "https://app.example.com/")

        assert Settings().fyers_redirect_uri == "https://app.example.com/fyers-verification"


class TestExchangeFailures:

    @pytest.mark.unit
    @pytest.mark.parametrize("error, expected", [
        (ExchangeRejected("Invalid auth code", error_code=-413), ("Invalid auth code", "rejected")),
        (NetworkFailure(), ("Network error during token exchange", "network")),
        (InternalError("Unexpected response from Fyers"), ("Unexpected response from Fyers", "internal")),
    ])
    def test_classification(self, error, expected):
        assert classify_exchange_failure(error) == expected

    @pytest.mark.unit
    def test_only_network_failures_are_retryable(self):
        assert NetworkFailure.retryable is True
        assert ExchangeRejected.retryable is False
        assert InternalError.retryable is False


class TestAdminKey:

    @pytest.mark.unit
    def test_configured_key(self):
        assert security.verify_api_key("test-admin-key") is True
        assert security.verify_api_key("wrong") is False
        assert security.verify_api_key(None) is False

    @pytest.mark.unit
    def test_no_key_outside_development(self, monkeypatch):
        monkeypatch.setattr(security.settings, "ADMIN_API_KEY", None)
        monkeypatch.setattr(security.settings, "ENVIRONMENT", "production")

        assert security.verify_api_key("anything") is False


class TestServiceEndpoints:

    @pytest.mark.asyncio
    async def test_health(self, test_client: httpx.AsyncClient):
        response = await test_client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.headers["X-Frame-Options"] == "DENY"

    @pytest.mark.asyncio
    async def test_metrics(self, test_client: httpx.AsyncClient):
        await test_client.post("/api/auth/login", json={})

        response = await test_client.get("/metrics")

        assert response.status_code == 200
        assert "auth_events_total" in response.text
        assert "http_requests_total" in response.text

    @pytest.mark.asyncio
    async def test_malformed_body_is_a_400_envelope(self, test_client: httpx.AsyncClient):
        response = await test_client.post(
            "/api/auth/login",
            content="{not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert response.json()["success"] is False
