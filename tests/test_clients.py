"""
Unit Tests for the M-Pesa Daraja client

Runs MpesaClient against the mock Daraja app in-process and checks the
phone/password helpers and the single-flight access token cache.
"""

import asyncio
import base64
from datetime import datetime, timezone

import httpx
import pytest

from mock_services import mock_mpesa
from storefront_service.clients import (
    AccessTokenCache, MpesaClient, normalize_phone, provider_timestamp, build_password, parse_callback
)
from storefront_service.exceptions import (
    ValidationError, PaymentInitiationError, ProviderAuthenticationError
)


class TestNormalizePhone:

    @pytest.mark.parametrize("raw", [
        "0712345678",
        "712345678",
        "254712345678",
        "+254 712 345 678",
        "0712-345-678",
    ])
    def test_accepted_shapes(self, raw):
        assert normalize_phone(raw) == "254712345678"

    def test_idempotent(self):
        once = normalize_phone("0712345678")
        assert normalize_phone(once) == once

    @pytest.mark.parametrize("raw", ["12345", "", None, "07123456789", "1712345678"])
    def test_rejected_shapes(self, raw):
        with pytest.raises(ValidationError):
            normalize_phone(raw)


class TestRequestSigning:

    def test_password(self):
        password = build_password("174379", "passkey", "20240101120000")
        assert base64.b64decode(password).decode() == "174379passkey20240101120000"

    def test_timestamp_is_east_africa_time(self):
        utc = datetime(2024, 1, 1, 21, 30, 0, tzinfo=timezone.utc)
        assert provider_timestamp(utc) == "20240102003000"


class TestAccessTokenCache:

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self):
        # Arrange
        calls = 0

        async def fetch():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            return f"token-{calls}", 3599

        cache = AccessTokenCache()

        # Act
        tokens = await asyncio.gather(*(cache.get(fetch) for _ in range(10)))

        # Assert
        assert calls == 1
        assert set(tokens) == {"token-1"}

    @pytest.mark.asyncio
    async def test_expired_token_refreshed(self):
        now = [0.0]
        calls = 0

        async def fetch():
            nonlocal calls
            calls += 1
            return f"token-{calls}", 60

        cache = AccessTokenCache(clock=lambda: now[0])
        assert await cache.get(fetch) == "token-1"
        now[0] = 59
        assert await cache.get(fetch) == "token-1"
        now[0] = 61
        assert await cache.get(fetch) == "token-2"

    @pytest.mark.asyncio
    async def test_invalidate(self):
        calls = 0

        async def fetch():
            nonlocal calls
            calls += 1
            return f"token-{calls}", 3599

        cache = AccessTokenCache()
        await cache.get(fetch)
        cache.invalidate()
        assert await cache.get(fetch) == "token-2"


class TestInitiate:
    """MpesaClient.initiate()."""

    @pytest.mark.asyncio
    async def test_accepted(self, mpesa_client):
        result = await mpesa_client.initiate("0712345678", 5000, "ORD-AAAAAAAAAA")

        assert result.checkout_request_id.startswith("ws_CO_")
        assert result.response_code == "0"
        assert result.message == "Success. Request accepted for processing"
        assert mock_mpesa.PUSHES[result.checkout_request_id]["phone"] == "254712345678"

    @pytest.mark.asyncio
    async def test_token_reused_across_requests(self, mpesa_client):
        await mpesa_client.initiate("0712345678", 100, "ORD-1")
        await mpesa_client.initiate("0712345678", 100, "ORD-2")
        assert len(mock_mpesa.ISSUED_TOKENS) == 1

    @pytest.mark.asyncio
    async def test_provider_rejection_message_passed_through(self, mpesa_client):
        with pytest.raises(PaymentInitiationError) as exc_info:
            await mpesa_client.initiate("0700000001", 5000, "ORD-AAAAAAAAAA")
        assert exc_info.value.message == "Bad Request - Invalid PhoneNumber"

    @pytest.mark.asyncio
    async def test_invalid_phone_makes_no_request(self, mpesa_client):
        with pytest.raises(ValidationError):
            await mpesa_client.initiate("12345", 5000, "ORD-AAAAAAAAAA")
        assert mock_mpesa.ISSUED_TOKENS == set()
        assert mock_mpesa.PUSHES == {}

    @pytest.mark.asyncio
    async def test_bad_credentials(self, mock_provider):
        client = MpesaClient(
            base_url="http://daraja.test", consumer_key="bad_key", consumer_secret="x",
            passkey="p", transport=httpx.ASGITransport(app=mock_provider),
        )
        try:
            with pytest.raises(ProviderAuthenticationError, match="M-Pesa authentication failed"):
                await client.initiate("0712345678", 100, "ORD-1")
        finally:
            await client.aclose()


class TestQueryStatus:
    """MpesaClient.query_status()."""

    @pytest.mark.asyncio
    async def test_still_processing_is_not_an_error(self, mpesa_client):
        push = await mpesa_client.initiate("0700000002", 100, "ORD-1")

        result = await mpesa_client.query_status(push.checkout_request_id)

        assert result.success is False
        assert result.result_code is None

    @pytest.mark.asyncio
    async def test_paid_after_prompt_answered(self, mpesa_client):
        push = await mpesa_client.initiate("0712345678", 100, "ORD-1")

        first = await mpesa_client.query_status(push.checkout_request_id)
        second = await mpesa_client.query_status(push.checkout_request_id)

        assert first.success is False
        assert second.success is True
        assert second.result_code == "0"

    @pytest.mark.asyncio
    async def test_cancelled_by_customer(self, mpesa_client):
        push = await mpesa_client.initiate("0700000003", 100, "ORD-1")
        await mpesa_client.query_status(push.checkout_request_id)

        result = await mpesa_client.query_status(push.checkout_request_id)

        assert result.success is False
        assert result.result_code == "1032"


class TestParseCallback:

    def test_success(self):
        result = parse_callback({"Body": {"stkCallback": {
            "MerchantRequestID": "29115-34620561-1",
            "CheckoutRequestID": "ws_CO_191220191020363925",
            "ResultCode": 0,
            "ResultDesc": "The service request is processed successfully.",
        }}})
        assert result.success
        assert result.checkout_request_id == "ws_CO_191220191020363925"

    def test_failure(self):
        result = parse_callback({"Body": {"stkCallback": {
            "CheckoutRequestID": "ws_CO_1", "ResultCode": 1032, "ResultDesc": "Request cancelled by user",
        }}})
        assert not result.success
        assert result.result_code == "1032"

    def test_malformed(self):
        with pytest.raises(ValidationError):
            parse_callback({"Body": {}})
