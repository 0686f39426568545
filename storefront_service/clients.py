"""
This module provides the communication client for the M-Pesa Daraja API used by the storefront:
- OAuth access token exchange (client credentials, cached per client instance)
- STK push initiation (Lipa Na M-Pesa Online)
- STK push status query
- Parsing of the provider's asynchronous result callback
The client encapsulates protocol details, error mapping and connection management.
"""

import asyncio
import base64
import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx

from . import config
from .exceptions import (
    ValidationError, ProviderAuthenticationError, PaymentInitiationError, PaymentQueryError
)

log = logging.getLogger(__name__)

# Daraja timestamps are expected in Kenyan local time
EAST_AFRICA_TIME = timezone(timedelta(hours=3))

# Returned by the STK query endpoint while the customer has not answered the prompt yet
STILL_PROCESSING_ERROR_CODE = "500.001.1001"


def normalize_phone(raw: str) -> str:
    """
    Converts a Kenyan mobile number to the 2547XXXXXXXX form Daraja requires.

    Accepted inputs (after stripping non-digits):
        - 9 digits   (712345678)     -> 254712345678
        - 10 digits  (0712345678)    -> 254712345678
        - 12 digits  (254712345678)  -> unchanged

    Raises:
        ValidationError: For any other shape.
    """
    digits = re.sub(r"\D", "", raw or "")
    if len(digits) == 9:
        return f"254{digits}"
    if len(digits) == 10 and digits.startswith("0"):
        return f"254{digits[1:]}"
    if len(digits) == 12 and digits.startswith("254"):
        return digits
    raise ValidationError("Please enter a valid M-Pesa phone number.", details={'phone': raw})


def provider_timestamp(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(EAST_AFRICA_TIME)
    return now.astimezone(EAST_AFRICA_TIME).strftime("%Y%m%d%H%M%S")


def build_password(shortcode: str, passkey: str, timestamp: str) -> str:
    """Daraja request password: base64(shortcode + passkey + timestamp)."""
    return base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode()).decode()


@dataclass
class StkPushResult:
    checkout_request_id: str
    response_code: str
    message: str
    merchant_request_id: Optional[str] = None


@dataclass
class StkQueryResult:
    success: bool
    result_code: Optional[str]
    result_desc: Optional[str]
    checkout_request_id: str


@dataclass
class StkCallbackResult:
    checkout_request_id: str
    result_code: str
    result_desc: str

    @property
    def success(self) -> bool:
        return self.result_code == "0"


class AccessTokenCache:
    """
    Holds one provider bearer token and its expiry.

    Refreshes are single-flight: when the token is missing or expired,
    concurrent callers wait on the same lock and the ones that arrive after
    the refresh reuse the fresh token instead of exchanging credentials again.
    """

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._token: Optional[str] = None
        self._expires_at: float = 0.0
        self._lock = asyncio.Lock()

    def _valid(self) -> bool:
        return self._token is not None and self._clock() < self._expires_at

    async def get(self, fetch) -> str:
        """
        Args:
            fetch: Coroutine function returning (token, expires_in_seconds).
        """
        if self._valid():
            return self._token
        async with self._lock:
            if self._valid():
                return self._token
            token, expires_in = await fetch()
            self._token = token
            self._expires_at = self._clock() + float(expires_in)
            return token

    def invalidate(self):
        self._token = None
        self._expires_at = 0.0


# --- Payment Client (REST) ---
class MpesaClient:
    """
    Client for the M-Pesa Daraja API (REST).
    Handles token exchange, STK push, status queries and error responses.
    """
    def __init__(
            self,
            base_url: str = None,
            consumer_key: str = None,
            consumer_secret: str = None,
            shortcode: str = None,
            passkey: str = None,
            callback_url: str = None,
            token_cache: AccessTokenCache = None,
            transport: httpx.AsyncBaseTransport = None,
    ):
        """
        Initializes the HTTP client with proper timeout configuration.
        Unset arguments fall back to the MPESA_* settings in config.py.
        """
        self.base_url = base_url or config.MPESA_API_BASE
        self.consumer_key = consumer_key if consumer_key is not None else config.MPESA_CONSUMER_KEY
        self.consumer_secret = consumer_secret if consumer_secret is not None else config.MPESA_CONSUMER_SECRET
        self.shortcode = shortcode or config.MPESA_SHORTCODE
        self.passkey = passkey if passkey is not None else config.MPESA_PASSKEY
        self.callback_url = callback_url or config.MPESA_CALLBACK_URL
        self.token_cache = token_cache or AccessTokenCache()

        timeout_config = httpx.Timeout(5.0, read=8.0)
        self.client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout_config, transport=transport)

    async def aclose(self):
        """Closes the HTTP client session."""
        await self.client.aclose()

    async def _exchange_credentials(self) -> tuple[str, float]:
        try:
            response = await self.client.get(
                "/oauth/v1/generate",
                params={"grant_type": "client_credentials"},
                auth=(self.consumer_key, self.consumer_secret),
            )
            response.raise_for_status()
            data = response.json()
            token = data["access_token"]
            expires_in = float(data.get("expires_in", 3599))
        except httpx.HTTPStatusError as e:
            body = _safe_body(e.response)
            log.error(f"Failed to get M-Pesa access token: {body}")
            raise ProviderAuthenticationError(body)
        except (httpx.HTTPError, KeyError, ValueError) as e:
            log.error(f"Failed to get M-Pesa access token: {e}")
            raise ProviderAuthenticationError(str(e))

        log.info("M-Pesa access token obtained.")
        return token, expires_in

    async def get_access_token(self) -> str:
        """
        Returns a valid bearer token, exchanging credentials only when the cached one is missing or expired.
        Raises:
            ProviderAuthenticationError: If the provider rejects the credentials or is unreachable.
        """
        return await self.token_cache.get(self._exchange_credentials)

    def _signed_fields(self) -> dict:
        timestamp = provider_timestamp()
        return {
            "BusinessShortCode": self.shortcode,
            "Password": build_password(self.shortcode, self.passkey, timestamp),
            "Timestamp": timestamp,
        }

    async def initiate(self, phone_number: str, amount: int, order_reference: str) -> StkPushResult:
        """
        Sends an STK push prompt to the customer's phone.
        Args:
            phone_number (str): Customer phone in any accepted local or international form.
            amount (int): Amount in whole KES.
            order_reference (str): Order id, shown to the customer as "Order-<id>".
        Returns:
            StkPushResult: Provider checkout request id and status message.
        Raises:
            ValidationError: If the phone number cannot be normalized.
            ProviderAuthenticationError: If no access token could be obtained.
            PaymentInitiationError: If the provider rejects the request; the message is the provider's own.
        """
        formatted_phone = normalize_phone(phone_number)
        token = await self.get_access_token()

        payload = {
            **self._signed_fields(),
            "TransactionType": "CustomerPayBillOnline",
            "Amount": int(round(amount)),
            "PartyA": formatted_phone,
            "PartyB": self.shortcode,
            "PhoneNumber": formatted_phone,
            "CallBackURL": self.callback_url,
            "AccountReference": f"Order-{order_reference}",
            "TransactionDesc": f"{config.MPESA_TRANSACTION_DESC} {order_reference}",
        }
        headers = {"Authorization": f"Bearer {token}"}

        try:
            response = await self.client.post("/mpesa/stkpush/v1/processrequest", json=payload, headers=headers)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            body = _safe_body(e.response)
            if e.response.status_code == 401:
                self.token_cache.invalidate()
            log.warning(f"[Order: {order_reference}] STK push rejected (HTTP {e.response.status_code}): {body}")
            raise PaymentInitiationError(_provider_message(body, "Failed to initiate payment"),
                                         details={'order_id': order_reference, 'provider_body': body})
        except (httpx.HTTPError, ValueError) as e:
            log.error(f"[Order: {order_reference}] STK push failed: {e}")
            raise PaymentInitiationError("Failed to initiate payment", details={'order_id': order_reference})

        response_code = str(data.get("ResponseCode", ""))
        if response_code != "0" or not data.get("CheckoutRequestID"):
            log.warning(f"[Order: {order_reference}] STK push not accepted: {data}")
            raise PaymentInitiationError(_provider_message(data, "Failed to initiate payment"),
                                         details={'order_id': order_reference, 'provider_body': data})

        log.info(f"[Order: {order_reference}] STK push initiated (CheckoutRequestID: {data['CheckoutRequestID']}).")
        return StkPushResult(
            checkout_request_id=data["CheckoutRequestID"],
            response_code=response_code,
            message=data.get("CustomerMessage") or data.get("ResponseDescription", ""),
            merchant_request_id=data.get("MerchantRequestID"),
        )

    async def query_status(self, checkout_request_id: str) -> StkQueryResult:
        """
        Asks the provider for the outcome of an STK push.
        ResultCode "0" means paid. Anything else, including "still processing", is reported as success=False.
        Raises:
            ProviderAuthenticationError: If no access token could be obtained.
            PaymentQueryError: On transport errors or unexpected provider errors.
        """
        token = await self.get_access_token()
        payload = {**self._signed_fields(), "CheckoutRequestID": checkout_request_id}
        headers = {"Authorization": f"Bearer {token}"}

        try:
            response = await self.client.post("/mpesa/stkpushquery/v1/query", json=payload, headers=headers)
            if response.status_code >= 400:
                body = _safe_body(response)
                if isinstance(body, dict) and body.get("errorCode") == STILL_PROCESSING_ERROR_CODE:
                    return StkQueryResult(False, None, body.get("errorMessage"), checkout_request_id)
                if response.status_code == 401:
                    self.token_cache.invalidate()
                raise PaymentQueryError("Failed to query payment status",
                                        details={'checkout_request_id': checkout_request_id, 'provider_body': body})
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise PaymentQueryError("Failed to query payment status",
                                    details={'checkout_request_id': checkout_request_id, 'error': str(e)})

        result_code = data.get("ResultCode")
        result_code = str(result_code) if result_code is not None else None
        return StkQueryResult(
            success=result_code == "0",
            result_code=result_code,
            result_desc=data.get("ResultDesc"),
            checkout_request_id=data.get("CheckoutRequestID", checkout_request_id),
        )


def parse_callback(body: dict) -> StkCallbackResult:
    """
    Extracts the outcome from a Daraja STK callback body:
        {"Body": {"stkCallback": {"CheckoutRequestID", "ResultCode", "ResultDesc", ...}}}
    Raises:
        ValidationError: If the body does not have that shape.
    """
    try:
        callback = body["Body"]["stkCallback"]
        return StkCallbackResult(
            checkout_request_id=callback["CheckoutRequestID"],
            result_code=str(callback["ResultCode"]),
            result_desc=callback.get("ResultDesc", ""),
        )
    except (KeyError, TypeError):
        raise ValidationError("Malformed M-Pesa callback")


def _safe_body(response: httpx.Response):
    try:
        return response.json()
    except ValueError:
        return response.text


def _provider_message(body, default: str) -> str:
    if isinstance(body, dict):
        return body.get("errorMessage") or body.get("ResponseDescription") or default
    return default
