"""
mock_mpesa.py — Mock Implementation of the M-Pesa Daraja API (REST)

This module provides a simulated Daraja sandbox for exercising the checkout workflow
without real credentials or a real phone. It mimics the three endpoints the
storefront uses and keeps the STK pushes it has accepted in memory.

Simulation Scenarios (chosen by the customer phone number):
    • 254700000001 → STK push rejected (HTTP 400, provider error message)
    • 254700000002 → Customer never answers (query keeps returning "still processing")
    • 254700000003 → Customer cancels the prompt (ResultCode 1032)
    • Any other number → Customer pays after PAY_AFTER_QUERIES status queries
    • Consumer key "bad_key" → OAuth rejected (HTTP 400)

Endpoints:
    GET  /oauth/v1/generate                — Client-credentials token exchange
    POST /mpesa/stkpush/v1/processrequest  — STK push initiation
    POST /mpesa/stkpushquery/v1/query      — STK push status query

Port:
    Default: 8001 (HTTP)
"""

import base64
import logging
import uuid

from fastapi import FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

app = FastAPI(title="Mock M-Pesa Daraja")
log = logging.getLogger(__name__)

REJECTED_PHONE = "254700000001"
UNANSWERED_PHONE = "254700000002"
CANCELLED_PHONE = "254700000003"
PAY_AFTER_QUERIES = 2
STILL_PROCESSING_ERROR_CODE = "500.001.1001"

# CheckoutRequestID -> {"phone": ..., "queries": ...}
PUSHES: dict[str, dict] = {}
ISSUED_TOKENS: set[str] = set()


class StkPushPayload(BaseModel):
    BusinessShortCode: str
    Password: str
    Timestamp: str
    TransactionType: str
    Amount: int
    PartyA: str
    PartyB: str
    PhoneNumber: str
    CallBackURL: str
    AccountReference: str
    TransactionDesc: str


class StkQueryPayload(BaseModel):
    BusinessShortCode: str
    Password: str
    Timestamp: str
    CheckoutRequestID: str


def reset():
    """Forgets every push and token. Used between test cases."""
    PUSHES.clear()
    ISSUED_TOKENS.clear()


def _unauthorized():
    return JSONResponse(status_code=401, content={
        "requestId": uuid.uuid4().hex, "errorCode": "404.001.03", "errorMessage": "Invalid Access Token"
    })


def _token_valid(authorization: str) -> bool:
    return bool(authorization) and authorization.removeprefix("Bearer ").strip() in ISSUED_TOKENS


@app.get("/oauth/v1/generate")
def generate_token(request: Request, grant_type: str = None):
    """
    Issues a bearer token for any consumer key except "bad_key".
    Credentials arrive as HTTP basic auth, like the real API.
    """
    header = request.headers.get("authorization", "")
    consumer_key = ""
    if header.startswith("Basic "):
        consumer_key = base64.b64decode(header[6:]).decode().split(":", 1)[0]

    if grant_type != "client_credentials" or not consumer_key or consumer_key == "bad_key":
        log.warning(f"[Daraja] Token request rejected (key: {consumer_key!r}).")
        return JSONResponse(status_code=400, content={
            "errorCode": "400.008.01", "errorMessage": "Invalid Authentication passed"
        })

    token = uuid.uuid4().hex
    ISSUED_TOKENS.add(token)
    return {"access_token": token, "expires_in": "3599"}


@app.post("/mpesa/stkpush/v1/processrequest")
def process_request(payload: StkPushPayload, authorization: str = Header(None)):
    """
    Accepts an STK push unless the phone number is the rejection scenario.

    Returns:
        dict: MerchantRequestID, CheckoutRequestID, ResponseCode "0" and the customer message.
    """
    if not _token_valid(authorization):
        return _unauthorized()

    log.info(f"[Daraja] STK push {payload.AccountReference} for KES {payload.Amount} to {payload.PhoneNumber}")

    if payload.PhoneNumber == REJECTED_PHONE:
        log.warning(f"[Daraja] STK push for {payload.AccountReference} rejected.")
        return JSONResponse(status_code=400, content={
            "requestId": uuid.uuid4().hex,
            "errorCode": "400.002.02",
            "errorMessage": "Bad Request - Invalid PhoneNumber",
        })

    checkout_request_id = f"ws_CO_{uuid.uuid4().hex[:20]}"
    PUSHES[checkout_request_id] = {"phone": payload.PhoneNumber, "queries": 0}
    return {
        "MerchantRequestID": f"{uuid.uuid4().hex[:5]}-{uuid.uuid4().hex[:8]}",
        "CheckoutRequestID": checkout_request_id,
        "ResponseCode": "0",
        "ResponseDescription": "Success. Request accepted for processing",
        "CustomerMessage": "Success. Request accepted for processing",
    }


@app.post("/mpesa/stkpushquery/v1/query")
def query(payload: StkQueryPayload, authorization: str = Header(None)):
    """
    Reports the outcome of an accepted push according to its scenario.
    Unknown ids and unanswered pushes answer with the provider's "still processing" error.
    """
    if not _token_valid(authorization):
        return _unauthorized()

    push = PUSHES.get(payload.CheckoutRequestID)
    if push is not None:
        push["queries"] += 1

    if push is None or push["phone"] == UNANSWERED_PHONE or push["queries"] < PAY_AFTER_QUERIES:
        return JSONResponse(status_code=500, content={
            "requestId": uuid.uuid4().hex,
            "errorCode": STILL_PROCESSING_ERROR_CODE,
            "errorMessage": "The transaction is being processed",
        })

    if push["phone"] == CANCELLED_PHONE:
        result_code, result_desc = "1032", "Request cancelled by user"
    else:
        result_code, result_desc = "0", "The service request is processed successfully."

    return {
        "ResponseCode": "0",
        "ResponseDescription": "The service request has been accepted successsfully",
        "MerchantRequestID": uuid.uuid4().hex[:12],
        "CheckoutRequestID": payload.CheckoutRequestID,
        "ResultCode": result_code,
        "ResultDesc": result_desc,
    }


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO)
    uvicorn.run(app, host="0.0.0.0", port=8001)
