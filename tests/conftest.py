"""
Pytest configuration and fixtures for tests.

This file is automatically loaded by pytest and provides shared fixtures
and configuration for all tests.
"""

import os

# Test settings must be in place before config.py is imported
os.environ["DB_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["LOG_FILE"] = ""
os.environ["AUTH_SECRET"] = "test-secret"
os.environ["PASSWORD_HASH_ITERATIONS"] = "1000"
os.environ["PAYMENT_POLL_INTERVAL_SECONDS"] = "0.01"
os.environ["MANUAL_VERIFY_DELAY_SECONDS"] = "0"

import httpx
import pytest
import pytest_asyncio

from mock_services import mock_mpesa
from storefront_service.auth import AuthService, TokenSigner
from storefront_service.catalog import ProductRepository, ReviewRepository
from storefront_service.clients import MpesaClient, StkPushResult, StkQueryResult
from storefront_service.db import Database
from storefront_service.enums import ProductCategory, Role
from storefront_service.models import ProductCreateRequest


# ============================================================================
# Test Doubles
# ============================================================================

class FakeGateway:
    """
    Payment gateway double recording every call.

    Args:
        outcomes: Consumed one per status query. True = paid, False = not yet,
            an exception instance is raised. Empty list = never paid.
        initiate_error: Raised by initiate() when set.
    """

    def __init__(self, outcomes=None, initiate_error=None):
        self.outcomes = list(outcomes or [])
        self.initiate_error = initiate_error
        self.initiated = []
        self.queries = 0

    async def initiate(self, phone_number, amount, order_reference):
        self.initiated.append((phone_number, amount, order_reference))
        if self.initiate_error is not None:
            raise self.initiate_error
        return StkPushResult(
            checkout_request_id=f"ws_CO_{len(self.initiated)}",
            response_code="0",
            message="Success. Request accepted for processing",
        )

    async def query_status(self, checkout_request_id):
        self.queries += 1
        outcome = self.outcomes.pop(0) if self.outcomes else False
        if isinstance(outcome, Exception):
            raise outcome
        return StkQueryResult(
            success=outcome,
            result_code="0" if outcome else None,
            result_desc="The service request is processed successfully." if outcome else None,
            checkout_request_id=checkout_request_id,
        )

    async def aclose(self):
        pass


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest_asyncio.fixture
async def database():
    """Fresh in-memory database with all tables."""
    db = Database("sqlite+aiosqlite:///:memory:")
    await db.create_all()
    yield db
    await db.dispose()


@pytest.fixture
def signer():
    return TokenSigner("test-secret")


@pytest.fixture
def auth_service(database, signer):
    return AuthService(database, signer)


@pytest_asyncio.fixture
async def customer_token(auth_service):
    token, _ = await auth_service.register("jane@example.com", "secret123", "Jane Wanjiru")
    return token


@pytest_asyncio.fixture
async def customer(auth_service, customer_token):
    return await auth_service.authorize(customer_token)


async def register_with_role(auth_service, email, role: Role):
    token, _ = await auth_service.register(email, "secret123", email.split("@")[0].title())
    await auth_service.set_role(email, role)
    return token


@pytest_asyncio.fixture
async def admin_token(auth_service):
    return await register_with_role(auth_service, "admin@example.com", Role.ADMIN)


@pytest_asyncio.fixture
async def support_token(auth_service):
    return await register_with_role(auth_service, "support@example.com", Role.SUPPORT)


@pytest_asyncio.fixture
async def products(database):
    """Product repository seeded with two items (KES 2000 sneakers, KES 700 cap)."""
    repo = ProductRepository(database)
    await repo.create(ProductCreateRequest(
        name="Canvas Sneakers", category=ProductCategory.FOOTWEAR, price=2000,
        image="https://img.example/sneakers.jpg", description="White canvas sneakers", stock=10,
    ))
    await repo.create(ProductCreateRequest(
        name="Bucket Cap", category=ProductCategory.ACCESSORIES, price=700,
        image="https://img.example/cap.jpg", description="Black bucket cap", isFeatured=True, stock=5,
    ))
    return repo


@pytest.fixture
def reviews(database):
    return ReviewRepository(database)


# ============================================================================
# Payment Provider Fixtures
# ============================================================================

@pytest.fixture
def mock_provider():
    """The mock Daraja app with its in-memory push table cleared."""
    mock_mpesa.reset()
    yield mock_mpesa.app
    mock_mpesa.reset()


@pytest_asyncio.fixture
async def mpesa_client(mock_provider):
    """MpesaClient talking to the mock Daraja app in-process."""
    client = MpesaClient(
        base_url="http://daraja.test",
        consumer_key="test_key",
        consumer_secret="test_secret",
        shortcode="174379",
        passkey="test_passkey",
        callback_url="http://storefront.test/api/payments/callback",
        transport=httpx.ASGITransport(app=mock_provider),
    )
    yield client
    await client.aclose()


# ============================================================================
# API Fixtures
# ============================================================================

@pytest_asyncio.fixture
async def api(database, mpesa_client, signer, products):
    """HTTP client bound to a storefront app wired to the test database and the mock provider."""
    from storefront_service.main import create_app

    app = create_app(database=database, gateway=mpesa_client, signer=signer)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://storefront.test") as client:
        yield client
    app.state.checkouts.close_all()


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}
