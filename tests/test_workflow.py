"""
Unit Tests for CheckoutSession

Drives the checkout state machine with a recording gateway double and a
real in-memory order store.
"""

import asyncio

import pytest

from conftest import FakeGateway
from storefront_service.cart import Cart, DeliveryOption
from storefront_service.catalog import get_pickup_location
from storefront_service.enums import CheckoutState, OrderStatus, PaymentMethod, PaymentState
from storefront_service.exceptions import (
    ValidationError, InvalidCheckoutStateError, NotFoundError, PaymentInitiationError, PaymentQueryError,
    ConflictError
)
from storefront_service.orders import OrderRepository
from storefront_service.workflow import CheckoutSession, CheckoutRegistry


@pytest.fixture
def orders(database):
    return OrderRepository(database)


def make_cart() -> Cart:
    cart = Cart()
    cart.add(1, "Canvas Sneakers", 2000, 2)
    cart.add(2, "Bucket Cap", 700)
    return cart


def make_session(customer, orders, gateway, **kwargs) -> CheckoutSession:
    kwargs.setdefault("poll_interval", 0)
    kwargs.setdefault("manual_verify_delay", 0)
    session = CheckoutSession(customer, make_cart(), orders, gateway, **kwargs)
    session.begin()
    session.select_delivery(DeliveryOption.standard())
    return session


class TestCartAndDelivery:

    @pytest.mark.asyncio
    async def test_empty_cart_cannot_proceed(self, customer, orders):
        session = CheckoutSession(customer, Cart(), orders, FakeGateway())
        with pytest.raises(ValidationError, match="empty"):
            session.begin()
        assert session.state == CheckoutState.CART

    @pytest.mark.asyncio
    async def test_delivery_choice_updates_total(self, customer, orders):
        session = make_session(customer, orders, FakeGateway())
        assert session.grand_total == 5000

        session.select_delivery(DeliveryOption.pickup(get_pickup_location("pm_007")))

        assert session.state == CheckoutState.AWAITING_PAYMENT_METHOD_SELECTION
        assert session.grand_total == 4700 + 250

    @pytest.mark.asyncio
    async def test_payment_before_delivery_rejected(self, customer, orders):
        session = CheckoutSession(customer, make_cart(), orders, FakeGateway())
        session.begin()
        with pytest.raises(InvalidCheckoutStateError):
            await session.submit_express("0712345678")


class TestExpressCheckout:
    """CheckoutSession.submit_express() and the polling loop."""

    @pytest.mark.asyncio
    async def test_payment_confirmed(self, customer, orders):
        # Arrange
        gateway = FakeGateway(outcomes=[False, False, True])
        session = make_session(customer, orders, gateway)

        # Act
        payment = await session.submit_express("0712345678")
        assert session.state == CheckoutState.EXPRESS_CONFIRMING
        await session.wait()

        # Assert
        assert session.state == CheckoutState.EXPRESS_SUCCEEDED
        assert gateway.queries == 3
        assert gateway.initiated == [("0712345678", 5000, payment.order_id)]
        assert session.cart.is_empty

        order = await orders.get(session.order_id)
        assert order.status == OrderStatus.PROCESSING.value
        assert order.payment_state == PaymentState.CONFIRMED.value
        assert order.payment_method == PaymentMethod.EXPRESS.value
        assert order.checkout_request_id == payment.checkout_request_id
        assert order.total_amount == 5000

    @pytest.mark.asyncio
    async def test_order_exists_while_confirming(self, customer, orders):
        session = make_session(customer, orders, FakeGateway(), poll_interval=10)

        payment = await session.submit_express("0712345678")

        order = await orders.get(payment.order_id)
        assert order.status == OrderStatus.PROCESSING.value
        assert order.payment_state == PaymentState.PENDING.value
        session.close()

    @pytest.mark.asyncio
    async def test_times_out_after_sixty_queries(self, customer, orders):
        """The customer never answers: exactly 60 queries, then the retry path is offered."""
        gateway = FakeGateway()
        session = make_session(customer, orders, gateway, max_poll_attempts=60)

        await session.submit_express("0712345678")
        await session.wait()

        assert gateway.queries == 60
        assert session.state == CheckoutState.EXPRESS_TIMED_OUT
        assert session.to_view().error == "Payment timeout. Please try again or use manual paybill."
        assert not session.cart.is_empty

        order = await orders.get(session.order_id)
        assert order.status == OrderStatus.PROCESSING.value
        assert order.payment_state == PaymentState.PENDING.value

    @pytest.mark.asyncio
    async def test_query_errors_do_not_stop_polling(self, customer, orders):
        gateway = FakeGateway(outcomes=[PaymentQueryError("boom"), PaymentQueryError("boom"), True])
        session = make_session(customer, orders, gateway)

        await session.submit_express("0712345678")
        await session.wait()

        assert session.state == CheckoutState.EXPRESS_SUCCEEDED
        assert gateway.queries == 3

    @pytest.mark.asyncio
    async def test_initiation_failure(self, customer, orders):
        gateway = FakeGateway(initiate_error=PaymentInitiationError("Bad Request - Invalid PhoneNumber"))
        session = make_session(customer, orders, gateway)

        with pytest.raises(PaymentInitiationError):
            await session.submit_express("0712345678")

        assert session.state == CheckoutState.EXPRESS_FAILED
        assert session.to_view().error == "Bad Request - Invalid PhoneNumber"
        assert await orders.list_all() == []

    @pytest.mark.asyncio
    async def test_order_store_failure_after_push(self, customer, orders, monkeypatch):
        """The push went out but the order could not be written: the checkout does not stay in ExpressSending."""
        # Arrange
        gateway = FakeGateway(outcomes=[True])
        session = make_session(customer, orders, gateway)

        async def failing_create(*args, **kwargs):
            raise ConflictError("Order ORD-0000000000 already exists")

        monkeypatch.setattr(orders, "create", failing_create)

        # Act
        with pytest.raises(ConflictError):
            await session.submit_express("0712345678")

        # Assert
        assert session.state == CheckoutState.EXPRESS_FAILED
        assert session.to_view().error == "Order ORD-0000000000 already exists"
        assert not session.polling

        monkeypatch.undo()
        session.retry()
        await session.submit_express("0712345678")
        await session.wait()
        assert session.state == CheckoutState.EXPRESS_SUCCEEDED

    @pytest.mark.asyncio
    async def test_unexpected_error_after_push(self, customer, orders, monkeypatch):
        session = make_session(customer, orders, FakeGateway())

        async def broken_create(*args, **kwargs):
            raise RuntimeError("database is locked")

        monkeypatch.setattr(orders, "create", broken_create)

        with pytest.raises(RuntimeError):
            await session.submit_express("0712345678")

        assert session.state == CheckoutState.EXPRESS_FAILED
        assert session.to_view().error == "Failed to initiate payment"

    @pytest.mark.asyncio
    async def test_invalid_phone_makes_no_request(self, customer, orders):
        gateway = FakeGateway()
        session = make_session(customer, orders, gateway)

        with pytest.raises(ValidationError):
            await session.submit_express("12345")

        assert gateway.initiated == []
        assert session.state == CheckoutState.AWAITING_PAYMENT_METHOD_SELECTION

    @pytest.mark.asyncio
    async def test_pickup_without_location_makes_no_request(self, customer, orders):
        gateway = FakeGateway()
        session = make_session(customer, orders, gateway)
        session.select_delivery(DeliveryOption.pickup(None))

        with pytest.raises(ValidationError, match="Pick-Up Mtaani location"):
            await session.submit_express("0712345678")
        assert gateway.initiated == []


class TestRetry:

    @pytest.mark.asyncio
    async def test_retry_stops_polling(self, customer, orders):
        gateway = FakeGateway()
        session = make_session(customer, orders, gateway, poll_interval=0.01, max_poll_attempts=10_000)
        session.select_delivery(DeliveryOption.pickup(get_pickup_location("pm_003")))

        await session.submit_express("0712345678")
        await asyncio.sleep(0.05)
        assert session.polling

        session.retry()
        await asyncio.sleep(0)
        queries_at_retry = gateway.queries
        await asyncio.sleep(0.05)

        assert gateway.queries == queries_at_retry
        assert not session.polling
        assert session.state == CheckoutState.AWAITING_PAYMENT_METHOD_SELECTION
        assert session.delivery.location.id == "pm_003"

    @pytest.mark.asyncio
    async def test_retry_after_failure_then_succeed(self, customer, orders):
        gateway = FakeGateway(initiate_error=PaymentInitiationError("Failed to initiate payment"))
        session = make_session(customer, orders, gateway)
        with pytest.raises(PaymentInitiationError):
            await session.submit_express("0712345678")

        session.retry()
        gateway.initiate_error = None
        gateway.outcomes = [True]
        await session.submit_express("0712345678")
        await session.wait()

        assert session.state == CheckoutState.EXPRESS_SUCCEEDED
        assert len(await orders.list_all()) == 1

    @pytest.mark.asyncio
    async def test_retry_not_allowed_after_success(self, customer, orders):
        session = make_session(customer, orders, FakeGateway(outcomes=[True]))
        await session.submit_express("0712345678")
        await session.wait()

        with pytest.raises(InvalidCheckoutStateError):
            session.retry()

    @pytest.mark.asyncio
    async def test_resubmit_directly_after_failure(self, customer, orders):
        gateway = FakeGateway(initiate_error=PaymentInitiationError("Bad Request - Invalid PhoneNumber"))
        session = make_session(customer, orders, gateway)
        with pytest.raises(PaymentInitiationError):
            await session.submit_express("0700000001")

        gateway.initiate_error = None
        gateway.outcomes = [True]
        await session.submit_express("0712345678")
        await session.wait()

        assert session.state == CheckoutState.EXPRESS_SUCCEEDED
        assert session.to_view().error is None
        assert len(gateway.initiated) == 2

    @pytest.mark.asyncio
    async def test_resubmit_directly_after_timeout(self, customer, orders):
        # Arrange
        gateway = FakeGateway()
        session = make_session(customer, orders, gateway, max_poll_attempts=2)
        first = await session.submit_express("0712345678")
        await session.wait()
        assert session.state == CheckoutState.EXPRESS_TIMED_OUT

        # Act
        gateway.outcomes = [True]
        second = await session.submit_express("0712345678")
        await session.wait()

        # Assert
        assert session.state == CheckoutState.EXPRESS_SUCCEEDED
        assert second.order_id != first.order_id
        assert (await orders.get(second.order_id)).payment_state == PaymentState.CONFIRMED.value
        assert (await orders.get(first.order_id)).payment_state == PaymentState.PENDING.value

    @pytest.mark.asyncio
    async def test_resubmit_not_allowed_while_confirming(self, customer, orders):
        session = make_session(customer, orders, FakeGateway(), poll_interval=10)
        await session.submit_express("0712345678")

        with pytest.raises(InvalidCheckoutStateError):
            await session.submit_express("0712345678")
        session.close()


class TestManualCheckout:
    """CheckoutSession.choose_manual() / submit_manual()."""

    @pytest.mark.asyncio
    async def test_short_code_rejected(self, customer, orders):
        """A 9-character code never reaches the order store or the gateway."""
        gateway = FakeGateway()
        session = make_session(customer, orders, gateway)
        session.choose_manual()

        with pytest.raises(ValidationError, match="transaction code"):
            session.submit_manual("0712345678", "QWE123RTY")

        assert session.state == CheckoutState.MANUAL_PENDING
        assert gateway.initiated == []
        assert await orders.list_all() == []

    @pytest.mark.asyncio
    async def test_short_phone_rejected(self, customer, orders):
        session = make_session(customer, orders, FakeGateway())
        session.choose_manual()
        with pytest.raises(ValidationError):
            session.submit_manual("712345678", "QWE123RTY9")

    @pytest.mark.asyncio
    async def test_order_recorded(self, customer, orders):
        session = make_session(customer, orders, FakeGateway())
        session.choose_manual()

        session.submit_manual("0712345678", "qwe123rty9")
        assert session.state == CheckoutState.MANUAL_VERIFYING
        await session.wait()

        assert session.state == CheckoutState.MANUAL_SUCCEEDED
        assert session.cart.is_empty
        order = await orders.get(session.order_id)
        assert order.payment_method == PaymentMethod.MANUAL.value
        assert order.transaction_code == "QWE123RTY9"
        assert order.payment_state == PaymentState.PENDING.value
        assert order.total_amount == 5000

    @pytest.mark.asyncio
    async def test_express_allowed_from_manual_form(self, customer, orders):
        session = make_session(customer, orders, FakeGateway(outcomes=[True]))
        session.choose_manual()

        await session.submit_express("0712345678")
        await session.wait()

        assert session.state == CheckoutState.EXPRESS_SUCCEEDED


class TestCheckoutRegistry:

    @pytest.mark.asyncio
    async def test_sessions_are_private(self, customer, orders, auth_service):
        registry = CheckoutRegistry()
        session = registry.add(make_session(customer, orders, FakeGateway()))
        token, _ = await auth_service.register("otieno@example.com", "secret123", "Otieno")
        other = await auth_service.authorize(token)

        assert registry.get(session.session_id, customer) is session
        with pytest.raises(NotFoundError):
            registry.get(session.session_id, other)

    @pytest.mark.asyncio
    async def test_discard_stops_polling(self, customer, orders):
        registry = CheckoutRegistry()
        gateway = FakeGateway()
        session = registry.add(make_session(customer, orders, gateway, poll_interval=0.01, max_poll_attempts=10_000))
        await session.submit_express("0712345678")

        registry.discard(session.session_id, customer)
        await asyncio.sleep(0)
        queries = gateway.queries
        await asyncio.sleep(0.05)

        assert gateway.queries == queries
        with pytest.raises(NotFoundError):
            registry.get(session.session_id, customer)
