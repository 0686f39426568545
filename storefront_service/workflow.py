"""
workflow.py — Core Checkout Orchestration

This module drives a single checkout attempt from cart to confirmed order.
It owns the only real state machine and all timing logic of the storefront.

Workflow Overview:
1. Cart -> delivery selection (standard delivery or a Pick-Up Mtaani agent)
2. Payment method selection
3a. Express (M-Pesa STK push):
    - validate phone / pickup location locally
    - initiate the push through the payment gateway
    - create the order optimistically (Processing, payment pending)
    - poll the gateway every POLL_INTERVAL seconds, at most MAX_ATTEMPTS times
    - confirmed -> mark order paid, clear cart; exhausted -> timed out, retry offered
3b. Manual (Paybill + transaction code):
    - format checks only, then the order is recorded after a fixed delay
    - the code is stored for staff to reconcile; payment stays pending

State machine:
    Cart -> AwaitingDeliverySelection -> AwaitingPaymentMethodSelection
        -> ExpressSending -> ExpressConfirming -> ExpressSucceeded | ExpressTimedOut
        -> ExpressSending -> ExpressFailed
        -> ManualPending -> ManualVerifying -> ManualSucceeded
    ExpressFailed / ExpressTimedOut / ExpressConfirming --retry--> AwaitingPaymentMethodSelection
    ExpressFailed / ExpressTimedOut --resubmit--> ExpressSending

The delivery choice survives every failure and retry.
"""

import asyncio
import logging
import re
import uuid
from dataclasses import dataclass
from typing import Optional

import httpx

from . import config
from .cart import Cart, DeliveryOption
from .enums import CheckoutState, PaymentMethod, OrderStatus
from .exceptions import (
    ValidationError, InvalidCheckoutStateError, NotFoundError, StorefrontException,
    PaymentQueryError, PaymentTimeoutError, ProviderAuthenticationError
)
from .models import NewOrderRequest, CheckoutView
from .orders import OrderRepository, generate_order_id
from .tables import UserRecord

log = logging.getLogger(__name__)

BUSY_STATES = {
    CheckoutState.EXPRESS_SENDING,
    CheckoutState.EXPRESS_CONFIRMING,
    CheckoutState.MANUAL_VERIFYING,
}
FINAL_STATES = {
    CheckoutState.EXPRESS_SUCCEEDED,
    CheckoutState.MANUAL_SUCCEEDED,
}


@dataclass
class PaymentSession:
    """Ephemeral state of one STK push. Never shared between checkouts."""
    checkout_request_id: str
    order_id: str
    amount: int
    phone_number: str
    attempts: int = 0


def _digits(value: str) -> str:
    return re.sub(r"\D", "", value or "")


class CheckoutSession:
    """
    One customer's checkout attempt.

    Args:
        customer: Authenticated user placing the order.
        cart: Cart contents; cleared once the checkout succeeds.
        orders: Order store written on initiation and on confirmation.
        gateway: Payment gateway adapter (MpesaClient or compatible).
        poll_interval: Seconds between status queries.
        max_poll_attempts: Status queries before giving up.
        manual_verify_delay: Seconds the manual path waits before recording the order.
    """

    def __init__(
            self,
            customer: UserRecord,
            cart: Cart,
            orders: OrderRepository,
            gateway,
            poll_interval: float = None,
            max_poll_attempts: int = None,
            manual_verify_delay: float = None,
            session_id: str = None,
    ):
        self.session_id = session_id or uuid.uuid4().hex
        self.customer = customer
        self.cart = cart
        self.orders = orders
        self.gateway = gateway
        self.poll_interval = config.PAYMENT_POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval
        self.max_poll_attempts = config.PAYMENT_POLL_MAX_ATTEMPTS if max_poll_attempts is None else max_poll_attempts
        self.manual_verify_delay = (config.MANUAL_VERIFY_DELAY_SECONDS
                                    if manual_verify_delay is None else manual_verify_delay)

        self.state = CheckoutState.CART
        self.delivery = DeliveryOption.standard()
        self.payment: Optional[PaymentSession] = None
        self.order_id: Optional[str] = None
        self.last_error: Optional[StorefrontException] = None
        self._task: Optional[asyncio.Task] = None
        self._log_prefix = f"[Checkout: {self.session_id[:8]}]"

    # --- derived amounts ---

    @property
    def subtotal(self) -> int:
        return self.cart.subtotal

    @property
    def shipping_fee(self) -> int:
        return self.delivery.fee

    @property
    def grand_total(self) -> int:
        return self.subtotal + self.shipping_fee

    # --- helpers ---

    def _require(self, action: str, *allowed: CheckoutState):
        if self.state not in allowed:
            raise InvalidCheckoutStateError(action, self.state.value)

    def _transition(self, new_state: CheckoutState):
        log.info(f"{self._log_prefix} {self.state.value} -> {new_state.value}")
        self.state = new_state

    def _cancel_task(self):
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    def _start_task(self, coro):
        # Never more than one background task per checkout
        self._cancel_task()
        self._task = asyncio.create_task(coro)

    def _check_pickup_location(self):
        if self.delivery.needs_location:
            raise ValidationError("Please select a Pick-Up Mtaani location.")

    def _new_order(self, order_id: str, method: PaymentMethod, transaction_code: str = None) -> NewOrderRequest:
        return NewOrderRequest(
            id=order_id,
            items=self.cart.snapshot(),
            subtotal=self.subtotal,
            shippingFee=self.shipping_fee,
            totalAmount=self.grand_total,
            paymentMethod=method,
            deliveryMethod=self.delivery.descriptor,
            transactionCode=transaction_code,
        )

    # --- cart & delivery ---

    def begin(self):
        """Leaves the cart view. Requires at least one line."""
        self._require("proceed to checkout", CheckoutState.CART)
        if self.cart.is_empty:
            raise ValidationError("Your cart is empty.")
        self._transition(CheckoutState.AWAITING_DELIVERY_SELECTION)

    def select_delivery(self, option: DeliveryOption):
        self._require(
            "change delivery",
            CheckoutState.AWAITING_DELIVERY_SELECTION,
            CheckoutState.AWAITING_PAYMENT_METHOD_SELECTION,
            CheckoutState.MANUAL_PENDING,
            CheckoutState.EXPRESS_FAILED,
            CheckoutState.EXPRESS_TIMED_OUT,
        )
        self.delivery = option
        if self.state != CheckoutState.MANUAL_PENDING:
            self.last_error = None
            self._transition(CheckoutState.AWAITING_PAYMENT_METHOD_SELECTION)

    # --- express path ---

    async def submit_express(self, phone_number: str) -> PaymentSession:
        """
        Initiates an STK push and starts polling for its outcome.
        Allowed again straight after a failed or timed-out attempt.

        Raises:
            ValidationError: Bad phone number or missing pickup location (no network call made).
            PaymentInitiationError / ProviderAuthenticationError: Gateway refused the push;
                the checkout is left in ExpressFailed.
        """
        self._require("pay with M-Pesa Express",
                      CheckoutState.AWAITING_PAYMENT_METHOD_SELECTION, CheckoutState.MANUAL_PENDING,
                      CheckoutState.EXPRESS_FAILED, CheckoutState.EXPRESS_TIMED_OUT)
        self._check_pickup_location()
        digits = _digits(phone_number)
        if len(digits) < 9 or len(digits) > 12:
            raise ValidationError("Please enter a valid M-Pesa phone number.")

        self._cancel_task()
        self.payment = None
        self.last_error = None
        self._transition(CheckoutState.EXPRESS_SENDING)
        order_id = generate_order_id()
        amount = self.grand_total

        try:
            push = await self.gateway.initiate(phone_number, amount, order_id)
            # The order exists from here on, paid or not
            await self.orders.create(
                self._new_order(order_id, PaymentMethod.EXPRESS),
                self.customer,
                status=OrderStatus.PROCESSING,
                checkout_request_id=push.checkout_request_id,
            )
        except StorefrontException as e:
            log.warning(f"{self._log_prefix} Express payment could not start: {e!r}")
            self.last_error = e
            self._transition(CheckoutState.EXPRESS_FAILED)
            raise
        except Exception as e:
            log.critical(f"{self._log_prefix} Unexpected error while starting express payment: {e}", exc_info=True)
            self.last_error = StorefrontException("Failed to initiate payment")
            self._transition(CheckoutState.EXPRESS_FAILED)
            raise

        self.order_id = order_id
        self.payment = PaymentSession(
            checkout_request_id=push.checkout_request_id,
            order_id=order_id,
            amount=amount,
            phone_number=phone_number,
        )
        self._transition(CheckoutState.EXPRESS_CONFIRMING)
        self._start_task(self._poll(self.payment))
        return self.payment

    async def _poll(self, payment: PaymentSession):
        prefix = f"{self._log_prefix}[Order: {payment.order_id}]"
        try:
            while payment.attempts < self.max_poll_attempts:
                await asyncio.sleep(self.poll_interval)
                payment.attempts += 1
                try:
                    result = await self.gateway.query_status(payment.checkout_request_id)
                except (PaymentQueryError, ProviderAuthenticationError, httpx.HTTPError) as e:
                    log.warning(f"{prefix} Status check {payment.attempts} failed: {e}")
                    continue

                if result.success:
                    await self.orders.confirm_payment(payment.order_id)
                    self.cart.clear()
                    self._transition(CheckoutState.EXPRESS_SUCCEEDED)
                    log.info(f"{prefix} Payment confirmed after {payment.attempts} checks.")
                    return

            self.last_error = PaymentTimeoutError(payment.checkout_request_id, payment.attempts)
            self._transition(CheckoutState.EXPRESS_TIMED_OUT)
            log.warning(f"{prefix} No confirmation after {payment.attempts} checks. Order stays Processing.")
        except Exception as e:
            log.critical(f"{prefix} Unexpected error while polling: {e}", exc_info=True)
            self.last_error = e if isinstance(e, StorefrontException) else StorefrontException(str(e))
            self._transition(CheckoutState.EXPRESS_FAILED)

    def retry(self):
        """Stops any pending poll and returns to the payment form, keeping the delivery choice."""
        self._require("retry",
                      CheckoutState.EXPRESS_FAILED, CheckoutState.EXPRESS_TIMED_OUT, CheckoutState.EXPRESS_CONFIRMING)
        self._cancel_task()
        self.payment = None
        self.last_error = None
        self._transition(CheckoutState.AWAITING_PAYMENT_METHOD_SELECTION)

    # --- manual path ---

    def choose_manual(self):
        self._require("choose manual paybill",
                      CheckoutState.AWAITING_PAYMENT_METHOD_SELECTION, CheckoutState.MANUAL_PENDING)
        if self.state != CheckoutState.MANUAL_PENDING:
            self._transition(CheckoutState.MANUAL_PENDING)

    def submit_manual(self, phone_number: str, transaction_code: str):
        """
        Accepts a paybill transaction code after format checks only.
        The code is not verified against the provider; staff reconcile it later.

        Raises:
            ValidationError: Bad phone number, short code or missing pickup location.
        """
        self._require("submit a transaction code", CheckoutState.MANUAL_PENDING)
        self._check_pickup_location()
        if len(_digits(phone_number)) < 10:
            raise ValidationError("Please enter a valid phone number (e.g., 0712345678).")
        code = (transaction_code or "").strip().upper()
        if len(code) < config.MIN_TRANSACTION_CODE_LENGTH:
            raise ValidationError(
                f"Please enter a valid M-PESA transaction code ({config.MIN_TRANSACTION_CODE_LENGTH} characters)."
            )

        self.last_error = None
        self._transition(CheckoutState.MANUAL_VERIFYING)
        self._start_task(self._record_manual(code))

    async def _record_manual(self, code: str):
        try:
            await asyncio.sleep(self.manual_verify_delay)
            order_id = generate_order_id()
            await self.orders.create(
                self._new_order(order_id, PaymentMethod.MANUAL, transaction_code=code),
                self.customer,
                status=OrderStatus.PROCESSING,
            )
            self.order_id = order_id
            self.cart.clear()
            self._transition(CheckoutState.MANUAL_SUCCEEDED)
        except Exception as e:
            log.critical(f"{self._log_prefix} Could not record manual payment: {e}", exc_info=True)
            self.last_error = e if isinstance(e, StorefrontException) else StorefrontException(str(e))
            self._transition(CheckoutState.MANUAL_PENDING)

    # --- lifecycle ---

    async def wait(self):
        """Waits for the running background step (poll loop or manual delay), if any."""
        task = self._task
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass

    def close(self):
        """Abandons the checkout. No further provider requests are made."""
        self._cancel_task()
        log.info(f"{self._log_prefix} Closed in state {self.state.value}.")

    @property
    def polling(self) -> bool:
        return self._task is not None and not self._task.done()

    def to_view(self) -> CheckoutView:
        return CheckoutView(
            sessionId=self.session_id,
            state=self.state,
            items=self.cart.snapshot(),
            subtotal=self.subtotal,
            shippingFee=self.shipping_fee,
            grandTotal=self.grand_total,
            deliveryMethod=self.delivery.method,
            deliveryDescriptor=self.delivery.descriptor,
            pickupLocationId=self.delivery.location.id if self.delivery.location else None,
            orderId=self.order_id,
            checkoutRequestId=self.payment.checkout_request_id if self.payment else None,
            pollAttempts=self.payment.attempts if self.payment else 0,
            error=self.last_error.message if self.last_error else None,
        )


class CheckoutRegistry:
    """Checkout sessions of this API process, each owned by one customer."""

    def __init__(self):
        self._sessions: dict[str, CheckoutSession] = {}

    def add(self, session: CheckoutSession) -> CheckoutSession:
        self._sessions[session.session_id] = session
        return session

    def get(self, session_id: str, customer: UserRecord) -> CheckoutSession:
        session = self._sessions.get(session_id)
        if session is None or session.customer.id != customer.id:
            raise NotFoundError("Checkout session not found", details={'session_id': session_id})
        return session

    def discard(self, session_id: str, customer: UserRecord):
        session = self.get(session_id, customer)
        session.close()
        del self._sessions[session_id]

    def close_all(self):
        for session in self._sessions.values():
            session.close()
        self._sessions.clear()
