"""
orders.py — Order Record Store

Persists orders and guards their lifecycle.

Status lifecycle:
    Pending -> Processing -> Shipped -> Completed     (forward only, one step at a time)
    any non-terminal status -> Cancelled
    Completed and Cancelled are terminal.

Payment confirmation is tracked separately in `payment_state`. An order
created optimistically at STK-push time sits in Processing with
payment_state=pending until the provider confirms; it can not be shipped
before that.

Every mutation bumps `version`. Callers that pass `expected_version` get a
ConflictError instead of silently overwriting a concurrent edit.
"""

import logging
import uuid
from typing import Optional

from sqlalchemy import select, delete
from sqlalchemy.exc import IntegrityError

from .db import Database
from .enums import OrderStatus, PaymentState, STAFF_ROLES
from .exceptions import ConflictError, NotFoundError, ValidationError, InvalidOrderStateError, AuthorizationError
from .models import NewOrderRequest
from .tables import OrderRecord, UserRecord

log = logging.getLogger(__name__)


class OrderStateMachine:
    """Transition rules for order status."""

    FORWARD = [OrderStatus.PENDING, OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.COMPLETED]
    TERMINAL = {OrderStatus.COMPLETED, OrderStatus.CANCELLED}

    @classmethod
    def is_valid_transition(cls, from_status: OrderStatus, to_status: OrderStatus) -> bool:
        if from_status == to_status:
            return True
        if from_status in cls.TERMINAL:
            return False
        if to_status == OrderStatus.CANCELLED:
            return True
        return cls.FORWARD.index(to_status) == cls.FORWARD.index(from_status) + 1

    @classmethod
    def next_statuses(cls, from_status: OrderStatus) -> list[OrderStatus]:
        return [s for s in OrderStatus if s != from_status and cls.is_valid_transition(from_status, s)]


def generate_order_id() -> str:
    return f"ORD-{uuid.uuid4().hex[:10].upper()}"


def is_staff(user: UserRecord) -> bool:
    return user.role in {r.value for r in STAFF_ROLES}


class OrderRepository:
    def __init__(self, database: Database):
        self.db = database

    async def create(self, new_order: NewOrderRequest, customer: UserRecord,
                     status: OrderStatus = OrderStatus.PENDING,
                     checkout_request_id: Optional[str] = None) -> OrderRecord:
        """
        Stores a new order for the authenticated customer.

        Args:
            status: Initial status. Customer-facing callers leave the default;
                the checkout orchestrator records accepted STK pushes as Processing.
            checkout_request_id: CheckoutRequestID of an STK push this service sent.

        Raises:
            ValidationError: If totalAmount != subtotal + shippingFee.
            ConflictError: If the order id already exists.
        """
        if new_order.totalAmount != new_order.subtotal + new_order.shippingFee:
            raise ValidationError(
                "Order total must equal subtotal plus shipping fee.",
                details={'subtotal': new_order.subtotal, 'shipping_fee': new_order.shippingFee,
                         'total': new_order.totalAmount}
            )

        order_id = new_order.id or generate_order_id()
        record = OrderRecord(
            id=order_id,
            customer_name=customer.name,
            customer_email=customer.email,
            items=[item.model_dump() for item in new_order.items],
            subtotal=new_order.subtotal,
            shipping_fee=new_order.shippingFee,
            total_amount=new_order.totalAmount,
            payment_method=new_order.paymentMethod.value,
            delivery_method=new_order.deliveryMethod,
            status=OrderStatus(status).value,
            payment_state=PaymentState.PENDING.value,
            checkout_request_id=checkout_request_id,
            transaction_code=new_order.transactionCode,
            version=1,
        )
        async with self.db.session() as session:
            existing = await session.execute(select(OrderRecord.pk).where(OrderRecord.id == order_id))
            if existing.scalar() is not None:
                raise ConflictError(f"Order {order_id} already exists", details={'order_id': order_id})
            session.add(record)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise ConflictError(f"Order {order_id} already exists", details={'order_id': order_id})
            await session.refresh(record)

        log.info(f"[Order: {order_id}] Created for {customer.email} "
                 f"(total {record.total_amount}, {record.payment_method}, status {record.status}).")
        return record

    async def get(self, order_id: str) -> OrderRecord:
        async with self.db.session() as session:
            result = await session.execute(select(OrderRecord).where(OrderRecord.id == order_id))
            order = result.scalar()
        if order is None:
            raise NotFoundError("Order not found", details={'order_id': order_id})
        return order

    async def get_for_user(self, order_id: str, user: UserRecord) -> OrderRecord:
        """Owner or staff only."""
        order = await self.get(order_id)
        if order.customer_email != user.email and not is_staff(user):
            raise AuthorizationError("Unauthorized access")
        return order

    async def find_by_checkout_request(self, checkout_request_id: str) -> Optional[OrderRecord]:
        async with self.db.session() as session:
            result = await session.execute(
                select(OrderRecord).where(OrderRecord.checkout_request_id == checkout_request_id)
            )
            return result.scalar()

    async def list_for_customer(self, email: str) -> list[OrderRecord]:
        stmt = (select(OrderRecord)
                .where(OrderRecord.customer_email == email)
                .order_by(OrderRecord.created_at.desc(), OrderRecord.pk.desc()))
        async with self.db.session() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def list_all(self) -> list[OrderRecord]:
        stmt = select(OrderRecord).order_by(OrderRecord.created_at.desc(), OrderRecord.pk.desc())
        async with self.db.session() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def _mutate(self, order_id: str, expected_version: Optional[int], apply) -> OrderRecord:
        async with self.db.session() as session:
            result = await session.execute(select(OrderRecord).where(OrderRecord.id == order_id))
            order = result.scalar()
            if order is None:
                raise NotFoundError("Order not found", details={'order_id': order_id})
            if expected_version is not None and order.version != expected_version:
                raise ConflictError(
                    f"Order {order_id} was modified by someone else. Reload and try again.",
                    details={'order_id': order_id, 'expected_version': expected_version,
                             'current_version': order.version}
                )
            changed = apply(order)
            if changed:
                order.version += 1
                await session.commit()
                await session.refresh(order)
            return order

    @staticmethod
    def _apply_status(order: OrderRecord, new_status: OrderStatus) -> bool:
        current = OrderStatus(order.status)
        if current == new_status:
            return False
        if not OrderStateMachine.is_valid_transition(current, new_status):
            raise InvalidOrderStateError(order.id, current.value, new_status.value)
        if new_status == OrderStatus.SHIPPED and order.payment_state != PaymentState.CONFIRMED.value:
            raise InvalidOrderStateError(
                order.id, current.value, new_status.value,
                reason=f"Order {order.id} cannot be shipped before its payment is confirmed"
            )
        order.status = new_status.value
        log.info(f"[Order: {order.id}] Status {current.value} -> {new_status.value}.")
        return True

    async def update(self, order_id: str, status: Optional[OrderStatus] = None,
                     tracking_number: Optional[str] = None,
                     expected_version: Optional[int] = None) -> OrderRecord:
        """
        Applies a staff edit (status and/or tracking number) in one transaction.

        Raises:
            InvalidOrderStateError: Illegal transition, or shipping before payment is confirmed.
            ConflictError: expected_version does not match.
        """
        new_status = OrderStatus(status) if status is not None else None

        def apply(order: OrderRecord) -> bool:
            changed = False
            if new_status is not None:
                changed = self._apply_status(order, new_status)
            if tracking_number is not None and order.tracking_number != tracking_number:
                order.tracking_number = tracking_number
                log.info(f"[Order: {order_id}] Tracking number set to {tracking_number}.")
                changed = True
            return changed

        return await self._mutate(order_id, expected_version, apply)

    async def update_status(self, order_id: str, new_status: OrderStatus,
                            expected_version: Optional[int] = None) -> OrderRecord:
        return await self.update(order_id, status=new_status, expected_version=expected_version)

    async def update_tracking(self, order_id: str, tracking_number: str,
                              expected_version: Optional[int] = None) -> OrderRecord:
        return await self.update(order_id, tracking_number=tracking_number, expected_version=expected_version)

    def check_payable(self, order: OrderRecord, amount: int):
        """
        Guards an STK push for an existing order.

        Raises:
            ConflictError: The order is already paid, or is Completed/Cancelled.
            ValidationError: The amount differs from the order total.
        """
        if order.payment_state == PaymentState.CONFIRMED.value:
            raise ConflictError(f"Order {order.id} is already paid", details={'order_id': order.id})
        if OrderStatus(order.status) in OrderStateMachine.TERMINAL:
            raise ConflictError(f"Order {order.id} is {order.status} and cannot be paid",
                                details={'order_id': order.id, 'status': order.status})
        if amount != order.total_amount:
            raise ValidationError(
                "Payment amount must equal the order total.",
                details={'order_id': order.id, 'amount': amount, 'total': order.total_amount}
            )

    async def attach_checkout_request(self, order_id: str, checkout_request_id: str) -> OrderRecord:
        """Binds an accepted STK push to the order and moves a Pending order to Processing."""
        def apply(order: OrderRecord) -> bool:
            changed = False
            if order.checkout_request_id != checkout_request_id:
                order.checkout_request_id = checkout_request_id
                changed = True
            if order.status == OrderStatus.PENDING.value:
                changed = self._apply_status(order, OrderStatus.PROCESSING) or changed
            return changed

        return await self._mutate(order_id, None, apply)

    async def confirm_payment(self, order_id: str) -> OrderRecord:
        """Idempotent."""
        def apply(order: OrderRecord) -> bool:
            if order.payment_state == PaymentState.CONFIRMED.value:
                return False
            order.payment_state = PaymentState.CONFIRMED.value
            log.info(f"[Order: {order_id}] Payment confirmed.")
            return True

        return await self._mutate(order_id, None, apply)

    async def confirm_payment_by_checkout_request(self, checkout_request_id: str) -> Optional[OrderRecord]:
        order = await self.find_by_checkout_request(checkout_request_id)
        if order is None:
            log.warning(f"No order found for CheckoutRequestID {checkout_request_id}.")
            return None
        return await self.confirm_payment(order.id)

    async def delete(self, order_id: str) -> None:
        async with self.db.session() as session:
            result = await session.execute(delete(OrderRecord).where(OrderRecord.id == order_id))
            await session.commit()
        if result.rowcount == 0:
            raise NotFoundError("Order not found", details={'order_id': order_id})
        log.warning(f"[Order: {order_id}] Hard-deleted.")
