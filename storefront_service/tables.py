"""
tables.py — ORM tables for users, products, orders and reviews.

Status, role and payment vocabularies are stored as their plain string
values (see enums.py) so that external tooling reads the same words the
API returns.
"""

from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, DateTime, Boolean, Float, Text, JSON, ForeignKey
from sqlalchemy.orm import declarative_base

from .enums import OrderStatus, Role, PaymentState

Base = declarative_base()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class UserRecord(Base):
    __tablename__ = 'users'

    id = Column(Integer, primary_key=True)
    email = Column(String(255), nullable=False, unique=True, index=True)
    password_hash = Column(String(255), nullable=False)
    name = Column(String(255), nullable=False)
    role = Column(String(20), nullable=False, default=Role.CUSTOMER.value)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)


class ProductRecord(Base):
    __tablename__ = 'products'

    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False)
    category = Column(String(40), nullable=False)
    price = Column(Integer, nullable=False)  # whole KES
    image = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    is_featured = Column(Boolean, nullable=False, default=False)
    stock = Column(Integer, nullable=False, default=0)
    average_rating = Column(Float, nullable=False, default=0.0)
    review_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)


class OrderRecord(Base):
    __tablename__ = 'orders'

    pk = Column(Integer, primary_key=True)
    id = Column(String(40), nullable=False, unique=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    customer_name = Column(String(255), nullable=False)
    customer_email = Column(String(255), nullable=False, index=True)

    # Line item snapshots: [{"productId", "name", "price", "quantity"}]
    items = Column(JSON, nullable=False, default=list)
    subtotal = Column(Integer, nullable=False)
    shipping_fee = Column(Integer, nullable=False)
    total_amount = Column(Integer, nullable=False)

    payment_method = Column(String(20), nullable=False)
    delivery_method = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False, default=OrderStatus.PENDING.value)
    tracking_number = Column(String(100), nullable=True)

    # Payment confirmation is tracked apart from fulfilment status
    payment_state = Column(String(20), nullable=False, default=PaymentState.PENDING.value)
    checkout_request_id = Column(String(100), nullable=True, index=True)
    transaction_code = Column(String(40), nullable=True)

    version = Column(Integer, nullable=False, default=1)


class ReviewRecord(Base):
    __tablename__ = 'reviews'

    id = Column(Integer, primary_key=True)
    product_id = Column(Integer, ForeignKey('products.id', ondelete='CASCADE'), nullable=False, index=True)
    customer_email = Column(String(255), nullable=False)
    customer_name = Column(String(255), nullable=False)
    rating = Column(Integer, nullable=False)
    comment = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    verified = Column(Boolean, nullable=False, default=False)
