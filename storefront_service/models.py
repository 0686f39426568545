"""
models.py — Data Models for the Storefront API

This module defines the request and response payloads of the REST API.
It uses Pydantic models to ensure type safety and automatic validation of
incoming data. Field names follow the camelCase wire format the storefront
client already speaks.

Models:
    - Auth: RegisterRequest, LoginRequest, UserView, AuthResponse, RoleUpdateRequest
    - Orders: OrderItem, NewOrderRequest, OrderUpdateRequest, OrderView
    - Payments: StkPushRequest, StkPushResponse, StatusQueryRequest, StatusQueryResponse
    - Catalog: ProductCreateRequest, ProductUpdateRequest, ProductView,
      ReviewCreateRequest, ReviewUpdateRequest, ReviewView, PickupLocation
    - Checkout: CheckoutCreateRequest, DeliveryRequest, ExpressPaymentRequest,
      ManualPaymentRequest, CheckoutView
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from .enums import (
    OrderStatus, Role, PaymentMethod, PaymentState, DeliveryMethod, ProductCategory, CheckoutState
)


# --- Auth ---

class RegisterRequest(BaseModel):
    email: str
    password: str
    name: str


class LoginRequest(BaseModel):
    email: str
    password: str


class UserView(BaseModel):
    """Public projection of a user. Never carries the password hash."""
    email: str
    name: str
    role: Role

    @classmethod
    def from_record(cls, record) -> "UserView":
        return cls(email=record.email, name=record.name, role=Role(record.role))


class AuthResponse(BaseModel):
    user: UserView
    token: str


class RoleUpdateRequest(BaseModel):
    role: Role


# --- Orders ---

class OrderItem(BaseModel):
    """
    Represents a single product line in an order, frozen at purchase time.

    Attributes:
        productId (int): Catalog id of the product.
        name (str): Product name at the time of purchase.
        price (int): Unit price in whole KES at the time of purchase.
        quantity (int): Quantity ordered. Must be greater than zero.
    """
    productId: int
    name: str
    price: int = Field(..., ge=0)
    quantity: int = Field(..., gt=0)


class NewOrderRequest(BaseModel):
    """
    Order payload submitted by an authenticated customer.

    Customer name and email are deliberately absent: the server takes them
    from the session so a caller cannot file an order under another account.
    Status and provider CheckoutRequestID are absent too: new orders start
    Pending and only a pushed STK request may bind a CheckoutRequestID.
    If `id` is omitted the server generates one. Unknown fields are ignored.
    """
    id: Optional[str] = None
    items: List[OrderItem] = Field(..., min_length=1)
    subtotal: int = Field(..., ge=0)
    shippingFee: int = Field(..., ge=0)
    totalAmount: int = Field(..., ge=0)
    paymentMethod: PaymentMethod
    deliveryMethod: str
    transactionCode: Optional[str] = None


class OrderUpdateRequest(BaseModel):
    status: Optional[OrderStatus] = None
    trackingNumber: Optional[str] = None
    version: Optional[int] = None  # conditional update when provided


class OrderView(BaseModel):
    id: str
    date: datetime
    customerName: str
    customerEmail: str
    items: List[OrderItem]
    subtotal: int
    shippingFee: int
    totalAmount: int
    paymentMethod: PaymentMethod
    deliveryMethod: str
    status: OrderStatus
    trackingNumber: Optional[str] = None
    paymentState: PaymentState
    version: int

    @classmethod
    def from_record(cls, record) -> "OrderView":
        return cls(
            id=record.id,
            date=record.created_at,
            customerName=record.customer_name,
            customerEmail=record.customer_email,
            items=[OrderItem(**item) for item in record.items],
            subtotal=record.subtotal,
            shippingFee=record.shipping_fee,
            totalAmount=record.total_amount,
            paymentMethod=PaymentMethod(record.payment_method),
            deliveryMethod=record.delivery_method,
            status=OrderStatus(record.status),
            trackingNumber=record.tracking_number,
            paymentState=PaymentState(record.payment_state),
            version=record.version,
        )


# --- Payments ---

class StkPushRequest(BaseModel):
    phoneNumber: str
    amount: int = Field(..., gt=0)
    orderId: str


class StkPushResponse(BaseModel):
    checkoutRequestId: str
    message: str


class StatusQueryRequest(BaseModel):
    checkoutRequestId: str


class StatusQueryResponse(BaseModel):
    success: bool
    resultCode: Optional[str] = None
    resultDesc: Optional[str] = None


# --- Catalog ---

class ProductCreateRequest(BaseModel):
    name: str
    category: ProductCategory
    price: int = Field(..., ge=0)
    image: str
    description: Optional[str] = None
    isFeatured: bool = False
    stock: int = Field(0, ge=0)


class ProductUpdateRequest(BaseModel):
    name: Optional[str] = None
    category: Optional[ProductCategory] = None
    price: Optional[int] = Field(None, ge=0)
    image: Optional[str] = None
    description: Optional[str] = None
    isFeatured: Optional[bool] = None
    stock: Optional[int] = Field(None, ge=0)


class ProductView(BaseModel):
    id: int
    name: str
    category: ProductCategory
    price: int
    image: str
    description: Optional[str] = None
    isFeatured: bool
    stock: int
    averageRating: float
    reviewCount: int

    @classmethod
    def from_record(cls, record) -> "ProductView":
        return cls(
            id=record.id,
            name=record.name,
            category=ProductCategory(record.category),
            price=record.price,
            image=record.image,
            description=record.description,
            isFeatured=record.is_featured,
            stock=record.stock,
            averageRating=record.average_rating,
            reviewCount=record.review_count,
        )


class ReviewCreateRequest(BaseModel):
    productId: int
    rating: int = Field(..., ge=1, le=5)
    comment: str = Field(..., min_length=1)


class ReviewUpdateRequest(BaseModel):
    comment: Optional[str] = None
    verified: Optional[bool] = None


class ReviewView(BaseModel):
    id: int
    productId: int
    customerEmail: str
    customerName: str
    rating: int
    comment: str
    date: datetime
    verified: bool

    @classmethod
    def from_record(cls, record) -> "ReviewView":
        return cls(
            id=record.id,
            productId=record.product_id,
            customerEmail=record.customer_email,
            customerName=record.customer_name,
            rating=record.rating,
            comment=record.comment,
            date=record.created_at,
            verified=record.verified,
        )


class PickupLocation(BaseModel):
    id: str
    name: str
    region: str
    price: int


# --- Checkout ---

class CartLineRequest(BaseModel):
    productId: int
    quantity: int = Field(..., gt=0)


class CheckoutCreateRequest(BaseModel):
    items: List[CartLineRequest] = Field(..., min_length=1)


class DeliveryRequest(BaseModel):
    method: DeliveryMethod
    locationId: Optional[str] = None


class ExpressPaymentRequest(BaseModel):
    phoneNumber: str


class ManualPaymentRequest(BaseModel):
    phoneNumber: str
    transactionCode: str


class CheckoutView(BaseModel):
    sessionId: str
    state: CheckoutState
    items: List[OrderItem]
    subtotal: int
    shippingFee: int
    grandTotal: int
    deliveryMethod: DeliveryMethod
    deliveryDescriptor: str
    pickupLocationId: Optional[str] = None
    orderId: Optional[str] = None
    checkoutRequestId: Optional[str] = None
    pollAttempts: int = 0
    error: Optional[str] = None
