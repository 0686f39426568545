"""
enums.py — Shared vocabularies.

The string values of OrderStatus and Role are persisted and read by staff
tooling, so they must not change.
"""

from enum import Enum


class OrderStatus(str, Enum):
    PENDING = "Pending"
    PROCESSING = "Processing"
    SHIPPED = "Shipped"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"


class Role(str, Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    SUPPORT = "support"
    CUSTOMER = "customer"


STAFF_ROLES = (Role.SUPPORT, Role.MANAGER, Role.ADMIN)
DASHBOARD_ROLES = (Role.MANAGER, Role.ADMIN)
ADMIN_ROLES = (Role.ADMIN,)


class PaymentMethod(str, Enum):
    EXPRESS = "express"   # M-Pesa STK push
    MANUAL = "manual"     # Paybill + transaction code


class PaymentState(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"


class DeliveryMethod(str, Enum):
    DELIVERY = "delivery"
    PICKUP_MTAANI = "pickup_mtaani"


class ProductCategory(str, Enum):
    FOOTWEAR = "Footwear"
    CLOTHING = "Clothing"
    ACCESSORIES = "Accessories"


class CheckoutState(str, Enum):
    CART = "Cart"
    AWAITING_DELIVERY_SELECTION = "AwaitingDeliverySelection"
    AWAITING_PAYMENT_METHOD_SELECTION = "AwaitingPaymentMethodSelection"
    EXPRESS_SENDING = "ExpressSending"
    EXPRESS_CONFIRMING = "ExpressConfirming"
    EXPRESS_SUCCEEDED = "ExpressSucceeded"
    EXPRESS_FAILED = "ExpressFailed"
    EXPRESS_TIMED_OUT = "ExpressTimedOut"
    MANUAL_PENDING = "ManualPending"
    MANUAL_VERIFYING = "ManualVerifying"
    MANUAL_SUCCEEDED = "ManualSucceeded"
