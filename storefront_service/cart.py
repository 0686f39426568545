"""
cart.py — Cart contents and delivery pricing.

All amounts are whole Kenyan shillings held as int, so
grand_total == subtotal + shipping_fee holds exactly no matter how often the
delivery option changes.
"""

from dataclasses import dataclass, field
from typing import Optional

from . import config
from .enums import DeliveryMethod
from .models import OrderItem, PickupLocation


@dataclass
class CartLine:
    product_id: int
    name: str
    price: int
    quantity: int

    @property
    def line_total(self) -> int:
        return self.price * self.quantity

    def snapshot(self) -> OrderItem:
        return OrderItem(productId=self.product_id, name=self.name, price=self.price, quantity=self.quantity)


@dataclass
class DeliveryOption:
    method: DeliveryMethod
    fee: int
    location: Optional[PickupLocation] = None

    @classmethod
    def standard(cls) -> "DeliveryOption":
        return cls(method=DeliveryMethod.DELIVERY, fee=config.STANDARD_DELIVERY_FEE)

    @classmethod
    def pickup(cls, location: Optional[PickupLocation]) -> "DeliveryOption":
        """A pickup option without a location keeps the standard fee until one is chosen."""
        if location is None:
            return cls(method=DeliveryMethod.PICKUP_MTAANI, fee=config.STANDARD_DELIVERY_FEE)
        return cls(method=DeliveryMethod.PICKUP_MTAANI, fee=location.price, location=location)

    @property
    def needs_location(self) -> bool:
        return self.method == DeliveryMethod.PICKUP_MTAANI and self.location is None

    @property
    def descriptor(self) -> str:
        if self.method == DeliveryMethod.PICKUP_MTAANI and self.location is not None:
            return f"Pick-Up: {self.location.name}"
        return "Standard Delivery"


@dataclass
class Cart:
    lines: list[CartLine] = field(default_factory=list)

    def add(self, product_id: int, name: str, price: int, quantity: int = 1):
        for line in self.lines:
            if line.product_id == product_id:
                line.quantity += quantity
                return
        self.lines.append(CartLine(product_id, name, price, quantity))

    def update_quantity(self, product_id: int, quantity: int):
        if quantity <= 0:
            self.remove(product_id)
            return
        for line in self.lines:
            if line.product_id == product_id:
                line.quantity = quantity

    def remove(self, product_id: int):
        self.lines = [line for line in self.lines if line.product_id != product_id]

    def clear(self):
        self.lines = []

    @property
    def is_empty(self) -> bool:
        return not self.lines

    @property
    def subtotal(self) -> int:
        return sum(line.line_total for line in self.lines)

    def snapshot(self) -> list[OrderItem]:
        return [line.snapshot() for line in self.lines]
