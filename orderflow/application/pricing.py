from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Sequence

from orderflow.core_settings import Settings
from orderflow.domain.models import CENTS, money

from .schemas import OrderItemCreate


@dataclass(frozen=True)
class OrderTotals:
    subtotal: Decimal
    tax_amount: Decimal
    shipping_amount: Decimal
    discount_amount: Decimal
    total_amount: Decimal


class PricingPolicy:
    """Tax and shipping rules applied when an order is placed."""

    def __init__(
        self,
        tax_rate: Decimal,
        free_shipping_threshold: Decimal,
        base_shipping_fee: Decimal,
        per_item_shipping_fee: Decimal,
    ):
        self.tax_rate = Decimal(tax_rate)
        self.free_shipping_threshold = Decimal(free_shipping_threshold)
        self.base_shipping_fee = Decimal(base_shipping_fee)
        self.per_item_shipping_fee = Decimal(per_item_shipping_fee)

    @classmethod
    def from_settings(cls, settings: Settings) -> "PricingPolicy":
        return cls(
            tax_rate=settings.TAX_RATE,
            free_shipping_threshold=settings.FREE_SHIPPING_THRESHOLD,
            base_shipping_fee=settings.BASE_SHIPPING_FEE,
            per_item_shipping_fee=settings.PER_ITEM_SHIPPING_FEE,
        )

    def tax(self, subtotal: Decimal) -> Decimal:
        return (subtotal * self.tax_rate).quantize(CENTS, rounding=ROUND_HALF_UP)

    def shipping(self, subtotal: Decimal, line_count: int) -> Decimal:
        if subtotal >= self.free_shipping_threshold:
            return money(0)
        extra_lines = max(line_count - 1, 0)
        return money(self.base_shipping_fee + self.per_item_shipping_fee * extra_lines)

    def price(self, items: Sequence[OrderItemCreate]) -> OrderTotals:
        subtotal = money(sum((item.unit_price * item.quantity for item in items), Decimal("0")))
        tax_amount = self.tax(subtotal)
        shipping_amount = self.shipping(subtotal, len(items))
        discount_amount = money(0)
        return OrderTotals(
            subtotal=subtotal,
            tax_amount=tax_amount,
            shipping_amount=shipping_amount,
            discount_amount=discount_amount,
            total_amount=money(subtotal + tax_amount + shipping_amount - discount_amount),
        )
