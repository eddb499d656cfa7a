import secrets
import string
import time
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from .errors import InvalidTransitionError, RefundExceedsBalanceError, ValidationError

CENTS = Decimal("0.01")


class Base(DeclarativeBase):
    pass


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class OrderPaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PARTIALLY_REFUNDED = "partially_refunded"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    CARD = "card"
    BANK_TRANSFER = "bank_transfer"
    PAYPAL = "paypal"
    APPLE_PAY = "apple_pay"
    GOOGLE_PAY = "google_pay"


class Currency(str, Enum):
    USD = "USD"
    EUR = "EUR"
    GBP = "GBP"
    CAD = "CAD"
    AUD = "AUD"


ORDER_TRANSITIONS: dict[OrderStatus, frozenset] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}

# Refund statuses are derived from refunded_amount, never requested directly
PAYMENT_TRANSITIONS: dict[PaymentStatus, frozenset] = {
    PaymentStatus.PENDING: frozenset({
        PaymentStatus.PROCESSING, PaymentStatus.SUCCEEDED,
        PaymentStatus.FAILED, PaymentStatus.CANCELLED,
    }),
    PaymentStatus.PROCESSING: frozenset({
        PaymentStatus.SUCCEEDED, PaymentStatus.FAILED, PaymentStatus.CANCELLED,
    }),
    PaymentStatus.SUCCEEDED: frozenset(),
    PaymentStatus.PARTIALLY_REFUNDED: frozenset(),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.CANCELLED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}

# One payment per order may sit in these statuses at a time
ACTIVE_PAYMENT_STATUSES = (
    PaymentStatus.PENDING.value,
    PaymentStatus.PROCESSING.value,
    PaymentStatus.SUCCEEDED.value,
)
_ACTIVE_PAYMENT_PREDICATE = "status IN ('pending', 'processing', 'succeeded')"

_ORDER_NUMBER_ALPHABET = string.ascii_uppercase + string.digits


def money(value) -> Decimal:
    return Decimal(value).quantize(CENTS)


class Order(Base):
    __tablename__ = "orders"
    id: Mapped[int] = mapped_column(primary_key=True)
    order_number: Mapped[str] = mapped_column(String(50), unique=True, index=True)
    # Owning user lives in the identity service (no FK)
    user_id: Mapped[int] = mapped_column(Integer, index=True)
    status: Mapped[str] = mapped_column(String(30), default=OrderStatus.PENDING.value, index=True)
    payment_status: Mapped[str] = mapped_column(
        String(30), default=OrderPaymentStatus.PENDING.value, index=True
    )
    subtotal: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    tax_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0.00"))
    shipping_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0.00"))
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0.00"))
    total_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    shipping_address: Mapped[dict] = mapped_column(JSON)
    billing_address: Mapped[dict] = mapped_column(JSON)
    payment_method: Mapped[str] = mapped_column(String(50))
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )
    items: Mapped[list["OrderItem"]] = relationship(
        "OrderItem", back_populates="order", cascade="all, delete-orphan",
        order_by="OrderItem.id", lazy="selectin",
    )

    @staticmethod
    def generate_order_number() -> str:
        """ORD-<last 8 digits of the ms clock>-<8 random base36 chars>."""
        timestamp = str(time.time_ns() // 1_000_000)[-8:]
        suffix = "".join(secrets.choice(_ORDER_NUMBER_ALPHABET) for _ in range(8))
        return f"ORD-{timestamp}-{suffix}"

    def calculate_total(self) -> Decimal:
        return money(self.subtotal + self.tax_amount + self.shipping_amount - self.discount_amount)

    def can_be_cancelled(self) -> bool:
        return self.status in (OrderStatus.PENDING.value, OrderStatus.CONFIRMED.value)

    def can_be_refunded(self) -> bool:
        return (
            self.status == OrderStatus.DELIVERED.value
            and self.payment_status == OrderPaymentStatus.PAID.value
        )

    def can_transition_to(self, new_status: OrderStatus) -> bool:
        new_status = OrderStatus(new_status)
        if new_status not in ORDER_TRANSITIONS[OrderStatus(self.status)]:
            return False
        if new_status == OrderStatus.REFUNDED:
            return self.can_be_refunded()
        return True

    def ensure_transition(self, new_status: OrderStatus) -> None:
        if not self.can_transition_to(new_status):
            raise InvalidTransitionError("order", self.status, OrderStatus(new_status).value)


class OrderItem(Base):
    __tablename__ = "order_items"
    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), index=True)
    # Catalog entry lives in the product service (no FK); name/sku/image are snapshots
    product_id: Mapped[int] = mapped_column(Integer, index=True)
    product_name: Mapped[str] = mapped_column(String(255))
    product_sku: Mapped[str] = mapped_column(String(100))
    product_image: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    quantity: Mapped[int] = mapped_column(Integer)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    total_price: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    order: Mapped[Order] = relationship("Order", back_populates="items")

    def calculate_total_price(self) -> Decimal:
        return money(self.quantity * self.unit_price)


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        Index(
            "uq_payments_active_order", "order_id", unique=True,
            sqlite_where=text(_ACTIVE_PAYMENT_PREDICATE),
            postgresql_where=text(_ACTIVE_PAYMENT_PREDICATE),
        ),
    )
    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"), index=True)
    user_id: Mapped[int] = mapped_column(Integer, index=True)
    gateway_intent_id: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True)
    gateway_charge_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    currency: Mapped[str] = mapped_column(String(3), default=Currency.USD.value)
    status: Mapped[str] = mapped_column(String(30), default=PaymentStatus.PENDING.value, index=True)
    payment_method: Mapped[str] = mapped_column(String(30))
    payment_method_details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    refunded_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0.00"))
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    payment_metadata: Mapped[dict] = mapped_column("metadata", JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )
    refunds: Mapped[list["PaymentRefund"]] = relationship(
        "PaymentRefund", back_populates="payment", order_by="PaymentRefund.id", lazy="selectin",
    )
    disputes: Mapped[list["PaymentDispute"]] = relationship(
        "PaymentDispute", back_populates="payment", order_by="PaymentDispute.id", lazy="selectin",
    )

    def is_active(self) -> bool:
        return self.status in ACTIVE_PAYMENT_STATUSES

    def can_transition_to(self, new_status: PaymentStatus) -> bool:
        return PaymentStatus(new_status) in PAYMENT_TRANSITIONS[PaymentStatus(self.status)]

    def remaining_refundable_amount(self) -> Decimal:
        return money(self.amount - self.refunded_amount)

    def can_be_refunded(self) -> bool:
        return (
            self.status in (PaymentStatus.SUCCEEDED.value, PaymentStatus.PARTIALLY_REFUNDED.value)
            and self.refunded_amount < self.amount
        )

    def status_after_refund(self, refund_amount: Decimal) -> tuple[Decimal, PaymentStatus]:
        """Refunded total and derived status once ``refund_amount`` is applied."""
        refund_amount = money(refund_amount)
        if refund_amount <= 0:
            raise ValidationError("Refund amount must be positive", {"amount": str(refund_amount)})
        remaining = self.remaining_refundable_amount()
        if refund_amount > remaining:
            raise RefundExceedsBalanceError(
                "Refund amount exceeds remaining refundable amount",
                {"requested": str(refund_amount), "remaining": str(remaining)},
            )
        refunded = money(self.refunded_amount + refund_amount)
        if refunded >= self.amount:
            return refunded, PaymentStatus.REFUNDED
        return refunded, PaymentStatus.PARTIALLY_REFUNDED

    def apply_refund(self, refund_amount: Decimal) -> PaymentStatus:
        refunded, new_status = self.status_after_refund(refund_amount)
        self.refunded_amount = refunded
        self.status = new_status.value
        return new_status


class PaymentRefund(Base):
    """A gateway refund that has been applied to ``Payment.refunded_amount``."""

    __tablename__ = "payment_refunds"
    id: Mapped[int] = mapped_column(primary_key=True)
    payment_id: Mapped[int] = mapped_column(ForeignKey("payments.id"), index=True)
    gateway_refund_id: Mapped[str] = mapped_column(String(255), unique=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    payment: Mapped[Payment] = relationship("Payment", back_populates="refunds")


class PaymentDispute(Base):
    """A chargeback opened against a payment, one row per gateway dispute."""

    __tablename__ = "payment_disputes"
    id: Mapped[int] = mapped_column(primary_key=True)
    payment_id: Mapped[int] = mapped_column(ForeignKey("payments.id"), index=True)
    gateway_dispute_id: Mapped[str] = mapped_column(String(255), unique=True)
    amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    opened_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    payment: Mapped[Payment] = relationship("Payment", back_populates="disputes")


class ProcessedWebhookEvent(Base):
    __tablename__ = "processed_webhook_events"
    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(100))
    processed_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
