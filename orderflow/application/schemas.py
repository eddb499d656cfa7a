from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from orderflow.domain.models import Currency, OrderStatus, PaymentMethod

T = TypeVar("T")


class Role(str, Enum):
    CUSTOMER = "customer"
    ADMIN = "admin"


class Principal(BaseModel):
    """Authenticated caller, as supplied by the identity service."""
    user_id: int
    role: Role = Role.CUSTOMER

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    def can_access(self, owner_id: int) -> bool:
        return self.is_admin or owner_id == self.user_id


class Address(BaseModel):
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    street: str = Field(min_length=1, max_length=255)
    city: str = Field(min_length=1, max_length=100)
    state: str = Field(min_length=1, max_length=100)
    postal_code: str = Field(min_length=1, max_length=20)
    country: str = Field(min_length=1, max_length=100)
    phone: Optional[str] = Field(default=None, max_length=50)


class OrderItemCreate(BaseModel):
    product_id: int = Field(ge=1)
    quantity: int = Field(ge=1)
    unit_price: Decimal = Field(ge=0, max_digits=10, decimal_places=2)


class OrderCreate(BaseModel):
    items: list[OrderItemCreate] = Field(min_length=1)
    shipping_address: Address
    billing_address: Address
    payment_method: str = Field(min_length=1, max_length=50)
    notes: Optional[str] = None


class OrderStatusUpdate(BaseModel):
    # payment_status is deliberately absent: only the saga coordinator writes it
    model_config = ConfigDict(extra="forbid")
    status: OrderStatus


class NotesUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")
    notes: Optional[str] = None


class OrderItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    product_id: int
    product_name: str
    product_sku: str
    product_image: Optional[str] = None
    quantity: int
    unit_price: Decimal
    total_price: Decimal


class OrderRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    order_number: str
    user_id: int
    status: OrderStatus
    payment_status: str
    subtotal: Decimal
    tax_amount: Decimal
    shipping_amount: Decimal
    discount_amount: Decimal
    total_amount: Decimal
    shipping_address: Address
    billing_address: Address
    payment_method: str
    notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    items: list[OrderItemRead]


class Page(BaseModel, Generic[T]):
    items: list[T]
    page: int
    limit: int
    total: int
    total_pages: int
    has_next: bool
    has_prev: bool


class ProductSnapshot(BaseModel):
    """What the catalog tells us about a product at order time."""
    model_config = ConfigDict(extra="ignore")
    id: int
    name: str
    sku: str
    images: list[str] = Field(default_factory=list)
    price: Optional[Decimal] = None
    is_active: bool = Field(default=True, validation_alias=AliasChoices("is_active", "isActive"))

    @property
    def primary_image(self) -> Optional[str]:
        return self.images[0] if self.images else None


class PaymentIntentCreate(BaseModel):
    order_id: int = Field(ge=1)
    # Defaults to the order total when omitted
    amount: Optional[Decimal] = Field(default=None, ge=Decimal("0.01"), max_digits=10, decimal_places=2)
    currency: Currency = Currency.USD
    payment_method: PaymentMethod

    @field_validator("currency", mode="before")
    @classmethod
    def _upper_currency(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v


class PaymentIntentRead(BaseModel):
    payment_id: int
    client_secret: Optional[str] = None
    amount: Decimal
    currency: str
    status: str
    reconciliation_needed: bool = False


class PaymentConfirm(BaseModel):
    payment_intent_id: str = Field(min_length=1)
    order_id: int = Field(ge=1)


class RefundCreate(BaseModel):
    # Defaults to the remaining refundable balance when omitted
    amount: Optional[Decimal] = Field(default=None, gt=0, max_digits=10, decimal_places=2)
    reason: str = Field(default="Customer request", max_length=255)


class RefundRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    gateway_refund_id: str
    amount: Decimal
    reason: Optional[str] = None
    created_at: datetime


class DisputeRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    gateway_dispute_id: str
    amount: Optional[Decimal] = None
    reason: Optional[str] = None
    status: Optional[str] = None
    opened_at: Optional[datetime] = None


class PaymentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    order_id: int
    user_id: int
    gateway_intent_id: Optional[str] = None
    gateway_charge_id: Optional[str] = None
    amount: Decimal
    currency: str
    status: str
    payment_method: str
    payment_method_details: Optional[dict[str, Any]] = None
    refunded_amount: Decimal
    failure_reason: Optional[str] = None
    metadata: dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("payment_metadata", "metadata")
    )
    refunds: list[RefundRead] = Field(default_factory=list)
    disputes: list[DisputeRead] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class PaymentOutcome(BaseModel):
    payment: PaymentRead
    reconciliation_needed: bool = False


class RefundOutcome(BaseModel):
    refund_id: str
    amount: Decimal
    status: str
    reason: str
    payment: PaymentRead
    reconciliation_needed: bool = False


class GatewayIntent(BaseModel):
    """Gateway-neutral view of a payment intent."""
    id: str
    status: str
    amount: int
    currency: str
    client_secret: Optional[str] = None
    charge_id: Optional[str] = None
    card: Optional[dict[str, Any]] = None
    last_error: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class GatewayRefund(BaseModel):
    id: str
    status: str
    amount: int


class WebhookAck(BaseModel):
    received: bool = True
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    outcome: str
