import hashlib
import hmac
import json
import os
import time
from decimal import Decimal

# Settings are read once at import time; point them at throwaway backends first
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_orderflow")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_orderflow_test")
os.environ.setdefault("JWT_SECRET", "orderflow-test-secret")

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from orderflow.application.order_service import OrderService
from orderflow.application.payment_service import PaymentService
from orderflow.application.pricing import PricingPolicy
from orderflow.application.saga import SagaCoordinator
from orderflow.application.schemas import (
    Address,
    GatewayIntent,
    GatewayRefund,
    OrderCreate,
    OrderItemCreate,
    PaymentConfirm,
    PaymentIntentCreate,
    Principal,
    Role,
)
from orderflow.application.webhooks import WebhookReconciler
from orderflow.domain.models import Base, Payment, PaymentMethod
from orderflow.infrastructure.cache import EntityCache
from orderflow.infrastructure.products import ProductCatalogClient
from orderflow.infrastructure.stripe_gateway import StripeGateway, to_minor_units

WEBHOOK_SECRET = "whsec_orderflow_test"

CUSTOMER = Principal(user_id=1, role=Role.CUSTOMER)
OTHER_CUSTOMER = Principal(user_id=2, role=Role.CUSTOMER)
ADMIN = Principal(user_id=99, role=Role.ADMIN)


class CatalogStub:
    """In-memory product service answering the two catalog endpoints."""

    def __init__(self):
        self.products = {
            1: {"id": 1, "name": "Laptop", "sku": "LAP-001", "price": "999.99",
                "images": ["https://img.example/laptop.png"], "isActive": True},
            2: {"id": 2, "name": "Mouse", "sku": "MOU-001", "price": "49.99",
                "images": [], "isActive": True},
            3: {"id": 3, "name": "Monitor", "sku": "MON-001", "price": "299.99",
                "images": [], "isActive": True},
            4: {"id": 4, "name": "Discontinued Phone", "sku": "PHN-OLD", "price": "199.00",
                "images": [], "isActive": False},
            5: {"id": 5, "name": "Webcam", "sku": "CAM-001", "price": "89.00",
                "images": [], "isActive": True},
        }
        self.stock = {1: 10, 2: 100, 3: 5, 4: 0, 5: 0}
        self.stock_status = 200
        self.requests = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request.url.path)
        parts = request.url.path.strip("/").split("/")
        product_id = int(parts[1])
        if product_id not in self.products:
            return httpx.Response(404, json={"error": "Product not found"})
        if len(parts) == 3 and parts[2] == "stock":
            if self.stock_status != 200:
                return httpx.Response(self.stock_status, json={"error": "boom"})
            return httpx.Response(200, json={"stock": self.stock[product_id]})
        return httpx.Response(200, json=self.products[product_id])


class FakeGateway(StripeGateway):
    """Stripe stand-in: intents and refunds live in memory, webhook verification is real."""

    def __init__(self):
        super().__init__("sk_test_fake", WEBHOOK_SECRET)
        self.intents = {}
        self.intents_by_key = {}
        self.refunds = []
        self.refunds_by_key = {}
        self.cancelled = []
        self.refund_error = None
        self.refund_status = "succeeded"
        self._seq = 0

    def _next(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}_test_{self._seq}"

    def create_payment_intent(self, amount, currency, idempotency_key, metadata=None):
        if idempotency_key in self.intents_by_key:
            return self.intents_by_key[idempotency_key]
        intent_id = self._next("pi")
        intent = GatewayIntent(
            id=intent_id,
            status="requires_payment_method",
            amount=to_minor_units(amount),
            currency=currency.upper(),
            client_secret=f"{intent_id}_secret_abc",
            metadata=metadata or {},
        )
        self.intents[intent_id] = intent
        self.intents_by_key[idempotency_key] = intent
        return intent

    def retrieve_intent(self, intent_id):
        return self.intents[intent_id]

    def cancel_payment_intent(self, intent_id):
        self.cancelled.append(intent_id)
        return self.set_status(intent_id, "canceled")

    def create_refund(self, intent_id, amount, reason, idempotency_key):
        if self.refund_error is not None:
            raise self.refund_error
        if idempotency_key in self.refunds_by_key:
            return self.refunds_by_key[idempotency_key]
        refund = GatewayRefund(id=self._next("re"), status=self.refund_status, amount=to_minor_units(amount))
        self.refunds.append(refund)
        self.refunds_by_key[idempotency_key] = refund
        return refund

    def set_status(self, intent_id, status, **changes):
        intent = self.intents[intent_id].model_copy(update={"status": status, **changes})
        self.intents[intent_id] = intent
        return intent

    def succeed(self, intent_id):
        return self.set_status(
            intent_id, "succeeded",
            charge_id=f"ch_{intent_id}",
            card={"brand": "visa", "last4": "4242", "exp_month": 12, "exp_year": 2030},
        )


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def make_event(event_id: str, event_type: str, obj: dict) -> bytes:
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": int(time.time()),
        "data": {"object": obj},
    }).encode("utf-8")


def address(**overrides) -> Address:
    data = {
        "first_name": "Ada", "last_name": "Lovelace", "street": "12 Analytical Way",
        "city": "London", "state": "LDN", "postal_code": "N1 9GU", "country": "UK",
    }
    data.update(overrides)
    return Address(**data)


def order_request(*items, notes=None) -> OrderCreate:
    """items are (product_id, quantity, unit_price) tuples."""
    items = items or ((2, 1, "49.99"),)
    return OrderCreate(
        items=[OrderItemCreate(product_id=p, quantity=q, unit_price=Decimal(u)) for p, q, u in items],
        shipping_address=address(),
        billing_address=address(),
        payment_method="card",
        notes=notes,
    )


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def catalog_stub():
    return CatalogStub()


@pytest.fixture
def catalog(catalog_stub):
    client = httpx.Client(base_url="http://products", transport=httpx.MockTransport(catalog_stub.handler))
    catalog = ProductCatalogClient("http://products", client=client)
    yield catalog
    catalog.close()


@pytest.fixture
def cache():
    return EntityCache(redis_url=None, ttl=3600)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def pricing():
    return PricingPolicy(
        tax_rate=Decimal("0.08"),
        free_shipping_threshold=Decimal("100.00"),
        base_shipping_fee=Decimal("9.99"),
        per_item_shipping_fee=Decimal("2.99"),
    )


@pytest.fixture
def order_service(db, catalog, cache, pricing):
    return OrderService(db, catalog, cache, pricing)


@pytest.fixture
def saga(order_service):
    return SagaCoordinator(order_service)


@pytest.fixture
def payment_service(db, gateway, cache, saga):
    return PaymentService(db, gateway, cache, saga)


@pytest.fixture
def reconciler(db, gateway, payment_service):
    return WebhookReconciler(db, gateway, payment_service)


@pytest.fixture
def placed_order(order_service):
    """2 x Laptop + 1 x Monitor for CUSTOMER."""
    return order_service.create_order(CUSTOMER, order_request((1, 2, "999.99"), (3, 1, "299.99")))


@pytest.fixture
def pending_payment(payment_service, placed_order):
    return payment_service.create_intent(
        CUSTOMER, PaymentIntentCreate(order_id=placed_order.id, payment_method=PaymentMethod.CARD)
    )


@pytest.fixture
def paid_payment(payment_service, gateway, db, pending_payment, placed_order):
    payment = db.get(Payment, pending_payment.payment_id)
    gateway.succeed(payment.gateway_intent_id)
    payment_service.confirm(
        CUSTOMER, PaymentConfirm(payment_intent_id=payment.gateway_intent_id, order_id=placed_order.id)
    )
    return payment
