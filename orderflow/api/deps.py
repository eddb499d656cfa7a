"""Request-scoped dependencies: the caller's principal and the workflow services."""
from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from orderflow.application.order_service import OrderService
from orderflow.application.payment_service import PaymentService
from orderflow.application.pricing import PricingPolicy
from orderflow.application.saga import SagaCoordinator
from orderflow.application.schemas import Principal
from orderflow.application.webhooks import WebhookReconciler
from orderflow.core.logging_config import set_request_context
from orderflow.core_settings import get_settings
from orderflow.infrastructure.cache import EntityCache, get_cache
from orderflow.infrastructure.db import get_db
from orderflow.infrastructure.products import ProductCatalogClient, get_catalog
from orderflow.infrastructure.stripe_gateway import StripeGateway, get_gateway

from .auth_local import principal_from_token

BEARER_PREFIX = "Bearer "


def get_principal(request: Request) -> Principal:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith(BEARER_PREFIX):
        raise HTTPException(status_code=401, detail="Missing token")
    principal = principal_from_token(auth_header[len(BEARER_PREFIX):].strip())
    if principal is None:
        raise HTTPException(status_code=401, detail="Invalid token")
    set_request_context(user_id=str(principal.user_id))
    return principal


def get_order_service(
    db: Session = Depends(get_db),
    catalog: ProductCatalogClient = Depends(get_catalog),
    cache: EntityCache = Depends(get_cache),
) -> OrderService:
    return OrderService(db, catalog, cache, PricingPolicy.from_settings(get_settings()))


def get_payment_service(
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
    cache: EntityCache = Depends(get_cache),
    order_service: OrderService = Depends(get_order_service),
) -> PaymentService:
    return PaymentService(db, gateway, cache, SagaCoordinator(order_service))


def get_webhook_reconciler(
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
    payment_service: PaymentService = Depends(get_payment_service),
) -> WebhookReconciler:
    return WebhookReconciler(db, gateway, payment_service)
