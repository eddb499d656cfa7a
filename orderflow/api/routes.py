from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from starlette.concurrency import run_in_threadpool

from orderflow.application.order_service import OrderService
from orderflow.application.payment_service import PaymentService
from orderflow.application.schemas import (
    NotesUpdate,
    OrderCreate,
    OrderRead,
    OrderStatusUpdate,
    Page,
    PaymentConfirm,
    PaymentIntentCreate,
    PaymentIntentRead,
    PaymentOutcome,
    PaymentRead,
    Principal,
    RefundCreate,
    RefundOutcome,
    WebhookAck,
)
from orderflow.application.webhooks import WebhookReconciler
from orderflow.domain.models import OrderStatus, PaymentStatus

from .deps import get_order_service, get_payment_service, get_principal, get_webhook_reconciler

orders_router = APIRouter(prefix="/orders", tags=["orders"])
payments_router = APIRouter(prefix="/payments", tags=["payments"])
webhooks_router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@orders_router.post("/", response_model=OrderRead, status_code=201)
def create_order(payload: OrderCreate, principal: Principal = Depends(get_principal),
                 service: OrderService = Depends(get_order_service)):
    return service.create_order(principal, payload)

@orders_router.get("/", response_model=Page[OrderRead])
def list_orders(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                status: Optional[OrderStatus] = None,
                principal: Principal = Depends(get_principal),
                service: OrderService = Depends(get_order_service)):
    return service.list_orders(principal, page, limit, status)

@orders_router.get("/admin/all", response_model=Page[OrderRead])
def list_all_orders(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                    status: Optional[OrderStatus] = None, user_id: Optional[int] = None,
                    principal: Principal = Depends(get_principal),
                    service: OrderService = Depends(get_order_service)):
    return service.list_all_orders(principal, page, limit, status, user_id)

@orders_router.get("/{order_id}", response_model=OrderRead)
def get_order(order_id: int, principal: Principal = Depends(get_principal),
              service: OrderService = Depends(get_order_service)):
    return service.get_order(principal, order_id)

@orders_router.patch("/{order_id}/cancel", response_model=OrderRead)
def cancel_order(order_id: int, principal: Principal = Depends(get_principal),
                 service: OrderService = Depends(get_order_service)):
    return service.cancel_order(principal, order_id)

@orders_router.put("/{order_id}/status", response_model=OrderRead)
def update_order_status(order_id: int, payload: OrderStatusUpdate,
                        principal: Principal = Depends(get_principal),
                        service: OrderService = Depends(get_order_service)):
    return service.transition_status(principal, order_id, payload.status)

@orders_router.put("/{order_id}/notes", response_model=OrderRead)
def update_order_notes(order_id: int, payload: NotesUpdate,
                       principal: Principal = Depends(get_principal),
                       service: OrderService = Depends(get_order_service)):
    return service.update_notes(principal, order_id, payload.notes)


@payments_router.post("/intent", response_model=PaymentIntentRead, status_code=201)
def create_payment_intent(payload: PaymentIntentCreate, principal: Principal = Depends(get_principal),
                          service: PaymentService = Depends(get_payment_service)):
    return service.create_intent(principal, payload)

@payments_router.post("/confirm", response_model=PaymentOutcome)
def confirm_payment(payload: PaymentConfirm, principal: Principal = Depends(get_principal),
                    service: PaymentService = Depends(get_payment_service)):
    return service.confirm(principal, payload)

@payments_router.post("/{payment_id}/refund", response_model=RefundOutcome)
def refund_payment(payment_id: int, payload: RefundCreate,
                   principal: Principal = Depends(get_principal),
                   service: PaymentService = Depends(get_payment_service)):
    return service.refund(principal, payment_id, payload)

@payments_router.get("/", response_model=Page[PaymentRead])
def list_payments(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                  status: Optional[PaymentStatus] = None,
                  principal: Principal = Depends(get_principal),
                  service: PaymentService = Depends(get_payment_service)):
    return service.list_payments(principal, page, limit, status)

@payments_router.get("/admin/all", response_model=Page[PaymentRead])
def list_all_payments(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                      status: Optional[PaymentStatus] = None, user_id: Optional[int] = None,
                      principal: Principal = Depends(get_principal),
                      service: PaymentService = Depends(get_payment_service)):
    return service.list_all_payments(principal, page, limit, status, user_id)

@payments_router.get("/{payment_id}", response_model=PaymentRead)
def get_payment(payment_id: int, principal: Principal = Depends(get_principal),
                service: PaymentService = Depends(get_payment_service)):
    return service.get_payment(principal, payment_id)


@webhooks_router.post("/stripe", response_model=WebhookAck)
async def stripe_webhook(request: Request,
                         stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
                         reconciler: WebhookReconciler = Depends(get_webhook_reconciler)):
    # Signature is computed over the raw body, so it is read before any parsing
    payload = await request.body()
    return await run_in_threadpool(reconciler.handle, payload, stripe_signature)
