"""
Stripe webhook reconciliation.

Events are verified against the signing secret before anything is parsed,
deduplicated by event id, then routed by type. Intent events converge on
``PaymentService.apply_intent`` so a webhook and a confirm call racing on the
same payment apply one transition.
"""
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from orderflow.core.logging_config import get_logger
from orderflow.domain.errors import RefundExceedsBalanceError, ValidationError
from orderflow.domain.models import Payment, PaymentStatus
from orderflow.infrastructure.repositories import PaymentRepository, WebhookEventRepository
from orderflow.infrastructure.stripe_gateway import StripeGateway, from_minor_units, to_gateway_intent

from .payment_service import PaymentService
from .schemas import WebhookAck

logger = get_logger(__name__)

# Event type -> payment status it reports. The intent object carried by a
# failure event is usually back in requires_payment_method, so the type wins.
INTENT_EVENTS = {
    "payment_intent.succeeded": PaymentStatus.SUCCEEDED,
    "payment_intent.processing": PaymentStatus.PROCESSING,
    "payment_intent.payment_failed": PaymentStatus.FAILED,
    "payment_intent.canceled": PaymentStatus.CANCELLED,
}


class WebhookReconciler:
    def __init__(self, db: Session, gateway: StripeGateway, payment_service: PaymentService):
        self.db = db
        self.gateway = gateway
        self.payment_service = payment_service
        self.payments = PaymentRepository(db)
        self.events = WebhookEventRepository(db)
        self.event_handlers: Dict[str, Callable[[str, Dict[str, Any]], str]] = {
            event_type: self._handle_intent_event for event_type in INTENT_EVENTS
        }
        self.event_handlers["charge.refunded"] = self._handle_charge_refunded
        self.event_handlers["charge.refund.updated"] = self._handle_refund_updated
        self.event_handlers["refund.updated"] = self._handle_refund_updated
        self.event_handlers["charge.dispute.created"] = self._handle_dispute_created

    def handle(self, payload: bytes, signature: str) -> WebhookAck:
        event = self.gateway.verify_webhook(payload, signature)
        event_id = event.get("id")
        event_type = event.get("type")
        obj = (event.get("data") or {}).get("object")
        if not event_id or not event_type or not isinstance(obj, dict):
            raise ValidationError("Malformed webhook event", {"event_id": event_id})

        if self.events.is_processed(event_id):
            logger.info(f"Webhook event {event_id} already processed")
            return WebhookAck(event_id=event_id, event_type=event_type, outcome="duplicate")

        handler = self.event_handlers.get(event_type)
        if handler is None:
            logger.info(f"Unhandled webhook event type: {event_type}",
                        extra={'extra_fields': {'event_id': event_id, 'event_type': event_type}})
            outcome = "ignored"
        else:
            outcome = handler(event_type, obj)

        try:
            self.events.mark_processed(event_id, event_type)
            self.db.commit()
        except IntegrityError:
            # A concurrent delivery of the same event recorded it first
            self.db.rollback()
            outcome = "duplicate"

        logger.info(
            f"Webhook event {event_id} handled: {outcome}",
            extra={'extra_fields': {'event_id': event_id, 'event_type': event_type, 'outcome': outcome}}
        )
        return WebhookAck(event_id=event_id, event_type=event_type, outcome=outcome)

    def _find_payment(self, intent_id: Any, event_type: str, charge_id: Any = None) -> Optional[Payment]:
        payment = self.payments.get_by_intent(intent_id) if intent_id else None
        if payment is None and charge_id:
            payment = self.payments.get_by_charge(charge_id)
        if payment is None:
            logger.warning(f"Webhook {event_type} for unknown payment intent {intent_id}")
        return payment

    def _handle_intent_event(self, event_type: str, obj: Dict[str, Any]) -> str:
        payment = self._find_payment(obj.get("id"), event_type)
        if payment is None:
            return "unknown_payment"
        intent = to_gateway_intent(obj)
        before = payment.status
        outcome = self.payment_service.apply_intent(payment, intent, INTENT_EVENTS[event_type])
        if outcome.reconciliation_needed:
            return "reconciliation_needed"
        return "applied" if payment.status != before else "noop"

    def _apply_refund(self, payment: Payment, refund: Dict[str, Any]) -> str:
        refund_id, status = refund["id"], refund.get("status")
        if status != "succeeded":
            if status in ("failed", "canceled") and self.payments.refund_applied(refund_id):
                logger.error(
                    f"Refund {refund_id} already applied to payment {payment.id} is now {status}",
                    extra={'extra_fields': {'payment_id': payment.id, 'refund_id': refund_id, 'status': status}}
                )
                return "reconciliation_needed"
            logger.info(f"Refund {refund_id} on payment {payment.id} is {status}, not applied",
                        extra={'extra_fields': {'payment_id': payment.id, 'refund_id': refund_id}})
            return "pending" if status == "pending" else "noop"

        reason = (refund.get("metadata") or {}).get("reason") or refund.get("reason")
        before = payment.refunded_amount
        try:
            outcome = self.payment_service.apply_gateway_refund(
                payment, refund_id, from_minor_units(refund["amount"]), reason
            )
        except RefundExceedsBalanceError:
            logger.error(
                f"Gateway refund {refund_id} exceeds the balance of payment {payment.id}",
                extra={'extra_fields': {'payment_id': payment.id, 'refund_id': refund_id}}
            )
            return "refund_mismatch"
        if outcome.reconciliation_needed:
            return "reconciliation_needed"
        return "applied" if payment.refunded_amount != before else "noop"

    def _handle_charge_refunded(self, event_type: str, obj: Dict[str, Any]) -> str:
        payment = self._find_payment(obj.get("payment_intent"), event_type, obj.get("id"))
        if payment is None:
            return "unknown_payment"
        refunds = (obj.get("refunds") or {}).get("data")
        if not refunds:
            # Newer API versions no longer embed refunds on the charge
            logger.info(f"charge.refunded for payment {payment.id} carries no refund list")
            return "noop"

        results = set()
        for refund in refunds:
            result = self._apply_refund(payment, refund)
            if result == "refund_mismatch":
                return result
            results.add(result)
        for outcome in ("reconciliation_needed", "applied", "pending"):
            if outcome in results:
                return outcome
        return "noop"

    def _handle_refund_updated(self, event_type: str, obj: Dict[str, Any]) -> str:
        payment = self._find_payment(obj.get("payment_intent"), event_type, obj.get("charge"))
        if payment is None:
            return "unknown_payment"
        return self._apply_refund(payment, obj)

    def _handle_dispute_created(self, event_type: str, obj: Dict[str, Any]) -> str:
        payment = self._find_payment(obj.get("payment_intent"), event_type, obj.get("charge"))
        if payment is None:
            return "unknown_payment"
        return "recorded" if self.payment_service.record_dispute(payment, obj) else "noop"
