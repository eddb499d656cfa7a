"""
Stripe payment gateway adapter.

Wraps the ``stripe`` SDK behind the handful of calls the payment workflow
needs and returns gateway-neutral records (``GatewayIntent``,
``GatewayRefund``). Transient Stripe errors (network, rate limit, 5xx) are
retried with exponential backoff; anything left over surfaces as
``CollaboratorUnavailableError`` so callers never see SDK exceptions.
"""

import json
from decimal import Decimal
from functools import lru_cache
from typing import Any, Dict, Optional

import stripe
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from orderflow.application.schemas import GatewayIntent, GatewayRefund
from orderflow.core.logging_config import get_logger
from orderflow.core_settings import get_settings
from orderflow.domain.errors import CollaboratorUnavailableError, InvalidSignatureError
from orderflow.domain.models import money

GATEWAY = "payment-gateway"

logger = get_logger(__name__, collaborator=GATEWAY)

TRANSIENT_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)

_transient_retry = retry(
    retry=retry_if_exception_type(TRANSIENT_ERRORS),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
    reraise=True,
)


def to_minor_units(amount: Decimal) -> int:
    return int(money(amount) * 100)


def from_minor_units(amount: int) -> Decimal:
    return money(Decimal(amount) / 100)


def _field(obj: Any, name: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def to_gateway_intent(intent: Any) -> GatewayIntent:
    charge = _field(intent, "latest_charge")
    if isinstance(charge, str):
        charge_id, card = charge, None
    else:
        charge_id = _field(charge, "id")
        card = _masked_card(_field(_field(charge, "payment_method_details"), "card"))
    last_error = _field(intent, "last_payment_error")
    return GatewayIntent(
        id=_field(intent, "id"),
        status=_field(intent, "status"),
        amount=_field(intent, "amount") or 0,
        currency=(_field(intent, "currency") or "").upper(),
        client_secret=_field(intent, "client_secret"),
        charge_id=charge_id,
        card=card,
        last_error=_field(last_error, "message"),
        metadata=dict(_field(intent, "metadata") or {}),
    )


def _masked_card(card: Any) -> Optional[Dict[str, Any]]:
    # Only brand, last4 and expiry ever leave the gateway record
    if card is None:
        return None
    return {
        "brand": _field(card, "brand"),
        "last4": _field(card, "last4"),
        "exp_month": _field(card, "exp_month"),
        "exp_year": _field(card, "exp_year"),
    }


class StripeGateway:
    def __init__(self, secret_key: str, webhook_secret: str, api_version: Optional[str] = None,
                 tolerance: int = 300):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.tolerance = tolerance
        stripe.api_key = secret_key
        if api_version:
            stripe.api_version = api_version

    def is_configured(self) -> bool:
        return self.secret_key.startswith("sk_") and not self.secret_key.endswith("change_me")

    def _unavailable(self, operation: str, error: stripe.StripeError) -> CollaboratorUnavailableError:
        logger.error(
            f"Stripe {operation} failed: {error}",
            extra={'extra_fields': {
                'operation': operation,
                'error_code': getattr(error, "code", None),
                'http_status': getattr(error, "http_status", None),
            }}
        )
        return CollaboratorUnavailableError(GATEWAY)

    def create_payment_intent(self, amount: Decimal, currency: str, idempotency_key: str,
                              metadata: Optional[Dict[str, Any]] = None) -> GatewayIntent:
        @_transient_retry
        def _create():
            return stripe.PaymentIntent.create(
                amount=to_minor_units(amount),
                currency=currency.lower(),
                metadata=metadata or {},
                automatic_payment_methods={"enabled": True},
                idempotency_key=idempotency_key,
            )

        try:
            intent = _create()
        except stripe.StripeError as e:
            raise self._unavailable("create_payment_intent", e) from e
        logger.info(f"Payment intent created: {intent.id}",
                    extra={'extra_fields': {'intent_id': intent.id, 'status': intent.status}})
        return to_gateway_intent(intent)

    def retrieve_intent(self, intent_id: str) -> GatewayIntent:
        @_transient_retry
        def _retrieve():
            return stripe.PaymentIntent.retrieve(intent_id, expand=["latest_charge"])

        try:
            return to_gateway_intent(_retrieve())
        except stripe.StripeError as e:
            raise self._unavailable("retrieve_intent", e) from e

    def cancel_payment_intent(self, intent_id: str) -> GatewayIntent:
        @_transient_retry
        def _cancel():
            return stripe.PaymentIntent.cancel(intent_id)

        try:
            return to_gateway_intent(_cancel())
        except stripe.StripeError as e:
            raise self._unavailable("cancel_payment_intent", e) from e

    def create_refund(self, intent_id: str, amount: Decimal, reason: str,
                      idempotency_key: str) -> GatewayRefund:
        @_transient_retry
        def _refund():
            return stripe.Refund.create(
                payment_intent=intent_id,
                amount=to_minor_units(amount),
                reason="requested_by_customer",
                metadata={"reason": reason},
                idempotency_key=idempotency_key,
            )

        try:
            refund = _refund()
        except stripe.StripeError as e:
            raise self._unavailable("create_refund", e) from e
        logger.info(f"Refund created: {refund.id}",
                    extra={'extra_fields': {'refund_id': refund.id, 'intent_id': intent_id}})
        return GatewayRefund(id=refund.id, status=refund.status, amount=refund.amount)

    def verify_webhook(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Checks the ``Stripe-Signature`` header and returns the parsed event."""
        if not signature:
            raise InvalidSignatureError("Missing Stripe signature header")
        try:
            body = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(body, signature, self.webhook_secret, self.tolerance)
        except (UnicodeDecodeError, stripe.SignatureVerificationError) as e:
            logger.warning(f"Webhook signature verification failed: {e}")
            raise InvalidSignatureError("Invalid webhook signature") from e
        try:
            event = json.loads(body)
        except ValueError as e:
            raise InvalidSignatureError("Webhook payload is not valid JSON") from e
        if not isinstance(event, dict):
            raise InvalidSignatureError("Webhook payload is not an event object")
        return event


@lru_cache
def get_gateway() -> StripeGateway:
    settings = get_settings()
    return StripeGateway(
        settings.STRIPE_SECRET_KEY,
        settings.STRIPE_WEBHOOK_SECRET,
        api_version=settings.STRIPE_API_VERSION,
        tolerance=settings.WEBHOOK_TOLERANCE_SECONDS,
    )
