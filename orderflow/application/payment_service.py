"""
Payment workflows: intent creation, confirmation, refunds and reads.

Every status change goes through a conditional update keyed on the status
the caller observed, so confirm calls and webhook deliveries racing on the
same payment apply a transition once. Only the caller whose update wins
notifies the saga coordinator.
"""
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import ValidationError as SchemaError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from orderflow.core.logging_config import get_logger
from orderflow.domain.errors import (
    CollaboratorUnavailableError,
    ConflictError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from orderflow.domain.models import (
    OrderStatus,
    Payment,
    PaymentDispute,
    PaymentRefund,
    PaymentStatus,
    money,
)
from orderflow.infrastructure.cache import EntityCache, payment_key
from orderflow.infrastructure.repositories import OrderRepository, PaymentRepository
from orderflow.infrastructure.stripe_gateway import StripeGateway, from_minor_units, to_minor_units

from .order_service import build_page
from .saga import SagaCoordinator, SagaOutcome
from .schemas import (
    GatewayIntent,
    Page,
    PaymentConfirm,
    PaymentIntentCreate,
    PaymentIntentRead,
    PaymentOutcome,
    PaymentRead,
    Principal,
    RefundCreate,
    RefundOutcome,
)

logger = get_logger(__name__)

REFUND_ATTEMPTS = 3

# Gateway intent status -> local payment status; anything unlisted is a failure
INTENT_STATUS_MAP = {
    "succeeded": PaymentStatus.SUCCEEDED,
    "processing": PaymentStatus.PROCESSING,
    "requires_payment_method": PaymentStatus.PENDING,
    "requires_confirmation": PaymentStatus.PENDING,
    "requires_action": PaymentStatus.PENDING,
    "requires_capture": PaymentStatus.PENDING,
    "canceled": PaymentStatus.CANCELLED,
}

CLOSED_ORDER_STATUSES = (OrderStatus.CANCELLED.value, OrderStatus.REFUNDED.value)

# Local statuses that must never coexist with a gateway capture
UNCAPTURED_STATUSES = (PaymentStatus.FAILED, PaymentStatus.CANCELLED)


def map_intent_status(gateway_status: Optional[str]) -> PaymentStatus:
    return INTENT_STATUS_MAP.get(gateway_status or "", PaymentStatus.FAILED)


class PaymentService:
    def __init__(self, db: Session, gateway: StripeGateway, cache: EntityCache,
                 saga: SagaCoordinator):
        self.db = db
        self.gateway = gateway
        self.cache = cache
        self.saga = saga
        self.orders = OrderRepository(db)
        self.payments = PaymentRepository(db)

    def _load_visible(self, principal: Principal, payment_id: int) -> Payment:
        payment = self.payments.get(payment_id)
        if payment is None or not principal.can_access(payment.user_id):
            raise NotFoundError("Payment not found", {"payment_id": payment_id})
        return payment

    def _publish(self, payment: Payment) -> PaymentRead:
        read = PaymentRead.model_validate(payment)
        self.cache.put(payment_key(payment.id), read.model_dump(mode="json"))
        return read

    def _committed(self, payment: Payment) -> None:
        self.db.commit()
        self.db.refresh(payment)
        self.cache.invalidate(payment_key(payment.id))

    # -- intent creation -------------------------------------------------

    def create_intent(self, principal: Principal, data: PaymentIntentCreate) -> PaymentIntentRead:
        order = self.orders.get(data.order_id)
        if order is None or not principal.can_access(order.user_id):
            raise NotFoundError("Order not found", {"order_id": data.order_id})
        if order.status in CLOSED_ORDER_STATUSES:
            raise InvalidTransitionError("order", order.status, "paid")

        active = self.payments.find_active_for_order(order.id)
        if active is not None:
            raise ConflictError(
                "Payment already exists for this order",
                {"order_id": order.id, "payment_id": active.id, "status": active.status},
            )

        amount = money(data.amount if data.amount is not None else order.total_amount)
        attempt = self.payments.count_for_order(order.id) + 1
        intent = self.gateway.create_payment_intent(
            amount,
            data.currency.value,
            idempotency_key=f"order-{order.id}-payment-{attempt}",
            metadata={
                "order_id": str(order.id),
                "order_number": order.order_number,
                "user_id": str(order.user_id),
            },
        )

        payment = Payment(
            order_id=order.id,
            user_id=order.user_id,
            gateway_intent_id=intent.id,
            amount=amount,
            currency=data.currency.value,
            status=PaymentStatus.PENDING.value,
            payment_method=data.payment_method.value,
            refunded_amount=money(0),
            payment_metadata={"order_number": order.order_number},
        )
        self.db.add(payment)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            self._release_orphan_intent(intent.id)
            raise ConflictError("Payment already exists for this order", {"order_id": order.id})
        self.db.refresh(payment)

        logger.info(
            f"Payment intent created for order {order.order_number}",
            extra={'extra_fields': {
                'payment_id': payment.id, 'order_id': order.id,
                'intent_id': intent.id, 'amount': str(amount), 'currency': payment.currency,
            }}
        )
        outcome = self.saga.on_payment_transition(payment, None)
        return PaymentIntentRead(
            payment_id=payment.id,
            client_secret=intent.client_secret,
            amount=payment.amount,
            currency=payment.currency,
            status=payment.status,
            reconciliation_needed=outcome.reconciliation_needed,
        )

    def _release_orphan_intent(self, intent_id: str) -> None:
        # A racing request persisted its payment first. The same idempotency
        # key can hand both requests one intent; never cancel one that is owned.
        if self.payments.get_by_intent(intent_id) is not None:
            return
        try:
            self.gateway.cancel_payment_intent(intent_id)
            logger.info(f"Cancelled orphaned payment intent {intent_id}")
        except CollaboratorUnavailableError:
            logger.error(
                f"Could not cancel orphaned payment intent {intent_id}",
                exc_info=True,
                extra={'extra_fields': {'intent_id': intent_id}}
            )

    # -- intent application ----------------------------------------------

    def apply_intent(self, payment: Payment, intent: GatewayIntent,
                     target: Optional[PaymentStatus] = None) -> SagaOutcome:
        """Moves ``payment`` to the status the gateway reports.

        Shared by confirm and the webhook reconciler. A transition the state
        machine does not allow, or one another caller already applied, is a
        logged no-op. A capture reported for a payment already recorded as
        failed or cancelled is flagged for reconciliation instead.
        """
        target = target or map_intent_status(intent.status)
        current = PaymentStatus(payment.status)
        if target == PaymentStatus.SUCCEEDED and current in UNCAPTURED_STATUSES:
            return self._flag_capture_mismatch(payment, intent)
        if target == current or not payment.can_transition_to(target):
            logger.info(
                f"Payment {payment.id} stays {current.value} (gateway reports {intent.status})",
                extra={'extra_fields': {'payment_id': payment.id, 'requested': target.value}}
            )
            return SagaOutcome()

        values: dict[str, Any] = {"status": target.value}
        if target == PaymentStatus.SUCCEEDED:
            if intent.charge_id:
                values["gateway_charge_id"] = intent.charge_id
            if intent.card:
                values["payment_method_details"] = intent.card
        elif target == PaymentStatus.FAILED:
            values["failure_reason"] = intent.last_error or "Payment failed"

        if not self.payments.compare_and_set(payment.id, {"status": current.value}, values):
            self.db.rollback()
            self.db.refresh(payment)
            logger.info(f"Payment {payment.id} already moved to {payment.status}, skipping {target.value}")
            return SagaOutcome()
        self._committed(payment)

        logger.info(
            f"Payment {payment.id} moved {current.value} -> {target.value}",
            extra={'extra_fields': {
                'payment_id': payment.id, 'order_id': payment.order_id,
                'from': current.value, 'to': target.value,
            }}
        )
        return self.saga.on_payment_transition(payment, current)

    def _flag_capture_mismatch(self, payment: Payment, intent: GatewayIntent) -> SagaOutcome:
        recorded = payment.status
        logger.error(
            f"Gateway captured intent {intent.id} but payment {payment.id} is recorded as {recorded}",
            extra={'extra_fields': {
                'payment_id': payment.id, 'order_id': payment.order_id, 'intent_id': intent.id,
                'charge_id': intent.charge_id, 'recorded': recorded,
            }}
        )
        metadata = dict(payment.payment_metadata or {})
        if "gateway_mismatch" not in metadata:
            metadata["gateway_mismatch"] = {
                "reported": PaymentStatus.SUCCEEDED.value,
                "recorded": recorded,
                "intent_id": intent.id,
                "charge_id": intent.charge_id,
                "detected_at": datetime.utcnow().isoformat(),
            }
            if self.payments.compare_and_set(payment.id, {"status": recorded},
                                             {"payment_metadata": metadata}):
                self._committed(payment)
            else:
                self.db.rollback()
                self.db.refresh(payment)
        return SagaOutcome(reconciliation_needed=True)

    def confirm(self, principal: Principal, data: PaymentConfirm) -> PaymentOutcome:
        payment = self.payments.get_by_intent(data.payment_intent_id)
        if (payment is None or payment.order_id != data.order_id
                or not principal.can_access(payment.user_id)):
            raise NotFoundError("Payment not found", {"payment_intent_id": data.payment_intent_id})

        intent = self.gateway.retrieve_intent(payment.gateway_intent_id)
        outcome = self.apply_intent(payment, intent)
        return PaymentOutcome(
            payment=PaymentRead.model_validate(payment),
            reconciliation_needed=outcome.reconciliation_needed,
        )

    # -- refunds -----------------------------------------------------------

    def refund(self, principal: Principal, payment_id: int, data: RefundCreate) -> RefundOutcome:
        payment = self._load_visible(principal, payment_id)
        if not payment.can_be_refunded():
            raise InvalidTransitionError("payment", payment.status, PaymentStatus.REFUNDED.value)

        amount = money(data.amount) if data.amount is not None else payment.remaining_refundable_amount()
        # Rejects non-positive or over-balance amounts before the gateway is touched
        payment.status_after_refund(amount)

        idempotency_key = (
            f"refund-{payment.id}-{to_minor_units(payment.refunded_amount)}-{to_minor_units(amount)}"
        )
        gateway_refund = self.gateway.create_refund(
            payment.gateway_intent_id, amount, data.reason, idempotency_key
        )
        refunded = from_minor_units(gateway_refund.amount)
        if gateway_refund.status == "succeeded":
            outcome = self.apply_gateway_refund(payment, gateway_refund.id, refunded, data.reason)
        else:
            # Settled later by charge.refunded / charge.refund.updated
            logger.info(
                f"Refund {gateway_refund.id} for payment {payment.id} is {gateway_refund.status}, not applied yet",
                extra={'extra_fields': {
                    'payment_id': payment.id, 'refund_id': gateway_refund.id,
                    'amount': str(refunded), 'gateway_status': gateway_refund.status,
                }}
            )
            outcome = SagaOutcome()
        return RefundOutcome(
            refund_id=gateway_refund.id,
            amount=refunded,
            status=gateway_refund.status,
            reason=data.reason,
            payment=PaymentRead.model_validate(payment),
            reconciliation_needed=outcome.reconciliation_needed,
        )

    def apply_gateway_refund(self, payment: Payment, gateway_refund_id: str, amount,
                             reason: Optional[str] = None) -> SagaOutcome:
        """Records a gateway refund against the payment exactly once."""
        for _ in range(REFUND_ATTEMPTS):
            if self.payments.refund_applied(gateway_refund_id):
                logger.info(f"Refund {gateway_refund_id} already applied to payment {payment.id}")
                return SagaOutcome()

            previous = PaymentStatus(payment.status)
            refunded, new_status = payment.status_after_refund(amount)
            won = self.payments.compare_and_set(
                payment.id,
                {"status": previous.value, "refunded_amount": payment.refunded_amount},
                {"status": new_status.value, "refunded_amount": refunded},
            )
            if won:
                self.db.add(PaymentRefund(
                    payment_id=payment.id,
                    gateway_refund_id=gateway_refund_id,
                    amount=money(amount),
                    reason=reason,
                ))
                try:
                    self._committed(payment)
                except IntegrityError:
                    won = False
            if not won:
                self.db.rollback()
                self.db.refresh(payment)
                continue

            logger.info(
                f"Refund {gateway_refund_id} applied to payment {payment.id}",
                extra={'extra_fields': {
                    'payment_id': payment.id, 'amount': str(money(amount)),
                    'refunded_amount': str(payment.refunded_amount), 'status': payment.status,
                }}
            )
            if new_status == previous:
                return SagaOutcome()
            return self.saga.on_payment_transition(payment, previous)

        raise ConflictError("Payment changed concurrently, refund not applied",
                            {"payment_id": payment.id, "refund_id": gateway_refund_id})

    def record_dispute(self, payment: Payment, dispute: dict[str, Any]) -> bool:
        """Stores a gateway dispute against the payment once; the payment status is untouched."""
        dispute_id = dispute.get("id")
        if not dispute_id:
            raise ValidationError("Dispute without an id", {"payment_id": payment.id})
        if self.payments.dispute_recorded(dispute_id):
            return False

        created = dispute.get("created")
        opened_at = datetime.fromtimestamp(created, tz=timezone.utc).replace(tzinfo=None) if created else None
        self.db.add(PaymentDispute(
            payment_id=payment.id,
            gateway_dispute_id=dispute_id,
            amount=from_minor_units(dispute["amount"]) if dispute.get("amount") is not None else None,
            reason=dispute.get("reason"),
            status=dispute.get("status"),
            opened_at=opened_at,
        ))
        try:
            self._committed(payment)
        except IntegrityError:
            # A concurrent delivery stored the same dispute first
            self.db.rollback()
            self.db.refresh(payment)
            return False

        logger.warning(
            f"Dispute {dispute_id} opened on payment {payment.id}",
            extra={'extra_fields': {
                'payment_id': payment.id, 'order_id': payment.order_id,
                'dispute_id': dispute_id, 'reason': dispute.get("reason"),
            }}
        )
        return True

    # -- reads -------------------------------------------------------------

    def get_payment(self, principal: Principal, payment_id: int) -> PaymentRead:
        cached = self.cache.get(payment_key(payment_id))
        if cached is not None:
            try:
                read = PaymentRead.model_validate(cached)
            except SchemaError:
                self.cache.invalidate(payment_key(payment_id))
            else:
                if not principal.can_access(read.user_id):
                    raise NotFoundError("Payment not found", {"payment_id": payment_id})
                return read
        return self._publish(self._load_visible(principal, payment_id))

    def list_payments(self, principal: Principal, page: int = 1, limit: int = 10,
                      status: Optional[PaymentStatus] = None) -> Page[PaymentRead]:
        rows, total = self.payments.list_page(
            page, limit, user_id=principal.user_id, status=status.value if status else None
        )
        return build_page([PaymentRead.model_validate(p) for p in rows], page, limit, total)

    def list_all_payments(self, principal: Principal, page: int = 1, limit: int = 10,
                          status: Optional[PaymentStatus] = None,
                          user_id: Optional[int] = None) -> Page[PaymentRead]:
        if not principal.is_admin:
            raise ForbiddenError("Admin access required")
        rows, total = self.payments.list_page(
            page, limit, user_id=user_id, status=status.value if status else None
        )
        return build_page([PaymentRead.model_validate(p) for p in rows], page, limit, total)
