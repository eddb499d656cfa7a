"""
Saga coordination between payments and orders.

A payment transition is committed first; the coordinator then projects the
new payment status onto ``Order.payment_status``. That second step is best
effort: if it fails the payment stays committed, the failure is logged and
reported back as ``reconciliation_needed``, and ``ReconciliationSweep``
repairs the drift later.
"""
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from orderflow.core.logging_config import get_logger
from orderflow.domain.models import OrderPaymentStatus, Payment, PaymentStatus
from orderflow.infrastructure.repositories import OrderRepository, PaymentRepository

from .order_service import OrderService

logger = get_logger(__name__)

# Order payment status a payment transition propagates to. Statuses missing
# here (processing, partially_refunded) leave the order untouched.
TRANSITION_EFFECTS = {
    PaymentStatus.PENDING: OrderPaymentStatus.PENDING,
    PaymentStatus.SUCCEEDED: OrderPaymentStatus.PAID,
    PaymentStatus.FAILED: OrderPaymentStatus.FAILED,
    PaymentStatus.CANCELLED: OrderPaymentStatus.FAILED,
    PaymentStatus.REFUNDED: OrderPaymentStatus.REFUNDED,
}

# Order payment status implied by an order's latest payment
IMPLIED_STATUS = {
    **TRANSITION_EFFECTS,
    PaymentStatus.PARTIALLY_REFUNDED: OrderPaymentStatus.PAID,
}


@dataclass
class SagaOutcome:
    order_payment_status: Optional[str] = None
    reconciliation_needed: bool = False


@dataclass
class Mismatch:
    order_id: int
    payment_id: int
    recorded: str
    expected: str
    repaired: bool


class SagaCoordinator:
    def __init__(self, order_service: OrderService):
        self.order_service = order_service

    def on_payment_transition(self, payment: Payment,
                              previous_status: Optional[PaymentStatus] = None) -> SagaOutcome:
        """Projects a committed payment transition onto its order.

        ``previous_status`` is None when the payment was just created.
        """
        target = TRANSITION_EFFECTS.get(PaymentStatus(payment.status))
        if target is None:
            return SagaOutcome()
        try:
            self.order_service.apply_payment_status(payment.order_id, target)
        except Exception:
            logger.error(
                f"Order {payment.order_id} payment status not updated after payment {payment.id} "
                f"moved to {payment.status}",
                exc_info=True,
                extra={'extra_fields': {
                    'order_id': payment.order_id,
                    'payment_id': payment.id,
                    'payment_status': payment.status,
                    'previous_status': previous_status.value if previous_status else None,
                    'target': target.value,
                }}
            )
            return SagaOutcome(reconciliation_needed=True)
        return SagaOutcome(order_payment_status=target.value)


class ReconciliationSweep:
    """Finds orders whose payment_status disagrees with their latest payment and repairs them."""

    def __init__(self, db: Session, order_service: OrderService, batch_size: int = 100):
        self.db = db
        self.order_service = order_service
        self.batch_size = batch_size
        self.orders = OrderRepository(db)
        self.payments = PaymentRepository(db)

    def run(self, repair: bool = True) -> list[Mismatch]:
        mismatches = []
        last_id = 0
        while True:
            order_ids = self.orders.ids_with_payments(last_id, self.batch_size)
            if not order_ids:
                break
            for order_id in order_ids:
                mismatch = self._check(order_id, repair)
                if mismatch is not None:
                    mismatches.append(mismatch)
            last_id = order_ids[-1]

        logger.info(
            f"Reconciliation sweep found {len(mismatches)} mismatches",
            extra={'extra_fields': {
                'mismatches': len(mismatches),
                'repaired': sum(1 for m in mismatches if m.repaired),
            }}
        )
        return mismatches

    def _check(self, order_id: int, repair: bool) -> Optional[Mismatch]:
        order = self.orders.get(order_id)
        payment = self.payments.latest_for_order(order_id)
        if order is None or payment is None:
            return None
        self.db.refresh(order)
        self.db.refresh(payment)
        expected = IMPLIED_STATUS.get(PaymentStatus(payment.status))
        if expected is None or expected.value == order.payment_status:
            return None

        recorded = order.payment_status
        logger.warning(
            f"Order {order_id} payment_status {recorded} disagrees with payment {payment.id} ({payment.status})",
            extra={'extra_fields': {
                'order_id': order_id, 'payment_id': payment.id,
                'recorded': recorded, 'expected': expected.value,
            }}
        )
        repaired = False
        if repair:
            self.order_service.apply_payment_status(order_id, expected)
            repaired = True
        return Mismatch(order_id, payment.id, recorded, expected.value, repaired)
