from typing import Any, Optional, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from orderflow.domain.models import (
    ACTIVE_PAYMENT_STATUSES,
    Order,
    Payment,
    PaymentDispute,
    PaymentRefund,
    ProcessedWebhookEvent,
)


class OrderRepository:
    def __init__(self, db: Session):
        self.db = db

    def get(self, order_id: int) -> Optional[Order]:
        return self.db.get(Order, order_id)

    def list_page(self, page: int, limit: int, user_id: Optional[int] = None,
                  status: Optional[str] = None) -> tuple[Sequence[Order], int]:
        query = select(Order)
        if user_id is not None:
            query = query.where(Order.user_id == user_id)
        if status is not None:
            query = query.where(Order.status == status)
        total = self.db.scalar(select(func.count()).select_from(query.subquery()))
        rows = self.db.scalars(
            query.order_by(Order.created_at.desc(), Order.id.desc())
            .offset((page - 1) * limit).limit(limit)
        ).all()
        return rows, total or 0

    def ids_with_payments(self, after_id: int, batch_size: int) -> list[int]:
        return list(self.db.scalars(
            select(Order.id)
            .where(Order.id > after_id, Order.id.in_(select(Payment.order_id)))
            .order_by(Order.id).limit(batch_size)
        ))

    def compare_and_set_status(self, order_id: int, expected: str, new: str) -> bool:
        """Moves the order to ``new`` only if it is still in ``expected``."""
        result = self.db.execute(
            update(Order)
            .where(Order.id == order_id, Order.status == expected)
            .values(status=new)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def set_payment_status(self, order_id: int, payment_status: str) -> bool:
        result = self.db.execute(
            update(Order)
            .where(Order.id == order_id, Order.payment_status != payment_status)
            .values(payment_status=payment_status)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class PaymentRepository:
    def __init__(self, db: Session):
        self.db = db

    def get(self, payment_id: int) -> Optional[Payment]:
        return self.db.get(Payment, payment_id)

    def get_by_intent(self, intent_id: str) -> Optional[Payment]:
        return self.db.scalar(select(Payment).where(Payment.gateway_intent_id == intent_id))

    def get_by_charge(self, charge_id: str) -> Optional[Payment]:
        return self.db.scalar(select(Payment).where(Payment.gateway_charge_id == charge_id))

    def find_active_for_order(self, order_id: int) -> Optional[Payment]:
        return self.db.scalar(
            select(Payment).where(
                Payment.order_id == order_id,
                Payment.status.in_(ACTIVE_PAYMENT_STATUSES),
            )
        )

    def latest_for_order(self, order_id: int) -> Optional[Payment]:
        return self.db.scalar(
            select(Payment).where(Payment.order_id == order_id)
            .order_by(Payment.created_at.desc(), Payment.id.desc()).limit(1)
        )

    def count_for_order(self, order_id: int) -> int:
        return self.db.scalar(
            select(func.count()).select_from(Payment).where(Payment.order_id == order_id)
        ) or 0

    def list_page(self, page: int, limit: int, user_id: Optional[int] = None,
                  status: Optional[str] = None) -> tuple[Sequence[Payment], int]:
        query = select(Payment)
        if user_id is not None:
            query = query.where(Payment.user_id == user_id)
        if status is not None:
            query = query.where(Payment.status == status)
        total = self.db.scalar(select(func.count()).select_from(query.subquery()))
        rows = self.db.scalars(
            query.order_by(Payment.created_at.desc(), Payment.id.desc())
            .offset((page - 1) * limit).limit(limit)
        ).all()
        return rows, total or 0

    def compare_and_set(self, payment_id: int, expected: dict[str, Any], values: dict[str, Any]) -> bool:
        """Conditional update: applies ``values`` only while every ``expected`` column still matches."""
        conditions = [getattr(Payment, column) == value for column, value in expected.items()]
        result = self.db.execute(
            update(Payment)
            .where(Payment.id == payment_id, *conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def refund_applied(self, gateway_refund_id: str) -> bool:
        return self.db.scalar(
            select(PaymentRefund.id).where(PaymentRefund.gateway_refund_id == gateway_refund_id)
        ) is not None

    def dispute_recorded(self, gateway_dispute_id: str) -> bool:
        return self.db.scalar(
            select(PaymentDispute.id).where(PaymentDispute.gateway_dispute_id == gateway_dispute_id)
        ) is not None


class WebhookEventRepository:
    def __init__(self, db: Session):
        self.db = db

    def is_processed(self, event_id: str) -> bool:
        return self.db.get(ProcessedWebhookEvent, event_id) is not None

    def mark_processed(self, event_id: str, event_type: str) -> None:
        self.db.add(ProcessedWebhookEvent(event_id=event_id, event_type=event_type))
        self.db.flush()
