from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from sqlalchemy import select

from conftest import ADMIN, CUSTOMER, OTHER_CUSTOMER, order_request
from orderflow.application.schemas import (
    PaymentConfirm,
    PaymentIntentCreate,
    RefundCreate,
)
from orderflow.domain.errors import (
    CollaboratorUnavailableError,
    ConflictError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    RefundExceedsBalanceError,
    ValidationError,
)
from orderflow.domain.models import (
    Currency,
    Order,
    OrderStatus,
    Payment,
    PaymentMethod,
    PaymentRefund,
)
from orderflow.infrastructure.cache import payment_key


def intent_request(order_id, **overrides):
    data = {"order_id": order_id, "payment_method": PaymentMethod.CARD}
    data.update(overrides)
    return PaymentIntentCreate(**data)


class TestCreateIntent:
    def test_defaults_to_order_total(self, pending_payment, gateway, db, placed_order):
        assert pending_payment.amount == Decimal("2483.97")
        assert pending_payment.currency == "USD"
        assert pending_payment.status == "pending"
        assert pending_payment.client_secret.endswith("_secret_abc")

        payment = db.get(Payment, pending_payment.payment_id)
        intent = gateway.intents[payment.gateway_intent_id]
        assert intent.amount == 248397
        assert intent.metadata["order_id"] == str(placed_order.id)
        assert payment.user_id == CUSTOMER.user_id

    def test_explicit_amount_and_currency(self, payment_service, placed_order):
        result = payment_service.create_intent(
            CUSTOMER, intent_request(placed_order.id, amount=Decimal("10.00"), currency="eur")
        )
        assert result.amount == Decimal("10.00")
        assert result.currency == Currency.EUR.value

    def test_duplicate_active_payment_conflicts(self, payment_service, pending_payment, placed_order, gateway):
        with pytest.raises(ConflictError):
            payment_service.create_intent(CUSTOMER, intent_request(placed_order.id))
        assert len(gateway.intents) == 1

    def test_racing_insert_conflicts_and_cancels_orphan_intent(
            self, payment_service, pending_payment, placed_order, gateway, db):
        # Simulate a request that passed the pre-check before the first payment committed
        payment_service.payments.find_active_for_order = lambda order_id: None
        with pytest.raises(ConflictError):
            payment_service.create_intent(CUSTOMER, intent_request(placed_order.id))
        assert gateway.cancelled == ["pi_test_2"]
        assert len(db.scalars(select(Payment)).all()) == 1

    def test_other_customers_order_is_not_found(self, payment_service, placed_order):
        with pytest.raises(NotFoundError):
            payment_service.create_intent(OTHER_CUSTOMER, intent_request(placed_order.id))

    def test_cancelled_order_cannot_be_paid(self, payment_service, order_service, placed_order, gateway):
        order_service.cancel_order(CUSTOMER, placed_order.id)
        with pytest.raises(InvalidTransitionError):
            payment_service.create_intent(CUSTOMER, intent_request(placed_order.id))
        assert gateway.intents == {}

    def test_new_attempt_allowed_after_failure(self, payment_service, gateway, db, pending_payment, placed_order):
        payment = db.get(Payment, pending_payment.payment_id)
        gateway.set_status(payment.gateway_intent_id, "canceled")
        payment_service.confirm(
            CUSTOMER, PaymentConfirm(payment_intent_id=payment.gateway_intent_id, order_id=placed_order.id)
        )
        retry = payment_service.create_intent(CUSTOMER, intent_request(placed_order.id))
        assert retry.payment_id != payment.id
        assert db.get(Order, placed_order.id).payment_status == "pending"


class TestConfirm:
    def test_success_marks_payment_and_order_paid(self, paid_payment, db, placed_order):
        db.refresh(paid_payment)
        assert paid_payment.status == "succeeded"
        assert paid_payment.gateway_charge_id == f"ch_{paid_payment.gateway_intent_id}"
        assert paid_payment.payment_method_details == {
            "brand": "visa", "last4": "4242", "exp_month": 12, "exp_year": 2030,
        }
        assert db.get(Order, placed_order.id).payment_status == "paid"

    def test_confirm_is_idempotent(self, payment_service, saga, gateway, db, pending_payment,
                                   placed_order, monkeypatch):
        spy = MagicMock(wraps=saga.on_payment_transition)
        monkeypatch.setattr(saga, "on_payment_transition", spy)
        payment = db.get(Payment, pending_payment.payment_id)
        gateway.succeed(payment.gateway_intent_id)
        request = PaymentConfirm(payment_intent_id=payment.gateway_intent_id, order_id=placed_order.id)

        first = payment_service.confirm(CUSTOMER, request)
        second = payment_service.confirm(CUSTOMER, request)

        assert first.payment.status == second.payment.status == "succeeded"
        assert spy.call_count == 1

    def test_requires_action_keeps_payment_pending(self, payment_service, gateway, db,
                                                   pending_payment, placed_order):
        payment = db.get(Payment, pending_payment.payment_id)
        gateway.set_status(payment.gateway_intent_id, "requires_action")
        result = payment_service.confirm(
            CUSTOMER, PaymentConfirm(payment_intent_id=payment.gateway_intent_id, order_id=placed_order.id)
        )
        assert result.payment.status == "pending"

    def test_gateway_failure_records_reason(self, payment_service, gateway, db, pending_payment, placed_order):
        payment = db.get(Payment, pending_payment.payment_id)
        gateway.set_status(payment.gateway_intent_id, "requires_capture_failed",
                           last_error="Your card was declined.")
        result = payment_service.confirm(
            CUSTOMER, PaymentConfirm(payment_intent_id=payment.gateway_intent_id, order_id=placed_order.id)
        )
        assert result.payment.status == "failed"
        assert result.payment.failure_reason == "Your card was declined."
        assert db.get(Order, placed_order.id).payment_status == "failed"

    def test_wrong_order_id_is_not_found(self, payment_service, db, pending_payment, placed_order):
        payment = db.get(Payment, pending_payment.payment_id)
        with pytest.raises(NotFoundError):
            payment_service.confirm(
                CUSTOMER, PaymentConfirm(payment_intent_id=payment.gateway_intent_id, order_id=placed_order.id + 1)
            )

    def test_stale_gateway_status_does_not_regress(self, payment_service, gateway, paid_payment, placed_order):
        gateway.set_status(paid_payment.gateway_intent_id, "processing")
        result = payment_service.confirm(
            CUSTOMER, PaymentConfirm(payment_intent_id=paid_payment.gateway_intent_id, order_id=placed_order.id)
        )
        assert result.payment.status == "succeeded"

    def test_capture_after_failure_is_flagged_not_applied(self, payment_service, gateway, db,
                                                          pending_payment, placed_order):
        payment = db.get(Payment, pending_payment.payment_id)
        gateway.set_status(payment.gateway_intent_id, "requires_capture_failed", last_error="Card declined")
        request = PaymentConfirm(payment_intent_id=payment.gateway_intent_id, order_id=placed_order.id)
        assert payment_service.confirm(CUSTOMER, request).payment.status == "failed"

        gateway.succeed(payment.gateway_intent_id)
        result = payment_service.confirm(CUSTOMER, request)

        assert result.reconciliation_needed is True
        assert result.payment.status == "failed"
        assert result.payment.metadata["gateway_mismatch"]["recorded"] == "failed"
        assert result.payment.metadata["gateway_mismatch"]["charge_id"] == f"ch_{payment.gateway_intent_id}"
        assert db.get(Order, placed_order.id).payment_status == "failed"


class TestRefunds:
    def test_partial_then_exact_remaining(self, payment_service, db, paid_payment, placed_order):
        partial = payment_service.refund(CUSTOMER, paid_payment.id, RefundCreate(amount=Decimal("1000.00")))
        assert partial.payment.status == "partially_refunded"
        assert partial.payment.refunded_amount == Decimal("1000.00")
        assert db.get(Order, placed_order.id).payment_status == "paid"

        rest = payment_service.refund(CUSTOMER, paid_payment.id, RefundCreate(amount=Decimal("1483.97")))
        assert rest.payment.status == "refunded"
        assert rest.payment.refunded_amount == Decimal("2483.97")
        assert db.get(Order, placed_order.id).payment_status == "refunded"

    def test_default_amount_is_remaining_balance(self, payment_service, gateway, paid_payment):
        result = payment_service.refund(CUSTOMER, paid_payment.id, RefundCreate())
        assert result.amount == Decimal("2483.97")
        assert result.payment.status == "refunded"
        assert gateway.refunds[0].amount == 248397

    def test_over_refund_is_rejected_before_gateway(self, payment_service, gateway, db, paid_payment):
        payment_service.refund(CUSTOMER, paid_payment.id, RefundCreate(amount=Decimal("2000.00")))
        with pytest.raises(RefundExceedsBalanceError):
            payment_service.refund(CUSTOMER, paid_payment.id, RefundCreate(amount=Decimal("483.98")))
        db.refresh(paid_payment)
        assert paid_payment.refunded_amount == Decimal("2000.00")
        assert paid_payment.status == "partially_refunded"
        assert len(gateway.refunds) == 1

    def test_pending_payment_cannot_be_refunded(self, payment_service, pending_payment):
        with pytest.raises(InvalidTransitionError):
            payment_service.refund(CUSTOMER, pending_payment.payment_id, RefundCreate())

    def test_gateway_failure_leaves_payment_untouched(self, payment_service, gateway, db, paid_payment):
        gateway.refund_error = CollaboratorUnavailableError("payment-gateway")
        with pytest.raises(CollaboratorUnavailableError):
            payment_service.refund(CUSTOMER, paid_payment.id, RefundCreate(amount=Decimal("5.00")))
        db.refresh(paid_payment)
        assert paid_payment.refunded_amount == Decimal("0.00")
        assert db.scalars(select(PaymentRefund)).all() == []

    def test_pending_gateway_refund_is_not_applied(self, payment_service, gateway, db, paid_payment):
        gateway.refund_status = "pending"
        result = payment_service.refund(CUSTOMER, paid_payment.id, RefundCreate(amount=Decimal("100.00")))
        assert result.status == "pending"
        assert result.amount == Decimal("100.00")
        assert result.payment.status == "succeeded"
        assert result.payment.refunded_amount == Decimal("0.00")
        assert db.scalars(select(PaymentRefund)).all() == []

    def test_same_gateway_refund_is_applied_once(self, payment_service, db, paid_payment):
        result = payment_service.refund(CUSTOMER, paid_payment.id, RefundCreate(amount=Decimal("10.00")))
        payment_service.apply_gateway_refund(paid_payment, result.refund_id, Decimal("10.00"))
        db.refresh(paid_payment)
        assert paid_payment.refunded_amount == Decimal("10.00")
        ledger = db.scalars(select(PaymentRefund)).all()
        assert [r.gateway_refund_id for r in ledger] == [result.refund_id]

    def test_refunding_does_not_move_order_status(self, payment_service, db, paid_payment, placed_order):
        payment_service.refund(CUSTOMER, paid_payment.id, RefundCreate())
        assert db.get(Order, placed_order.id).status == OrderStatus.PENDING.value

    def test_zero_amount_rejected_by_domain(self, paid_payment):
        with pytest.raises(ValidationError):
            paid_payment.status_after_refund(Decimal("0.00"))


class TestPaymentReads:
    def test_get_payment_uses_cache_with_ownership(self, payment_service, cache, paid_payment):
        read = payment_service.get_payment(CUSTOMER, paid_payment.id)
        assert read.status == "succeeded"
        assert cache.get(payment_key(paid_payment.id)) is not None
        with pytest.raises(NotFoundError):
            payment_service.get_payment(OTHER_CUSTOMER, paid_payment.id)
        assert payment_service.get_payment(ADMIN, paid_payment.id).id == paid_payment.id

    def test_mutation_invalidates_cached_payment(self, payment_service, cache, paid_payment):
        payment_service.get_payment(CUSTOMER, paid_payment.id)
        payment_service.refund(CUSTOMER, paid_payment.id, RefundCreate(amount=Decimal("1.00")))
        assert cache.get(payment_key(paid_payment.id)) is None
        assert payment_service.get_payment(CUSTOMER, paid_payment.id).refunded_amount == Decimal("1.00")

    def test_listing(self, payment_service, order_service, pending_payment):
        other_order = order_service.create_order(OTHER_CUSTOMER, order_request())
        payment_service.create_intent(OTHER_CUSTOMER, intent_request(other_order.id))

        mine = payment_service.list_payments(CUSTOMER)
        assert [p.id for p in mine.items] == [pending_payment.payment_id]
        assert payment_service.list_all_payments(ADMIN).total == 2
        with pytest.raises(ForbiddenError):
            payment_service.list_all_payments(CUSTOMER)
