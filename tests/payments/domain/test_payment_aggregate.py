"""Domain tests for the Payment aggregate."""

from datetime import timedelta

import pytest
from storefront.errors import ConflictError, DomainValidationError, NotRefundableError, RefundExceedsPaymentError
from storefront.payments.events import PaymentCompleted, PaymentFailed, PaymentInitiated, RefundCompleted
from storefront.payments.payment import Payment, PaymentStatus
from storefront.utils.clock import utcnow


@pytest.fixture()
def payment():
    return Payment.create(
        order_id="order-001",
        user_id="user-001",
        gateway="card",
        method="card",
        amount=100.0,
        currency="USD",
    )


@pytest.fixture()
def completed(payment):
    payment.record_gateway_reference("pi_123", client_secret="pi_123_secret")
    payment.complete()
    return payment


class TestLifecycle:
    def test_created_pending(self, payment):
        assert payment.status == PaymentStatus.PENDING.value
        assert payment.refundable_amount == 100.0
        assert not payment.is_settled
        assert isinstance(payment._events[0], PaymentInitiated)

    def test_complete(self, completed):
        assert completed.status == PaymentStatus.COMPLETED.value
        assert completed.captured_at is not None
        assert completed.is_settled
        assert isinstance(completed._events[-1], PaymentCompleted)

    def test_fail(self, payment):
        payment.fail("Card declined")
        assert payment.status == PaymentStatus.FAILED.value
        assert payment.failure_reason == "Card declined"
        assert isinstance(payment._events[-1], PaymentFailed)

    def test_failed_is_terminal(self, payment):
        payment.fail("Card declined")
        with pytest.raises(ConflictError):
            payment.complete()

    def test_completed_cannot_fail(self, completed):
        with pytest.raises(ConflictError):
            completed.fail("late failure")

    def test_gateway_error_keeps_pending(self, payment):
        payment.record_gateway_error("timeout")
        assert payment.status == PaymentStatus.PENDING.value
        assert payment.failure_reason == "timeout"


class TestAbandonment:
    def test_unacknowledged_payment_is_abandoned_after_window(self, payment):
        later = utcnow() + timedelta(minutes=31)
        assert payment.is_abandoned(later, timedelta(minutes=30))

    def test_recent_payment_is_not_abandoned(self, payment):
        assert not payment.is_abandoned(utcnow(), timedelta(minutes=30))

    def test_acknowledged_payment_is_never_abandoned(self, payment):
        payment.record_gateway_reference("pi_123")
        later = utcnow() + timedelta(hours=2)
        assert not payment.is_abandoned(later, timedelta(minutes=30))


class TestRefunds:
    def test_pending_payment_is_not_refundable(self, payment):
        with pytest.raises(NotRefundableError):
            payment.request_refund()

    def test_full_refund(self, completed):
        refund = completed.request_refund(reason="requested_by_customer")
        assert completed.status == PaymentStatus.REFUND_PENDING.value
        assert refund.amount == 100.0

        completed.complete_refund(refund_ref="re_1")
        assert completed.status == PaymentStatus.REFUNDED.value
        assert completed.refunded_amount == 100.0
        assert completed.refundable_amount == 0.0
        assert completed._events[-1].fully_refunded is True

    def test_partial_then_rest(self, completed):
        completed.request_refund(amount=40.0)
        completed.complete_refund()
        assert completed.status == PaymentStatus.PARTIALLY_REFUNDED.value
        assert completed.refundable_amount == 60.0
        assert isinstance(completed._events[-1], RefundCompleted)

        completed.request_refund()
        completed.complete_refund()
        assert completed.status == PaymentStatus.REFUNDED.value

    def test_refund_cannot_exceed_balance(self, completed):
        with pytest.raises(RefundExceedsPaymentError):
            completed.request_refund(amount=100.5)

    def test_refund_must_be_positive(self, completed):
        with pytest.raises(DomainValidationError):
            completed.request_refund(amount=0)

    def test_refund_while_another_is_pending(self, completed):
        completed.request_refund(amount=10.0)
        with pytest.raises(NotRefundableError):
            completed.request_refund(amount=10.0)

    def test_declined_refund_restores_status(self, completed):
        completed.request_refund(amount=40.0)
        completed.complete_refund()
        completed.request_refund(amount=10.0)

        completed.decline_refund(reason="Insufficient balance")
        assert completed.status == PaymentStatus.PARTIALLY_REFUNDED.value
        assert completed.refunded_amount == 40.0

    def test_nothing_to_acknowledge(self, completed):
        with pytest.raises(ConflictError):
            completed.complete_refund()
