"""Application tests for payment initiation.

Covers:
- A pending payment is opened and acknowledged by the gateway
- Amount and currency must match the order
- At most one pending payment per order, even under concurrency
- Declines and timeouts at the gateway
- Abandoned pending payments and retries after a failure
"""

import threading
from dataclasses import replace

import pytest
from protean import current_domain
from protean.exceptions import ValidationError
from storefront.domain import storefront
from storefront.errors import (
    AlreadyPaidError,
    AmountMismatchError,
    ConflictError,
    GatewayError,
    GatewayUnavailableError,
    NotFoundError,
    PaymentInProgressError,
)
from storefront.ordering.queries import get_order
from storefront.payments.orchestrator import get_payment, initiate_payment
from storefront.payments.payment import Payment, PaymentStatus
from storefront.settings import get_settings, set_settings


class TestInitiatePayment:
    def test_opens_pending_payment(self, place_pending_order, fake_gateway):
        order, _ = place_pending_order()

        handle = initiate_payment(order.id, "card", "card", order.total, "USD")

        assert handle.status == PaymentStatus.PENDING.value
        assert handle.external_ref.startswith("fake_pay_")
        assert handle.client_secret == f"{handle.external_ref}_secret"

        payment = get_payment(handle.payment_id)
        assert payment.amount == order.total
        assert payment.external_ref == handle.external_ref

        refreshed = get_order(order.id)
        assert refreshed.status == "pending"
        assert refreshed.payment.payment_id == handle.payment_id
        assert fake_gateway.calls[0]["metadata"]["order_id"] == str(order.id)

    def test_amount_must_match_total(self, place_pending_order):
        order, _ = place_pending_order(price=100.0)
        with pytest.raises(AmountMismatchError):
            initiate_payment(order.id, "card", "card", 50.0, "USD")
        assert current_domain.repository_for(Payment).for_order(order.id) == []

    def test_currency_must_match(self, place_pending_order):
        order, _ = place_pending_order()
        with pytest.raises(ValidationError):
            initiate_payment(order.id, "card", "card", order.total, "EUR")

    def test_unknown_gateway(self, place_pending_order):
        order, _ = place_pending_order()
        with pytest.raises(ValidationError):
            initiate_payment(order.id, "cash", "cash", order.total, "USD")

    def test_unknown_order(self):
        with pytest.raises(NotFoundError):
            initiate_payment("missing", "card", "card", 10.0, "USD")

    def test_second_attempt_while_pending(self, place_pending_order):
        order, _ = place_pending_order()
        initiate_payment(order.id, "card", "card", order.total, "USD")

        with pytest.raises(PaymentInProgressError):
            initiate_payment(order.id, "wallet", "paypal", order.total, "USD")

    def test_paid_order_cannot_be_paid_again(self, paid_order):
        order, _ = paid_order
        with pytest.raises(AlreadyPaidError):
            initiate_payment(order.id, "card", "card", order.total, "USD")

    def test_cancelled_order_cannot_be_paid(self, place_pending_order):
        from storefront.ordering.cancellation import cancel_order

        order, _ = place_pending_order()
        cancel_order(order.id)
        with pytest.raises(ConflictError):
            initiate_payment(order.id, "card", "card", order.total, "USD")


class TestConcurrentInitiation:
    def test_only_one_pending_payment(self, place_pending_order):
        order, _ = place_pending_order()
        handles = []
        errors = []
        barrier = threading.Barrier(2)

        def attempt():
            with storefront.domain_context():
                barrier.wait()
                try:
                    handles.append(initiate_payment(order.id, "card", "card", order.total, "USD"))
                except ConflictError as exc:
                    errors.append(exc)

        threads = [threading.Thread(target=attempt) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(handles) == 1
        assert len(errors) == 1
        payments = current_domain.repository_for(Payment).for_order(order.id)
        assert [payment.status for payment in payments] == [PaymentStatus.PENDING.value]


class TestGatewayFailures:
    def test_decline_fails_payment_and_keeps_order_pending(self, place_pending_order, fake_gateway):
        order, _ = place_pending_order()
        fake_gateway.configure(should_succeed=False, failure_reason="Card declined")

        with pytest.raises(GatewayError):
            initiate_payment(order.id, "card", "card", order.total, "USD")

        payments = current_domain.repository_for(Payment).for_order(order.id)
        assert payments[0].status == PaymentStatus.FAILED.value
        assert payments[0].failure_reason == "Card declined"
        assert get_order(order.id).status == "pending"

    def test_decline_frees_slot_for_retry(self, place_pending_order, fake_gateway):
        order, _ = place_pending_order()
        fake_gateway.configure(should_succeed=False)
        with pytest.raises(GatewayError):
            initiate_payment(order.id, "card", "card", order.total, "USD")

        fake_gateway.configure(should_succeed=True)
        handle = initiate_payment(order.id, "card", "card", order.total, "USD")
        assert handle.status == PaymentStatus.PENDING.value

    def test_transient_failure_is_retried(self, place_pending_order, fake_gateway):
        order, _ = place_pending_order()
        fake_gateway.configure(fail_times=2)

        handle = initiate_payment(order.id, "card", "card", order.total, "USD")

        assert handle.external_ref
        assert len([call for call in fake_gateway.calls if call["method"] == "initiate"]) == 3

    def test_exhausted_retries_leave_payment_pending(self, place_pending_order, fake_gateway):
        order, _ = place_pending_order()
        fake_gateway.configure(fail_times=10)

        with pytest.raises(GatewayUnavailableError):
            initiate_payment(order.id, "card", "card", order.total, "USD")

        payment = current_domain.repository_for(Payment).pending_for_order(order.id)
        assert payment is not None
        assert payment.failure_reason == "Simulated gateway timeout"

    def test_abandoned_pending_payment_is_replaced(self, place_pending_order, fake_gateway):
        order, _ = place_pending_order()
        fake_gateway.configure(fail_times=10)
        with pytest.raises(GatewayUnavailableError):
            initiate_payment(order.id, "card", "card", order.total, "USD")
        fake_gateway.configure()
        set_settings(replace(get_settings(), pending_payment_abandon_minutes=-1))

        handle = initiate_payment(order.id, "card", "card", order.total, "USD")

        payments = current_domain.repository_for(Payment).for_order(order.id)
        statuses = {str(payment.id): payment.status for payment in payments}
        assert statuses[handle.payment_id] == PaymentStatus.PENDING.value
        assert sorted(statuses.values()) == ["failed", "pending"]


class TestRetryAfterFailure:
    def test_payment_failed_order_is_reopened(self, pending_payment, deliver_webhook):
        order, handle = pending_payment
        deliver_webhook("payment.failed", handle.external_ref, reason="Card declined")
        assert get_order(order.id).status == "payment_failed"

        retry = initiate_payment(order.id, "card", "card", order.total, "USD")

        assert retry.payment_id != handle.payment_id
        refreshed = get_order(order.id)
        assert refreshed.status == "pending"
        assert refreshed.payment.payment_id == retry.payment_id
