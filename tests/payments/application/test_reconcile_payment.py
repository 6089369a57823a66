"""Application tests for payment reconciliation through webhooks and status polls.

Covers:
- Success and failure webhooks move payment and order together
- Redelivered webhooks are acknowledged without a second transition
- Unknown payments, unhandled event types and late or mismatched reports
- A payment completing after its order was cancelled is refunded
- verify_payment polls the gateway for pending payments
"""

import pytest
from protean.exceptions import ValidationError
from protean.utils.globals import current_domain
from storefront.errors import WebhookSignatureError
from storefront.notifications import PAYMENT_FAILED, PAYMENT_RECEIVED
from storefront.ordering.cancellation import cancel_order
from storefront.ordering.queries import get_order
from storefront.payments.orchestrator import get_payment, handle_webhook, verify_payment
from storefront.payments.payment import PaymentStatus
from storefront.payments.reconciliation import APPLIED, DUPLICATE, IGNORED
from storefront.payments.webhook import body_event_id
from storefront.payments.webhook_receipt import WebhookReceipt

SIGNED = {"x-gateway-signature": "test-signature"}


class TestWebhookSuccess:
    def test_success_marks_payment_and_order(self, pending_payment, deliver_webhook, sink):
        order, handle = pending_payment

        result = deliver_webhook("payment.succeeded", handle.external_ref, amount=order.total)

        assert result == {"received": True, "duplicate": False, "outcome": APPLIED}
        assert get_payment(handle.payment_id).status == PaymentStatus.COMPLETED.value
        refreshed = get_order(order.id)
        assert refreshed.status == "paid"
        assert refreshed.payment.status == "completed"
        assert refreshed.payment.transaction_id == handle.external_ref
        assert len(sink.of_type(PAYMENT_RECEIVED)) == 1

    def test_redelivery_is_idempotent(self, pending_payment, deliver_webhook, sink):
        order, handle = pending_payment
        deliver_webhook("payment.succeeded", handle.external_ref, event_id="evt_1")

        again = deliver_webhook("payment.succeeded", handle.external_ref, event_id="evt_1")

        assert again == {"received": True, "duplicate": True, "outcome": APPLIED}
        history = [change.status for change in get_order(order.id).history]
        assert history == ["pending", "paid"]
        assert len(sink.of_type(PAYMENT_RECEIVED)) == 1

    def test_same_outcome_under_new_event_id_is_a_duplicate(self, pending_payment, deliver_webhook):
        order, handle = pending_payment
        deliver_webhook("payment.succeeded", handle.external_ref)

        result = deliver_webhook("payment.succeeded", handle.external_ref)

        assert result["outcome"] == DUPLICATE
        assert get_order(order.id).status == "paid"

    def test_amount_mismatch_is_ignored(self, pending_payment, deliver_webhook):
        order, handle = pending_payment

        result = deliver_webhook("payment.succeeded", handle.external_ref, amount=order.total / 2)

        assert result["outcome"] == IGNORED
        assert get_payment(handle.payment_id).status == PaymentStatus.PENDING.value
        assert get_order(order.id).status == "pending"


class TestWebhookFailure:
    def test_failure_marks_payment_and_order(self, pending_payment, deliver_webhook, sink):
        order, handle = pending_payment

        deliver_webhook("payment.failed", handle.external_ref, reason="Insufficient funds")

        payment = get_payment(handle.payment_id)
        assert payment.status == PaymentStatus.FAILED.value
        assert payment.failure_reason == "Insufficient funds"
        assert get_order(order.id).status == "payment_failed"
        assert sink.of_type(PAYMENT_FAILED)[0].payload["reason"] == "Insufficient funds"

    def test_late_success_after_failure_is_ignored(self, pending_payment, deliver_webhook):
        order, handle = pending_payment
        deliver_webhook("payment.failed", handle.external_ref)

        result = deliver_webhook("payment.succeeded", handle.external_ref)

        assert result["outcome"] == IGNORED
        assert get_order(order.id).status == "payment_failed"

    def test_failure_after_success_is_ignored(self, paid_order, deliver_webhook):
        order, handle = paid_order

        result = deliver_webhook("payment.failed", handle.external_ref)

        assert result["outcome"] == IGNORED
        assert get_order(order.id).status == "paid"


class TestWebhookIntake:
    def test_bad_signature_changes_nothing(self, pending_payment, fake_gateway):
        order, handle = pending_payment
        body = fake_gateway.event_body("payment.succeeded", handle.external_ref)

        with pytest.raises(WebhookSignatureError):
            handle_webhook("card", {"x-gateway-signature": "forged"}, body)

        assert get_order(order.id).status == "pending"

    def test_unknown_payment_is_acknowledged(self, deliver_webhook):
        assert deliver_webhook("payment.succeeded", "fake_pay_unknown")["outcome"] == IGNORED

    def test_unhandled_event_type_is_acknowledged(self, pending_payment, deliver_webhook):
        _, handle = pending_payment
        assert deliver_webhook("customer.created", handle.external_ref)["outcome"] == IGNORED

    def test_unknown_gateway(self):
        with pytest.raises(ValidationError):
            handle_webhook("cash", {}, b"{}")

    def test_unparseable_body_is_acknowledged_and_recorded(self):
        result = handle_webhook("card", SIGNED, b"not json")

        assert result == {"received": True, "duplicate": False, "outcome": "error"}
        assert current_domain.repository_for(WebhookReceipt).find("card", body_event_id(b"not json")) is not None

    def test_unparseable_redelivery_is_a_duplicate(self):
        handle_webhook("card", SIGNED, b"not json")

        again = handle_webhook("card", SIGNED, b"not json")

        assert again == {"received": True, "duplicate": True, "outcome": "error"}

    def test_reconciliation_failure_is_acknowledged(self, pending_payment, fake_gateway, monkeypatch):
        order, handle = pending_payment

        def _fail(gateway, event):
            raise RuntimeError("database unavailable")

        monkeypatch.setattr("storefront.payments.webhook.reconcile", _fail)
        body = fake_gateway.event_body("payment.succeeded", handle.external_ref, event_id="evt_broken")

        result = handle_webhook("card", SIGNED, body)

        assert result == {"received": True, "duplicate": False, "outcome": "error"}
        assert current_domain.repository_for(WebhookReceipt).find("card", "evt_broken").outcome == "error"
        assert get_order(order.id).status == "pending"


class TestCompletedAfterCancellation:
    def test_payment_is_refunded(self, pending_payment, deliver_webhook, fake_gateway):
        order, handle = pending_payment
        cancel_order(order.id, reason="Changed my mind")

        result = deliver_webhook("payment.succeeded", handle.external_ref)

        assert result["outcome"] == APPLIED
        assert get_order(order.id).status == "cancelled"
        assert get_payment(handle.payment_id).status == PaymentStatus.REFUNDED.value
        assert any(call["method"] == "refund" for call in fake_gateway.calls)


class TestVerifyPayment:
    def test_pending_at_gateway(self, pending_payment):
        _, handle = pending_payment

        result = verify_payment(handle.payment_id)

        assert result["status"] == PaymentStatus.PENDING.value
        assert result["verified"] is False
        assert result["outcome"] == "pending"

    def test_completed_at_gateway(self, pending_payment, fake_gateway):
        order, handle = pending_payment
        fake_gateway.set_status(handle.external_ref, "completed")

        result = verify_payment(handle.payment_id)

        assert result["status"] == PaymentStatus.COMPLETED.value
        assert result["verified"] is True
        assert result["outcome"] == APPLIED
        assert get_order(order.id).status == "paid"

    def test_failed_at_gateway(self, pending_payment, fake_gateway):
        order, handle = pending_payment
        fake_gateway.set_status(handle.external_ref, "failed")

        verify_payment(handle.payment_id)

        assert get_order(order.id).status == "payment_failed"

    def test_settled_payment_is_not_polled(self, paid_order, fake_gateway):
        _, handle = paid_order
        calls = len(fake_gateway.calls)

        result = verify_payment(handle.payment_id)

        assert result["verified"] is True
        assert result["outcome"] is None
        assert len(fake_gateway.calls) == calls
