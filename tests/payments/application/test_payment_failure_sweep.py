"""Application tests for cancelling orders stuck in payment_failed."""

from dataclasses import replace
from datetime import timedelta

from storefront.inventory import manager as inventory
from storefront.ordering.queries import get_order
from storefront.payments.orchestrator import initiate_payment, sweep_payment_failures
from storefront.settings import get_settings, set_settings
from storefront.utils.clock import utcnow


def _fail(order_and_handle, deliver_webhook):
    order, handle = order_and_handle
    deliver_webhook("payment.failed", handle.external_ref)
    return order


class TestSweepPaymentFailures:
    def test_disabled_by_default(self, pending_payment, deliver_webhook):
        order = _fail(pending_payment, deliver_webhook)

        assert sweep_payment_failures(as_of=utcnow() + timedelta(days=30)) == 0
        assert get_order(order.id).status == "payment_failed"

    def test_cancels_after_grace_period(self, place_pending_order, deliver_webhook):
        set_settings(replace(get_settings(), payment_failure_grace_minutes=60))
        order, product = place_pending_order(quantity=2, stock=10)
        handle = initiate_payment(order.id, "card", "card", order.total, "USD")
        deliver_webhook("payment.failed", handle.external_ref)

        assert sweep_payment_failures(as_of=utcnow() + timedelta(minutes=61)) == 1

        cancelled = get_order(order.id)
        assert cancelled.status == "cancelled"
        assert cancelled.cancelled_by == "system"
        assert inventory.physical_quantity(product.id) == 10

    def test_orders_within_grace_are_kept(self, pending_payment, deliver_webhook):
        set_settings(replace(get_settings(), payment_failure_grace_minutes=60))
        order = _fail(pending_payment, deliver_webhook)

        assert sweep_payment_failures(as_of=utcnow() + timedelta(minutes=30)) == 0
        assert get_order(order.id).status == "payment_failed"
