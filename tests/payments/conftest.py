"""Shared fixtures for payment tests."""

import pytest
from storefront.payments.orchestrator import handle_webhook, initiate_payment

SIGNED = {"x-gateway-signature": "test-signature"}


@pytest.fixture()
def pending_payment(place_pending_order):
    """A pending order with a pending card payment; returns (order, handle)."""
    order, _ = place_pending_order()
    handle = initiate_payment(order.id, "card", "card", order.total, "USD")
    return order, handle


@pytest.fixture()
def deliver_webhook(fake_gateway):
    """Send a signed fake-gateway webhook for ``external_ref``."""

    def _deliver(event_type, external_ref, event_id=None, **extra):
        body = fake_gateway.event_body(event_type, external_ref, event_id=event_id, **extra)
        return handle_webhook("card", SIGNED, body)

    return _deliver


@pytest.fixture()
def paid_order(pending_payment, deliver_webhook):
    order, handle = pending_payment
    deliver_webhook("payment.succeeded", handle.external_ref)
    return order, handle
