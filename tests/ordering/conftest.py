"""Shared fixtures for ordering tests."""

import pytest
from storefront.ordering.order import Order
from storefront.ordering.pricing import compute_pricing, price_line

ADDRESS = {
    "street": "1 Main St",
    "city": "Springfield",
    "state": "IL",
    "postal_code": "62701",
    "country": "US",
}


def _build_order(status=None, quantity=1, price=25.0):
    lines = [price_line("prod-001", "Widget", quantity, price)]
    lines[0]["reservation_id"] = "res-001"
    order = Order.create(
        user_id="user-001",
        order_number="ORD-TEST-0001",
        lines=lines,
        pricing=compute_pricing(lines),
        shipping_address=ADDRESS,
        payment_method="card",
    )
    if status is not None:
        order.status = status.value
    return order


@pytest.fixture()
def build_order():
    return _build_order


@pytest.fixture()
def order():
    return _build_order()
