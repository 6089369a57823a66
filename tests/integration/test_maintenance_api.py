"""Integration tests for the scheduler-triggered maintenance endpoints."""

from dataclasses import replace
from datetime import timedelta

from storefront.inventory import manager as inventory
from storefront.settings import get_settings, set_settings


class TestExpireReservations:
    def test_sweep_reports_count(self, client, make_product):
        product = make_product(stock=5)
        inventory.reserve(product.id, 2, "order-1", ttl=timedelta(seconds=-1))

        response = client.post("/maintenance/expire-reservations")

        assert response.status_code == 200
        assert response.json() == {"processed": 1}

    def test_nothing_to_sweep(self, client):
        assert client.post("/maintenance/expire-reservations").json() == {"processed": 0}


class TestExpirePaymentFailures:
    def test_disabled_by_default(self, client):
        assert client.post("/maintenance/expire-payment-failures").json() == {"processed": 0}

    def test_cancels_expired_failures(self, client, place_pending_order, fake_gateway):
        set_settings(replace(get_settings(), payment_failure_grace_minutes=0))
        order, _ = place_pending_order()
        handle = client.post(
            "/payments",
            json={"order_id": str(order.id), "gateway": "card", "amount": order.total},
        ).json()
        body = fake_gateway.event_body("payment.failed", handle["external_ref"])
        client.post("/payments/webhooks/card", content=body, headers={"X-Gateway-Signature": "test-signature"})

        response = client.post("/maintenance/expire-payment-failures")

        assert response.json() == {"processed": 1}
