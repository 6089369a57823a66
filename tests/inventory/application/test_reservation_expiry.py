"""Application tests for the stale reservation sweep."""

from datetime import timedelta

from storefront.inventory import manager as inventory
from storefront.inventory.expiry import expire_stale_reservations
from storefront.inventory.reservation import load_stock
from storefront.inventory.stock import ReservationStatus
from storefront.utils.clock import utcnow


class TestExpireStaleReservations:
    def test_sweep_expires_only_past_due_holds(self, stocked):
        product_id = stocked(quantity=10)
        stale = inventory.reserve(product_id, 2, "order-1", ttl=timedelta(minutes=1))
        fresh = inventory.reserve(product_id, 3, "order-2", ttl=timedelta(hours=1))

        count = expire_stale_reservations(as_of=utcnow() + timedelta(minutes=5))

        assert count == 1
        stock = load_stock(product_id)
        assert stock.find_reservation(stale.reservation_id).status == ReservationStatus.EXPIRED.value
        assert stock.find_reservation(fresh.reservation_id).status == ReservationStatus.ACTIVE.value
        assert stock.available_quantity == 10

    def test_sweep_covers_every_product(self, stocked):
        first = stocked("prod-a", 5)
        second = stocked("prod-b", 5)
        inventory.reserve(first, 1, "order-1", ttl=timedelta(minutes=1))
        inventory.reserve(second, 1, "order-2", ttl=timedelta(minutes=1))

        assert expire_stale_reservations(as_of=utcnow() + timedelta(minutes=5)) == 2

    def test_sweep_is_idempotent(self, stocked):
        product_id = stocked(quantity=5)
        inventory.reserve(product_id, 1, "order-1", ttl=timedelta(minutes=1))
        as_of = utcnow() + timedelta(minutes=5)

        assert expire_stale_reservations(as_of=as_of) == 1
        assert expire_stale_reservations(as_of=as_of) == 0

    def test_nothing_to_sweep(self):
        assert expire_stale_reservations() == 0
