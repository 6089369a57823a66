"""Domain tests for the ProductStock aggregate and its reservations."""

from datetime import UTC, datetime, timedelta

import pytest
from protean.exceptions import ValidationError
from storefront.errors import (
    InsufficientStockError,
    ReservationAlreadyTerminalError,
    ReservationExpiredError,
    ReservationNotFoundError,
)
from storefront.inventory.events import ReservationConfirmed, ReservationReleased, StockReserved
from storefront.inventory.stock import ProductStock, ReservationStatus

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _stock(quantity=10):
    return ProductStock.create("prod-001", quantity)


class TestReserve:
    def test_reserve_holds_units_without_deducting(self):
        stock = _stock(10)
        reservation = stock.reserve("order-1", 3, now=NOW)

        assert reservation.status == ReservationStatus.ACTIVE.value
        assert stock.available_quantity == 10
        assert stock.reserved_quantity(NOW) == 3
        assert stock.reservable_quantity(NOW) == 7

    def test_reserve_sets_expiry_from_ttl(self):
        stock = _stock(10)
        reservation = stock.reserve("order-1", 1, ttl=timedelta(minutes=5), now=NOW)
        assert reservation.expires_at == NOW + timedelta(minutes=5)

    def test_reserve_more_than_reservable_fails(self):
        stock = _stock(5)
        stock.reserve("order-1", 4, now=NOW)

        with pytest.raises(InsufficientStockError) as exc:
            stock.reserve("order-2", 2, now=NOW)
        assert exc.value.available == 1
        assert exc.value.requested == 2

    def test_reserve_exactly_remaining_stock(self):
        stock = _stock(5)
        stock.reserve("order-1", 5, now=NOW)
        assert stock.reservable_quantity(NOW) == 0

    @pytest.mark.parametrize("quantity", [0, -1])
    def test_non_positive_quantity_rejected(self, quantity):
        with pytest.raises(ValidationError):
            _stock(5).reserve("order-1", quantity, now=NOW)

    def test_expired_hold_no_longer_counts(self):
        stock = _stock(5)
        stock.reserve("order-1", 5, ttl=timedelta(minutes=1), now=NOW)

        later = NOW + timedelta(minutes=2)
        assert stock.reservable_quantity(later) == 5
        stock.reserve("order-2", 5, now=later)

    def test_reserve_raises_event(self):
        stock = _stock(5)
        stock.reserve("order-1", 2, now=NOW)

        assert isinstance(stock._events[-1], StockReserved)


class TestConfirm:
    def test_confirm_deducts_once(self):
        stock = _stock(10)
        reservation = stock.reserve("order-1", 3, now=NOW)

        assert stock.confirm(reservation.id, now=NOW) is True
        assert stock.available_quantity == 7
        assert stock.reserved_quantity(NOW) == 0
        assert isinstance(stock._events[-1], ReservationConfirmed)

    def test_confirm_is_idempotent(self):
        stock = _stock(10)
        reservation = stock.reserve("order-1", 3, now=NOW)
        stock.confirm(reservation.id, now=NOW)

        assert stock.confirm(reservation.id, now=NOW) is False
        assert stock.available_quantity == 7

    def test_confirm_after_expiry_fails(self):
        stock = _stock(10)
        reservation = stock.reserve("order-1", 3, ttl=timedelta(minutes=1), now=NOW)

        with pytest.raises(ReservationExpiredError):
            stock.confirm(reservation.id, now=NOW + timedelta(minutes=5))
        assert stock.available_quantity == 10

    def test_confirm_released_reservation_fails(self):
        stock = _stock(10)
        reservation = stock.reserve("order-1", 3, now=NOW)
        stock.release(reservation.id, now=NOW)

        with pytest.raises(ReservationAlreadyTerminalError):
            stock.confirm(reservation.id, now=NOW)

    def test_unknown_reservation(self):
        with pytest.raises(ReservationNotFoundError):
            _stock(10).confirm("missing", now=NOW)


class TestReleaseAndRestock:
    def test_release_frees_hold_without_touching_stock(self):
        stock = _stock(10)
        reservation = stock.reserve("order-1", 4, now=NOW)

        assert stock.release(reservation.id, reason="checkout_aborted", now=NOW) is True
        assert stock.available_quantity == 10
        assert stock.reservable_quantity(NOW) == 10
        assert reservation.release_reason == "checkout_aborted"
        assert isinstance(stock._events[-1], ReservationReleased)

    def test_release_twice_is_noop(self):
        stock = _stock(10)
        reservation = stock.reserve("order-1", 4, now=NOW)
        stock.release(reservation.id, now=NOW)
        events = len(stock._events)

        assert stock.release(reservation.id, now=NOW) is False
        assert len(stock._events) == events

    def test_release_of_confirmed_reservation_is_rejected(self):
        stock = _stock(10)
        reservation = stock.reserve("order-1", 4, now=NOW)
        stock.confirm(reservation.id, now=NOW)

        with pytest.raises(ReservationAlreadyTerminalError):
            stock.release(reservation.id, now=NOW)

    def test_restock_confirmed_returns_units(self):
        stock = _stock(10)
        reservation = stock.reserve("order-1", 3, now=NOW)
        stock.confirm(reservation.id, now=NOW)

        assert stock.restock(reservation.id, reason="order_cancelled", now=NOW) is True
        assert stock.available_quantity == 10
        assert reservation.status == ReservationStatus.RELEASED.value

    def test_restock_is_idempotent(self):
        stock = _stock(10)
        reservation = stock.reserve("order-1", 3, now=NOW)
        stock.confirm(reservation.id, now=NOW)
        stock.restock(reservation.id, now=NOW)

        assert stock.restock(reservation.id, now=NOW) is False
        assert stock.available_quantity == 10

    def test_restock_active_reservation_only_releases(self):
        stock = _stock(10)
        reservation = stock.reserve("order-1", 3, now=NOW)

        assert stock.restock(reservation.id, now=NOW) is True
        assert stock.available_quantity == 10
        assert stock.reservable_quantity(NOW) == 10


class TestExpireStale:
    def test_only_past_due_active_reservations_expire(self):
        stock = _stock(10)
        stale = stock.reserve("order-1", 2, ttl=timedelta(minutes=1), now=NOW)
        fresh = stock.reserve("order-2", 2, ttl=timedelta(hours=1), now=NOW)
        confirmed = stock.reserve("order-3", 2, ttl=timedelta(minutes=1), now=NOW)
        stock.confirm(confirmed.id, now=NOW)

        expired = stock.expire_stale(NOW + timedelta(minutes=10))

        assert expired == [str(stale.id)]
        assert stale.status == ReservationStatus.EXPIRED.value
        assert fresh.status == ReservationStatus.ACTIVE.value
        assert confirmed.status == ReservationStatus.CONFIRMED.value

    def test_nothing_to_expire_changes_nothing(self):
        stock = _stock(10)
        stock.reserve("order-1", 2, ttl=timedelta(hours=1), now=NOW)
        events = len(stock._events)

        assert stock.expire_stale(NOW) == []
        assert len(stock._events) == events


class TestReceive:
    def test_receive_adds_physical_stock(self):
        stock = _stock(0)
        stock.receive(5)
        assert stock.available_quantity == 5

    def test_receive_rejects_non_positive(self):
        with pytest.raises(ValidationError):
            _stock(0).receive(0)
