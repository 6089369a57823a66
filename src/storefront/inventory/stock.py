"""ProductStock aggregate: per-product physical stock and its reservations.

``available_quantity`` is physical stock. Reservations are holds tracked
beside it and are not pre-deducted: only confirming a reservation takes
units out of ``available_quantity``. What can still be reserved is

    available_quantity - sum(quantity of active, unexpired reservations)

and that figure never goes negative.

Reservation lifecycle:
    ACTIVE → CONFIRMED   (order committed; stock deducted once)
    ACTIVE → RELEASED    (checkout aborted; stock untouched)
    ACTIVE → EXPIRED     (TTL passed; bookkeeping sweep)
    CONFIRMED → RELEASED (compensation; stock returned)

Reservations are never deleted. Protean bumps the aggregate's ``_version`` on
every save and rejects a save made from a stale copy with
``ExpectedVersionError``.
"""

from datetime import timedelta
from enum import Enum
from uuid import uuid4

from protean import invariant
from protean.exceptions import ValidationError
from protean.fields import DateTime, HasMany, Identifier, Integer, String

from storefront.domain import storefront
from storefront.errors import (
    InsufficientStockError,
    ReservationAlreadyTerminalError,
    ReservationExpiredError,
    ReservationNotFoundError,
)
from storefront.inventory.events import (
    ReservationConfirmed,
    ReservationExpired,
    ReservationReleased,
    StockReceived,
    StockReserved,
)
from storefront.utils.clock import as_utc, utcnow

DEFAULT_RESERVATION_TTL = timedelta(minutes=15)


class ReservationStatus(Enum):
    ACTIVE = "active"
    CONFIRMED = "confirmed"
    RELEASED = "released"
    EXPIRED = "expired"


@storefront.entity(part_of="ProductStock")
class Reservation:
    product_id = Identifier(required=True)
    order_id = Identifier(required=True)
    quantity = Integer(required=True, min_value=1)
    status = String(
        max_length=20,
        choices=ReservationStatus,
        default=ReservationStatus.ACTIVE.value,
    )
    reserved_at = DateTime(required=True)
    expires_at = DateTime(required=True)
    confirmed_at = DateTime()
    released_at = DateTime()
    release_reason = String(max_length=100)

    def is_held(self, now) -> bool:
        """Active and not yet past its expiry."""
        return self.status == ReservationStatus.ACTIVE.value and as_utc(now) <= as_utc(self.expires_at)


@storefront.aggregate
class ProductStock:
    product_id = Identifier(identifier=True)
    available_quantity = Integer(default=0, min_value=0)
    reservations = HasMany(Reservation)
    updated_at = DateTime()

    @invariant.post
    def held_quantity_cannot_exceed_stock(self):
        if self.available_quantity is not None and self.reserved_quantity() > self.available_quantity:
            raise ValidationError({"available_quantity": ["Reservations exceed physical stock"]})

    @classmethod
    def create(cls, product_id, quantity=0):
        return cls(product_id=str(product_id), available_quantity=quantity, updated_at=utcnow())

    # -------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------
    def reserved_quantity(self, now=None) -> int:
        now = now or utcnow()
        return sum(r.quantity for r in (self.reservations or []) if r.is_held(now))

    def reservable_quantity(self, now=None) -> int:
        return self.available_quantity - self.reserved_quantity(now)

    def find_reservation(self, reservation_id) -> Reservation:
        reservation = next(
            (r for r in (self.reservations or []) if str(r.id) == str(reservation_id)),
            None,
        )
        if reservation is None:
            raise ReservationNotFoundError(reservation_id)
        return reservation

    def reservations_for_order(self, order_id) -> list[Reservation]:
        return [r for r in (self.reservations or []) if str(r.order_id) == str(order_id)]

    # -------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------
    def receive(self, quantity, now=None):
        """Add physical stock."""
        if quantity < 1:
            raise ValidationError({"quantity": ["Received quantity must be positive"]})
        now = now or utcnow()
        self.available_quantity += quantity
        self.updated_at = now
        self.raise_(
            StockReceived(
                product_id=str(self.product_id),
                quantity=quantity,
                available_quantity=self.available_quantity,
                received_at=now,
            )
        )

    def reserve(self, order_id, quantity, ttl=None, now=None) -> Reservation:
        """Place a hold, failing if active unexpired holds leave too little stock."""
        if quantity is None or quantity < 1:
            raise ValidationError({"quantity": ["Reserved quantity must be positive"]})

        now = now or utcnow()
        reservable = self.reservable_quantity(now)
        if reservable < quantity:
            raise InsufficientStockError(self.product_id, max(reservable, 0), quantity)

        expires_at = now + (ttl or DEFAULT_RESERVATION_TTL)
        reservation = Reservation(
            id=str(uuid4()),
            product_id=str(self.product_id),
            order_id=str(order_id),
            quantity=quantity,
            status=ReservationStatus.ACTIVE.value,
            reserved_at=now,
            expires_at=expires_at,
        )
        self.add_reservations(reservation)
        self.updated_at = now

        self.raise_(
            StockReserved(
                product_id=str(self.product_id),
                reservation_id=str(reservation.id),
                order_id=str(order_id),
                quantity=quantity,
                expires_at=expires_at,
                reserved_at=now,
            )
        )
        return reservation

    def confirm(self, reservation_id, now=None) -> bool:
        """Deduct a reservation from physical stock.

        Returns False, without side effects, when the reservation is
        already confirmed.
        """
        now = now or utcnow()
        reservation = self.find_reservation(reservation_id)
        status = ReservationStatus(reservation.status)

        if status == ReservationStatus.CONFIRMED:
            return False
        if status in (ReservationStatus.RELEASED, ReservationStatus.EXPIRED):
            raise ReservationAlreadyTerminalError(reservation_id, status.value)
        if as_utc(now) > as_utc(reservation.expires_at):
            raise ReservationExpiredError(reservation_id)

        reservation.status = ReservationStatus.CONFIRMED.value
        reservation.confirmed_at = now
        self.available_quantity -= reservation.quantity
        self.updated_at = now

        self.raise_(
            ReservationConfirmed(
                product_id=str(self.product_id),
                reservation_id=str(reservation.id),
                order_id=str(reservation.order_id),
                quantity=reservation.quantity,
                available_quantity=self.available_quantity,
                confirmed_at=now,
            )
        )
        return True

    def release(self, reservation_id, reason="released", now=None) -> bool:
        """Drop an unconfirmed hold. Physical stock is untouched.

        Already released or expired reservations are left as they are.
        Confirmed reservations must go through ``restock``.
        """
        now = now or utcnow()
        reservation = self.find_reservation(reservation_id)
        status = ReservationStatus(reservation.status)

        if status in (ReservationStatus.RELEASED, ReservationStatus.EXPIRED):
            return False
        if status == ReservationStatus.CONFIRMED:
            raise ReservationAlreadyTerminalError(reservation_id, status.value)

        self._mark_released(reservation, reason, now, restocked=0)
        return True

    def restock(self, reservation_id, reason="restocked", now=None) -> bool:
        """Undo a reservation whatever its stage.

        A confirmed reservation returns its units to physical stock; an
        active one is simply released. Returns False when there was
        nothing left to undo.
        """
        now = now or utcnow()
        reservation = self.find_reservation(reservation_id)
        status = ReservationStatus(reservation.status)

        if status in (ReservationStatus.RELEASED, ReservationStatus.EXPIRED):
            return False

        restocked = 0
        if status == ReservationStatus.CONFIRMED:
            restocked = reservation.quantity
        self._mark_released(reservation, reason, now, restocked=restocked)
        if restocked:
            self.available_quantity += restocked
        return True

    def _mark_released(self, reservation, reason, now, restocked) -> None:
        reservation.status = ReservationStatus.RELEASED.value
        reservation.released_at = now
        reservation.release_reason = reason
        self.updated_at = now

        self.raise_(
            ReservationReleased(
                product_id=str(self.product_id),
                reservation_id=str(reservation.id),
                order_id=str(reservation.order_id),
                quantity=reservation.quantity,
                restocked=restocked,
                reason=reason,
                released_at=now,
            )
        )

    def expire_stale(self, as_of=None) -> list[str]:
        """Flip active reservations past their expiry to EXPIRED."""
        as_of = as_of or utcnow()
        expired = []
        for reservation in self.reservations or []:
            if reservation.status != ReservationStatus.ACTIVE.value:
                continue
            if as_utc(reservation.expires_at) >= as_utc(as_of):
                continue

            reservation.status = ReservationStatus.EXPIRED.value
            reservation.released_at = as_of
            reservation.release_reason = "expired"
            expired.append(str(reservation.id))
            self.raise_(
                ReservationExpired(
                    product_id=str(self.product_id),
                    reservation_id=str(reservation.id),
                    order_id=str(reservation.order_id),
                    quantity=reservation.quantity,
                    expired_at=as_of,
                )
            )

        if expired:
            self.updated_at = as_of
        return expired


@storefront.repository(part_of=ProductStock)
class ProductStockRepository:
    def all_stock(self) -> list[ProductStock]:
        return self._dao.query.limit(None).all().items

    def with_active_reservations(self) -> list[ProductStock]:
        return [
            stock
            for stock in self._dao.query.limit(None).all().items
            if any(r.status == ReservationStatus.ACTIVE.value for r in (stock.reservations or []))
        ]
