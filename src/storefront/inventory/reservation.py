"""Stock reservation: commands and handler.

Each command loads one ProductStock, applies one primitive and saves; a
save racing another writer fails with Protean's ``ExpectedVersionError``
and the whole command is retried by the reservation manager. The ``*_in_unit`` helpers do the same work
inside a unit of work that is already open, so that order placement and
cancellation can confirm or restock reservations atomically with their own
writes. They are the only code paths that mutate ProductStock.
"""

from datetime import timedelta

from protean import handle
from protean.exceptions import ObjectNotFoundError
from protean.fields import Identifier, Integer, String
from protean.utils.globals import current_domain

from storefront.domain import storefront
from storefront.errors import NotFoundError
from storefront.inventory.stock import ProductStock


def load_stock(product_id) -> ProductStock:
    try:
        return current_domain.repository_for(ProductStock).get(str(product_id))
    except ObjectNotFoundError:
        raise NotFoundError(f"No stock record for product {product_id}", product_id=str(product_id))


def confirm_in_unit(product_id, reservation_id) -> bool:
    stock = load_stock(product_id)
    changed = stock.confirm(reservation_id)
    if changed:
        current_domain.repository_for(ProductStock).add(stock)
    return changed


def restock_in_unit(product_id, reservation_id, reason) -> bool:
    stock = load_stock(product_id)
    changed = stock.restock(reservation_id, reason=reason)
    if changed:
        current_domain.repository_for(ProductStock).add(stock)
    return changed


@storefront.command(part_of="ProductStock")
class ReceiveStock:
    """Add physical units, creating the stock record on first receipt."""

    product_id = Identifier(required=True)
    quantity = Integer(required=True, min_value=1)


@storefront.command(part_of="ProductStock")
class ReserveStock:
    product_id = Identifier(required=True)
    order_id = Identifier(required=True)
    quantity = Integer(required=True)
    ttl_seconds = Integer()  # Defaults to 15 minutes


@storefront.command(part_of="ProductStock")
class ConfirmReservation:
    product_id = Identifier(required=True)
    reservation_id = Identifier(required=True)


@storefront.command(part_of="ProductStock")
class ReleaseReservation:
    product_id = Identifier(required=True)
    reservation_id = Identifier(required=True)
    reason = String(max_length=100, default="released")


@storefront.command(part_of="ProductStock")
class RestockReservation:
    """Compensation: release a reservation and return confirmed units to stock."""

    product_id = Identifier(required=True)
    reservation_id = Identifier(required=True)
    reason = String(max_length=100, default="restocked")


@storefront.command_handler(part_of=ProductStock)
class ReservationHandler:
    @handle(ReceiveStock)
    def receive_stock(self, command):
        repo = current_domain.repository_for(ProductStock)
        try:
            stock = repo.get(command.product_id)
        except ObjectNotFoundError:
            stock = ProductStock.create(product_id=command.product_id)
        stock.receive(command.quantity)
        repo.add(stock)
        return stock.available_quantity

    @handle(ReserveStock)
    def reserve_stock(self, command):
        stock = load_stock(command.product_id)

        ttl = timedelta(seconds=command.ttl_seconds) if command.ttl_seconds else None
        reservation = stock.reserve(
            order_id=command.order_id,
            quantity=command.quantity,
            ttl=ttl,
        )
        current_domain.repository_for(ProductStock).add(stock)
        return {
            "reservation_id": str(reservation.id),
            "product_id": str(stock.product_id),
            "quantity": reservation.quantity,
            "expires_at": reservation.expires_at,
        }

    @handle(ConfirmReservation)
    def confirm_reservation(self, command):
        stock = load_stock(command.product_id)
        changed = stock.confirm(command.reservation_id)
        if changed:
            current_domain.repository_for(ProductStock).add(stock)
        return changed

    @handle(ReleaseReservation)
    def release_reservation(self, command):
        stock = load_stock(command.product_id)
        changed = stock.release(command.reservation_id, reason=command.reason or "released")
        if changed:
            current_domain.repository_for(ProductStock).add(stock)
        return changed

    @handle(RestockReservation)
    def restock_reservation(self, command):
        stock = load_stock(command.product_id)
        changed = stock.restock(command.reservation_id, reason=command.reason or "restocked")
        if changed:
            current_domain.repository_for(ProductStock).add(stock)
        return changed
