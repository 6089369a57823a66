"""Domain events for the ProductStock aggregate."""

from protean.fields import DateTime, Identifier, Integer, String

from storefront.domain import storefront


@storefront.event(part_of="ProductStock")
class StockReceived:
    """Physical stock was added for a product."""

    __version__ = 1

    product_id = Identifier(required=True)
    quantity = Integer(required=True)
    available_quantity = Integer(required=True)
    received_at = DateTime(required=True)


@storefront.event(part_of="ProductStock")
class StockReserved:
    """A time-bounded hold was placed against a product's stock."""

    __version__ = 1

    product_id = Identifier(required=True)
    reservation_id = Identifier(required=True)
    order_id = Identifier(required=True)
    quantity = Integer(required=True)
    expires_at = DateTime(required=True)
    reserved_at = DateTime(required=True)


@storefront.event(part_of="ProductStock")
class ReservationConfirmed:
    """A reservation became a permanent stock deduction."""

    __version__ = 1

    product_id = Identifier(required=True)
    reservation_id = Identifier(required=True)
    order_id = Identifier(required=True)
    quantity = Integer(required=True)
    available_quantity = Integer(required=True)
    confirmed_at = DateTime(required=True)


@storefront.event(part_of="ProductStock")
class ReservationReleased:
    """A reservation was released; ``restocked`` is true when it had been confirmed."""

    __version__ = 1

    product_id = Identifier(required=True)
    reservation_id = Identifier(required=True)
    order_id = Identifier(required=True)
    quantity = Integer(required=True)
    restocked = Integer(default=0)  # units returned to physical stock
    reason = String(max_length=100)
    released_at = DateTime(required=True)


@storefront.event(part_of="ProductStock")
class ReservationExpired:
    """An abandoned reservation passed its expiry and was swept."""

    __version__ = 1

    product_id = Identifier(required=True)
    reservation_id = Identifier(required=True)
    order_id = Identifier(required=True)
    quantity = Integer(required=True)
    expired_at = DateTime(required=True)
