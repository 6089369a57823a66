"""Inventory Reservation Manager: the only way other packages touch stock.

Every operation holds the product's key in the process-wide ``KeyedLock``
for its read-check-write, so two checkouts in this process can never both
see the same pre-reservation availability. Across processes the aggregate
version does the same job: a save made from a stale copy fails with
Protean's ``ExpectedVersionError`` and the command is run again on a fresh
read, a bounded number of times.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog
from protean.exceptions import ExpectedVersionError
from protean.utils.globals import current_domain
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt

from storefront.errors import ConcurrencyConflictError, DomainValidationError
from storefront.inventory.reservation import (
    ConfirmReservation,
    ReceiveStock,
    ReleaseReservation,
    ReserveStock,
    RestockReservation,
    load_stock,
)
from storefront.inventory.stock import ProductStock
from storefront.settings import get_settings
from storefront.utils.clock import utcnow
from storefront.utils.locking import locks, product_key

logger = structlog.get_logger(__name__)

MAX_CONFLICT_RETRIES = 3


@dataclass(frozen=True)
class ReservationHandle:
    reservation_id: str
    product_id: str
    quantity: int
    expires_at: datetime


@dataclass(frozen=True)
class StockLevel:
    product_id: str
    on_hand: int  # physical units, reservations not deducted
    reserved: int  # held by active, unexpired reservations
    available: int  # on_hand - reserved


def _log_conflict(retry_state) -> None:
    logger.warning(
        "Stock version conflict, retrying",
        product_id=retry_state.kwargs.get("product_id"),
        attempt=retry_state.attempt_number,
    )


def _process_locked(command, product_id):
    with locks.hold(product_key(product_id)):
        return current_domain.process(command, asynchronous=False)


def _dispatch(product_id, command):
    """Run a stock command under the product lock, retrying version conflicts."""
    retrying = Retrying(
        retry=retry_if_exception_type(ExpectedVersionError),
        stop=stop_after_attempt(MAX_CONFLICT_RETRIES),
        before_sleep=_log_conflict,
        reraise=True,
    )
    try:
        return retrying(_process_locked, command, product_id=str(product_id))
    except ExpectedVersionError as exc:
        raise ConcurrencyConflictError(
            f"Stock for product {product_id} kept changing concurrently",
            product_id=str(product_id),
            attempts=MAX_CONFLICT_RETRIES,
        ) from exc


def receive(product_id, quantity) -> int:
    """Add physical stock. Returns the new available quantity."""
    return _dispatch(product_id, ReceiveStock(product_id=str(product_id), quantity=quantity))


def reserve(product_id, quantity, order_id, ttl=None) -> ReservationHandle:
    """Hold ``quantity`` units for ``order_id``; raises InsufficientStockError."""
    ttl = ttl or timedelta(minutes=get_settings().reservation_ttl_minutes)
    ttl_seconds = int(ttl.total_seconds())

    result = _dispatch(
        product_id,
        ReserveStock(
            product_id=str(product_id),
            order_id=str(order_id),
            quantity=quantity,
            ttl_seconds=ttl_seconds,
        ),
    )
    logger.info(
        "Stock reserved",
        product_id=str(product_id),
        order_id=str(order_id),
        quantity=quantity,
        reservation_id=result["reservation_id"],
    )
    return ReservationHandle(
        reservation_id=result["reservation_id"],
        product_id=result["product_id"],
        quantity=result["quantity"],
        expires_at=result["expires_at"],
    )


def confirm(product_id, reservation_id) -> bool:
    """Deduct the reservation from stock. Idempotent: returns False if already confirmed."""
    return _dispatch(
        product_id,
        ConfirmReservation(product_id=str(product_id), reservation_id=str(reservation_id)),
    )


def release(product_id, reservation_id, reason="released") -> bool:
    """Drop an unconfirmed hold. Idempotent."""
    return _dispatch(
        product_id,
        ReleaseReservation(product_id=str(product_id), reservation_id=str(reservation_id), reason=reason),
    )


def restock(product_id, reservation_id, reason="restocked") -> bool:
    """Undo a reservation, returning units to stock if it was confirmed. Idempotent."""
    return _dispatch(
        product_id,
        RestockReservation(product_id=str(product_id), reservation_id=str(reservation_id), reason=reason),
    )


def available_quantity(product_id, as_of=None) -> int:
    """Units that can still be reserved right now."""
    return load_stock(product_id).reservable_quantity(as_of or utcnow())


def physical_quantity(product_id) -> int:
    return load_stock(product_id).available_quantity


def _level(stock: ProductStock, now) -> StockLevel:
    reserved = stock.reserved_quantity(now)
    return StockLevel(
        product_id=str(stock.product_id),
        on_hand=stock.available_quantity,
        reserved=reserved,
        available=stock.available_quantity - reserved,
    )


def stock_level(product_id, as_of=None) -> StockLevel:
    """On-hand, reserved and available units for one product."""
    return _level(load_stock(product_id), as_of or utcnow())


def low_stock(threshold=10, as_of=None) -> list[StockLevel]:
    """Products with ``threshold`` or fewer available units, scarcest first."""
    if threshold < 0:
        raise DomainValidationError("Low-stock threshold cannot be negative", threshold=threshold)
    now = as_of or utcnow()
    levels = [_level(stock, now) for stock in current_domain.repository_for(ProductStock).all_stock()]
    return sorted(
        (level for level in levels if level.available <= threshold),
        key=lambda level: (level.available, level.product_id),
    )
