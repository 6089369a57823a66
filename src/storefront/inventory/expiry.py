"""Reservation expiry: periodic bookkeeping sweep.

Expired reservations already stop counting against availability the moment
their TTL passes; this sweep only flips them to EXPIRED so the audit trail
says what happened. Triggered by an external scheduler through the
maintenance API endpoint or ``manage.py sweep-reservations``.
"""

import structlog
from protean import handle
from protean.exceptions import InvalidOperationError, ValidationError
from protean.fields import DateTime, Identifier
from protean.utils.globals import current_domain

from storefront.domain import storefront
from storefront.inventory.reservation import load_stock
from storefront.inventory.stock import ProductStock
from storefront.utils.clock import utcnow
from storefront.utils.locking import locks, product_key

logger = structlog.get_logger(__name__)


@storefront.command(part_of="ProductStock")
class ExpireProductReservations:
    product_id = Identifier(required=True)
    as_of = DateTime()  # Optional: defaults to now


@storefront.command_handler(part_of=ProductStock)
class ExpireReservationsHandler:
    @handle(ExpireProductReservations)
    def expire_product_reservations(self, command):
        stock = load_stock(command.product_id)
        expired = stock.expire_stale(command.as_of or utcnow())
        if expired:
            current_domain.repository_for(ProductStock).add(stock)
        return expired


def expire_stale_reservations(as_of=None) -> int:
    """Sweep every product with active reservations. Returns the number expired."""
    as_of = as_of or utcnow()
    stocks = current_domain.repository_for(ProductStock).with_active_reservations()

    logger.info("Checking for stale reservations", as_of=as_of.isoformat(), candidates=len(stocks))

    expired_count = 0
    for stock in stocks:
        try:
            with locks.hold(product_key(stock.product_id)):
                expired = current_domain.process(
                    ExpireProductReservations(product_id=str(stock.product_id), as_of=as_of),
                    asynchronous=False,
                )
        except (ValidationError, InvalidOperationError) as exc:
            logger.warning(
                "Failed to expire reservations",
                product_id=str(stock.product_id),
                error=str(exc),
            )
            continue

        for reservation_id in expired or []:
            logger.info(
                "Expired stale reservation",
                product_id=str(stock.product_id),
                reservation_id=reservation_id,
            )
        expired_count += len(expired or [])

    logger.info("Stale reservation sweep complete", expired_count=expired_count)
    return expired_count
