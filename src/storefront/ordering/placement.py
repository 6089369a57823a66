"""Order placement: turns a user's cart into a pending order.

    1. Replay: an idempotency key already used by this user returns that order.
    2. Load the cart; an empty cart is rejected.
    3. Re-read every product (not the cart snapshot): active, in stock.
    4. Price the lines and the order.
    5. Reserve every line. If one fails, release the ones already taken.
    6. FinalizeOrder, one unit of work: create the order, confirm the
       reservations, clear the cart. If it fails, restock what was taken.
    7. After commit, enqueue the confirmation notification.

The user's key and every product key are held from step 1 to step 6, which
closes the gap between checking availability and reserving it.
"""

import json
from uuid import uuid4

import structlog
from protean import handle
from protean.exceptions import ObjectNotFoundError
from protean.fields import Identifier, String, Text
from protean.utils.globals import current_domain

from storefront.cart.cart import Cart
from storefront.catalogue.product import Product
from storefront.domain import storefront
from storefront.errors import EmptyCartError, InsufficientStockError, NotFoundError, ProductUnavailableError
from storefront.inventory import manager as inventory
from storefront.inventory.reservation import confirm_in_unit
from storefront.notifications import ORDER_CONFIRMATION, notify
from storefront.ordering.numbering import generate_order_number
from storefront.ordering.order import Order
from storefront.ordering.pricing import compute_pricing, price_line
from storefront.utils.locking import locks, product_keys, user_key

logger = structlog.get_logger(__name__)


@storefront.command(part_of="Order")
class FinalizeOrder:
    """Persist a priced order and commit its reservations in one unit of work."""

    order_id = Identifier(required=True)
    order_number = String(required=True, max_length=40)
    user_id = Identifier(required=True)
    lines = Text(required=True)  # JSON: priced lines with reservation_id
    pricing = Text(required=True)  # JSON: pricing dict
    shipping_address = Text(required=True)  # JSON: address dict
    billing_address = Text()  # JSON: address dict
    payment_method = String(max_length=50)
    idempotency_key = String(max_length=255)


@storefront.command_handler(part_of=Order)
class OrderPlacementHandler:
    @handle(FinalizeOrder)
    def finalize_order(self, command):
        lines = json.loads(command.lines)
        order = Order.create(
            order_id=command.order_id,
            user_id=command.user_id,
            order_number=command.order_number,
            lines=lines,
            pricing=json.loads(command.pricing),
            shipping_address=json.loads(command.shipping_address),
            billing_address=json.loads(command.billing_address) if command.billing_address else None,
            payment_method=command.payment_method,
            idempotency_key=command.idempotency_key,
        )
        current_domain.repository_for(Order).add(order)

        for line in lines:
            confirm_in_unit(line["product_id"], line["reservation_id"])

        cart_repo = current_domain.repository_for(Cart)
        cart = cart_repo.find_for_user(command.user_id)
        if cart is not None:
            cart.clear()
            cart_repo.add(cart)

        return str(order.id)


def _priced_lines(cart) -> list[dict]:
    """Re-read each product and snapshot its price, rejecting unavailable ones."""
    product_repo = current_domain.repository_for(Product)
    lines = []
    for item in cart.items:
        try:
            product = product_repo.get(str(item.product_id))
        except ObjectNotFoundError:
            raise ProductUnavailableError(item.product_id, "Product no longer exists")
        if not product.is_active:
            raise ProductUnavailableError(item.product_id, "Product is not active")

        try:
            available = inventory.available_quantity(item.product_id)
        except NotFoundError:
            available = 0
        if available < item.quantity:
            raise InsufficientStockError(item.product_id, max(available, 0), item.quantity)

        lines.append(
            price_line(
                product_id=item.product_id,
                name=product.name,
                quantity=item.quantity,
                price=product.price,
                unit_discount=product.unit_discount,
            )
        )
    return lines


def _undo_reservations(lines, reason) -> None:
    """Compensate: release or restock every reservation taken for this attempt."""
    for line in lines:
        reservation_id = line.get("reservation_id")
        if not reservation_id:
            continue
        try:
            inventory.restock(line["product_id"], reservation_id, reason=reason)
        except Exception as exc:  # noqa: BLE001 - keep compensating the remaining lines
            logger.error(
                "Failed to compensate reservation",
                product_id=line["product_id"],
                reservation_id=reservation_id,
                error=str(exc),
            )


def _reserve_all(order_id, lines) -> None:
    """Reserve stock for every line, recording reservation ids on the lines."""
    try:
        for line in lines:
            reservation = inventory.reserve(line["product_id"], line["quantity"], order_id)
            line["reservation_id"] = reservation.reservation_id
    except Exception:
        _undo_reservations(lines, reason="checkout_aborted")
        raise


def place_order(
    user_id,
    shipping_address: dict,
    billing_address: dict | None = None,
    payment_method: str | None = None,
    idempotency_key: str | None = None,
) -> Order:
    order_repo = current_domain.repository_for(Order)

    with locks.hold(user_key(user_id)):
        if idempotency_key:
            existing = order_repo.find_by_idempotency_key(user_id, idempotency_key)
            if existing is not None:
                logger.info(
                    "Replaying order for idempotency key",
                    order_id=str(existing.id),
                    idempotency_key=idempotency_key,
                )
                return existing

        cart = current_domain.repository_for(Cart).find_for_user(user_id)
        if cart is None or cart.is_empty:
            raise EmptyCartError(user_id)

        with locks.hold(*product_keys(item.product_id for item in cart.items)):
            lines = _priced_lines(cart)
            pricing = compute_pricing(lines, discount=cart.discount or 0.0)

            order_id = str(uuid4())
            _reserve_all(order_id, lines)

            try:
                order_number = generate_order_number()
                current_domain.process(
                    FinalizeOrder(
                        order_id=order_id,
                        order_number=order_number,
                        user_id=str(user_id),
                        lines=json.dumps(lines),
                        pricing=json.dumps(pricing),
                        shipping_address=json.dumps(shipping_address),
                        billing_address=json.dumps(billing_address) if billing_address else None,
                        payment_method=payment_method,
                        idempotency_key=idempotency_key,
                    ),
                    asynchronous=False,
                )
            except Exception as exc:
                logger.error("Order persistence failed, compensating", order_id=order_id, error=str(exc))
                _undo_reservations(lines, reason="order_persist_failed")
                raise

    order = order_repo.get(order_id)
    logger.info(
        "Order placed",
        order_id=order_id,
        order_number=order.order_number,
        user_id=str(user_id),
        total=order.total,
    )

    notify(
        ORDER_CONFIRMATION,
        user_id,
        {
            "order_id": order_id,
            "order_number": order.order_number,
            "total": order.total,
            "currency": order.currency,
        },
    )
    return order
