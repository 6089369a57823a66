"""Order cancellation: command, handler and use case.

The order's status change and the restock of every reservation it holds
happen in one unit of work, under the order's key and the keys of every
product it touches. If the order's money was already collected, a
compensating refund is requested after commit; a refund failure is logged
and leaves the payment for reconciliation, it never undoes the cancellation.
"""

import structlog
from protean import handle
from protean.fields import Boolean, Identifier, String
from protean.utils.globals import current_domain

from storefront.domain import storefront
from storefront.errors import ConflictError, GatewayError
from storefront.inventory.reservation import restock_in_unit
from storefront.notifications import ORDER_CANCELLED, notify
from storefront.ordering.order import Actor, Order
from storefront.ordering.queries import get_order
from storefront.payments.payment import Payment, PaymentStatus
from storefront.payments.refund import refund
from storefront.utils.locking import locks, order_key, product_keys

logger = structlog.get_logger(__name__)

_REFUNDABLE = {PaymentStatus.COMPLETED.value, PaymentStatus.PARTIALLY_REFUNDED.value}


@storefront.command(part_of="Order")
class CancelOrder:
    order_id = Identifier(required=True)
    reason = String(max_length=500)
    cancelled_by = String(max_length=30, default=Actor.CUSTOMER.value)
    unpaid_only = Boolean(default=False)  # System cancellation of a payment_failed order


@storefront.command_handler(part_of=Order)
class CancelOrderHandler:
    @handle(CancelOrder)
    def cancel_order(self, command):
        repo = current_domain.repository_for(Order)
        order = repo.get(command.order_id)

        if command.unpaid_only:
            order.cancel_unpaid(command.reason)
        else:
            order.cancel(command.reason, cancelled_by=command.cancelled_by or Actor.CUSTOMER.value)
        repo.add(order)

        restocked = 0
        for product_id, reservation_id in order.reservation_refs:
            if restock_in_unit(product_id, reservation_id, reason="order_cancelled"):
                restocked += 1
        return restocked


def _cancel(order: Order, reason, actor, unpaid_only=False) -> Order:
    keys = [order_key(order.id), *product_keys(product_id for product_id, _ in order.reservation_refs)]
    with locks.hold(*keys):
        restocked = current_domain.process(
            CancelOrder(
                order_id=str(order.id),
                reason=reason,
                cancelled_by=actor,
                unpaid_only=unpaid_only,
            ),
            asynchronous=False,
        )

    order = get_order(order.id)
    log = logger.bind(order_id=str(order.id), order_number=order.order_number)
    log.info("Order cancelled", actor=actor, reason=reason, reservations_restocked=restocked)

    notify(
        ORDER_CANCELLED,
        order.user_id,
        {"order_id": str(order.id), "order_number": order.order_number, "reason": reason},
    )

    payment = current_domain.repository_for(Payment).settled_for_order(order.id)
    if payment is not None and payment.status in _REFUNDABLE:
        try:
            refund(str(payment.id), reason="order_cancelled")
        except (GatewayError, ConflictError) as exc:
            log.error("Compensating refund failed, left for reconciliation", payment_id=str(payment.id), error=str(exc))
    return order


def cancel_order(order_id, reason=None, actor=Actor.CUSTOMER.value, user_id=None) -> Order:
    """Cancel a pending, paid or processing order and give its stock back."""
    order = get_order(order_id, user_id=user_id)
    return _cancel(order, reason, actor)


def cancel_unpaid_order(order_id, reason=None) -> Order:
    """System cancellation of an order stuck in payment_failed."""
    order = get_order(order_id)
    return _cancel(order, reason, Actor.SYSTEM.value, unpaid_only=True)
