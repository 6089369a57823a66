"""Fulfillment status updates: command and handler.

Payment-driven statuses (paid, payment_failed, refunded) belong to the
payment orchestrator and cancellation has its own use case because it must
restock; this path covers the fulfillment steps in between.
"""

from protean import handle
from protean.fields import Date, Identifier, String
from protean.utils.globals import current_domain

from storefront.domain import storefront
from storefront.errors import DomainValidationError
from storefront.notifications import ORDER_DELIVERED, ORDER_PROCESSING, ORDER_SHIPPED, notify
from storefront.ordering.order import Actor, Order, OrderStatus
from storefront.ordering.queries import get_order
from storefront.utils.locking import locks, order_key

_FULFILLMENT_STATUSES = {
    OrderStatus.PROCESSING,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
    OrderStatus.COMPLETED,
}

_NOTIFICATIONS = {
    OrderStatus.PROCESSING: ORDER_PROCESSING,
    OrderStatus.SHIPPED: ORDER_SHIPPED,
    OrderStatus.DELIVERED: ORDER_DELIVERED,
}


@storefront.command(part_of="Order")
class UpdateOrderStatus:
    order_id = Identifier(required=True)
    status = String(required=True, max_length=30)
    note = String(max_length=500)
    actor = String(max_length=30, default=Actor.ADMIN.value)
    carrier = String(max_length=100)
    tracking_number = String(max_length=255)
    estimated_delivery = Date()


@storefront.command_handler(part_of=Order)
class UpdateOrderStatusHandler:
    @handle(UpdateOrderStatus)
    def update_order_status(self, command):
        try:
            target = OrderStatus(command.status)
        except ValueError:
            raise DomainValidationError(f"Unknown order status {command.status}", status=command.status)

        repo = current_domain.repository_for(Order)
        order = repo.get(command.order_id)

        # Table check first, so illegal moves always report the transition.
        order._assert_can_transition(target)
        if target not in _FULFILLMENT_STATUSES:
            raise DomainValidationError(
                f"Status {target.value} is not set through status updates",
                status=target.value,
            )

        order.transition_to(
            target,
            actor=command.actor or Actor.ADMIN.value,
            note=command.note,
            carrier=command.carrier,
            tracking_number=command.tracking_number,
            estimated_delivery=command.estimated_delivery,
        )
        repo.add(order)


def update_status(
    order_id,
    status,
    note=None,
    actor=Actor.ADMIN.value,
    carrier=None,
    tracking_number=None,
    estimated_delivery=None,
) -> Order:
    get_order(order_id)

    with locks.hold(order_key(order_id)):
        current_domain.process(
            UpdateOrderStatus(
                order_id=str(order_id),
                status=status,
                note=note,
                actor=actor,
                carrier=carrier,
                tracking_number=tracking_number,
                estimated_delivery=estimated_delivery,
            ),
            asynchronous=False,
        )

    order = get_order(order_id)
    event_type = _NOTIFICATIONS.get(OrderStatus(order.status))
    if event_type:
        notify(
            event_type,
            order.user_id,
            {
                "order_id": str(order.id),
                "order_number": order.order_number,
                "status": order.status,
                "carrier": order.carrier,
                "tracking_number": order.tracking_number,
            },
        )
    return order
