"""Order aggregate: the durable result of a checkout.

An order is created once, by order placement, inside the same unit of work
that confirms its stock reservations and clears the cart. Afterwards it
changes only through the status state machine below, and every accepted
transition appends one entry to ``status_history``.

State Machine:
    PENDING → PAID / PAYMENT_FAILED / CANCELLED
    PAYMENT_FAILED → PENDING (payment retry) / CANCELLED
    PAID → PROCESSING / CANCELLED
    PROCESSING → SHIPPED / CANCELLED
    SHIPPED → DELIVERED / CANCELLED
    DELIVERED → COMPLETED / REFUNDED
    COMPLETED → REFUNDED
    CANCELLED, REFUNDED are terminal

Line items are price snapshots taken at checkout and are never recalculated
from live product data.
"""

from enum import Enum
from uuid import uuid4

from protean.fields import (
    Date,
    DateTime,
    Float,
    HasMany,
    Identifier,
    Integer,
    String,
    ValueObject,
)

from storefront.domain import storefront
from storefront.errors import InvalidStatusTransitionError
from storefront.ordering.events import OrderCancelled, OrderPlaced, OrderStatusChanged
from storefront.utils.clock import utcnow


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class OrderStatus(Enum):
    PENDING = "pending"
    PAYMENT_FAILED = "payment_failed"
    PAID = "paid"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class Actor(Enum):
    CUSTOMER = "customer"
    ADMIN = "admin"
    SYSTEM = "system"
    PAYMENT_GATEWAY = "payment_gateway"


# State machine transition map
_VALID_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.PAID, OrderStatus.PAYMENT_FAILED, OrderStatus.CANCELLED},
    OrderStatus.PAYMENT_FAILED: {OrderStatus.PENDING, OrderStatus.CANCELLED},
    OrderStatus.PAID: {OrderStatus.PROCESSING, OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.CANCELLED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED, OrderStatus.CANCELLED},
    OrderStatus.DELIVERED: {OrderStatus.COMPLETED, OrderStatus.REFUNDED},
    OrderStatus.COMPLETED: {OrderStatus.REFUNDED},
    OrderStatus.CANCELLED: set(),  # Terminal
    OrderStatus.REFUNDED: set(),  # Terminal
}

# States from which the cancel use case is allowed
_CANCELLABLE_STATES = {
    OrderStatus.PENDING,
    OrderStatus.PAID,
    OrderStatus.PROCESSING,
}


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in _VALID_TRANSITIONS.get(current, set())


# ---------------------------------------------------------------------------
# Value Objects
# ---------------------------------------------------------------------------
@storefront.value_object(part_of="Order")
class Address:
    """Shipping or billing address captured at checkout; later profile edits do not affect it."""

    street = String(required=True, max_length=255)
    city = String(required=True, max_length=100)
    state = String(max_length=100)
    postal_code = String(required=True, max_length=20)
    country = String(required=True, max_length=100)


@storefront.value_object(part_of="Order")
class OrderPricing:
    subtotal = Float(default=0.0)
    tax = Float(default=0.0)
    shipping = Float(default=0.0)
    discount = Float(default=0.0)
    total = Float(default=0.0)
    currency = String(max_length=3, default="USD")


@storefront.value_object(part_of="Order")
class PaymentSummary:
    """The order's view of its current payment; the Payment aggregate owns the details."""

    payment_id = Identifier()
    method = String(max_length=50)
    status = String(max_length=30)
    transaction_id = String(max_length=255)


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------
@storefront.entity(part_of="Order")
class OrderLineItem:
    product_id = Identifier(required=True)
    name = String(required=True, max_length=255)
    quantity = Integer(required=True, min_value=1)
    price = Float(required=True, min_value=0.0)  # unit list price
    discount = Float(default=0.0)  # line discount (unit discount x quantity)
    final_price = Float(required=True)  # (price - unit discount) x quantity
    subtotal = Float(required=True)  # price x quantity
    reservation_id = Identifier()


@storefront.entity(part_of="Order")
class StatusChange:
    sequence = Integer(required=True)
    status = String(required=True, max_length=30)
    timestamp = DateTime(required=True)
    note = String(max_length=500)
    actor = String(max_length=30)


# ---------------------------------------------------------------------------
# Aggregate Root
# ---------------------------------------------------------------------------
@storefront.aggregate
class Order:
    order_number = String(required=True, max_length=40, unique=True)
    user_id = Identifier(required=True)
    items = HasMany(OrderLineItem)
    pricing = ValueObject(OrderPricing)
    status = String(
        max_length=30,
        choices=OrderStatus,
        default=OrderStatus.PENDING.value,
    )
    payment = ValueObject(PaymentSummary)
    shipping_address = ValueObject(Address)
    billing_address = ValueObject(Address)
    status_history = HasMany(StatusChange)
    idempotency_key = String(max_length=255)
    carrier = String(max_length=100)
    tracking_number = String(max_length=255)
    estimated_delivery = Date()
    shipped_at = DateTime()
    delivered_at = DateTime()
    cancelled_at = DateTime()
    cancelled_by = String(max_length=30)
    cancellation_reason = String(max_length=500)
    created_at = DateTime()
    updated_at = DateTime()

    # -------------------------------------------------------------------
    # Factory method
    # -------------------------------------------------------------------
    @classmethod
    def create(
        cls,
        user_id,
        order_number,
        lines,
        pricing,
        shipping_address,
        billing_address=None,
        payment_method=None,
        idempotency_key=None,
        order_id=None,
    ):
        """Create a pending order from priced cart lines.

        Args:
            lines: dicts with product_id, name, quantity, price, discount,
                   final_price, subtotal, reservation_id.
            pricing: dict with subtotal, tax, shipping, discount, total, currency.
            shipping_address / billing_address: address dicts; billing
                   defaults to shipping.
        """
        now = utcnow()
        order = cls(
            id=order_id or str(uuid4()),
            order_number=order_number,
            user_id=str(user_id),
            status=OrderStatus.PENDING.value,
            pricing=OrderPricing(**pricing),
            payment=PaymentSummary(method=payment_method, status="pending"),
            shipping_address=Address(**shipping_address),
            billing_address=Address(**(billing_address or shipping_address)),
            idempotency_key=idempotency_key,
            created_at=now,
            updated_at=now,
        )
        for line in lines:
            order.add_items(OrderLineItem(**line))
        order._append_history(OrderStatus.PENDING, Actor.CUSTOMER.value, "Order placed", now)

        order.raise_(
            OrderPlaced(
                order_id=str(order.id),
                order_number=order_number,
                user_id=str(user_id),
                total=order.pricing.total,
                currency=order.pricing.currency,
                placed_at=now,
            )
        )
        return order

    # -------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------
    @property
    def history(self) -> list[StatusChange]:
        """Status history in the order it was appended."""
        return sorted(self.status_history or [], key=lambda change: change.sequence)

    @property
    def reservation_refs(self) -> list[tuple[str, str]]:
        """(product_id, reservation_id) for every line that holds stock."""
        return [(str(item.product_id), str(item.reservation_id)) for item in self.items if item.reservation_id]

    @property
    def total(self) -> float:
        return self.pricing.total if self.pricing else 0.0

    @property
    def currency(self) -> str:
        return self.pricing.currency if self.pricing else "USD"

    def is_owned_by(self, user_id) -> bool:
        return str(self.user_id) == str(user_id)

    # -------------------------------------------------------------------
    # State transition helpers
    # -------------------------------------------------------------------
    def _assert_can_transition(self, target_status: OrderStatus) -> None:
        current = OrderStatus(self.status)
        if not can_transition(current, target_status):
            raise InvalidStatusTransitionError(current.value, target_status.value)

    def _append_history(self, status: OrderStatus, actor, note, now) -> None:
        self.add_status_history(
            StatusChange(
                sequence=len(self.status_history or []) + 1,
                status=status.value,
                timestamp=now,
                note=note,
                actor=actor,
            )
        )

    def transition_to(
        self,
        target_status: OrderStatus,
        actor=Actor.SYSTEM.value,
        note=None,
        carrier=None,
        tracking_number=None,
        estimated_delivery=None,
    ) -> None:
        """Apply one state-machine transition, or raise without touching state."""
        self._assert_can_transition(target_status)

        now = utcnow()
        previous = self.status
        self.status = target_status.value
        self.updated_at = now

        if target_status == OrderStatus.SHIPPED:
            self.shipped_at = self.shipped_at or now
            self.carrier = carrier or self.carrier
            self.tracking_number = tracking_number or self.tracking_number
            self.estimated_delivery = estimated_delivery or self.estimated_delivery
        elif target_status == OrderStatus.DELIVERED:
            self.delivered_at = self.delivered_at or now

        self._append_history(target_status, actor, note, now)
        self.raise_(
            OrderStatusChanged(
                order_id=str(self.id),
                order_number=self.order_number,
                from_status=previous,
                to_status=target_status.value,
                actor=actor,
                note=note,
                changed_at=now,
            )
        )

    # -------------------------------------------------------------------
    # Payment-driven transitions
    # -------------------------------------------------------------------
    def record_payment(self, payment_id=None, method=None, status=None, transaction_id=None) -> None:
        current = self.payment
        self.payment = PaymentSummary(
            payment_id=payment_id or (current.payment_id if current else None),
            method=method or (current.method if current else None),
            status=status or (current.status if current else None),
            transaction_id=transaction_id or (current.transaction_id if current else None),
        )
        self.updated_at = utcnow()

    def mark_paid(self, payment_id, transaction_id=None) -> None:
        self.transition_to(OrderStatus.PAID, actor=Actor.PAYMENT_GATEWAY.value, note="Payment captured")
        self.record_payment(payment_id=payment_id, status="completed", transaction_id=transaction_id)

    def mark_payment_failed(self, payment_id, reason=None) -> None:
        self.transition_to(
            OrderStatus.PAYMENT_FAILED,
            actor=Actor.PAYMENT_GATEWAY.value,
            note=reason or "Payment failed",
        )
        self.record_payment(payment_id=payment_id, status="failed")

    def reopen_for_payment(self) -> None:
        """Move a payment_failed order back to pending for a new payment attempt."""
        self.transition_to(OrderStatus.PENDING, actor=Actor.CUSTOMER.value, note="Payment retry")

    def mark_refunded(self, payment_id) -> None:
        self.transition_to(OrderStatus.REFUNDED, actor=Actor.SYSTEM.value, note="Payment refunded")
        self.record_payment(payment_id=payment_id, status="refunded")

    # -------------------------------------------------------------------
    # Cancellation
    # -------------------------------------------------------------------
    def cancel(self, reason, cancelled_by=Actor.CUSTOMER.value) -> None:
        """Cancel from pending, paid or processing. Stock is restocked by the caller's unit of work."""
        current = OrderStatus(self.status)
        if current not in _CANCELLABLE_STATES:
            raise InvalidStatusTransitionError(current.value, OrderStatus.CANCELLED.value)

        self._apply_cancellation(current, reason, cancelled_by)

    def cancel_unpaid(self, reason) -> None:
        """System cancellation of an order whose payment failed and was never retried."""
        current = OrderStatus(self.status)
        if current != OrderStatus.PAYMENT_FAILED:
            raise InvalidStatusTransitionError(current.value, OrderStatus.CANCELLED.value)

        self._apply_cancellation(current, reason, Actor.SYSTEM.value)

    def _apply_cancellation(self, current: OrderStatus, reason, cancelled_by) -> None:
        self.transition_to(OrderStatus.CANCELLED, actor=cancelled_by, note=reason)
        self.cancelled_at = self.updated_at
        self.cancelled_by = cancelled_by
        self.cancellation_reason = reason

        self.raise_(
            OrderCancelled(
                order_id=str(self.id),
                order_number=self.order_number,
                user_id=str(self.user_id),
                previous_status=current.value,
                reason=reason,
                cancelled_by=cancelled_by,
                cancelled_at=self.cancelled_at,
            )
        )


@storefront.repository(part_of=Order)
class OrderRepository:
    def find_by_number(self, order_number) -> Order | None:
        orders = self._dao.query.filter(order_number=order_number).all().items
        return orders[0] if orders else None

    def find_by_idempotency_key(self, user_id, idempotency_key) -> Order | None:
        orders = self._dao.query.filter(user_id=str(user_id), idempotency_key=idempotency_key).all().items
        return orders[0] if orders else None

    def page_for_user(self, user_id, status=None, page=1, limit=10) -> tuple[list[Order], int]:
        """Newest first. Returns the page of orders and the total match count."""
        return self._page({"user_id": str(user_id)}, status=status, page=page, limit=limit)

    def page_all(self, status=None, page=1, limit=10) -> tuple[list[Order], int]:
        """Every user's orders, newest first."""
        return self._page({}, status=status, page=page, limit=limit)

    def _page(self, criteria, status=None, page=1, limit=10) -> tuple[list[Order], int]:
        if status:
            criteria = {**criteria, "status": status}
        query = self._dao.query.filter(**criteria) if criteria else self._dao.query
        result = (
            query.order_by("-created_at")
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return result.items, result.total

    def in_status(self, status) -> list[Order]:
        return self._dao.query.filter(status=status).limit(None).all().items
