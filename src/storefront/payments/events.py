"""Domain events for the Payment aggregate."""

from protean.fields import Boolean, DateTime, Float, Identifier, String

from storefront.domain import storefront


@storefront.event(part_of="Payment")
class PaymentInitiated:
    """A payment slot was opened for an order, before the gateway is called."""

    __version__ = 1

    payment_id = Identifier(required=True)
    order_id = Identifier(required=True)
    gateway = String(required=True)
    amount = Float(required=True)
    currency = String(required=True)
    initiated_at = DateTime(required=True)


@storefront.event(part_of="Payment")
class PaymentCompleted:
    """The gateway confirmed the capture."""

    __version__ = 1

    payment_id = Identifier(required=True)
    order_id = Identifier(required=True)
    external_ref = String()
    amount = Float(required=True)
    currency = String(required=True)
    captured_at = DateTime(required=True)


@storefront.event(part_of="Payment")
class PaymentFailed:
    __version__ = 1

    payment_id = Identifier(required=True)
    order_id = Identifier(required=True)
    reason = String()
    failed_at = DateTime(required=True)


@storefront.event(part_of="Payment")
class RefundRequested:
    __version__ = 1

    payment_id = Identifier(required=True)
    refund_id = Identifier(required=True)
    order_id = Identifier(required=True)
    amount = Float(required=True)
    reason = String()
    requested_at = DateTime(required=True)


@storefront.event(part_of="Payment")
class RefundCompleted:
    """The gateway acknowledged a refund; ``fully_refunded`` once nothing is left."""

    __version__ = 1

    payment_id = Identifier(required=True)
    refund_id = Identifier(required=True)
    order_id = Identifier(required=True)
    amount = Float(required=True)
    refund_ref = String()
    fully_refunded = Boolean(default=False)
    completed_at = DateTime(required=True)


@storefront.event(part_of="Payment")
class RefundDeclined:
    __version__ = 1

    payment_id = Identifier(required=True)
    refund_id = Identifier(required=True)
    order_id = Identifier(required=True)
    reason = String()
    declined_at = DateTime(required=True)
