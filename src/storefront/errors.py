"""Error taxonomy for the storefront.

Errors build on Protean's exceptions so that command handlers, units of
work and the FastAPI integration treat them the same way as framework
errors. Each error carries a machine-readable ``kind`` and a ``details``
dict that the API layer returns alongside the message.

    DomainValidationError  (ValidationError)        -> 400
    NotFoundError          (ObjectNotFoundError)    -> 404
    ConflictError          (InvalidOperationError)  -> 409
    GatewayError                                    -> 502
"""

from protean.exceptions import InvalidOperationError, ObjectNotFoundError, ValidationError


# ---------------------------------------------------------------------------
# 400: rejected input or state-invariant violations
# ---------------------------------------------------------------------------
class DomainValidationError(ValidationError):
    kind = "validation_error"
    field = "request"

    def __init__(self, message: str, **details):
        super().__init__({self.field: [message]})
        self.message = message
        self.details = details

    def __str__(self) -> str:
        return self.message


class InsufficientStockError(DomainValidationError):
    kind = "insufficient_stock"
    field = "quantity"

    def __init__(self, product_id: str, available: int, requested: int):
        super().__init__(
            f"Insufficient stock for product {product_id}: {available} available, {requested} requested",
            product_id=str(product_id),
            available=available,
            requested=requested,
        )
        self.product_id = str(product_id)
        self.available = available
        self.requested = requested


class InvalidStatusTransitionError(DomainValidationError):
    kind = "invalid_status_transition"
    field = "status"

    def __init__(self, current: str, target: str):
        super().__init__(
            f"Cannot transition from {current} to {target}",
            current=current,
            target=target,
        )
        self.current = current
        self.target = target


class AmountMismatchError(DomainValidationError):
    kind = "amount_mismatch"
    field = "amount"

    def __init__(self, amount: float, expected: float):
        super().__init__(
            f"Payment amount {amount:.2f} does not match order total {expected:.2f}",
            amount=amount,
            expected=expected,
        )


class EmptyCartError(DomainValidationError):
    kind = "empty_cart"
    field = "cart"

    def __init__(self, user_id: str):
        super().__init__("Cart is empty", user_id=str(user_id))


class ProductUnavailableError(DomainValidationError):
    kind = "product_unavailable"
    field = "product_id"

    def __init__(self, product_id: str, reason: str = "Product is not available"):
        super().__init__(f"{reason}: {product_id}", product_id=str(product_id))
        self.product_id = str(product_id)


class WebhookSignatureError(DomainValidationError):
    kind = "invalid_signature"
    field = "signature"

    def __init__(self, gateway: str):
        super().__init__(f"Invalid webhook signature for gateway {gateway}", gateway=gateway)


# ---------------------------------------------------------------------------
# 404
# ---------------------------------------------------------------------------
class NotFoundError(ObjectNotFoundError):
    kind = "not_found"

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def __str__(self) -> str:
        return self.message


class ReservationNotFoundError(NotFoundError):
    kind = "reservation_not_found"

    def __init__(self, reservation_id: str):
        super().__init__(f"Reservation {reservation_id} not found", reservation_id=str(reservation_id))


# ---------------------------------------------------------------------------
# 409: the request is valid but conflicts with current state
# ---------------------------------------------------------------------------
class ConflictError(InvalidOperationError):
    kind = "conflict"

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def __str__(self) -> str:
        return self.message


class ReservationExpiredError(ConflictError):
    kind = "reservation_expired"

    def __init__(self, reservation_id: str):
        super().__init__(f"Reservation {reservation_id} has expired", reservation_id=str(reservation_id))


class ReservationAlreadyTerminalError(ConflictError):
    kind = "reservation_terminal"

    def __init__(self, reservation_id: str, status: str):
        super().__init__(
            f"Reservation {reservation_id} is already {status}",
            reservation_id=str(reservation_id),
            status=status,
        )


class ConcurrencyConflictError(ConflictError):
    kind = "concurrent_modification"


class AlreadyPaidError(ConflictError):
    kind = "already_paid"

    def __init__(self, order_id: str):
        super().__init__(f"Order {order_id} is already paid", order_id=str(order_id))


class PaymentInProgressError(ConflictError):
    kind = "payment_in_progress"

    def __init__(self, order_id: str, payment_id: str):
        super().__init__(
            f"Order {order_id} already has a pending payment",
            order_id=str(order_id),
            payment_id=str(payment_id),
        )


class NotRefundableError(ConflictError):
    kind = "not_refundable"

    def __init__(self, payment_id: str, status: str):
        super().__init__(
            f"Payment {payment_id} in status {status} cannot be refunded",
            payment_id=str(payment_id),
            status=status,
        )


class RefundExceedsPaymentError(ConflictError):
    kind = "refund_exceeds_payment"

    def __init__(self, payment_id: str, requested: float, refundable: float):
        super().__init__(
            f"Refund of {requested:.2f} exceeds refundable balance {refundable:.2f}",
            payment_id=str(payment_id),
            requested=requested,
            refundable=refundable,
        )


# ---------------------------------------------------------------------------
# 502: an external payment processor failed us
# ---------------------------------------------------------------------------
class GatewayError(Exception):
    kind = "gateway_error"

    def __init__(self, gateway: str, message: str, **details):
        super().__init__(message)
        self.gateway = gateway
        self.message = message
        self.details = {"gateway": gateway, **details}

    def __str__(self) -> str:
        return f"{self.gateway}: {self.message}"


class GatewayUnavailableError(GatewayError):
    """Transient failure (timeout, connection error, 5xx). Safe to retry."""

    kind = "gateway_unavailable"
