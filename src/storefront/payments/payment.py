"""Payment aggregate: one attempt to collect an order's total through a gateway.

An order has at most one payment in ``pending`` and at most one that ever
reached ``completed``. The orchestrator enforces this under the order's
mutex; the aggregate enforces its own state machine.

State Machine:
    PENDING → COMPLETED / FAILED
    COMPLETED → REFUND_PENDING
    REFUND_PENDING → PARTIALLY_REFUNDED / REFUNDED
                     (or back to the previous status if the gateway declines)
    PARTIALLY_REFUNDED → REFUND_PENDING
    FAILED, REFUNDED are terminal

Nothing is marked refunded before the gateway acknowledges the refund.
"""

from datetime import timedelta
from enum import Enum
from uuid import uuid4

from protean.exceptions import ObjectNotFoundError
from protean.fields import DateTime, Float, HasMany, Identifier, String
from protean.utils.globals import current_domain

from storefront.domain import storefront
from storefront.errors import (
    ConflictError,
    DomainValidationError,
    NotFoundError,
    NotRefundableError,
    RefundExceedsPaymentError,
)
from storefront.payments.events import (
    PaymentCompleted,
    PaymentFailed,
    PaymentInitiated,
    RefundCompleted,
    RefundDeclined,
    RefundRequested,
)
from storefront.utils.clock import as_utc, utcnow

AMOUNT_TOLERANCE = 0.01


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class PaymentStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUND_PENDING = "refund_pending"
    PARTIALLY_REFUNDED = "partially_refunded"
    REFUNDED = "refunded"


class RefundStatus(Enum):
    REQUESTED = "requested"
    COMPLETED = "completed"
    DECLINED = "declined"


_VALID_TRANSITIONS = {
    PaymentStatus.PENDING: {PaymentStatus.COMPLETED, PaymentStatus.FAILED},
    PaymentStatus.COMPLETED: {PaymentStatus.REFUND_PENDING},
    PaymentStatus.REFUND_PENDING: {
        PaymentStatus.PARTIALLY_REFUNDED,
        PaymentStatus.REFUNDED,
        PaymentStatus.COMPLETED,  # refund declined
    },
    PaymentStatus.PARTIALLY_REFUNDED: {PaymentStatus.REFUND_PENDING},
    PaymentStatus.FAILED: set(),  # Terminal
    PaymentStatus.REFUNDED: set(),  # Terminal
}

# Statuses that mean the order's money was collected at some point
SETTLED_STATUSES = {
    PaymentStatus.COMPLETED,
    PaymentStatus.REFUND_PENDING,
    PaymentStatus.PARTIALLY_REFUNDED,
    PaymentStatus.REFUNDED,
}


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------
@storefront.entity(part_of="Payment")
class Refund:
    amount = Float(required=True, min_value=0.0)
    reason = String(max_length=500)
    status = String(
        max_length=20,
        choices=RefundStatus,
        default=RefundStatus.REQUESTED.value,
    )
    refund_ref = String(max_length=255)
    requested_at = DateTime(required=True)
    processed_at = DateTime()


# ---------------------------------------------------------------------------
# Aggregate Root
# ---------------------------------------------------------------------------
@storefront.aggregate
class Payment:
    order_id = Identifier(required=True)
    user_id = Identifier(required=True)
    gateway = String(required=True, max_length=20)
    method = String(max_length=50)
    amount = Float(required=True, min_value=0.0)
    currency = String(max_length=3, default="USD")
    status = String(
        max_length=30,
        choices=PaymentStatus,
        default=PaymentStatus.PENDING.value,
    )
    external_ref = String(max_length=255)
    client_secret = String(max_length=500)
    approval_url = String(max_length=1000)
    failure_reason = String(max_length=500)
    refunds = HasMany(Refund)
    refunded_amount = Float(default=0.0)
    status_before_refund = String(max_length=30)
    captured_at = DateTime()
    failed_at = DateTime()
    created_at = DateTime()
    updated_at = DateTime()

    # -------------------------------------------------------------------
    # Factory method
    # -------------------------------------------------------------------
    @classmethod
    def create(cls, order_id, user_id, gateway, method, amount, currency):
        now = utcnow()
        payment = cls(
            id=str(uuid4()),
            order_id=str(order_id),
            user_id=str(user_id),
            gateway=gateway,
            method=method,
            amount=round(amount, 2),
            currency=currency,
            status=PaymentStatus.PENDING.value,
            refunded_amount=0.0,
            created_at=now,
            updated_at=now,
        )
        payment.raise_(
            PaymentInitiated(
                payment_id=str(payment.id),
                order_id=str(order_id),
                gateway=gateway,
                amount=payment.amount,
                currency=currency,
                initiated_at=now,
            )
        )
        return payment

    # -------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------
    @property
    def is_settled(self) -> bool:
        return PaymentStatus(self.status) in SETTLED_STATUSES

    @property
    def refundable_amount(self) -> float:
        return round(self.amount - (self.refunded_amount or 0.0), 2)

    def is_abandoned(self, now, window: timedelta) -> bool:
        """A pending payment the gateway never acknowledged, older than ``window``."""
        if self.status != PaymentStatus.PENDING.value or self.external_ref:
            return False
        return as_utc(self.created_at) + window < as_utc(now)

    def pending_refund(self, refund_id=None) -> Refund | None:
        requested = [r for r in (self.refunds or []) if r.status == RefundStatus.REQUESTED.value]
        if refund_id is not None:
            requested = [r for r in requested if str(r.id) == str(refund_id)]
        return requested[-1] if requested else None

    def refund_for_ref(self, refund_ref) -> Refund | None:
        for refund in self.refunds or []:
            if refund.refund_ref and refund.refund_ref == refund_ref:
                return refund
        return None

    # -------------------------------------------------------------------
    # State transition helper
    # -------------------------------------------------------------------
    def _assert_can_transition(self, target_status: PaymentStatus) -> None:
        current = PaymentStatus(self.status)
        if target_status not in _VALID_TRANSITIONS.get(current, set()):
            raise ConflictError(
                f"Payment cannot move from {current.value} to {target_status.value}",
                payment_id=str(self.id),
                current=current.value,
                target=target_status.value,
            )

    # -------------------------------------------------------------------
    # Gateway bookkeeping
    # -------------------------------------------------------------------
    def record_gateway_reference(self, external_ref, client_secret=None, approval_url=None) -> None:
        self.external_ref = external_ref
        self.client_secret = client_secret
        self.approval_url = approval_url
        self.failure_reason = None
        self.updated_at = utcnow()

    def record_gateway_error(self, reason) -> None:
        """The gateway call failed; the payment stays pending for a late webhook."""
        self.failure_reason = reason
        self.updated_at = utcnow()

    # -------------------------------------------------------------------
    # Payment lifecycle
    # -------------------------------------------------------------------
    def complete(self) -> None:
        self._assert_can_transition(PaymentStatus.COMPLETED)
        now = utcnow()
        self.status = PaymentStatus.COMPLETED.value
        self.captured_at = now
        self.failure_reason = None
        self.updated_at = now
        self.raise_(
            PaymentCompleted(
                payment_id=str(self.id),
                order_id=str(self.order_id),
                external_ref=self.external_ref,
                amount=self.amount,
                currency=self.currency,
                captured_at=now,
            )
        )

    def fail(self, reason) -> None:
        self._assert_can_transition(PaymentStatus.FAILED)
        now = utcnow()
        self.status = PaymentStatus.FAILED.value
        self.failure_reason = reason
        self.failed_at = now
        self.updated_at = now
        self.raise_(
            PaymentFailed(
                payment_id=str(self.id),
                order_id=str(self.order_id),
                reason=reason,
                failed_at=now,
            )
        )

    # -------------------------------------------------------------------
    # Refunds
    # -------------------------------------------------------------------
    def request_refund(self, amount=None, reason=None) -> Refund:
        """Open a refund for ``amount`` (default: everything not yet refunded)."""
        current = PaymentStatus(self.status)
        if current not in (PaymentStatus.COMPLETED, PaymentStatus.PARTIALLY_REFUNDED):
            raise NotRefundableError(str(self.id), current.value)

        refundable = self.refundable_amount
        amount = refundable if amount is None else round(amount, 2)
        if amount <= 0:
            raise DomainValidationError("Refund amount must be positive", payment_id=str(self.id), amount=amount)
        if amount > refundable + AMOUNT_TOLERANCE:
            raise RefundExceedsPaymentError(str(self.id), amount, refundable)

        now = utcnow()
        refund = Refund(
            id=str(uuid4()),
            amount=amount,
            reason=reason,
            status=RefundStatus.REQUESTED.value,
            requested_at=now,
        )
        self.add_refunds(refund)
        self.status_before_refund = current.value
        self.status = PaymentStatus.REFUND_PENDING.value
        self.updated_at = now

        self.raise_(
            RefundRequested(
                payment_id=str(self.id),
                refund_id=str(refund.id),
                order_id=str(self.order_id),
                amount=amount,
                reason=reason,
                requested_at=now,
            )
        )
        return refund

    def attach_refund_reference(self, refund_id, refund_ref) -> None:
        refund = self.pending_refund(refund_id)
        if refund is not None:
            refund.refund_ref = refund_ref
            self.updated_at = utcnow()

    def complete_refund(self, refund_id=None, refund_ref=None) -> Refund:
        """Apply the gateway's acknowledgement of a requested refund."""
        refund = self.pending_refund(refund_id)
        if refund is None:
            raise ConflictError("No refund awaiting acknowledgement", payment_id=str(self.id))

        now = utcnow()
        refund.status = RefundStatus.COMPLETED.value
        refund.refund_ref = refund_ref or refund.refund_ref
        refund.processed_at = now

        self.refunded_amount = round((self.refunded_amount or 0.0) + refund.amount, 2)
        fully_refunded = self.refunded_amount >= self.amount - AMOUNT_TOLERANCE
        target = PaymentStatus.REFUNDED if fully_refunded else PaymentStatus.PARTIALLY_REFUNDED
        self._assert_can_transition(target)
        self.status = target.value
        self.status_before_refund = None
        self.updated_at = now

        self.raise_(
            RefundCompleted(
                payment_id=str(self.id),
                refund_id=str(refund.id),
                order_id=str(self.order_id),
                amount=refund.amount,
                refund_ref=refund.refund_ref,
                fully_refunded=fully_refunded,
                completed_at=now,
            )
        )
        return refund

    def decline_refund(self, refund_id=None, reason=None) -> None:
        """The gateway rejected the refund; restore the status it was requested from."""
        refund = self.pending_refund(refund_id)
        if refund is None:
            raise ConflictError("No refund awaiting acknowledgement", payment_id=str(self.id))

        now = utcnow()
        refund.status = RefundStatus.DECLINED.value
        refund.processed_at = now
        self.status = self.status_before_refund or PaymentStatus.COMPLETED.value
        self.status_before_refund = None
        self.updated_at = now

        self.raise_(
            RefundDeclined(
                payment_id=str(self.id),
                refund_id=str(refund.id),
                order_id=str(self.order_id),
                reason=reason,
                declined_at=now,
            )
        )


@storefront.repository(part_of=Payment)
class PaymentRepository:
    def for_order(self, order_id) -> list[Payment]:
        return self._dao.query.filter(order_id=str(order_id)).order_by("created_at").all().items

    def pending_for_order(self, order_id) -> Payment | None:
        payments = self._dao.query.filter(order_id=str(order_id), status=PaymentStatus.PENDING.value).all().items
        return payments[0] if payments else None

    def settled_for_order(self, order_id) -> Payment | None:
        """The payment that collected this order's money, if any."""
        for payment in self.for_order(order_id):
            if payment.is_settled:
                return payment
        return None

    def find_by_external_ref(self, gateway, external_ref) -> Payment | None:
        payments = self._dao.query.filter(gateway=gateway, external_ref=external_ref).all().items
        return payments[0] if payments else None


def get_payment(payment_id) -> Payment:
    try:
        return current_domain.repository_for(Payment).get(str(payment_id))
    except ObjectNotFoundError:
        raise NotFoundError(f"Payment {payment_id} not found", payment_id=str(payment_id))
