"""Payment reconciliation: applies gateway outcomes to Payment and Order.

Webhooks and status polls both end up here. Reconciliation is idempotent:
an outcome the payment already reflects is reported as ``duplicate`` and
changes nothing, so a redelivered webhook can never move an order twice.

    completed  pending payment → completed; order pending → paid
               (payment_failed → pending → paid when the order was retried)
    failed     pending payment → failed; order pending → payment_failed
    refunded   refund_pending payment → partially_refunded / refunded

A refund report matching a refund already settled (by gateway reference,
or by a running total that does not exceed what is recorded) is a
``duplicate``, so the webhook for a refund made through the API is not
counted twice.

A ``completed`` report for a payment already marked failed is logged and
ignored; it needs a human. A payment that completes after its order was
cancelled is refunded automatically once the unit of work commits.
"""

import structlog
from protean import handle
from protean.fields import Boolean, Float, Identifier, String
from protean.utils.globals import current_domain

from storefront.domain import storefront
from storefront.errors import ConflictError, GatewayError
from storefront.notifications import PAYMENT_FAILED, PAYMENT_RECEIVED, REFUND_PROCESSED, notify
from storefront.ordering.order import Order, OrderStatus
from storefront.payments.gateway import get_gateway
from storefront.payments.gateway.port import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_REFUNDED,
    GatewayEvent,
)
from storefront.payments.gateway.retry import call_with_retry
from storefront.payments.payment import SETTLED_STATUSES, Payment, PaymentStatus, RefundStatus, get_payment
from storefront.payments.refund import refund, settle_refund
from storefront.settings import get_settings
from storefront.utils.locking import locks, order_key

logger = structlog.get_logger(__name__)

APPLIED = "applied"
DUPLICATE = "duplicate"
IGNORED = "ignored"


@storefront.command(part_of="Payment")
class ApplyPaymentOutcome:
    payment_id = Identifier(required=True)
    status = String(required=True, max_length=20)  # completed, failed, refunded
    amount = Float()
    refund_ref = String(max_length=255)
    reason = String(max_length=500)
    cumulative = Boolean(default=False)


@storefront.command_handler(part_of=Payment)
class ReconciliationHandler:
    @handle(ApplyPaymentOutcome)
    def apply_payment_outcome(self, command):
        repo = current_domain.repository_for(Payment)
        order_repo = current_domain.repository_for(Order)
        payment = repo.get(command.payment_id)
        order = order_repo.get(str(payment.order_id))

        if command.status == STATUS_COMPLETED:
            outcome = _apply_completed(payment, order, command)
        elif command.status == STATUS_FAILED:
            outcome = _apply_failed(payment, order, command)
        elif command.status == STATUS_REFUNDED:
            outcome = _apply_refunded(payment, order, command)
        else:
            outcome = IGNORED

        if outcome == APPLIED:
            repo.add(payment)
            order_repo.add(order)

        return {
            "outcome": outcome,
            "payment_status": payment.status,
            "order_status": order.status,
            "refund_required": outcome == APPLIED
            and command.status == STATUS_COMPLETED
            and order.status == OrderStatus.CANCELLED.value,
        }


def _apply_completed(payment: Payment, order: Order, command) -> str:
    current = PaymentStatus(payment.status)
    if current in SETTLED_STATUSES:
        return DUPLICATE
    if current == PaymentStatus.FAILED:
        logger.warning(
            "Completion reported for a failed payment, needs manual review",
            payment_id=str(payment.id),
            order_id=str(payment.order_id),
        )
        return IGNORED
    if command.amount is not None and abs(command.amount - payment.amount) > get_settings().payment_amount_tolerance:
        logger.error(
            "Captured amount differs from payment amount, needs manual review",
            payment_id=str(payment.id),
            captured=command.amount,
            expected=payment.amount,
        )
        return IGNORED

    payment.complete()

    status = OrderStatus(order.status)
    if status == OrderStatus.PAYMENT_FAILED:
        order.reopen_for_payment()
        status = OrderStatus.PENDING
    if status == OrderStatus.PENDING:
        order.mark_paid(str(payment.id), transaction_id=payment.external_ref)
    else:
        # Cancelled while the payment was in flight; refunded after commit
        order.record_payment(payment_id=str(payment.id), status=payment.status, transaction_id=payment.external_ref)
    return APPLIED


def _apply_failed(payment: Payment, order: Order, command) -> str:
    current = PaymentStatus(payment.status)
    if current == PaymentStatus.FAILED:
        return DUPLICATE
    if current != PaymentStatus.PENDING:
        logger.warning(
            "Failure reported for a payment that is not pending",
            payment_id=str(payment.id),
            status=current.value,
        )
        return IGNORED

    reason = command.reason or "Payment failed at gateway"
    payment.fail(reason)
    if order.status == OrderStatus.PENDING.value:
        order.mark_payment_failed(str(payment.id), reason=reason)
    else:
        order.record_payment(payment_id=str(payment.id), status=payment.status)
    return APPLIED


def _apply_refunded(payment: Payment, order: Order, command) -> str:
    current = PaymentStatus(payment.status)
    if current == PaymentStatus.REFUNDED:
        return DUPLICATE

    known = payment.refund_for_ref(command.refund_ref) if command.refund_ref else None
    if known is not None and known.status == RefundStatus.COMPLETED.value:
        return DUPLICATE

    amount = command.amount
    if command.cumulative and amount is not None:
        # Only the part above what is already settled is news
        amount = round(amount - (payment.refunded_amount or 0.0), 2)
        if amount <= 0:
            return DUPLICATE

    if current in (PaymentStatus.COMPLETED, PaymentStatus.PARTIALLY_REFUNDED):
        # Refund issued directly at the gateway: record it before settling
        if amount is None or amount > payment.refundable_amount:
            amount = payment.refundable_amount
        payment.request_refund(amount=amount, reason="Refunded at gateway")
        settle_refund(payment, order, refund_ref=command.refund_ref)
        return APPLIED

    if current != PaymentStatus.REFUND_PENDING:
        logger.warning(
            "Refund reported for a payment that was never captured",
            payment_id=str(payment.id),
            status=current.value,
        )
        return IGNORED

    awaiting = known if known is not None and known.status == RefundStatus.REQUESTED.value else None
    settle_refund(payment, order, refund_id=awaiting.id if awaiting else None, refund_ref=command.refund_ref)
    return APPLIED


def apply_outcome(payment: Payment, status: str, amount=None, refund_ref=None, reason=None, cumulative=False) -> str:
    """Apply one normalized gateway outcome under the order's mutex, then notify."""
    with locks.hold(order_key(payment.order_id)):
        result = current_domain.process(
            ApplyPaymentOutcome(
                payment_id=str(payment.id),
                status=status,
                amount=amount,
                refund_ref=refund_ref,
                reason=reason,
                cumulative=cumulative,
            ),
            asynchronous=False,
        )

    outcome = result["outcome"]
    log = logger.bind(payment_id=str(payment.id), order_id=str(payment.order_id), status=status)
    log.info("Payment outcome reconciled", outcome=outcome, order_status=result["order_status"])
    if outcome != APPLIED:
        return outcome

    payload = {"order_id": str(payment.order_id), "payment_id": str(payment.id), "amount": payment.amount}
    if status == STATUS_COMPLETED:
        notify(PAYMENT_RECEIVED, payment.user_id, payload)
    elif status == STATUS_FAILED:
        notify(PAYMENT_FAILED, payment.user_id, {**payload, "reason": reason})
    elif status == STATUS_REFUNDED:
        notify(REFUND_PROCESSED, payment.user_id, payload)

    if result["refund_required"]:
        log.warning("Payment completed for a cancelled order, refunding")
        try:
            refund(str(payment.id), reason="order_cancelled")
        except (GatewayError, ConflictError) as exc:
            log.error("Automatic refund failed, needs manual review", error=str(exc))
    return outcome


def reconcile(gateway: str, event: GatewayEvent) -> str:
    """Apply a parsed gateway event. Unknown payments and event types are ignored."""
    if event.status is None:
        logger.info("Ignoring unhandled gateway event", gateway=gateway, event_type=event.event_type)
        return IGNORED

    payment = current_domain.repository_for(Payment).find_by_external_ref(gateway, event.external_ref)
    if payment is None:
        logger.warning(
            "Gateway event for unknown payment",
            gateway=gateway,
            event_id=event.event_id,
            external_ref=event.external_ref,
        )
        return IGNORED

    return apply_outcome(
        payment,
        event.status,
        amount=event.amount,
        refund_ref=event.refund_ref,
        reason=event.reason,
        cumulative=event.cumulative_amount,
    )


def verify_payment(payment_id) -> dict:
    """Poll the gateway for a pending payment's status and reconcile it."""
    payment = get_payment(payment_id)
    outcome = None

    if payment.status == PaymentStatus.PENDING.value and payment.external_ref:
        adapter = get_gateway(payment.gateway)
        status = call_with_retry(payment.gateway, "fetch_status", lambda: adapter.fetch_status(payment.external_ref))
        if status in (STATUS_COMPLETED, STATUS_FAILED):
            outcome = apply_outcome(payment, status, reason="Payment verification failed")
        else:
            outcome = STATUS_PENDING
        payment = get_payment(payment_id)

    return {
        "payment_id": str(payment.id),
        "order_id": str(payment.order_id),
        "gateway": payment.gateway,
        "status": payment.status,
        "amount": payment.amount,
        "currency": payment.currency,
        "verified": payment.is_settled,
        "outcome": outcome,
    }
