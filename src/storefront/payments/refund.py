"""Payment refunds: commands, handler and the refund use case.

A refund is recorded as requested (payment in ``refund_pending``) under the
order's mutex, the gateway is called outside it, and the answer is applied
under the mutex again. Only a gateway acknowledgement marks money refunded:
a timeout leaves the payment in ``refund_pending`` until a refund webhook or
another attempt settles it.
"""

from dataclasses import dataclass

import structlog
from protean import handle
from protean.fields import Float, Identifier, String
from protean.utils.globals import current_domain

from storefront.domain import storefront
from storefront.errors import GatewayError, GatewayUnavailableError
from storefront.notifications import REFUND_PROCESSED, notify
from storefront.ordering.order import Order, OrderStatus, can_transition
from storefront.payments.gateway import get_gateway
from storefront.payments.gateway.port import STATUS_COMPLETED, STATUS_FAILED
from storefront.payments.gateway.retry import call_with_retry
from storefront.payments.payment import Payment, PaymentStatus, get_payment
from storefront.utils.locking import locks, order_key

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RefundHandle:
    payment_id: str
    refund_id: str
    refund_ref: str | None
    status: str
    amount: float


def settle_refund(payment: Payment, order: Order, refund_id=None, refund_ref=None):
    """Apply an acknowledged refund to the payment and mirror it on the order."""
    refund = payment.complete_refund(refund_id=refund_id, refund_ref=refund_ref)

    fully_refunded = payment.status == PaymentStatus.REFUNDED.value
    if fully_refunded and can_transition(OrderStatus(order.status), OrderStatus.REFUNDED):
        order.mark_refunded(str(payment.id))
    else:
        order.record_payment(payment_id=str(payment.id), status=payment.status)
    return refund


@storefront.command(part_of="Payment")
class RequestRefund:
    payment_id = Identifier(required=True)
    amount = Float()  # Optional: defaults to the refundable balance
    reason = String(max_length=500)


@storefront.command(part_of="Payment")
class CompleteRefund:
    """The gateway acknowledged the refund."""

    payment_id = Identifier(required=True)
    refund_id = Identifier()
    refund_ref = String(max_length=255)


@storefront.command(part_of="Payment")
class DeclineRefund:
    payment_id = Identifier(required=True)
    refund_id = Identifier()
    reason = String(max_length=500)


@storefront.command(part_of="Payment")
class AttachRefundReference:
    """The gateway accepted the refund but has not settled it yet."""

    payment_id = Identifier(required=True)
    refund_id = Identifier(required=True)
    refund_ref = String(required=True, max_length=255)


@storefront.command_handler(part_of=Payment)
class RefundHandler:
    @handle(RequestRefund)
    def request_refund(self, command):
        repo = current_domain.repository_for(Payment)
        payment = repo.get(command.payment_id)
        refund = payment.request_refund(amount=command.amount, reason=command.reason)
        repo.add(payment)
        return {"refund_id": str(refund.id), "amount": refund.amount}

    @handle(CompleteRefund)
    def complete_refund(self, command):
        repo = current_domain.repository_for(Payment)
        order_repo = current_domain.repository_for(Order)
        payment = repo.get(command.payment_id)
        order = order_repo.get(str(payment.order_id))

        settle_refund(payment, order, refund_id=command.refund_id, refund_ref=command.refund_ref)
        repo.add(payment)
        order_repo.add(order)

    @handle(DeclineRefund)
    def decline_refund(self, command):
        repo = current_domain.repository_for(Payment)
        payment = repo.get(command.payment_id)
        payment.decline_refund(refund_id=command.refund_id, reason=command.reason)
        repo.add(payment)

    @handle(AttachRefundReference)
    def attach_refund_reference(self, command):
        repo = current_domain.repository_for(Payment)
        payment = repo.get(command.payment_id)
        payment.attach_refund_reference(command.refund_id, command.refund_ref)
        repo.add(payment)


def refund(payment_id, amount=None, reason="requested_by_customer") -> RefundHandle:
    """Refund ``amount`` of a completed payment (default: the whole refundable balance)."""
    payment = get_payment(payment_id)
    adapter = get_gateway(payment.gateway)
    order_id = str(payment.order_id)

    with locks.hold(order_key(order_id)):
        requested = current_domain.process(
            RequestRefund(payment_id=str(payment.id), amount=amount, reason=reason),
            asynchronous=False,
        )
    refund_id = requested["refund_id"]
    refund_amount = requested["amount"]

    log = logger.bind(payment_id=str(payment.id), order_id=order_id, refund_id=refund_id, gateway=payment.gateway)
    log.info("Refund requested", amount=refund_amount, reason=reason)

    try:
        result = call_with_retry(
            payment.gateway,
            "refund",
            lambda: adapter.refund(payment.external_ref, refund_amount, payment.currency),
        )
    except GatewayUnavailableError:
        log.error("Refund outcome unknown, left pending for reconciliation")
        raise
    except GatewayError as exc:
        with locks.hold(order_key(order_id)):
            current_domain.process(
                DeclineRefund(payment_id=str(payment.id), refund_id=refund_id, reason=exc.message),
                asynchronous=False,
            )
        log.warning("Refund declined by gateway", error=exc.message)
        raise

    with locks.hold(order_key(order_id)):
        if result.status == STATUS_COMPLETED:
            current_domain.process(
                CompleteRefund(payment_id=str(payment.id), refund_id=refund_id, refund_ref=result.refund_ref),
                asynchronous=False,
            )
        elif result.status == STATUS_FAILED:
            current_domain.process(
                DeclineRefund(payment_id=str(payment.id), refund_id=refund_id, reason="Refund failed at gateway"),
                asynchronous=False,
            )
        else:
            current_domain.process(
                AttachRefundReference(payment_id=str(payment.id), refund_id=refund_id, refund_ref=result.refund_ref),
                asynchronous=False,
            )

    if result.status == STATUS_FAILED:
        raise GatewayError(payment.gateway, "Refund failed at gateway", refund_ref=result.refund_ref)

    if result.status == STATUS_COMPLETED:
        log.info("Refund completed", refund_ref=result.refund_ref)
        notify(
            REFUND_PROCESSED,
            payment.user_id,
            {"order_id": order_id, "payment_id": str(payment.id), "amount": refund_amount},
        )
    else:
        log.info("Refund accepted, awaiting settlement", refund_ref=result.refund_ref)

    return RefundHandle(
        payment_id=str(payment.id),
        refund_id=refund_id,
        refund_ref=result.refund_ref,
        status=result.status,
        amount=refund_amount,
    )
