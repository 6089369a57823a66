"""Payment initiation: commands, handler and the initiation use case.

The per-order slot is claimed first, under the order's mutex: all the
checks run and a ``pending`` Payment is inserted in one unit of work, so
two concurrent attempts for the same order cannot both get through. The
gateway is then called with the mutex released.
"""

from dataclasses import dataclass
from datetime import timedelta

import structlog
from protean import handle
from protean.fields import Boolean, Float, Identifier, String
from protean.utils.globals import current_domain

from storefront.domain import storefront
from storefront.errors import (
    AlreadyPaidError,
    AmountMismatchError,
    ConflictError,
    DomainValidationError,
    GatewayError,
    GatewayUnavailableError,
    PaymentInProgressError,
)
from storefront.ordering.order import Order, OrderStatus
from storefront.ordering.queries import get_order
from storefront.payments.gateway import get_gateway
from storefront.payments.gateway.port import STATUS_COMPLETED, STATUS_FAILED, STATUS_PENDING
from storefront.payments.gateway.retry import call_with_retry
from storefront.payments.payment import Payment, PaymentStatus
from storefront.payments.reconciliation import apply_outcome
from storefront.settings import get_settings
from storefront.utils.clock import utcnow
from storefront.utils.locking import locks, order_key

logger = structlog.get_logger(__name__)

_PAYABLE_STATES = {OrderStatus.PENDING, OrderStatus.PAYMENT_FAILED}


@dataclass(frozen=True)
class PaymentHandle:
    payment_id: str
    order_id: str
    gateway: str
    status: str
    external_ref: str | None = None
    client_secret: str | None = None
    approval_url: str | None = None


@storefront.command(part_of="Payment")
class OpenPayment:
    """Claim the order's payment slot with a pending Payment."""

    order_id = Identifier(required=True)
    gateway = String(required=True, max_length=20)
    method = String(max_length=50)
    amount = Float(required=True)
    currency = String(required=True, max_length=3)


@storefront.command(part_of="Payment")
class RecordGatewayReference:
    payment_id = Identifier(required=True)
    external_ref = String(required=True, max_length=255)
    client_secret = String(max_length=500)
    approval_url = String(max_length=1000)


@storefront.command(part_of="Payment")
class RecordGatewayError:
    payment_id = Identifier(required=True)
    reason = String(required=True, max_length=500)
    definitive = Boolean(default=False)  # True: the gateway refused, nothing is in flight


@storefront.command_handler(part_of=Payment)
class PaymentInitiationHandler:
    @handle(OpenPayment)
    def open_payment(self, command):
        settings = get_settings()
        order_repo = current_domain.repository_for(Order)
        payment_repo = current_domain.repository_for(Payment)
        order = order_repo.get(command.order_id)

        if abs(command.amount - order.total) > settings.payment_amount_tolerance:
            raise AmountMismatchError(command.amount, order.total)
        if command.currency.upper() != order.currency.upper():
            raise DomainValidationError(
                f"Payment currency {command.currency} does not match order currency {order.currency}",
                currency=command.currency,
            )
        if payment_repo.settled_for_order(order.id) is not None:
            raise AlreadyPaidError(str(order.id))

        pending = payment_repo.pending_for_order(order.id)
        if pending is not None:
            window = timedelta(minutes=settings.pending_payment_abandon_minutes)
            if not pending.is_abandoned(utcnow(), window):
                raise PaymentInProgressError(str(order.id), str(pending.id))
            pending.fail("Abandoned: gateway never acknowledged the payment")
            payment_repo.add(pending)

        status = OrderStatus(order.status)
        if status not in _PAYABLE_STATES:
            raise ConflictError(
                f"Order {order.id} in status {status.value} cannot be paid",
                order_id=str(order.id),
                status=status.value,
            )
        if status == OrderStatus.PAYMENT_FAILED:
            order.reopen_for_payment()

        payment = Payment.create(
            order_id=order.id,
            user_id=order.user_id,
            gateway=command.gateway,
            method=command.method,
            amount=command.amount,
            currency=order.currency,
        )
        payment_repo.add(payment)

        order.record_payment(payment_id=str(payment.id), method=command.method, status=payment.status)
        order_repo.add(order)
        return str(payment.id)

    @handle(RecordGatewayReference)
    def record_gateway_reference(self, command):
        repo = current_domain.repository_for(Payment)
        payment = repo.get(command.payment_id)
        payment.record_gateway_reference(
            command.external_ref,
            client_secret=command.client_secret,
            approval_url=command.approval_url,
        )
        repo.add(payment)

    @handle(RecordGatewayError)
    def record_gateway_error(self, command):
        repo = current_domain.repository_for(Payment)
        payment = repo.get(command.payment_id)
        if command.definitive and payment.status == PaymentStatus.PENDING.value:
            payment.fail(command.reason)
            order_repo = current_domain.repository_for(Order)
            order = order_repo.get(str(payment.order_id))
            order.record_payment(payment_id=str(payment.id), status=payment.status)
            order_repo.add(order)
        else:
            payment.record_gateway_error(command.reason)
        repo.add(payment)


def initiate_payment(order_id, gateway, method, amount, currency) -> PaymentHandle:
    adapter = get_gateway(gateway)
    order = get_order(order_id)

    with locks.hold(order_key(order.id)):
        payment_id = current_domain.process(
            OpenPayment(order_id=str(order.id), gateway=gateway, method=method, amount=amount, currency=currency),
            asynchronous=False,
        )

    log = logger.bind(payment_id=payment_id, order_id=str(order.id), gateway=gateway)
    log.info("Payment opened", amount=amount, currency=currency)

    try:
        result = call_with_retry(
            gateway,
            "initiate",
            lambda: adapter.initiate(
                amount,
                order.currency,
                {"order_id": str(order.id), "order_number": order.order_number, "payment_id": payment_id},
            ),
        )
    except GatewayError as exc:
        definitive = not isinstance(exc, GatewayUnavailableError)
        with locks.hold(order_key(order.id)):
            current_domain.process(
                RecordGatewayError(payment_id=payment_id, reason=exc.message, definitive=definitive),
                asynchronous=False,
            )
        log.error("Payment initiation failed", error=exc.message, definitive=definitive)
        raise

    with locks.hold(order_key(order.id)):
        current_domain.process(
            RecordGatewayReference(
                payment_id=payment_id,
                external_ref=result.external_ref,
                client_secret=result.client_secret,
                approval_url=result.approval_url,
            ),
            asynchronous=False,
        )

    status = STATUS_PENDING
    if result.status in (STATUS_COMPLETED, STATUS_FAILED):
        payment = current_domain.repository_for(Payment).get(payment_id)
        apply_outcome(payment, result.status)
        status = current_domain.repository_for(Payment).get(payment_id).status

    log.info("Payment initiated", external_ref=result.external_ref, status=status)
    return PaymentHandle(
        payment_id=payment_id,
        order_id=str(order.id),
        gateway=gateway,
        status=status,
        external_ref=result.external_ref,
        client_secret=result.client_secret,
        approval_url=result.approval_url,
    )
