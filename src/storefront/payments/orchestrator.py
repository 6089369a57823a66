"""Payment Orchestrator: the entry points the API and the scheduler call.

Each use case lives in its own module (initiation, reconciliation, refund,
webhook); this module collects them and owns the payment-failure sweep,
which needs order cancellation on top of them.
"""

from datetime import timedelta

import structlog
from protean.exceptions import InvalidOperationError, ValidationError
from protean.utils.globals import current_domain

from storefront.ordering.cancellation import cancel_unpaid_order
from storefront.ordering.order import Order, OrderStatus
from storefront.payments.initiation import PaymentHandle, initiate_payment
from storefront.payments.payment import get_payment
from storefront.payments.reconciliation import reconcile, verify_payment
from storefront.payments.refund import RefundHandle, refund
from storefront.payments.webhook import handle_webhook
from storefront.settings import get_settings
from storefront.utils.clock import as_utc, utcnow

logger = structlog.get_logger(__name__)

__all__ = [
    "PaymentHandle",
    "RefundHandle",
    "get_payment",
    "handle_webhook",
    "initiate_payment",
    "reconcile",
    "refund",
    "sweep_payment_failures",
    "verify_payment",
]


def sweep_payment_failures(as_of=None) -> int:
    """Cancel orders left in payment_failed past the grace period, restocking them.

    Disabled (returns 0) unless ``PAYMENT_FAILURE_GRACE_MINUTES`` is set.
    """
    grace_minutes = get_settings().payment_failure_grace_minutes
    if grace_minutes is None:
        logger.debug("Payment failure sweep disabled")
        return 0

    as_of = as_of or utcnow()
    cutoff = as_of - timedelta(minutes=grace_minutes)
    orders = current_domain.repository_for(Order).in_status(OrderStatus.PAYMENT_FAILED.value)

    cancelled = 0
    for order in orders:
        if as_utc(order.updated_at) > as_utc(cutoff):
            continue
        try:
            cancel_unpaid_order(order.id, reason=f"Payment not completed within {grace_minutes} minutes")
        except (ValidationError, InvalidOperationError) as exc:
            logger.warning("Failed to cancel unpaid order", order_id=str(order.id), error=str(exc))
            continue
        cancelled += 1

    logger.info("Payment failure sweep complete", cancelled_count=cancelled)
    return cancelled
