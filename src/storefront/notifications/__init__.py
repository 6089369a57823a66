"""Notification sink factory.

Provides get_sink() / set_sink() to swap implementations, and notify(),
the fire-and-forget entry point used by order and payment workflows.
"""

import structlog

from storefront.notifications.sink import InMemoryNotificationSink, NotificationSink

logger = structlog.get_logger(__name__)

ORDER_CONFIRMATION = "order_confirmation"
ORDER_PROCESSING = "order_processing"
ORDER_SHIPPED = "order_shipped"
ORDER_DELIVERED = "order_delivered"
ORDER_CANCELLED = "order_cancelled"
PAYMENT_RECEIVED = "payment_received"
PAYMENT_FAILED = "payment_failed"
REFUND_PROCESSED = "refund_processed"

_current_sink: NotificationSink | None = None


def get_sink() -> NotificationSink:
    """Return the current sink. Defaults to InMemoryNotificationSink."""
    global _current_sink
    if _current_sink is None:
        _current_sink = InMemoryNotificationSink()
    return _current_sink


def set_sink(sink: NotificationSink) -> None:
    global _current_sink
    _current_sink = sink


def reset_sink() -> None:
    global _current_sink
    _current_sink = None


def notify(event_type: str, recipient, payload: dict) -> bool:
    """Enqueue a notification; a sink failure is logged and never propagates."""
    try:
        get_sink().enqueue(event_type, str(recipient), payload)
    except Exception as exc:  # noqa: BLE001 - delivery problems must not fail the caller
        logger.error(
            "Failed to enqueue notification",
            event_type=event_type,
            recipient=str(recipient),
            error=str(exc),
        )
        return False
    return True
