"""Gateway webhook intake.

The signature (and the gateway's timestamp tolerance) is checked before the
body is even parsed; a delivery that fails it changes nothing and is the
only delivery answered with an error. Verified deliveries are recorded once
per gateway event id and reconciled. Anything that goes wrong after the
signature check is logged, recorded with outcome ``error`` and still
acknowledged: the sender would otherwise redeliver forever for a problem
only a human can fix.
"""

import hashlib

import structlog
from protean.utils.globals import current_domain

from storefront.errors import WebhookSignatureError
from storefront.payments.gateway import get_gateway
from storefront.payments.reconciliation import reconcile
from storefront.payments.webhook_receipt import RecordWebhookReceipt, WebhookReceipt

logger = structlog.get_logger(__name__)

ERROR = "error"


def body_event_id(body: bytes) -> str:
    """Stand-in event id for a body that could not be parsed, stable across redeliveries."""
    return f"unparsed:{hashlib.sha256(body).hexdigest()[:32]}"


def _record(gateway, event_id, outcome, event_type=None, external_ref=None) -> None:
    current_domain.process(
        RecordWebhookReceipt(
            gateway=gateway,
            event_id=event_id,
            event_type=event_type,
            external_ref=external_ref,
            outcome=outcome,
        ),
        asynchronous=False,
    )


def handle_webhook(gateway: str, headers: dict, body: bytes, remote_addr: str | None = None) -> dict:
    adapter = get_gateway(gateway)

    if not adapter.verify_signature(headers, body):
        logger.warning(
            "Webhook signature verification failed, possible spoofing attempt",
            gateway=gateway,
            remote_addr=remote_addr,
        )
        raise WebhookSignatureError(gateway)

    receipts = current_domain.repository_for(WebhookReceipt)

    try:
        event = adapter.parse_event(body)
    except Exception:  # noqa: BLE001
        event_id = body_event_id(body)
        logger.exception("Verified webhook body could not be parsed", gateway=gateway, event_id=event_id)
        duplicate = receipts.find(gateway, event_id) is not None
        if not duplicate:
            _record(gateway, event_id, ERROR)
        return {"received": True, "duplicate": duplicate, "outcome": ERROR}

    log = logger.bind(gateway=gateway, event_id=event.event_id, event_type=event.event_type)

    receipt = receipts.find(gateway, event.event_id)
    if receipt is not None:
        log.info("Duplicate webhook delivery acknowledged", outcome=receipt.outcome)
        return {"received": True, "duplicate": True, "outcome": receipt.outcome}

    try:
        outcome = reconcile(gateway, event)
    except Exception:  # noqa: BLE001
        log.exception("Webhook reconciliation failed", external_ref=event.external_ref)
        outcome = ERROR

    _record(gateway, event.event_id, outcome, event_type=event.event_type, external_ref=event.external_ref)

    log.info("Webhook processed", outcome=outcome)
    return {"received": True, "duplicate": False, "outcome": outcome}
