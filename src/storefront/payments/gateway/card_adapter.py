"""Card payments through Stripe PaymentIntents.

The client confirms the card with the returned ``client_secret``; Stripe
then reports the outcome through webhooks:

    payment_intent.succeeded       -> completed
    payment_intent.payment_failed  -> failed
    charge.refunded                -> refunded

Amounts cross the wire in the currency's minor unit (cents).
"""

import json

import stripe
import structlog

from storefront.errors import GatewayError, GatewayUnavailableError
from storefront.payments.gateway.port import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_REFUNDED,
    GatewayEvent,
    InitiateResult,
    PaymentGateway,
    RefundResult,
)

logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "stripe-signature"

EVENT_STATUSES = {
    "payment_intent.succeeded": STATUS_COMPLETED,
    "payment_intent.payment_failed": STATUS_FAILED,
    "charge.refunded": STATUS_REFUNDED,
}

INTENT_STATUSES = {
    "succeeded": STATUS_COMPLETED,
    "canceled": STATUS_FAILED,
}

REFUND_STATUSES = {
    "succeeded": STATUS_COMPLETED,
    "pending": STATUS_PENDING,
    "requires_action": STATUS_PENDING,
    "failed": STATUS_FAILED,
    "canceled": STATUS_FAILED,
}

# Transient failures; everything else from Stripe is a definitive answer
_TRANSIENT_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)


def to_minor_units(amount: float) -> int:
    return int(round(amount * 100))


class CardGateway(PaymentGateway):
    name = "card"

    def __init__(self, api_key: str, webhook_secret: str, timeout: float = 10.0, tolerance: int = 300) -> None:
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.tolerance = tolerance
        # Retries are owned by call_with_retry, not the SDK
        stripe.max_network_retries = 0
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)

    def _translate(self, exc: stripe.StripeError, operation: str) -> GatewayError:
        logger.warning("Stripe call failed", operation=operation, error=str(exc), code=getattr(exc, "code", None))
        if isinstance(exc, _TRANSIENT_ERRORS):
            return GatewayUnavailableError(self.name, str(exc) or "Stripe unavailable", operation=operation)
        return GatewayError(self.name, getattr(exc, "user_message", None) or str(exc), operation=operation)

    def initiate(self, amount: float, currency: str, metadata: dict) -> InitiateResult:
        try:
            intent = stripe.PaymentIntent.create(
                amount=to_minor_units(amount),
                currency=currency.lower(),
                metadata={key: str(value) for key, value in metadata.items()},
                automatic_payment_methods={"enabled": True},
                api_key=self.api_key,
                idempotency_key=metadata.get("payment_id"),
            )
        except stripe.StripeError as exc:
            raise self._translate(exc, "initiate")

        return InitiateResult(
            external_ref=intent.id,
            status=INTENT_STATUSES.get(intent.status, STATUS_PENDING),
            client_secret=intent.client_secret,
        )

    def verify_signature(self, headers: dict, body: bytes) -> bool:
        normalized = {key.lower(): value for key, value in headers.items()}
        signature = normalized.get(SIGNATURE_HEADER)
        if not signature or not self.webhook_secret:
            return False
        try:
            stripe.Webhook.construct_event(body, signature, self.webhook_secret, tolerance=self.tolerance)
        except (stripe.SignatureVerificationError, ValueError):
            return False
        return True

    def parse_event(self, body: bytes) -> GatewayEvent:
        try:
            payload = json.loads(body)
        except ValueError:
            raise GatewayError(self.name, "Malformed webhook body")

        event_type = payload.get("type", "")
        obj = payload.get("data", {}).get("object", {})

        if event_type == "charge.refunded":
            refunds = obj.get("refunds", {}).get("data") or []
            return GatewayEvent(
                event_id=payload.get("id", ""),
                event_type=event_type,
                external_ref=obj.get("payment_intent"),
                status=STATUS_REFUNDED,
                amount=obj.get("amount_refunded", 0) / 100,
                refund_ref=refunds[0].get("id") if refunds else None,
                cumulative_amount=True,
            )

        reason = None
        if event_type == "payment_intent.payment_failed":
            reason = (obj.get("last_payment_error") or {}).get("message")
        amount = obj.get("amount_received") or obj.get("amount")
        return GatewayEvent(
            event_id=payload.get("id", ""),
            event_type=event_type,
            external_ref=obj.get("id"),
            status=EVENT_STATUSES.get(event_type),
            amount=amount / 100 if amount is not None else None,
            reason=reason,
        )

    def refund(self, external_ref: str, amount: float | None, currency: str) -> RefundResult:
        params = {"payment_intent": external_ref, "api_key": self.api_key}
        if amount is not None:
            params["amount"] = to_minor_units(amount)
        try:
            refund = stripe.Refund.create(**params)
        except stripe.StripeError as exc:
            raise self._translate(exc, "refund")

        return RefundResult(refund_ref=refund.id, status=REFUND_STATUSES.get(refund.status, STATUS_PENDING))

    def fetch_status(self, external_ref: str) -> str:
        try:
            intent = stripe.PaymentIntent.retrieve(external_ref, api_key=self.api_key)
        except stripe.StripeError as exc:
            raise self._translate(exc, "fetch_status")

        if intent.status == "requires_payment_method" and getattr(intent, "last_payment_error", None):
            return STATUS_FAILED
        return INTENT_STATUSES.get(intent.status, STATUS_PENDING)
