"""Wallet payments through the PayPal Orders v2 REST API.

The buyer approves the order at ``approval_url``; the capture is then
reported by webhook:

    PAYMENT.CAPTURE.COMPLETED  -> completed
    PAYMENT.CAPTURE.DENIED     -> failed
    PAYMENT.CAPTURE.REFUNDED   -> refunded

``CHECKOUT.ORDER.APPROVED`` means the buyer approved but nothing was
captured yet, so it is not treated as a completed payment. Polling an
approved order through ``fetch_status`` captures it.
"""

import json
import threading
import time
from datetime import datetime, timedelta

import httpx
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
from storefront.utils.clock import as_utc, utcnow

logger = structlog.get_logger(__name__)

EVENT_STATUSES = {
    "PAYMENT.CAPTURE.COMPLETED": STATUS_COMPLETED,
    "PAYMENT.CAPTURE.DENIED": STATUS_FAILED,
    "PAYMENT.CAPTURE.REFUNDED": STATUS_REFUNDED,
}

ORDER_STATUSES = {
    "COMPLETED": STATUS_COMPLETED,
    "VOIDED": STATUS_FAILED,
    "FAILED": STATUS_FAILED,
    "DECLINED": STATUS_FAILED,
}

REFUND_STATUSES = {
    "COMPLETED": STATUS_COMPLETED,
    "PENDING": STATUS_PENDING,
    "FAILED": STATUS_FAILED,
    "CANCELLED": STATUS_FAILED,
}

_SIGNATURE_HEADERS = (
    "paypal-transmission-id",
    "paypal-transmission-time",
    "paypal-transmission-sig",
    "paypal-cert-url",
    "paypal-auth-algo",
)

# Renew the access token this long before PayPal says it expires
TOKEN_EXPIRY_MARGIN_SECONDS = 60


class WalletGateway(PaymentGateway):
    name = "wallet"

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        webhook_id: str,
        base_url: str,
        return_url: str,
        cancel_url: str,
        timeout: float = 10.0,
        tolerance: int = 300,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.webhook_id = webhook_id
        self.return_url = return_url
        self.cancel_url = cancel_url
        self.tolerance = tolerance
        self._client = httpx.Client(base_url=base_url, timeout=timeout, transport=transport)
        self._token: str | None = None
        self._token_expires_at = 0.0
        self._token_lock = threading.Lock()

    def close(self) -> None:
        self._client.close()

    # -------------------------------------------------------------------
    # HTTP plumbing
    # -------------------------------------------------------------------
    def _access_token(self) -> str:
        with self._token_lock:
            if self._token and time.monotonic() < self._token_expires_at:
                return self._token

            payload = self._send(
                "POST",
                "/v1/oauth2/token",
                operation="authenticate",
                auth=(self.client_id, self.client_secret),
                data={"grant_type": "client_credentials"},
                authenticated=False,
            )
            self._token = payload["access_token"]
            expires_in = int(payload.get("expires_in", 0))
            self._token_expires_at = time.monotonic() + max(expires_in - TOKEN_EXPIRY_MARGIN_SECONDS, 0)
            return self._token

    def _send(self, method: str, path: str, operation: str, authenticated: bool = True, **kwargs) -> dict:
        headers = kwargs.pop("headers", {})
        if authenticated:
            headers["Authorization"] = f"Bearer {self._access_token()}"

        try:
            response = self._client.request(method, path, headers=headers, **kwargs)
        except httpx.TimeoutException as exc:
            raise GatewayUnavailableError(self.name, f"PayPal timed out: {exc}", operation=operation)
        except httpx.TransportError as exc:
            raise GatewayUnavailableError(self.name, f"PayPal unreachable: {exc}", operation=operation)

        if response.status_code == 401 and authenticated:
            # Token revoked early; force a new one on the next call
            self._token = None

        if response.status_code >= 500 or response.status_code == 429:
            raise GatewayUnavailableError(
                self.name,
                f"PayPal returned {response.status_code}",
                operation=operation,
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = {}
            logger.warning(
                "PayPal rejected request",
                operation=operation,
                status_code=response.status_code,
                error=body.get("name"),
                debug_id=body.get("debug_id"),
            )
            raise GatewayError(
                self.name,
                body.get("message") or f"PayPal returned {response.status_code}",
                operation=operation,
                status_code=response.status_code,
            )

        return response.json() if response.content else {}

    # -------------------------------------------------------------------
    # Port implementation
    # -------------------------------------------------------------------
    def initiate(self, amount: float, currency: str, metadata: dict) -> InitiateResult:
        body = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": str(metadata.get("order_id", "")),
                    "custom_id": str(metadata.get("payment_id", "")),
                    "amount": {"currency_code": currency.upper(), "value": f"{amount:.2f}"},
                }
            ],
            "application_context": {
                "return_url": self.return_url,
                "cancel_url": self.cancel_url,
                "user_action": "PAY_NOW",
            },
        }
        headers = {}
        if metadata.get("payment_id"):
            headers["PayPal-Request-Id"] = str(metadata["payment_id"])

        order = self._send("POST", "/v2/checkout/orders", operation="initiate", json=body, headers=headers)
        approval_url = next(
            (link["href"] for link in order.get("links", []) if link.get("rel") in ("approve", "payer-action")),
            None,
        )
        return InitiateResult(
            external_ref=order["id"],
            status=ORDER_STATUSES.get(order.get("status"), STATUS_PENDING),
            approval_url=approval_url,
        )

    def verify_signature(self, headers: dict, body: bytes) -> bool:
        normalized = {key.lower(): value for key, value in headers.items()}
        if not self.webhook_id or any(not normalized.get(name) for name in _SIGNATURE_HEADERS):
            return False

        try:
            sent_at = datetime.fromisoformat(normalized["paypal-transmission-time"].replace("Z", "+00:00"))
        except ValueError:
            return False
        if abs(utcnow() - as_utc(sent_at)) > timedelta(seconds=self.tolerance):
            logger.warning("PayPal webhook outside tolerance", transmission_time=normalized["paypal-transmission-time"])
            return False

        try:
            event = json.loads(body)
        except ValueError:
            return False

        result = self._send(
            "POST",
            "/v1/notifications/verify-webhook-signature",
            operation="verify_signature",
            json={
                "auth_algo": normalized["paypal-auth-algo"],
                "cert_url": normalized["paypal-cert-url"],
                "transmission_id": normalized["paypal-transmission-id"],
                "transmission_sig": normalized["paypal-transmission-sig"],
                "transmission_time": normalized["paypal-transmission-time"],
                "webhook_id": self.webhook_id,
                "webhook_event": event,
            },
        )
        return result.get("verification_status") == "SUCCESS"

    def parse_event(self, body: bytes) -> GatewayEvent:
        try:
            payload = json.loads(body)
        except ValueError:
            raise GatewayError(self.name, "Malformed webhook body")

        event_type = payload.get("event_type", "")
        resource = payload.get("resource", {})
        related = resource.get("supplementary_data", {}).get("related_ids", {})
        amount = resource.get("amount", {}).get("value")
        status = EVENT_STATUSES.get(event_type)

        return GatewayEvent(
            event_id=payload.get("id", ""),
            event_type=event_type,
            external_ref=related.get("order_id"),
            status=status,
            amount=float(amount) if amount is not None else None,
            refund_ref=resource.get("id") if status == STATUS_REFUNDED else None,
            reason=(resource.get("status_details") or {}).get("reason"),
        )

    def _capture_id(self, external_ref: str) -> str:
        order = self._send("GET", f"/v2/checkout/orders/{external_ref}", operation="refund")
        for unit in order.get("purchase_units", []):
            for capture in unit.get("payments", {}).get("captures", []):
                return capture["id"]
        raise GatewayError(self.name, f"No capture found for order {external_ref}", operation="refund")

    def refund(self, external_ref: str, amount: float | None, currency: str) -> RefundResult:
        capture_id = self._capture_id(external_ref)
        body = {}
        if amount is not None:
            body["amount"] = {"currency_code": currency.upper(), "value": f"{amount:.2f}"}

        refund = self._send("POST", f"/v2/payments/captures/{capture_id}/refund", operation="refund", json=body)
        return RefundResult(refund_ref=refund["id"], status=REFUND_STATUSES.get(refund.get("status"), STATUS_PENDING))

    def fetch_status(self, external_ref: str) -> str:
        order = self._send("GET", f"/v2/checkout/orders/{external_ref}", operation="fetch_status")
        if order.get("status") == "APPROVED":
            order = self._send(
                "POST",
                f"/v2/checkout/orders/{external_ref}/capture",
                operation="capture",
                headers={"PayPal-Request-Id": f"capture-{external_ref}"},
            )
        return ORDER_STATUSES.get(order.get("status"), STATUS_PENDING)
