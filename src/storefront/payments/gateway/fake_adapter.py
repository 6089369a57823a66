"""Configurable fake payment gateway for development and testing.

This adapter simulates a real payment gateway without any external calls.
It can be configured at runtime to succeed, decline, or time out a given
number of times, which makes it useful for:
- Automated tests with predictable outcomes
- Development without real gateway credentials

Webhook deliveries are plain JSON
(``{"id", "type", "external_ref", "amount", "refund_ref", "reason"}``,
plus ``"cumulative": true`` when ``amount`` is a running refund total)
signed with the fixed ``x-gateway-signature: test-signature`` header.
"""

import json
from uuid import uuid4

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

SIGNATURE_HEADER = "x-gateway-signature"
TEST_SIGNATURE = "test-signature"

EVENT_STATUSES = {
    "payment.succeeded": STATUS_COMPLETED,
    "payment.failed": STATUS_FAILED,
    "payment.refunded": STATUS_REFUNDED,
}


class FakeGateway(PaymentGateway):
    """Configurable fake payment gateway."""

    def __init__(self, name: str = "fake") -> None:
        self.name = name
        self.should_succeed: bool = True
        self.failure_reason: str = "Card declined"
        self.fail_times: int = 0
        self.refund_status: str = STATUS_COMPLETED
        self.calls: list[dict] = []
        self._statuses: dict[str, str] = {}

    def configure(
        self,
        should_succeed: bool = True,
        failure_reason: str = "Card declined",
        fail_times: int = 0,
        refund_status: str = STATUS_COMPLETED,
    ) -> None:
        """Configure gateway behavior at runtime.

        ``fail_times`` makes the next N calls time out before behaving
        normally again.
        """
        self.should_succeed = should_succeed
        self.failure_reason = failure_reason
        self.fail_times = fail_times
        self.refund_status = refund_status

    def set_status(self, external_ref: str, status: str) -> None:
        """Set what ``fetch_status`` reports for a payment."""
        self._statuses[external_ref] = status

    def _maybe_time_out(self) -> None:
        if self.fail_times > 0:
            self.fail_times -= 1
            raise GatewayUnavailableError(self.name, "Simulated gateway timeout")

    def initiate(self, amount: float, currency: str, metadata: dict) -> InitiateResult:
        self.calls.append({"method": "initiate", "amount": amount, "currency": currency, "metadata": metadata})
        self._maybe_time_out()
        if not self.should_succeed:
            raise GatewayError(self.name, self.failure_reason)

        external_ref = f"fake_pay_{uuid4().hex[:12]}"
        self._statuses[external_ref] = STATUS_PENDING
        return InitiateResult(
            external_ref=external_ref,
            status=STATUS_PENDING,
            client_secret=f"{external_ref}_secret",
        )

    def verify_signature(self, headers: dict, body: bytes) -> bool:  # noqa: ARG002
        normalized = {key.lower(): value for key, value in headers.items()}
        return normalized.get(SIGNATURE_HEADER) == TEST_SIGNATURE

    def parse_event(self, body: bytes) -> GatewayEvent:
        try:
            payload = json.loads(body)
        except ValueError:
            raise GatewayError(self.name, "Malformed webhook body")

        event_type = payload.get("type", "")
        return GatewayEvent(
            event_id=str(payload.get("id") or uuid4().hex),
            event_type=event_type,
            external_ref=payload.get("external_ref"),
            status=EVENT_STATUSES.get(event_type),
            amount=payload.get("amount"),
            refund_ref=payload.get("refund_ref"),
            reason=payload.get("reason"),
            cumulative_amount=bool(payload.get("cumulative", False)),
        )

    def refund(self, external_ref: str, amount: float | None, currency: str) -> RefundResult:
        self.calls.append({"method": "refund", "external_ref": external_ref, "amount": amount, "currency": currency})
        self._maybe_time_out()
        if not self.should_succeed:
            raise GatewayError(self.name, self.failure_reason)

        return RefundResult(refund_ref=f"fake_ref_{uuid4().hex[:12]}", status=self.refund_status)

    def fetch_status(self, external_ref: str) -> str:
        self.calls.append({"method": "fetch_status", "external_ref": external_ref})
        self._maybe_time_out()
        return self._statuses.get(external_ref, STATUS_PENDING)

    @staticmethod
    def event_body(event_type: str, external_ref: str, event_id: str | None = None, **extra) -> bytes:
        """Build a webhook body the way the fake provider would send it."""
        payload = {"id": event_id or f"evt_{uuid4().hex[:12]}", "type": event_type, "external_ref": external_ref}
        payload.update(extra)
        return json.dumps(payload).encode()
