"""Payment gateway port (abstract interface).

Defines the contract that every gateway adapter implements, so the
orchestrator can drive the card processor, the wallet provider and the
in-memory fake the same way. Adapters raise ``GatewayUnavailableError``
for transient failures (timeouts, connection errors, 5xx) and
``GatewayError`` for everything else the gateway refuses.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass


# Normalized statuses every adapter maps its own vocabulary onto
STATUS_PENDING = "pending"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_REFUNDED = "refunded"


@dataclass(frozen=True)
class InitiateResult:
    """What the client needs to finish paying."""

    external_ref: str
    status: str = STATUS_PENDING
    client_secret: str | None = None
    approval_url: str | None = None


@dataclass(frozen=True)
class GatewayEvent:
    """A webhook or status poll translated into storefront terms."""

    event_id: str
    event_type: str
    external_ref: str | None
    status: str | None  # None: event type we do not act on
    amount: float | None = None
    refund_ref: str | None = None
    reason: str | None = None
    # amount is the running total refunded so far, not this refund alone
    cumulative_amount: bool = False


@dataclass(frozen=True)
class RefundResult:
    refund_ref: str
    status: str  # completed, pending or failed


class PaymentGateway(ABC):
    """Abstract payment gateway interface."""

    name: str = "gateway"

    @abstractmethod
    def initiate(self, amount: float, currency: str, metadata: dict) -> InitiateResult:
        """Open a payment with the provider for ``amount`` in ``currency``."""
        ...

    @abstractmethod
    def verify_signature(self, headers: dict, body: bytes) -> bool:
        """Check that a webhook delivery really comes from the provider."""
        ...

    @abstractmethod
    def parse_event(self, body: bytes) -> GatewayEvent:
        """Translate a verified webhook body into a GatewayEvent."""
        ...

    @abstractmethod
    def refund(self, external_ref: str, amount: float | None, currency: str) -> RefundResult:
        """Refund ``amount`` (everything when None) of a captured payment."""
        ...

    @abstractmethod
    def fetch_status(self, external_ref: str) -> str:
        """Current normalized status of a payment, for polling."""
        ...
