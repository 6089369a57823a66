"""Payment gateway registry.

Provides get_gateway() / set_gateway() to swap implementations per name:
- FakeGateway for development and testing (``PAYMENT_GATEWAY_MODE=fake``)
- CardGateway (Stripe) and WalletGateway (PayPal) in ``live`` mode
"""

from storefront.errors import DomainValidationError
from storefront.payments.gateway.card_adapter import CardGateway
from storefront.payments.gateway.fake_adapter import FakeGateway
from storefront.payments.gateway.port import PaymentGateway
from storefront.payments.gateway.wallet_adapter import WalletGateway
from storefront.settings import get_settings

CARD = "card"
WALLET = "wallet"
GATEWAY_NAMES = (CARD, WALLET)

_gateways: dict[str, PaymentGateway] = {}


def _build(name: str) -> PaymentGateway:
    settings = get_settings()
    if settings.payment_gateway_mode != "live":
        return FakeGateway(name)

    if name == CARD:
        return CardGateway(
            api_key=settings.stripe_api_key,
            webhook_secret=settings.stripe_webhook_secret,
            timeout=settings.gateway_timeout_seconds,
            tolerance=settings.webhook_tolerance_seconds,
        )
    return WalletGateway(
        client_id=settings.paypal_client_id,
        client_secret=settings.paypal_client_secret,
        webhook_id=settings.paypal_webhook_id,
        base_url=settings.paypal_base_url,
        return_url=settings.paypal_return_url,
        cancel_url=settings.paypal_cancel_url,
        timeout=settings.gateway_timeout_seconds,
        tolerance=settings.webhook_tolerance_seconds,
    )


def get_gateway(name: str) -> PaymentGateway:
    """Return the adapter registered for ``name``, building the default on first use."""
    if name not in GATEWAY_NAMES:
        raise DomainValidationError(f"Unknown payment gateway {name}", gateway=name)
    if name not in _gateways:
        _gateways[name] = _build(name)
    return _gateways[name]


def set_gateway(name: str, gateway: PaymentGateway) -> None:
    """Override the adapter for ``name`` (useful for tests)."""
    if name not in GATEWAY_NAMES:
        raise DomainValidationError(f"Unknown payment gateway {name}", gateway=name)
    _gateways[name] = gateway


def reset_gateways() -> None:
    _gateways.clear()
