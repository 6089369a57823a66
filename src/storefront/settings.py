"""Application settings read from the environment.

Protean's own configuration (providers, processing mode) lives in
``domain.toml`` and is selected by ``PROTEAN_ENV``. Everything the
storefront needs on top of that is collected here once and cached.
"""

import os
from dataclasses import dataclass


def _env_int(name: str, default: int | None) -> int | None:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return float(raw)


@dataclass(frozen=True)
class Settings:
    environment: str = "development"
    reservation_ttl_minutes: int = 15
    gateway_timeout_seconds: float = 10.0
    gateway_max_retries: int = 2
    gateway_retry_backoff_seconds: float = 0.5
    webhook_tolerance_seconds: int = 300
    payment_amount_tolerance: float = 0.01
    payment_failure_grace_minutes: int | None = None
    pending_payment_abandon_minutes: int = 30
    payment_gateway_mode: str = "fake"
    stripe_api_key: str = ""
    stripe_webhook_secret: str = ""
    paypal_client_id: str = ""
    paypal_client_secret: str = ""
    paypal_webhook_id: str = ""
    paypal_base_url: str = "https://api-m.sandbox.paypal.com"
    paypal_return_url: str = "http://localhost:8000/payments/wallet/return"
    paypal_cancel_url: str = "http://localhost:8000/payments/wallet/cancel"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @classmethod
    def from_env(cls) -> "Settings":
        environment = os.environ.get("PROTEAN_ENV", "development").lower()
        default_mode = "live" if environment == "production" else "fake"
        return cls(
            environment=environment,
            reservation_ttl_minutes=_env_int("RESERVATION_TTL_MINUTES", 15),
            gateway_timeout_seconds=_env_float("GATEWAY_TIMEOUT_SECONDS", 10.0),
            gateway_max_retries=_env_int("GATEWAY_MAX_RETRIES", 2),
            gateway_retry_backoff_seconds=_env_float("GATEWAY_RETRY_BACKOFF_SECONDS", 0.5),
            webhook_tolerance_seconds=_env_int("WEBHOOK_TOLERANCE_SECONDS", 300),
            payment_amount_tolerance=_env_float("PAYMENT_AMOUNT_TOLERANCE", 0.01),
            payment_failure_grace_minutes=_env_int("PAYMENT_FAILURE_GRACE_MINUTES", None),
            pending_payment_abandon_minutes=_env_int("PENDING_PAYMENT_ABANDON_MINUTES", 30),
            payment_gateway_mode=os.environ.get("PAYMENT_GATEWAY_MODE", default_mode).lower(),
            stripe_api_key=os.environ.get("STRIPE_API_KEY", ""),
            stripe_webhook_secret=os.environ.get("STRIPE_WEBHOOK_SECRET", ""),
            paypal_client_id=os.environ.get("PAYPAL_CLIENT_ID", ""),
            paypal_client_secret=os.environ.get("PAYPAL_CLIENT_SECRET", ""),
            paypal_webhook_id=os.environ.get("PAYPAL_WEBHOOK_ID", ""),
            paypal_base_url=os.environ.get("PAYPAL_BASE_URL", "https://api-m.sandbox.paypal.com"),
            paypal_return_url=os.environ.get("PAYPAL_RETURN_URL", "http://localhost:8000/payments/wallet/return"),
            paypal_cancel_url=os.environ.get("PAYPAL_CANCEL_URL", "http://localhost:8000/payments/wallet/cancel"),
        )


_current_settings: Settings | None = None


def get_settings() -> Settings:
    """Return the active settings, loading them from the environment once."""
    global _current_settings
    if _current_settings is None:
        _current_settings = Settings.from_env()
    return _current_settings


def set_settings(settings: Settings) -> None:
    """Override the active settings (useful for tests)."""
    global _current_settings
    _current_settings = settings


def reset_settings() -> None:
    """Forget cached settings so the next call re-reads the environment."""
    global _current_settings
    _current_settings = None
