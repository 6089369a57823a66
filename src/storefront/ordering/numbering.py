"""Human-facing order numbers: ``ORD-<base36 epoch millis>-<4 random base36>``."""

import secrets
import time

from protean.utils.globals import current_domain

from storefront.errors import ConflictError
from storefront.ordering.order import Order

PREFIX = "ORD"
MAX_ATTEMPTS = 10

_ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"


def _base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(_ALPHABET[remainder])
    return "".join(reversed(digits))


def _candidate() -> str:
    timestamp = _base36(int(time.time() * 1000))
    suffix = "".join(secrets.choice(_ALPHABET) for _ in range(4))
    return f"{PREFIX}-{timestamp}-{suffix}"


def generate_order_number() -> str:
    """Generate an order number not used by any stored order."""
    repo = current_domain.repository_for(Order)
    for _ in range(MAX_ATTEMPTS):
        candidate = _candidate()
        if repo.find_by_number(candidate) is None:
            return candidate
    raise ConflictError("Could not allocate a unique order number")
