"""Bounded retry for outbound gateway calls."""

import time
from collections.abc import Callable
from typing import TypeVar

import structlog
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from storefront.errors import GatewayUnavailableError
from storefront.settings import get_settings

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def call_with_retry(gateway: str, operation: str, func: Callable[[], T], retries=None, backoff=None) -> T:
    """Call ``func``, retrying transient failures a fixed number of times.

    Only ``GatewayUnavailableError`` is retried; any other ``GatewayError``
    is a definitive answer from the gateway and propagates at once. The last
    transient error propagates after the retries are used up.
    """
    settings = get_settings()
    retries = settings.gateway_max_retries if retries is None else retries
    backoff = settings.gateway_retry_backoff_seconds if backoff is None else backoff

    def _log_retry(retry_state) -> None:
        logger.warning(
            "Gateway call failed, retrying",
            gateway=gateway,
            operation=operation,
            attempt=retry_state.attempt_number,
            error=str(retry_state.outcome.exception()),
        )

    retrying = Retrying(
        retry=retry_if_exception_type(GatewayUnavailableError),
        stop=stop_after_attempt(retries + 1),
        wait=wait_fixed(backoff),
        sleep=time.sleep,
        before_sleep=_log_retry,
        reraise=True,
    )
    try:
        return retrying(func)
    except GatewayUnavailableError as exc:
        logger.error(
            "Gateway call failed after retries",
            gateway=gateway,
            operation=operation,
            attempts=retries + 1,
            error=str(exc),
        )
        raise
