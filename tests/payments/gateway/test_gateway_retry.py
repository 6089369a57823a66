"""Tests for the gateway retry helper."""

import pytest
from storefront.errors import GatewayError, GatewayUnavailableError
from storefront.payments.gateway.retry import call_with_retry


class _Flaky:
    def __init__(self, failures, error=GatewayUnavailableError):
        self.failures = failures
        self.error = error
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error("card", "boom")
        return "ok"


class TestCallWithRetry:
    def test_success_first_time(self):
        func = _Flaky(0)
        assert call_with_retry("card", "initiate", func) == "ok"
        assert func.calls == 1

    def test_transient_errors_are_retried(self):
        func = _Flaky(2)
        assert call_with_retry("card", "initiate", func, retries=2, backoff=0) == "ok"
        assert func.calls == 3

    def test_gives_up_after_retries(self):
        func = _Flaky(5)
        with pytest.raises(GatewayUnavailableError):
            call_with_retry("card", "initiate", func, retries=2, backoff=0)
        assert func.calls == 3

    def test_definitive_errors_are_not_retried(self):
        func = _Flaky(5, error=GatewayError)
        with pytest.raises(GatewayError):
            call_with_retry("card", "initiate", func, retries=2, backoff=0)
        assert func.calls == 1

    def test_backoff_sleeps_between_attempts(self, monkeypatch):
        sleeps = []
        monkeypatch.setattr("storefront.payments.gateway.retry.time.sleep", sleeps.append)

        call_with_retry("card", "initiate", _Flaky(2), retries=2, backoff=0.25)
        assert sleeps == [0.25, 0.25]
