"""
Tests for RetryOrchestrator.

Tests cover:
- Exponential delays (base * 2**attempt) via an injected sleep
- Success after transient failures
- Non-retryable errors propagate after one attempt
- The last error is raised once attempts are exhausted
- A fired token stops the backoff
"""
import asyncio
import time

import pytest

from speechflow.core.metrics import SpeechMetrics
from speechflow.errors import (
    AdmissionRejected,
    CancellationError,
    NetworkError,
    RateLimited,
    TimeoutError,
    ValidationError,
)
from speechflow.speech.retry import RetryOrchestrator, backoff_delays, with_retry
from speechflow.speech.tasks import CancellationToken


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class Flaky:
    """Fails ``failures`` times with ``exc``, then returns ``result``."""

    def __init__(self, failures: int, exc: Exception, result: str = "ok"):
        self.failures = failures
        self.exc = exc
        self.result = result
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc
        return self.result


def test_backoff_delays():
    assert backoff_delays(3, 1.0) == [1.0, 2.0, 4.0]
    assert backoff_delays(0, 1.0) == []


class TestRetry:

    def test_succeeds_after_failures(self):
        sleep = RecordingSleep()
        op = Flaky(2, NetworkError("blip"))

        result = asyncio.run(RetryOrchestrator(max_attempts=2, base_delay=1.0, sleep=sleep).run(op))

        assert result == "ok"
        assert op.calls == 3
        assert sleep.delays == [1.0, 2.0]

    def test_exhausted_raises_last(self):
        sleep = RecordingSleep()
        op = Flaky(10, RateLimited())

        with pytest.raises(RateLimited):
            asyncio.run(RetryOrchestrator(max_attempts=2, sleep=sleep).run(op))
        assert op.calls == 3

    @pytest.mark.parametrize("exc", [
        ValidationError("bad"),
        AdmissionRejected("full"),
        CancellationError(),
        TimeoutError("slow"),
    ])
    def test_non_retryable(self, exc):
        sleep = RecordingSleep()
        op = Flaky(10, exc)

        with pytest.raises(type(exc)):
            asyncio.run(RetryOrchestrator(sleep=sleep).run(op))
        assert op.calls == 1
        assert sleep.delays == []

    def test_generic_exceptions_retried(self):
        sleep = RecordingSleep()
        op = Flaky(1, KeyError("k"))
        assert asyncio.run(RetryOrchestrator(sleep=sleep).run(op)) == "ok"
        assert op.calls == 2

    def test_per_call_overrides(self):
        sleep = RecordingSleep()
        op = Flaky(3, NetworkError("blip"))

        result = asyncio.run(RetryOrchestrator(sleep=sleep).run(op, max_attempts=3, base_delay=0.5))

        assert result == "ok"
        assert sleep.delays == [0.5, 1.0, 2.0]

    def test_zero_attempts(self):
        op = Flaky(1, NetworkError("blip"))
        with pytest.raises(NetworkError):
            asyncio.run(RetryOrchestrator(max_attempts=0, sleep=RecordingSleep()).run(op))
        assert op.calls == 1

    def test_negative_attempts_rejected(self):
        op = Flaky(0, NetworkError("blip"))
        with pytest.raises(ValueError):
            asyncio.run(RetryOrchestrator(max_attempts=-1, sleep=RecordingSleep()).run(op))
        assert op.calls == 0

    def test_retry_metric(self):
        metrics = SpeechMetrics()
        op = Flaky(2, NetworkError("blip"))
        asyncio.run(RetryOrchestrator(sleep=RecordingSleep(), metrics=metrics).run(op))
        assert metrics.value("speechflow_retries_total") == 2.0

    def test_real_sleep_elapses(self):
        op = Flaky(2, NetworkError("blip"))
        t0 = time.perf_counter()
        asyncio.run(with_retry(op, max_attempts=2, base_delay=0.01))
        assert time.perf_counter() - t0 >= 0.025


class TestRetryCancellation:

    def test_token_aborts_backoff(self):
        async def main():
            token = CancellationToken()
            op = Flaky(10, NetworkError("blip"))
            retry = RetryOrchestrator(max_attempts=2, base_delay=10.0)

            async def cancel_soon():
                await asyncio.sleep(0.01)
                token.cancel("cancelled")

            canceller = asyncio.ensure_future(cancel_soon())
            t0 = time.perf_counter()
            with pytest.raises(CancellationError):
                await retry.run(op, token=token)
            await canceller
            return op.calls, time.perf_counter() - t0

        calls, elapsed = asyncio.run(main())
        assert calls == 1
        assert elapsed < 5

    def test_cancelled_token_prevents_first_attempt(self):
        token = CancellationToken()
        token.cancel()
        op = Flaky(0, NetworkError("never"))

        with pytest.raises(CancellationError):
            asyncio.run(RetryOrchestrator(sleep=RecordingSleep()).run(op, token=token))
        assert op.calls == 0
