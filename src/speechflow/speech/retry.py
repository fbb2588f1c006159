"""
RetryOrchestrator - exponential backoff for transient failures.

    attempt 0 fails → sleep(base_delay * 1)
    attempt 1 fails → sleep(base_delay * 2)
    attempt 2 fails → raise last error        (max_attempts = 2)

Errors flagged non-retryable (validation, admission, cancellation,
timeouts, unreachable network, decode failures, daily limits) propagate
immediately and unchanged. Everything else, including exceptions that
are not SpeechErrors, is treated as transient.
"""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

from speechflow.core.config import Defaults
from speechflow.core.logging import get_logger, verbose, warn
from speechflow.core.metrics import SpeechMetrics
from speechflow.errors import is_retryable
from speechflow.speech.tasks import CancellationToken, run_cancellable

T = TypeVar("T")

_LOG = get_logger("speechflow.retry")

SleepFn = Callable[[float], Awaitable[Any]]


def backoff_delays(max_attempts: int, base_delay: float) -> List[float]:
    """Delays slept between attempts, in seconds."""
    return [base_delay * 2 ** attempt for attempt in range(max_attempts)]


class RetryOrchestrator:
    """
    Retry wrapper with an injectable sleep.

    Args:
        max_attempts: Extra attempts after the first one.
        base_delay: Seconds slept before the first retry, doubled after.
        sleep: Awaitable sleep function (``asyncio.sleep`` by default).
        metrics: Optional metrics sink counting retries.
    """

    def __init__(
        self,
        max_attempts: int = Defaults.RETRY_MAX_ATTEMPTS,
        base_delay: float = Defaults.RETRY_BASE_DELAY_S,
        sleep: SleepFn = asyncio.sleep,
        metrics: Optional[SpeechMetrics] = None,
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self._sleep = sleep
        self._metrics = metrics

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        token: Optional[CancellationToken] = None,
    ) -> T:
        """
        Await ``operation()`` with retries.

        A ``token`` aborts the backoff sleep and prevents further attempts.
        """
        attempts = self.max_attempts if max_attempts is None else max_attempts
        delay_base = self.base_delay if base_delay is None else base_delay
        last_error: Optional[BaseException] = None

        for attempt in range(attempts + 1):
            if token is not None:
                token.raise_if_cancelled()
            try:
                return await operation()
            except Exception as e:
                if not is_retryable(e):
                    raise
                last_error = e
                if attempt >= attempts:
                    break

                delay = delay_base * 2 ** attempt
                warn(
                    _LOG, "retrying",
                    attempt=attempt + 1, of=attempts + 1, delay_s=delay,
                    error=type(e).__name__,
                )
                if self._metrics is not None:
                    self._metrics.inc_retries()
                if token is not None:
                    await run_cancellable(self._sleep(delay), token)
                else:
                    await self._sleep(delay)

        verbose(_LOG, "retries_exhausted", attempts=attempts + 1)
        if last_error is None:
            raise ValueError(f"max_attempts must be >= 0, got {attempts}")
        raise last_error


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = Defaults.RETRY_MAX_ATTEMPTS,
    base_delay: float = Defaults.RETRY_BASE_DELAY_S,
    sleep: SleepFn = asyncio.sleep,
) -> T:
    """Functional form of ``RetryOrchestrator.run``."""
    return await RetryOrchestrator(max_attempts, base_delay, sleep).run(operation)
