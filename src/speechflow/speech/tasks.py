"""
Cancellation primitives for speech operations.

A ``CancellationToken`` is handed out with every admitted operation. The
coordinator fires it on cancel, sweep or shutdown; ``run_cancellable``
races the awaited work against the token and a timeout:

    token fires first  → in-flight task cancelled, CancellationError
    timeout first      → in-flight task cancelled, TimeoutError
    work finishes      → its result (or exception) is returned unchanged

Example:
    token = CancellationToken()
    audio = await run_cancellable(gateway.synthesize(text, model), token, timeout=30)
"""
from __future__ import annotations

import asyncio
from typing import Awaitable, Optional, TypeVar

from speechflow.errors import CancellationError, TimeoutError

T = TypeVar("T")


class CancellationToken:
    """One-shot cancellation signal backed by an ``asyncio.Event``."""

    def __init__(self):
        self._event = asyncio.Event()
        self._reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        """Fire the token. Later calls keep the first reason."""
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise CancellationError(f"operation {self._reason}", details={"reason": self._reason})


async def run_cancellable(
    awaitable: Awaitable[T],
    token: Optional[CancellationToken] = None,
    timeout: Optional[float] = None,
) -> T:
    """
    Await ``awaitable`` unless ``token`` fires or ``timeout`` elapses first.

    Raises:
        CancellationError: The token fired before the work completed.
        TimeoutError: The timeout elapsed before the work completed.
    """
    if token is not None and token.cancelled:
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        token.raise_if_cancelled()

    task = asyncio.ensure_future(awaitable)
    waiters = {task}
    cancel_waiter = None
    if token is not None:
        cancel_waiter = asyncio.ensure_future(token.wait())
        waiters.add(cancel_waiter)

    try:
        done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        if cancel_waiter is not None:
            cancel_waiter.cancel()

    if task in done:
        return task.result()

    task.cancel()
    await asyncio.gather(task, return_exceptions=True)

    if cancel_waiter is not None and cancel_waiter in done:
        token.raise_if_cancelled()
    raise TimeoutError(f"operation timed out after {timeout}s", details={"timeout_s": timeout})
