"""
Timing helpers for log fields.

Storage writes, audio decoding and network calls are measured with
``timeit`` and the elapsed seconds are passed to the logging helpers as
the ``seconds`` field.

Example Usage:
    with timeit("store_write", meta={"key": key}) as t:
        backend.write(key, document)
    debug(log, "stored", key=key, seconds=t.timing.seconds)

    @timed("decode")
    def decode(data): ...
"""
from __future__ import annotations

import asyncio
import functools
from dataclasses import dataclass
from time import perf_counter
from typing import Any, Callable, Dict, Optional, TypeVar

T = TypeVar("T")


@dataclass
class Timing:
    """A single measurement: what was timed, how long, optional context."""
    name: str
    seconds: float
    meta: Optional[Dict[str, Any]] = None


class timeit:
    """
    Context manager measuring the wall-clock time of its block.

    The measurement is recorded even when the block raises, so failed
    operations can still be logged with their duration.
    """

    def __init__(self, name: str, meta: Optional[Dict[str, Any]] = None):
        self.name = name
        self.meta = meta
        self._t0: float | None = None
        self.timing: Timing | None = None

    @property
    def seconds(self) -> float:
        """Elapsed seconds so far, or the final duration after exit."""
        if self.timing is not None:
            return self.timing.seconds
        if self._t0 is None:
            return 0.0
        return perf_counter() - self._t0

    def __enter__(self) -> "timeit":
        self._t0 = perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        assert self._t0 is not None
        self.timing = Timing(name=self.name, seconds=perf_counter() - self._t0, meta=self.meta)


def timed(name: str):
    """
    Decorator storing the latest call's Timing on ``wrapper.__timing__``.

    Works for plain functions and coroutine functions alike.
    """
    def deco(fn: Callable[..., T]) -> Callable[..., T]:
        if asyncio.iscoroutinefunction(fn):
            @functools.wraps(fn)
            async def awrapped(*args, **kwargs):
                t0 = perf_counter()
                try:
                    return await fn(*args, **kwargs)
                finally:
                    awrapped.__timing__ = Timing(name=name, seconds=perf_counter() - t0)  # type: ignore[attr-defined]
            return awrapped  # type: ignore[return-value]

        @functools.wraps(fn)
        def wrapped(*args, **kwargs) -> T:
            t0 = perf_counter()
            try:
                return fn(*args, **kwargs)
            finally:
                wrapped.__timing__ = Timing(name=name, seconds=perf_counter() - t0)  # type: ignore[attr-defined]
        return wrapped
    return deco
