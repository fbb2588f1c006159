"""
RequestCoordinator - admission control for speech operations.

At most ``max_concurrent`` operations (default 3) may be live at once.
Unlike a semaphore, the coordinator never queues: an operation that
arrives at the ceiling is rejected immediately with AdmissionRejected
and the caller decides whether to try later.

Lifecycle of a PendingOperation:
    admit(kind) → live → release(id)              normal completion
                       → cancel(...)              caller abort
                       → sweep()                  older than timeout + buffer
                       → shutdown()               context closed

Every removal path except ``release`` fires the operation's
CancellationToken so in-flight network calls and playback abort.

Usage:
    coordinator = RequestCoordinator(max_concurrent=3)
    with coordinator.slot("synthesize") as admission:
        audio = await run_cancellable(fetch(), admission.token, timeout=30)
"""
from __future__ import annotations

import asyncio
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Optional

from speechflow.core.config import Defaults
from speechflow.core.logging import get_logger, info, verbose, warn
from speechflow.core.metrics import SpeechMetrics
from speechflow.errors import AdmissionRejected, ValidationError
from speechflow.speech.tasks import CancellationToken

_LOG = get_logger("speechflow.coordinator")

OPERATION_KINDS = ("transcribe", "synthesize")


@dataclass
class PendingOperation:
    id: str
    kind: str
    started_at: float
    token: CancellationToken


@dataclass
class Admission:
    """Handle returned by ``admit``: the operation id and its token."""
    id: str
    token: CancellationToken


@dataclass
class RequestStatus:
    transcribe: int
    synthesize: int
    total: int


def _new_request_id() -> str:
    return f"req_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class RequestCoordinator:
    """
    Bounded registry of live speech operations.

    Args:
        max_concurrent: Live operations allowed at once.
        request_timeout_s: Expected upper bound of one operation.
        stale_buffer_s: Extra grace before the sweep cancels an operation.
        sweep_interval_s: Period of the background sweep started by ``start``.
        clock: Monotonic clock in seconds (injectable for tests).
        metrics: Optional metrics sink.
    """

    def __init__(
        self,
        max_concurrent: int = Defaults.CONCURRENCY_MAX_CONCURRENT,
        request_timeout_s: float = Defaults.CONCURRENCY_REQUEST_TIMEOUT_S,
        stale_buffer_s: float = Defaults.CONCURRENCY_STALE_BUFFER_S,
        sweep_interval_s: float = Defaults.CONCURRENCY_SWEEP_INTERVAL_S,
        clock: Callable[[], float] = time.monotonic,
        metrics: Optional[SpeechMetrics] = None,
    ):
        self.max_concurrent = max_concurrent
        self.request_timeout_s = request_timeout_s
        self.stale_buffer_s = stale_buffer_s
        self.sweep_interval_s = sweep_interval_s
        self._clock = clock
        self._metrics = metrics
        self._operations: Dict[str, PendingOperation] = {}
        self._sweep_task: Optional[asyncio.Task] = None

    @property
    def live_count(self) -> int:
        return len(self._operations)

    @property
    def running(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    def can_admit(self) -> bool:
        return len(self._operations) < self.max_concurrent

    def admit(self, kind: str) -> Admission:
        """
        Register a new live operation.

        Raises:
            ValidationError: Unknown operation kind.
            AdmissionRejected: The ceiling is already reached.
        """
        if kind not in OPERATION_KINDS:
            raise ValidationError(f"unknown operation kind: {kind}", details={"kind": kind})

        if not self.can_admit():
            if self._metrics is not None:
                self._metrics.record_rejection(kind)
            warn(_LOG, "admission_rejected", kind=kind, live=len(self._operations))
            raise AdmissionRejected(
                "Too many concurrent requests. Please wait and try again.",
                details={"kind": kind, "max_concurrent": self.max_concurrent},
            )

        op = PendingOperation(
            id=_new_request_id(),
            kind=kind,
            started_at=self._clock(),
            token=CancellationToken(),
        )
        self._operations[op.id] = op
        self._publish()
        verbose(_LOG, "admitted", request_id=op.id, kind=kind, live=len(self._operations))
        return Admission(id=op.id, token=op.token)

    def release(self, request_id: str) -> None:
        """Remove an operation regardless of its outcome. Unknown ids are ignored."""
        if self._operations.pop(request_id, None) is not None:
            self._publish()

    @contextmanager
    def slot(self, kind: str) -> Iterator[Admission]:
        admission = self.admit(kind)
        try:
            yield admission
        finally:
            self.release(admission.id)

    def cancel(self, kind: Optional[str] = None, request_id: Optional[str] = None) -> int:
        """
        Cancel live operations.

        With ``request_id``: cancel that operation if its kind matches
        ``kind`` (when given). Without: cancel every operation of ``kind``,
        or every operation when ``kind`` is None.

        Returns:
            Number of operations cancelled.
        """
        if request_id is not None:
            op = self._operations.get(request_id)
            targets = [op] if op is not None and (kind is None or op.kind == kind) else []
        else:
            targets = [op for op in self._operations.values() if kind is None or op.kind == kind]

        for op in targets:
            op.token.cancel("cancelled")
            self._operations.pop(op.id, None)

        if targets:
            self._publish()
            info(_LOG, "operations_cancelled", count=len(targets), kind=kind or "all")
        return len(targets)

    def sweep(self) -> int:
        """Cancel and remove operations older than timeout + buffer."""
        cutoff = self.request_timeout_s + self.stale_buffer_s
        now = self._clock()
        stale: List[PendingOperation] = [
            op for op in self._operations.values() if now - op.started_at > cutoff
        ]
        for op in stale:
            op.token.cancel("timed out")
            self._operations.pop(op.id, None)
            warn(_LOG, "stale_request_cleaned", request_id=op.id, kind=op.kind,
                 age_s=round(now - op.started_at, 1))
        if stale:
            self._publish()
        return len(stale)

    def status(self) -> RequestStatus:
        transcribe = sum(1 for op in self._operations.values() if op.kind == "transcribe")
        synthesize = sum(1 for op in self._operations.values() if op.kind == "synthesize")
        return RequestStatus(transcribe=transcribe, synthesize=synthesize, total=len(self._operations))

    def start(self) -> None:
        """Start the periodic sweep on the running event loop."""
        if self.running:
            return
        self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def stop(self) -> None:
        task, self._sweep_task = self._sweep_task, None
        if task is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel every live operation and stop the sweep."""
        for op in list(self._operations.values()):
            op.token.cancel("shutdown")
        self._operations.clear()
        self._publish()
        await self.stop()

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_s)
            removed = self.sweep()
            if removed:
                verbose(_LOG, "sweep_done", removed=removed)

    def _publish(self) -> None:
        if self._metrics is not None:
            self._metrics.set_live_operations(len(self._operations))
