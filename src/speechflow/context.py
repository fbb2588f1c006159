"""
SpeechContext - owner of every speechflow component.

One context wires storage, cache, ledger, coordinator, retry policy,
gateway and service together from a SpeechflowConfig, and owns the
background tasks (stale-request sweep, storage cleanup). Nothing in
speechflow is a module-level singleton; tests build as many contexts as
they need.

Usage:
    settings = load_settings("config/settings.yaml")
    async with SpeechContext.from_settings(settings) as ctx:
        text = await ctx.service.transcribe(data, "memo.wav", "audio/wav")

    # Or explicitly
    ctx = SpeechContext()
    await ctx.start()
    ...
    await ctx.close()
"""
from __future__ import annotations

import asyncio
import os
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from speechflow.audio.transcoder import AudioTranscoder
from speechflow.core.config import Settings, SpeechflowConfig, load_settings
from speechflow.core.logging import configure_logging, get_logger, info, verbose, warn
from speechflow.core.metrics import SpeechMetrics
from speechflow.services.speech_service import SpeechService
from speechflow.speech.cache import ResponseCache
from speechflow.speech.catalog import VoiceCatalog
from speechflow.speech.coordinator import RequestCoordinator
from speechflow.speech.gateway import HttpSpeechGateway, SpeechGateway
from speechflow.speech.playback import AudioPlayer
from speechflow.speech.retry import RetryOrchestrator
from speechflow.storage.backends import FileBackend, MemoryBackend, StorageBackend
from speechflow.storage.store import PersistentStore
from speechflow.usage.ledger import UsageLedger

_LOG = get_logger("speechflow.context")

_UNSET: Any = object()


def build_backend(config: SpeechflowConfig) -> Optional[StorageBackend]:
    """Storage substrate selected by ``storage.backend``."""
    kind = config.storage.backend
    if kind == "file":
        return FileBackend(config.storage.base_dir)
    if kind == "none":
        return None
    return MemoryBackend()


class SpeechContext:
    """
    Explicit lifecycle object for a speechflow client.

    Args:
        config: Validated configuration (defaults when omitted).
        gateway: Speech endpoints; an HttpSpeechGateway is built from
            ``config.gateway`` when omitted.
        player: Optional playback device.
        backend: Storage substrate override; None disables persistence.
        clock: Wall-clock source shared by store, cache and ledger.
        sleep: Sleep function for retry backoff.
        metrics: Metrics sink; a fresh private registry when omitted.
    """

    def __init__(
        self,
        config: Optional[SpeechflowConfig] = None,
        gateway: Optional[SpeechGateway] = None,
        player: Optional[AudioPlayer] = None,
        backend: Optional[StorageBackend] = _UNSET,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        metrics: Optional[SpeechMetrics] = None,
    ):
        self.config = config or SpeechflowConfig()
        cfg = self.config
        configure_logging(level=os.getenv("SPEECHFLOW_LOG_LEVEL") or cfg.logging.level, force=True)

        self.metrics = metrics or SpeechMetrics()
        self.store = PersistentStore(
            build_backend(cfg) if backend is _UNSET else backend,
            max_bytes=cfg.storage.max_bytes,
            compression_threshold=cfg.storage.compression_threshold,
            max_age_s=cfg.storage.max_age_s,
            clock=clock,
            metrics=self.metrics,
        )
        self.coordinator = RequestCoordinator(
            max_concurrent=cfg.concurrency.max_concurrent,
            request_timeout_s=cfg.concurrency.request_timeout_s,
            stale_buffer_s=cfg.concurrency.stale_buffer_s,
            sweep_interval_s=cfg.concurrency.sweep_interval_s,
            metrics=self.metrics,
        )
        self.retry = RetryOrchestrator(
            max_attempts=cfg.retry.max_attempts,
            base_delay=cfg.retry.base_delay_s,
            sleep=sleep,
            metrics=self.metrics,
        )
        self.cache = ResponseCache(
            self.store,
            max_entries=cfg.cache.max_entries,
            max_bytes=cfg.cache.max_bytes,
            ttl_s=cfg.cache.ttl_s,
            eviction_fraction=cfg.cache.eviction_fraction,
            clock=clock,
            metrics=self.metrics,
        )
        self.ledger = UsageLedger(self.store, cfg.usage, clock=clock, metrics=self.metrics)
        self.transcoder = AudioTranscoder()
        self.gateway = gateway or HttpSpeechGateway(cfg.gateway, timeout_s=cfg.concurrency.request_timeout_s)
        self.catalog = VoiceCatalog(self.gateway, self.store, self.retry, ttl_s=cfg.gateway.catalog_cache_ttl_s)
        self.service = SpeechService(
            gateway=self.gateway,
            coordinator=self.coordinator,
            retry=self.retry,
            cache=self.cache,
            ledger=self.ledger,
            transcoder=self.transcoder,
            catalog=self.catalog,
            player=player,
            audio_config=cfg.audio,
            request_timeout_s=cfg.concurrency.request_timeout_s,
            default_format=cfg.cache.default_format,
            text_preview_chars=cfg.logging.text_preview_chars,
            metrics=self.metrics,
        )

        self._cleanup_task: Optional[asyncio.Task] = None
        self._closed = False

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "SpeechContext":
        """
        Raises:
            ConfigValidationError: If the settings fail validation.
        """
        return cls(SpeechflowConfig.from_settings(settings), **kwargs)

    @classmethod
    def from_yaml(cls, path: str = "config/settings.yaml", **kwargs: Any) -> "SpeechContext":
        return cls.from_settings(load_settings(path), **kwargs)

    @property
    def running(self) -> bool:
        return self._cleanup_task is not None and not self._cleanup_task.done()

    async def start(self) -> None:
        """Start the stale-request sweep and the periodic storage cleanup."""
        if self.running:
            return
        self.coordinator.start()
        self._cleanup_task = asyncio.get_running_loop().create_task(self._cleanup_loop())
        info(_LOG, "context_started", backend=self.config.storage.backend)

    def purge(self) -> Dict[str, int]:
        """Run every maintenance pass once."""
        return {
            "store": self.store.cleanup(),
            "cache": self.cache.cleanup(),
            "usage": self.ledger.purge(),
        }

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.storage.cleanup_interval_s)
            try:
                removed = self.purge()
            except Exception as e:
                warn(_LOG, "cleanup_failed", error=str(e))
                continue
            verbose(_LOG, "cleanup_done", **removed)

    async def close(self) -> None:
        """Cancel live operations, stop background tasks, close the gateway."""
        if self._closed:
            return
        self._closed = True

        await self.coordinator.shutdown()
        task, self._cleanup_task = self._cleanup_task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        await self.gateway.aclose()
        info(_LOG, "context_closed")

    async def __aenter__(self) -> "SpeechContext":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
