"""
SpeechService - the end-to-end speech pipeline.

Every operation follows the same path:

    validate → check daily limits → admit (RequestCoordinator)
      → [synthesis] cache read
      → network call (RetryOrchestrator + run_cancellable)
      → [synthesis] cache write
      → usage tracking
      → release

Caching and usage tracking are best effort: their failures are logged
and never abort the primary operation. Network, validation, admission,
cancellation and limit errors propagate to the caller unchanged. Every
network outcome, whatever the exception type, is written to the ledger.
Upload compression runs in a worker thread so other operations keep
running while large files are re-encoded.

Example:
    >>> async with SpeechContext() as ctx:
    ...     result = await ctx.service.transcribe(wav_bytes, "memo.wav", "audio/wav")
    ...     audio = await ctx.service.synthesize("Hello there", "aura-asteria-en")
"""
from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, List, Optional

from speechflow.audio.transcoder import AudioTranscoder, compressed_filename
from speechflow.core.config import AudioConfig, Defaults
from speechflow.core.logging import error, fail, get_logger, info, set_operation_id, success, warn
from speechflow.core.metrics import SpeechMetrics
from speechflow.errors import CancellationError, ValidationError
from speechflow.speech.cache import ResponseCache
from speechflow.speech.catalog import VoiceCatalog
from speechflow.speech.coordinator import Admission, RequestCoordinator, RequestStatus
from speechflow.speech.gateway import ServiceHealth, SpeechGateway, TranscriptResult
from speechflow.speech.playback import AudioPlayer
from speechflow.speech.retry import RetryOrchestrator
from speechflow.speech.tasks import run_cancellable
from speechflow.usage.ledger import UsageLedger

_LOG = get_logger("speechflow.service")

DEFAULT_MODEL = "default"
PROVIDER = "deepgram"


def _error_code(e: BaseException) -> str:
    return getattr(e, "code", None) or type(e).__name__


class SpeechService:
    """
    Orchestrates transcription, synthesis and playback.

    Args:
        gateway: Remote speech endpoints.
        coordinator: Admission control.
        retry: Backoff policy for network calls.
        cache: Synthesized speech cache.
        ledger: Usage and limit tracking.
        transcoder: Upload compression.
        catalog: Voice model list.
        player: Optional playback device for ``speak``.
        audio_config: Upload/text limits and compression policy.
        request_timeout_s: Timeout of one network attempt.
        default_format: Audio format used for cache keys.
        metrics: Optional metrics sink.
    """

    def __init__(
        self,
        gateway: SpeechGateway,
        coordinator: RequestCoordinator,
        retry: RetryOrchestrator,
        cache: ResponseCache,
        ledger: UsageLedger,
        transcoder: Optional[AudioTranscoder] = None,
        catalog: Optional[VoiceCatalog] = None,
        player: Optional[AudioPlayer] = None,
        audio_config: Optional[AudioConfig] = None,
        request_timeout_s: float = Defaults.CONCURRENCY_REQUEST_TIMEOUT_S,
        default_format: str = Defaults.CACHE_DEFAULT_FORMAT,
        text_preview_chars: int = Defaults.LOGGING_TEXT_PREVIEW_CHARS,
        metrics: Optional[SpeechMetrics] = None,
    ):
        self._gateway = gateway
        self._coordinator = coordinator
        self._retry = retry
        self._cache = cache
        self._ledger = ledger
        self._transcoder = transcoder or AudioTranscoder()
        self._catalog = catalog
        self._player = player
        self._audio = audio_config or AudioConfig()
        self._timeout = request_timeout_s
        self._default_format = default_format
        self._preview = text_preview_chars
        self._metrics = metrics

    # ─────────────────────────────────────────────────────────────────────────
    # Validation
    # ─────────────────────────────────────────────────────────────────────────

    def _validate_file(self, data: Optional[bytes]) -> None:
        if not data:
            raise ValidationError("No file provided for transcription")
        if len(data) > self._audio.max_upload_bytes:
            raise ValidationError(
                f"File too large. Maximum size is {self._audio.max_upload_bytes // (1024 * 1024)}MB.",
                details={"size": len(data), "max": self._audio.max_upload_bytes},
            )

    def _validate_text(self, text: Optional[str]) -> None:
        if not text or not text.strip():
            raise ValidationError("No text provided for speech synthesis")
        if len(text) > self._audio.max_text_chars:
            raise ValidationError(
                f"Text too long. Maximum length is {self._audio.max_text_chars} characters.",
                details={"length": len(text), "max": self._audio.max_text_chars},
            )

    # ─────────────────────────────────────────────────────────────────────────
    # Best-effort side effects
    # ─────────────────────────────────────────────────────────────────────────

    def _track(self, kind: str, metadata: Dict[str, Any]) -> Optional[str]:
        try:
            return self._ledger.track(kind, PROVIDER, metadata)
        except Exception as e:
            warn(_LOG, "usage_tracking_failed", kind=kind, error=str(e))
            return None

    def _cache_get(self, text: str, model_id: str, fmt: str) -> Optional[bytes]:
        try:
            return self._cache.get(text, model_id, fmt)
        except Exception as e:
            warn(_LOG, "cache_read_failed", error=str(e))
            return None

    def _cache_put(self, text: str, model_id: str, fmt: str, audio: bytes) -> None:
        try:
            self._cache.put(text, model_id, fmt, audio)
        except Exception as e:
            warn(_LOG, "cache_write_failed", error=str(e))

    def _record(self, kind: str, status: str, started: float) -> None:
        if self._metrics is not None:
            self._metrics.record_operation(kind, status, time.perf_counter() - started)

    # ─────────────────────────────────────────────────────────────────────────
    # Transcription
    # ─────────────────────────────────────────────────────────────────────────

    def _prepare_upload(self, data: bytes, filename: str, mime_type: str) -> tuple[bytes, str, str]:
        """Compress large uploads when that saves at least 20 %."""
        if len(data) <= self._audio.compress_above_bytes:
            return data, filename, mime_type

        result = self._transcoder.compress(data, mime_type)
        if result.compression_ratio < self._audio.min_saving_ratio:
            info(
                _LOG, "upload_compressed",
                original_kb=round(result.original_size / 1024, 1),
                compressed_kb=round(result.compressed_size / 1024, 1),
            )
            return result.payload, compressed_filename(filename, "ogg"), result.format
        return data, filename, mime_type

    async def transcribe(
        self,
        data: Optional[bytes],
        filename: str = "audio.wav",
        mime_type: str = "audio/wav",
    ) -> TranscriptResult:
        """
        Transcribe an audio file.

        Raises:
            ValidationError: Missing or oversized file.
            DailyLimitExceeded: A daily usage limit is reached.
            AdmissionRejected: Too many live operations.
            CancellationError: The operation was cancelled.
            TimeoutError: An attempt exceeded the request timeout.
            NetworkError: The service failed after retries.
        """
        self._validate_file(data)
        self._ledger.ensure_within_limits("transcribe")

        started = time.perf_counter()
        with self._coordinator.slot("transcribe") as admission:
            set_operation_id(admission.id)
            upload, upload_name, upload_mime = await asyncio.to_thread(
                self._prepare_upload, data, filename, mime_type,
            )

            try:
                result = await self._retry.run(
                    lambda: run_cancellable(
                        self._gateway.transcribe(upload, upload_name, upload_mime),
                        admission.token,
                        timeout=self._timeout,
                    ),
                    token=admission.token,
                )
            except Exception as e:
                code = _error_code(e)
                self._track("transcribe", {"file_size": len(data), "success": False, "error": code})
                self._record("transcribe", "cancelled" if isinstance(e, CancellationError) else "error", started)
                fail(_LOG, "transcription_failed", error=code, message=str(e))
                raise

            self._track("transcribe", {
                "file_size": len(data),
                "duration": result.duration,
                "format": mime_type,
                "success": True,
            })
            self._record("transcribe", "success", started)
            success(_LOG, "transcribed", chars=len(result.transcript),
                    seconds=round(time.perf_counter() - started, 3))
            return result

    def cancel_transcription(self, request_id: Optional[str] = None) -> int:
        return self._coordinator.cancel("transcribe", request_id)

    # ─────────────────────────────────────────────────────────────────────────
    # Synthesis
    # ─────────────────────────────────────────────────────────────────────────

    async def _synthesize_admitted(self, admission: Admission, text: str, model_id: str, fmt: str) -> bytes:
        set_operation_id(admission.id)
        started = time.perf_counter()

        cached = self._cache_get(text, model_id, fmt)
        if cached is not None:
            self._record("synthesize", "cached", started)
            return cached

        try:
            audio = await self._retry.run(
                lambda: run_cancellable(
                    self._gateway.synthesize(text, model_id),
                    admission.token,
                    timeout=self._timeout,
                ),
                token=admission.token,
            )
        except Exception as e:
            code = _error_code(e)
            self._track("synthesize", {
                "text_length": len(text), "model": model_id, "success": False, "error": code,
            })
            self._record("synthesize", "cancelled" if isinstance(e, CancellationError) else "error", started)
            fail(_LOG, "synthesis_failed", error=code, message=str(e))
            raise

        self._cache_put(text, model_id, fmt, audio)
        self._track("synthesize", {
            "text_length": len(text), "model": model_id, "format": fmt, "success": True,
        })
        self._record("synthesize", "success", started)
        success(_LOG, "synthesized", text=text[: self._preview], bytes=len(audio),
                seconds=round(time.perf_counter() - started, 3))
        return audio

    async def synthesize(self, text: str, model_id: Optional[str] = None, fmt: Optional[str] = None) -> bytes:
        """
        Synthesize ``text`` and return the audio bytes (cached when possible).

        Raises:
            ValidationError, DailyLimitExceeded, AdmissionRejected,
            CancellationError, TimeoutError, NetworkError, SynthesisError
        """
        self._validate_text(text)
        self._ledger.ensure_within_limits("synthesize")
        with self._coordinator.slot("synthesize") as admission:
            return await self._synthesize_admitted(
                admission, text, model_id or DEFAULT_MODEL, fmt or self._default_format,
            )

    async def speak(self, text: str, model_id: Optional[str] = None, fmt: Optional[str] = None) -> None:
        """Synthesize and play ``text``; playback stops when the operation is cancelled."""
        if self._player is None:
            raise ValidationError("No audio player configured")
        self._validate_text(text)
        self._ledger.ensure_within_limits("synthesize")

        fmt = fmt or self._default_format
        with self._coordinator.slot("synthesize") as admission:
            audio = await self._synthesize_admitted(admission, text, model_id or DEFAULT_MODEL, fmt)
            await run_cancellable(self._player.play(audio, fmt, admission.token), admission.token)

    def cancel_synthesis(self, request_id: Optional[str] = None) -> int:
        return self._coordinator.cancel("synthesize", request_id)

    # ─────────────────────────────────────────────────────────────────────────
    # Catalog, health, status
    # ─────────────────────────────────────────────────────────────────────────

    async def voice_models(self, force_refresh: bool = False) -> List[Dict[str, Any]]:
        if self._catalog is None:
            return []
        models = await self._catalog.models(force_refresh=force_refresh)
        if self._catalog.last_fetch_from_network:
            self._track("catalog", {"success": True, "count": len(models)})
        return models

    async def health(self) -> ServiceHealth:
        try:
            return await self._gateway.health()
        except Exception as e:
            error(_LOG, "health_check_failed", error=str(e))
            return ServiceHealth(available=False, services={})

    def status(self) -> RequestStatus:
        return self._coordinator.status()
