"""
Speech service gateway.

``SpeechGateway`` is the seam between the orchestration layer and the
remote speech endpoints; ``HttpSpeechGateway`` talks to them with httpx.

Endpoints:
    POST /api/transcribe     multipart upload, field "audio"
                             → {"transcript": str, "words": [...], "duration": float}
    POST /api/tts            {"text": str, "model": str} → audio bytes
    GET  /api/voice-models   → {"voiceModels": [...]}
    GET  /api/health         health probe
    HEAD /api/voice-models   catalog probe

Status mapping:
    429                      → RateLimited
    503                      → ServiceUnavailable
    other non-2xx            → NetworkError
    httpx.ConnectError       → NetworkUnreachable
    httpx.TimeoutException   → TimeoutError
    other transport errors   → NetworkError
"""
from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from speechflow.core.config import GatewayConfig
from speechflow.core.logging import debug, get_logger, verbose, warn
from speechflow.errors import (
    NetworkError,
    NetworkUnreachable,
    RateLimited,
    ServiceUnavailable,
    SynthesisError,
    TimeoutError,
)
from speechflow.utils.timeit import timeit

_LOG = get_logger("speechflow.gateway")


@dataclass
class TranscriptResult:
    transcript: str
    words: List[Dict[str, Any]] = field(default_factory=list)
    duration: Optional[float] = None


@dataclass
class ServiceHealth:
    """Reachability of the remote speech services."""
    available: bool
    services: Dict[str, bool]


class SpeechGateway(ABC):
    """Remote speech endpoints."""

    @abstractmethod
    async def transcribe(self, audio: bytes, filename: str, mime_type: str) -> TranscriptResult:
        ...

    @abstractmethod
    async def synthesize(self, text: str, model_id: str) -> bytes:
        ...

    @abstractmethod
    async def voice_models(self) -> List[Dict[str, Any]]:
        ...

    async def health(self) -> ServiceHealth:
        return ServiceHealth(available=True, services={})

    async def aclose(self) -> None:
        return None


def raise_for_status(response: httpx.Response, what: str) -> None:
    """Map a non-2xx response onto the error hierarchy."""
    if response.is_success:
        return
    details = {"status_code": response.status_code, "endpoint": what}
    if response.status_code == 429:
        raise RateLimited(f"Rate limit exceeded for {what}", details=details)
    if response.status_code == 503:
        raise ServiceUnavailable(f"{what} service temporarily unavailable", details=details)
    raise NetworkError(f"{what} failed: {response.status_code} {response.reason_phrase}", details=details)


class HttpSpeechGateway(SpeechGateway):
    """
    httpx implementation of SpeechGateway.

    Args:
        config: Endpoint configuration (base URL, paths, timeouts).
        client: Optional pre-built AsyncClient; the gateway closes only
            clients it created itself.
        transport: Optional httpx transport, e.g. ``httpx.MockTransport``.
        timeout_s: Default per-request timeout.
    """

    def __init__(
        self,
        config: Optional[GatewayConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout_s: float = 30.0,
    ):
        self.config = config or GatewayConfig()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self.config.base_url,
            transport=transport,
            timeout=httpx.Timeout(timeout_s),
        )

    async def _request(self, method: str, path: str, what: str, **kwargs: Any) -> httpx.Response:
        try:
            with timeit(what) as t:
                response = await self._client.request(method, path, **kwargs)
        except httpx.ConnectError as e:
            raise NetworkUnreachable(
                "Network error. Please check your connection and try again.",
                details={"endpoint": what, "error": str(e)},
            ) from e
        except httpx.TimeoutException as e:
            raise TimeoutError(f"{what} request timed out", details={"endpoint": what}) from e
        except httpx.RequestError as e:
            raise NetworkError(f"{what} request failed: {e}", details={"endpoint": what}) from e

        debug(_LOG, "http_response", endpoint=what, status=response.status_code,
              seconds=round(t.timing.seconds, 4) if t.timing else None)
        return response

    async def transcribe(self, audio: bytes, filename: str, mime_type: str) -> TranscriptResult:
        response = await self._request(
            "POST",
            self.config.transcribe_path,
            "transcription",
            files={"audio": (filename, audio, mime_type)},
        )
        raise_for_status(response, "transcription")

        try:
            body = response.json()
        except ValueError as e:
            raise NetworkError("invalid transcription response", details={"error": str(e)}) from e

        transcript = body.get("transcript") if isinstance(body, dict) else None
        if not transcript:
            raise NetworkError("No transcript received from service", details={"endpoint": "transcription"})

        duration = body.get("duration")
        return TranscriptResult(
            transcript=transcript,
            words=list(body.get("words") or []),
            duration=float(duration) if duration is not None else None,
        )

    async def synthesize(self, text: str, model_id: str) -> bytes:
        response = await self._request(
            "POST",
            self.config.synthesize_path,
            "synthesis",
            json={"text": text, "model": model_id},
        )
        raise_for_status(response, "synthesis")

        if not response.content:
            raise SynthesisError("Received empty audio response", details={"model": model_id})
        return response.content

    async def voice_models(self) -> List[Dict[str, Any]]:
        response = await self._request(
            "GET",
            self.config.voice_models_path,
            "voice models",
            timeout=self.config.catalog_timeout_s,
        )
        raise_for_status(response, "voice models")

        try:
            body = response.json()
        except ValueError as e:
            raise NetworkError("invalid voice models response", details={"error": str(e)}) from e
        models = body.get("voiceModels") if isinstance(body, dict) else None
        return list(models or [])

    async def _probe(self, method: str, path: str) -> bool:
        try:
            response = await self._request(method, path, f"probe {path}", timeout=self.config.health_timeout_s)
        except (NetworkError, TimeoutError) as e:
            verbose(_LOG, "health_probe_failed", path=path, error=e.message)
            return False
        return response.is_success

    async def health(self) -> ServiceHealth:
        """Probe /api/health and HEAD /api/voice-models concurrently."""
        health_ok, models_ok = await asyncio.gather(
            self._probe("GET", self.config.health_path),
            self._probe("HEAD", self.config.voice_models_path),
        )
        services = {
            "transcription": health_ok,
            "tts": health_ok,
            "voice_models": models_ok,
        }
        available = any(services.values())
        if not available:
            warn(_LOG, "speech_services_unavailable")
        return ServiceHealth(available=available, services=services)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
