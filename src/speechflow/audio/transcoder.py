"""
AudioTranscoder - decode, trim, encode and compress audio.

All in-memory audio is a ``SampleBuffer``: float32 samples shaped
(channels, frames) plus the sample rate. Decoding and Ogg/Vorbis
encoding go through soundfile (libsndfile); canonical WAV output is
written by ``speechflow.audio.wav``.

Compression bands (by input size):
    < 500 KB    quality 0.9, skip if <= 400 KB
    < 2000 KB   quality 0.7, skip if <= 1000 KB
    otherwise   quality 0.5, skip if <= 1500 KB, mono downmix

Only uncompressed/lossless inputs are re-encoded (wav, wave, x-wav,
flac, x-flac, aiff, x-aiff). Compression never raises: any failure
returns the original bytes with ratio 1.0.

Example:
    >>> t = AudioTranscoder()
    >>> clip = t.trim_bytes(wav_bytes, start=1.0, end=2.5)
    >>> result = t.compress(upload, "audio/wav")
    >>> result.compression_ratio
    0.31
"""
from __future__ import annotations

import io
import math
from dataclasses import dataclass, replace
from typing import Any, Iterable, List, Sequence, Tuple

import numpy as np
import soundfile as sf

from speechflow.audio.wav import encode_wav
from speechflow.core.logging import get_logger, info, verbose, warn
from speechflow.errors import DecodeError, ValidationError
from speechflow.utils.timeit import timeit

_LOG = get_logger("speechflow.audio")

KB = 1024

COMPRESSIBLE_MIME_TYPES = (
    "audio/wav",
    "audio/wave",
    "audio/x-wav",
    "audio/flac",
    "audio/x-flac",
    "audio/aiff",
    "audio/x-aiff",
)

_FORMAT_MIME = {
    "ogg": "audio/ogg",
    "wav": "audio/wav",
}


@dataclass
class SampleBuffer:
    """Decoded audio: float32 ``samples`` shaped (channels, frames)."""
    samples: np.ndarray
    sample_rate: int

    @property
    def channels(self) -> int:
        return int(self.samples.shape[0])

    @property
    def frames(self) -> int:
        return int(self.samples.shape[1])

    @property
    def duration(self) -> float:
        return self.frames / self.sample_rate if self.sample_rate else 0.0


@dataclass
class CompressionSettings:
    quality: float
    max_size_kb: int
    format: str = "ogg"


@dataclass
class CompressionResult:
    payload: bytes
    original_size: int
    compressed_size: int
    compression_ratio: float
    format: str


@dataclass
class CompressionStats:
    total_original_size: int
    total_compressed_size: int
    average_ratio: float
    total_savings: int


def can_compress(mime_type: str) -> bool:
    return any(fmt in (mime_type or "").lower() for fmt in COMPRESSIBLE_MIME_TYPES)


def compressed_filename(filename: str, fmt: str) -> str:
    """``voice.wav`` → ``voice_compressed.ogg``."""
    stem = filename.rsplit(".", 1)[0] if "." in filename else filename
    return f"{stem}_compressed.{fmt}"


class AudioTranscoder:
    """Stateless audio operations; safe to share."""

    def decode(self, data: bytes) -> SampleBuffer:
        """
        Decode any libsndfile-readable container.

        Raises:
            DecodeError: If ``data`` is empty or not decodable audio.
        """
        if not data:
            raise DecodeError("no audio data")
        try:
            with timeit("decode") as t:
                frames, sr = sf.read(io.BytesIO(data), dtype="float32", always_2d=True)
        except (RuntimeError, TypeError, ValueError) as e:
            raise DecodeError(f"unable to decode audio: {e}", details={"bytes": len(data)}) from e

        buffer = SampleBuffer(samples=np.ascontiguousarray(frames.T), sample_rate=int(sr))
        verbose(
            _LOG, "decoded",
            channels=buffer.channels, frames=buffer.frames, sr=buffer.sample_rate,
            seconds=round(t.timing.seconds, 4) if t.timing else None,
        )
        return buffer

    def encode_wav(self, buffer: SampleBuffer) -> bytes:
        return encode_wav(buffer.samples, buffer.sample_rate)

    def trim(self, buffer: SampleBuffer, start: float, end: float) -> SampleBuffer:
        """
        Copy the [start, end) second range of ``buffer``.

        Sample bounds are ``floor(t * sample_rate)``; ``end`` past the
        buffer is clamped. The input buffer is never modified.

        Raises:
            ValidationError: If start is negative or start >= end.
        """
        if start < 0:
            raise ValidationError("trim start must be non-negative", details={"start": start})
        if start >= end:
            raise ValidationError("trim start must be before end", details={"start": start, "end": end})

        start_sample = min(math.floor(start * buffer.sample_rate), buffer.frames)
        end_sample = min(math.floor(end * buffer.sample_rate), buffer.frames)
        return SampleBuffer(
            samples=buffer.samples[:, start_sample:end_sample].copy(),
            sample_rate=buffer.sample_rate,
        )

    def trim_bytes(self, data: bytes, start: float, end: float) -> bytes:
        return self.encode_wav(self.trim(self.decode(data), start, end))

    def optimal_settings(self, size_bytes: int) -> CompressionSettings:
        size_kb = size_bytes / KB
        if size_kb < 500:
            return CompressionSettings(quality=0.9, max_size_kb=400)
        if size_kb < 2000:
            return CompressionSettings(quality=0.7, max_size_kb=1000)
        return CompressionSettings(quality=0.5, max_size_kb=1500)

    def compress(self, data: bytes, mime_type: str, **overrides: Any) -> CompressionResult:
        """
        Re-encode ``data`` to Ogg/Vorbis when it is worth it.

        Args:
            data: Encoded input audio.
            mime_type: MIME type of ``data``.
            **overrides: CompressionSettings fields to override
                (quality, max_size_kb, format).
        """
        original_size = len(data)
        settings = replace(self.optimal_settings(original_size), **overrides)

        if original_size <= settings.max_size_kb * KB:
            return self._unchanged(data, mime_type)
        if not can_compress(mime_type):
            warn(_LOG, "compression_unsupported", mime_type=mime_type)
            return self._unchanged(data, mime_type)

        try:
            with timeit("compress") as t:
                payload = self._encode_compressed(self.decode(data), settings)
        except Exception as e:
            warn(_LOG, "compression_failed", mime_type=mime_type, error=str(e))
            return self._unchanged(data, mime_type)

        ratio = len(payload) / original_size if original_size else 1.0
        info(
            _LOG, "audio_compressed",
            original_kb=round(original_size / KB, 1),
            compressed_kb=round(len(payload) / KB, 1),
            ratio=round(ratio, 3),
            seconds=round(t.timing.seconds, 4) if t.timing else None,
        )
        return CompressionResult(
            payload=payload,
            original_size=original_size,
            compressed_size=len(payload),
            compression_ratio=ratio,
            format=_FORMAT_MIME.get(settings.format, f"audio/{settings.format}"),
        )

    def _encode_compressed(self, buffer: SampleBuffer, settings: CompressionSettings) -> bytes:
        samples = buffer.samples
        if settings.quality <= 0.5 and buffer.channels > 1:
            samples = samples.mean(axis=0, keepdims=True)

        out = io.BytesIO()
        if settings.format == "ogg":
            sf.write(
                out, samples.T, buffer.sample_rate,
                format="OGG", subtype="VORBIS",
                compression_level=min(1.0, max(0.0, 1.0 - settings.quality)),
            )
        else:
            sf.write(out, samples.T, buffer.sample_rate, format=settings.format.upper())
        return out.getvalue()

    @staticmethod
    def _unchanged(data: bytes, mime_type: str) -> CompressionResult:
        return CompressionResult(
            payload=data,
            original_size=len(data),
            compressed_size=len(data),
            compression_ratio=1.0,
            format=mime_type,
        )

    def compress_many(self, items: Iterable[Tuple[bytes, str]]) -> List[CompressionResult]:
        """Compress several (data, mime_type) pairs in order."""
        return [self.compress(data, mime_type) for data, mime_type in items]

    @staticmethod
    def compression_stats(results: Sequence[CompressionResult]) -> CompressionStats:
        total_original = sum(r.original_size for r in results)
        total_compressed = sum(r.compressed_size for r in results)
        average = sum(r.compression_ratio for r in results) / len(results) if results else 0.0
        return CompressionStats(
            total_original_size=total_original,
            total_compressed_size=total_compressed,
            average_ratio=average,
            total_savings=total_original - total_compressed,
        )
