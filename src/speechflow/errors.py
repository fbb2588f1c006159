"""
speechflow exception hierarchy.

Every failure raised by the library derives from ``SpeechError``, which
carries a stable error code, optional details and a ``retryable`` flag
read by the retry orchestrator.

Hierarchy:
    SpeechError
    ├── ValidationError          bad caller input (never retried)
    ├── AdmissionRejected        concurrency ceiling reached (never retried)
    ├── NetworkError             transport failure or non-2xx status
    │   ├── RateLimited          HTTP 429
    │   ├── ServiceUnavailable   HTTP 503
    │   └── NetworkUnreachable   host offline (never retried)
    ├── TimeoutError             operation exceeded its timeout (never retried)
    ├── CancellationError        token fired (never retried)
    ├── StorageQuotaError        storage backend out of space
    ├── CorruptedEntryError      stored envelope failed to parse
    ├── DecodeError              audio could not be decoded (never retried)
    ├── SynthesisError           empty or invalid synthesis response
    └── DailyLimitExceeded       usage ledger refused the operation (never retried)

``TimeoutError`` intentionally shadows the builtin inside this module;
import it as ``speechflow.errors.TimeoutError``.
"""
from __future__ import annotations

import asyncio
import builtins
from typing import Any, Dict, Optional


class ErrorCode:
    """Stable error codes exposed through ``SpeechError.to_dict``."""
    INVALID_INPUT = "INVALID_INPUT"
    ADMISSION_REJECTED = "ADMISSION_REJECTED"
    NETWORK_ERROR = "NETWORK_ERROR"
    RATE_LIMITED = "RATE_LIMITED"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    NETWORK_UNREACHABLE = "NETWORK_UNREACHABLE"
    TIMEOUT = "TIMEOUT"
    CANCELLED = "CANCELLED"
    STORAGE_QUOTA = "STORAGE_QUOTA"
    CORRUPTED_ENTRY = "CORRUPTED_ENTRY"
    DECODE_FAILED = "DECODE_FAILED"
    SYNTHESIS_FAILED = "SYNTHESIS_FAILED"
    DAILY_LIMIT = "DAILY_LIMIT"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class SpeechError(Exception):
    """
    Base exception for speechflow errors.

    Attributes:
        message: Human-readable error message.
        code: Error code from ErrorCode.
        details: Optional dictionary with additional context.
        retryable: Whether the retry orchestrator may try again.
    """
    retryable: bool = True

    def __init__(self, message: str, code: str = ErrorCode.INTERNAL_ERROR, details: Optional[Dict] = None):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "ok": False,
            "error": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.details:
            result["details"] = self.details
        return result


class ValidationError(SpeechError):
    """Raised for invalid caller input (missing file, empty text, bad trim range)."""
    retryable = False

    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(message, ErrorCode.INVALID_INPUT, details)


class AdmissionRejected(SpeechError):
    """Raised when the coordinator already has the maximum live operations."""
    retryable = False

    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(message, ErrorCode.ADMISSION_REJECTED, details)


class NetworkError(SpeechError):
    """Transport failure or unexpected HTTP status."""

    def __init__(self, message: str, code: str = ErrorCode.NETWORK_ERROR, details: Optional[Dict] = None):
        super().__init__(message, code, details)

    @property
    def status_code(self) -> Optional[int]:
        return self.details.get("status_code")


class RateLimited(NetworkError):
    def __init__(self, message: str = "rate limited", details: Optional[Dict] = None):
        super().__init__(message, ErrorCode.RATE_LIMITED, details)


class ServiceUnavailable(NetworkError):
    def __init__(self, message: str = "service unavailable", details: Optional[Dict] = None):
        super().__init__(message, ErrorCode.SERVICE_UNAVAILABLE, details)


class NetworkUnreachable(NetworkError):
    """The host could not be reached at all; retrying will not help."""
    retryable = False

    def __init__(self, message: str = "network unreachable", details: Optional[Dict] = None):
        super().__init__(message, ErrorCode.NETWORK_UNREACHABLE, details)


class TimeoutError(SpeechError):
    """Raised when an operation exceeds its timeout."""
    retryable = False

    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(message, ErrorCode.TIMEOUT, details)


class CancellationError(SpeechError):
    """Raised when an operation's cancellation token fires."""
    retryable = False

    def __init__(self, message: str = "operation cancelled", details: Optional[Dict] = None):
        super().__init__(message, ErrorCode.CANCELLED, details)


class StorageQuotaError(SpeechError):
    """Raised by storage backends when a write would exceed capacity."""

    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(message, ErrorCode.STORAGE_QUOTA, details)


class CorruptedEntryError(SpeechError):
    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(message, ErrorCode.CORRUPTED_ENTRY, details)


class DecodeError(SpeechError):
    """Raised when audio bytes cannot be decoded."""
    retryable = False

    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(message, ErrorCode.DECODE_FAILED, details)


class SynthesisError(SpeechError):
    """Raised when the speech service returns no usable audio."""

    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(message, ErrorCode.SYNTHESIS_FAILED, details)


class DailyLimitExceeded(SpeechError):
    """Raised when today's usage has reached a configured limit."""
    retryable = False

    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(message, ErrorCode.DAILY_LIMIT, details)


def is_retryable(exc: BaseException) -> bool:
    """
    Whether ``exc`` may be retried.

    Library errors answer through their ``retryable`` flag. Builtin and
    asyncio timeouts are treated like ours. Any other exception is
    considered transient.
    """
    if isinstance(exc, SpeechError):
        return exc.retryable
    if isinstance(exc, (builtins.TimeoutError, asyncio.TimeoutError, asyncio.CancelledError)):
        return False
    return True
