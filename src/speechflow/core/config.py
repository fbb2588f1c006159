"""
Configuration Management for speechflow.

Centralized configuration handling with:
    - Default values (Defaults class)
    - Dataclass-based configuration sections
    - YAML file loading with environment variable overrides
    - Validation with meaningful error messages

Configuration Hierarchy (highest priority first):
    1. Environment variables (SPEECHFLOW_BASE_URL, SPEECHFLOW_STORAGE_DIR)
    2. YAML config file (config/settings.yaml)
    3. Defaults class values

Example settings.yaml:
    concurrency:
      max_concurrent: 3
      request_timeout_s: 30

    storage:
      backend: file
      base_dir: ./.speechflow

    usage:
      limits:
        synthesize:
          max_cost_cents: 300

    logging:
      level: 2  # NORMAL
"""

from __future__ import annotations

import copy
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict

import yaml


class ConfigValidationError(Exception):
    """Raised when a configuration value is outside acceptable bounds."""
    pass


MB = 1024 * 1024
DAY_SECONDS = 24 * 60 * 60


class Defaults:
    """
    Centralized default configuration values.

    Sections:
        - Concurrency: admission ceiling and stale-request sweep
        - Retry: backoff schedule
        - Storage: persistent key/value budget
        - Cache: synthesized-speech cache ceilings
        - Usage: cost rates, daily limits and retention
        - Audio: upload limits and compression policy
        - Gateway: speech endpoints
        - Logging: log level
    """

    # ─────────────────────────────────────────────────────────────────────────
    # Concurrency Control
    # ─────────────────────────────────────────────────────────────────────────
    CONCURRENCY_MAX_CONCURRENT = 3        # Live operations before rejection
    CONCURRENCY_REQUEST_TIMEOUT_S = 30.0  # Per-operation timeout
    CONCURRENCY_STALE_BUFFER_S = 10.0     # Grace period before sweep cancels
    CONCURRENCY_SWEEP_INTERVAL_S = 60.0   # Stale-request sweep period

    # ─────────────────────────────────────────────────────────────────────────
    # Retry
    # ─────────────────────────────────────────────────────────────────────────
    RETRY_MAX_ATTEMPTS = 2          # Extra attempts after the first
    RETRY_BASE_DELAY_S = 1.0        # Delay before the first retry, doubled after

    # ─────────────────────────────────────────────────────────────────────────
    # Persistent Storage
    # ─────────────────────────────────────────────────────────────────────────
    STORAGE_BACKEND = "memory"              # memory | file | none
    STORAGE_BASE_DIR = "./.speechflow"      # Directory for the file backend
    STORAGE_MAX_BYTES = 50 * MB             # Storage ceiling
    STORAGE_COMPRESSION_THRESHOLD = 1024    # Compress serialized values above this
    STORAGE_MAX_AGE_S = 30 * DAY_SECONDS    # Default item lifetime
    STORAGE_CLEANUP_INTERVAL_S = 3600.0     # Expired-item sweep period

    # ─────────────────────────────────────────────────────────────────────────
    # Response Cache
    # ─────────────────────────────────────────────────────────────────────────
    CACHE_MAX_ENTRIES = 100
    CACHE_MAX_BYTES = 20 * MB
    CACHE_TTL_S = 7 * DAY_SECONDS
    CACHE_EVICTION_FRACTION = 0.25
    CACHE_DEFAULT_FORMAT = "mp3"

    # ─────────────────────────────────────────────────────────────────────────
    # Usage Ledger (costs in US cents)
    # ─────────────────────────────────────────────────────────────────────────
    USAGE_TRANSCRIBE_CENTS_PER_MINUTE = 0.43
    USAGE_TRANSCRIBE_MINUTES_PER_MB = 2.0
    USAGE_SYNTHESIZE_CENTS_PER_1000_CHARS = 2.0
    USAGE_RETENTION_DAYS = 30
    USAGE_WARNING_RATIO = 0.8
    LIMIT_TRANSCRIBE_MAX_REQUESTS = 100
    LIMIT_TRANSCRIBE_MAX_COST_CENTS = 500
    LIMIT_SYNTHESIZE_MAX_REQUESTS = 200
    LIMIT_SYNTHESIZE_MAX_COST_CENTS = 300
    LIMIT_TOTAL_MAX_COST_CENTS = 1000

    # ─────────────────────────────────────────────────────────────────────────
    # Audio
    # ─────────────────────────────────────────────────────────────────────────
    AUDIO_MAX_UPLOAD_BYTES = 25 * MB    # Transcription upload limit
    AUDIO_COMPRESS_ABOVE_BYTES = 1 * MB # Try compression above this size
    AUDIO_MIN_SAVING_RATIO = 0.8        # Use compressed upload only below this ratio
    TEXT_MAX_CHARS = 5000               # Synthesis input limit

    # ─────────────────────────────────────────────────────────────────────────
    # Gateway
    # ─────────────────────────────────────────────────────────────────────────
    GATEWAY_BASE_URL = "http://localhost:3000"
    GATEWAY_HEALTH_TIMEOUT_S = 5.0
    GATEWAY_CATALOG_TIMEOUT_S = 10.0
    CATALOG_CACHE_TTL_S = 300

    # ─────────────────────────────────────────────────────────────────────────
    # Logging
    # ─────────────────────────────────────────────────────────────────────────
    LOGGING_LEVEL = 2                   # 1=MINIMAL, 2=NORMAL, 3=VERBOSE, 4=DEBUG
    LOGGING_TEXT_PREVIEW_CHARS = 50


@dataclass
class ConcurrencyConfig:
    """Admission ceiling and stale-request sweep."""
    max_concurrent: int = Defaults.CONCURRENCY_MAX_CONCURRENT
    request_timeout_s: float = Defaults.CONCURRENCY_REQUEST_TIMEOUT_S
    stale_buffer_s: float = Defaults.CONCURRENCY_STALE_BUFFER_S
    sweep_interval_s: float = Defaults.CONCURRENCY_SWEEP_INTERVAL_S


@dataclass
class RetryConfig:
    max_attempts: int = Defaults.RETRY_MAX_ATTEMPTS
    base_delay_s: float = Defaults.RETRY_BASE_DELAY_S


@dataclass
class StorageConfig:
    """
    Persistent key/value store configuration.

    ``backend`` selects the substrate: ``memory`` for tests and
    short-lived processes, ``file`` for a durable directory, ``none``
    to disable persistence entirely.
    """
    backend: str = Defaults.STORAGE_BACKEND
    base_dir: str = Defaults.STORAGE_BASE_DIR
    max_bytes: int = Defaults.STORAGE_MAX_BYTES
    compression_threshold: int = Defaults.STORAGE_COMPRESSION_THRESHOLD
    max_age_s: float = Defaults.STORAGE_MAX_AGE_S
    cleanup_interval_s: float = Defaults.STORAGE_CLEANUP_INTERVAL_S


@dataclass
class CacheConfig:
    """Synthesized-speech cache ceilings."""
    max_entries: int = Defaults.CACHE_MAX_ENTRIES
    max_bytes: int = Defaults.CACHE_MAX_BYTES
    ttl_s: float = Defaults.CACHE_TTL_S
    eviction_fraction: float = Defaults.CACHE_EVICTION_FRACTION
    default_format: str = Defaults.CACHE_DEFAULT_FORMAT


@dataclass
class TranscribeLimits:
    max_requests: int = Defaults.LIMIT_TRANSCRIBE_MAX_REQUESTS
    max_cost_cents: int = Defaults.LIMIT_TRANSCRIBE_MAX_COST_CENTS


@dataclass
class SynthesizeLimits:
    max_requests: int = Defaults.LIMIT_SYNTHESIZE_MAX_REQUESTS
    max_cost_cents: int = Defaults.LIMIT_SYNTHESIZE_MAX_COST_CENTS


@dataclass
class TotalLimits:
    max_cost_cents: int = Defaults.LIMIT_TOTAL_MAX_COST_CENTS


@dataclass
class DailyLimits:
    """
    Daily ceilings checked by the usage ledger.

    Serialized with ``to_dict``/``from_dict`` so the ledger can persist
    user-adjusted limits alongside its records.
    """
    transcribe: TranscribeLimits = field(default_factory=TranscribeLimits)
    synthesize: SynthesizeLimits = field(default_factory=SynthesizeLimits)
    total: TotalLimits = field(default_factory=TotalLimits)

    def to_dict(self) -> Dict[str, Dict[str, int]]:
        return {
            "transcribe": {
                "max_requests": self.transcribe.max_requests,
                "max_cost_cents": self.transcribe.max_cost_cents,
            },
            "synthesize": {
                "max_requests": self.synthesize.max_requests,
                "max_cost_cents": self.synthesize.max_cost_cents,
            },
            "total": {"max_cost_cents": self.total.max_cost_cents},
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "DailyLimits":
        t = raw.get("transcribe", {}) or {}
        s = raw.get("synthesize", {}) or {}
        total = raw.get("total", {}) or {}
        return cls(
            transcribe=TranscribeLimits(
                max_requests=int(t.get("max_requests", Defaults.LIMIT_TRANSCRIBE_MAX_REQUESTS)),
                max_cost_cents=int(t.get("max_cost_cents", Defaults.LIMIT_TRANSCRIBE_MAX_COST_CENTS)),
            ),
            synthesize=SynthesizeLimits(
                max_requests=int(s.get("max_requests", Defaults.LIMIT_SYNTHESIZE_MAX_REQUESTS)),
                max_cost_cents=int(s.get("max_cost_cents", Defaults.LIMIT_SYNTHESIZE_MAX_COST_CENTS)),
            ),
            total=TotalLimits(
                max_cost_cents=int(total.get("max_cost_cents", Defaults.LIMIT_TOTAL_MAX_COST_CENTS)),
            ),
        )


@dataclass
class UsageConfig:
    """Cost heuristics, daily limits and record retention."""
    transcribe_cents_per_minute: float = Defaults.USAGE_TRANSCRIBE_CENTS_PER_MINUTE
    transcribe_minutes_per_mb: float = Defaults.USAGE_TRANSCRIBE_MINUTES_PER_MB
    synthesize_cents_per_1000_chars: float = Defaults.USAGE_SYNTHESIZE_CENTS_PER_1000_CHARS
    retention_days: int = Defaults.USAGE_RETENTION_DAYS
    warning_ratio: float = Defaults.USAGE_WARNING_RATIO
    enforce_limits: bool = True
    limits: DailyLimits = field(default_factory=DailyLimits)


@dataclass
class AudioConfig:
    max_upload_bytes: int = Defaults.AUDIO_MAX_UPLOAD_BYTES
    compress_above_bytes: int = Defaults.AUDIO_COMPRESS_ABOVE_BYTES
    min_saving_ratio: float = Defaults.AUDIO_MIN_SAVING_RATIO
    max_text_chars: int = Defaults.TEXT_MAX_CHARS


@dataclass
class GatewayConfig:
    """Speech endpoints consumed by the HTTP gateway."""
    base_url: str = Defaults.GATEWAY_BASE_URL
    transcribe_path: str = "/api/transcribe"
    synthesize_path: str = "/api/tts"
    voice_models_path: str = "/api/voice-models"
    health_path: str = "/api/health"
    health_timeout_s: float = Defaults.GATEWAY_HEALTH_TIMEOUT_S
    catalog_timeout_s: float = Defaults.GATEWAY_CATALOG_TIMEOUT_S
    catalog_cache_ttl_s: float = Defaults.CATALOG_CACHE_TTL_S


@dataclass
class LoggingConfig:
    level: int = Defaults.LOGGING_LEVEL
    text_preview_chars: int = Defaults.LOGGING_TEXT_PREVIEW_CHARS


@dataclass
class SpeechflowConfig:
    """
    Validated configuration for a SpeechContext.

    Usage:
        settings = load_settings("config/settings.yaml")
        config = SpeechflowConfig.from_settings(settings)
        print(config.cache.max_entries)
    """
    concurrency: ConcurrencyConfig = field(default_factory=ConcurrencyConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    usage: UsageConfig = field(default_factory=UsageConfig)
    audio: AudioConfig = field(default_factory=AudioConfig)
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_settings(cls, settings: "Settings") -> "SpeechflowConfig":
        """
        Build a validated configuration from raw settings.

        Missing values fall back to Defaults.

        Raises:
            ConfigValidationError: If any value fails validation.
        """
        raw = settings.raw

        # ─────────────────────────────────────────────────────────────────────
        # Concurrency
        # ─────────────────────────────────────────────────────────────────────
        c = raw.get("concurrency", {}) or {}
        concurrency = ConcurrencyConfig(
            max_concurrent=int(c.get("max_concurrent", Defaults.CONCURRENCY_MAX_CONCURRENT)),
            request_timeout_s=float(c.get("request_timeout_s", Defaults.CONCURRENCY_REQUEST_TIMEOUT_S)),
            stale_buffer_s=float(c.get("stale_buffer_s", Defaults.CONCURRENCY_STALE_BUFFER_S)),
            sweep_interval_s=float(c.get("sweep_interval_s", Defaults.CONCURRENCY_SWEEP_INTERVAL_S)),
        )
        cls._validate_positive("concurrency.max_concurrent", concurrency.max_concurrent)
        cls._validate_positive("concurrency.request_timeout_s", concurrency.request_timeout_s)
        cls._validate_non_negative("concurrency.stale_buffer_s", concurrency.stale_buffer_s)
        cls._validate_positive("concurrency.sweep_interval_s", concurrency.sweep_interval_s)

        # ─────────────────────────────────────────────────────────────────────
        # Retry
        # ─────────────────────────────────────────────────────────────────────
        r = raw.get("retry", {}) or {}
        retry = RetryConfig(
            max_attempts=int(r.get("max_attempts", Defaults.RETRY_MAX_ATTEMPTS)),
            base_delay_s=float(r.get("base_delay_s", Defaults.RETRY_BASE_DELAY_S)),
        )
        cls._validate_non_negative("retry.max_attempts", retry.max_attempts)
        cls._validate_non_negative("retry.base_delay_s", retry.base_delay_s)

        # ─────────────────────────────────────────────────────────────────────
        # Storage (SPEECHFLOW_STORAGE_DIR overrides base_dir)
        # ─────────────────────────────────────────────────────────────────────
        s = raw.get("storage", {}) or {}
        storage = StorageConfig(
            backend=str(s.get("backend", Defaults.STORAGE_BACKEND)).lower(),
            base_dir=os.getenv("SPEECHFLOW_STORAGE_DIR") or str(s.get("base_dir", Defaults.STORAGE_BASE_DIR)),
            max_bytes=int(s.get("max_bytes", Defaults.STORAGE_MAX_BYTES)),
            compression_threshold=int(s.get("compression_threshold", Defaults.STORAGE_COMPRESSION_THRESHOLD)),
            max_age_s=float(s.get("max_age_s", Defaults.STORAGE_MAX_AGE_S)),
            cleanup_interval_s=float(s.get("cleanup_interval_s", Defaults.STORAGE_CLEANUP_INTERVAL_S)),
        )
        if storage.backend not in ("memory", "file", "none"):
            raise ConfigValidationError(
                f"storage.backend must be one of memory, file, none, got {storage.backend}"
            )
        cls._validate_positive("storage.max_bytes", storage.max_bytes)
        cls._validate_non_negative("storage.compression_threshold", storage.compression_threshold)
        cls._validate_positive("storage.max_age_s", storage.max_age_s)
        cls._validate_positive("storage.cleanup_interval_s", storage.cleanup_interval_s)

        # ─────────────────────────────────────────────────────────────────────
        # Response cache
        # ─────────────────────────────────────────────────────────────────────
        k = raw.get("cache", {}) or {}
        cache = CacheConfig(
            max_entries=int(k.get("max_entries", Defaults.CACHE_MAX_ENTRIES)),
            max_bytes=int(k.get("max_bytes", Defaults.CACHE_MAX_BYTES)),
            ttl_s=float(k.get("ttl_s", Defaults.CACHE_TTL_S)),
            eviction_fraction=float(k.get("eviction_fraction", Defaults.CACHE_EVICTION_FRACTION)),
            default_format=str(k.get("default_format", Defaults.CACHE_DEFAULT_FORMAT)),
        )
        cls._validate_positive("cache.max_entries", cache.max_entries)
        cls._validate_positive("cache.max_bytes", cache.max_bytes)
        cls._validate_positive("cache.ttl_s", cache.ttl_s)
        cls._validate_range("cache.eviction_fraction", cache.eviction_fraction, 0.01, 1.0)

        # ─────────────────────────────────────────────────────────────────────
        # Usage ledger
        # ─────────────────────────────────────────────────────────────────────
        u = raw.get("usage", {}) or {}
        usage = UsageConfig(
            transcribe_cents_per_minute=float(
                u.get("transcribe_cents_per_minute", Defaults.USAGE_TRANSCRIBE_CENTS_PER_MINUTE)
            ),
            transcribe_minutes_per_mb=float(
                u.get("transcribe_minutes_per_mb", Defaults.USAGE_TRANSCRIBE_MINUTES_PER_MB)
            ),
            synthesize_cents_per_1000_chars=float(
                u.get("synthesize_cents_per_1000_chars", Defaults.USAGE_SYNTHESIZE_CENTS_PER_1000_CHARS)
            ),
            retention_days=int(u.get("retention_days", Defaults.USAGE_RETENTION_DAYS)),
            warning_ratio=float(u.get("warning_ratio", Defaults.USAGE_WARNING_RATIO)),
            enforce_limits=bool(u.get("enforce_limits", True)),
            limits=DailyLimits.from_dict(u.get("limits", {}) or {}),
        )
        cls._validate_non_negative("usage.transcribe_cents_per_minute", usage.transcribe_cents_per_minute)
        cls._validate_non_negative("usage.synthesize_cents_per_1000_chars", usage.synthesize_cents_per_1000_chars)
        cls._validate_positive("usage.retention_days", usage.retention_days)
        cls._validate_range("usage.warning_ratio", usage.warning_ratio, 0.0, 1.0)

        # ─────────────────────────────────────────────────────────────────────
        # Audio
        # ─────────────────────────────────────────────────────────────────────
        a = raw.get("audio", {}) or {}
        audio = AudioConfig(
            max_upload_bytes=int(a.get("max_upload_bytes", Defaults.AUDIO_MAX_UPLOAD_BYTES)),
            compress_above_bytes=int(a.get("compress_above_bytes", Defaults.AUDIO_COMPRESS_ABOVE_BYTES)),
            min_saving_ratio=float(a.get("min_saving_ratio", Defaults.AUDIO_MIN_SAVING_RATIO)),
            max_text_chars=int(a.get("max_text_chars", Defaults.TEXT_MAX_CHARS)),
        )
        cls._validate_positive("audio.max_upload_bytes", audio.max_upload_bytes)
        cls._validate_range("audio.min_saving_ratio", audio.min_saving_ratio, 0.0, 1.0)
        cls._validate_positive("audio.max_text_chars", audio.max_text_chars)

        # ─────────────────────────────────────────────────────────────────────
        # Gateway (SPEECHFLOW_BASE_URL overrides base_url)
        # ─────────────────────────────────────────────────────────────────────
        g = raw.get("gateway", {}) or {}
        gateway = GatewayConfig(
            base_url=os.getenv("SPEECHFLOW_BASE_URL") or str(g.get("base_url", Defaults.GATEWAY_BASE_URL)),
            transcribe_path=str(g.get("transcribe_path", "/api/transcribe")),
            synthesize_path=str(g.get("synthesize_path", "/api/tts")),
            voice_models_path=str(g.get("voice_models_path", "/api/voice-models")),
            health_path=str(g.get("health_path", "/api/health")),
            health_timeout_s=float(g.get("health_timeout_s", Defaults.GATEWAY_HEALTH_TIMEOUT_S)),
            catalog_timeout_s=float(g.get("catalog_timeout_s", Defaults.GATEWAY_CATALOG_TIMEOUT_S)),
            catalog_cache_ttl_s=float(g.get("catalog_cache_ttl_s", Defaults.CATALOG_CACHE_TTL_S)),
        )
        cls._validate_positive("gateway.catalog_cache_ttl_s", gateway.catalog_cache_ttl_s)

        # ─────────────────────────────────────────────────────────────────────
        # Logging
        # ─────────────────────────────────────────────────────────────────────
        lg = raw.get("logging", {}) or {}
        level_raw = lg.get("level", Defaults.LOGGING_LEVEL)
        if isinstance(level_raw, str):
            level_map = {
                "MINIMAL": 1, "1": 1,
                "NORMAL": 2, "INFO": 2, "2": 2,
                "VERBOSE": 3, "3": 3,
                "DEBUG": 4, "TRACE": 4, "4": 4,
            }
            log_level = level_map.get(level_raw.upper(), Defaults.LOGGING_LEVEL)
        else:
            log_level = int(level_raw)
        logging_cfg = LoggingConfig(
            level=log_level,
            text_preview_chars=int(lg.get("text_preview_chars", Defaults.LOGGING_TEXT_PREVIEW_CHARS)),
        )
        cls._validate_range("logging.level", logging_cfg.level, 1, 4)

        return cls(
            concurrency=concurrency,
            retry=retry,
            storage=storage,
            cache=cache,
            usage=usage,
            audio=audio,
            gateway=gateway,
            logging=logging_cfg,
        )

    @staticmethod
    def _validate_positive(name: str, value: int | float) -> None:
        if value <= 0:
            raise ConfigValidationError(f"{name} must be positive, got {value}")

    @staticmethod
    def _validate_non_negative(name: str, value: int | float) -> None:
        if value < 0:
            raise ConfigValidationError(f"{name} must be non-negative, got {value}")

    @staticmethod
    def _validate_range(name: str, value: int | float, min_val: int | float, max_val: int | float) -> None:
        if not (min_val <= value <= max_val):
            raise ConfigValidationError(f"{name} must be between {min_val} and {max_val}, got {value}")


@dataclass(frozen=True)
class Settings:
    """
    Immutable raw settings loaded from YAML.

    Use ``get_config()`` for the validated SpeechflowConfig.
    """
    raw: Dict[str, Any]

    def get_config(self) -> SpeechflowConfig:
        return SpeechflowConfig.from_settings(self)


def load_settings(path: str = "config/settings.yaml") -> Settings:
    """
    Load settings from a YAML file.

    Raises:
        FileNotFoundError: If the settings file doesn't exist.
    """
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"settings file not found: {p.resolve()}")

    with p.open("r", encoding="utf-8") as f:
        raw: Dict[str, Any] = yaml.safe_load(f) or {}

    return Settings(raw=copy.deepcopy(raw))
