"""
Logging context and configuration state.

The operation id of the speech request currently being served lives in a
``ContextVar`` so that every log line emitted while handling it (cache
lookups, retries, usage tracking) carries the same id, even when several
operations are interleaved on one event loop.

Environment Variables:
    - SPEECHFLOW_LOG_LEVEL: Override log level (1-4 or a level name)
    - SPEECHFLOW_LOG_DIR: Directory for the JSONL log file
    - SPEECHFLOW_JSONL_FILE: JSONL filename (default speechflow.jsonl)
    - SPEECHFLOW_LOG_ROTATE_BYTES: Max log file size before rotation
    - SPEECHFLOW_LOG_ROTATE_BACKUP: Number of rotated files to keep
"""
from __future__ import annotations

import os
from contextvars import ContextVar
from typing import Any, Dict

import yaml

from .levels import LEVEL_NAMES, LogLevel

_operation_id: ContextVar[str] = ContextVar("operation_id", default="-")

_configured: bool = False
_log_config: Dict[str, Any] = {}
_current_level: LogLevel = LogLevel.NORMAL


def get_operation_id() -> str:
    """Operation id bound to the current context, or "-" outside one."""
    return _operation_id.get()


def set_operation_id(op_id: str) -> None:
    """Bind an operation id to the current context for log correlation."""
    _operation_id.set(op_id)


def get_level() -> LogLevel:
    return _current_level


def set_level(level: LogLevel) -> None:
    global _current_level
    _current_level = level


def get_level_name() -> str:
    return LEVEL_NAMES.get(_current_level, "NORMAL")


def is_configured() -> bool:
    return _configured


def set_configured(value: bool) -> None:
    global _configured
    _configured = value


def get_log_config() -> Dict[str, Any]:
    return _log_config


def set_log_config(config: Dict[str, Any]) -> None:
    global _log_config
    _log_config = config


def read_logging_config() -> Dict[str, Any]:
    """
    Resolve logging configuration.

    Priority (highest first):
        1. SPEECHFLOW_* environment variables
        2. ``logging`` section of the settings file named by
           SPEECHFLOW_SETTINGS (default config/settings.yaml)
        3. Built-in defaults

    Returns:
        Dictionary with any of: level, log_dir, jsonl_file,
        rotate_max_bytes, rotate_backup_count.
    """
    cfg: Dict[str, Any] = {}

    settings_path = os.getenv("SPEECHFLOW_SETTINGS", "config/settings.yaml")
    if os.path.exists(settings_path):
        from speechflow.core.config import load_settings
        try:
            cfg.update(load_settings(settings_path).raw.get("logging", {}) or {})
        except (OSError, yaml.YAMLError):
            pass

    if os.getenv("SPEECHFLOW_LOG_LEVEL"):
        cfg["level"] = os.environ["SPEECHFLOW_LOG_LEVEL"]
    if os.getenv("SPEECHFLOW_LOG_DIR"):
        cfg["log_dir"] = os.environ["SPEECHFLOW_LOG_DIR"]
    if os.getenv("SPEECHFLOW_JSONL_FILE"):
        cfg["jsonl_file"] = os.environ["SPEECHFLOW_JSONL_FILE"]
    for env_name, key in (
        ("SPEECHFLOW_LOG_ROTATE_BYTES", "rotate_max_bytes"),
        ("SPEECHFLOW_LOG_ROTATE_BACKUP", "rotate_backup_count"),
    ):
        raw = os.getenv(env_name)
        if raw:
            try:
                cfg[key] = int(raw)
            except ValueError:
                pass  # ignore malformed override

    return cfg
