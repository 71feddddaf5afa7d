"""
Logging context: request-id correlation and shared logging state.

The request id lives in a ContextVar so every log line emitted while a
``speak()`` call (or a queued item being drained) is processed carries the
same id, even across awaits.

Environment Variables:
    - NARRATION_MS_LOG_LEVEL: Log level (1-4 or name)
    - NARRATION_MS_LOG_DIR: Directory for the JSONL log file
    - NARRATION_MS_JSONL_FILE: JSONL filename (default narration-ms.jsonl)
    - NARRATION_MS_LOG_ROTATE_BYTES: Max file size before rotation
    - NARRATION_MS_LOG_ROTATE_BACKUP: Number of rotated files to keep
"""
from __future__ import annotations

import os
from contextvars import ContextVar
from typing import Any, Dict

from .levels import LEVEL_NAMES, LogLevel

# "-" marks log lines emitted outside any request
_request_id: ContextVar[str] = ContextVar("request_id", default="-")

_configured: bool = False
_log_config: Dict[str, Any] = {}
_current_level: LogLevel = LogLevel.NORMAL


def get_request_id() -> str:
    """Return the request id of the current context, or "-"."""
    return _request_id.get()


def set_request_id(rid: str) -> None:
    """Bind a request id to the current context."""
    _request_id.set(rid)


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
    Resolve logging options from the settings file and the environment.

    Priority (highest first):
        1. NARRATION_MS_* environment variables
        2. ``logging`` section of the settings YAML
        3. Built-in defaults (applied by configure_logging)
    """
    cfg: Dict[str, Any] = {}

    settings_path = os.getenv("NARRATION_MS_SETTINGS", "config/settings.yaml")
    try:
        from narration_ms.core.config import load_settings
        settings = load_settings(settings_path)
        cfg.update(settings.raw.get("logging", {}) or {})
    except FileNotFoundError:
        pass

    if os.getenv("NARRATION_MS_LOG_LEVEL"):
        cfg["level"] = os.environ["NARRATION_MS_LOG_LEVEL"]
    if os.getenv("NARRATION_MS_LOG_DIR"):
        cfg["log_dir"] = os.environ["NARRATION_MS_LOG_DIR"]
    if os.getenv("NARRATION_MS_JSONL_FILE"):
        cfg["jsonl_file"] = os.environ["NARRATION_MS_JSONL_FILE"]
    if os.getenv("NARRATION_MS_LOG_ROTATE_BYTES"):
        try:
            cfg["rotate_max_bytes"] = int(os.environ["NARRATION_MS_LOG_ROTATE_BYTES"])
        except ValueError:
            pass
    if os.getenv("NARRATION_MS_LOG_ROTATE_BACKUP"):
        try:
            cfg["rotate_backup_count"] = int(os.environ["NARRATION_MS_LOG_ROTATE_BACKUP"])
        except ValueError:
            pass

    return cfg
