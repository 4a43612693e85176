"""Logging setup and structured context helpers for the sync client."""

from __future__ import annotations

import contextlib
import contextvars
import json
import logging
import os
from dataclasses import dataclass, field
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Iterator

from canvaslink.paths import log_dir

LOG_FILE_NAME = "canvaslink.log"
DEFAULT_LOG_MAX_BYTES = 5 * 1024 * 1024
DEFAULT_LOG_BACKUPS = 5

# httpx/httpcore log every request at INFO; the API layer already does that.
QUIET_LOGGERS = {"httpx": logging.WARNING, "httpcore": logging.WARNING}

_LOG_CONTEXT: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar(
    "canvaslink_log_context", default={}
)
_LOG_DELTAS_ENABLED = False


@dataclass(frozen=True)
class LogConfig:
    """Resolved logging options.

    Built from settings plus ``CANVASLINK_LOG_*`` environment overrides so the
    CLI and embedding applications log to the same place in the same format.
    """

    log_file: Path
    level: int = logging.INFO
    stderr: bool = False
    json: bool = False
    log_deltas: bool = False
    max_bytes: int = DEFAULT_LOG_MAX_BYTES
    backup_count: int = DEFAULT_LOG_BACKUPS
    logger_levels: Dict[str, int] = field(default_factory=lambda: dict(QUIET_LOGGERS))


def parse_level(value: str | None, default: int) -> int:
    if not value:
        return default
    if value.isdigit():
        return int(value)
    return logging._nameToLevel.get(value.strip().upper(), default)


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    with contextlib.suppress(ValueError):
        return int(raw)
    return default


def build_log_config(*, level: str | None = None, stderr: bool | None = None) -> LogConfig:
    """Combine explicit options with environment overrides.

    Environment variables win over the values passed in, matching how the
    settings loader treats ``CANVASLINK_*`` variables.
    """

    directory = Path(os.getenv("CANVASLINK_LOG_DIR", str(log_dir())))
    directory.mkdir(parents=True, exist_ok=True)

    resolved_level = parse_level(level, logging.INFO)
    resolved_level = parse_level(os.getenv("CANVASLINK_LOG_LEVEL"), resolved_level)

    return LogConfig(
        log_file=directory / LOG_FILE_NAME,
        level=resolved_level,
        stderr=_env_flag("CANVASLINK_LOG_STDERR", bool(stderr)),
        json=_env_flag("CANVASLINK_LOG_JSON", False),
        log_deltas=_env_flag("CANVASLINK_LOG_DELTAS", False),
        max_bytes=_env_int("CANVASLINK_LOG_MAX_BYTES", DEFAULT_LOG_MAX_BYTES),
        backup_count=_env_int("CANVASLINK_LOG_BACKUPS", DEFAULT_LOG_BACKUPS),
    )


def configure_logging(config: LogConfig) -> None:
    """Install the rotating file handler (and optional stderr) on the root logger.

    Existing root handlers are removed first so repeated calls do not
    duplicate output.
    """

    global _LOG_DELTAS_ENABLED
    _LOG_DELTAS_ENABLED = config.log_deltas

    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)
    root.setLevel(config.level)

    formatter: logging.Formatter
    if config.json:
        formatter = JsonFormatter()
    else:
        formatter = ContextFormatter("%(asctime)s %(levelname)s %(name)s %(message)s")

    file_handler = RotatingFileHandler(
        config.log_file,
        maxBytes=config.max_bytes,
        backupCount=config.backup_count,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)
    file_handler.addFilter(ContextFilter())
    root.addHandler(file_handler)

    if config.stderr:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        stream_handler.addFilter(ContextFilter())
        root.addHandler(stream_handler)

    for name, level in config.logger_levels.items():
        logging.getLogger(name).setLevel(level)


def log_deltas_enabled() -> bool:
    """Per-delta logging is very noisy; it is off unless explicitly requested."""
    return _LOG_DELTAS_ENABLED


@contextlib.contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Attach fields such as ``node`` or ``session`` to every record in a block."""

    current = _LOG_CONTEXT.get()
    merged = {**current, **{key: value for key, value in fields.items() if value is not None}}
    token = _LOG_CONTEXT.set(merged)
    try:
        yield
    finally:
        _LOG_CONTEXT.reset(token)


def log_event(logger: logging.Logger, event: str, *, level: int = logging.INFO, **fields: Any) -> None:
    """Log a short stable event name (``sse.connected``) with key=value fields."""

    logger.log(level, event, extra={"event_fields": fields})


def _format_value(value: Any) -> str:
    if isinstance(value, str):
        if value == "":
            return '""'
        if any(ch.isspace() for ch in value) or "=" in value or '"' in value:
            return json.dumps(value)
        return value
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, ensure_ascii=True, separators=(",", ":"), default=str)
    return str(value)


def _format_fields(fields: Dict[str, Any]) -> str:
    return " ".join(
        f"{key}={_format_value(fields[key])}" for key in sorted(fields) if fields[key] is not None
    )


class ContextFilter(logging.Filter):
    """Copy the current log context onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003 - logging API name
        record.context_fields = dict(_LOG_CONTEXT.get())
        record.event_fields = getattr(record, "event_fields", {})
        return True


class ContextFormatter(logging.Formatter):
    """Plain text lines with context and event fields appended as key=value."""

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        context = _format_fields(getattr(record, "context_fields", {}))
        event_fields = _format_fields(getattr(record, "event_fields", {}))
        extra = " ".join(part for part in (context, event_fields) if part)
        return f"{base} {extra}" if extra else base


class JsonFormatter(logging.Formatter):
    """One JSON object per line, for jq or log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        context = getattr(record, "context_fields", {})
        fields = getattr(record, "event_fields", {})
        if context:
            payload["context"] = context
        if fields:
            payload["fields"] = fields
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, default=str)
