from __future__ import annotations

import json
import logging

import pytest

from canvaslink import log_utils
from canvaslink.log_utils import (
    ContextFilter,
    ContextFormatter,
    JsonFormatter,
    build_log_config,
    configure_logging,
    log_context,
    log_event,
)


@pytest.fixture
def restore_root_logging():
    root = logging.getLogger()
    level = root.level
    yield root
    for handler in root.handlers[:]:
        if any(isinstance(f, ContextFilter) for f in handler.filters):
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)
    log_utils._LOG_DELTAS_ENABLED = False


def _record(message: str = "hello", **extra) -> logging.LogRecord:
    record = logging.LogRecord("canvaslink.test", logging.INFO, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_env_overrides_win(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("CANVASLINK_LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("CANVASLINK_LOG_LEVEL", "debug")
    monkeypatch.setenv("CANVASLINK_LOG_JSON", "yes")
    monkeypatch.setenv("CANVASLINK_LOG_MAX_BYTES", "not-a-number")

    config = build_log_config(level="WARNING", stderr=False)

    assert config.log_file == tmp_path / "logs" / "canvaslink.log"
    assert config.level == logging.DEBUG
    assert config.json is True
    assert config.max_bytes == log_utils.DEFAULT_LOG_MAX_BYTES
    assert config.logger_levels["httpx"] == logging.WARNING


def test_configure_logging_writes_context_fields(restore_root_logging, monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("CANVASLINK_LOG_DIR", str(tmp_path))
    monkeypatch.setenv("CANVASLINK_LOG_DELTAS", "1")
    config = build_log_config(level="INFO")

    configure_logging(config)
    configure_logging(config)
    logger = logging.getLogger("canvaslink.test")
    with log_context(node="n1", session="ses_1"):
        log_event(logger, "connection.status", old="lost", new="connected")
    logger.info("outside")
    for handler in restore_root_logging.handlers:
        handler.flush()

    assert len(restore_root_logging.handlers) == 1
    assert log_utils.log_deltas_enabled() is True
    lines = config.log_file.read_text(encoding="utf-8").splitlines()
    assert lines[0].endswith("connection.status node=n1 session=ses_1 new=connected old=lost")
    assert lines[1].endswith("INFO canvaslink.test outside")


def test_log_context_nests_and_resets() -> None:
    formatter = ContextFormatter("%(message)s")
    context_filter = ContextFilter()

    with log_context(node="n1"):
        with log_context(session="ses_1", ignored=None):
            inner = _record()
            context_filter.filter(inner)
        outer = _record()
        context_filter.filter(outer)
    after = _record()
    context_filter.filter(after)

    assert formatter.format(inner) == "hello node=n1 session=ses_1"
    assert formatter.format(outer) == "hello node=n1"
    assert formatter.format(after) == "hello"


def test_quoted_values_and_json_formatter() -> None:
    record = _record("sse.error", event_fields={"error": "bad frame", "count": 2})
    record.context_fields = {"node": "n1"}

    assert ContextFormatter("%(message)s").format(record) == 'sse.error node=n1 count=2 error="bad frame"'
    payload = json.loads(JsonFormatter().format(record))
    assert payload["message"] == "sse.error"
    assert payload["context"] == {"node": "n1"}
    assert payload["fields"] == {"error": "bad frame", "count": 2}
