"""Decoding of ``/global/event`` stream lines into typed events.

The server sends each event as a single ``data:`` line with no blank-line
separators and no ``event:`` line. The JSON body is an envelope
``{"directory": ..., "payload": {"type": ..., "properties": {...}}}``; bare
``{"type": ..., "properties": ...}`` documents are accepted as well.
"""

from __future__ import annotations

import dataclasses
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping

logger = logging.getLogger(__name__)

DATA_MARKER = "data:"


class EventType(str, Enum):
    SERVER_CONNECTED = "server.connected"
    SERVER_HEARTBEAT = "server.heartbeat"
    SESSION_STATUS = "session.status"
    SESSION_IDLE = "session.idle"
    SESSION_CREATED = "session.created"
    SESSION_UPDATED = "session.updated"
    SESSION_DELETED = "session.deleted"
    SESSION_ERROR = "session.error"
    SESSION_COMPACTED = "session.compacted"
    MESSAGE_PART_DELTA = "message.part.delta"
    MESSAGE_PART_UPDATED = "message.part.updated"
    MESSAGE_UPDATED = "message.updated"
    MESSAGE_REMOVED = "message.removed"
    PERMISSION_ASKED = "permission.asked"
    PERMISSION_REPLIED = "permission.replied"
    TODO_UPDATED = "todo.updated"
    FILE_EDITED = "file.edited"
    FILE_WATCHER_UPDATED = "file.watcher.updated"
    LSP_UPDATED = "lsp.updated"
    LSP_CLIENT_DIAGNOSTICS = "lsp.client.diagnostics"
    VCS_BRANCH_UPDATED = "vcs.branch.updated"
    COMMAND_EXECUTED = "command.executed"
    MCP_TOOLS_CHANGED = "mcp.tools.changed"
    INSTALLATION_UPDATED = "installation.updated"
    INSTALLATION_UPDATE_AVAILABLE = "installation.update-available"
    PROJECT_UPDATED = "project.updated"
    PTY_CREATED = "pty.created"
    PTY_UPDATED = "pty.updated"
    PTY_EXITED = "pty.exited"
    PTY_DELETED = "pty.deleted"
    WORKTREE_READY = "worktree.ready"
    WORKTREE_FAILED = "worktree.failed"
    QUESTION_ASKED = "question.asked"
    QUESTION_REPLIED = "question.replied"
    QUESTION_REJECTED = "question.rejected"
    GLOBAL_DISPOSED = "global.disposed"
    SERVER_INSTANCE_DISPOSED = "server.instance.disposed"

    @classmethod
    def parse(cls, raw: Any) -> "EventType | None":
        if not isinstance(raw, str):
            return None
        try:
            return cls(raw)
        except ValueError:
            return None


# Different event types nest the same logical field differently, so each
# field lists candidate paths under ``properties``; the first string wins.
FIELD_PATHS: dict[str, tuple[tuple[str, ...], ...]] = {
    "session_id": (("sessionID",), ("info", "id")),
    "message_id": (("messageID",), ("info", "id")),
    "part_id": (("partID",), ("part", "id")),
    "status": (("status", "type"),),
    "delta": (("delta",),),
    "field": (("field",),),
    "text": (("text",), ("part", "text")),
    "error": (("error", "data", "message"),),
    "role": (("info", "role"),),
    "tool_name": (("tool",),),
    "request_id": (("requestID",), ("id",)),
    "description": (("message",),),
}

# High-volume types are only logged at debug.
_QUIET_TYPES = {EventType.MESSAGE_PART_DELTA, EventType.MESSAGE_PART_UPDATED, EventType.SERVER_HEARTBEAT}


@dataclass(frozen=True)
class DomainEvent:
    """One decoded stream frame. Immutable; one instance per received line."""

    type: EventType
    properties: Mapping[str, Any] = dataclasses.field(default_factory=dict, repr=False, compare=False)
    directory: str | None = None
    session_id: str | None = None
    message_id: str | None = None
    part_id: str | None = None
    status: str | None = None
    delta: str | None = None
    field: str | None = None
    text: str | None = None
    error: str | None = None
    role: str | None = None
    tool_name: str | None = None
    request_id: str | None = None
    description: str | None = None


def extract_path(properties: Mapping[str, Any] | None, path: tuple[str, ...]) -> str | None:
    current: Any = properties
    for key in path:
        if not isinstance(current, Mapping):
            return None
        current = current.get(key)
    return current if isinstance(current, str) else None


def extract_field(properties: Mapping[str, Any] | None, name: str) -> str | None:
    for path in FIELD_PATHS[name]:
        value = extract_path(properties, path)
        if value is not None:
            return value
    return None


def decode_payload(document: Mapping[str, Any]) -> DomainEvent | None:
    """Build an event from a parsed JSON object, unwrapping ``payload`` if present."""

    directory = document.get("directory")
    inner = document.get("payload")
    event_doc: Mapping[str, Any] = inner if isinstance(inner, Mapping) else document

    event_type = EventType.parse(event_doc.get("type"))
    if event_type is None:
        logger.warning("Unknown or missing SSE event type: %r", event_doc.get("type"))
        return None

    properties = event_doc.get("properties")
    if not isinstance(properties, Mapping):
        properties = {}

    extracted = {name: extract_field(properties, name) for name in FIELD_PATHS}
    return DomainEvent(
        type=event_type,
        properties=properties,
        directory=directory if isinstance(directory, str) else None,
        **extracted,
    )


def decode_line(line: str) -> DomainEvent | None:
    """Decode one raw stream line; ``None`` for non-data lines and bad frames."""

    if not line.startswith(DATA_MARKER):
        return None
    data = line[len(DATA_MARKER) :].strip()
    if not data:
        return None
    try:
        document = json.loads(data)
    except json.JSONDecodeError as exc:
        logger.error("Failed to parse SSE JSON (%s): %s", exc, data[:500])
        return None
    if not isinstance(document, dict):
        logger.error("SSE frame is not a JSON object: %s", data[:500])
        return None

    event = decode_payload(document)
    if event is None:
        logger.debug("Skipped SSE frame: %s", data[:500])
        return None

    if event.type in _QUIET_TYPES:
        logger.debug("SSE %s sessionID=%s", event.type.value, event.session_id or "-")
    else:
        logger.info("SSE %s%s", event.type.value, f" sessionID={event.session_id}" if event.session_id else "")
    return event
