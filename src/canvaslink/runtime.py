"""Per-node session state machine driven by stream events and REST actions."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Callable, List

from canvaslink.errors import ServerApiError
from canvaslink.events import DomainEvent, EventType, extract_path
from canvaslink.log_utils import log_context, log_event
from canvaslink.merger import StreamingTextMerger, merge_streaming_text
from canvaslink.schema import ProvidersCatalog, ServerMessage, ToolUse, ms_to_datetime

if TYPE_CHECKING:
    from canvaslink.api import ServerApi
    from canvaslink.bus import Subscription
    from canvaslink.supervisor import ConnectionSupervisor

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class NodeStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    IDLE = "idle"
    RUNNING = "running"
    ERROR = "error"

    @property
    def label(self) -> str:
        return _STATUS_LABELS[self]

    @property
    def is_active(self) -> bool:
        return self in (NodeStatus.CONNECTING, NodeStatus.RUNNING)


_STATUS_LABELS = {
    NodeStatus.DISCONNECTED: "Disconnected",
    NodeStatus.CONNECTING: "Connecting",
    NodeStatus.IDLE: "Ready",
    NodeStatus.RUNNING: "Running",
    NodeStatus.ERROR: "Error",
}


@dataclass
class ToolUseInfo:
    name: str
    status: str = "pending"
    input: str | None = None
    output: str | None = None
    permission_id: str | None = None

    @classmethod
    def from_wire(cls, tool: ToolUse) -> "ToolUseInfo":
        return cls(
            name=tool.name or "unknown",
            status=tool.status or "pending",
            input=tool.input,
            output=tool.output,
            permission_id=tool.permission_id,
        )


@dataclass
class ChatMessage:
    role: str
    content: str = ""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=_now)
    is_streaming: bool = False
    tool_use: ToolUseInfo | None = None

    @classmethod
    def from_server(cls, message: ServerMessage) -> "ChatMessage":
        created = ms_to_datetime(message.info.time.created if message.info.time else None)
        tool = message.tool_use
        return cls(
            id=message.id,
            role=message.role,
            content=message.content,
            created_at=created or _now(),
            tool_use=ToolUseInfo.from_wire(tool) if tool is not None else None,
        )


@dataclass(frozen=True)
class PendingPermission:
    id: str
    tool: str
    description: str = ""


@dataclass(frozen=True)
class ModelOption:
    """One selectable ``provider/model`` entry from the server catalog."""

    id: str
    provider_id: str
    name: str
    family: str | None = None
    is_free: bool = False

    @classmethod
    def from_catalog(cls, catalog: ProvidersCatalog) -> List["ModelOption"]:
        options: list[ModelOption] = []
        for provider in catalog.providers:
            for key, model in provider.models.items():
                model_id = model.id or key
                options.append(
                    cls(
                        id=f"{provider.id}/{model_id}",
                        provider_id=provider.id,
                        name=model.name or model_id,
                        family=model.family,
                        is_free=model.is_free,
                    )
                )
        options.sort(key=lambda option: (option.provider_id, option.name.lower()))
        return options


ChangeListener = Callable[["SessionRuntime"], None]


class SessionRuntime:
    """State of one canvas node bound to at most one server session.

    Stream events are applied only when their ``session_id`` equals the
    runtime's current session. Text deltas are buffered in a
    :class:`StreamingTextMerger` and applied on its flush cadence. All
    mutation happens on the event loop; REST calls are awaited in place and
    never retried.
    """

    def __init__(
        self,
        node_id: str,
        supervisor: "ConnectionSupervisor",
        *,
        model: str | None = None,
        flush_interval: float | None = None,
    ) -> None:
        self.node_id = node_id
        self.supervisor = supervisor
        self.session_id: str | None = None
        self.title: str | None = None
        self.directory: str | None = None
        self.status = NodeStatus.DISCONNECTED
        self.messages: list[ChatMessage] = []
        self.last_error: str | None = None
        self.streaming_message_id: str | None = None
        self.pending_permission: PendingPermission | None = None
        self.model = model or supervisor.settings.default_model
        self.models: list[ModelOption] = []
        # Id of the optimistic placeholder until the server's message id is known.
        self._placeholder_id: str | None = None
        self._listeners: list[ChangeListener] = []
        self._subscription: Subscription | None = None
        self._merger = StreamingTextMerger(
            self._apply_text,
            interval=flush_interval if flush_interval is not None else supervisor.settings.flush_interval,
            name=f"node:{node_id}",
        )

    @property
    def api(self) -> "ServerApi":
        return self.supervisor.api

    @property
    def streaming_message(self) -> ChatMessage | None:
        if self.streaming_message_id is None:
            return None
        return self.find_message(self.streaming_message_id)

    def find_message(self, message_id: str) -> ChatMessage | None:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None

    def start(self) -> None:
        """Begin receiving stream events. Requires a running event loop."""
        if self._subscription is None:
            self._subscription = self.supervisor.bus.listen(self.handle_event, name=f"runtime:{self.node_id}")

    async def close(self) -> None:
        self._merger.close()
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await subscription.cancel()

    def on_change(self, listener: ChangeListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def flush(self) -> int:
        """Apply buffered text immediately."""
        return self._merger.flush()

    def select_model(self, model: str) -> None:
        self.model = model
        logger.info("Node %s model set to %s", self.node_id, model)
        self._changed()

    async def attach(self, session_id: str | None) -> None:
        """Bind to ``session_id`` (reloading its history) or detach with ``None``."""
        self._reset_stream()
        self.session_id = session_id
        self.last_error = None
        if session_id is None:
            self.messages.clear()
            self._set_status(NodeStatus.DISCONNECTED)
            return
        self._set_status(NodeStatus.IDLE)
        await self.load_messages()

    async def create_session(self, directory: str | None = None) -> bool:
        self._set_status(NodeStatus.CONNECTING)
        self.last_error = None
        try:
            session = await self.api.create_session()
        except ServerApiError as exc:
            self._fail("Failed to create session", exc)
            return False
        self._reset_stream()
        self.session_id = session.id
        self.title = self.title or session.title
        self.directory = directory or session.directory
        self.messages.clear()
        logger.info("Created session %s for node %s", session.id, self.node_id)
        self._set_status(NodeStatus.IDLE)
        return True

    async def delete_session(self) -> bool:
        session_id = self.session_id
        if session_id is None:
            return False
        try:
            await self.api.delete_session(session_id)
        except ServerApiError as exc:
            self._fail("Failed to delete session", exc)
            return False
        self._reset_stream()
        self.session_id = None
        self.title = None
        self.messages.clear()
        logger.info("Deleted session %s", session_id)
        self._set_status(NodeStatus.DISCONNECTED)
        return True

    async def send_message(self, text: str) -> bool:
        """Send a prompt; returns ``False`` when refused or when the request fails.

        The user message and an empty streaming assistant placeholder are added
        before the request is sent. A failed send is not retried because the
        server may already have accepted it.
        """

        content = text.strip()
        session_id = self.session_id
        if session_id is None or not content:
            return False
        if self.status is NodeStatus.RUNNING:
            logger.info("Node %s is busy; prompt not sent", self.node_id)
            return False

        self.last_error = None
        self.messages.append(ChatMessage(role="user", content=content))
        placeholder = ChatMessage(role="assistant", is_streaming=True)
        self.messages.append(placeholder)
        self.streaming_message_id = placeholder.id
        self._placeholder_id = placeholder.id
        self._set_status(NodeStatus.RUNNING)

        try:
            await self.api.send_prompt(session_id, content, model=self.model, directory=self.directory)
        except ServerApiError as exc:
            if self._placeholder_id == placeholder.id:
                self._remove_message(placeholder.id)
            self._fail("Failed to send prompt", exc)
            return False
        return True

    async def abort(self) -> bool:
        session_id = self.session_id
        if session_id is None:
            return False
        try:
            await self.api.abort_session(session_id)
        except ServerApiError as exc:
            self._fail("Failed to abort session", exc)
            return False
        self._finish_turn()
        return True

    async def fork(self, message_id: str) -> str | None:
        session_id = self.session_id
        if session_id is None:
            return None
        try:
            return await self.api.fork_session(session_id, message_id)
        except ServerApiError as exc:
            self._fail("Failed to fork session", exc)
            return None

    async def rename(self, title: str) -> bool:
        title = title.strip()
        session_id = self.session_id
        if session_id is None or not title:
            return False
        try:
            await self.api.rename_session(session_id, title)
        except ServerApiError as exc:
            self._fail("Failed to rename session", exc)
            return False
        self.title = title
        self._changed()
        return True

    async def respond_to_permission(self, approved: bool) -> bool:
        permission = self.pending_permission
        session_id = self.session_id
        if session_id is None or permission is None:
            return False
        try:
            await self.api.respond_to_permission(session_id, permission.id, approved)
        except ServerApiError as exc:
            self._fail("Failed to respond to permission", exc)
            return False
        if self.pending_permission == permission:
            self.pending_permission = None
        self._changed()
        return True

    async def load_models(self) -> list[ModelOption]:
        try:
            catalog = await self.api.get_providers()
        except ServerApiError as exc:
            logger.warning("Failed to load models: %s", exc)
            return self.models
        self.models = ModelOption.from_catalog(catalog)
        logger.debug("Loaded %d models", len(self.models))
        self._changed()
        return self.models

    async def load_messages(self) -> bool:
        session_id = self.session_id
        if session_id is None:
            return False
        try:
            history = await self.api.get_messages(session_id)
        except ServerApiError as exc:
            logger.error("Failed to load messages: %s", exc)
            return False
        if self.session_id != session_id:
            return False
        self.messages = [ChatMessage.from_server(message) for message in history]
        logger.debug("Loaded %d messages for session %s", len(self.messages), session_id)
        self._changed()
        return True

    def handle_event(self, event: DomainEvent) -> None:
        if self.session_id is None or event.session_id != self.session_id:
            return
        with log_context(session=self.session_id, node=self.node_id):
            self._dispatch(event)

    def _dispatch(self, event: DomainEvent) -> None:
        kind = event.type
        if kind is EventType.SESSION_STATUS:
            if event.status == "idle":
                self._finish_turn()
            elif event.status == "busy":
                self._set_status(NodeStatus.RUNNING)
        elif kind is EventType.SESSION_IDLE:
            self._finish_turn()
        elif kind is EventType.SESSION_ERROR:
            self._session_error(event.error or "Session error")
        elif kind is EventType.MESSAGE_PART_DELTA:
            if event.field == "text" and event.message_id and event.delta:
                self._merger.enqueue(event.message_id, event.delta)
        elif kind is EventType.PERMISSION_ASKED:
            if event.request_id:
                self.pending_permission = PendingPermission(
                    id=event.request_id,
                    tool=event.tool_name or "unknown",
                    description=event.description or "",
                )
                logger.info("Permission asked: %s", self.pending_permission.tool)
                self._changed()
        elif kind is EventType.PERMISSION_REPLIED:
            replied = event.request_id or extract_path(event.properties, ("permissionID",))
            if self.pending_permission is not None and replied == self.pending_permission.id:
                self.pending_permission = None
                self._changed()
        else:
            logger.debug("Ignoring %s for node %s", kind.value, self.node_id)

    def _finish_turn(self) -> None:
        self._merger.flush()
        self._finalize_streaming()
        self._set_status(NodeStatus.IDLE)
        self._changed()

    def _session_error(self, message: str) -> None:
        self._merger.flush()
        current = self.streaming_message
        if current is not None and not current.content:
            self._remove_message(current.id)
        self._finalize_streaming()
        self.last_error = message
        logger.error("Session error: %s", message)
        self._set_status(NodeStatus.ERROR)
        self._changed()

    def _apply_text(self, message_id: str, text: str) -> None:
        message = self.find_message(message_id)
        if message is None:
            placeholder = self.find_message(self._placeholder_id) if self._placeholder_id else None
            if placeholder is not None:
                placeholder.id = message_id
                message = placeholder
            else:
                self._finalize_streaming()
                message = ChatMessage(role="assistant", id=message_id, is_streaming=True)
                self.messages.append(message)
            self._placeholder_id = None
            self.streaming_message_id = message_id
        message.content = merge_streaming_text(message.content, text)
        self._changed()

    def _finalize_streaming(self) -> None:
        current = self.streaming_message
        if current is not None:
            current.is_streaming = False
        self.streaming_message_id = None
        self._placeholder_id = None

    def _remove_message(self, message_id: str) -> None:
        self.messages = [message for message in self.messages if message.id != message_id]
        if self.streaming_message_id == message_id:
            self.streaming_message_id = None
        if self._placeholder_id == message_id:
            self._placeholder_id = None

    def _reset_stream(self) -> None:
        self._merger.close()
        self.streaming_message_id = None
        self._placeholder_id = None
        self.pending_permission = None

    def _fail(self, action: str, exc: ServerApiError) -> None:
        self.last_error = str(exc)
        logger.error("%s: %s", action, exc)
        self._set_status(NodeStatus.ERROR)
        self._changed()

    def _set_status(self, status: NodeStatus) -> None:
        if status is self.status:
            return
        previous, self.status = self.status, status
        log_event(logger, "node.status", node=self.node_id, old=previous.value, new=status.value)
        self._changed()

    def _changed(self) -> None:
        for listener in tuple(self._listeners):
            try:
                listener(self)
            except Exception:
                logger.exception("Change listener failed for node %s", self.node_id)
