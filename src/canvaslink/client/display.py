"""Shared rich console utilities for client output."""

from __future__ import annotations

from io import StringIO
from threading import Lock
from typing import Any, Iterable

from prompt_toolkit.formatted_text import ANSI  # type: ignore
from prompt_toolkit.shortcuts import print_formatted_text  # type: ignore
from rich.console import Console
from rich.table import Table
from rich.text import Text

from canvaslink.events import DomainEvent, EventType
from canvaslink.runtime import ModelOption, NodeStatus, PendingPermission, SessionRuntime
from canvaslink.schema import SessionInfo
from canvaslink.supervisor import ConnectionState, ConnectionStatus

_render_buffer = StringIO()
_render_console = Console(
    file=_render_buffer,
    force_terminal=True,
    color_system="standard",
    markup=False,
    highlight=False,
    width=120,
)
_render_lock = Lock()

CONNECTION_STYLES = {
    ConnectionStatus.UNKNOWN: "bright_black",
    ConnectionStatus.CONNECTING: "yellow",
    ConnectionStatus.CONNECTED: "green",
    ConnectionStatus.DEGRADED: "yellow",
    ConnectionStatus.LOST: "red",
}

NODE_STYLES = {
    NodeStatus.DISCONNECTED: "bright_black",
    NodeStatus.CONNECTING: "yellow",
    NodeStatus.IDLE: "green",
    NodeStatus.RUNNING: "cyan",
    NodeStatus.ERROR: "red",
}

EVENT_STYLES = {
    EventType.SESSION_ERROR: "red",
    EventType.SERVER_CONNECTED: "green",
    EventType.PERMISSION_ASKED: "magenta",
    EventType.MESSAGE_PART_DELTA: "bright_black",
}


def render_to_text(*args: Any, **kwargs: Any) -> str:
    """Render rich renderables to an ANSI string."""
    kwargs.setdefault("end", "\n")
    with _render_lock:
        _render_buffer.seek(0)
        _render_buffer.truncate(0)
        _render_console.print(*args, **kwargs)
        return _render_buffer.getvalue()


def _render_and_print(*args: Any, **kwargs: Any) -> bool:
    output = render_to_text(*args, **kwargs)
    if output:
        print_formatted_text(ANSI(output), end="")
        return output.endswith("\n")
    return False


def render_connection(state: ConnectionState) -> Text:
    text = Text("● ", style=CONNECTION_STYLES[state.status])
    text.append(state.status.value)
    if state.server_version:
        text.append(f" v{state.server_version}", style="bright_black")
    if state.stream_open:
        text.append(" [stream]", style="bright_black")
    if state.last_error:
        text.append(f" {state.last_error}", style="red")
    return text


def print_connection_state(state: ConnectionState) -> None:
    _render_and_print(render_connection(state))


def render_event(event: DomainEvent) -> Text:
    text = Text(event.type.value, style=EVENT_STYLES.get(event.type, "cyan"))
    if event.session_id:
        text.append(f" session={event.session_id}", style="bright_black")
    if event.message_id:
        text.append(f" message={event.message_id}", style="bright_black")
    detail = event.delta or event.status or event.error or event.description
    if detail:
        text.append(f" {detail!r}")
    return text


def print_event(event: DomainEvent) -> None:
    _render_and_print(render_event(event))


def print_sessions(sessions: Iterable[SessionInfo]) -> None:
    table = Table(show_header=True, header_style="bold", box=None)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Title")
    table.add_column("Directory", style="bright_black")
    table.add_column("Created", style="bright_black")
    rows = 0
    for session in sessions:
        created = session.created_at
        table.add_row(
            session.id,
            session.title or "",
            session.directory or "",
            created.strftime("%Y-%m-%d %H:%M") if created else "",
        )
        rows += 1
    if rows == 0:
        _render_and_print(Text("No sessions.", style="bright_black"))
        return
    _render_and_print(table)


def print_models(options: Iterable[ModelOption], current: str | None) -> None:
    table = Table(show_header=True, header_style="bold", box=None)
    table.add_column("", width=1)
    table.add_column("Model", style="cyan", no_wrap=True)
    table.add_column("Name")
    table.add_column("", style="green")
    for option in options:
        marker = "*" if option.id == current else ""
        table.add_row(marker, option.id, option.name, "free" if option.is_free else "")
    _render_and_print(table)


def render_status(runtime: SessionRuntime) -> Table:
    table = Table(show_header=False, box=None)
    table.add_column("", style="bold")
    table.add_column("")
    table.add_row("Server", render_connection(runtime.supervisor.state))
    table.add_row("URL", runtime.supervisor.server_url)
    table.add_row("Session", runtime.session_id or "none")
    if runtime.title:
        table.add_row("Title", runtime.title)
    table.add_row("Status", Text(runtime.status.label, style=NODE_STYLES[runtime.status]))
    table.add_row("Model", runtime.model or "server default")
    if runtime.directory:
        table.add_row("Directory", runtime.directory)
    if runtime.pending_permission is not None:
        table.add_row("Permission", runtime.pending_permission.tool)
    if runtime.last_error:
        table.add_row("Error", Text(runtime.last_error, style="red"))
    return table


def print_status(runtime: SessionRuntime) -> None:
    _render_and_print(render_status(runtime))


def print_agent_text(text: str) -> None:
    _render_and_print(Text(text), end="")


def print_info(message: str) -> None:
    _render_and_print(Text(message, style="bright_black"))


def print_error(message: str) -> None:
    _render_and_print(Text(message, style="red"))


def print_permission(permission: PendingPermission) -> None:
    text = Text(f"Permission requested for {permission.tool}", style="magenta")
    if permission.description:
        text.append(f": {permission.description}")
    text.append("  (/approve or /deny)", style="bright_black")
    _render_and_print(text)
