"""Client-side slash command registry and dispatch."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from canvaslink.client.display import print_error, print_info, print_models, print_status
from canvaslink.client.session_state import ChatUIState
from canvaslink.runtime import SessionRuntime

logger = logging.getLogger(__name__)

SlashHandler = Callable[[SessionRuntime, ChatUIState, str], Awaitable[bool] | bool]


@dataclass
class SlashCommandDef:
    description: str
    hint: str
    handler: SlashHandler


SLASH_HANDLERS: dict[str, SlashCommandDef] = {}


def register_slash_command(
    name: str, description: str, hint: str
) -> Callable[[SlashHandler], SlashHandler]:
    """Decorator to register a slash command."""

    def _decorator(func: SlashHandler) -> SlashHandler:
        SLASH_HANDLERS[name] = SlashCommandDef(description=description, hint=hint, handler=func)
        return func

    return _decorator


def _report_failure(runtime: SessionRuntime, action: str) -> None:
    print_error(f"[{action} failed: {runtime.last_error or 'unknown error'}]")


@register_slash_command("/help", description="Show available slash commands.", hint="/help")
def _handle_help(_runtime: SessionRuntime, _state: ChatUIState, _argument: str) -> bool:
    print("Available slash commands:")
    for entry in SLASH_HANDLERS.values():
        print(f"{entry.hint:<18} - {entry.description}")
    return True


@register_slash_command(
    "/status", description="Show connection, session and model.", hint="/status"
)
def _handle_status(runtime: SessionRuntime, _state: ChatUIState, _argument: str) -> bool:
    print_status(runtime)
    return True


@register_slash_command("/abort", description="Stop the running generation.", hint="/abort")
async def _handle_abort(runtime: SessionRuntime, _state: ChatUIState, _argument: str) -> bool:
    if runtime.session_id is None:
        print("[no session]")
    elif await runtime.abort():
        print("[aborted]")
    else:
        _report_failure(runtime, "abort")
    return True


async def _respond(runtime: SessionRuntime, approved: bool) -> bool:
    permission = runtime.pending_permission
    if permission is None:
        print("[no pending permission]")
        return True
    if await runtime.respond_to_permission(approved):
        print(f"[{'approved' if approved else 'denied'} {permission.tool}]")
    else:
        _report_failure(runtime, "permission response")
    return True


@register_slash_command("/approve", description="Approve the pending permission request.", hint="/approve")
async def _handle_approve(runtime: SessionRuntime, _state: ChatUIState, _argument: str) -> bool:
    return await _respond(runtime, True)


@register_slash_command("/deny", description="Deny the pending permission request.", hint="/deny")
async def _handle_deny(runtime: SessionRuntime, _state: ChatUIState, _argument: str) -> bool:
    return await _respond(runtime, False)


@register_slash_command(
    "/fork", description="Fork the session at a message.", hint="/fork <message-id>"
)
async def _handle_fork(runtime: SessionRuntime, _state: ChatUIState, argument: str) -> bool:
    if not argument:
        print("Usage: /fork <message-id>")
        return True
    forked = await runtime.fork(argument.split()[0])
    if forked is None:
        _report_failure(runtime, "fork")
    else:
        print(f"[forked to session {forked}]")
    return True


@register_slash_command("/rename", description="Rename the current session.", hint="/rename <title>")
async def _handle_rename(runtime: SessionRuntime, _state: ChatUIState, argument: str) -> bool:
    if not argument:
        print("Usage: /rename <title>")
        return True
    if await runtime.rename(argument):
        print(f"[renamed to {runtime.title}]")
    else:
        _report_failure(runtime, "rename")
    return True


@register_slash_command(
    "/models", description="List models, or select one by id.", hint="/models [provider/model]"
)
async def _handle_models(runtime: SessionRuntime, _state: ChatUIState, argument: str) -> bool:
    if argument:
        selection = argument.split()[0]
        if "/" not in selection:
            print("Usage: /models <provider/model>")
            return True
        runtime.select_model(selection)
        print(f"[model set to {selection}]")
        return True
    options = await runtime.load_models()
    if not options:
        print_info("[no models available]")
        return True
    print_models(options, runtime.model)
    return True


@register_slash_command("/new", description="Start a new session.", hint="/new")
async def _handle_new(runtime: SessionRuntime, state: ChatUIState, _argument: str) -> bool:
    if await runtime.create_session(state.directory):
        print(f"[session {runtime.session_id}]")
    else:
        _report_failure(runtime, "create session")
    return True


@register_slash_command("/delete", description="Delete the current session.", hint="/delete")
async def _handle_delete(runtime: SessionRuntime, _state: ChatUIState, _argument: str) -> bool:
    session_id = runtime.session_id
    if session_id is None:
        print("[no session]")
    elif await runtime.delete_session():
        print(f"[deleted session {session_id}]")
    else:
        _report_failure(runtime, "delete")
    return True


@register_slash_command("/exit", description="Exit the client.", hint="/exit")
@register_slash_command("/quit", description="Exit the client.", hint="/quit")
def _handle_exit(_runtime: SessionRuntime, _state: ChatUIState, _argument: str) -> bool:
    print("[exiting]")
    raise SystemExit(0)


async def handle_slash_command(line: str, runtime: SessionRuntime, state: ChatUIState) -> bool:
    """Dispatch client-side slash commands, returning True if handled."""
    trimmed = line.strip()
    if not trimmed.startswith("/"):
        return False

    parts = trimmed.split(maxsplit=1)
    command = parts[0] if parts else ""
    argument = parts[1].strip() if len(parts) > 1 else ""

    entry = SLASH_HANDLERS.get(command)
    if entry is None:
        return False

    try:
        result = entry.handler(runtime, state, argument)
        if asyncio.iscoroutine(result):
            return bool(await result)
        return bool(result)
    except SystemExit:
        raise
    except Exception as exc:  # noqa: BLE001
        logger.error("Slash command failed (%s): %s", command, exc)
        return True
