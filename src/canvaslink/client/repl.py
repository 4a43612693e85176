"""Interactive REPL loop bound to one session runtime."""

from __future__ import annotations

import asyncio
import sys

from prompt_toolkit import PromptSession  # type: ignore
from prompt_toolkit.key_binding import KeyBindings  # type: ignore

from canvaslink.client.display import (
    print_agent_text,
    print_error,
    print_info,
    print_permission,
    print_status,
)
from canvaslink.client.session_state import ChatUIState
from canvaslink.client.slash import handle_slash_command
from canvaslink.runtime import NodeStatus, PendingPermission, SessionRuntime


class TurnPrinter:
    """Echo assistant text for one turn as the runtime flushes it.

    ``done`` is set when the turn leaves ``running`` or when a permission
    request needs an answer from the prompt.
    """

    def __init__(self, runtime: SessionRuntime) -> None:
        self.start = len(runtime.messages)
        self.done = asyncio.Event()
        self.wrote_text = False
        self._printed: dict[int, int] = {}
        self._permission: PendingPermission | None = None

    def update(self, runtime: SessionRuntime) -> None:
        for message in runtime.messages[self.start :]:
            if message.role != "assistant":
                continue
            shown = self._printed.get(id(message), 0)
            if len(message.content) > shown:
                print_agent_text(message.content[shown:])
                self._printed[id(message)] = len(message.content)
                self.wrote_text = True
        permission = runtime.pending_permission
        if permission is not None and permission != self._permission:
            self._end_line()
            print_permission(permission)
            self._permission = permission
            self.done.set()
        if runtime.status is not NodeStatus.RUNNING:
            self.done.set()

    def finish(self, runtime: SessionRuntime) -> None:
        self._end_line()
        if runtime.status is NodeStatus.ERROR and runtime.last_error:
            print_error(f"[error: {runtime.last_error}]")

    def _end_line(self) -> None:
        if self.wrote_text:
            print()
            self.wrote_text = False


async def follow_turn(runtime: SessionRuntime, printer: TurnPrinter, timeout: float | None = None) -> bool:
    """Wait for the turn to settle; ``False`` if it is still running afterwards."""
    remove = runtime.on_change(printer.update)
    try:
        printer.update(runtime)
        try:
            await asyncio.wait_for(printer.done.wait(), timeout)
        except asyncio.TimeoutError:
            print_info("[still running; use /abort to stop]")
    finally:
        remove()
    printer.finish(runtime)
    return runtime.status is not NodeStatus.RUNNING


async def run_turn(runtime: SessionRuntime, text: str, *, timeout: float | None = None) -> TurnPrinter | None:
    printer = TurnPrinter(runtime)
    if not await runtime.send_message(text):
        if runtime.status is NodeStatus.ERROR and runtime.last_error:
            print_error(f"[send failed: {runtime.last_error}]")
        else:
            print("[session is busy]")
        return None
    await follow_turn(runtime, printer, timeout)
    return printer


async def interactive_loop(runtime: SessionRuntime, state: ChatUIState) -> None:
    """Read prompts and slash commands until EOF or /quit."""
    kb = KeyBindings()
    CANCEL_TOKEN = "__CANCEL__"

    @kb.add("escape")
    def _(event):  # type: ignore
        if not event.app.is_done:
            event.app.exit(result=CANCEL_TOKEN)

    session: PromptSession = PromptSession(key_bindings=kb)
    if state.show_status_on_start:
        print_status(runtime)
        state.show_status_on_start = False

    printer: TurnPrinter | None = None
    while True:
        try:
            line = await session.prompt_async(f"{runtime.status.label.lower()}> ")
            if line == CANCEL_TOKEN:
                if runtime.status is NodeStatus.RUNNING:
                    await runtime.abort()
                    print("[cancelled]")
                continue
        except EOFError:
            break
        except KeyboardInterrupt:
            print("", file=sys.stderr)
            continue

        if not line.strip():
            continue

        if line.startswith("/"):
            if not await handle_slash_command(line, runtime, state):
                print(f"[unknown command: {line.split()[0]}; try /help]")
                continue
            # A permission answer lets the paused turn carry on.
            if printer is not None and runtime.status is NodeStatus.RUNNING and runtime.pending_permission is None:
                printer.done.clear()
                await follow_turn(runtime, printer, state.turn_timeout)
            continue

        if runtime.session_id is None:
            print("[no session; use /new]")
            continue
        printer = await run_turn(runtime, line, timeout=state.turn_timeout)
