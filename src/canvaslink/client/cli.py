"""Command line entry point: health check, session listing, event watch and chat."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Awaitable, Callable, Sequence

from canvaslink.api import ServerApi
from canvaslink.app_state import AppState
from canvaslink.client.display import (
    print_connection_state,
    print_error,
    print_event,
    print_info,
    print_sessions,
)
from canvaslink.client.repl import interactive_loop
from canvaslink.client.session_state import ChatUIState
from canvaslink.config import ClientSettings, load_settings
from canvaslink.errors import ServerApiError
from canvaslink.events import EventType
from canvaslink.log_utils import build_log_config, configure_logging, log_context
from canvaslink.supervisor import ConnectionSupervisor

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_INTERRUPTED = 130

CommandHandler = Callable[[argparse.Namespace, ClientSettings], Awaitable[int]]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="canvaslink", description="Talk to a local agent server.")
    parser.add_argument("--server", help="Server base URL (default from settings).")
    parser.add_argument("--log-level", help="Log level for the log file (DEBUG, INFO, ...).")
    parser.add_argument("--verbose", action="store_true", help="Also log to stderr.")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("status", help="Probe server health once.")
    sub.add_parser("sessions", help="List sessions on the server.")

    watch = sub.add_parser("watch", help="Print stream events and connectivity changes.")
    watch.add_argument("--session", help="Only show events for this session id.")
    watch.add_argument("--all", action="store_true", help="Include heartbeats and text deltas.")
    watch.add_argument("--limit", type=int, help="Exit after this many events.")

    chat = sub.add_parser("chat", help="Interactive chat bound to one session.")
    chat.add_argument("--session", help="Attach to an existing session id.")
    chat.add_argument("--directory", help="Working directory sent with prompts.")
    chat.add_argument("--model", help="Model as provider/model.")
    chat.add_argument("--node", default="cli", help="Local node name remembering the session (default: cli).")
    return parser


async def _cmd_status(_args: argparse.Namespace, settings: ClientSettings) -> int:
    api = ServerApi(settings.server_url, health_timeout=settings.health_timeout)
    try:
        info = await api.health()
    except ServerApiError as exc:
        print_error(f"Server not available at {settings.server_url}: {exc}")
        return EXIT_ERROR
    finally:
        await api.aclose()
    state = "healthy" if info.healthy else "unhealthy"
    print(f"{settings.server_url}: {state}, version {info.version}")
    return EXIT_OK if info.healthy else EXIT_ERROR


async def _cmd_sessions(_args: argparse.Namespace, settings: ClientSettings) -> int:
    api = ServerApi(settings.server_url, health_timeout=settings.health_timeout)
    try:
        sessions = await api.list_sessions()
    except ServerApiError as exc:
        print_error(str(exc))
        return EXIT_ERROR
    finally:
        await api.aclose()
    print_sessions(sessions)
    return EXIT_OK


_NOISY_EVENTS = {EventType.SERVER_HEARTBEAT, EventType.MESSAGE_PART_DELTA, EventType.MESSAGE_PART_UPDATED}


async def _cmd_watch(args: argparse.Namespace, settings: ClientSettings) -> int:
    supervisor = ConnectionSupervisor(settings)
    supervisor.add_state_listener(print_connection_state)
    subscription = supervisor.bus.subscribe(name="watch")
    seen = 0
    try:
        await supervisor.start()
        async for event in subscription:
            if args.session and event.session_id != args.session:
                continue
            if not args.all and event.type in _NOISY_EVENTS:
                continue
            print_event(event)
            seen += 1
            if args.limit and seen >= args.limit:
                break
    finally:
        subscription.close()
        await supervisor.aclose()
    return EXIT_OK


async def _cmd_chat(args: argparse.Namespace, settings: ClientSettings) -> int:
    supervisor = ConnectionSupervisor(settings)
    app = AppState(supervisor)
    await app.initialize()
    try:
        node = app.node(args.node) or app.add_node(args.node, node_id=args.node)
        runtime = await app.runtime(node.node_id)
        if args.model:
            runtime.select_model(args.model)
        if args.directory:
            runtime.directory = args.directory
        with log_context(node=node.node_id):
            if args.session and runtime.session_id != args.session:
                await runtime.attach(args.session)
            elif runtime.session_id is None and not await runtime.create_session(args.directory):
                print_error(f"Could not create a session: {runtime.last_error}")
                return EXIT_ERROR
            print_info(f"[session {runtime.session_id}]")
            state = ChatUIState(server_url=settings.server_url, directory=args.directory)
            await interactive_loop(runtime, state)
    finally:
        await app.shutdown()
    return EXIT_OK


COMMANDS: dict[str, CommandHandler] = {
    "status": _cmd_status,
    "sessions": _cmd_sessions,
    "watch": _cmd_watch,
    "chat": _cmd_chat,
}


async def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = load_settings(server_url=args.server)
    configure_logging(build_log_config(level=args.log_level or settings.log_level, stderr=args.verbose))
    if not settings.server_url_valid:
        print_error(f"Invalid server URL: {settings.server_url}")
        return EXIT_ERROR
    logger.info("canvaslink %s against %s", args.command, settings.server_url)
    try:
        return await COMMANDS[args.command](args, settings)
    except ServerApiError as exc:
        logger.error("Command %s failed: %s", args.command, exc)
        print_error(str(exc))
        return EXIT_ERROR


def main_entry() -> None:
    try:
        raise SystemExit(asyncio.run(main(sys.argv[1:])))
    except KeyboardInterrupt:
        raise SystemExit(EXIT_INTERRUPTED)
