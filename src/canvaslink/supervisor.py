"""Connectivity supervision: health checks and the auto-restarting event stream.

A :class:`ConnectionSupervisor` runs two independent tasks on the event loop:

* the health loop polls ``GET /global/health`` every 3 s, slowing to 10 s
  after five consecutive failures and speeding back up on the next success;
* the stream loop reads ``GET /global/event`` line by line, publishes decoded
  events on the :class:`~canvaslink.bus.EventBus`, and reopens the stream
  2 s after it ends, forever, until stopped.

All state changes happen on the loop between awaits, so no locking is needed.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Awaitable, Callable

import httpx

from canvaslink.api import ServerApi
from canvaslink.bus import EventBus
from canvaslink.config import ClientSettings
from canvaslink.errors import InvalidServerURL, ServerApiError
from canvaslink.events import DomainEvent, EventType, decode_line
from canvaslink.log_utils import log_event

logger = logging.getLogger(__name__)

STREAM_FAILURES_BEFORE_ALERT = 3

Sleep = Callable[[float], Awaitable[None]]
StateListener = Callable[["ConnectionState"], None]


class ConnectionStatus(str, Enum):
    UNKNOWN = "unknown"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DEGRADED = "degraded"
    LOST = "lost"


@dataclass(frozen=True)
class ConnectionState:
    """Snapshot of connectivity; replaced wholesale on every change."""

    status: ConnectionStatus = ConnectionStatus.UNKNOWN
    server_version: str = ""
    last_error: str | None = None
    consecutive_failures: int = 0
    stream_open: bool = False

    @property
    def is_connected(self) -> bool:
        return self.status is ConnectionStatus.CONNECTED


def health_interval(failures: int, *, base: float = 3.0, backoff: float = 10.0, after: int = 5) -> float:
    """Delay before the next health check given the current failure streak."""
    return backoff if failures >= after else base


class ConnectionSupervisor:
    """Owns the server API client and event bus and keeps both connected.

    Construct one per server; collaborators receive the instance explicitly.
    """

    def __init__(
        self,
        settings: ClientSettings | None = None,
        *,
        api: ServerApi | None = None,
        bus: EventBus | None = None,
        http_client: httpx.AsyncClient | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.settings = settings or ClientSettings()
        self.api = api or ServerApi(
            self.settings.server_url,
            http_client,
            health_timeout=self.settings.health_timeout,
        )
        self.bus = bus or EventBus()
        self._sleep = sleep
        self._state = ConnectionState()
        self._listeners: list[StateListener] = []
        self._health_task: asyncio.Task[None] | None = None
        self._stream_task: asyncio.Task[None] | None = None
        self._health_ok = False
        self._stream_failures = 0
        # Bumped by every start(); a stop() that overlapped a newer start() leaves its state alone.
        self._generation = 0
        self._first_check = asyncio.Event()
        self.stream_connections = 0

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def server_url(self) -> str:
        return self.api.base_url

    @property
    def running(self) -> bool:
        return self._stream_task is not None or self._health_task is not None

    def add_state_listener(self, listener: StateListener) -> Callable[[], None]:
        """Call ``listener`` with the new state after every change; returns a remover."""
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    async def start(self) -> None:
        """Spawn both loops, then wait for the first health check (or a stop)."""
        if not self.running:
            # Tasks are created before the first await so overlapping calls see them.
            log_event(logger, "connection.start", url=self.server_url)
            self._generation += 1
            self._health_ok = False
            self._stream_failures = 0
            self._first_check = asyncio.Event()
            self._update(status=ConnectionStatus.CONNECTING, consecutive_failures=0, last_error=None)
            loop = asyncio.get_running_loop()
            self._stream_task = loop.create_task(self._stream_loop(), name="canvaslink:stream")
            self._health_task = loop.create_task(self._health_loop(self._first_check), name="canvaslink:health")
        await self._first_check.wait()

    async def stop(self) -> None:
        generation = self._generation
        first_check = self._first_check
        tasks = [task for task in (self._stream_task, self._health_task) if task is not None]
        self._stream_task = None
        self._health_task = None
        for task in tasks:
            task.cancel()
        first_check.set()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if generation != self._generation:
            return
        self._health_ok = False
        self._update(status=ConnectionStatus.LOST, stream_open=False, consecutive_failures=0)
        log_event(logger, "connection.stop", url=self.server_url)

    async def reconnect(self) -> None:
        await self.stop()
        await self.start()

    async def configure(self, url: str) -> None:
        """Point at a different server and reconnect from scratch."""
        self.settings.server_url = url
        self.api.base_url = self.settings.server_url
        await self.reconnect()

    async def aclose(self) -> None:
        await self.stop()
        self.bus.close()
        await self.api.aclose()

    def next_health_interval(self) -> float:
        return health_interval(
            self._state.consecutive_failures,
            base=self.settings.health_interval,
            backoff=self.settings.health_backoff_interval,
            after=self.settings.health_backoff_after,
        )

    async def check_health(self) -> bool:
        try:
            info = await self.api.health()
        except InvalidServerURL as exc:
            logger.error("%s", exc)
            self._record_failure("Invalid server URL")
            return False
        except ServerApiError as exc:
            logger.debug("Health check failed: %s", exc)
            self._record_failure(f"Server not available at {self.server_url}")
            return False
        except Exception:
            logger.exception("Unexpected error checking server health")
            self._record_failure(f"Server not available at {self.server_url}")
            return False

        if not self._state.is_connected:
            logger.info("Connected to server v%s", info.version)
        self._health_ok = True
        self._update(
            status=ConnectionStatus.CONNECTED,
            server_version=info.version,
            last_error=None,
            consecutive_failures=0,
        )
        return True

    def _record_failure(self, message: str) -> None:
        self._health_ok = False
        failures = self._state.consecutive_failures + 1
        status = ConnectionStatus.DEGRADED if self._state.stream_open else ConnectionStatus.LOST
        if failures == 1:
            logger.warning("%s", message)
            self._update(status=status, consecutive_failures=failures, last_error=message)
        else:
            self._update(status=status, consecutive_failures=failures)

    async def _health_loop(self, first_check: asyncio.Event) -> None:
        try:
            await self.check_health()
        finally:
            first_check.set()
        while True:
            await self._sleep(self.next_health_interval())
            await self.check_health()

    async def _stream_loop(self) -> None:
        while True:
            try:
                await self._read_stream()
                logger.warning("SSE stream ended")
            except InvalidServerURL as exc:
                logger.error("Invalid SSE URL: %s", exc)
                self._update(last_error="Invalid server URL")
            except ServerApiError as exc:
                self._stream_failed(exc)
            except Exception:
                logger.exception("Unexpected error reading the event stream")
            self._stream_closed()
            await self._sleep(self.settings.reconnect_delay)

    async def _read_stream(self) -> None:
        async with self.api.stream_events() as response:
            self.stream_connections += 1
            self._update(stream_open=True)
            logger.info("SSE stream connected, waiting for events...")
            async for line in response.aiter_lines():
                if not line:
                    continue
                event = decode_line(line)
                if event is not None:
                    self._stream_failures = 0
                    self.handle_event(event)

    def handle_event(self, event: DomainEvent) -> None:
        if event.type is EventType.SERVER_CONNECTED:
            # The stream itself proves the server is alive.
            self._update(status=ConnectionStatus.CONNECTED, consecutive_failures=0, last_error=None)
            logger.info("Server connected event processed")
        self.bus.publish(event)

    def _stream_failed(self, exc: ServerApiError) -> None:
        logger.error("SSE stream error: %s", exc)
        self._stream_failures += 1
        if self._stream_failures >= STREAM_FAILURES_BEFORE_ALERT:
            self._update(last_error="SSE connection lost")

    def _stream_closed(self) -> None:
        status = self._state.status
        if not self._health_ok and status in (ConnectionStatus.CONNECTED, ConnectionStatus.DEGRADED):
            status = ConnectionStatus.LOST
        self._update(stream_open=False, status=status)

    def _update(self, **changes: object) -> None:
        previous = self._state
        current = replace(previous, **changes)  # type: ignore[arg-type]
        if current == previous:
            return
        self._state = current
        if previous.status is not current.status:
            log_event(
                logger,
                "connection.status",
                old=previous.status.value,
                new=current.status.value,
                failures=current.consecutive_failures,
            )
        for listener in tuple(self._listeners):
            try:
                listener(current)
            except Exception:
                logger.exception("Connection state listener failed")
