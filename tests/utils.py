from __future__ import annotations

import asyncio
import inspect
import json
from typing import Any, AsyncIterator, Awaitable, Callable

import httpx

from canvaslink.api import ServerApi
from canvaslink.config import ClientSettings
from canvaslink.events import DomainEvent, decode_payload
from canvaslink.supervisor import ConnectionSupervisor

BASE_URL = "http://agent.test"


def event_document(event_type: str, **properties: Any) -> dict[str, Any]:
    return {"directory": "/work", "payload": {"type": event_type, "properties": properties}}


def event_line(event_type: str, **properties: Any) -> str:
    return "data: " + json.dumps(event_document(event_type, **properties))


def make_event(event_type: str, **properties: Any) -> DomainEvent:
    event = decode_payload(event_document(event_type, **properties))
    assert event is not None
    return event


def delta(session_id: str, message_id: str, text: str) -> DomainEvent:
    return make_event(
        "message.part.delta",
        sessionID=session_id,
        messageID=message_id,
        partID="prt_1",
        field="text",
        delta=text,
    )


def make_settings(**overrides: Any) -> ClientSettings:
    values: dict[str, Any] = {"server_url": BASE_URL, "flush_interval": 0.01}
    values.update(overrides)
    return ClientSettings(**values)


class RecordingSleep:
    """Stand-in for ``asyncio.sleep`` that records delays and barely waits."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0.001)

    def count(self, delay: float) -> int:
        return sum(1 for value in self.delays if value == delay)


Handler = Callable[[httpx.Request], "httpx.Response | Awaitable[httpx.Response]"]


class FakeServer:
    """In-memory agent server behind ``httpx.MockTransport``.

    Each event-stream connection consumes the next entry of ``streams``; once
    they run out, connections get an empty stream that ends immediately.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.healthy_status = 200
        self.version = "1.2.3"
        self.sessions: list[dict[str, Any]] = [{"id": "ses_live", "title": "Live"}]
        self.messages: dict[str, list[dict[str, Any]]] = {}
        self.providers: dict[str, Any] = {"providers": [], "default": {}}
        self.streams: list[list[str]] = []
        self.stream_status = 200
        self.stream_connections = 0
        # When set, each stream stays open after its lines until the event fires.
        self.hold_stream: asyncio.Event | None = None
        self.overrides: dict[tuple[str, str], Handler] = {}
        # Seconds every request waits before it is answered.
        self.latency = 0.0
        self._created = 0

    def fail(self, method: str, path: str, status: int, body: str = "boom") -> None:
        self.overrides[(method, path)] = lambda _request: httpx.Response(status, text=body)

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self._handle_async))

    def api(self) -> ServerApi:
        return ServerApi(BASE_URL, self.client())

    def supervisor(self, sleep: Callable[[float], Awaitable[None]] | None = None, **settings: Any) -> ConnectionSupervisor:
        return ConnectionSupervisor(
            make_settings(**settings),
            http_client=self.client(),
            sleep=sleep or RecordingSleep(),
        )

    async def _handle_async(self, request: httpx.Request) -> httpx.Response:
        if self.latency:
            await asyncio.sleep(self.latency)
        response = self.handle(request)
        if inspect.isawaitable(response):
            response = await response
        return response

    def handle(self, request: httpx.Request) -> httpx.Response | Awaitable[httpx.Response]:
        self.requests.append(request)
        method, path = request.method, request.url.path
        override = self.overrides.get((method, path))
        if override is not None:
            return override(request)

        if path == "/global/health":
            return httpx.Response(self.healthy_status, json={"healthy": True, "version": self.version})
        if path == "/global/event":
            return self._stream()
        if path == "/session" and method == "GET":
            return httpx.Response(200, json=self.sessions)
        if path == "/session" and method == "POST":
            self._created += 1
            session = {"id": f"ses_new{self._created}", "title": "New session", "directory": "/work"}
            self.sessions.append(session)
            return httpx.Response(200, json=session)
        if path == "/config/providers":
            return httpx.Response(200, json=self.providers)

        parts = path.strip("/").split("/")
        if parts[0] == "session" and len(parts) >= 2:
            return self._session_route(method, parts[1], parts[2:], request)
        return httpx.Response(404, text=f"no route for {method} {path}")

    def _session_route(self, method: str, session_id: str, rest: list[str], request: httpx.Request) -> httpx.Response:
        if not rest:
            if method == "DELETE":
                self.sessions = [s for s in self.sessions if s["id"] != session_id]
                return httpx.Response(200, json=True)
            if method == "PATCH":
                title = json.loads(request.content)["title"]
                return httpx.Response(200, json={"id": session_id, "title": title})
            for session in self.sessions:
                if session["id"] == session_id:
                    return httpx.Response(200, json=session)
            return httpx.Response(404, text="session not found")
        action = rest[0]
        if action == "prompt_async":
            return httpx.Response(204)
        if action == "abort":
            return httpx.Response(200, json=True)
        if action == "fork":
            return httpx.Response(200, json={"id": f"{session_id}_fork", "title": "Fork"})
        if action == "message":
            return httpx.Response(200, json=self.messages.get(session_id, []))
        if action == "permissions":
            return httpx.Response(200, json=True)
        return httpx.Response(404, text="unknown action")

    def _stream(self) -> httpx.Response:
        self.stream_connections += 1
        if self.stream_status != 200:
            return httpx.Response(self.stream_status, text="stream unavailable")
        lines = self.streams.pop(0) if self.streams else []
        body = "".join(f"{line}\n" for line in lines).encode("utf-8")
        headers = {"content-type": "text/event-stream"}
        if self.hold_stream is None:
            return httpx.Response(200, headers=headers, content=body)
        return httpx.Response(200, headers=headers, content=self._held(body, self.hold_stream))

    @staticmethod
    async def _held(body: bytes, release: asyncio.Event) -> AsyncIterator[bytes]:
        if body:
            yield body
        await release.wait()


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)
