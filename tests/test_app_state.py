from __future__ import annotations

import asyncio
import os
from pathlib import Path

import httpx
import pytest

from canvaslink.app_state import AppState, NodeStore
from canvaslink.reconcile import NodeRecord
from canvaslink.runtime import NodeStatus
from canvaslink.supervisor import ConnectionStatus
from tests.utils import FakeServer, event_line, make_event, wait_until


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def _store(tmp_path: Path, *records: NodeRecord) -> NodeStore:
    store = NodeStore(tmp_path / "nodes.json")
    if records:
        store.save(list(records))
    return store


def test_node_store_round_trip(tmp_path: Path) -> None:
    store = _store(tmp_path, NodeRecord(node_id="n1", title="One", session_id="ses_1"), NodeRecord(node_id="n2"))

    loaded = store.load()

    assert [(n.node_id, n.title, n.session_id) for n in loaded] == [("n1", "One", "ses_1"), ("n2", "Session", None)]


def test_node_store_ignores_missing_and_corrupt_files(tmp_path: Path) -> None:
    store = NodeStore(tmp_path / "nodes.json")
    assert store.load() == []

    store.path.write_text("{not json", encoding="utf-8")
    assert store.load() == []


def test_default_store_lives_in_state_dir() -> None:
    store = NodeStore()

    assert store.path == Path(os.environ["XDG_STATE_HOME"]) / "canvaslink" / "nodes.json"


@pytest.mark.asyncio
async def test_initialize_reconciles_stored_nodes(tmp_path: Path) -> None:
    server = FakeServer()
    store = _store(
        tmp_path,
        NodeRecord(node_id="live", session_id="ses_live"),
        NodeRecord(node_id="gone", session_id="ses_gone"),
    )
    app = AppState(server.supervisor(), store)

    await app.initialize()
    try:
        assert app.node("live").session_id == "ses_live"
        assert app.node("gone").session_id is None
        assert app.active_session_count == 1
        assert app.last_reconcile is not None and app.last_reconcile.cleared == ["ses_gone"]
        assert {n.node_id: n.session_id for n in store.load()} == {"live": "ses_live", "gone": None}
    finally:
        await app.shutdown()

    assert app.supervisor.state.status is ConnectionStatus.LOST


@pytest.mark.asyncio
async def test_events_published_during_reconcile_are_handled(tmp_path: Path) -> None:
    server = FakeServer()
    app = AppState(server.supervisor(), _store(tmp_path, NodeRecord(node_id="n1", session_id="ses_live")))

    async def _sessions_with_activity(_request: httpx.Request) -> httpx.Response:
        app.supervisor.bus.publish(make_event("session.idle", sessionID="ses_live"))
        await asyncio.sleep(0)
        return httpx.Response(200, json=server.sessions)

    server.overrides[("GET", "/session")] = _sessions_with_activity

    await app.initialize()
    try:
        await wait_until(lambda: "ses_live" in app._activity_marks)
        assert app.node("n1").last_activity is not None
    finally:
        await app.shutdown()


@pytest.mark.asyncio
async def test_runtime_is_created_lazily_and_bound(tmp_path: Path) -> None:
    server = FakeServer()
    app = AppState(server.supervisor(), _store(tmp_path, NodeRecord(node_id="n1", title="Canvas", session_id="ses_live")))
    await app.initialize()
    try:
        runtime = await app.runtime("n1")
        assert await app.runtime("n1") is runtime
        assert runtime.session_id == "ses_live"
        assert runtime.title == "Canvas"
        assert runtime.status is NodeStatus.IDLE

        with pytest.raises(KeyError):
            await app.runtime("missing")

        fresh = app.add_node("Second")
        second = await app.runtime(fresh.node_id)
        assert second.status is NodeStatus.DISCONNECTED
        assert await second.create_session() is True
        assert app.node(fresh.node_id).session_id == "ses_new1"
        assert app.node(fresh.node_id).title == "Second"
        assert app.node_for_session("ses_new1") is fresh
    finally:
        await app.shutdown()

    saved = {n.node_id: n.session_id for n in app.store.load()}
    assert saved[fresh.node_id] == "ses_new1"


@pytest.mark.asyncio
async def test_remove_node_deletes_server_session(tmp_path: Path) -> None:
    server = FakeServer()
    app = AppState(server.supervisor(), _store(tmp_path, NodeRecord(node_id="n1", session_id="ses_live")))
    await app.initialize()
    try:
        await app.runtime("n1")
        assert await app.remove_node("n1") is True
        assert await app.remove_node("n1") is False
    finally:
        await app.shutdown()

    assert server.calls("DELETE", "/session/ses_live")
    assert app.nodes == []
    assert app.store.load() == []


@pytest.mark.asyncio
async def test_bind_and_unbind(tmp_path: Path) -> None:
    server = FakeServer()
    app = AppState(server.supervisor(), _store(tmp_path))
    node = app.add_node()

    app.bind(node.node_id, "ses_live")
    assert node.session_id == "ses_live"
    assert node.last_activity is not None
    assert node.title == "Session 1"

    app.bind(node.node_id, None)
    assert app.store.load()[0].session_id is None
    await app.supervisor.aclose()


@pytest.mark.asyncio
async def test_activity_is_throttled_per_session(tmp_path: Path) -> None:
    server = FakeServer()
    clock = FakeClock()
    app = AppState(server.supervisor(), _store(tmp_path), clock=clock)
    node = app.add_node()
    app.bind(node.node_id, "ses_live")

    event = make_event("message.updated", sessionID="ses_live", info={"id": "msg_1", "role": "assistant"})
    await app.handle_event(event)
    first = node.last_activity
    assert first is not None

    clock.now += 1.0
    assert app.touch(node) is False
    await app.handle_event(event)
    assert node.last_activity == first

    clock.now += 1.5
    assert app.touch(node) is True

    unbound = app.add_node()
    assert app.touch(unbound) is False
    await app.supervisor.aclose()


@pytest.mark.asyncio
async def test_reconnect_triggers_reconcile(tmp_path: Path) -> None:
    server = FakeServer()
    server.hold_stream = asyncio.Event()
    store = _store(tmp_path, NodeRecord(node_id="n1", session_id="ses_live"))
    app = AppState(server.supervisor(asyncio.sleep, health_interval=60.0, reconnect_delay=0.01), store)
    await app.initialize()
    try:
        runtime = await app.runtime("n1")
        await wait_until(lambda: app.supervisor.state.stream_open)

        # The session disappears while the server is unreachable.
        server.sessions = []
        server.healthy_status = 500
        await app.supervisor.check_health()
        assert app.supervisor.state.status is ConnectionStatus.DEGRADED

        server.healthy_status = 200
        server.streams.append([event_line("server.connected")])
        server.hold_stream.set()
        await wait_until(lambda: app.node("n1").session_id is None)
        assert runtime.session_id is None
        assert runtime.status is NodeStatus.DISCONNECTED
    finally:
        await app.shutdown()
