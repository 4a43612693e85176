from __future__ import annotations

import asyncio

import pytest

from canvaslink.client import repl
from canvaslink.runtime import NodeStatus, PendingPermission, SessionRuntime
from tests.utils import FakeServer, delta, make_event, wait_until


@pytest.fixture
def output(monkeypatch) -> dict[str, list]:
    seen: dict[str, list] = {"text": [], "error": [], "info": [], "permission": []}
    monkeypatch.setattr(repl, "print_agent_text", seen["text"].append)
    monkeypatch.setattr(repl, "print_error", seen["error"].append)
    monkeypatch.setattr(repl, "print_info", seen["info"].append)
    monkeypatch.setattr(repl, "print_permission", seen["permission"].append)
    return seen


async def _started_runtime(server: FakeServer) -> SessionRuntime:
    runtime = SessionRuntime("cli", server.supervisor())
    assert await runtime.create_session()
    runtime.start()
    return runtime


@pytest.mark.asyncio
async def test_run_turn_prints_streamed_text_until_idle(output) -> None:
    server = FakeServer()
    runtime = await _started_runtime(server)
    bus = runtime.supervisor.bus
    try:
        task = asyncio.create_task(repl.run_turn(runtime, "hi", timeout=2))
        await wait_until(lambda: runtime.status is NodeStatus.RUNNING)
        bus.publish(delta("ses_new1", "msg_a", "Hel"))
        bus.publish(delta("ses_new1", "msg_a", "Hello"))
        bus.publish(make_event("session.idle", sessionID="ses_new1"))
        printer = await task
    finally:
        await runtime.close()

    assert printer is not None
    assert "".join(output["text"]) == "Hello"
    assert output["error"] == []


@pytest.mark.asyncio
async def test_run_turn_pauses_on_permission(output) -> None:
    server = FakeServer()
    runtime = await _started_runtime(server)
    try:
        task = asyncio.create_task(repl.run_turn(runtime, "edit the file", timeout=2))
        await wait_until(lambda: runtime.status is NodeStatus.RUNNING)
        runtime.supervisor.bus.publish(
            make_event("permission.asked", sessionID="ses_new1", id="per_1", tool="edit")
        )
        await task
    finally:
        await runtime.close()

    assert output["permission"] == [PendingPermission(id="per_1", tool="edit")]
    assert runtime.status is NodeStatus.RUNNING


@pytest.mark.asyncio
async def test_run_turn_reports_send_failure(output) -> None:
    server = FakeServer()
    server.fail("POST", "/session/ses_new1/prompt_async", 502)
    runtime = await _started_runtime(server)
    try:
        assert await repl.run_turn(runtime, "hi", timeout=1) is None
    finally:
        await runtime.close()

    assert output["error"][0].startswith("[send failed: Server error (502)")


@pytest.mark.asyncio
async def test_follow_turn_times_out_while_running(output) -> None:
    server = FakeServer()
    runtime = await _started_runtime(server)
    try:
        await runtime.send_message("hi")
        printer = repl.TurnPrinter(runtime)
        assert await repl.follow_turn(runtime, printer, timeout=0.05) is False
    finally:
        await runtime.close()

    assert output["info"] == ["[still running; use /abort to stop]"]
