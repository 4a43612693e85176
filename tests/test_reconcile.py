from __future__ import annotations

from datetime import datetime, timezone

import pytest

from canvaslink.reconcile import NodeRecord, reconcile_sessions
from tests.utils import FakeServer


@pytest.mark.asyncio
async def test_absent_sessions_are_cleared_and_present_refreshed() -> None:
    server = FakeServer()
    stamp = datetime(2024, 5, 1, tzinfo=timezone.utc)
    live = NodeRecord(title="Live", session_id="ses_live")
    gone = NodeRecord(title="Gone", session_id="ses_gone")
    empty = NodeRecord(title="Empty")

    report = await reconcile_sessions(server.api(), [live, gone, empty], now=stamp)

    assert report.ok
    assert report.kept == ["ses_live"]
    assert report.cleared == ["ses_gone"]
    assert live.session_id == "ses_live" and live.last_activity == stamp
    assert gone.session_id is None and gone.last_activity is None
    assert empty.last_activity is None


@pytest.mark.asyncio
async def test_listing_failure_leaves_records_untouched() -> None:
    server = FakeServer()
    server.fail("GET", "/session", 500)
    node = NodeRecord(session_id="ses_gone")

    report = await reconcile_sessions(server.api(), [node])

    assert not report.ok
    assert "500" in (report.error or "")
    assert node.session_id == "ses_gone"
    assert report.cleared == []


def test_node_record_defaults() -> None:
    first, second = NodeRecord(), NodeRecord()

    assert first.node_id != second.node_id
    assert first.title == "Session"
    assert first.session_id is None
    assert first.created_at.tzinfo is not None
