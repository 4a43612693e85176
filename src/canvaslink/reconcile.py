"""Repair locally stored node-to-session links against the server's live sessions."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Iterable

from pydantic import BaseModel, ConfigDict, Field

from canvaslink.errors import ServerApiError
from canvaslink.log_utils import log_event

if TYPE_CHECKING:
    from canvaslink.api import ServerApi

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class NodeRecord(BaseModel):
    """A canvas node as persisted between runs; messages are never stored."""

    model_config = ConfigDict(extra="ignore", validate_assignment=True)

    node_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    title: str = "Session"
    session_id: str | None = None
    last_activity: datetime | None = None
    created_at: datetime = Field(default_factory=_now)


@dataclass
class ReconcileReport:
    kept: list[str] = field(default_factory=list)
    cleared: list[str] = field(default_factory=list)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def reconcile_sessions(
    api: "ServerApi",
    nodes: Iterable[NodeRecord],
    now: datetime | None = None,
) -> ReconcileReport:
    """Clear links to sessions the server no longer has; refresh the rest.

    A single best-effort pass: a failed listing is logged and reported, and
    no record is touched.
    """

    report = ReconcileReport()
    try:
        sessions = await api.list_sessions()
    except ServerApiError as exc:
        logger.error("Failed to reconcile sessions: %s", exc)
        report.error = str(exc)
        return report

    live = {session.id for session in sessions}
    stamp = now or _now()
    for node in nodes:
        session_id = node.session_id
        if session_id is None:
            continue
        if session_id in live:
            node.last_activity = stamp
            report.kept.append(session_id)
            logger.info("Reconciled session %s - found on server", session_id)
        else:
            node.session_id = None
            report.cleared.append(session_id)
            logger.warning("Session %s not found on server", session_id)

    log_event(logger, "reconcile.done", kept=len(report.kept), cleared=len(report.cleared), live=len(live))
    return report
