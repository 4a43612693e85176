"""App-level view of every node: persistence, activity tracking and runtimes."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List

from pydantic import TypeAdapter, ValidationError

from canvaslink.bus import Subscription
from canvaslink.errors import ServerApiError
from canvaslink.events import DomainEvent, EventType
from canvaslink.paths import nodes_file
from canvaslink.reconcile import NodeRecord, ReconcileReport, reconcile_sessions
from canvaslink.runtime import SessionRuntime
from canvaslink.supervisor import ConnectionState, ConnectionStatus, ConnectionSupervisor

logger = logging.getLogger(__name__)

ACTIVITY_EVENTS = frozenset(
    {
        EventType.SESSION_STATUS,
        EventType.SESSION_IDLE,
        EventType.SESSION_ERROR,
        EventType.MESSAGE_UPDATED,
        EventType.MESSAGE_PART_UPDATED,
        EventType.PERMISSION_ASKED,
    }
)

_RECORDS = TypeAdapter(List[NodeRecord])


class NodeStore:
    """JSON file holding the node list under the user state directory."""

    def __init__(self, path: Path | None = None) -> None:
        self.path = path or nodes_file()

    def load(self) -> list[NodeRecord]:
        if not self.path.exists():
            return []
        try:
            return _RECORDS.validate_json(self.path.read_bytes())
        except (OSError, ValidationError) as exc:
            logger.warning("Ignoring unreadable node store %s: %s", self.path, exc)
            return []

    def save(self, records: List[NodeRecord]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_bytes(_RECORDS.dump_json(records, indent=2))


class AppState:
    """Owns the node list and one lazily created :class:`SessionRuntime` per node."""

    def __init__(
        self,
        supervisor: ConnectionSupervisor,
        store: NodeStore | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.supervisor = supervisor
        self.store = store or NodeStore()
        self.nodes: list[NodeRecord] = []
        self.last_reconcile: ReconcileReport | None = None
        self._clock = clock
        self._runtimes: Dict[str, SessionRuntime] = {}
        self._activity_marks: Dict[str, float] = {}
        self._subscription: Subscription | None = None
        self._remove_state_listener: Callable[[], None] | None = None
        self._needs_reconcile = False

    @property
    def active_session_count(self) -> int:
        return sum(1 for node in self.nodes if node.session_id is not None)

    async def initialize(self) -> None:
        self.nodes = self.store.load()
        self._remove_state_listener = self.supervisor.add_state_listener(self._on_connection_state)
        # Listen first so events published during start and reconcile are seen.
        self._subscription = self.supervisor.bus.listen(self.handle_event, name="app")
        await self.supervisor.start()
        await self.reconcile()
        logger.info("AppState initialized with %d nodes", len(self.nodes))

    async def reconcile(self) -> ReconcileReport:
        report = await reconcile_sessions(self.supervisor.api, self.nodes)
        self.last_reconcile = report
        if not report.ok:
            return report
        for node in self.nodes:
            runtime = self._runtimes.get(node.node_id)
            if runtime is not None and runtime.session_id in report.cleared:
                await runtime.attach(None)
        self.save()
        return report

    def save(self) -> None:
        try:
            self.store.save(self.nodes)
        except OSError as exc:
            logger.error("Failed to save nodes: %s", exc)

    def node(self, node_id: str) -> NodeRecord | None:
        for node in self.nodes:
            if node.node_id == node_id:
                return node
        return None

    def node_for_session(self, session_id: str) -> NodeRecord | None:
        for node in self.nodes:
            if node.session_id == session_id:
                return node
        return None

    def add_node(self, title: str | None = None, *, node_id: str | None = None) -> NodeRecord:
        node = NodeRecord(title=title or f"Session {len(self.nodes) + 1}")
        if node_id is not None:
            node.node_id = node_id
        self.nodes.append(node)
        self.save()
        logger.info("Added node %s", node.node_id)
        return node

    async def remove_node(self, node_id: str) -> bool:
        """Drop a node, closing its runtime and deleting its server session."""
        node = self.node(node_id)
        if node is None:
            return False
        runtime = self._runtimes.pop(node_id, None)
        if runtime is not None:
            await runtime.close()
        if node.session_id is not None:
            try:
                await self.supervisor.api.delete_session(node.session_id)
            except ServerApiError as exc:
                logger.error("Failed to delete session %s: %s", node.session_id, exc)
            self._activity_marks.pop(node.session_id, None)
        self.nodes.remove(node)
        self.save()
        logger.info("Removed node %s", node_id)
        return True

    async def runtime(self, node_id: str) -> SessionRuntime:
        existing = self._runtimes.get(node_id)
        if existing is not None:
            return existing
        node = self.node(node_id)
        if node is None:
            raise KeyError(node_id)
        runtime = SessionRuntime(node_id, self.supervisor)
        runtime.title = node.title
        self._runtimes[node_id] = runtime
        runtime.start()
        runtime.on_change(self._sync_node)
        if node.session_id is not None:
            await runtime.attach(node.session_id)
        return runtime

    def bind(self, node_id: str, session_id: str | None) -> None:
        node = self.node(node_id)
        if node is None:
            return
        node.session_id = session_id
        if session_id is None:
            logger.info("Cleared session from node %s", node_id)
        else:
            node.last_activity = datetime.now(timezone.utc)
            logger.info("Assigned session %s to node %s", session_id, node_id)
        self.save()

    async def handle_event(self, event: DomainEvent) -> None:
        if event.type is EventType.SERVER_CONNECTED:
            if self._needs_reconcile:
                self._needs_reconcile = False
                logger.info("Reconnected; reconciling sessions")
                await self.reconcile()
            return
        if event.type not in ACTIVITY_EVENTS or not event.session_id:
            return
        node = self.node_for_session(event.session_id)
        if node is None:
            return
        self.touch(node)
        if event.type is EventType.SESSION_ERROR and event.error:
            logger.error("Session %s error: %s", event.session_id, event.error)

    def touch(self, node: NodeRecord) -> bool:
        """Mark activity on ``node``; at most one update per throttle window per session."""
        session_id = node.session_id
        if session_id is None:
            return False
        now = self._clock()
        last = self._activity_marks.get(session_id)
        if last is not None and now - last < self.supervisor.settings.activity_throttle:
            return False
        self._activity_marks[session_id] = now
        node.last_activity = datetime.now(timezone.utc)
        return True

    async def shutdown(self) -> None:
        if self._subscription is not None:
            await self._subscription.cancel()
            self._subscription = None
        if self._remove_state_listener is not None:
            self._remove_state_listener()
            self._remove_state_listener = None
        runtimes = list(self._runtimes.values())
        self._runtimes.clear()
        for runtime in runtimes:
            await runtime.close()
        self.save()
        await self.supervisor.aclose()
        logger.info("AppState shut down")

    def _on_connection_state(self, state: ConnectionState) -> None:
        if state.status in (ConnectionStatus.LOST, ConnectionStatus.DEGRADED):
            self._needs_reconcile = True

    def _sync_node(self, runtime: SessionRuntime) -> None:
        node = self.node(runtime.node_id)
        if node is None:
            return
        if runtime.title and node.title != runtime.title:
            node.title = runtime.title
            self.save()
        if node.session_id != runtime.session_id:
            self.bind(runtime.node_id, runtime.session_id)
