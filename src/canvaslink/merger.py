"""Coalescing of streamed text deltas.

The server may redeliver overlapping fragments of the same message (repeated
tails after a reconnect, duplicate delivery). Fragments are merged by
suffix/prefix overlap and buffered per message, then applied to the visible
message on a fixed cadence rather than once per fragment.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict

from canvaslink.log_utils import log_deltas_enabled

logger = logging.getLogger(__name__)

DEFAULT_FLUSH_INTERVAL = 0.08


def merge_streaming_text(current: str, incoming: str) -> str:
    """Append ``incoming`` to ``current`` without repeating an overlapping tail.

    The largest overlap is tried first: accepting a smaller one would keep a
    duplicated fragment in the text.
    """

    if not incoming:
        return current
    if not current:
        return incoming
    if current.endswith(incoming):
        return current

    for overlap in range(min(len(current), len(incoming)), 0, -1):
        if current[-overlap:] == incoming[:overlap]:
            return current + incoming[overlap:]
    return current + incoming


class StreamingTextMerger:
    """Per-message accumulators flushed every ``interval`` seconds.

    ``apply(message_id, text)`` receives the merged pending text for one
    message; it is called from the flush task or from :meth:`flush`. The
    cadence task only runs while something is pending.
    """

    def __init__(
        self,
        apply: Callable[[str, str], None],
        *,
        interval: float = DEFAULT_FLUSH_INTERVAL,
        name: str = "merger",
    ) -> None:
        self._apply = apply
        self._interval = interval
        self._name = name
        self._pending: Dict[str, str] = {}
        self._task: asyncio.Task[None] | None = None

    @property
    def has_pending(self) -> bool:
        return bool(self._pending)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def pending(self, message_id: str) -> str:
        return self._pending.get(message_id, "")

    def enqueue(self, message_id: str, text: str) -> None:
        if not text:
            return
        self._pending[message_id] = merge_streaming_text(self._pending.get(message_id, ""), text)
        if log_deltas_enabled():
            logger.debug("delta message=%s len=%d", message_id, len(text))
        self._ensure_task()

    def flush(self) -> int:
        """Apply and clear every accumulator now, in arrival order."""
        if not self._pending:
            return 0
        chunks = self._pending
        self._pending = {}
        for message_id, text in chunks.items():
            self._apply(message_id, text)
        return len(chunks)

    def close(self) -> None:
        """Stop the cadence and discard anything not yet applied."""
        if self._task is not None:
            self._task.cancel()
            self._task = None
        if self._pending:
            logger.debug("Discarding %d pending stream buffers (%s)", len(self._pending), self._name)
        self._pending.clear()

    def _ensure_task(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name=f"flush:{self._name}")

    async def _run(self) -> None:
        try:
            while True:
                await asyncio.sleep(self._interval)
                try:
                    self.flush()
                except Exception:
                    logger.exception("Applying streamed text failed (%s)", self._name)
                if not self._pending:
                    break
        finally:
            if self._task is asyncio.current_task():
                self._task = None
