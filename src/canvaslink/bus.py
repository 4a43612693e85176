"""Broadcast of decoded stream events to any number of subscribers.

Each subscriber owns a bounded queue, so publishing never waits on a slow
consumer: when a subscriber's queue is full its oldest buffered event is
dropped and counted. Events are delivered unchanged, in publish order.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from typing import Any, Awaitable, Callable

from canvaslink.events import DomainEvent

logger = logging.getLogger(__name__)

DEFAULT_BUFFER = 5000

EventHandler = Callable[[DomainEvent], Awaitable[Any] | Any]


class Subscription:
    """One subscriber's buffered view of the bus. Iterate it with ``async for``."""

    def __init__(self, bus: "EventBus", maxsize: int, name: str) -> None:
        self._bus = bus
        self._queue: asyncio.Queue[DomainEvent | None] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self.name = name
        self.dropped = 0
        self.task: asyncio.Task[None] | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    def pending(self) -> int:
        return self._queue.qsize()

    def _make_room(self) -> None:
        with contextlib.suppress(asyncio.QueueEmpty):
            self._queue.get_nowait()

    def deliver(self, event: DomainEvent) -> None:
        if self._closed:
            return
        if self._queue.full():
            self._make_room()
            self.dropped += 1
            if self.dropped == 1 or self.dropped % 100 == 0:
                logger.warning(
                    "Subscriber %s is falling behind; dropped %d events (buffer %d)",
                    self.name,
                    self.dropped,
                    self._queue.maxsize,
                )
        self._queue.put_nowait(event)

    def close(self) -> None:
        """Unsubscribe. Safe to call repeatedly and from inside a handler.

        Events buffered before the call can still be drained by iterating.
        """
        if self._closed:
            return
        self._closed = True
        self._bus._remove(self)
        # Sentinel wakes a consumer blocked on get(); a full queue has no such consumer.
        if not self._queue.full():
            self._queue.put_nowait(None)

    async def cancel(self) -> None:
        """Close and stop the :meth:`EventBus.listen` pump without draining."""
        self.close()
        task, self.task = self.task, None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> DomainEvent:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        event = await self._queue.get()
        if event is None:
            raise StopAsyncIteration
        return event


class EventBus:
    """Fan-out of :class:`DomainEvent` objects from the supervisor to subscribers."""

    def __init__(self, buffer_size: int = DEFAULT_BUFFER) -> None:
        self._buffer_size = buffer_size
        self._subscribers: list[Subscription] = []
        self._counter = 0

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, *, maxsize: int | None = None, name: str | None = None) -> Subscription:
        self._counter += 1
        subscription = Subscription(self, maxsize or self._buffer_size, name or f"subscriber-{self._counter}")
        self._subscribers.append(subscription)
        return subscription

    def listen(
        self,
        handler: EventHandler,
        *,
        maxsize: int | None = None,
        name: str | None = None,
    ) -> Subscription:
        """Subscribe and run ``handler`` for every event on its own task.

        The handler may be sync or async. Exceptions are logged and do not stop
        the subscription.
        """

        subscription = self.subscribe(maxsize=maxsize, name=name)
        subscription.task = asyncio.create_task(
            self._pump(subscription, handler), name=f"bus:{subscription.name}"
        )
        return subscription

    def publish(self, event: DomainEvent) -> None:
        # Snapshot so handlers can (un)subscribe while we iterate.
        for subscription in tuple(self._subscribers):
            subscription.deliver(event)

    def close(self) -> None:
        for subscription in tuple(self._subscribers):
            subscription.close()

    def _remove(self, subscription: Subscription) -> None:
        with contextlib.suppress(ValueError):
            self._subscribers.remove(subscription)

    @staticmethod
    async def _pump(subscription: Subscription, handler: EventHandler) -> None:
        async for event in subscription:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Event handler %s failed on %s", subscription.name, event.type.value)
