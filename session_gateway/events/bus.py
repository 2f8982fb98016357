"""In-process event bus between event producers and subscribers.

Producers call ``publish`` synchronously and never wait on subscribers. Each
subscriber owns an unbounded queue drained by a single consumer task, so a
subscriber sees events in publish order and a slow subscriber only delays
itself.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from typing import Any

from session_gateway.models import Event

logger = logging.getLogger(__name__)

EventHandler = Callable[[Event], Awaitable[None] | None]


class _Subscription:
    def __init__(self, name: str, handler: EventHandler) -> None:
        self.name = name
        self.handler = handler
        self.queue: asyncio.Queue[Event] = asyncio.Queue()
        self.task: asyncio.Task[None] | None = None


class EventBus:
    """Ordered fan-out of ``Event`` objects with per-session sequence numbers."""

    def __init__(self) -> None:
        self._subscriptions: list[_Subscription] = []
        self._sequences: dict[str, int] = defaultdict(int)
        self._running = False

    def subscribe(self, handler: EventHandler, name: str | None = None) -> None:
        """Register a handler. It starts receiving events once the bus runs."""
        sub = _Subscription(name or getattr(handler, "__qualname__", "subscriber"), handler)
        self._subscriptions.append(sub)
        if self._running:
            self._spawn(sub)

    def publish(
        self,
        session_id: str,
        event_type: str,
        payload: dict[str, Any] | None = None,
    ) -> Event:
        """Stamp and enqueue an event for every subscriber; returns the stamped event."""
        self._sequences[session_id] += 1
        event = Event(
            session_id=session_id,
            type=event_type,
            payload=payload or {},
            sequence=self._sequences[session_id],
        )
        for sub in self._subscriptions:
            sub.queue.put_nowait(event)
        return event

    def forget(self, session_id: str) -> None:
        """Drop the sequence counter of a removed session."""
        self._sequences.pop(session_id, None)

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        for sub in self._subscriptions:
            self._spawn(sub)

    async def join(self) -> None:
        """Wait until every subscriber has processed everything published so far."""
        for sub in list(self._subscriptions):
            await sub.queue.join()

    async def stop(self) -> None:
        self._running = False
        tasks = [sub.task for sub in self._subscriptions if sub.task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for sub in self._subscriptions:
            sub.task = None

    def _spawn(self, sub: _Subscription) -> None:
        if sub.task is None or sub.task.done():
            sub.task = asyncio.create_task(self._consume(sub), name=f"event-bus:{sub.name}")

    async def _consume(self, sub: _Subscription) -> None:
        while True:
            event = await sub.queue.get()
            try:
                result = sub.handler(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("Error in event subscriber %s for %s", sub.name, event.type)
            finally:
                sub.queue.task_done()
