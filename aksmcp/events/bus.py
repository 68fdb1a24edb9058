"""Event Bus — ordered pub/sub for lifecycle events.

Every emitted event gets the next sequence number of its bus. The
lifecycle manager awaits each emit, so subscribers see events in
sequence order. Patterns use fnmatch wildcards: "agent.*" matches
"agent.started" and "agent.exited".
"""

from __future__ import annotations

import asyncio
import fnmatch
import itertools
import logging
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Awaitable

from pydantic import BaseModel, Field

_logger = logging.getLogger(__name__)

EventHandler = Callable[["Event"], Awaitable[None]]


class Event(BaseModel):
    """A lifecycle event."""

    seq: int
    topic: str
    data: dict[str, Any] = Field(default_factory=dict)
    source: str = ""
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class EventBus:
    """Async pub/sub with wildcard subscriptions and a bounded history.

    A failing handler is logged and never breaks the emitter or the
    other handlers of the same event.
    """

    def __init__(self, history_limit: int = 500) -> None:
        self._subscriptions: list[tuple[str, EventHandler]] = []
        self._waiters: list[tuple[str, asyncio.Future[Event]]] = []
        self._history: deque[Event] = deque(maxlen=history_limit)
        self._seq = itertools.count(1)

    def subscribe(self, pattern: str, handler: EventHandler) -> None:
        self._subscriptions.append((pattern, handler))

    def unsubscribe(self, pattern: str, handler: EventHandler) -> None:
        if (pattern, handler) in self._subscriptions:
            self._subscriptions.remove((pattern, handler))

    async def emit(self, topic: str, data: dict | None = None, source: str = "") -> Event:
        """Record an event, wake waiters, and run matching handlers to completion."""
        event = Event(seq=next(self._seq), topic=topic, data=data or {}, source=source)
        self._history.append(event)

        pending = []
        for pattern, future in self._waiters:
            if future.done():
                continue
            if fnmatch.fnmatch(topic, pattern):
                future.set_result(event)
            else:
                pending.append((pattern, future))
        self._waiters = pending

        handlers = [h for pattern, h in self._subscriptions if fnmatch.fnmatch(topic, pattern)]
        if not handlers:
            return event
        results = await asyncio.gather(*(h(event) for h in handlers), return_exceptions=True)
        for handler, result in zip(handlers, results):
            if isinstance(result, Exception):
                _logger.error(
                    "Handler %r for '%s' failed: %s", handler, topic, result,
                    exc_info=result,
                )
        return event

    async def wait_for(self, pattern: str, timeout: float | None = None) -> Event:
        """Wait for the next event matching ``pattern``.

        Raises asyncio.TimeoutError if none arrives within ``timeout``.
        """
        future: asyncio.Future[Event] = asyncio.get_running_loop().create_future()
        self._waiters.append((pattern, future))
        try:
            return await asyncio.wait_for(future, timeout)
        finally:
            if not future.done():
                future.cancel()

    def history(self, topic_filter: str = "*", limit: int = 50) -> list[Event]:
        """Recent events, newest first, filtered by topic pattern."""
        events = [e for e in reversed(self._history) if fnmatch.fnmatch(e.topic, topic_filter)]
        return events[:limit]
