"""Fan-out event stream for transfer progress and operation log lines.

Each subscriber gets its own bounded queue; a slow consumer drops its oldest
events instead of stalling the transfer that is publishing them.
"""

from __future__ import annotations

import asyncio
from typing import Union

from slurmlink.models.transfer import LogEvent, TransferProgress
from slurmlink.utils.logging import get_logger

log = get_logger(__name__)

Event = Union[TransferProgress, LogEvent]

_CLOSED = object()


class EventSubscription:
    """Async iterator over events published after it was created."""

    def __init__(self, bus: EventBus, maxsize: int) -> None:
        self._bus = bus
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self.closed = False

    def put(self, event: Event) -> None:
        if self.closed:
            return
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(event)

    def drain(self) -> list[Event]:
        """Everything queued right now, without waiting."""
        events: list[Event] = []
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is not _CLOSED:
                events.append(item)
        return events

    def close(self) -> None:
        if self.closed:
            return
        self._bus.unsubscribe(self)
        self.closed = True
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> EventSubscription:
        return self

    async def __anext__(self) -> Event:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    def __enter__(self) -> EventSubscription:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class EventBus:
    def __init__(self, maxsize: int = 1000) -> None:
        self._maxsize = maxsize
        self._subscribers: list[EventSubscription] = []

    @property
    def subscriptions_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> EventSubscription:
        sub = EventSubscription(self, self._maxsize)
        self._subscribers.append(sub)
        return sub

    def unsubscribe(self, sub: EventSubscription) -> None:
        if sub in self._subscribers:
            self._subscribers.remove(sub)

    def publish(self, event: Event) -> None:
        for sub in list(self._subscribers):
            sub.put(event)

    def log(self, operation: str, message: str, *, level: str = "info", **context) -> None:
        """Publish a ``LogEvent`` and mirror it to the structured log."""
        self.publish(LogEvent(operation=operation, message=message, level=level, context=context))
        log.info("event.log", operation=operation, message=message, **context)
