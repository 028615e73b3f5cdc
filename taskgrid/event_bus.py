"""Bounded in-memory event channel satisfying the IEventChannel protocol.

The orchestrator is the only writer.  Readers either register a
synchronous handler or take a ``Subscription`` and iterate it with
``async for``.  Publishing never blocks: a full subscriber queue drops its
oldest event.
"""

import asyncio
import logging
import uuid
from collections import deque
from typing import Deque, Dict, FrozenSet, Iterable, List, Optional, Tuple

from taskgrid.interfaces.event_bus import EventHandler, EventType, LifecycleEvent

logger = logging.getLogger(__name__)

_CLOSED = object()


class Subscription:
    """Async iterator over events published after it was created."""

    def __init__(self, channel: "EventChannel", sub_id: str, maxsize: int) -> None:
        self.sub_id = sub_id
        self._channel = channel
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self.dropped: int = 0

    def _offer(self, item: object) -> None:
        if self._closed:
            return
        if self._queue.full():
            if self._queue.get_nowait() is not _CLOSED:
                self.dropped += 1
        self._queue.put_nowait(item)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> LifecycleEvent:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            self._closed = True
            raise StopAsyncIteration
        return item

    def pending(self) -> List[LifecycleEvent]:
        """Drain queued events without waiting."""
        events: List[LifecycleEvent] = []
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is _CLOSED:
                self._closed = True
                break
            events.append(item)
        return events

    def cancel(self) -> None:
        self._channel.unsubscribe(self.sub_id)


class EventChannel:
    """Fan-out channel with bounded per-subscriber queues and a ring buffer."""

    def __init__(self, buffer_size: int = 1000, queue_size: int = 256) -> None:
        self._queue_size = queue_size
        self._buffer: Deque[LifecycleEvent] = deque(maxlen=buffer_size)
        self._subscriptions: Dict[str, Subscription] = {}
        self._handlers: Dict[str, Tuple[EventHandler, Optional[FrozenSet[EventType]]]] = {}
        self._published: int = 0
        self._closed = False

    def publish(self, event: LifecycleEvent) -> None:
        if self._closed:
            logger.debug("Dropping %s published after close", event.event_type.value)
            return
        self._published += 1
        self._buffer.append(event)
        for sub in self._subscriptions.values():
            sub._offer(event)
        for handler, types in list(self._handlers.values()):
            if types is not None and event.event_type not in types:
                continue
            try:
                handler(event)
            except Exception:
                logger.exception("Event handler failed for %s", event.event_type.value)

    def subscribe(self, maxsize: Optional[int] = None) -> Subscription:
        sub_id = uuid.uuid4().hex[:12]
        sub = Subscription(self, sub_id, maxsize or self._queue_size)
        if self._closed:
            sub._offer(_CLOSED)
        self._subscriptions[sub_id] = sub
        return sub

    def unsubscribe(self, sub_id: str) -> None:
        sub = self._subscriptions.pop(sub_id, None)
        if sub is not None:
            sub._offer(_CLOSED)

    def add_handler(
        self,
        handler: EventHandler,
        event_types: Optional[Iterable[EventType]] = None,
    ) -> str:
        handler_id = uuid.uuid4().hex[:12]
        types = frozenset(event_types) if event_types is not None else None
        self._handlers[handler_id] = (handler, types)
        return handler_id

    def remove_handler(self, handler_id: str) -> None:
        self._handlers.pop(handler_id, None)

    def recent(self, limit: int = 100, event_type: Optional[EventType] = None) -> List[LifecycleEvent]:
        """Most recent events from the ring buffer, oldest first."""
        events = list(self._buffer)
        if event_type is not None:
            events = [e for e in events if e.event_type == event_type]
        return events[-limit:] if limit else []

    def close(self) -> None:
        """End every subscription.  Later publishes are dropped."""
        self._closed = True
        for sub in self._subscriptions.values():
            sub._offer(_CLOSED)

    @property
    def stats(self) -> Dict[str, int]:
        return {
            "published": self._published,
            "subscribers": len(self._subscriptions),
            "handlers": len(self._handlers),
            "buffered": len(self._buffer),
            "dropped": sum(s.dropped for s in self._subscriptions.values()),
        }


class LoggingEventSink:
    """Handler that writes each lifecycle event to the ``taskgrid.events`` logger."""

    def __init__(self, level: int = logging.INFO) -> None:
        self._logger = logging.getLogger("taskgrid.events")
        self._level = level

    def __call__(self, event: LifecycleEvent) -> None:
        level = self._level
        if event.event_type in (EventType.TASK_FAILED, EventType.RUN_FAILED):
            level = max(level, logging.WARNING)
        self._logger.log(
            level,
            "%s run=%s task=%s %s",
            event.event_type.value,
            event.run_id,
            event.task_id or "-",
            event.payload,
            extra={"event": event.to_dict()},
        )
