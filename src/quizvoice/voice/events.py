"""
Event channel for capture engine callbacks

Engine callbacks arrive from arbitrary threads and in arbitrary order.
They are turned into Event objects tagged with the session id that
was current when the engine was started, and delivered through async
queues to a single dispatcher loop.
"""

import asyncio
from enum import Enum
from typing import Any, AsyncGenerator, Optional
from dataclasses import dataclass, field, replace
from datetime import datetime


class EventType(str, Enum):
    """Capture engine event types"""

    RESULT = "result"
    ERROR = "error"
    END = "end"
    VOLUME = "volume"


@dataclass(frozen=True)
class Event:
    """
    Capture engine event

    Fields cannot be reassigned; each subscriber receives its own copy
    of the payload dict.
    """
    type: EventType
    session_id: int
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    @classmethod
    def result(cls, session_id: int, transcript: str, is_final: bool) -> 'Event':
        return cls(EventType.RESULT, session_id, {"transcript": transcript, "is_final": is_final})

    @classmethod
    def error(cls, session_id: int, code: str, message: str = "") -> 'Event':
        return cls(EventType.ERROR, session_id, {"code": code, "message": message})

    @classmethod
    def end(cls, session_id: int) -> 'Event':
        return cls(EventType.END, session_id)

    @classmethod
    def volume(cls, session_id: int, level: float) -> 'Event':
        return cls(EventType.VOLUME, session_id, {"level": level})

    def detached(self) -> 'Event':
        """Same event with a private copy of ``data``"""
        return replace(self, data=dict(self.data))


class EventPubSub:
    """
    Event-driven publish-subscribe channel

    - Uses async Queue for zero-latency event distribution
    - Blocking wait with await queue.get() (NOT polling)
    - Thread-safe publish_nowait()

    Usage:
        pubsub = EventPubSub()
        queue = pubsub.subscribe()

        async for event in pubsub.poll(queue):
            ...

        pubsub.publish_nowait(Event.end(session_id))
    """

    def __init__(self, max_history: int = 200):
        self.subscribers: set[asyncio.Queue[Event]] = set()
        self.event_history: list[Event] = []  # For debugging
        self.max_history = max_history
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def set_event_loop(self, loop: Optional[asyncio.AbstractEventLoop]) -> None:
        """
        Set event loop for thread-safe publishing

        Must be called from the event loop's thread.
        """
        self._loop = loop

    def subscribe(self) -> "asyncio.Queue[Event]":
        """Register a subscriber queue immediately, before any await."""
        queue: asyncio.Queue[Event] = asyncio.Queue()
        self.subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: "asyncio.Queue[Event]") -> None:
        self.subscribers.discard(queue)

    def publish_nowait(self, event: Event) -> None:
        """
        Publish event to all subscribers (THREAD-SAFE)

        Can be called from any thread. If an event loop is set, delivery
        goes through call_soon_threadsafe().
        """
        self.event_history.append(event)
        if len(self.event_history) > self.max_history:
            self.event_history = self.event_history[-self.max_history:]

        for subscriber in list(self.subscribers):
            try:
                if self._loop is not None and not self._loop.is_closed():
                    self._loop.call_soon_threadsafe(subscriber.put_nowait, event.detached())
                else:
                    subscriber.put_nowait(event.detached())
            except (asyncio.QueueFull, RuntimeError):
                # Loop shut down or queue full: the subscriber is gone
                pass

    async def poll(self, queue: Optional["asyncio.Queue[Event]"] = None) -> AsyncGenerator[Event, None]:
        """
        Poll for events (async generator)

        Blocks on await queue.get() until an event is published.

        Yields:
            Event objects as they arrive
        """
        subscriber_queue = queue if queue is not None else self.subscribe()

        try:
            while True:
                event = await subscriber_queue.get()
                yield event
        finally:
            self.unsubscribe(subscriber_queue)

    def get_recent_events(self, count: int = 100) -> list[Event]:
        """Get recent events for debugging"""
        return self.event_history[-count:]

    def clear_history(self) -> None:
        self.event_history.clear()

    @property
    def subscriber_count(self) -> int:
        """Number of active subscribers"""
        return len(self.subscribers)
