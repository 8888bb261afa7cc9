"""
Agent lifecycle events.

Observers subscribe to an ``EventBus`` and get their own ``asyncio.Queue``;
every event is delivered to each matching queue in emission order. A slow
observer only fills its own queue.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import structlog

logger = structlog.get_logger()

DEFAULT_SUBSCRIBER_QUEUE_SIZE = 1000


class EventType(str, Enum):
    MESSAGE = "message"
    STREAM = "stream"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    SYSTEM = "system"
    BUSY_CHANGE = "busy_change"
    MEMORY_UPDATE = "memory_update"
    CANCELLED = "cancelled"


@dataclass
class Event:
    type: EventType
    session_id: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class Subscription:
    """One observer's queue and its session filter (None means all sessions)."""

    queue: asyncio.Queue
    session_id: str | None = None
    dropped: int = 0

    def matches(self, event: Event) -> bool:
        return self.session_id is None or self.session_id == event.session_id


class EventBus:
    """Fan-out of agent events to subscriber queues."""

    def __init__(self, queue_size: int = DEFAULT_SUBSCRIBER_QUEUE_SIZE):
        self.queue_size = queue_size
        self._subscriptions: list[Subscription] = []

    def subscribe(self, session_id: str | None = None) -> asyncio.Queue:
        """Register an observer; returns the queue its events arrive on."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscriptions.append(Subscription(queue=queue, session_id=session_id))
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscriptions = [s for s in self._subscriptions if s.queue is not queue]

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def emit(self, event: Event) -> None:
        for sub in self._subscriptions:
            if not sub.matches(event):
                continue
            try:
                sub.queue.put_nowait(event)
            except asyncio.QueueFull:
                sub.dropped += 1
                if sub.dropped == 1 or sub.dropped % 100 == 0:
                    logger.warning(
                        "Event subscriber queue full, dropping events",
                        session_id=event.session_id,
                        event_type=event.type.value,
                        dropped=sub.dropped,
                    )
