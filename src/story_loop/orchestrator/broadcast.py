"""Per-unit publish/subscribe buffers for live agent events.

Each unit owns one buffer holding the history of the current attempt and the
channels of its live subscribers. Publishing never blocks: a subscriber whose
channel is full misses that event live, while the history keeps it for late
joiners. One lock guards all buffers so that taking a history snapshot and
registering a channel is atomic with respect to ``publish``; a joiner therefore
sees every event exactly once, either in its snapshot or on its channel.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import NamedTuple

from story_loop.orchestrator.backend.base import AgentEvent

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL_CAPACITY = 64


class EventChannel:
    """Bounded single-consumer channel with an explicit end-of-stream."""

    def __init__(self, capacity: int = DEFAULT_CHANNEL_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._items: deque[AgentEvent] = deque()
        self._ready = threading.Condition()
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        with self._ready:
            return self._closed

    def offer(self, event: AgentEvent) -> bool:
        """Enqueue without blocking; return False when the event was dropped."""

        with self._ready:
            if self._closed:
                return False
            if len(self._items) >= self.capacity:
                self.dropped += 1
                return False
            self._items.append(event)
            self._ready.notify()
        return True

    def close(self) -> None:
        with self._ready:
            self._closed = True
            self._ready.notify_all()

    def get(self, timeout: float | None = None) -> AgentEvent | None:
        """Return the next event, or None once closed and drained or on timeout."""

        with self._ready:
            self._ready.wait_for(lambda: self._items or self._closed, timeout)
            if self._items:
                return self._items.popleft()
            return None

    def drain(self) -> list[AgentEvent]:
        """Return everything currently buffered without waiting."""

        with self._ready:
            items = list(self._items)
            self._items.clear()
        return items

    def __iter__(self) -> Iterator[AgentEvent]:
        while True:
            event = self.get()
            if event is None:
                return
            yield event


class Subscription(NamedTuple):
    history: list[AgentEvent]
    channel: EventChannel
    unsubscribe: Callable[[], None]


@dataclass(slots=True)
class _Buffer:
    history: list[AgentEvent] = field(default_factory=list)
    subscribers: list[EventChannel] = field(default_factory=list)
    closed: bool = False


class EventBroadcastHub:
    """Publish/subscribe hub keyed by unit id."""

    def __init__(self, channel_capacity: int = DEFAULT_CHANNEL_CAPACITY) -> None:
        if channel_capacity < 1:
            raise ValueError("channel_capacity must be >= 1")
        self.channel_capacity = channel_capacity
        self._lock = threading.Lock()
        self._buffers: dict[str, _Buffer] = {}

    def publish(self, unit_id: str, event: AgentEvent) -> None:
        """Append to history and fan out; a no-op after ``close_stream``."""

        with self._lock:
            buffer = self._buffers.setdefault(unit_id, _Buffer())
            if buffer.closed:
                return
            buffer.history.append(event)
            for channel in buffer.subscribers:
                if not channel.offer(event):
                    logger.debug("Dropped live event for slow subscriber of %s", unit_id)

    def subscribe(self, unit_id: str) -> Subscription:
        channel = EventChannel(self.channel_capacity)
        with self._lock:
            buffer = self._buffers.setdefault(unit_id, _Buffer())
            history = list(buffer.history)
            if buffer.closed:
                channel.close()
            else:
                buffer.subscribers.append(channel)

        def unsubscribe() -> None:
            with self._lock:
                current = self._buffers.get(unit_id)
                if current is not None and channel in current.subscribers:
                    current.subscribers.remove(channel)
            channel.close()

        return Subscription(history=history, channel=channel, unsubscribe=unsubscribe)

    def close_stream(self, unit_id: str) -> None:
        """Mark the buffer closed and signal end-of-stream to subscribers."""

        with self._lock:
            buffer = self._buffers.setdefault(unit_id, _Buffer())
            buffer.closed = True
            subscribers, buffer.subscribers = buffer.subscribers, []
        for channel in subscribers:
            channel.close()

    def reset(self, unit_id: str) -> None:
        """Discard history and subscribers before a fresh attempt."""

        with self._lock:
            previous = self._buffers.pop(unit_id, None)
            self._buffers[unit_id] = _Buffer()
        if previous is not None:
            for channel in previous.subscribers:
                channel.close()

    def history(self, unit_id: str) -> list[AgentEvent]:
        with self._lock:
            buffer = self._buffers.get(unit_id)
            return list(buffer.history) if buffer else []

    def is_closed(self, unit_id: str) -> bool:
        with self._lock:
            buffer = self._buffers.get(unit_id)
            return bool(buffer and buffer.closed)
