"""In-process broadcaster between the ingestion pipeline and consumers.

Publishing never waits on a consumer: every subscriber owns bounded
queues, and when one is full its oldest item is dropped to make room.
``publish``, ``set_connection_state`` and ``subscribe`` belong to the
engine's event loop; ``snapshot`` may be called from any thread.
"""

import asyncio
import logging
import threading
from collections import deque
from collections.abc import Callable
from datetime import datetime, timezone

from .models import ConnectionState, ConnectionStatus, Event, EventType, Platform, Snapshot

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 100
DEFAULT_QUEUE_SIZE = 500


def _offer(queue: asyncio.Queue, item) -> bool:
    """Put without blocking, evicting the oldest item if needed.

    Returns False if something had to be dropped.
    """
    try:
        queue.put_nowait(item)
        return True
    except asyncio.QueueFull:
        pass
    try:
        queue.get_nowait()
    except asyncio.QueueEmpty:
        pass
    queue.put_nowait(item)
    return False


class Subscription:
    """A consumer's view of the bus.

    Read ``events`` and ``states``; call ``unsubscribe`` when done.
    """

    def __init__(self, bus: "AggregationBus", maxsize: int) -> None:
        self.events: asyncio.Queue[Event] = asyncio.Queue(maxsize)
        self.states: asyncio.Queue[ConnectionState] = asyncio.Queue(maxsize)
        self.dropped = 0
        self._bus = bus
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        """Detach from the bus. Safe to call more than once."""
        if self._active:
            self._active = False
            self._bus._remove(self)

    def _deliver_event(self, event: Event) -> None:
        if not _offer(self.events, event):
            self.dropped += 1
            if self.dropped == 1 or self.dropped % 100 == 0:
                logger.warning(f"Slow consumer: {self.dropped} events dropped")

    def _deliver_state(self, state: ConnectionState) -> None:
        _offer(self.states, state)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc) -> None:
        self.unsubscribe()


class AggregationBus:
    """Holds recent events and connection state, fans both out to subscribers."""

    def __init__(
        self,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._buffer_size = buffer_size
        self._queue_size = queue_size
        self._clock = clock
        self._lock = threading.Lock()
        self._buffers: dict[Platform, deque[Event]] = {
            p: deque(maxlen=buffer_size) for p in Platform
        }
        self._states: dict[Platform, ConnectionState] = {
            p: ConnectionState(p, ConnectionStatus.DISCONNECTED) for p in Platform
        }
        self._metrics: dict[Platform, dict[str, float]] = {p: {} for p in Platform}
        self._last_update: datetime | None = None
        self._subscribers: list[Subscription] = []

    def publish(self, event: Event) -> None:
        """Record an event and hand it to every subscriber."""
        with self._lock:
            if event.type == EventType.METRIC:
                if event.amount is not None:
                    self._metrics[event.platform][event.currency or "value"] = event.amount
            else:
                self._store(event)
            self._last_update = self._clock()
            subscribers = list(self._subscribers)

        for sub in subscribers:
            sub._deliver_event(event)

    def _store(self, event: Event) -> None:
        buffer = self._buffers[event.platform]
        # Stacking gift updates revise the entry they belong to
        for index in range(len(buffer) - 1, -1, -1):
            if buffer[index].id == event.id:
                buffer[index] = event
                return
        buffer.append(event)

    def set_connection_state(self, state: ConnectionState) -> None:
        """Record and broadcast a state, even if it did not change."""
        with self._lock:
            previous = self._states[state.platform]
            self._states[state.platform] = state
            self._last_update = self._clock()
            subscribers = list(self._subscribers)

        if previous.status != state.status:
            logger.info(
                f"{state.platform.value}: {previous.status.value} -> {state.status.value}"
                + (f" ({state.reason})" if state.reason else "")
            )
        for sub in subscribers:
            sub._deliver_state(state)

    def connection_state(self, platform: Platform) -> ConnectionState:
        with self._lock:
            return self._states[platform]

    def subscribe(self, maxsize: int | None = None) -> Subscription:
        """Register a consumer. Current states are queued first."""
        sub = Subscription(self, maxsize or self._queue_size)
        with self._lock:
            self._subscribers.append(sub)
            states = list(self._states.values())
        for state in states:
            sub._deliver_state(state)
        return sub

    def _remove(self, sub: Subscription) -> None:
        with self._lock:
            try:
                self._subscribers.remove(sub)
            except ValueError:
                pass

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def snapshot(self) -> Snapshot:
        """Buffered events, states, latest metrics and last update time."""
        with self._lock:
            return Snapshot(
                events={p: list(buf) for p, buf in self._buffers.items()},
                states=dict(self._states),
                metrics={p: dict(m) for p, m in self._metrics.items()},
                last_update=self._last_update,
            )
