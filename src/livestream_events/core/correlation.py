"""Deduplication and multi-message correlation.

Sits between the normalizers and the bus. All state is owned by one
``Correlator`` per engine and guarded by a single lock so connectors on
different threads or tasks can ingest concurrently.
"""

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, replace

from .models import Actor, Event, EventType, Platform, anonymous_actor

logger = logging.getLogger(__name__)

DEFAULT_DEDUP_CAPACITY = 1000
DEFAULT_DEDUP_RETENTION = 24 * 60 * 60.0  # seconds
DEFAULT_GIFT_TTL = 5 * 60.0  # seconds
DEFAULT_STACKING_TIMEOUT = 5.0  # seconds
# A terminal frame this long after a streak timed out belongs to that streak
LATE_TERMINAL_GRACE = 60.0  # seconds

# Ids younger than the retention window survive past capacity, up to this multiple
RETENTION_HARD_LIMIT_FACTOR = 50

Clock = Callable[[], float]


class RecentIds:
    """Bounded set of recently seen ids, oldest evicted first.

    An id is kept while it is among the ``capacity`` most recent or younger
    than ``retention`` seconds, whichever keeps more, but never beyond
    ``capacity * RETENTION_HARD_LIMIT_FACTOR`` entries.
    """

    def __init__(
        self,
        capacity: int = DEFAULT_DEDUP_CAPACITY,
        retention: float = DEFAULT_DEDUP_RETENTION,
        clock: Clock = time.monotonic,
    ) -> None:
        self._capacity = max(1, capacity)
        self._retention = retention
        self._hard_limit = self._capacity * RETENTION_HARD_LIMIT_FACTOR
        self._clock = clock
        self._seen: OrderedDict[str, float] = OrderedDict()

    def __contains__(self, item_id: str) -> bool:
        return item_id in self._seen

    def __len__(self) -> int:
        return len(self._seen)

    def add(self, item_id: str) -> bool:
        """Record an id. Returns False if it was already present."""
        if item_id in self._seen:
            return False
        now = self._clock()
        self._seen[item_id] = now
        self._evict(now)
        return True

    def _evict(self, now: float) -> None:
        while len(self._seen) > self._capacity:
            oldest_at = next(iter(self._seen.values()))
            if now - oldest_at < self._retention and len(self._seen) <= self._hard_limit:
                break
            self._seen.popitem(last=False)


@dataclass
class GiftCorrelation:
    """A gift purchase still owed recipient notifications."""

    gifter_id: str
    gifter: Actor
    remaining: int
    created_at: float


class GiftCorrelationTracker:
    """Matches "gift received" events back to their purchase, per platform."""

    def __init__(self, ttl: float = DEFAULT_GIFT_TTL, clock: Clock = time.monotonic) -> None:
        self._ttl = ttl
        self._clock = clock
        self._entries: dict[str, GiftCorrelation] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, gifter_id: str) -> GiftCorrelation | None:
        return self._entries.get(gifter_id)

    def open(self, gifter: Actor, count: int, gifter_id: str = "") -> GiftCorrelation:
        """Create an entry, or add to an existing one for the same gifter.

        Adding restarts the TTL since the newest purchase is still in flight.
        """
        key = gifter_id or gifter.key
        now = self._clock()
        entry = self._entries.get(key)
        if entry is None:
            entry = GiftCorrelation(gifter_id=key, gifter=gifter, remaining=count, created_at=now)
            self._entries[key] = entry
        else:
            entry.remaining += count
            entry.gifter = gifter
            entry.created_at = now
        logger.debug(f"Gift correlation {key}: {entry.remaining} outstanding")
        return entry

    def match(self, gifter_id: str) -> Actor | None:
        """Consume one outstanding gift for ``gifter_id``."""
        self.prune()
        entry = self._entries.get(gifter_id)
        if entry is None:
            return None
        entry.remaining -= 1
        if entry.remaining <= 0:
            del self._entries[gifter_id]
        return entry.gifter

    def prune(self) -> int:
        """Drop entries older than the TTL. Returns how many were dropped."""
        now = self._clock()
        expired = [k for k, e in self._entries.items() if now - e.created_at >= self._ttl]
        for key in expired:
            logger.debug(
                f"Gift correlation {key} expired with {self._entries[key].remaining} unmatched"
            )
            del self._entries[key]
        return len(expired)


@dataclass
class StackingGiftState:
    """A streak of stackable gifts that is still counting."""

    gift_key: str
    event_id: str
    current_count: int
    target_count: int
    started_at: float
    last_update_at: float
    template: Event


def gift_key(event: Event) -> str:
    return f"{event.actor.key}:{event.extra.get('gift_name', '')}"


class StackingGiftTracker:
    """Coalesces a stacking gift streak into one growing entry.

    Every notification of a streak is emitted under the id of the first
    one. Intermediate emissions have ``final=False``. The streak ends on the
    terminal notification or after ``timeout`` seconds without an update.
    A streak ended by the timeout keeps its count; a terminal notification
    that arrives later is dropped.
    """

    def __init__(
        self, timeout: float = DEFAULT_STACKING_TIMEOUT, clock: Clock = time.monotonic
    ) -> None:
        self._timeout = timeout
        self._clock = clock
        self._states: dict[str, StackingGiftState] = {}
        # gift_key -> (event id, expired at) of streaks finalized by the timeout
        self._timed_out: dict[str, tuple[str, float]] = {}

    def __len__(self) -> int:
        return len(self._states)

    def __contains__(self, key: str) -> bool:
        return key in self._states

    def update(self, event: Event) -> Event:
        key = gift_key(event)
        count = _repeat_count(event)
        now = self._clock()
        state = self._states.get(key)
        if state is None:
            self._timed_out.pop(key, None)
            state = StackingGiftState(
                gift_key=key,
                event_id=event.id,
                current_count=count,
                target_count=count,
                started_at=now,
                last_update_at=now,
                template=event,
            )
            self._states[key] = state
        else:
            state.current_count = count
            state.target_count = max(state.target_count, count)
            state.last_update_at = now
            state.template = event
        return self._render(state, event, state.target_count, final=False)

    def finalize(self, event: Event) -> Event | None:
        key = gift_key(event)
        state = self._states.pop(key, None)
        count = _repeat_count(event)
        if state is None:
            late = self._timed_out.pop(key, None)
            if late is not None and self._clock() - late[1] < LATE_TERMINAL_GRACE:
                logger.debug(f"Dropping late terminal frame for {key}, {late[0]} is already final")
                return None
            # Single-shot streak: the terminal notification is the only one
            return self._render(None, event, count, final=True)
        return self._render(state, event, max(count, state.target_count), final=True)

    def expire(self) -> list[Event]:
        """Finalize streaks that have gone quiet."""
        now = self._clock()
        for key, (_, expired_at) in list(self._timed_out.items()):
            if now - expired_at >= LATE_TERMINAL_GRACE:
                del self._timed_out[key]
        stale = [
            key
            for key, state in self._states.items()
            if now - state.last_update_at >= self._timeout
        ]
        finalized = []
        for key in stale:
            state = self._states.pop(key)
            self._timed_out[key] = (state.event_id, now)
            logger.debug(f"Stacking gift {key} finalized after inactivity at x{state.target_count}")
            finalized.append(self._render(state, state.template, state.target_count, final=True))
        return finalized

    @staticmethod
    def _render(
        state: StackingGiftState | None, event: Event, count: int, final: bool
    ) -> Event:
        per_unit = float(event.extra.get("diamond_count") or 0)
        extra = dict(event.extra)
        extra["repeat_count"] = count
        return replace(
            event,
            id=state.event_id if state else event.id,
            amount=per_unit * count,
            currency="diamonds",
            extra=extra,
            final=final,
        )


def _repeat_count(event: Event) -> int:
    try:
        return max(1, int(event.extra.get("repeat_count") or 1))
    except (TypeError, ValueError):
        return 1


class Correlator:
    """Ingest normalized events, emit zero or one outbound event each."""

    def __init__(
        self,
        dedup_capacity: int = DEFAULT_DEDUP_CAPACITY,
        dedup_retention: float = DEFAULT_DEDUP_RETENTION,
        gift_ttl: float = DEFAULT_GIFT_TTL,
        stacking_timeout: float = DEFAULT_STACKING_TIMEOUT,
        clock: Clock = time.monotonic,
    ) -> None:
        self._dedup_capacity = dedup_capacity
        self._dedup_retention = dedup_retention
        self._gift_ttl = gift_ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._recent: dict[Platform, RecentIds] = {}
        self._gifts: dict[Platform, GiftCorrelationTracker] = {}
        self._stacking = StackingGiftTracker(stacking_timeout, clock)

    def _recent_for(self, platform: Platform) -> RecentIds:
        recent = self._recent.get(platform)
        if recent is None:
            recent = RecentIds(self._dedup_capacity, self._dedup_retention, self._clock)
            self._recent[platform] = recent
        return recent

    def _gifts_for(self, platform: Platform) -> GiftCorrelationTracker:
        tracker = self._gifts.get(platform)
        if tracker is None:
            tracker = GiftCorrelationTracker(self._gift_ttl, self._clock)
            self._gifts[platform] = tracker
        return tracker

    def ingest(self, event: Event) -> Event | None:
        with self._lock:
            if not self._recent_for(event.platform).add(event.id):
                logger.debug(f"Dropping duplicate {event.platform.value} event {event.id}")
                return None
            return self._correlate(event)

    def _correlate(self, event: Event) -> Event | None:
        gifts = self._gifts_for(event.platform)

        if event.type in (EventType.GIFT_PURCHASE, EventType.GIFT_MEMBERSHIP_PURCHASE):
            count = int(event.amount or 0)
            if count > 0:
                gifts.open(event.actor, count, gifter_id=event.extra.get("gifter_id", ""))
            return event

        if event.type in (EventType.GIFT_SUBSCRIPTION, EventType.GIFT_MEMBERSHIP_RECEIVED):
            gifter_id = event.extra.get("gifter_id", "")
            gifter = gifts.match(gifter_id) if gifter_id else None
            event.extra["correlated"] = gifter is not None
            if event.counterpart is None:
                event.counterpart = gifter if gifter is not None else anonymous_actor()
            return event

        if event.type == EventType.GIFT and event.extra.get("stackable"):
            if event.extra.get("repeat_end"):
                return self._stacking.finalize(event)
            return self._stacking.update(event)

        return event

    def sweep(self) -> list[Event]:
        """Expire gift correlations and finalize idle stacking gifts."""
        with self._lock:
            for tracker in self._gifts.values():
                tracker.prune()
            return self._stacking.expire()

    def gift_correlation(self, platform: Platform, gifter_id: str) -> GiftCorrelation | None:
        with self._lock:
            tracker = self._gifts.get(platform)
            if tracker is None:
                return None
            tracker.prune()
            return tracker.get(gifter_id)

    def stacking_in_progress(self) -> int:
        with self._lock:
            return len(self._stacking)
