"""Core data models for the event engine."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class Platform(str, Enum):
    """Supported streaming platforms."""

    TWITCH = "twitch"
    YOUTUBE = "youtube"
    TIKTOK = "tiktok"


class EventType(str, Enum):
    """Kinds of normalized audience events."""

    CHAT = "chat"
    FOLLOW = "follow"
    SUBSCRIPTION = "subscription"
    GIFT_SUBSCRIPTION = "gift_subscription"
    GIFT_PURCHASE = "gift_purchase"
    BITS = "bits"
    RAID = "raid"
    MEMBERSHIP = "membership"
    GIFT_MEMBERSHIP_PURCHASE = "gift_membership_purchase"
    GIFT_MEMBERSHIP_RECEIVED = "gift_membership_received"
    SUPERCHAT = "superchat"
    SUPERSTICKER = "supersticker"
    MILESTONE = "milestone"
    GIFT = "gift"  # Platform currency gifts (TikTok diamonds)
    METRIC = "metric"


class ConnectionStatus(str, Enum):
    """Connection status as seen by consumers."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DEGRADED = "degraded"


@dataclass(frozen=True)
class ConnectionState:
    """Connection state of one platform.

    ``terminal`` marks a Disconnected state that will not recover without
    external reconfiguration (missing or rejected credentials, ended stream).
    """

    platform: Platform
    status: ConnectionStatus
    reason: str = ""
    terminal: bool = False

    @property
    def is_connected(self) -> bool:
        return self.status in (ConnectionStatus.CONNECTED, ConnectionStatus.DEGRADED)


@dataclass
class Badge:
    """A chat badge (subscriber, moderator, member, ...)."""

    id: str
    name: str
    image_url: str = ""  # Empty until the asset cache knows the badge


@dataclass
class Emote:
    """An emote or emoji embedded in a message."""

    id: str
    name: str  # Text code as it appears in the message
    url: str
    provider: str  # "twitch", "youtube", "tiktok"


@dataclass
class Actor:
    """The principal behind an event."""

    username: str
    display_name: str
    avatar_url: str = ""
    id: str = ""
    badges: list[Badge] = field(default_factory=list)

    @property
    def key(self) -> str:
        """Stable identifier used for correlation lookups."""
        return self.id or self.username.lower()


ANONYMOUS_GIFTER = "Anonymous"


def anonymous_actor() -> Actor:
    """Counterpart used when a gift cannot be traced back to its gifter."""
    return Actor(username="anonymous", display_name=ANONYMOUS_GIFTER)


@dataclass
class Event:
    """A normalized audience event.

    ``final`` is False while a stacking gift is still counting. Such events
    share their id with the eventual final event and consumers should treat
    them as updates of one entry.
    """

    platform: Platform
    type: EventType
    id: str
    actor: Actor
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    counterpart: Optional[Actor] = None
    amount: Optional[float] = None
    currency: Optional[str] = None  # Currency code or unit ("bits", "months", "viewers", ...)
    message: str = ""
    emotes: list[tuple[int, int, Emote]] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)
    final: bool = True
    raw: Any = field(default=None, repr=False, compare=False)

    @property
    def is_update(self) -> bool:
        return not self.final

    def to_dict(self) -> dict:
        """Consumer-facing representation (diagnostic payload omitted)."""

        def actor_dict(actor: Optional[Actor]) -> Optional[dict]:
            if actor is None:
                return None
            return {
                "id": actor.id,
                "username": actor.username,
                "display_name": actor.display_name,
                "avatar_url": actor.avatar_url,
                "badges": [
                    {"id": b.id, "name": b.name, "image_url": b.image_url} for b in actor.badges
                ],
            }

        return {
            "platform": self.platform.value,
            "type": self.type.value,
            "id": self.id,
            "actor": actor_dict(self.actor),
            "counterpart": actor_dict(self.counterpart),
            "amount": self.amount,
            "currency": self.currency,
            "message": self.message,
            "emotes": [
                {"start": start, "end": end, "id": e.id, "name": e.name, "url": e.url}
                for start, end, e in self.emotes
            ],
            "extra": dict(self.extra),
            "final": self.final,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class RawEvent:
    """A platform payload as produced by a connector, before normalization."""

    platform: Platform
    kind: str  # "privmsg", "usernotice", "follower", "chat_item", "frame", "metric", ...
    payload: dict
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class Snapshot:
    """Point-in-time view of the bus for late-joining consumers."""

    events: dict[Platform, list[Event]]
    states: dict[Platform, ConnectionState]
    metrics: dict[Platform, dict[str, float]]
    last_update: Optional[datetime]
