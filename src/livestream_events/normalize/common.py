"""Helpers shared by the platform normalizers."""

from datetime import datetime, timezone

from ..core.models import Actor, Event, EventType, Platform


def parse_iso_timestamp(value: str | None) -> datetime | None:
    """Parse an RFC 3339 timestamp such as ``2024-01-01T12:00:00.5Z``."""
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def parse_epoch_ms(value) -> datetime | None:
    """Parse a millisecond Unix timestamp (int or numeric string)."""
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def to_int(value, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def is_truthy(value) -> bool:
    """Interpret flags that arrive as bools, ints or strings."""
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes")
    return bool(value)


def metric_event(
    platform: Platform, name: str, value: float, when: datetime, raw=None
) -> Event:
    """A gauge reading such as concurrent viewers or total likes."""
    return Event(
        platform=platform,
        type=EventType.METRIC,
        id=f"metric:{name}:{int(when.timestamp() * 1000)}",
        actor=Actor(username=platform.value, display_name=platform.value.capitalize()),
        timestamp=when,
        amount=float(value),
        currency=name,
        raw=raw,
    )
