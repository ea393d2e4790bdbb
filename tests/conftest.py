"""Shared test fixtures for livestream_events tests."""

from datetime import datetime, timezone

import pytest

from livestream_events.core import credential_store
from livestream_events.core.models import Actor, Badge, Event, EventType, Platform
from livestream_events.core.settings import Settings


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def no_keyring(monkeypatch):
    """Behave as if no keyring backend exists."""
    monkeypatch.setattr(credential_store, "_keyring_available", False)


@pytest.fixture
def settings():
    s = Settings()
    s.engine.state_debounce = 0.0
    s.twitch.client_id = "twitch-client"
    s.twitch.client_secret = "twitch-secret"
    s.twitch.access_token = "twitch-access"
    s.twitch.refresh_token = "twitch-refresh"
    s.twitch.channel = "TestChannel"
    s.youtube.client_id = "yt-client"
    s.youtube.client_secret = "yt-secret"
    s.youtube.access_token = "yt-access"
    s.youtube.refresh_token = "yt-refresh"
    s.youtube.stream_id = "dQw4w9WgXcQ"
    return s


@pytest.fixture
def actor():
    return Actor(
        id="12345",
        username="testuser",
        display_name="TestUser",
        badges=[Badge(id="subscriber/12", name="subscriber")],
    )


@pytest.fixture
def make_event(actor):
    """Build an Event with sensible defaults."""

    def _make(
        event_id: str = "evt-1",
        event_type: EventType = EventType.CHAT,
        platform: Platform = Platform.TWITCH,
        **kwargs,
    ) -> Event:
        kwargs.setdefault("actor", actor)
        kwargs.setdefault("timestamp", datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc))
        return Event(platform=platform, type=event_type, id=event_id, **kwargs)

    return _make
