"""Settings management for the event engine."""

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

from appdirs import user_config_dir, user_data_dir

logger = logging.getLogger(__name__)

APP_NAME = "livestream-events"
APP_AUTHOR = "livestream-events"

DEFAULT_TIKTOK_RELAY_URL = "ws://127.0.0.1:21213/"


def get_config_dir() -> Path:
    """Get the configuration directory."""
    path = Path(user_config_dir(APP_NAME, APP_AUTHOR))
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_dir() -> Path:
    """Get the data directory."""
    path = Path(user_data_dir(APP_NAME, APP_AUTHOR))
    path.mkdir(parents=True, exist_ok=True)
    return path


@dataclass
class TwitchSettings:
    """Twitch chat and Helix settings."""

    enabled: bool = True
    client_id: str = ""
    client_secret: str = ""
    access_token: str = ""
    refresh_token: str = ""
    token_expires_at: float = 0.0  # Unix time, 0 = unknown
    channel: str = ""  # Channel to join; defaults to the token's own login
    login_name: str = ""  # Twitch username of the logged-in account
    poll_helix: bool = True  # Follower and viewer count polling


@dataclass
class YouTubeSettings:
    """YouTube Data API settings."""

    enabled: bool = True
    client_id: str = ""
    client_secret: str = ""
    access_token: str = ""
    refresh_token: str = ""
    token_expires_at: float = 0.0
    stream_id: str = ""  # Video id of the live broadcast
    poll_interval: int = 10  # seconds


@dataclass
class TikTokSettings:
    """TikTok relay settings."""

    enabled: bool = True
    relay_url: str = DEFAULT_TIKTOK_RELAY_URL


@dataclass
class EngineSettings:
    """Buffer sizes and timeouts of the ingestion pipeline."""

    event_buffer_size: int = 100  # per platform
    dedup_capacity: int = 1000  # per platform
    dedup_retention: int = 86400  # seconds
    gift_ttl: int = 300  # seconds
    stacking_timeout: float = 5.0  # seconds of inactivity before a combo is final
    state_debounce: float = 0.5  # seconds
    subscriber_queue_size: int = 500


@dataclass
class ChannelConfig:
    """What a connector needs to know about its target."""

    channel: str = ""
    stream_id: str = ""
    client_id: str = ""
    client_secret: str = ""
    url: str = ""


# Environment overrides, matching the keys of a classic .env deployment
_ENV_OVERRIDES = {
    "TWITCH_CHANNEL": ("twitch", "channel"),
    "TWITCH_CLIENT_ID": ("twitch", "client_id"),
    "TWITCH_CLIENT_SECRET": ("twitch", "client_secret"),
    "YOUTUBE_CLIENT_ID": ("youtube", "client_id"),
    "YOUTUBE_CLIENT_SECRET": ("youtube", "client_secret"),
    "YT_STREAM_ID": ("youtube", "stream_id"),
    "TIKTOK_RELAY_URL": ("tiktok", "relay_url"),
}


@dataclass
class Settings:
    """Application settings."""

    twitch: TwitchSettings = field(default_factory=TwitchSettings)
    youtube: YouTubeSettings = field(default_factory=YouTubeSettings)
    tiktok: TikTokSettings = field(default_factory=TikTokSettings)
    engine: EngineSettings = field(default_factory=EngineSettings)

    @classmethod
    def load(cls, path: Path | None = None) -> "Settings":
        """Load settings from file."""
        from .credential_store import (
            KEY_TWITCH_ACCESS_TOKEN,
            KEY_TWITCH_REFRESH_TOKEN,
            KEY_YOUTUBE_ACCESS_TOKEN,
            KEY_YOUTUBE_REFRESH_TOKEN,
            get_secret,
            is_available,
            store_secret,
        )

        if path is None:
            path = get_config_dir() / "settings.json"

        if not path.exists():
            return cls()

        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            settings = cls._from_dict(data)
        except (json.JSONDecodeError, KeyError, TypeError, AttributeError) as e:
            logger.warning(f"Ignoring unreadable settings file {path}: {e}")
            return cls()

        # Load secrets from keyring (overrides JSON values)
        if is_available():
            secrets = [
                (KEY_TWITCH_ACCESS_TOKEN, settings.twitch, "access_token"),
                (KEY_TWITCH_REFRESH_TOKEN, settings.twitch, "refresh_token"),
                (KEY_YOUTUBE_ACCESS_TOKEN, settings.youtube, "access_token"),
                (KEY_YOUTUBE_REFRESH_TOKEN, settings.youtube, "refresh_token"),
            ]
            needs_resave = False
            for key, section, attr in secrets:
                stored = get_secret(key)
                current = getattr(section, attr)
                # Migrate: if JSON has the secret but keyring doesn't, store in keyring
                if current and not stored:
                    store_secret(key, current)
                    needs_resave = True
                elif stored:
                    setattr(section, attr, stored)

            # Re-save to clear secrets from JSON after migration
            if needs_resave:
                settings.save(path)

        return settings

    def save(self, path: Path | None = None) -> None:
        """Save settings to file."""
        from .credential_store import (
            KEY_TWITCH_ACCESS_TOKEN,
            KEY_TWITCH_REFRESH_TOKEN,
            KEY_YOUTUBE_ACCESS_TOKEN,
            KEY_YOUTUBE_REFRESH_TOKEN,
            is_available,
            secure_file_permissions,
            store_secret,
        )

        if path is None:
            path = get_config_dir() / "settings.json"

        path.parent.mkdir(parents=True, exist_ok=True)

        # Store secrets in keyring
        use_keyring = is_available()
        if use_keyring:
            store_secret(KEY_TWITCH_ACCESS_TOKEN, self.twitch.access_token)
            store_secret(KEY_TWITCH_REFRESH_TOKEN, self.twitch.refresh_token)
            store_secret(KEY_YOUTUBE_ACCESS_TOKEN, self.youtube.access_token)
            store_secret(KEY_YOUTUBE_REFRESH_TOKEN, self.youtube.refresh_token)

        # Atomic write: write to temp file then rename to prevent corruption on crash
        fd, tmp_path = tempfile.mkstemp(dir=path.parent, suffix=".tmp", prefix="settings_")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self._to_dict(exclude_secrets=use_keyring), f, indent=2)
            os.replace(tmp_path, path)  # Atomic on POSIX
        except Exception:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

        if not use_keyring:
            # Fallback: protect the file with restrictive permissions
            secure_file_permissions(str(path))

    def apply_env(self, environ: dict | None = None) -> None:
        """Apply overrides from environment variables."""
        environ = os.environ if environ is None else environ
        for var, (section, attr) in _ENV_OVERRIDES.items():
            value = environ.get(var)
            if value:
                setattr(getattr(self, section), attr, value)

    @staticmethod
    def _validate_int(value, default: int, min_val: int = 0, max_val: int | None = None) -> int:
        """Validate and constrain an integer value."""
        if not isinstance(value, int) or isinstance(value, bool):
            return default
        if value < min_val:
            return min_val
        if max_val is not None and value > max_val:
            return max_val
        return value

    @staticmethod
    def _validate_float(
        value, default: float, min_val: float = 0.0, max_val: float | None = None
    ) -> float:
        """Validate and constrain a float value."""
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            return default
        value = float(value)
        if value < min_val:
            return min_val
        if max_val is not None and value > max_val:
            return max_val
        return value

    @classmethod
    def _from_dict(cls, data: dict) -> "Settings":
        """Create Settings from a dictionary with validation."""
        settings = cls()

        if "twitch" in data:
            t = data["twitch"]
            settings.twitch = TwitchSettings(
                enabled=t.get("enabled", True),
                client_id=t.get("client_id", ""),
                client_secret=t.get("client_secret", ""),
                access_token=t.get("access_token", ""),
                refresh_token=t.get("refresh_token", ""),
                token_expires_at=cls._validate_float(t.get("token_expires_at"), 0.0),
                channel=t.get("channel", ""),
                login_name=t.get("login_name", ""),
                poll_helix=t.get("poll_helix", True),
            )

        if "youtube" in data:
            y = data["youtube"]
            settings.youtube = YouTubeSettings(
                enabled=y.get("enabled", True),
                client_id=y.get("client_id", ""),
                client_secret=y.get("client_secret", ""),
                access_token=y.get("access_token", ""),
                refresh_token=y.get("refresh_token", ""),
                token_expires_at=cls._validate_float(y.get("token_expires_at"), 0.0),
                stream_id=y.get("stream_id", ""),
                poll_interval=cls._validate_int(
                    y.get("poll_interval"), 10, min_val=2, max_val=300
                ),
            )

        if "tiktok" in data:
            k = data["tiktok"]
            settings.tiktok = TikTokSettings(
                enabled=k.get("enabled", True),
                relay_url=k.get("relay_url") or DEFAULT_TIKTOK_RELAY_URL,
            )

        if "engine" in data:
            e = data["engine"]
            settings.engine = EngineSettings(
                event_buffer_size=cls._validate_int(
                    e.get("event_buffer_size"), 100, min_val=1, max_val=10000
                ),
                dedup_capacity=cls._validate_int(
                    e.get("dedup_capacity"), 1000, min_val=1000, max_val=1_000_000
                ),
                dedup_retention=cls._validate_int(e.get("dedup_retention"), 86400, min_val=0),
                gift_ttl=cls._validate_int(e.get("gift_ttl"), 300, min_val=1, max_val=3600),
                stacking_timeout=cls._validate_float(
                    e.get("stacking_timeout"), 5.0, min_val=0.5, max_val=60.0
                ),
                state_debounce=cls._validate_float(
                    e.get("state_debounce"), 0.5, min_val=0.0, max_val=10.0
                ),
                subscriber_queue_size=cls._validate_int(
                    e.get("subscriber_queue_size"), 500, min_val=1, max_val=100_000
                ),
            )

        return settings

    def _to_dict(self, exclude_secrets: bool = False) -> dict:
        """Convert settings to a dictionary."""
        twitch = {
            "enabled": self.twitch.enabled,
            "client_id": self.twitch.client_id,
            "client_secret": self.twitch.client_secret,
            "token_expires_at": self.twitch.token_expires_at,
            "channel": self.twitch.channel,
            "login_name": self.twitch.login_name,
            "poll_helix": self.twitch.poll_helix,
        }
        youtube = {
            "enabled": self.youtube.enabled,
            "client_id": self.youtube.client_id,
            "client_secret": self.youtube.client_secret,
            "token_expires_at": self.youtube.token_expires_at,
            "stream_id": self.youtube.stream_id,
            "poll_interval": self.youtube.poll_interval,
        }
        if not exclude_secrets:
            twitch["access_token"] = self.twitch.access_token
            twitch["refresh_token"] = self.twitch.refresh_token
            youtube["access_token"] = self.youtube.access_token
            youtube["refresh_token"] = self.youtube.refresh_token

        return {
            "twitch": twitch,
            "youtube": youtube,
            "tiktok": {
                "enabled": self.tiktok.enabled,
                "relay_url": self.tiktok.relay_url,
            },
            "engine": {
                "event_buffer_size": self.engine.event_buffer_size,
                "dedup_capacity": self.engine.dedup_capacity,
                "dedup_retention": self.engine.dedup_retention,
                "gift_ttl": self.engine.gift_ttl,
                "stacking_timeout": self.engine.stacking_timeout,
                "state_debounce": self.engine.state_debounce,
                "subscriber_queue_size": self.engine.subscriber_queue_size,
            },
        }
