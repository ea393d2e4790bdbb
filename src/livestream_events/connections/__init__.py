"""Platform connectors."""

from .base import BackoffPolicy, BaseConnector, ReconnectPhase, StreamConnector, compute_backoff
from .tiktok import TikTokRelayConnector
from .twitch import TwitchChatConnector
from .youtube import YouTubeConnector, YouTubePollClient

__all__ = [
    "BackoffPolicy",
    "BaseConnector",
    "ReconnectPhase",
    "StreamConnector",
    "TikTokRelayConnector",
    "TwitchChatConnector",
    "YouTubeConnector",
    "YouTubePollClient",
    "compute_backoff",
]
