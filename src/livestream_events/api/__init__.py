"""REST clients for the polled platform APIs."""

from .base import BaseApiClient
from .twitch import TwitchHelixClient
from .youtube import YouTubeDataClient

__all__ = [
    "BaseApiClient",
    "TwitchHelixClient",
    "YouTubeDataClient",
]
