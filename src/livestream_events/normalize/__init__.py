"""Per-platform mapping of raw payloads to the common Event model."""

from .tiktok import TikTokNormalizer
from .twitch import TwitchNormalizer
from .youtube import YouTubeNormalizer

__all__ = ["TikTokNormalizer", "TwitchNormalizer", "YouTubeNormalizer"]
