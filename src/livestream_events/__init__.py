"""Live audience-event ingestion for Twitch, YouTube and TikTok."""

__version__ = "0.4.0"
