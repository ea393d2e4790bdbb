"""YouTube Data API v3 client for live chat polling."""

import asyncio
import logging
from typing import Any

import aiohttp

from ..core.errors import (
    AuthenticationError,
    ChatEndedError,
    QuotaExceededError,
    TransientError,
)
from ..core.models import Platform
from .base import BaseApiClient, safe_json

logger = logging.getLogger(__name__)

YOUTUBE_API_URL = "https://www.googleapis.com/youtube/v3"

MAX_RESULTS = 200

QUOTA_REASONS = {
    "quotaExceeded",
    "rateLimitExceeded",
    "dailyLimitExceeded",
    "userRateLimitExceeded",
}
CHAT_ENDED_REASONS = {"liveChatEnded", "liveChatNotFound", "liveChatDisabled"}


def error_reason(data: Any) -> str:
    """Extract ``error.errors[0].reason`` from an API error body."""
    if not isinstance(data, dict):
        return ""
    error = data.get("error")
    if not isinstance(error, dict):
        return ""
    errors = error.get("errors") or []
    if errors and isinstance(errors[0], dict):
        return errors[0].get("reason", "")
    return ""


class YouTubeDataClient(BaseApiClient):
    """Thin wrapper over the videos and liveChat/messages endpoints.

    Every call takes the access token explicitly; refreshing it is the
    caller's decision.
    """

    @property
    def platform(self) -> Platform:
        return Platform.YOUTUBE

    async def _get(self, path: str, params: dict[str, str], token: str) -> dict:
        try:
            async with self.session.get(
                f"{YOUTUBE_API_URL}/{path}",
                params=params,
                headers={"Authorization": f"Bearer {token}"},
            ) as resp:
                data = await safe_json(resp)
                self._raise_for_status(resp.status, data, path)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            reason = str(e) or e.__class__.__name__
            raise TransientError(f"{path} request failed: {reason}") from e
        return data if isinstance(data, dict) else {}

    def _raise_for_status(self, status: int, data: Any, path: str) -> None:
        if status == 200:
            return
        reason = error_reason(data)
        if status == 401:
            raise AuthenticationError(f"{path}: token rejected")
        if status == 403 and reason in QUOTA_REASONS:
            raise QuotaExceededError(f"{path}: {reason}")
        if status in (403, 404) and reason in CHAT_ENDED_REASONS:
            raise ChatEndedError(f"{path}: {reason}")
        if status == 429:
            raise QuotaExceededError(f"{path}: rate limited")
        raise TransientError(f"{path} returned {status} {reason}".rstrip())

    async def get_video(self, video_id: str, token: str) -> dict | None:
        """Snippet and liveStreamingDetails of one video, or None if unknown."""
        data = await self._get(
            "videos", {"part": "snippet,liveStreamingDetails", "id": video_id}, token
        )
        items = data.get("items") or []
        return items[0] if items else None

    async def list_chat_messages(
        self, live_chat_id: str, page_token: str | None, token: str
    ) -> dict:
        """One page of liveChat/messages."""
        params = {
            "liveChatId": live_chat_id,
            "part": "snippet,authorDetails",
            "maxResults": str(MAX_RESULTS),
        }
        if page_token:
            params["pageToken"] = page_token
        return await self._get("liveChat/messages", params, token)

    async def get_concurrent_viewers(self, video_id: str, token: str) -> int | None:
        """Concurrent viewers of a live video, None if not reported."""
        data = await self._get("videos", {"part": "liveStreamingDetails", "id": video_id}, token)
        items = data.get("items") or []
        if not items:
            return None
        viewers = items[0].get("liveStreamingDetails", {}).get("concurrentViewers")
        try:
            return int(viewers) if viewers is not None else None
        except (TypeError, ValueError):
            return None
