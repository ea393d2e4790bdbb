"""Credential provider shared by all connectors.

Connectors read tokens concurrently; refreshing is the only mutation. A
refresh for one platform runs at most once at a time and every caller that
asks while it is in flight awaits the same result.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

import aiohttp

from ..api.base import safe_json
from .models import Platform
from .settings import ChannelConfig, Settings, TwitchSettings, YouTubeSettings

logger = logging.getLogger(__name__)

TWITCH_TOKEN_URL = "https://id.twitch.tv/oauth2/token"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"

# Refresh a little before the advertised expiry
EXPIRY_MARGIN = 60.0  # seconds


@dataclass
class TokenGrant:
    """Result of a refresh-token exchange."""

    access_token: str
    refresh_token: str = ""
    expires_in: float = 0.0


class CredentialProvider:
    """Tokens and channel configuration for each platform."""

    def __init__(
        self,
        settings: Settings,
        persist: Callable[[Settings], None] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings
        self._persist = persist
        self._clock = clock
        self._refreshes: dict[Platform, asyncio.Task] = {}

    def _section(self, platform: Platform) -> TwitchSettings | YouTubeSettings | None:
        if platform == Platform.TWITCH:
            return self._settings.twitch
        if platform == Platform.YOUTUBE:
            return self._settings.youtube
        return None  # TikTok authenticates upstream of the relay

    def get_access_token(self, platform: Platform) -> tuple[str, bool]:
        """Return the current access token and whether one exists."""
        section = self._section(platform)
        token = section.access_token if section else ""
        return token, bool(token)

    def is_expired(self, platform: Platform) -> bool:
        """True when the token's expiry is known and (nearly) reached."""
        section = self._section(platform)
        if section is None or not section.token_expires_at:
            return False
        return self._clock() >= section.token_expires_at - EXPIRY_MARGIN

    async def ensure_access_token(self, platform: Platform) -> str | None:
        """Return a usable token, refreshing first if it has expired.

        None means there is no token and none can be obtained.
        """
        token, has_token = self.get_access_token(platform)
        if not has_token:
            return None
        if self.is_expired(platform):
            logger.info(f"{platform.value} access token expired, refreshing")
            if not await self.refresh_access_token(platform):
                return None
            token, _ = self.get_access_token(platform)
        return token

    async def refresh_access_token(self, platform: Platform) -> bool:
        """Exchange the refresh token for a new access token.

        Returns False if refreshing is impossible (no refresh token, or the
        exchange was rejected).
        """
        task = self._refreshes.get(platform)
        if task is None or task.done():
            task = asyncio.ensure_future(self._refresh(platform))
            self._refreshes[platform] = task
        else:
            logger.debug(f"Joining in-flight {platform.value} token refresh")
        # A cancelled caller must not cancel the refresh other callers await
        return await asyncio.shield(task)

    async def _refresh(self, platform: Platform) -> bool:
        section = self._section(platform)
        if section is None or not section.refresh_token:
            logger.warning(f"No {platform.value} refresh token available")
            return False

        try:
            grant = await self._exchange(platform, section)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"{platform.value} token refresh failed: {e}")
            return False

        if grant is None or not grant.access_token:
            return False

        self.set_tokens(platform, grant.access_token, grant.refresh_token, grant.expires_in)
        logger.info(f"{platform.value} access token refreshed")
        return True

    async def _exchange(
        self, platform: Platform, section: TwitchSettings | YouTubeSettings
    ) -> TokenGrant | None:
        """POST the refresh_token grant to the platform's token endpoint."""
        url = TWITCH_TOKEN_URL if platform == Platform.TWITCH else GOOGLE_TOKEN_URL
        form = {
            "grant_type": "refresh_token",
            "refresh_token": section.refresh_token,
            "client_id": section.client_id,
            "client_secret": section.client_secret,
        }
        timeout = aiohttp.ClientTimeout(total=15)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(url, data=form) as resp:
                if resp.status != 200:
                    logger.warning(
                        f"{platform.value} token refresh rejected (status={resp.status})"
                    )
                    return None
                data = await safe_json(resp)

        if not isinstance(data, dict):
            return None
        return TokenGrant(
            access_token=data.get("access_token", ""),
            refresh_token=data.get("refresh_token", ""),
            expires_in=float(data.get("expires_in") or 0),
        )

    def set_tokens(
        self,
        platform: Platform,
        access_token: str,
        refresh_token: str = "",
        expires_in: float = 0.0,
    ) -> None:
        """Store new tokens and persist them.

        An empty refresh token keeps the previous one; Google omits it on refresh.
        """
        section = self._section(platform)
        if section is None:
            raise ValueError(f"{platform.value} has no OAuth tokens")
        section.access_token = access_token
        if refresh_token:
            section.refresh_token = refresh_token
        section.token_expires_at = self._clock() + expires_in if expires_in else 0.0
        if self._persist is not None:
            try:
                self._persist(self._settings)
            except OSError as e:
                logger.warning(f"Could not persist refreshed {platform.value} token: {e}")

    def get_channel_config(self, platform: Platform) -> ChannelConfig:
        """Target identifiers and app credentials for a connector."""
        if platform == Platform.TWITCH:
            t = self._settings.twitch
            return ChannelConfig(
                channel=(t.channel or t.login_name).lower(),
                client_id=t.client_id,
                client_secret=t.client_secret,
            )
        if platform == Platform.YOUTUBE:
            y = self._settings.youtube
            return ChannelConfig(
                stream_id=y.stream_id,
                client_id=y.client_id,
                client_secret=y.client_secret,
            )
        return ChannelConfig(url=self._settings.tiktok.relay_url)

    def set_login_name(self, platform: Platform, login: str) -> None:
        """Remember the account a validated Twitch token belongs to."""
        if platform == Platform.TWITCH and login:
            self._settings.twitch.login_name = login
