"""Twitch Helix client used alongside the IRC connection."""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import aiohttp

from ..core.credentials import CredentialProvider
from ..core.errors import AuthenticationError, TransientError
from ..core.models import Platform
from .base import BaseApiClient, is_retryable_status, retry_after_seconds, safe_json

logger = logging.getLogger(__name__)

HELIX_URL = "https://api.twitch.tv/helix"
VALIDATE_URL = "https://id.twitch.tv/oauth2/validate"

AVATAR_TTL = 3600.0  # seconds
USERS_PER_REQUEST = 100


@dataclass
class TokenInfo:
    """What id.twitch.tv says about an access token."""

    login: str
    user_id: str
    client_id: str = ""
    scopes: list[str] = field(default_factory=list)
    expires_in: int = 0


class AvatarCache:
    """Profile images by login with a TTL.

    Lookups never wait on the network: a miss returns None and queues the
    login for the next batch fetch.
    """

    def __init__(self, ttl: float = AVATAR_TTL, clock: Callable[[], float] = time.monotonic):
        self._ttl = ttl
        self._clock = clock
        self._entries: dict[str, tuple[str, float]] = {}
        self._pending: set[str] = set()

    def lookup(self, login: str) -> str | None:
        login = login.lower()
        if not login:
            return None
        entry = self._entries.get(login)
        if entry and self._clock() - entry[1] < self._ttl:
            return entry[0]
        self._pending.add(login)
        return None

    def store(self, login: str, url: str) -> None:
        login = login.lower()
        self._entries[login] = (url, self._clock())
        self._pending.discard(login)

    def take_pending(self, limit: int = USERS_PER_REQUEST) -> list[str]:
        """Remove and return up to ``limit`` logins waiting for a fetch."""
        batch = sorted(self._pending)[:limit]
        self._pending.difference_update(batch)
        return batch


class TwitchHelixClient(BaseApiClient):
    """Helix endpoints for followers, viewers, users and badges."""

    def __init__(self, credentials: CredentialProvider) -> None:
        super().__init__()
        self._credentials = credentials
        self._client_id = credentials.get_channel_config(Platform.TWITCH).client_id

    @property
    def platform(self) -> Platform:
        return Platform.TWITCH

    async def validate_token(self, token: str) -> TokenInfo | None:
        """Validate a token. None means Twitch rejected it."""
        try:
            async with self.session.get(
                VALIDATE_URL, headers={"Authorization": f"OAuth {token}"}
            ) as resp:
                if resp.status == 401:
                    return None
                if resp.status != 200:
                    raise TransientError(f"token validation returned {resp.status}")
                data = await safe_json(resp)
        except aiohttp.ClientError as e:
            raise TransientError(f"token validation failed: {e}") from e

        if not isinstance(data, dict) or not data.get("login"):
            return None
        info = TokenInfo(
            login=data["login"],
            user_id=data.get("user_id", ""),
            client_id=data.get("client_id", ""),
            scopes=data.get("scopes") or [],
            expires_in=int(data.get("expires_in") or 0),
        )
        if not self._client_id:
            self._client_id = info.client_id
        logger.info(f"Twitch token validated: {info.login} (scopes: {info.scopes})")
        return info

    def _headers(self, token: str) -> dict[str, str]:
        return {"Client-Id": self._client_id, "Authorization": f"Bearer {token}"}

    async def _get(self, path: str, params: list[tuple[str, str]]) -> dict[str, Any]:
        """GET a Helix endpoint, refreshing the token once on 401."""
        for attempt in range(2):
            token, has_token = self._credentials.get_access_token(Platform.TWITCH)
            if not has_token:
                raise AuthenticationError("no Twitch token")
            async with self.session.get(
                f"{HELIX_URL}/{path}", headers=self._headers(token), params=params
            ) as resp:
                if resp.status == 401:
                    if attempt == 0 and await self._credentials.refresh_access_token(
                        Platform.TWITCH
                    ):
                        continue
                    raise AuthenticationError(f"Helix rejected token for {path}")
                if is_retryable_status(resp.status):
                    raise TransientError(
                        f"Helix {path} returned {resp.status}",
                        retry_after=retry_after_seconds(resp.headers),
                    )
                if resp.status != 200:
                    logger.warning(f"Helix {path} returned {resp.status}")
                    return {}
                data = await safe_json(resp)
                return data if isinstance(data, dict) else {}
        return {}

    async def get_users(self, logins: list[str]) -> dict[str, dict]:
        """Users keyed by lowercase login."""
        result: dict[str, dict] = {}
        for i in range(0, len(logins), USERS_PER_REQUEST):
            batch = logins[i : i + USERS_PER_REQUEST]
            data = await self._with_retries(
                lambda batch=batch: self._get("users", [("login", login) for login in batch]),
                "users",
            )
            for user in data.get("data", []):
                result[user.get("login", "").lower()] = user
        return result

    async def get_followers(self, broadcaster_id: str, first: int = 20) -> list[dict]:
        """Most recent followers, newest first."""
        data = await self._with_retries(
            lambda: self._get(
                "channels/followers",
                [("broadcaster_id", broadcaster_id), ("first", str(first))],
            ),
            "followers",
        )
        return data.get("data", [])

    async def get_viewer_count(self, login: str) -> int | None:
        """Current viewers, or None when the channel is offline."""
        data = await self._with_retries(
            lambda: self._get("streams", [("user_login", login)]), "streams"
        )
        streams = data.get("data", [])
        if not streams:
            return None
        return int(streams[0].get("viewer_count", 0))

    async def get_chat_badges(self, broadcaster_id: str) -> dict[str, str]:
        """Badge image URLs keyed by "set_id/version" (global and channel)."""
        badge_map: dict[str, str] = {}
        sources = [("chat/badges/global", [])]
        if broadcaster_id:
            sources.append(("chat/badges", [("broadcaster_id", broadcaster_id)]))
        for path, params in sources:
            data = await self._get(path, params)
            for badge_set in data.get("data", []):
                set_id = badge_set.get("set_id", "")
                for version in badge_set.get("versions", []):
                    vid = version.get("id", "")
                    url = version.get("image_url_2x") or version.get("image_url_1x") or ""
                    if set_id and vid and url:
                        badge_map[f"{set_id}/{vid}"] = url
        return badge_map
