"""Twitch IRC connection over WebSocket, plus Helix side polling."""

import asyncio
import logging

import aiohttp

from ..api.twitch import AvatarCache, TwitchHelixClient
from ..core.assets import AssetCache, AssetKind
from ..core.credentials import CredentialProvider
from ..core.errors import AuthenticationError, ConnectionLostError, ConnectorError
from ..core.models import Platform
from .base import DEFAULT_STATE_DEBOUNCE, BackoffPolicy, StreamConnector

logger = logging.getLogger(__name__)

TWITCH_IRC_WS_URL = "wss://irc-ws.chat.twitch.tv:443"

# IRC capabilities to request
IRC_CAPS = [
    "twitch.tv/tags",
    "twitch.tv/commands",
]

# Probe the server after this much silence; Twitch itself pings every ~5 minutes
KEEPALIVE_INTERVAL = 360.0  # seconds
PONG_TIMEOUT = 10.0  # seconds

HELIX_POLL_INTERVAL = 30.0  # seconds
AVATAR_FETCH_INTERVAL = 2.0  # seconds


def parse_irc_tags(tag_string: str) -> dict[str, str]:
    """Parse IRC tags string into a dictionary.

    Tags format: @key1=value1;key2=value2;...
    """
    tags: dict[str, str] = {}
    if not tag_string:
        return tags

    if tag_string.startswith("@"):
        tag_string = tag_string[1:]

    for pair in tag_string.split(";"):
        if "=" in pair:
            key, value = pair.split("=", 1)
            value = (
                value.replace("\\:", ";")
                .replace("\\s", " ")
                .replace("\\\\", "\\")
                .replace("\\r", "\r")
                .replace("\\n", "\n")
            )
            tags[key] = value
        else:
            tags[pair] = ""

    return tags


def parse_irc_message(raw: str) -> dict:
    """Parse a raw IRC message into components.

    Returns dict with keys: tags, prefix, command, params, trailing
    """
    result: dict = {"tags": {}, "prefix": "", "command": "", "params": [], "trailing": ""}

    pos = 0

    if raw.startswith("@"):
        space_idx = raw.find(" ")
        if space_idx < 0:
            return result
        result["tags"] = parse_irc_tags(raw[:space_idx])
        pos = space_idx + 1

    if pos >= len(raw):
        return result

    if raw[pos] == ":":
        space_idx = raw.find(" ", pos)
        if space_idx < 0:
            return result
        result["prefix"] = raw[pos + 1 : space_idx]
        pos = space_idx + 1

    trailing_idx = raw.find(" :", pos)
    if trailing_idx >= 0:
        result["trailing"] = raw[trailing_idx + 2 :]
        remaining = raw[pos:trailing_idx]
    else:
        remaining = raw[pos:]

    parts = remaining.split(" ")
    result["command"] = parts[0]
    result["params"] = parts[1:] if len(parts) > 1 else []

    return result


def is_login_failure(notice_text: str) -> bool:
    return "Login" in notice_text and ("unsuccessful" in notice_text or "failed" in notice_text)


class TwitchChatConnector(StreamConnector):
    """Authenticated IRC session for one channel.

    While joined it also polls Helix for new followers and the viewer
    count, and fetches avatars and badges for the normalizer's caches.
    """

    platform = Platform.TWITCH
    policy = BackoffPolicy(initial_delay=5.0)

    def __init__(
        self,
        credentials: CredentialProvider,
        helix: TwitchHelixClient,
        assets: AssetCache | None = None,
        avatars: AvatarCache | None = None,
        poll_helix: bool = True,
        state_debounce: float = DEFAULT_STATE_DEBOUNCE,
    ) -> None:
        super().__init__(state_debounce)
        self._credentials = credentials
        self._helix = helix
        self._assets = assets
        self._avatars = avatars
        self._poll_helix = poll_helix
        self._session: aiohttp.ClientSession | None = None
        self._ws = None
        self._channel = ""
        self._login = ""
        self._broadcaster_id = ""
        self._joined = False
        self._awaiting_pong = False
        self._auth_failed = False
        self._known_followers: set[str] | None = None
        self._side_tasks: list[asyncio.Task] = []

    @property
    def channel(self) -> str:
        return self._channel

    async def _authenticate(self) -> tuple[str, str]:
        """Return (token, login), refreshing once if Twitch rejects the token."""
        token = await self._credentials.ensure_access_token(Platform.TWITCH)
        if token is None:
            raise AuthenticationError("no Twitch credentials configured")

        info = await self._helix.validate_token(token)
        if info is None:
            logger.warning("Twitch token rejected, attempting refresh")
            if not await self._credentials.refresh_access_token(Platform.TWITCH):
                raise AuthenticationError("Twitch token invalid and refresh failed")
            token, _ = self._credentials.get_access_token(Platform.TWITCH)
            info = await self._helix.validate_token(token)
            if info is None:
                raise AuthenticationError("Twitch token still invalid after refresh")

        self._credentials.set_login_name(Platform.TWITCH, info.login)
        return token, info.login

    async def _open_socket(self):
        self._session = aiohttp.ClientSession()
        return await self._session.ws_connect(TWITCH_IRC_WS_URL)

    async def _connect_and_read(self) -> None:
        token, login = await self._authenticate()
        config = self._credentials.get_channel_config(Platform.TWITCH)
        self._channel = config.channel or login.lower()
        self._login = login.lower()

        self._ws = await self._open_socket()
        for cap in IRC_CAPS:
            await self._ws.send_str(f"CAP REQ :{cap}")
        await self._ws.send_str(f"PASS oauth:{token}")
        await self._ws.send_str(f"NICK {self._login}")
        await self._ws.send_str(f"JOIN #{self._channel}")
        logger.info(f"Twitch IRC: joining #{self._channel} as {self._login}")

        await self._read_loop()

        if self._auth_failed:
            if await self._credentials.refresh_access_token(Platform.TWITCH):
                raise ConnectionLostError("login rejected, retrying with refreshed token")
            raise AuthenticationError("Twitch IRC login failed and token refresh failed")

    async def _read_loop(self) -> None:
        """Read until the socket closes, answering and sending keep-alives."""
        ws = self._ws
        while not self._stopping and not self._auth_failed:
            timeout = PONG_TIMEOUT if self._awaiting_pong else KEEPALIVE_INTERVAL
            try:
                msg = await ws.receive(timeout=timeout)
            except asyncio.TimeoutError:
                if self._awaiting_pong:
                    raise ConnectionLostError("no PONG from Twitch IRC")
                await ws.send_str("PING :tmi.twitch.tv")
                self._awaiting_pong = True
                continue

            if msg.type == aiohttp.WSMsgType.TEXT:
                self._awaiting_pong = False
                for line in msg.data.split("\r\n"):
                    if line:
                        await self._handle_line(line)
            elif msg.type in (
                aiohttp.WSMsgType.CLOSE,
                aiohttp.WSMsgType.CLOSING,
                aiohttp.WSMsgType.CLOSED,
                aiohttp.WSMsgType.ERROR,
            ):
                raise ConnectionLostError(f"Twitch IRC socket closed ({msg.type.name})")

    async def _handle_line(self, line: str) -> None:
        if line.startswith("PING"):
            await self._ws.send_str(f"PONG {line[5:]}")
            return

        parsed = parse_irc_message(line)
        command = parsed["command"]

        if command == "PRIVMSG":
            self._emit("privmsg", parsed)
        elif command == "USERNOTICE":
            self._emit("usernotice", parsed)
        elif command == "ROOMSTATE":
            self._on_joined(parsed)
        elif command == "RECONNECT":
            raise ConnectionLostError("Twitch requested a reconnect")
        elif command == "NOTICE":
            text = parsed.get("trailing", "")
            if is_login_failure(text):
                logger.warning(f"Twitch IRC: auth failed: {text}")
                self._auth_failed = True
        elif command == "PONG":
            self._awaiting_pong = False

    def _on_joined(self, parsed: dict) -> None:
        # ROOMSTATE also arrives on mode changes; only the first one confirms the join
        if self._joined:
            return
        self._joined = True
        self._broadcaster_id = parsed["tags"].get("room-id", "")
        self._mark_connected()
        logger.info(f"Twitch IRC: joined #{self._channel} (room-id {self._broadcaster_id})")

        self._side_tasks.append(asyncio.create_task(self._fetch_badges()))
        if self._avatars is not None:
            self._side_tasks.append(asyncio.create_task(self._avatar_loop()))
        if self._poll_helix:
            self._side_tasks.append(asyncio.create_task(self._helix_loop()))

    async def _fetch_badges(self) -> None:
        if self._assets is None:
            return
        try:
            badges = await self._helix.get_chat_badges(self._broadcaster_id)
        except (ConnectorError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Twitch badge fetch failed: {e}")
            return
        self._assets.populate_many(AssetKind.BADGE, badges)
        logger.info(f"Loaded {len(badges)} Twitch badges")

    async def _avatar_loop(self) -> None:
        while True:
            await asyncio.sleep(AVATAR_FETCH_INTERVAL)
            logins = self._avatars.take_pending()
            if not logins:
                continue
            try:
                users = await self._helix.get_users(logins)
            except (ConnectorError, aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.debug(f"Avatar fetch failed for {len(logins)} users: {e}")
                continue
            for login in logins:
                user = users.get(login)
                # Store misses too so unknown logins are not refetched every cycle
                self._avatars.store(login, user.get("profile_image_url", "") if user else "")

    async def _helix_loop(self) -> None:
        while True:
            try:
                await self.poll_helix_once()
            except AuthenticationError as e:
                logger.warning(f"Helix polling stopped: {e}")
                return
            except (ConnectorError, aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.warning(f"Helix polling failed: {e}")
            await asyncio.sleep(HELIX_POLL_INTERVAL)

    async def poll_helix_once(self) -> None:
        """Emit new followers and the current viewer count."""
        if self._broadcaster_id:
            followers = await self._helix.get_followers(self._broadcaster_id)
            ids = [f.get("user_id", "") for f in followers]
            if self._known_followers is None:
                # First page only seeds what was there before we connected
                self._known_followers = set(ids)
            else:
                for follower in reversed(followers):
                    user_id = follower.get("user_id", "")
                    if user_id and user_id not in self._known_followers:
                        self._known_followers.add(user_id)
                        self._emit("follower", follower)

        viewers = await self._helix.get_viewer_count(self._channel)
        if viewers is not None:
            self._emit("metric", {"name": "viewers", "value": viewers})

    async def _close_transport(self) -> None:
        tasks, self._side_tasks = self._side_tasks, []
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        self._ws = None
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
        self._joined = False
        self._awaiting_pong = False
        self._auth_failed = False
