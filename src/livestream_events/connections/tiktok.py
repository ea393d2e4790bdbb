"""TikTok events through a local relay WebSocket.

The relay handles the TikTok login and republishes already-parsed events,
so this connector needs no credentials and reconnects indefinitely.
"""

import json
import logging

import aiohttp

from ..core.errors import ConnectionLostError
from ..core.models import ConnectionStatus, Platform
from ..core.settings import DEFAULT_TIKTOK_RELAY_URL
from .base import DEFAULT_STATE_DEBOUNCE, BackoffPolicy, StreamConnector

logger = logging.getLogger(__name__)

RELAY_HEARTBEAT = 30.0  # seconds

# Relay events describing the relay's own TikTok session
UPSTREAM_LOST_EVENTS = {
    "disconnected": "relay lost TikTok connection",
    "streamEnd": "stream ended",
}
UPSTREAM_OK_EVENTS = {"connected"}


class TikTokRelayConnector(StreamConnector):
    """Reads JSON frames from the relay and queues them unchanged."""

    platform = Platform.TIKTOK
    policy = BackoffPolicy(initial_delay=2.0, max_delay=30.0)

    def __init__(
        self, url: str = DEFAULT_TIKTOK_RELAY_URL, state_debounce: float = DEFAULT_STATE_DEBOUNCE
    ) -> None:
        super().__init__(state_debounce)
        self.url = url
        self._session: aiohttp.ClientSession | None = None
        self._ws = None

    async def _open_socket(self):
        self._session = aiohttp.ClientSession()
        return await self._session.ws_connect(self.url, heartbeat=RELAY_HEARTBEAT)

    async def _connect_and_read(self) -> None:
        self._ws = await self._open_socket()
        logger.info(f"Connected to TikTok relay at {self.url}")
        self._mark_connected()

        async for msg in self._ws:
            if self._stopping:
                return
            if msg.type == aiohttp.WSMsgType.TEXT:
                self._handle_frame(msg.data)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                raise ConnectionLostError(f"relay socket error: {self._ws.exception()}")

        raise ConnectionLostError("relay closed the connection")

    def _handle_frame(self, text: str) -> None:
        try:
            frame = json.loads(text)
        except json.JSONDecodeError as e:
            logger.debug(f"Dropping unparseable relay frame: {e}")
            return
        if not isinstance(frame, dict):
            logger.debug(f"Dropping relay frame of type {type(frame).__name__}")
            return

        event_name = frame.get("event")
        if event_name in UPSTREAM_LOST_EVENTS:
            self._set_state(ConnectionStatus.DEGRADED, UPSTREAM_LOST_EVENTS[event_name])
            return
        if event_name in UPSTREAM_OK_EVENTS:
            self._mark_connected()
            return
        self._emit("frame", frame)

    async def _close_transport(self) -> None:
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        self._ws = None
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
