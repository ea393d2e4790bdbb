"""YouTube live chat via the Data API, polled on a timer.

``YouTubePollClient`` keeps the resolved liveChatId and the page cursor
between calls and turns every API irregularity into a ``PollResult``.
``YouTubeConnector`` is the scheduler that calls it and reports state.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

import aiohttp

from ..api.youtube import YouTubeDataClient
from ..core.correlation import RecentIds
from ..core.credentials import CredentialProvider
from ..core.errors import (
    AuthenticationError,
    ChatEndedError,
    ConnectorError,
    QuotaExceededError,
    StreamEndedError,
    TransientError,
)
from ..core.models import ConnectionStatus, Platform
from ..normalize.common import parse_iso_timestamp
from .base import (
    DEFAULT_STATE_DEBOUNCE,
    BackoffPolicy,
    BaseConnector,
    ReconnectPhase,
    compute_backoff,
)

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 10.0  # seconds
PROCESSED_ID_CAPACITY = 2000


class SessionOutcome(str, Enum):
    LIVE = "live"
    SCHEDULED = "scheduled"
    ENDED = "ended"
    NOT_LIVE = "not_live"


@dataclass
class SessionResolution:
    outcome: SessionOutcome
    live_chat_id: str | None = None
    scheduled_start: datetime | None = None


def resolve_session(video: dict | None, now: datetime) -> SessionResolution:
    """Decide what a videos.list result means for chat polling."""
    if not video:
        return SessionResolution(SessionOutcome.NOT_LIVE)

    details = video.get("liveStreamingDetails") or {}
    if details.get("actualEndTime"):
        return SessionResolution(SessionOutcome.ENDED)

    chat_id = details.get("activeLiveChatId") or (video.get("snippet") or {}).get("liveChatId")
    if chat_id:
        return SessionResolution(SessionOutcome.LIVE, live_chat_id=chat_id)

    start = parse_iso_timestamp(details.get("scheduledStartTime"))
    if start is not None and start > now:
        return SessionResolution(SessionOutcome.SCHEDULED, scheduled_start=start)

    return SessionResolution(SessionOutcome.NOT_LIVE)


class PollOutcome(str, Enum):
    OK = "ok"
    SCHEDULED = "scheduled"
    NOT_LIVE = "not_live"
    QUOTA = "quota"
    CHAT_RESET = "chat_reset"
    ERROR = "error"
    ENDED = "ended"
    AUTH_FAILED = "auth_failed"


@dataclass
class PollResult:
    outcome: PollOutcome
    items: list[dict] = field(default_factory=list)
    viewers: int | None = None
    error: str = ""
    polling_interval: float | None = None  # Server-suggested minimum, seconds


class YouTubePollClient:
    """One poll per call: resolve the chat once, then page through messages."""

    def __init__(
        self,
        api: YouTubeDataClient,
        credentials: CredentialProvider,
        stream_id: str,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._api = api
        self._credentials = credentials
        self.stream_id = stream_id
        self._clock = clock
        self.live_chat_id: str | None = None
        self.next_page_token: str | None = None
        self._processed = RecentIds(PROCESSED_ID_CAPACITY, retention=0)

    async def poll(self) -> PollResult:
        token = await self._credentials.ensure_access_token(Platform.YOUTUBE)
        if token is None:
            return PollResult(PollOutcome.AUTH_FAILED, error="no YouTube credentials configured")

        try:
            try:
                return await self._poll_with_token(token)
            except AuthenticationError:
                logger.info("YouTube token rejected, attempting refresh")
                if not await self._credentials.refresh_access_token(Platform.YOUTUBE):
                    return PollResult(
                        PollOutcome.AUTH_FAILED, error="YouTube token invalid and refresh failed"
                    )
                token, _ = self._credentials.get_access_token(Platform.YOUTUBE)
                return await self._poll_with_token(token)
        except AuthenticationError as e:
            return PollResult(PollOutcome.AUTH_FAILED, error=str(e))
        except StreamEndedError as e:
            logger.info(f"YouTube stream {self.stream_id} has ended")
            return PollResult(PollOutcome.ENDED, error=str(e) or "stream ended")
        except QuotaExceededError as e:
            logger.warning(f"YouTube quota exceeded, skipping this cycle: {e}")
            return PollResult(PollOutcome.QUOTA, error=str(e))
        except ChatEndedError as e:
            logger.info(f"YouTube chat handle no longer valid, re-resolving: {e}")
            self.live_chat_id = None
            self.next_page_token = None
            return PollResult(PollOutcome.CHAT_RESET, error=str(e))
        except (TransientError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            reason = str(e) or e.__class__.__name__
            logger.warning(f"YouTube poll failed: {reason}")
            return PollResult(PollOutcome.ERROR, error=reason)

    async def _poll_with_token(self, token: str) -> PollResult:
        if self.live_chat_id is None:
            video = await self._api.get_video(self.stream_id, token)
            resolution = resolve_session(video, self._clock())
            if resolution.outcome == SessionOutcome.ENDED:
                raise StreamEndedError("stream ended")
            if resolution.outcome == SessionOutcome.SCHEDULED:
                return PollResult(PollOutcome.SCHEDULED)
            if resolution.outcome == SessionOutcome.NOT_LIVE:
                return PollResult(PollOutcome.NOT_LIVE, error="stream not live")
            self.live_chat_id = resolution.live_chat_id
            self.next_page_token = None
            logger.info(f"YouTube live chat resolved: {self.live_chat_id}")

        page = await self._api.list_chat_messages(self.live_chat_id, self.next_page_token, token)
        # The cursor only moves once a page has been received
        if page.get("nextPageToken"):
            self.next_page_token = page["nextPageToken"]

        items = []
        for item in page.get("items") or []:
            item_id = item.get("id") if isinstance(item, dict) else None
            if item_id and not self._processed.add(item_id):
                continue
            items.append(item)

        interval = page.get("pollingIntervalMillis")
        result = PollResult(
            PollOutcome.OK,
            items=items,
            polling_interval=interval / 1000 if isinstance(interval, (int, float)) else None,
        )
        if page.get("offlineAt"):
            result.outcome = PollOutcome.ENDED
            result.error = "chat went offline"
            return result

        try:
            result.viewers = await self._api.get_concurrent_viewers(self.stream_id, token)
        except (QuotaExceededError, TransientError) as e:
            logger.debug(f"YouTube viewer count unavailable: {e}")
        return result


class YouTubeConnector(BaseConnector):
    """Timer-driven owner of a YouTubePollClient."""

    platform = Platform.YOUTUBE
    policy = BackoffPolicy(initial_delay=DEFAULT_POLL_INTERVAL, max_delay=300.0)

    def __init__(
        self,
        client: YouTubePollClient,
        interval: float = DEFAULT_POLL_INTERVAL,
        state_debounce: float = DEFAULT_STATE_DEBOUNCE,
    ) -> None:
        super().__init__(state_debounce)
        self.client = client
        self.interval = interval
        self.polls = 0
        self._errors = 0

    async def _run(self) -> None:
        if not self.client.stream_id:
            self._give_up("no YouTube stream id configured")
            return

        self._phase = ReconnectPhase.CONNECTING
        self._set_state(ConnectionStatus.CONNECTING)
        try:
            while not self._stopping:
                self.polls += 1
                result = await self._poll_once()
                if self.apply(result):
                    return
                await asyncio.sleep(self._delay_after(result))
        finally:
            self._phase = ReconnectPhase.IDLE

    async def _poll_once(self) -> PollResult:
        try:
            return await self.client.poll()
        except (ConnectorError, aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            reason = str(e) or e.__class__.__name__
            logger.warning(f"{self.name}: poll failed: {reason}")
        except Exception as e:
            reason = str(e) or e.__class__.__name__
            logger.exception(f"{self.name}: unexpected poll error: {reason}")
        return PollResult(PollOutcome.ERROR, error=reason)

    def apply(self, result: PollResult) -> bool:
        """Queue what a poll produced and report state. True means stop polling."""
        outcome = result.outcome
        if outcome in (PollOutcome.AUTH_FAILED, PollOutcome.ENDED):
            for item in result.items:
                self._emit("chat_item", item)
            self._give_up(result.error or outcome.value)
            return True

        if outcome == PollOutcome.OK:
            self._errors = 0
            self._phase = ReconnectPhase.CONNECTED
            for item in result.items:
                self._emit("chat_item", item)
            if result.viewers is not None:
                self._emit("metric", {"name": "viewers", "value": result.viewers})
            self._set_state(ConnectionStatus.CONNECTED)
        elif outcome == PollOutcome.SCHEDULED:
            self._errors = 0
            self._phase = ReconnectPhase.CONNECTED
            self._set_state(ConnectionStatus.CONNECTED, "stream scheduled")
        elif outcome == PollOutcome.NOT_LIVE:
            self._errors = 0
            self._set_state(ConnectionStatus.DEGRADED, result.error or "stream not live")
        elif outcome == PollOutcome.ERROR:
            self._errors += 1
            self._phase = ReconnectPhase.BACKOFF
            self._set_state(ConnectionStatus.DISCONNECTED, result.error)
        # QUOTA and CHAT_RESET leave the reported state alone
        return False

    def _delay_after(self, result: PollResult) -> float:
        delay = self.interval
        if result.polling_interval:
            delay = max(delay, result.polling_interval)
        if result.outcome == PollOutcome.ERROR:
            delay = max(delay, compute_backoff(self.policy, self._errors))
        return delay
