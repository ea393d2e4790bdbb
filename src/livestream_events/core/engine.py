"""The ingestion pipeline for one session.

connector queue -> normalizer -> correlator -> bus, one pump task per
connector so each platform stays in FIFO order. Create one engine per
running session; nothing here is process-global.
"""

import asyncio
import logging
from collections.abc import Callable

from ..api.base import BaseApiClient
from ..api.twitch import AvatarCache, TwitchHelixClient
from ..api.youtube import YouTubeDataClient
from ..connections.base import BaseConnector
from ..connections.tiktok import TikTokRelayConnector
from ..connections.twitch import TwitchChatConnector
from ..connections.youtube import YouTubeConnector, YouTubePollClient
from ..normalize import TikTokNormalizer, TwitchNormalizer, YouTubeNormalizer
from .assets import AssetCache
from .bus import AggregationBus, Subscription
from .correlation import Correlator
from .credentials import CredentialProvider
from .errors import MalformedPayloadError
from .models import ConnectionState, Event, Platform, RawEvent, Snapshot
from .settings import Settings

logger = logging.getLogger(__name__)

SWEEP_INTERVAL = 1.0  # seconds

# Errors that mean "this one payload is unusable"
MALFORMED_ERRORS = (MalformedPayloadError, KeyError, ValueError, TypeError, AttributeError)


class LiveEventEngine:
    """Runs the connectors enabled in ``settings`` and feeds the bus."""

    def __init__(
        self,
        settings: Settings,
        credentials: CredentialProvider | None = None,
        assets: AssetCache | None = None,
        bus: AggregationBus | None = None,
        correlator: Correlator | None = None,
        persist: Callable[[Settings], None] | None = None,
    ) -> None:
        engine = settings.engine
        self.settings = settings
        self.credentials = credentials or CredentialProvider(settings, persist=persist)
        self.assets = assets or AssetCache()
        self.avatars = AvatarCache()
        self.bus = bus or AggregationBus(engine.event_buffer_size, engine.subscriber_queue_size)
        self.correlator = correlator or Correlator(
            dedup_capacity=engine.dedup_capacity,
            dedup_retention=engine.dedup_retention,
            gift_ttl=engine.gift_ttl,
            stacking_timeout=engine.stacking_timeout,
        )
        self._normalizers = {
            Platform.TWITCH: TwitchNormalizer(self.assets, self.avatars.lookup),
            Platform.YOUTUBE: YouTubeNormalizer(self.assets),
            Platform.TIKTOK: TikTokNormalizer(),
        }
        self._connectors: dict[Platform, BaseConnector] = {}
        self._api_clients: list[BaseApiClient] = []
        self._tasks: list[asyncio.Task] = []
        self._running = False

    @property
    def connectors(self) -> dict[Platform, BaseConnector]:
        return dict(self._connectors)

    @property
    def is_running(self) -> bool:
        return self._running

    def add_connector(self, connector: BaseConnector) -> None:
        """Use ``connector`` for its platform instead of the configured one."""
        if self._running:
            raise RuntimeError("cannot add connectors to a running engine")
        self._connectors[connector.platform] = connector

    def build_connectors(self) -> None:
        """Create connectors for every enabled platform not yet covered."""
        s = self.settings
        debounce = s.engine.state_debounce

        if s.twitch.enabled and Platform.TWITCH not in self._connectors:
            helix = TwitchHelixClient(self.credentials)
            self._api_clients.append(helix)
            self._connectors[Platform.TWITCH] = TwitchChatConnector(
                self.credentials,
                helix,
                assets=self.assets,
                avatars=self.avatars,
                poll_helix=s.twitch.poll_helix,
                state_debounce=debounce,
            )

        if s.youtube.enabled and Platform.YOUTUBE not in self._connectors:
            api = YouTubeDataClient()
            self._api_clients.append(api)
            stream_id = self.credentials.get_channel_config(Platform.YOUTUBE).stream_id
            self._connectors[Platform.YOUTUBE] = YouTubeConnector(
                YouTubePollClient(api, self.credentials, stream_id),
                interval=float(s.youtube.poll_interval),
                state_debounce=debounce,
            )

        if s.tiktok.enabled and Platform.TIKTOK not in self._connectors:
            url = self.credentials.get_channel_config(Platform.TIKTOK).url
            self._connectors[Platform.TIKTOK] = TikTokRelayConnector(url, state_debounce=debounce)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        if not self._connectors:
            self.build_connectors()

        for platform, connector in self._connectors.items():
            self._tasks.append(
                asyncio.create_task(self._pump(connector), name=f"pump-{platform.value}")
            )
            connector.start()
        self._tasks.append(asyncio.create_task(self._sweep_loop(), name="correlation-sweep"))
        logger.info(
            f"Engine started for {', '.join(p.value for p in self._connectors) or 'no platforms'}"
        )

    async def stop(self) -> None:
        """Stop connectors, drain what they produced, release resources. Idempotent."""
        if not self._running:
            return
        self._running = False

        await asyncio.gather(*(c.stop() for c in self._connectors.values()))
        for connector in self._connectors.values():
            self._drain(connector)

        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        for client in self._api_clients:
            await client.close()
        self._api_clients.clear()
        logger.info("Engine stopped")

    async def __aenter__(self) -> "LiveEventEngine":
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.stop()

    def subscribe(self, maxsize: int | None = None) -> Subscription:
        return self.bus.subscribe(maxsize)

    def snapshot(self) -> Snapshot:
        return self.bus.snapshot()

    async def _pump(self, connector: BaseConnector) -> None:
        while True:
            item = await connector.queue.get()
            self.process(item)

    def _drain(self, connector: BaseConnector) -> None:
        while True:
            try:
                item = connector.queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            self.process(item)

    def process(self, item: RawEvent | ConnectionState) -> list[Event]:
        """Push one connector item through the pipeline. Returns what was published."""
        if isinstance(item, ConnectionState):
            self.bus.set_connection_state(item)
            return []

        published = []
        for event in self._normalize(item):
            outbound = self.correlator.ingest(event)
            if outbound is not None:
                self.bus.publish(outbound)
                published.append(outbound)
        return published

    def _normalize(self, raw: RawEvent) -> list[Event]:
        try:
            return self._normalizers[raw.platform].normalize(raw)
        except MALFORMED_ERRORS as e:
            logger.debug(f"Dropping malformed {raw.platform.value} {raw.kind} payload: {e!r}")
            return []

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(SWEEP_INTERVAL)
            for event in self.correlator.sweep():
                self.bus.publish(event)
