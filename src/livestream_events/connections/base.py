"""Connector base classes.

A connector owns one platform session and pushes two kinds of items onto
its ``queue``: ``RawEvent`` payloads and ``ConnectionState`` changes, in
the order they happened. The engine drains the queue; connectors never
wait on it.
"""

import asyncio
import logging
import random
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

import aiohttp

from ..core.errors import AuthenticationError, ConnectorError
from ..core.models import ConnectionState, ConnectionStatus, Platform, RawEvent

logger = logging.getLogger(__name__)

# Exponential backoff constants for reconnection
INITIAL_RECONNECT_DELAY = 1.0  # seconds
MAX_RECONNECT_DELAY = 60.0  # seconds
RECONNECT_BACKOFF_FACTOR = 2.0
RECONNECT_JITTER = 0.1  # 10% jitter to prevent thundering herd

DEFAULT_STATE_DEBOUNCE = 0.5  # seconds


class ReconnectPhase(str, Enum):
    """Where a connector is in its reconnect cycle."""

    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    BACKOFF = "backoff"


@dataclass(frozen=True)
class BackoffPolicy:
    initial_delay: float = INITIAL_RECONNECT_DELAY
    max_delay: float = MAX_RECONNECT_DELAY
    factor: float = RECONNECT_BACKOFF_FACTOR
    jitter: float = RECONNECT_JITTER
    max_attempts: int = 0  # 0 = unlimited


def compute_backoff(
    policy: BackoffPolicy, attempt: int, rand: Callable[[], float] = random.random
) -> float:
    """Delay before reconnect ``attempt`` (1-based), with +/- jitter."""
    exponent = min(max(attempt, 1) - 1, 32)
    delay = min(policy.initial_delay * policy.factor**exponent, policy.max_delay)
    return delay + delay * policy.jitter * (2 * rand() - 1)


class BaseConnector(ABC):
    """Lifecycle, state reporting and output queue shared by all connectors."""

    platform: Platform

    def __init__(self, state_debounce: float = DEFAULT_STATE_DEBOUNCE) -> None:
        self.queue: asyncio.Queue[RawEvent | ConnectionState] = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self._stopping = False
        self._terminal = False
        self._phase = ReconnectPhase.IDLE
        self._state_debounce = state_debounce
        self._pending_state: ConnectionState | None = None
        self._pending_handle: asyncio.TimerHandle | None = None
        self._last_state: ConnectionState | None = None

    @property
    def name(self) -> str:
        return self.__class__.__name__

    @property
    def phase(self) -> ReconnectPhase:
        return self._phase

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def terminal(self) -> bool:
        """True after a failure that needs reconfiguration (bad credentials, ended stream)."""
        return self._terminal

    @property
    def last_state(self) -> ConnectionState | None:
        return self._last_state

    def start(self) -> asyncio.Task:
        """Start the connector task. Returns the running task if already started."""
        if self._task is not None and not self._task.done():
            return self._task
        self._stopping = False
        self._terminal = False
        self._task = asyncio.create_task(self._run(), name=f"{self.name}-run")
        return self._task

    async def stop(self) -> None:
        """Stop the connector. Safe to call repeatedly and from any state."""
        was_active = self._task is not None or not self._stopping
        self._stopping = True
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._close_transport()
        self._phase = ReconnectPhase.IDLE
        if was_active and not self._terminal:
            self._set_state(ConnectionStatus.DISCONNECTED, "stopped", immediate=True)
        else:
            self._cancel_pending_state()

    async def wait(self) -> None:
        """Wait until the connector task ends on its own."""
        if self._task is not None:
            await asyncio.shield(self._task)

    @abstractmethod
    async def _run(self) -> None:
        """Body of the connector task."""

    async def _close_transport(self) -> None:
        """Release sockets and side tasks. Must be idempotent."""

    def _emit(self, kind: str, payload: dict) -> None:
        self.queue.put_nowait(RawEvent(self.platform, kind, payload))

    def _set_state(
        self,
        status: ConnectionStatus,
        reason: str = "",
        terminal: bool = False,
        immediate: bool = False,
    ) -> None:
        """Report a connection state.

        States are held for ``state_debounce`` seconds and a newer state
        replaces a held one, so a quick drop-and-reconnect is reported once.
        Terminal states are reported at once.
        """
        state = ConnectionState(self.platform, status, reason, terminal)
        if immediate or terminal or self._state_debounce <= 0:
            self._cancel_pending_state()
            self._publish_state(state)
            return

        self._cancel_pending_state()
        self._pending_state = state
        loop = asyncio.get_running_loop()
        self._pending_handle = loop.call_later(self._state_debounce, self._flush_state)

    def _flush_state(self) -> None:
        state, self._pending_state = self._pending_state, None
        self._pending_handle = None
        if state is not None:
            self._publish_state(state)

    def _cancel_pending_state(self) -> None:
        if self._pending_handle is not None:
            self._pending_handle.cancel()
        self._pending_handle = None
        self._pending_state = None

    def _publish_state(self, state: ConnectionState) -> None:
        self._last_state = state
        self.queue.put_nowait(state)

    def _give_up(self, reason: str) -> None:
        """Enter the terminal Disconnected state."""
        logger.error(f"{self.name}: {reason}; not retrying until restarted")
        self._terminal = True
        self._phase = ReconnectPhase.IDLE
        self._set_state(ConnectionStatus.DISCONNECTED, reason, terminal=True)


class StreamConnector(BaseConnector):
    """A connector holding one long-lived socket, reconnecting with backoff.

    Subclasses implement ``_connect_and_read`` which opens the socket, calls
    ``_mark_connected`` once the session is usable and then reads until the
    socket goes away (return or raise).
    """

    policy = BackoffPolicy()

    def __init__(self, state_debounce: float = DEFAULT_STATE_DEBOUNCE) -> None:
        super().__init__(state_debounce)
        self._attempt = 0
        self.connect_attempts = 0

    @property
    def attempt(self) -> int:
        """Consecutive failed attempts since the last successful connection."""
        return self._attempt

    @abstractmethod
    async def _connect_and_read(self) -> None:
        ...

    def _mark_connected(self) -> None:
        self._attempt = 0
        self._phase = ReconnectPhase.CONNECTED
        self._set_state(ConnectionStatus.CONNECTED)

    def _next_delay(self) -> float:
        return compute_backoff(self.policy, self._attempt)

    async def _run(self) -> None:
        try:
            while not self._stopping:
                self._phase = ReconnectPhase.CONNECTING
                self.connect_attempts += 1
                self._set_state(ConnectionStatus.CONNECTING)
                reason = "connection closed"
                try:
                    await self._connect_and_read()
                except AuthenticationError as e:
                    self._give_up(str(e) or "authentication failed")
                    return
                except (ConnectorError, aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
                    reason = str(e) or e.__class__.__name__
                    logger.warning(f"{self.name}: connection lost: {reason}")
                except Exception as e:
                    reason = str(e) or e.__class__.__name__
                    logger.exception(f"{self.name}: unexpected error: {reason}")
                finally:
                    await self._close_transport()

                if self._stopping:
                    break

                self._attempt += 1
                if self.policy.max_attempts and self._attempt > self.policy.max_attempts:
                    self._give_up(f"gave up after {self.policy.max_attempts} reconnect attempts")
                    return

                delay = self._next_delay()
                self._phase = ReconnectPhase.BACKOFF
                self._set_state(ConnectionStatus.DISCONNECTED, reason)
                logger.info(f"{self.name}: reconnecting in {delay:.1f}s (attempt {self._attempt})")
                await asyncio.sleep(delay)
        finally:
            self._phase = ReconnectPhase.IDLE
