"""Qt integration: run an engine on a worker thread and re-emit as signals.

Signals are emitted from the worker thread; Qt queues them onto the
receiver's thread, so GUI slots can be connected directly.
"""

import asyncio
import logging

from PySide6.QtCore import QThread, Signal

from .core.bus import Subscription
from .core.engine import LiveEventEngine
from .core.models import Snapshot

logger = logging.getLogger(__name__)


class EngineWorker(QThread):
    """Worker thread that owns the engine's event loop."""

    event_received = Signal(object)  # Event
    connection_changed = Signal(object)  # ConnectionState
    error = Signal(str)

    def __init__(self, engine: LiveEventEngine, parent=None):
        super().__init__(parent)
        self.engine = engine
        self._loop: asyncio.AbstractEventLoop | None = None
        self._stop_event: asyncio.Event | None = None
        self._should_stop = False

    def run(self):
        """Run the engine in a new event loop until stop() is called."""
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)
        try:
            self._loop.run_until_complete(self._serve())
        except Exception as e:
            if not self._should_stop:
                logger.error(f"Engine worker error: {e}")
                self.error.emit(str(e))
        finally:
            self._loop.close()
            self._loop = None

    async def _serve(self) -> None:
        self._stop_event = asyncio.Event()
        if self._should_stop:
            return
        with self.engine.subscribe() as sub:
            try:
                async with self.engine:
                    forwarders = [
                        asyncio.create_task(self._forward(sub.events, self.event_received)),
                        asyncio.create_task(self._forward(sub.states, self.connection_changed)),
                    ]
                    try:
                        await self._stop_event.wait()
                    finally:
                        for task in forwarders:
                            task.cancel()
                        await asyncio.gather(*forwarders, return_exceptions=True)
            finally:
                # Deliver what stopping the engine produced ("stopped" states)
                self._flush(sub)

    @staticmethod
    async def _forward(queue: asyncio.Queue, signal) -> None:
        while True:
            signal.emit(await queue.get())

    def _flush(self, sub: Subscription) -> None:
        while not sub.states.empty():
            self.connection_changed.emit(sub.states.get_nowait())
        while not sub.events.empty():
            self.event_received.emit(sub.events.get_nowait())

    def stop(self):
        """Request the worker to stop. Returns immediately; use wait() to join."""
        self._should_stop = True
        loop, stop_event = self._loop, self._stop_event
        if loop is not None and stop_event is not None and loop.is_running():
            loop.call_soon_threadsafe(stop_event.set)

    def snapshot(self) -> Snapshot:
        """Safe to call from the GUI thread."""
        return self.engine.snapshot()
