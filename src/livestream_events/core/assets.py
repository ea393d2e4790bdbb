"""Emoji and badge lookup used by the normalizers.

The engine only ever asks the cache; filling it is somebody else's job
(a scraper, the Helix badge endpoint, a disk cache). A miss is recorded and
reported to the backfill callback, and the caller carries on with the
unresolved text.
"""

import logging
import threading
from collections.abc import Callable
from enum import Enum
from typing import Protocol

logger = logging.getLogger(__name__)


class AssetKind(str, Enum):
    EMOJI = "emoji"
    BADGE = "badge"


class AssetResolver(Protocol):
    def resolve(self, kind: AssetKind, key: str) -> str | None:
        """Local reference for an asset, or None on a miss."""
        ...


class AssetCache:
    """In-memory AssetResolver with miss tracking."""

    def __init__(self, on_miss: Callable[[AssetKind, str], None] | None = None) -> None:
        self._assets: dict[tuple[AssetKind, str], str] = {}
        self._misses: set[tuple[AssetKind, str]] = set()
        self._on_miss = on_miss
        self._lock = threading.Lock()

    def resolve(self, kind: AssetKind, key: str) -> str | None:
        if not key:
            return None
        with self._lock:
            ref = self._assets.get((kind, key))
            if ref is not None:
                return ref
            first_miss = (kind, key) not in self._misses
            self._misses.add((kind, key))

        if first_miss and self._on_miss is not None:
            try:
                self._on_miss(kind, key)
            except Exception as e:  # a miss never fails the lookup
                logger.warning(f"Asset backfill request for {kind.value} '{key}' failed: {e}")
        return None

    def populate(self, kind: AssetKind, key: str, ref: str) -> None:
        with self._lock:
            self._assets[(kind, key)] = ref
            self._misses.discard((kind, key))

    def populate_many(self, kind: AssetKind, refs: dict[str, str]) -> None:
        with self._lock:
            for key, ref in refs.items():
                self._assets[(kind, key)] = ref
                self._misses.discard((kind, key))

    def pending_misses(self) -> list[tuple[AssetKind, str]]:
        """Keys asked for but not yet available, for an external backfill pass."""
        with self._lock:
            return sorted(self._misses)

    def __len__(self) -> int:
        return len(self._assets)
