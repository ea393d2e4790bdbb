"""Shared plumbing for the platform REST clients."""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import TypeVar

import aiohttp

from ..core.errors import TransientError
from ..core.models import Platform

logger = logging.getLogger(__name__)


async def safe_json(resp: aiohttp.ClientResponse) -> dict | list | None:
    """Parse a JSON body, returning None for HTML error pages or garbage."""
    try:
        return await resp.json(content_type=None)
    except (aiohttp.ContentTypeError, json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.warning(f"Failed to parse JSON response: {e}")
        return None


DEFAULT_MAX_RETRIES = 2
DEFAULT_BASE_DELAY = 1.0  # seconds
DEFAULT_MAX_DELAY = 10.0  # seconds

T = TypeVar("T")


class BaseApiClient(ABC):
    """Lazily created aiohttp session plus retry helpers."""

    def __init__(self) -> None:
        self._session: aiohttp.ClientSession | None = None

    @property
    @abstractmethod
    def platform(self) -> Platform:
        ...

    @property
    def name(self) -> str:
        return self.platform.value.capitalize()

    @property
    def session(self) -> aiohttp.ClientSession:
        """Get or create the HTTP session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=30)
            connector = aiohttp.TCPConnector(limit=20)
            self._session = aiohttp.ClientSession(timeout=timeout, connector=connector)
        return self._session

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            try:
                await self._session.close()
                # Let the connector finish closing its transports
                await asyncio.sleep(0.1)
            finally:
                self._session = None

    async def _with_retries(
        self,
        request: Callable[[], Awaitable[T]],
        what: str,
        retries: int = DEFAULT_MAX_RETRIES,
    ) -> T:
        """Await ``request``, retrying transient failures a few times.

        A server-requested Retry-After wins over the exponential delay. The
        final failure propagates to the connector, which owns the longer backoff.
        """
        attempt = 0
        while True:
            try:
                return await request()
            except (aiohttp.ClientError, asyncio.TimeoutError, TransientError) as e:
                if attempt >= retries:
                    logger.warning(f"{self.name} {what}: giving up after {attempt + 1} tries: {e}")
                    raise
                delay = min(DEFAULT_BASE_DELAY * (2**attempt), DEFAULT_MAX_DELAY)
                if isinstance(e, TransientError) and e.retry_after is not None:
                    delay = min(e.retry_after, DEFAULT_MAX_DELAY)
                attempt += 1
                logger.debug(f"{self.name} {what} failed ({e}), retry {attempt} in {delay:.1f}s")
                await asyncio.sleep(delay)


def is_retryable_status(status: int) -> bool:
    """Server errors (5xx) and rate limiting (429) are transient."""
    return status >= 500 or status == 429


def retry_after_seconds(headers, now: datetime | None = None) -> float | None:
    """Seconds requested by a Retry-After header (delta or HTTP date), or None."""
    value = headers.get("Retry-After")
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    now = now or datetime.now(timezone.utc)
    return max((when - now).total_seconds(), 0.0)
