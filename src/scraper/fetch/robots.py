"""Robots.txt policy with per-domain caching.

Fails closed: a robots.txt that cannot be fetched (other than a 404) disallows
the whole domain until the cache entry expires.
"""

import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional
from urllib.parse import urlsplit
from urllib.robotparser import RobotFileParser

import httpx

from src.config import settings

logger = logging.getLogger(__name__)


class RobotsFetchError(RuntimeError):
    """Raised when robots.txt could not be retrieved after all attempts."""

    pass


@dataclass
class RobotsEntry:
    """Cached robots.txt verdict for one origin."""

    parser: RobotFileParser
    fetched_at: float
    status: str  # "parsed", "allow_all" (404) or "disallow_all" (fetch failure)


class RobotsPolicy:
    """
    Robots directive lookup for the scrape fetch layer.

    Entries are cached per origin for `ttl_seconds`. Concurrent lookups for
    the same origin share one fetch.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        user_agent_token: Optional[str] = None,
        user_agent: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
        attempts: Optional[int] = None,
        retry_delay_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client = client
        self.user_agent_token = user_agent_token or settings.robots_user_agent_token
        self.user_agent = user_agent or settings.scraper_user_agent
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.robots_cache_ttl_seconds
        self.attempts = max(1, attempts or settings.robots_fetch_attempts)
        self.retry_delay_seconds = (
            retry_delay_seconds if retry_delay_seconds is not None else settings.robots_retry_delay_seconds
        )
        self._clock = clock
        self._sleep = sleep
        self._cache: dict[str, RobotsEntry] = {}
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @staticmethod
    def _origin(url: str) -> str:
        parts = urlsplit(url)
        return f"{parts.scheme.lower() or 'https'}://{parts.netloc.lower()}"

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None:
            self.client = httpx.AsyncClient(
                timeout=settings.fetch_timeout_seconds,
                follow_redirects=True,
            )
        return self.client

    async def close(self):
        """Close the HTTP client."""
        if self.client:
            await self.client.aclose()
            self.client = None

    async def _download(self, robots_url: str) -> tuple[int, str]:
        """
        Download robots.txt, retrying transport errors and 5xx responses.

        Returns:
            Tuple of (status code, body text)

        Raises:
            RobotsFetchError: If every attempt failed
        """
        client = await self._get_client()
        last_error: Optional[str] = None

        for attempt in range(1, self.attempts + 1):
            try:
                response = await client.get(robots_url, headers={"User-Agent": self.user_agent})
            except httpx.HTTPError as e:
                last_error = f"{type(e).__name__}: {e}"
            else:
                if response.status_code < 500:
                    return response.status_code, response.text
                last_error = f"HTTP {response.status_code}"

            if attempt < self.attempts:
                logger.debug(
                    f"robots.txt fetch failed for {robots_url} ({last_error}), "
                    f"retrying (attempt {attempt}/{self.attempts})"
                )
                await self._sleep(self.retry_delay_seconds * attempt)

        raise RobotsFetchError(f"{robots_url}: {last_error}")

    async def _load(self, origin: str) -> RobotsEntry:
        robots_url = f"{origin}/robots.txt"
        parser = RobotFileParser(robots_url)

        try:
            status_code, body = await self._download(robots_url)
        except RobotsFetchError as e:
            logger.warning(f"robots.txt unavailable, disallowing {origin}: {e}")
            parser.disallow_all = True
            return RobotsEntry(parser=parser, fetched_at=self._clock(), status="disallow_all")

        if status_code == 200:
            parser.parse(body.splitlines())
            return RobotsEntry(parser=parser, fetched_at=self._clock(), status="parsed")

        if status_code == 404:
            parser.allow_all = True
            return RobotsEntry(parser=parser, fetched_at=self._clock(), status="allow_all")

        logger.warning(f"robots.txt returned HTTP {status_code}, disallowing {origin}")
        parser.disallow_all = True
        return RobotsEntry(parser=parser, fetched_at=self._clock(), status="disallow_all")

    async def get_entry(self, url: str) -> RobotsEntry:
        """Cached robots entry for the URL's origin, fetching when missing or expired."""
        origin = self._origin(url)
        entry = self._cache.get(origin)
        if entry is not None and self._clock() - entry.fetched_at < self.ttl_seconds:
            return entry

        async with self._locks[origin]:
            entry = self._cache.get(origin)
            if entry is None or self._clock() - entry.fetched_at >= self.ttl_seconds:
                entry = await self._load(origin)
                self._cache[origin] = entry
                logger.debug(f"Cached robots.txt for {origin}: {entry.status}")
        return entry

    async def is_allowed(self, url: str) -> bool:
        """
        Check if our user agent may fetch a URL.

        Args:
            url: Absolute URL

        Returns:
            True if allowed, False if disallowed or robots.txt is unavailable
        """
        entry = await self.get_entry(url)
        return entry.parser.can_fetch(self.user_agent_token, url)

    async def get_crawl_delay(self, url: str) -> float:
        """Crawl delay in seconds for the URL's origin, clamped to configured bounds."""
        entry = await self.get_entry(url)
        delay = entry.parser.crawl_delay(self.user_agent_token)
        if delay is None:
            delay = settings.crawl_delay_default_seconds
        return min(
            max(float(delay), settings.crawl_delay_min_seconds),
            settings.crawl_delay_max_seconds,
        )

    def clear_cache(self) -> None:
        """Clear the robots.txt cache."""
        self._cache.clear()
