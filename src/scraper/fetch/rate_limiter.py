"""Per-domain rate limiting for scrape fetches.

Each domain gets a sliding window whose length is the minimum spacing between
requests (derived from the manifest's requests-per-second and minimum delay).
At most `max_concurrent` requests may start inside one window. The Redis
limiter shares the window across every worker process; the in-memory limiter
is used by tests and single-process runs.
"""

import asyncio
import logging
import math
import time
from collections import defaultdict
from typing import Awaitable, Callable, Optional
from uuid import uuid4

import redis.asyncio as redis

from src.config import settings
from src.metrics import record_rate_limit_wait
from src.scraper.types import RateLimitConfig

logger = logging.getLogger(__name__)

KEY_PREFIX = "scraper:ratelimit:"

# Atomically prune expired entries, count, and either claim a slot (returns 0)
# or return milliseconds until the oldest entry leaves the window.
ACQUIRE_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)
if count < limit then
    redis.call('ZADD', key, now, ARGV[4])
    redis.call('EXPIRE', key, ARGV[5])
    return 0
end

local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
local retry = tonumber(oldest[2]) + window - now
if retry < 1 then
    retry = 1
end
return retry
"""


def default_rate_limit() -> RateLimitConfig:
    return RateLimitConfig(
        requests_per_second=settings.rate_limit_default_rps,
        min_delay_ms=settings.rate_limit_default_min_delay_ms,
        max_concurrent=settings.rate_limit_default_max_concurrent,
    )


def clamp_rate_limit(config: Optional[RateLimitConfig]) -> RateLimitConfig:
    """
    Apply the configured hard caps to a manifest's rate limit.

    Manifests may be stricter than the defaults, never looser than the caps.
    A missing config gets the defaults.
    """
    if config is None:
        config = default_rate_limit()

    rps = config.requests_per_second
    if rps is None or rps <= 0:
        rps = settings.rate_limit_default_rps

    return RateLimitConfig(
        requests_per_second=min(rps, settings.rate_limit_max_rps),
        min_delay_ms=max(int(config.min_delay_ms or 0), settings.rate_limit_min_delay_floor_ms),
        max_concurrent=max(1, min(int(config.max_concurrent or 1), settings.rate_limit_max_concurrent_cap)),
    )


def window_ms(config: RateLimitConfig) -> int:
    """Minimum spacing between requests to one domain, in milliseconds."""
    return max(math.ceil(1000 / config.requests_per_second), config.min_delay_ms)


class RateLimiter:
    """Interface shared by the Redis and in-memory limiters."""

    async def try_acquire(self, domain: str, config: RateLimitConfig) -> int:
        """
        Try to claim a request slot.

        Returns:
            0 if the slot was claimed, else milliseconds to wait before retrying
        """
        raise NotImplementedError

    async def _sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)

    async def acquire(self, domain: str, config: Optional[RateLimitConfig] = None) -> float:
        """
        Block until a request slot for `domain` is available.

        Args:
            domain: Registrable domain being fetched
            config: Manifest rate limit (clamped before use)

        Returns:
            Seconds spent waiting
        """
        effective = clamp_rate_limit(config)
        waited = 0.0

        while True:
            retry_ms = await self.try_acquire(domain, effective)
            if retry_ms <= 0:
                break
            delay = retry_ms / 1000.0
            logger.debug(f"Rate limit for {domain}: waiting {delay:.2f}s")
            await self._sleep(delay)
            waited += delay

        if waited > 0:
            record_rate_limit_wait(domain, waited)
        return waited


class RedisRateLimiter(RateLimiter):
    """Sliding-window limiter stored in a Redis sorted set per domain."""

    def __init__(self, redis_url: Optional[str] = None):
        self.redis_url = redis_url or settings.redis_url
        self._redis: Optional[redis.Redis] = None

    async def _get_redis(self) -> redis.Redis:
        """Get or create Redis connection."""
        if self._redis is None:
            self._redis = await redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._redis

    async def close(self):
        """Close Redis connection."""
        if self._redis:
            await self._redis.close()
            self._redis = None

    async def try_acquire(self, domain: str, config: RateLimitConfig) -> int:
        redis_client = await self._get_redis()
        now_ms = int(time.time() * 1000)
        result = await redis_client.eval(
            ACQUIRE_SCRIPT,
            1,
            f"{KEY_PREFIX}{domain}",
            now_ms,
            window_ms(config),
            config.max_concurrent,
            f"{now_ms}-{uuid4().hex}",
            settings.rate_limit_key_ttl_seconds,
        )
        return int(result)


class MemoryRateLimiter(RateLimiter):
    """In-process sliding-window limiter with an injectable clock."""

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self._clock = clock
        self._sleep_fn = sleep or asyncio.sleep
        self._windows: dict[str, list[float]] = defaultdict(list)
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def _sleep(self, seconds: float) -> None:
        await self._sleep_fn(seconds)

    async def try_acquire(self, domain: str, config: RateLimitConfig) -> int:
        async with self._locks[domain]:
            now_ms = self._clock() * 1000
            window = window_ms(config)
            entries = [t for t in self._windows[domain] if t > now_ms - window]
            self._windows[domain] = entries

            if len(entries) < config.max_concurrent:
                entries.append(now_ms)
                return 0

            return max(1, math.ceil(min(entries) + window - now_ms))
