"""Tests for per-domain rate limiting."""

import asyncio
from uuid import uuid4

import pytest
import redis.asyncio as redis

from src.config import settings
from src.scraper.fetch.rate_limiter import (
    KEY_PREFIX,
    MemoryRateLimiter,
    RedisRateLimiter,
    clamp_rate_limit,
    window_ms,
)
from src.scraper.types import RateLimitConfig

POLITE = RateLimitConfig(requests_per_second=0.5, min_delay_ms=2000, max_concurrent=1)


async def _redis_available() -> bool:
    try:
        client = await redis.from_url(settings.redis_url, decode_responses=True)
        await client.ping()
        await client.close()
        return True
    except Exception:
        return False


def test_clamp_applies_hard_caps():
    greedy = RateLimitConfig(requests_per_second=10, min_delay_ms=100, max_concurrent=5)

    clamped = clamp_rate_limit(greedy)

    assert clamped.requests_per_second == 2.0
    assert clamped.min_delay_ms == 500
    assert clamped.max_concurrent == 1
    assert window_ms(clamped) == 500


def test_clamp_keeps_stricter_manifest():
    strict = RateLimitConfig(requests_per_second=0.1, min_delay_ms=15000, max_concurrent=1)

    assert clamp_rate_limit(strict) == strict
    assert window_ms(strict) == 15000


def test_clamp_defaults():
    assert clamp_rate_limit(None) == POLITE

    zero_rps = clamp_rate_limit(RateLimitConfig(requests_per_second=0, min_delay_ms=0, max_concurrent=0))
    assert zero_rps.requests_per_second == 0.5
    assert zero_rps.max_concurrent == 1


def test_window_uses_slower_of_rate_and_delay():
    assert window_ms(RateLimitConfig(requests_per_second=0.25, min_delay_ms=1000, max_concurrent=1)) == 4000
    assert window_ms(POLITE) == 2000


@pytest.mark.asyncio
async def test_second_request_waits_for_window(clock):
    limiter = MemoryRateLimiter(clock=clock, sleep=clock.sleep)

    assert await limiter.acquire("sgammo.com", POLITE) == 0
    assert await limiter.acquire("sgammo.com", POLITE) == 2.0
    assert clock.now == 1002.0


@pytest.mark.asyncio
async def test_try_acquire_reports_wait(clock):
    limiter = MemoryRateLimiter(clock=clock, sleep=clock.sleep)

    assert await limiter.try_acquire("sgammo.com", POLITE) == 0
    clock.advance(0.5)
    assert await limiter.try_acquire("sgammo.com", POLITE) == 1500


@pytest.mark.asyncio
async def test_domains_are_independent(clock):
    limiter = MemoryRateLimiter(clock=clock, sleep=clock.sleep)

    await limiter.acquire("sgammo.com", POLITE)

    assert await limiter.acquire("midwayusa.com", POLITE) == 0


@pytest.mark.asyncio
async def test_concurrent_acquires_are_spaced(clock):
    """Three concurrent requests to one domain start at least one window apart."""
    limiter = MemoryRateLimiter(clock=clock, sleep=clock.sleep)
    started: list[float] = []

    async def request():
        await limiter.acquire("sgammo.com", POLITE)
        started.append(clock.now)

    await asyncio.gather(request(), request(), request())

    started.sort()
    assert started[0] == 1000.0
    assert all(later - earlier >= 2.0 for earlier, later in zip(started, started[1:]))


@pytest.mark.asyncio
async def test_redis_limiter_enforces_window():
    if not await _redis_available():
        pytest.skip("Redis not available")

    domain = f"test-{uuid4().hex}.example"
    limiter = RedisRateLimiter()

    try:
        assert await limiter.try_acquire(domain, POLITE) == 0
        retry_ms = await limiter.try_acquire(domain, POLITE)
        assert 0 < retry_ms <= 2000
    finally:
        client = await limiter._get_redis()
        await client.delete(f"{KEY_PREFIX}{domain}")
        await limiter.close()
