"""Drift detection: target health, per-source block windows and run-level checks."""

import asyncio
import logging
import statistics
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional
from uuid import uuid4

import redis.asyncio as redis

from src.config import settings
from src.metrics import record_source_auto_disabled
from src.scraper.types import DerivedMetrics, ScrapeRunMetrics

logger = logging.getLogger(__name__)

WINDOW_KEY_PREFIX = "scraper:blocks:"
FLIPPED_KEY_PREFIX = "scraper:blocks:flipped:"

# Prune entries older than the window, add this block, return the count
RECORD_BLOCK_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
redis.call('ZADD', key, now, ARGV[3])
redis.call('PEXPIRE', key, window)
return redis.call('ZCARD', key)
"""


# =============================================================================
# Target level
# =============================================================================

def should_mark_broken(consecutive_failures: int, threshold: Optional[int] = None) -> bool:
    """Whether a target with this many consecutive failures should become BROKEN."""
    if threshold is None:
        threshold = settings.url_failures_for_broken
    return consecutive_failures >= threshold


# =============================================================================
# Source level: sliding block window
# =============================================================================

class BlockWindowStore:
    """Interface shared by the Redis and in-memory block window stores."""

    async def record_block(self, source_id: str) -> int:
        """Record one block-class failure; return the count inside the window."""
        raise NotImplementedError

    async def mark_flipped(self, source_id: str) -> bool:
        """Set the flip marker for the current window; True only for the first caller."""
        raise NotImplementedError

    async def clear_flipped(self, source_id: str) -> bool:
        """Drop the flip marker and window; True if a marker was set."""
        raise NotImplementedError

    async def reset(self, source_id: str) -> None:
        raise NotImplementedError


class RedisBlockWindowStore(BlockWindowStore):
    """
    Sorted set of block timestamps per source plus a SET NX flip marker.

    The marker lives as long as the window, so a later block episode can
    flip the source again.
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        window_seconds: Optional[int] = None,
    ):
        self.redis_url = redis_url or settings.redis_url
        if window_seconds is None:
            window_seconds = settings.source_block_window_seconds
        self.window_seconds = window_seconds
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

    async def record_block(self, source_id: str) -> int:
        redis_client = await self._get_redis()
        now_ms = int(time.time() * 1000)
        count = await redis_client.eval(
            RECORD_BLOCK_SCRIPT,
            1,
            f"{WINDOW_KEY_PREFIX}{source_id}",
            now_ms,
            self.window_seconds * 1000,
            f"{now_ms}-{uuid4().hex}",
        )
        return int(count)

    async def mark_flipped(self, source_id: str) -> bool:
        redis_client = await self._get_redis()
        created = await redis_client.set(
            f"{FLIPPED_KEY_PREFIX}{source_id}",
            str(time.time()),
            nx=True,
            ex=max(self.window_seconds, 1),
        )
        return bool(created)

    async def clear_flipped(self, source_id: str) -> bool:
        redis_client = await self._get_redis()
        removed = await redis_client.delete(f"{FLIPPED_KEY_PREFIX}{source_id}")
        if not removed:
            return False
        await redis_client.delete(f"{WINDOW_KEY_PREFIX}{source_id}")
        return True

    async def reset(self, source_id: str) -> None:
        redis_client = await self._get_redis()
        await redis_client.delete(
            f"{WINDOW_KEY_PREFIX}{source_id}",
            f"{FLIPPED_KEY_PREFIX}{source_id}",
        )


class MemoryBlockWindowStore(BlockWindowStore):
    """In-process block window with an injectable clock."""

    def __init__(
        self,
        window_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if window_seconds is None:
            window_seconds = settings.source_block_window_seconds
        self.window_seconds = window_seconds
        self._clock = clock
        self._blocks: dict[str, list[float]] = defaultdict(list)
        self._flipped: dict[str, float] = {}
        self._lock = asyncio.Lock()

    async def record_block(self, source_id: str) -> int:
        async with self._lock:
            now = self._clock()
            blocks = [t for t in self._blocks[source_id] if t > now - self.window_seconds]
            blocks.append(now)
            self._blocks[source_id] = blocks
            return len(blocks)

    async def mark_flipped(self, source_id: str) -> bool:
        async with self._lock:
            now = self._clock()
            flipped_at = self._flipped.get(source_id)
            if flipped_at is not None and flipped_at > now - self.window_seconds:
                return False
            self._flipped[source_id] = now
            return True

    async def clear_flipped(self, source_id: str) -> bool:
        async with self._lock:
            if self._flipped.pop(source_id, None) is None:
                return False
            self._blocks.pop(source_id, None)
            return True

    async def reset(self, source_id: str) -> None:
        async with self._lock:
            self._blocks.pop(source_id, None)
            self._flipped.pop(source_id, None)


class DriftDetector:
    """
    Per-source persistent-block handling.

    Reaching `threshold` block-class failures inside the window flips the
    source's robots_compliant flag to false. The flip is performed and logged
    once per window; later blocks in the same window are no-ops. A successful
    fetch after an operator re-enables the source clears the window.
    """

    def __init__(
        self,
        store: BlockWindowStore,
        disable_source: Callable[[str], Awaitable[None]],
        threshold: Optional[int] = None,
    ):
        self.store = store
        self.disable_source = disable_source
        if threshold is None:
            threshold = settings.source_block_threshold
        self.threshold = threshold

    async def record_block(self, source_id: str) -> bool:
        """
        Record a block-class failure for a source.

        Args:
            source_id: Source whose fetch was blocked

        Returns:
            True if this call flipped the source's compliance flag
        """
        count = await self.store.record_block(source_id)
        if count < self.threshold:
            logger.debug(f"Source {source_id}: {count}/{self.threshold} blocks in window")
            return False

        if not await self.store.mark_flipped(source_id):
            return False

        await self.disable_source(source_id)
        record_source_auto_disabled(source_id)
        logger.warning(
            f"Source {source_id} marked non-compliant after {count} blocks "
            f"within {settings.source_block_window_seconds}s"
        )
        return True

    async def record_success(self, source_id: str) -> bool:
        """
        Record an unblocked fetch for a source.

        Returns:
            True if the source had been flipped and its window was cleared
        """
        if not await self.store.clear_flipped(source_id):
            return False
        logger.info(f"Source {source_id} fetched successfully after being unblocked, block window cleared")
        return True

    async def reset_source(self, source_id: str) -> None:
        """Clear the window and flip marker after an operator unblocks a source."""
        await self.store.reset(source_id)
        logger.info(f"Block window reset for source {source_id}")


# =============================================================================
# Run level
# =============================================================================

@dataclass(frozen=True)
class DriftAlert:
    type: str  # HIGH_FAILURE_RATE or ZERO_OFFERS
    message: str
    metrics: DerivedMetrics


@dataclass(frozen=True)
class AutoDisableDecision:
    should_disable: bool
    consecutive_failed_batches: int
    message: str
    reason: Optional[str] = None


@dataclass(frozen=True)
class DriftBaseline:
    median_failure_rate: float
    median_yield_rate: float
    sample_size: int
    is_established: bool


def compute_derived_metrics(metrics: ScrapeRunMetrics) -> DerivedMetrics:
    """
    Rates computed directly from run counters.

    failure = failed / attempted, yield = valid / extracted,
    drop = dropped / extracted. A zero denominator gives 0.
    """
    attempted = metrics.urls_attempted
    extracted = metrics.offers_extracted
    return DerivedMetrics(
        failure_rate=metrics.urls_failed / attempted if attempted > 0 else 0.0,
        yield_rate=metrics.offers_valid / extracted if extracted > 0 else 0.0,
        drop_rate=metrics.offers_dropped / extracted if extracted > 0 else 0.0,
    )


def check_drift_alert(metrics: ScrapeRunMetrics) -> Optional[DriftAlert]:
    """Alert for runs large enough to judge; None for small or healthy runs."""
    if metrics.urls_attempted < settings.drift_min_urls:
        return None

    derived = compute_derived_metrics(metrics)
    threshold = settings.drift_failure_rate_threshold

    if derived.failure_rate > threshold:
        return DriftAlert(
            type="HIGH_FAILURE_RATE",
            message=f"Failure rate {derived.failure_rate:.1%} exceeds threshold {threshold:.0%}",
            metrics=derived,
        )

    if metrics.offers_extracted == 0 and metrics.urls_attempted > 0:
        return DriftAlert(type="ZERO_OFFERS", message="No offers extracted from any URL", metrics=derived)

    return None


def check_auto_disable(
    metrics: ScrapeRunMetrics,
    consecutive_failed_batches: int,
) -> Optional[AutoDisableDecision]:
    """
    Track consecutive failed batches for an adapter.

    Returns:
        Decision with the new consecutive count, or None for small runs
    """
    if metrics.urls_attempted < settings.drift_min_urls:
        return None

    derived = compute_derived_metrics(metrics)
    required = settings.drift_consecutive_failed_batches

    if derived.failure_rate > settings.drift_failure_rate_threshold:
        count = consecutive_failed_batches + 1
        if count >= required:
            return AutoDisableDecision(
                should_disable=True,
                consecutive_failed_batches=count,
                message=f"{count} consecutive batches over failure threshold",
                reason="DRIFT_DETECTED",
            )
        return AutoDisableDecision(
            should_disable=False,
            consecutive_failed_batches=count,
            message=f"Batch failed ({count}/{required} consecutive)",
        )

    return AutoDisableDecision(
        should_disable=False,
        consecutive_failed_batches=0,
        message="Batch succeeded, resetting consecutive failure count",
    )


def check_zero_price_disable(
    metrics: ScrapeRunMetrics,
    previous_run_had_zero_price: bool,
) -> Optional[AutoDisableDecision]:
    """Disable after two consecutive large runs that extracted zero prices."""
    if metrics.urls_attempted < settings.drift_min_urls:
        return None

    if metrics.zero_price_count > 0 and previous_run_had_zero_price:
        return AutoDisableDecision(
            should_disable=True,
            consecutive_failed_batches=2,
            message="Zero price detected in 2 consecutive runs",
            reason="DRIFT_DETECTED",
        )
    return None


def update_baseline(
    metrics: ScrapeRunMetrics,
    recent_runs: list[DerivedMetrics],
) -> DriftBaseline:
    """Rolling median failure/yield rates over recent successful runs plus this one."""
    all_metrics = [*recent_runs, compute_derived_metrics(metrics)]
    sample_size = len(all_metrics)
    return DriftBaseline(
        median_failure_rate=statistics.median(m.failure_rate for m in all_metrics),
        median_yield_rate=statistics.median(m.yield_rate for m in all_metrics),
        sample_size=sample_size,
        is_established=sample_size >= settings.drift_baseline_min_runs,
    )
