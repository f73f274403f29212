"""Job queues for scrape URL jobs and downstream resolver jobs.

Jobs are JSON documents on Redis lists. Consumers move a job onto a
per-queue processing list while they work on it (BLMOVE) and remove it on
ack, so a crashed worker's jobs can be requeued.
"""

import asyncio
import json
import logging
from typing import Any, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from src.config import settings
from src.metrics import record_job_enqueued
from src.scraper.types import ResolverJob, ScrapeUrlJob

logger = logging.getLogger(__name__)


class QueueError(RuntimeError):
    """Raised when a job cannot be pushed or decoded."""

    pass


class JobQueue:
    """Interface shared by the Redis and in-memory queues."""

    name: str

    async def push(self, payload: dict[str, Any]) -> None:
        raise NotImplementedError

    async def push_many(self, payloads: list[dict[str, Any]]) -> int:
        for payload in payloads:
            await self.push(payload)
        return len(payloads)

    async def reserve(self, timeout: Optional[float] = None) -> Optional[str]:
        """Block up to `timeout` seconds for the next raw job; None when idle."""
        raise NotImplementedError

    async def ack(self, raw: str) -> None:
        raise NotImplementedError

    async def length(self) -> int:
        raise NotImplementedError

    async def pending_run_ids(self) -> set[str]:
        """Run ids of jobs still waiting or in flight."""
        raise NotImplementedError

    async def close(self):
        pass


class RedisJobQueue(JobQueue):
    """Redis list queue with a processing list for in-flight jobs."""

    def __init__(self, name: str, redis_url: Optional[str] = None):
        self.name = name
        self.processing_name = f"{name}:processing"
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

    async def push(self, payload: dict[str, Any]) -> None:
        await self.push_many([payload])

    async def push_many(self, payloads: list[dict[str, Any]]) -> int:
        """
        Push jobs in one round trip.

        Raises:
            QueueError: If Redis rejects the push
        """
        if not payloads:
            return 0
        redis_client = await self._get_redis()
        try:
            await redis_client.lpush(self.name, *(json.dumps(p) for p in payloads))
        except RedisError as e:
            raise QueueError(f"Failed to push {len(payloads)} jobs to {self.name}: {e}") from e
        record_job_enqueued(self.name, len(payloads))
        return len(payloads)

    async def reserve(self, timeout: Optional[float] = None) -> Optional[str]:
        redis_client = await self._get_redis()
        timeout = settings.queue_poll_timeout_seconds if timeout is None else timeout
        return await redis_client.blmove(self.name, self.processing_name, timeout, "RIGHT", "LEFT")

    async def ack(self, raw: str) -> None:
        redis_client = await self._get_redis()
        await redis_client.lrem(self.processing_name, 1, raw)

    async def length(self) -> int:
        redis_client = await self._get_redis()
        return int(await redis_client.llen(self.name))

    async def pending_run_ids(self) -> set[str]:
        redis_client = await self._get_redis()
        raw_jobs = [
            *await redis_client.lrange(self.name, 0, -1),
            *await redis_client.lrange(self.processing_name, 0, -1),
        ]
        return _run_ids(raw_jobs)

    async def requeue_stale(self) -> int:
        """Move jobs left on the processing list back to the queue. Call before workers start."""
        redis_client = await self._get_redis()
        moved = 0
        while await redis_client.lmove(self.processing_name, self.name, "RIGHT", "RIGHT"):
            moved += 1
        if moved:
            logger.warning(f"Requeued {moved} in-flight jobs on {self.name}")
        return moved


class MemoryJobQueue(JobQueue):
    """In-process queue for tests and single-process runs."""

    def __init__(self, name: str = "memory"):
        self.name = name
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self.in_flight: list[str] = []

    async def push(self, payload: dict[str, Any]) -> None:
        await self._queue.put(json.dumps(payload))
        record_job_enqueued(self.name)

    async def reserve(self, timeout: Optional[float] = None) -> Optional[str]:
        try:
            raw = await asyncio.wait_for(self._queue.get(), timeout=timeout or 0.1)
        except asyncio.TimeoutError:
            return None
        self.in_flight.append(raw)
        return raw

    async def ack(self, raw: str) -> None:
        if raw in self.in_flight:
            self.in_flight.remove(raw)

    async def length(self) -> int:
        return self._queue.qsize()

    async def pending_run_ids(self) -> set[str]:
        return _run_ids([*self._queue._queue, *self.in_flight])

    def pending(self) -> list[dict[str, Any]]:
        """Decoded jobs still waiting, oldest first."""
        return [json.loads(raw) for raw in list(self._queue._queue)]


def _run_ids(raw_jobs: list[str]) -> set[str]:
    run_ids = set()
    for raw in raw_jobs:
        try:
            run_id = json.loads(raw).get("run_id")
        except (ValueError, AttributeError):
            continue
        if run_id:
            run_ids.add(str(run_id))
    return run_ids


def decode_scrape_job(raw: str) -> ScrapeUrlJob:
    """
    Decode a raw scrape job.

    Raises:
        QueueError: If the payload is not a valid scrape job
    """
    try:
        return ScrapeUrlJob.from_dict(json.loads(raw))
    except (ValueError, KeyError, TypeError) as e:
        raise QueueError(f"Malformed scrape job: {e}") from e


class ResolverEnqueuer:
    """Enqueues one resolver job per successfully written source product."""

    def __init__(self, queue: JobQueue, resolver_version: Optional[str] = None):
        self.queue = queue
        self.resolver_version = resolver_version or settings.resolver_version

    async def enqueue(self, source_product_id: str, identity_key: str, source_id: str) -> None:
        job = ResolverJob(
            source_product_id=source_product_id,
            identity_key=identity_key,
            source_id=source_id,
            resolver_version=self.resolver_version,
        )
        await self.queue.push(job.to_dict())
        logger.debug(f"Enqueued resolver job for source product {source_product_id}")
