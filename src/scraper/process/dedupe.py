"""Run-scoped identity-key deduplication shared across workers."""

import asyncio
import logging
from collections import defaultdict
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from src.config import settings

logger = logging.getLogger(__name__)

KEY_PREFIX = "scrape:dedupe:"


class RunDedupe:
    """Interface shared by the Redis and in-memory run dedupe stores."""

    async def check_and_add(self, run_id: str, identity_key: str, owner: Optional[str] = None) -> bool:
        """
        Atomically claim an identity key for a run.

        The claim records its owner (the target that produced the offer), so
        a redelivered job for the same target re-enters the pipeline instead
        of being treated as its own duplicate.

        Args:
            run_id: Scrape run identifier
            identity_key: Offer identity key
            owner: Claiming target id. Without one, every repeat is a duplicate.

        Returns:
            True if another owner already holds the key (duplicate), False if
            this caller holds it
        """
        raise NotImplementedError

    async def count(self, run_id: str) -> int:
        raise NotImplementedError

    async def cleanup(self, run_id: str) -> None:
        raise NotImplementedError


def _is_duplicate(added: bool, holder: Optional[str], owner: Optional[str]) -> bool:
    if added:
        return False
    return owner is None or holder != owner


class RedisRunDedupe(RunDedupe):
    """
    Redis hash per run mapping identity key to the claiming target. HSETNX is
    the atomic check-and-set: exactly one caller gets a 1 back for a given key.
    """

    def __init__(self, redis_url: Optional[str] = None, ttl_seconds: Optional[int] = None):
        self.redis_url = redis_url or settings.redis_url
        if ttl_seconds is None:
            ttl_seconds = settings.run_dedupe_ttl_seconds
        self.ttl_seconds = ttl_seconds
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

    @staticmethod
    def _key(run_id: str) -> str:
        return f"{KEY_PREFIX}{run_id}"

    async def check_and_add(self, run_id: str, identity_key: str, owner: Optional[str] = None) -> bool:
        redis_client = await self._get_redis()
        key = self._key(run_id)
        try:
            async with redis_client.pipeline(transaction=True) as pipe:
                pipe.hsetnx(key, identity_key, owner or "")
                pipe.hget(key, identity_key)
                pipe.expire(key, self.ttl_seconds)
                added, holder, _ = await pipe.execute()
        except RedisError as e:
            # Fail open on store errors
            logger.warning(f"Run dedupe unavailable for run {run_id}, treating {identity_key} as new: {e}")
            return False
        return _is_duplicate(bool(added), holder or None, owner)

    async def count(self, run_id: str) -> int:
        redis_client = await self._get_redis()
        return int(await redis_client.hlen(self._key(run_id)))

    async def cleanup(self, run_id: str) -> None:
        redis_client = await self._get_redis()
        await redis_client.delete(self._key(run_id))
        logger.debug(f"Cleared run dedupe set for run {run_id}")


class MemoryRunDedupe(RunDedupe):
    """In-process run dedupe for tests and single-process runs."""

    def __init__(self):
        self._seen: dict[str, dict[str, Optional[str]]] = defaultdict(dict)
        self._lock = asyncio.Lock()

    async def check_and_add(self, run_id: str, identity_key: str, owner: Optional[str] = None) -> bool:
        async with self._lock:
            seen = self._seen[run_id]
            added = identity_key not in seen
            holder = seen.setdefault(identity_key, owner)
            return _is_duplicate(added, holder, owner)

    async def count(self, run_id: str) -> int:
        return len(self._seen.get(run_id, ()))

    async def cleanup(self, run_id: str) -> None:
        self._seen.pop(run_id, None)
