"""Tests for scrape and resolver job queues."""

import json
from uuid import uuid4

import pytest
import redis.asyncio as redis

from src.config import settings
from src.scraper.queue import (
    MemoryJobQueue,
    QueueError,
    RedisJobQueue,
    ResolverEnqueuer,
    decode_scrape_job,
)
from src.scraper.types import JobTrigger, ScrapeUrlJob


async def _redis_available() -> bool:
    try:
        client = await redis.from_url(settings.redis_url, decode_responses=True)
        await client.ping()
        await client.close()
        return True
    except Exception:
        return False


def make_job(**overrides) -> ScrapeUrlJob:
    values = {
        "target_id": "target-1",
        "url": "https://sgammo.com/product/ae9dp",
        "source_id": "source-1",
        "retailer_id": "retailer-1",
        "adapter_id": "sgammo",
        "run_id": "run-1",
    }
    values.update(overrides)
    return ScrapeUrlJob(**values)


def test_job_round_trip():
    job = make_job(trigger=JobTrigger.MANUAL, priority=5)

    decoded = decode_scrape_job(json.dumps(job.to_dict()))

    assert decoded == job


def test_decode_defaults_trigger_and_priority():
    payload = make_job().to_dict()
    del payload["trigger"]
    del payload["priority"]

    decoded = decode_scrape_job(json.dumps(payload))

    assert decoded.trigger == JobTrigger.SCHEDULED
    assert decoded.priority == 0


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        "[1, 2, 3]",
        json.dumps({"target_id": "t", "url": "https://sgammo.com/p"}),
        json.dumps({**make_job().to_dict(), "trigger": "WHENEVER"}),
    ],
)
def test_decode_rejects_malformed_jobs(raw):
    with pytest.raises(QueueError):
        decode_scrape_job(raw)


@pytest.mark.asyncio
async def test_memory_queue_reserve_and_ack():
    queue = MemoryJobQueue("scrape")
    await queue.push_many([make_job(target_id="t1").to_dict(), make_job(target_id="t2").to_dict()])

    assert await queue.length() == 2

    raw = await queue.reserve(timeout=0.1)
    assert decode_scrape_job(raw).target_id == "t1"
    assert await queue.length() == 1
    assert queue.in_flight == [raw]

    await queue.ack(raw)
    assert queue.in_flight == []


@pytest.mark.asyncio
async def test_memory_queue_reserve_times_out():
    queue = MemoryJobQueue("scrape")

    assert await queue.reserve(timeout=0.01) is None


@pytest.mark.asyncio
async def test_pending_run_ids_include_in_flight_jobs():
    queue = MemoryJobQueue("scrape")
    await queue.push(make_job(run_id="run-1").to_dict())
    await queue.push(make_job(run_id="run-2").to_dict())

    await queue.reserve(timeout=0.1)

    assert await queue.pending_run_ids() == {"run-1", "run-2"}


@pytest.mark.asyncio
async def test_resolver_enqueuer_payload():
    queue = MemoryJobQueue("resolver")
    enqueuer = ResolverEnqueuer(queue, resolver_version="2.1.0")

    await enqueuer.enqueue("sp-1", "SKU:AE9DP", "source-1")

    assert queue.pending() == [
        {
            "source_product_id": "sp-1",
            "trigger": "INGEST",
            "resolver_version": "2.1.0",
            "context": {"source_id": "source-1", "identity_key": "SKU:AE9DP"},
        }
    ]


@pytest.mark.asyncio
async def test_redis_queue_requeues_in_flight_jobs():
    if not await _redis_available():
        pytest.skip("Redis not available")

    queue = RedisJobQueue(f"test:scrape:{uuid4().hex}")

    try:
        await queue.push_many([make_job(run_id="run-a").to_dict(), make_job(run_id="run-b").to_dict()])
        raw = await queue.reserve(timeout=1)
        assert decode_scrape_job(raw).run_id == "run-a"
        assert await queue.pending_run_ids() == {"run-a", "run-b"}

        assert await queue.requeue_stale() == 1
        assert await queue.length() == 2

        raw = await queue.reserve(timeout=1)
        await queue.ack(raw)
        assert await queue.length() == 1
    finally:
        client = await queue._get_redis()
        await client.delete(queue.name, queue.processing_name)
        await queue.close()
