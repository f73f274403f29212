"""Scrape URL worker.

Job flow: fetch (policy guarded) -> extract -> normalize/validate ->
run dedupe -> write -> enqueue resolver job. Every exit path updates the
run counters and the target's health tracking.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from src.config import settings
from src.logging_config import LoggerAdapter, get_logger
from src.metrics import record_dedupe_hit, record_drop, record_extract_failure, record_quarantine
from src.scraper.adapters.base import BaseAdapter
from src.scraper.fetch.policy import FetchPolicy, FetchRequest
from src.scraper.process.dedupe import RunDedupe
from src.scraper.process.drift import DriftDetector, should_mark_broken
from src.scraper.process.validator import counts_toward_drift
from src.scraper.process.writer import ScrapeWriter, TargetNotFoundError, TargetSnapshot
from src.scraper.queue import JobQueue, QueueError, ResolverEnqueuer, decode_scrape_job
from src.scraper.registry import AdapterNotFoundError, AdapterRegistry
from src.scraper.types import (
    AdapterContext,
    ExtractFailureReason,
    FetchResult,
    NormalizeStatus,
    QuarantineReason,
    ScrapeUrlJob,
)

logger = logging.getLogger(__name__)


class JobOutcome(str, Enum):
    """Terminal state reached by one scrape job."""

    FETCH_FAILED = "fetch_failed"
    OOS_NO_PRICE = "oos_no_price"
    EXTRACT_FAILED = "extract_failed"
    DROPPED = "dropped"
    QUARANTINED = "quarantined"
    DUPLICATE = "duplicate"
    WRITE_FAILED = "write_failed"
    WRITTEN = "written"


@dataclass
class JobReport:
    outcome: JobOutcome
    reason: Optional[str] = None
    source_product_id: Optional[str] = None
    price_id: Optional[str] = None


class ScrapeWorker:
    """
    Processes scrape URL jobs.

    The shared stores (rate limiter inside the policy, run dedupe, block
    window inside the drift detector) are passed in so tests can substitute
    in-memory versions.
    """

    def __init__(
        self,
        registry: AdapterRegistry,
        policy: FetchPolicy,
        writer: ScrapeWriter,
        dedupe: RunDedupe,
        drift: DriftDetector,
        resolver: ResolverEnqueuer,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.registry = registry
        self.policy = policy
        self.writer = writer
        self.dedupe = dedupe
        self.drift = drift
        self.resolver = resolver
        self.clock = clock

    async def process_job(self, job: ScrapeUrlJob) -> JobReport:
        """
        Run one job through the pipeline.

        Args:
            job: Decoded scrape URL job

        Returns:
            JobReport with the terminal outcome

        Raises:
            AdapterNotFoundError: If the job's adapter is not registered
            TargetNotFoundError: If the job's target does not exist
        """
        log = get_logger(
            __name__,
            run_id=job.run_id,
            target_id=job.target_id,
            adapter_id=job.adapter_id,
            source_id=job.source_id,
        )
        started = self.clock()

        adapter = self.registry.get(job.adapter_id)
        target = await self.writer.load_target(job.target_id)

        log.info(f"Processing scrape job ({job.trigger.value}) for {job.url}")
        await self.writer.increment_run_metrics(job.run_id, urls_attempted=1)

        # Fetch
        fetch_result = await self.policy.fetch(FetchRequest(
            url=job.url,
            manifest=adapter.manifest,
            source_scrape_enabled=target.source_scrape_enabled,
            source_robots_compliant=target.source_robots_compliant,
            target_robots_path_blocked=target.robots_path_blocked,
        ))
        if not fetch_result.ok:
            return await self._handle_fetch_failure(job, target, adapter, fetch_result, log)

        # Extract
        ctx = AdapterContext(
            source_id=job.source_id,
            retailer_id=job.retailer_id,
            now=self.clock(),
            target_id=job.target_id,
            run_id=job.run_id,
            logger=log,
        )
        extract_result = adapter.extract(fetch_result.content or "", job.url, ctx)

        if not extract_result.ok and extract_result.reason == ExtractFailureReason.BLOCKED_PAGE:
            # Challenge pages served with a 2xx status are block-class
            await self.drift.record_block(job.source_id)
        else:
            await self.drift.record_success(job.source_id)

        if not extract_result.ok:
            reason = extract_result.reason
            record_extract_failure(adapter.id, reason.value)
            log.info(f"Extraction failed: {reason.value} {extract_result.details or ''}".rstrip())

            if reason == ExtractFailureReason.OOS_NO_PRICE:
                await self.writer.increment_run_metrics(
                    job.run_id, urls_succeeded=1, oos_no_price_count=1
                )
                await self.writer.update_target_tracking(job.target_id, True)
                return JobReport(JobOutcome.OOS_NO_PRICE, reason=reason.value)

            await self.writer.increment_run_metrics(job.run_id, urls_failed=1)
            await self._track_failure(target, adapter, log)
            return JobReport(JobOutcome.EXTRACT_FAILED, reason=reason.value)

        await self.writer.increment_run_metrics(job.run_id, offers_extracted=1)

        # Normalize and validate
        result = adapter.normalize(extract_result.offer, ctx)

        if result.status == NormalizeStatus.DROP:
            reason = result.drop_reason
            record_drop(adapter.id, reason.value)
            log.info(f"Offer dropped: {reason.value}")
            await self.writer.increment_run_metrics(job.run_id, offers_dropped=1)
            if counts_toward_drift(reason):
                await self._track_failure(target, adapter, log)
            else:
                await self.writer.update_target_tracking(job.target_id, True)
            return JobReport(JobOutcome.DROPPED, reason=reason.value)

        offer = result.offer

        if result.status == NormalizeStatus.QUARANTINE:
            reasons = result.quarantine_reasons
            for reason in reasons:
                record_quarantine(adapter.id, reason.value)
            log.warning(f"Offer quarantined: {[r.value for r in reasons]}")

            deltas = {"offers_quarantined": 1}
            if QuarantineReason.ZERO_PRICE_EXTRACTED in reasons:
                deltas["zero_price_count"] = 1
            await self.writer.increment_run_metrics(job.run_id, **deltas)
            await self._track_failure(target, adapter, log)
            await self.writer.upsert_quarantine(offer, reasons, run_id=job.run_id, target_id=job.target_id)
            return JobReport(JobOutcome.QUARANTINED, reason=",".join(r.value for r in reasons))

        # Run dedupe
        if await self.dedupe.check_and_add(job.run_id, offer.identity_key, owner=job.target_id):
            record_dedupe_hit(adapter.id)
            log.info(f"Duplicate identity key within run: {offer.identity_key}")
            await self.writer.increment_run_metrics(job.run_id, offers_dropped=1)
            await self.writer.update_target_tracking(job.target_id, True)
            return JobReport(JobOutcome.DUPLICATE, reason="DUPLICATE_WITHIN_RUN")

        # Write
        write_result = await self.writer.write_offer(offer, target, job.run_id)
        if not write_result.success:
            log.error(f"Failed to write offer: {write_result.error}")
            await self.writer.increment_run_metrics(job.run_id, urls_failed=1)
            await self._track_failure(target, adapter, log)
            return JobReport(JobOutcome.WRITE_FAILED, reason=write_result.error)

        await self.writer.increment_run_metrics(job.run_id, urls_succeeded=1, offers_valid=1)
        await self.writer.update_target_tracking(
            job.target_id, True, source_product_id=write_result.source_product_id
        )
        await self.resolver.enqueue(write_result.source_product_id, offer.identity_key, job.source_id)

        elapsed_ms = (self.clock() - started).total_seconds() * 1000
        log.info(
            f"Scrape completed: source_product={write_result.source_product_id} "
            f"price={write_result.price_id} ({elapsed_ms:.0f}ms)"
        )
        return JobReport(
            JobOutcome.WRITTEN,
            source_product_id=write_result.source_product_id,
            price_id=write_result.price_id,
        )

    async def _handle_fetch_failure(
        self,
        job: ScrapeUrlJob,
        target: TargetSnapshot,
        adapter: BaseAdapter,
        fetch_result: FetchResult,
        log: LoggerAdapter,
    ) -> JobReport:
        log.warning(
            f"Fetch failed: {fetch_result.status.value} "
            f"{fetch_result.error or fetch_result.status_code or ''}".rstrip()
        )
        await self._track_failure(target, adapter, log)
        if fetch_result.is_block_class:
            await self.drift.record_block(job.source_id)
        await self.writer.increment_run_metrics(job.run_id, urls_failed=1)
        return JobReport(JobOutcome.FETCH_FAILED, reason=fetch_result.status.value)

    async def _track_failure(self, target: TargetSnapshot, adapter: BaseAdapter, log: LoggerAdapter) -> None:
        failures = await self.writer.update_target_tracking(target.id, False)
        if should_mark_broken(failures):
            if await self.writer.mark_target_broken(target.id, adapter.id):
                log.warning(f"Target marked BROKEN after {failures} consecutive failures")


class WorkerPool:
    """Concurrent consumers pulling scrape jobs off a queue."""

    def __init__(
        self,
        worker: ScrapeWorker,
        queue: JobQueue,
        concurrency: Optional[int] = None,
    ):
        self.worker = worker
        self.queue = queue
        self.concurrency = concurrency or settings.worker_concurrency
        self.error_backoff_seconds = settings.worker_error_backoff_seconds
        self._stop = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    async def start(self):
        self._stop.clear()
        self._tasks = [
            asyncio.create_task(self._consume(i), name=f"scrape-worker-{i}")
            for i in range(self.concurrency)
        ]
        logger.info(f"Started {self.concurrency} scrape workers on {self.queue.name}")

    async def stop(self):
        self._stop.set()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Scrape workers stopped")

    async def _consume(self, index: int):
        while not self._stop.is_set():
            try:
                raw = await self.queue.reserve()
                if raw is None:
                    continue
                await self.handle_raw(raw)
            except Exception as e:
                logger.error(f"Scrape worker {index} error: {e}", exc_info=True)
                await asyncio.sleep(self.error_backoff_seconds)

    async def handle_raw(self, raw: str) -> Optional[JobReport]:
        """
        Process one raw job and acknowledge it.

        Jobs that can never succeed (malformed payload, unknown adapter or
        target) are acknowledged and logged as failed. Unexpected errors leave
        the job on the processing list for redelivery.
        """
        try:
            job = decode_scrape_job(raw)
        except QueueError as e:
            logger.error(f"Discarding job: {e}")
            await self.queue.ack(raw)
            return None

        try:
            report = await self.worker.process_job(job)
        except (AdapterNotFoundError, TargetNotFoundError) as e:
            logger.error(f"Job failed for target {job.target_id}: {e}")
            await self.queue.ack(raw)
            return None
        except Exception as e:
            logger.error(f"Job crashed for target {job.target_id}, left for redelivery: {e}", exc_info=True)
            return None

        await self.queue.ack(raw)
        logger.debug(f"Job completed for target {job.target_id}: {report.outcome.value}")
        return report
