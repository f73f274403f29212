"""Scrape scheduler: finalize stale runs, then enqueue due targets."""

import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select

from src.config import settings
from src.db.models import ScrapeAdapterStatus, ScrapeRun, ScrapeTarget, Source
from src.metrics import record_scheduler_run
from src.scraper.process.dedupe import RunDedupe
from src.scraper.process.writer import ScrapeWriter
from src.scraper.queue import JobQueue
from src.scraper.registry import AdapterRegistry
from src.scraper.types import JobTrigger, RunStatus, ScrapeUrlJob, TargetStatus

logger = logging.getLogger(__name__)


def is_target_due(
    last_scraped_at: Optional[datetime],
    interval_hours: Optional[float],
    now: datetime,
) -> bool:
    """Never-scraped targets are always due; others once their interval has elapsed."""
    if last_scraped_at is None:
        return True
    hours = interval_hours if interval_hours and interval_hours > 0 else settings.scrape_interval_hours
    return last_scraped_at <= now - timedelta(hours=hours)


class ScrapeScheduler:
    """
    Periodic producer of scrape jobs.

    A tick finalizes runs left RUNNING past the stale threshold, selects due
    targets, opens one run per source and enqueues one job per target.
    """

    def __init__(
        self,
        registry: AdapterRegistry,
        writer: ScrapeWriter,
        queue: JobQueue,
        dedupe: Optional[RunDedupe] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.registry = registry
        self.writer = writer
        self.queue = queue
        self.dedupe = dedupe
        self.clock = clock

    async def tick(self) -> int:
        """
        Run one scheduling pass.

        Returns:
            Number of jobs enqueued
        """
        try:
            await self.finalize_stale_runs()
            enqueued = await self.enqueue_due_targets()
        except Exception as e:
            logger.error(f"Scheduler tick failed: {e}", exc_info=True)
            record_scheduler_run("scrape_tick", False)
            raise

        record_scheduler_run("scrape_tick", True)
        return enqueued

    async def finalize_stale_runs(self) -> list[str]:
        """Finalize RUNNING runs older than the stale threshold with no queued jobs left."""
        cutoff = self.clock() - timedelta(minutes=settings.stale_run_minutes)
        async with self.writer.session_factory() as db:
            result = await db.execute(
                select(ScrapeRun.id).where(
                    ScrapeRun.status == RunStatus.RUNNING.value,
                    ScrapeRun.started_at < cutoff,
                )
            )
            stale_ids = list(result.scalars().all())

        if not stale_ids:
            return []

        pending = await self.queue.pending_run_ids()
        finalized = []
        for run_id in stale_ids:
            if run_id in pending:
                logger.debug(f"Skipping finalization of run {run_id}: jobs still pending")
                continue
            if await self.writer.finalize_run(run_id):
                finalized.append(run_id)
                if self.dedupe:
                    await self.dedupe.cleanup(run_id)

        if finalized:
            logger.info(f"Finalized {len(finalized)} stale runs")
        return finalized

    async def select_due_targets(self, limit: Optional[int] = None) -> list[tuple[ScrapeTarget, Source]]:
        """
        Targets eligible for scraping, highest priority and least recently scraped first.

        Eligible: target enabled, ACTIVE and not path-blocked; source scrape
        enabled and robots compliant; adapter registered and not disabled;
        scrape interval elapsed.
        """
        limit = limit or settings.scheduler_max_urls_per_tick
        now = self.clock()

        async with self.writer.session_factory() as db:
            result = await db.execute(
                select(ScrapeTarget, Source)
                .join(Source, Source.id == ScrapeTarget.source_id)
                .outerjoin(ScrapeAdapterStatus, ScrapeAdapterStatus.adapter_id == ScrapeTarget.adapter_id)
                .where(
                    ScrapeTarget.enabled.is_(True),
                    ScrapeTarget.status == TargetStatus.ACTIVE.value,
                    ScrapeTarget.robots_path_blocked.is_(False),
                    Source.scrape_enabled.is_(True),
                    Source.robots_compliant.is_(True),
                    (ScrapeAdapterStatus.enabled.is_(None)) | (ScrapeAdapterStatus.enabled.is_(True)),
                )
                .order_by(ScrapeTarget.priority.desc(), ScrapeTarget.last_scraped_at.asc().nulls_first())
                .limit(limit * 3)
            )
            rows = result.all()

        due = []
        for target, source in rows:
            if len(due) >= limit:
                break
            if not self.registry.has(target.adapter_id):
                logger.warning(f"Skipping target {target.id}: adapter {target.adapter_id} not registered")
                continue
            if is_target_due(target.last_scraped_at, target.scrape_interval_hours, now):
                due.append((target, source))
        return due

    async def enqueue_due_targets(self) -> int:
        due = await self.select_due_targets()
        if not due:
            logger.debug("No due scrape targets")
            return 0

        by_source: dict[str, list[tuple[ScrapeTarget, Source]]] = defaultdict(list)
        for target, source in due:
            by_source[source.id].append((target, source))

        async with self.writer.session_factory() as db:
            result = await db.execute(
                select(ScrapeRun.source_id).where(
                    ScrapeRun.status == RunStatus.RUNNING.value,
                    ScrapeRun.source_id.in_(list(by_source)),
                )
            )
            running_sources = set(result.scalars().all())

        enqueued = 0
        for source_id, items in by_source.items():
            if source_id in running_sources:
                logger.info(f"Source {source_id} already has a running scrape, skipping")
                continue
            enqueued += await self._start_run(source_id, items)

        logger.info(f"Enqueued {enqueued} scrape jobs across {len(by_source)} sources")
        return enqueued

    async def _start_run(self, source_id: str, items: list[tuple[ScrapeTarget, Source]]) -> int:
        source = items[0][1]
        adapter_id = source.adapter_id or items[0][0].adapter_id
        adapter = self.registry.get(adapter_id)

        run_id = await self.writer.create_run(
            source_id=source_id,
            adapter_id=adapter.id,
            adapter_version=adapter.version,
            retailer_id=source.retailer_id,
            trigger=JobTrigger.SCHEDULED,
        )
        jobs = [
            ScrapeUrlJob(
                target_id=target.id,
                url=target.url,
                source_id=source_id,
                retailer_id=source.retailer_id,
                adapter_id=target.adapter_id,
                run_id=run_id,
                trigger=JobTrigger.SCHEDULED,
                priority=target.priority,
            ).to_dict()
            for target, _ in items
        ]
        await self.queue.push_many(jobs)
        logger.info(f"Started run {run_id} for source {source_id} with {len(jobs)} targets")
        return len(jobs)


def setup_scheduler(scrape_scheduler: ScrapeScheduler) -> AsyncIOScheduler:
    """
    Setup and configure APScheduler.

    Returns:
        Configured scheduler instance
    """
    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        scrape_scheduler.tick,
        IntervalTrigger(minutes=max(1, settings.scheduler_tick_minutes)),
        id="scrape_tick",
        name="Enqueue due scrape targets",
        max_instances=1,  # Prevent overlapping ticks
        coalesce=True,
        misfire_grace_time=600,
        replace_existing=True,
    )
    logger.info(f"Scheduler configured with scrape tick every {settings.scheduler_tick_minutes} minutes")
    return scheduler
