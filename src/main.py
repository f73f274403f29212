"""Main application entry point."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Response
from prometheus_fastapi_instrumentator import Instrumentator

from src.config import settings
from src.db.session import engine, AsyncSessionLocal
from src.db.models import Base
from src.api.routes import quarantine, runs
from src.scraper.fetch.http_fetcher import HttpFetcher
from src.scraper.fetch.policy import FetchPolicy
from src.scraper.fetch.rate_limiter import RedisRateLimiter
from src.scraper.fetch.robots import RobotsPolicy
from src.scraper.process.dedupe import RedisRunDedupe
from src.scraper.process.drift import DriftDetector, RedisBlockWindowStore
from src.scraper.process.writer import ScrapeWriter
from src.scraper.queue import RedisJobQueue, ResolverEnqueuer
from src.scraper.registry import build_registry
from src.scraper.scheduler import ScrapeScheduler, setup_scheduler
from src.scraper.worker import ScrapeWorker, WorkerPool

# Configure structured logging
from src.logging_config import setup_logging

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting ammo harvester...")

    # Initialize database
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    registry = build_registry()
    logger.info(f"Adapter registry frozen with {registry.size()} adapters: {registry.list_ids()}")

    writer = ScrapeWriter(AsyncSessionLocal)
    scrape_queue = RedisJobQueue(settings.scrape_queue_name)
    resolver_queue = RedisJobQueue(settings.resolver_queue_name)
    dedupe = RedisRunDedupe()
    block_store = RedisBlockWindowStore()
    rate_limiter = RedisRateLimiter()
    robots = RobotsPolicy()
    fetcher = HttpFetcher()

    policy = FetchPolicy(robots=robots, rate_limiter=rate_limiter, fetcher=fetcher)
    drift = DriftDetector(block_store, disable_source=writer.disable_source_compliance)
    worker = ScrapeWorker(
        registry=registry,
        policy=policy,
        writer=writer,
        dedupe=dedupe,
        drift=drift,
        resolver=ResolverEnqueuer(resolver_queue),
    )

    pool = None
    if settings.worker_enabled:
        await scrape_queue.requeue_stale()
        pool = WorkerPool(worker, scrape_queue)
        await pool.start()

    scheduler = None
    if settings.scheduler_enabled:
        scheduler = setup_scheduler(ScrapeScheduler(registry, writer, scrape_queue, dedupe=dedupe))
        scheduler.start()
        logger.info("Scheduler started")

    app.state.registry = registry

    yield

    # Shutdown
    logger.info("Shutting down...")

    if scheduler:
        scheduler.shutdown()
    if pool:
        await pool.stop()

    await fetcher.close()
    await robots.close()
    for store in (rate_limiter, dedupe, block_store, scrape_queue, resolver_queue):
        await store.close()
    await engine.dispose()

    logger.info("Shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Ammo Harvester",
    description="Scrape ingestion pipeline for ammunition retailer prices",
    version="0.1.0",
    lifespan=lifespan,
)

# Add Prometheus instrumentation
instrumentator = Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=True,
    should_respect_env_var=True,
    should_instrument_requests_inprogress=True,
    excluded_handlers=["/metrics", "/health", "/favicon.ico"],
    inprogress_name="http_requests_inprogress",
    inprogress_labels=True,
)
instrumentator.instrument(app).expose(app, include_in_schema=True, tags=["monitoring"])

# Include API routes
app.include_router(runs.router)
app.include_router(quarantine.router)


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


@app.get("/favicon.ico")
async def favicon():
    """Return empty favicon response to avoid 404 noise."""
    return Response(status_code=204)


if __name__ == "__main__":
    # Run with uvicorn
    uvicorn.run(
        "src.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
