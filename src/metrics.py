"""Prometheus metrics for the scrape harvester."""

import time

from prometheus_client import Counter, Gauge, Histogram, Info

# Application info
app_info = Info("ammo_harvester", "Ammo harvester application info")
app_info.info({"version": "0.1.0", "name": "ammo-harvester"})

# Fetch metrics
scrape_fetches_total = Counter(
    "scrape_fetches_total",
    "Total number of scrape fetch attempts",
    ["adapter", "status"],
)

scrape_fetch_duration_seconds = Histogram(
    "scrape_fetch_duration_seconds",
    "Time spent fetching retailer pages",
    ["adapter"],
    buckets=[0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0],
)

rate_limit_wait_seconds = Histogram(
    "scrape_rate_limit_wait_seconds",
    "Time spent waiting for a per-domain rate limit slot",
    ["domain"],
    buckets=[0.0, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0],
)

policy_refusals_total = Counter(
    "scrape_policy_refusals_total",
    "Fetches refused before network I/O",
    ["adapter", "reason"],
)

# Pipeline outcome metrics
extract_failures_total = Counter(
    "scrape_extract_failures_total",
    "Extraction failures by reason",
    ["adapter", "reason"],
)

offers_dropped_total = Counter(
    "scrape_offers_dropped_total",
    "Offers dropped by the validation gate",
    ["adapter", "reason"],
)

offers_quarantined_total = Counter(
    "scrape_offers_quarantined_total",
    "Offers quarantined for review",
    ["adapter", "reason"],
)

zero_price_quarantines_total = Counter(
    "scrape_zero_price_quarantines_total",
    "Offers quarantined because a zero price was extracted",
    ["adapter"],
)

dedupe_hits_total = Counter(
    "scrape_dedupe_hits_total",
    "Offers skipped as duplicates within a run",
    ["adapter"],
)

writes_total = Counter(
    "scrape_writes_total",
    "Price writes by outcome",
    ["adapter", "status"],
)

# Health metrics
targets_marked_broken_total = Counter(
    "scrape_targets_marked_broken_total",
    "Targets transitioned to BROKEN",
    ["adapter"],
)

sources_auto_disabled_total = Counter(
    "scrape_sources_auto_disabled_total",
    "Sources flipped to non-compliant after repeated blocking",
    ["source"],
)

adapters_auto_disabled_total = Counter(
    "scrape_adapters_auto_disabled_total",
    "Adapters disabled by run-level drift detection",
    ["adapter"],
)

# Run metrics
runs_completed_total = Counter(
    "scrape_runs_completed_total",
    "Finalized scrape runs",
    ["adapter", "status"],
)

run_failure_rate = Gauge(
    "scrape_run_failure_rate",
    "Failure rate of the last finalized run",
    ["adapter"],
)

run_yield_rate = Gauge(
    "scrape_run_yield_rate",
    "Yield rate of the last finalized run",
    ["adapter"],
)

# Scheduler metrics
scheduler_runs_total = Counter(
    "scheduler_runs_total",
    "Total number of scheduler runs",
    ["job_type", "status"],
)

scheduler_last_run_timestamp = Gauge(
    "scheduler_last_run_timestamp",
    "Timestamp of last scheduler run",
    ["job_type"],
)

jobs_enqueued_total = Counter(
    "scrape_jobs_enqueued_total",
    "Jobs pushed onto a queue",
    ["queue"],
)


def record_fetch(adapter: str, status: str, duration: float):
    """Record a fetch attempt and its duration."""
    scrape_fetches_total.labels(adapter=adapter, status=status).inc()
    scrape_fetch_duration_seconds.labels(adapter=adapter).observe(duration)


def record_rate_limit_wait(domain: str, seconds: float):
    """Record time spent waiting for a rate limit slot."""
    rate_limit_wait_seconds.labels(domain=domain).observe(seconds)


def record_policy_refusal(adapter: str, reason: str):
    """Record a fetch refused by robots, SSRF or compliance guards."""
    policy_refusals_total.labels(adapter=adapter, reason=reason).inc()


def record_extract_failure(adapter: str, reason: str):
    """Record an extraction failure."""
    extract_failures_total.labels(adapter=adapter, reason=reason).inc()


def record_drop(adapter: str, reason: str):
    """Record a dropped offer."""
    offers_dropped_total.labels(adapter=adapter, reason=reason).inc()


def record_quarantine(adapter: str, reason: str):
    """Record a quarantined offer."""
    offers_quarantined_total.labels(adapter=adapter, reason=reason).inc()
    if reason == "ZERO_PRICE_EXTRACTED":
        zero_price_quarantines_total.labels(adapter=adapter).inc()


def record_dedupe_hit(adapter: str):
    """Record a duplicate identity key within a run."""
    dedupe_hits_total.labels(adapter=adapter).inc()


def record_write(adapter: str, success: bool):
    """Record a writer outcome."""
    status = "success" if success else "error"
    writes_total.labels(adapter=adapter, status=status).inc()


def record_target_broken(adapter: str):
    """Record a target transition to BROKEN."""
    targets_marked_broken_total.labels(adapter=adapter).inc()


def record_source_auto_disabled(source_id: str):
    """Record a source compliance flip."""
    sources_auto_disabled_total.labels(source=source_id).inc()


def record_adapter_auto_disabled(adapter: str):
    """Record an adapter disabled by drift detection."""
    adapters_auto_disabled_total.labels(adapter=adapter).inc()


def record_run_completed(adapter: str, status: str, failure_rate: float, yield_rate: float):
    """Record a finalized run."""
    runs_completed_total.labels(adapter=adapter, status=status).inc()
    run_failure_rate.labels(adapter=adapter).set(failure_rate)
    run_yield_rate.labels(adapter=adapter).set(yield_rate)


def record_job_enqueued(queue: str, count: int = 1):
    """Record jobs pushed onto a queue."""
    jobs_enqueued_total.labels(queue=queue).inc(count)


def record_scheduler_run(job_type: str, success: bool):
    """Record a scheduler job run."""
    status = "success" if success else "error"
    scheduler_runs_total.labels(job_type=job_type, status=status).inc()
    scheduler_last_run_timestamp.labels(job_type=job_type).set(time.time())
