"""Tests for drift detection."""

import asyncio

import pytest

from src.scraper.process.drift import (
    DriftDetector,
    MemoryBlockWindowStore,
    check_auto_disable,
    check_drift_alert,
    check_zero_price_disable,
    compute_derived_metrics,
    should_mark_broken,
    update_baseline,
)
from src.scraper.types import DerivedMetrics, ScrapeRunMetrics


def make_detector(clock, threshold=3, window_seconds=300):
    disabled: list[str] = []

    async def disable_source(source_id):
        disabled.append(source_id)

    store = MemoryBlockWindowStore(window_seconds=window_seconds, clock=clock)
    return DriftDetector(store, disable_source, threshold=threshold), disabled


def failing_run(**overrides) -> ScrapeRunMetrics:
    values = {"urls_attempted": 20, "urls_failed": 15, "urls_succeeded": 5, "offers_extracted": 5, "offers_valid": 5}
    values.update(overrides)
    return ScrapeRunMetrics(**values)


def healthy_run(**overrides) -> ScrapeRunMetrics:
    values = {"urls_attempted": 20, "urls_failed": 1, "urls_succeeded": 19, "offers_extracted": 19, "offers_valid": 18}
    values.update(overrides)
    return ScrapeRunMetrics(**values)


def test_should_mark_broken():
    assert not should_mark_broken(4)
    assert should_mark_broken(5)
    assert should_mark_broken(2, threshold=2)


@pytest.mark.asyncio
async def test_third_block_flips_source_once(clock):
    detector, disabled = make_detector(clock)

    assert await detector.record_block("source-1") is False
    assert await detector.record_block("source-1") is False
    assert await detector.record_block("source-1") is True
    assert await detector.record_block("source-1") is False

    assert disabled == ["source-1"]


@pytest.mark.asyncio
async def test_concurrent_blocks_flip_once(clock):
    detector, disabled = make_detector(clock)

    results = await asyncio.gather(*(detector.record_block("source-1") for _ in range(6)))

    assert results.count(True) == 1
    assert disabled == ["source-1"]


@pytest.mark.asyncio
async def test_blocks_outside_window_expire(clock):
    detector, disabled = make_detector(clock)

    await detector.record_block("source-1")
    await detector.record_block("source-1")
    clock.advance(301)

    assert await detector.record_block("source-1") is False
    assert disabled == []


@pytest.mark.asyncio
async def test_sources_are_counted_separately(clock):
    detector, disabled = make_detector(clock)

    await detector.record_block("source-1")
    await detector.record_block("source-1")

    assert await detector.record_block("source-2") is False
    assert disabled == []


@pytest.mark.asyncio
async def test_reset_source_allows_a_new_flip(clock):
    detector, disabled = make_detector(clock)
    for _ in range(3):
        await detector.record_block("source-1")

    await detector.reset_source("source-1")

    assert await detector.record_block("source-1") is False
    await detector.record_block("source-1")
    assert await detector.record_block("source-1") is True
    assert disabled == ["source-1", "source-1"]


@pytest.mark.asyncio
async def test_new_block_episode_flips_again_after_window(clock):
    detector, disabled = make_detector(clock)
    for _ in range(3):
        await detector.record_block("source-1")

    clock.advance(2 * 24 * 60 * 60)

    results = [await detector.record_block("source-1") for _ in range(3)]

    assert results == [False, False, True]
    assert disabled == ["source-1", "source-1"]


@pytest.mark.asyncio
async def test_success_after_unblock_clears_window(clock):
    detector, disabled = make_detector(clock)
    for _ in range(3):
        await detector.record_block("source-1")

    assert await detector.record_success("source-1") is True
    assert await detector.record_success("source-1") is False

    results = [await detector.record_block("source-1") for _ in range(3)]

    assert results == [False, False, True]
    assert disabled == ["source-1", "source-1"]


@pytest.mark.asyncio
async def test_success_without_flip_keeps_window(clock):
    detector, disabled = make_detector(clock)
    await detector.record_block("source-1")
    await detector.record_block("source-1")

    assert await detector.record_success("source-1") is False
    assert await detector.record_block("source-1") is True
    assert disabled == ["source-1"]


@pytest.mark.asyncio
async def test_explicit_zero_window_is_not_replaced_by_default(clock):
    detector, disabled = make_detector(clock, window_seconds=0)

    for _ in range(3):
        assert await detector.record_block("source-1") is False

    assert detector.store.window_seconds == 0
    assert disabled == []


def test_explicit_zero_threshold_is_kept():
    async def disable_source(source_id):
        pass

    detector = DriftDetector(MemoryBlockWindowStore(window_seconds=300), disable_source, threshold=0)

    assert detector.threshold == 0


def test_derived_metrics():
    metrics = ScrapeRunMetrics(
        urls_attempted=10,
        urls_succeeded=8,
        urls_failed=2,
        offers_extracted=8,
        offers_valid=7,
        offers_dropped=1,
    )

    derived = compute_derived_metrics(metrics)

    assert derived.failure_rate == 0.2
    assert derived.yield_rate == 0.875
    assert derived.drop_rate == 0.125


def test_derived_metrics_zero_denominators():
    derived = compute_derived_metrics(ScrapeRunMetrics())

    assert derived == DerivedMetrics(failure_rate=0.0, yield_rate=0.0, drop_rate=0.0)


def test_drift_alert_needs_enough_urls():
    assert check_drift_alert(failing_run(urls_attempted=19)) is None


def test_drift_alert_high_failure_rate():
    alert = check_drift_alert(failing_run())

    assert alert.type == "HIGH_FAILURE_RATE"
    assert alert.metrics.failure_rate == 0.75


def test_drift_alert_zero_offers():
    alert = check_drift_alert(healthy_run(urls_failed=0, urls_succeeded=20, offers_extracted=0, offers_valid=0))

    assert alert.type == "ZERO_OFFERS"


def test_drift_alert_healthy_run():
    assert check_drift_alert(healthy_run()) is None


def test_auto_disable_after_consecutive_failed_batches():
    first = check_auto_disable(failing_run(), consecutive_failed_batches=0)
    assert not first.should_disable
    assert first.consecutive_failed_batches == 1

    second = check_auto_disable(failing_run(), consecutive_failed_batches=first.consecutive_failed_batches)
    assert second.should_disable
    assert second.reason == "DRIFT_DETECTED"


def test_auto_disable_resets_on_healthy_batch():
    decision = check_auto_disable(healthy_run(), consecutive_failed_batches=1)

    assert not decision.should_disable
    assert decision.consecutive_failed_batches == 0


def test_auto_disable_ignores_small_runs():
    assert check_auto_disable(failing_run(urls_attempted=5, urls_failed=5), consecutive_failed_batches=1) is None


def test_zero_price_disable_needs_two_runs():
    assert check_zero_price_disable(healthy_run(zero_price_count=1), previous_run_had_zero_price=False) is None

    decision = check_zero_price_disable(healthy_run(zero_price_count=2), previous_run_had_zero_price=True)
    assert decision.should_disable
    assert decision.reason == "DRIFT_DETECTED"

    assert check_zero_price_disable(healthy_run(), previous_run_had_zero_price=True) is None


def test_update_baseline():
    metrics = ScrapeRunMetrics(
        urls_attempted=10, urls_failed=2, offers_extracted=8, offers_valid=7, offers_dropped=1
    )
    recent = [
        DerivedMetrics(failure_rate=0.1, yield_rate=0.9, drop_rate=0.1),
        DerivedMetrics(failure_rate=0.3, yield_rate=0.7, drop_rate=0.3),
    ]

    baseline = update_baseline(metrics, recent)

    assert baseline.median_failure_rate == 0.2
    assert baseline.median_yield_rate == 0.875
    assert baseline.sample_size == 3
    assert baseline.is_established


def test_baseline_not_established_with_few_runs():
    baseline = update_baseline(ScrapeRunMetrics(urls_attempted=4, urls_failed=1), [])

    assert baseline.sample_size == 1
    assert not baseline.is_established
