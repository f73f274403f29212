"""Persistence for the scrape pipeline.

The writer is the only component that mutates persistent state: source
products, identifiers, prices, quarantine records, target health and run
counters. `write_offer` never raises; persistence errors come back as a
failed WriteResult so the worker can still update health and metrics.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.config import settings
from src.db.models import (
    Price,
    QuarantinedRecord,
    ScrapeAdapterStatus,
    ScrapeRun,
    ScrapeTarget,
    Source,
    SourceProduct,
    SourceProductIdentifier,
    new_id,
)
from src.metrics import record_adapter_auto_disabled, record_run_completed, record_target_broken, record_write
from src.scraper.process.drift import (
    DriftBaseline,
    check_auto_disable,
    check_drift_alert,
    check_zero_price_disable,
    compute_derived_metrics,
    update_baseline,
)
from src.scraper.types import (
    Availability,
    DerivedMetrics,
    JobTrigger,
    NormalizedScrapeOffer,
    QuarantineReason,
    RunStatus,
    ScrapeRunMetrics,
    TargetLastStatus,
    TargetStatus,
    WriteResult,
)

logger = logging.getLogger(__name__)

COUNTER_FIELDS = (
    "urls_attempted",
    "urls_succeeded",
    "urls_failed",
    "offers_extracted",
    "offers_valid",
    "offers_dropped",
    "offers_quarantined",
    "zero_price_count",
    "oos_no_price_count",
)

BASELINE_LOOKBACK = timedelta(days=7)
BASELINE_MAX_RUNS = 20


class TargetNotFoundError(LookupError):
    """Raised when a job references a scrape target that does not exist."""

    pass


@dataclass
class TargetSnapshot:
    """Target and source fields the worker needs for one job."""

    id: str
    source_id: str
    adapter_id: str
    url: str
    source_product_id: Optional[str]
    consecutive_failures: int
    robots_path_blocked: bool
    status: str
    source_scrape_enabled: bool
    source_robots_compliant: bool


@dataclass
class FinalizedRun:
    run_id: str
    status: RunStatus
    derived: DerivedMetrics
    metrics: ScrapeRunMetrics


def cents_to_decimal(cents: int) -> Decimal:
    return Decimal(int(cents)) / Decimal(100)


def availability_to_in_stock(availability: Availability) -> bool:
    """
    Map availability to the Price row's in-stock flag.

    Raises:
        ValueError: For UNKNOWN, which validation drops before any write
    """
    if availability == Availability.IN_STOCK:
        return True
    if availability in (Availability.OUT_OF_STOCK, Availability.BACKORDER):
        return False
    raise ValueError("UNKNOWN availability must be dropped before price write")


def normalize_upc(upc: Optional[str]) -> Optional[str]:
    if not upc:
        return None
    digits = "".join(ch for ch in upc if ch.isdigit())
    return digits or None


def metrics_from_run(run: ScrapeRun) -> ScrapeRunMetrics:
    return ScrapeRunMetrics(**{name: getattr(run, name) or 0 for name in COUNTER_FIELDS})


def decide_run_status(metrics: ScrapeRunMetrics, derived: DerivedMetrics) -> RunStatus:
    """QUARANTINED when quarantines dominate, FAILED over the failure threshold, else SUCCESS."""
    if metrics.offers_quarantined > 0 and metrics.offers_quarantined >= metrics.offers_valid:
        return RunStatus.QUARANTINED
    if derived.failure_rate > settings.drift_failure_rate_threshold:
        return RunStatus.FAILED
    return RunStatus.SUCCESS


def _insert_for(db: AsyncSession):
    """Dialect-specific INSERT supporting ON CONFLICT clauses."""
    if db.get_bind().dialect.name == "postgresql":
        return postgresql.insert
    return sqlite.insert


class ScrapeWriter:
    """Database writes for scrape jobs and runs."""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        if session_factory is None:
            from src.db.session import AsyncSessionLocal

            session_factory = AsyncSessionLocal
        self.session_factory = session_factory

    # =========================================================================
    # Offer writes
    # =========================================================================

    async def write_offer(
        self,
        offer: NormalizedScrapeOffer,
        target: TargetSnapshot,
        run_id: str,
    ) -> WriteResult:
        """
        Persist a validated offer: resolve the source product, upsert
        identifiers and append one Price row.

        Args:
            offer: Accepted normalized offer
            target: Target the offer was scraped from
            run_id: Scrape run providing provenance

        Returns:
            WriteResult; never raises
        """
        try:
            async with self.session_factory() as db:
                source_product_id = await self._resolve_source_product(db, offer, target, run_id)
                await self._upsert_identifiers(db, source_product_id, offer)
                price_id = await self._write_price(db, source_product_id, offer, run_id)
                await db.commit()
        except (SQLAlchemyError, ValueError, TypeError) as e:
            logger.error(f"Failed to write offer for target {target.id}: {e}")
            record_write(target.adapter_id, False)
            return WriteResult(success=False, error=f"{type(e).__name__}: {e}")
        except Exception as e:
            logger.error(f"Unexpected error writing offer for target {target.id}: {e}", exc_info=True)
            record_write(target.adapter_id, False)
            return WriteResult(success=False, error=f"{type(e).__name__}: {e}")

        record_write(target.adapter_id, True)
        return WriteResult(success=True, source_product_id=source_product_id, price_id=price_id)

    async def _resolve_source_product(
        self,
        db: AsyncSession,
        offer: NormalizedScrapeOffer,
        target: TargetSnapshot,
        run_id: str,
    ) -> str:
        """An existing target link is authoritative; otherwise upsert by identity key."""
        if target.source_product_id:
            existing = await db.get(SourceProduct, target.source_product_id)
            if existing is None:
                logger.warning(
                    f"Target {target.id} links missing source product {target.source_product_id}, "
                    f"falling back to identity key upsert"
                )
            else:
                if existing.identity_key != offer.identity_key:
                    logger.warning(
                        f"Identity key mismatch on linked source product {existing.id}: "
                        f"stored={existing.identity_key} offer={offer.identity_key}"
                    )
                existing.last_seen_at = offer.observed_at
                return existing.id

        return await self._upsert_source_product(db, offer, run_id)

    async def _upsert_source_product(
        self,
        db: AsyncSession,
        offer: NormalizedScrapeOffer,
        run_id: str,
    ) -> str:
        now = datetime.utcnow()
        mutable = {
            "title": offer.title,
            "url": offer.url,
            "brand": offer.brand,
            "upc": normalize_upc(offer.upc),
            "image_url": offer.image_url,
            "caliber": offer.caliber,
            "grain_weight": offer.grain_weight,
            "round_count": offer.round_count,
            "case_material": offer.case_material,
            "bullet_type": offer.bullet_type,
            "load_type": offer.load_type,
            "shell_length": offer.shell_length,
            "last_seen_at": offer.observed_at,
            "updated_at": now,
        }

        insert = _insert_for(db)
        stmt = insert(SourceProduct).values(
            id=new_id(),
            source_id=offer.source_id,
            identity_key=offer.identity_key,
            description=offer.description,
            created_by_run_id=run_id,
            created_at=now,
            **mutable,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["source_id", "identity_key"],
            set_=mutable,
        )
        await db.execute(stmt)

        result = await db.execute(
            select(SourceProduct.id).where(
                SourceProduct.source_id == offer.source_id,
                SourceProduct.identity_key == offer.identity_key,
            )
        )
        return result.scalar_one()

    async def _upsert_identifiers(
        self,
        db: AsyncSession,
        source_product_id: str,
        offer: NormalizedScrapeOffer,
    ) -> None:
        """UPC (digits only, canonical), SKU (retailer namespace, canonical without UPC), product id."""
        rows: list[dict[str, Any]] = []
        upc = normalize_upc(offer.upc)

        if upc:
            rows.append({
                "id_type": "UPC",
                "id_value": offer.upc.strip(),
                "namespace": "",
                "normalized_value": upc,
                "is_canonical": True,
            })
        if offer.retailer_sku:
            rows.append({
                "id_type": "SKU",
                "id_value": offer.retailer_sku,
                "namespace": offer.retailer_id,
                "normalized_value": offer.retailer_sku.strip().upper(),
                "is_canonical": upc is None,
            })
        if offer.retailer_product_id:
            rows.append({
                "id_type": "RETAILER_PRODUCT_ID",
                "id_value": offer.retailer_product_id,
                "namespace": offer.retailer_id,
                "normalized_value": offer.retailer_product_id.strip(),
                "is_canonical": False,
            })

        insert = _insert_for(db)
        for row in rows:
            stmt = insert(SourceProductIdentifier).values(
                id=new_id(),
                source_product_id=source_product_id,
                created_at=datetime.utcnow(),
                **row,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["source_product_id", "id_type", "namespace", "id_value"],
                set_={"normalized_value": row["normalized_value"], "is_canonical": row["is_canonical"]},
            )
            await db.execute(stmt)

    async def _write_price(
        self,
        db: AsyncSession,
        source_product_id: str,
        offer: NormalizedScrapeOffer,
        run_id: str,
    ) -> str:
        price = Price(
            id=new_id(),
            source_product_id=source_product_id,
            source_id=offer.source_id,
            retailer_id=offer.retailer_id,
            price=cents_to_decimal(offer.price_cents),
            currency=offer.currency,
            in_stock=availability_to_in_stock(offer.availability),
            availability=offer.availability.value,
            shipping=cents_to_decimal(offer.shipping_cents) if offer.shipping_cents is not None else None,
            cost_per_round_cents=offer.cost_per_round_cents,
            url=offer.url,
            observed_at=offer.observed_at,
            ingestion_run_type="SCRAPE",
            ingestion_run_id=run_id,
            adapter_version=offer.adapter_version,
        )
        db.add(price)
        await db.flush()
        return price.id

    # =========================================================================
    # Quarantine
    # =========================================================================

    async def upsert_quarantine(
        self,
        offer: NormalizedScrapeOffer,
        reasons: list[QuarantineReason],
        run_id: Optional[str] = None,
        target_id: Optional[str] = None,
    ) -> str:
        """
        Insert or update the quarantine record for (source_id, identity key).

        Repeated calls update the same row with the latest payload and reasons.

        Returns:
            Quarantine record id
        """
        now = datetime.utcnow()
        payload = offer.snapshot()
        reason_values = [reason.value for reason in reasons]

        async with self.session_factory() as db:
            insert = _insert_for(db)
            stmt = insert(QuarantinedRecord).values(
                id=new_id(),
                source_id=offer.source_id,
                match_key=offer.identity_key,
                feed_type="SCRAPE",
                run_id=run_id,
                target_id=target_id,
                reasons=reason_values,
                payload=payload,
                status="QUARANTINED",
                created_at=now,
                updated_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["source_id", "match_key"],
                set_={
                    "reasons": reason_values,
                    "payload": payload,
                    "run_id": run_id,
                    "target_id": target_id,
                    "status": "QUARANTINED",
                    "updated_at": now,
                },
            )
            await db.execute(stmt)
            result = await db.execute(
                select(QuarantinedRecord.id).where(
                    QuarantinedRecord.source_id == offer.source_id,
                    QuarantinedRecord.match_key == offer.identity_key,
                )
            )
            record_id = result.scalar_one()
            await db.commit()

        logger.info(f"Quarantined {offer.identity_key} for source {offer.source_id}: {reason_values}")
        return record_id

    # =========================================================================
    # Targets and sources
    # =========================================================================

    async def load_target(self, target_id: str) -> TargetSnapshot:
        """
        Load a target with its source's compliance flags.

        Raises:
            TargetNotFoundError: If no target has this id
        """
        async with self.session_factory() as db:
            result = await db.execute(
                select(ScrapeTarget, Source)
                .join(Source, Source.id == ScrapeTarget.source_id)
                .where(ScrapeTarget.id == target_id)
            )
            row = result.first()

        if row is None:
            raise TargetNotFoundError(f"Scrape target not found: {target_id}")

        target, source = row
        return TargetSnapshot(
            id=target.id,
            source_id=target.source_id,
            adapter_id=target.adapter_id,
            url=target.url,
            source_product_id=target.source_product_id,
            consecutive_failures=target.consecutive_failures,
            robots_path_blocked=target.robots_path_blocked,
            status=target.status,
            source_scrape_enabled=source.scrape_enabled,
            source_robots_compliant=source.robots_compliant,
        )

    async def update_target_tracking(
        self,
        target_id: str,
        success: bool,
        source_product_id: Optional[str] = None,
    ) -> int:
        """
        Record the outcome of a scrape attempt on its target.

        Success resets consecutive failures; failure increments them atomically.

        Returns:
            Consecutive failure count after the update
        """
        values: dict[str, Any] = {"last_scraped_at": datetime.utcnow()}
        if success:
            values["last_status"] = TargetLastStatus.SUCCESS.value
            values["consecutive_failures"] = 0
            if source_product_id:
                values["source_product_id"] = source_product_id
        else:
            values["last_status"] = TargetLastStatus.FAILED.value
            values["consecutive_failures"] = ScrapeTarget.consecutive_failures + 1

        async with self.session_factory() as db:
            await db.execute(update(ScrapeTarget).where(ScrapeTarget.id == target_id).values(**values))
            result = await db.execute(
                select(ScrapeTarget.consecutive_failures).where(ScrapeTarget.id == target_id)
            )
            failures = result.scalar_one_or_none() or 0
            await db.commit()
        return failures

    async def mark_target_broken(self, target_id: str, adapter_id: str = "unknown") -> bool:
        """
        Transition a target ACTIVE -> BROKEN. Idempotent.

        Returns:
            True if this call changed the status
        """
        async with self.session_factory() as db:
            result = await db.execute(
                update(ScrapeTarget)
                .where(ScrapeTarget.id == target_id, ScrapeTarget.status != TargetStatus.BROKEN.value)
                .values(status=TargetStatus.BROKEN.value)
            )
            await db.commit()

        changed = result.rowcount > 0
        if changed:
            record_target_broken(adapter_id)
            logger.warning(f"Marked target {target_id} BROKEN")
        return changed

    async def set_source_robots_compliant(self, source_id: str, compliant: bool = False) -> bool:
        """
        Set a source's compliance flag. Setting it to its current value is a no-op.

        Returns:
            True if the flag changed
        """
        async with self.session_factory() as db:
            result = await db.execute(
                update(Source)
                .where(Source.id == source_id, Source.robots_compliant != compliant)
                .values(robots_compliant=compliant)
            )
            await db.commit()
        return result.rowcount > 0

    async def disable_source_compliance(self, source_id: str) -> None:
        await self.set_source_robots_compliant(source_id, False)

    # =========================================================================
    # Runs
    # =========================================================================

    async def create_run(
        self,
        source_id: str,
        adapter_id: str,
        adapter_version: str,
        retailer_id: str,
        trigger: JobTrigger = JobTrigger.SCHEDULED,
    ) -> str:
        """Create a RUNNING scrape run and return its id."""
        async with self.session_factory() as db:
            run = ScrapeRun(
                id=new_id(),
                source_id=source_id,
                adapter_id=adapter_id,
                adapter_version=adapter_version,
                retailer_id=retailer_id,
                trigger=trigger.value,
                status=RunStatus.RUNNING.value,
                started_at=datetime.utcnow(),
            )
            db.add(run)
            await db.commit()
            return run.id

    async def increment_run_metrics(self, run_id: str, **deltas: int) -> None:
        """
        Atomically add to run counters (UPDATE ... SET col = col + n).

        Raises:
            ValueError: For unknown counter names
        """
        unknown = set(deltas) - set(COUNTER_FIELDS)
        if unknown:
            raise ValueError(f"Unknown run counters: {sorted(unknown)}")

        values = {
            name: getattr(ScrapeRun, name) + amount
            for name, amount in deltas.items()
            if amount
        }
        if not values:
            return

        try:
            async with self.session_factory() as db:
                await db.execute(update(ScrapeRun).where(ScrapeRun.id == run_id).values(**values))
                await db.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to increment run metrics {list(values)} for run {run_id}: {e}")

    async def get_run_metrics(self, run_id: str) -> Optional[ScrapeRunMetrics]:
        async with self.session_factory() as db:
            run = await db.get(ScrapeRun, run_id)
            return metrics_from_run(run) if run else None

    async def finalize_run(
        self,
        run_id: str,
        metrics: Optional[ScrapeRunMetrics] = None,
    ) -> Optional[FinalizedRun]:
        """
        Finalize a run: status, derived rates, completion time and adapter drift state.

        Args:
            run_id: Run to finalize
            metrics: Counters to finalize with (read from the run row if omitted)

        Returns:
            FinalizedRun, or None if the run does not exist
        """
        async with self.session_factory() as db:
            run = await db.get(ScrapeRun, run_id)
            if run is None:
                logger.warning(f"Cannot finalize missing run {run_id}")
                return None

            if metrics is None:
                metrics = metrics_from_run(run)
            derived = compute_derived_metrics(metrics)
            status = decide_run_status(metrics, derived)

            completed_at = datetime.utcnow()
            run.status = status.value
            run.completed_at = completed_at
            run.duration_ms = int((completed_at - run.started_at).total_seconds() * 1000)
            run.failure_rate = derived.failure_rate
            run.yield_rate = derived.yield_rate
            run.drop_rate = derived.drop_rate
            adapter_id = run.adapter_id
            await db.commit()

        record_run_completed(adapter_id, status.value, derived.failure_rate, derived.yield_rate)
        logger.info(
            f"Finalized run {run_id} ({adapter_id}): status={status.value} "
            f"failure_rate={derived.failure_rate:.2f} yield_rate={derived.yield_rate:.2f}"
        )

        alert = check_drift_alert(metrics)
        if alert:
            logger.warning(f"Drift alert for {adapter_id} run {run_id}: {alert.type} - {alert.message}")

        try:
            await self.apply_adapter_drift(adapter_id, run_id, metrics, status)
        except SQLAlchemyError as e:
            logger.error(f"Failed to update adapter drift state for {adapter_id}: {e}")

        return FinalizedRun(run_id=run_id, status=status, derived=derived, metrics=metrics)

    async def apply_adapter_drift(
        self,
        adapter_id: str,
        run_id: str,
        metrics: ScrapeRunMetrics,
        status: RunStatus,
    ) -> ScrapeAdapterStatus:
        """Update consecutive failed batches, zero-price tracking and the baseline for an adapter."""
        async with self.session_factory() as db:
            adapter_status = await db.get(ScrapeAdapterStatus, adapter_id)
            if adapter_status is None:
                adapter_status = ScrapeAdapterStatus(
                    adapter_id=adapter_id,
                    enabled=True,
                    consecutive_failed_batches=0,
                    last_run_had_zero_price=False,
                    baseline_sample_size=0,
                )
                db.add(adapter_status)

            decision = check_auto_disable(metrics, adapter_status.consecutive_failed_batches)
            if decision is not None:
                adapter_status.consecutive_failed_batches = decision.consecutive_failed_batches
                if decision.should_disable and adapter_status.enabled:
                    self._disable_adapter(adapter_status, decision.reason or "DRIFT_DETECTED", decision.message)

            zero_price = check_zero_price_disable(metrics, adapter_status.last_run_had_zero_price)
            if zero_price is not None and zero_price.should_disable:
                if adapter_status.enabled:
                    self._disable_adapter(adapter_status, zero_price.reason or "DRIFT_DETECTED", zero_price.message)
                adapter_status.last_run_had_zero_price = True
            elif metrics.urls_attempted >= settings.drift_min_urls:
                adapter_status.last_run_had_zero_price = metrics.zero_price_count > 0

            if status == RunStatus.SUCCESS:
                baseline = await self._compute_baseline(db, adapter_id, run_id, metrics)
                adapter_status.baseline_failure_rate = baseline.median_failure_rate
                adapter_status.baseline_yield_rate = baseline.median_yield_rate
                adapter_status.baseline_sample_size = baseline.sample_size
                adapter_status.baseline_updated_at = datetime.utcnow()

            await db.commit()
            return adapter_status

    @staticmethod
    def _disable_adapter(adapter_status: ScrapeAdapterStatus, reason: str, message: str) -> None:
        adapter_status.enabled = False
        adapter_status.disabled_at = datetime.utcnow()
        adapter_status.disabled_reason = reason
        record_adapter_auto_disabled(adapter_status.adapter_id)
        logger.warning(f"Auto-disabling adapter {adapter_status.adapter_id}: {message}")

    async def _compute_baseline(
        self,
        db: AsyncSession,
        adapter_id: str,
        run_id: str,
        metrics: ScrapeRunMetrics,
    ) -> DriftBaseline:
        result = await db.execute(
            select(ScrapeRun)
            .where(
                ScrapeRun.adapter_id == adapter_id,
                ScrapeRun.id != run_id,
                ScrapeRun.status == RunStatus.SUCCESS.value,
                ScrapeRun.completed_at >= datetime.utcnow() - BASELINE_LOOKBACK,
                ScrapeRun.urls_attempted >= settings.drift_min_urls,
            )
            .order_by(ScrapeRun.completed_at.desc())
            .limit(BASELINE_MAX_RUNS)
        )
        recent = [compute_derived_metrics(metrics_from_run(r)) for r in result.scalars().all()]
        return update_baseline(metrics, recent)
