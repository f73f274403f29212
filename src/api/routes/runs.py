"""Scrape run inspection routes."""

from datetime import datetime
from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.deps import get_database
from src.db.models import ScrapeAdapterStatus, ScrapeRun

router = APIRouter(prefix="/api/runs", tags=["runs"])


class RunResponse(BaseModel):
    id: str
    source_id: str
    adapter_id: str
    adapter_version: str
    trigger: str
    status: str
    started_at: datetime
    completed_at: datetime | None
    duration_ms: int | None
    urls_attempted: int
    urls_succeeded: int
    urls_failed: int
    offers_extracted: int
    offers_valid: int
    offers_dropped: int
    offers_quarantined: int
    zero_price_count: int
    oos_no_price_count: int
    failure_rate: float | None
    yield_rate: float | None
    drop_rate: float | None

    class Config:
        from_attributes = True


class AdapterStatusResponse(BaseModel):
    adapter_id: str
    enabled: bool
    disabled_at: datetime | None
    disabled_reason: str | None
    consecutive_failed_batches: int
    baseline_failure_rate: float | None
    baseline_yield_rate: float | None
    baseline_sample_size: int

    class Config:
        from_attributes = True


@router.get("", response_model=List[RunResponse])
async def list_runs(
    limit: int = 50,
    adapter_id: str | None = None,
    run_status: str | None = None,
    db: AsyncSession = Depends(get_database),
):
    """List recent scrape runs, newest first."""
    query = select(ScrapeRun).order_by(ScrapeRun.started_at.desc()).limit(limit)
    if adapter_id:
        query = query.where(ScrapeRun.adapter_id == adapter_id)
    if run_status:
        query = query.where(ScrapeRun.status == run_status.upper())

    result = await db.execute(query)
    return [RunResponse.model_validate(run) for run in result.scalars().all()]


@router.get("/adapters", response_model=List[AdapterStatusResponse])
async def list_adapter_status(db: AsyncSession = Depends(get_database)):
    """Drift state and baselines per adapter."""
    result = await db.execute(select(ScrapeAdapterStatus).order_by(ScrapeAdapterStatus.adapter_id))
    return [AdapterStatusResponse.model_validate(row) for row in result.scalars().all()]


@router.get("/{run_id}", response_model=RunResponse)
async def get_run(run_id: str, db: AsyncSession = Depends(get_database)):
    """Get a scrape run with its counters and finalized rates."""
    run = await db.get(ScrapeRun, run_id)
    if not run:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Run not found",
        )
    return RunResponse.model_validate(run)
