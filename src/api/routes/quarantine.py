"""Quarantine review routes (operator only)."""

from datetime import datetime
from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.deps import get_database
from src.db.models import QuarantinedRecord

router = APIRouter(prefix="/api/quarantine", tags=["quarantine"])


class QuarantineResponse(BaseModel):
    id: str
    source_id: str
    match_key: str
    feed_type: str
    run_id: str | None
    target_id: str | None
    reasons: list[str]
    payload: dict
    status: str
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


@router.get("", response_model=List[QuarantineResponse])
async def list_quarantine(
    limit: int = 50,
    source_id: str | None = None,
    reason: str | None = None,
    db: AsyncSession = Depends(get_database),
):
    """List quarantined offers, most recently updated first."""
    query = select(QuarantinedRecord).order_by(QuarantinedRecord.updated_at.desc())
    if source_id:
        query = query.where(QuarantinedRecord.source_id == source_id)

    result = await db.execute(query.limit(limit if not reason else limit * 5))
    records = result.scalars().all()
    if reason:
        # Reasons are stored as a JSON array
        records = [r for r in records if reason.upper() in (r.reasons or [])][:limit]

    return [QuarantineResponse.model_validate(r) for r in records]


@router.get("/{record_id}", response_model=QuarantineResponse)
async def get_quarantine_record(record_id: str, db: AsyncSession = Depends(get_database)):
    """Get one quarantined offer with its payload snapshot."""
    record = await db.get(QuarantinedRecord, record_id)
    if not record:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Quarantined record not found",
        )
    return QuarantineResponse.model_validate(record)
