"""Read side: time-range queries and per-kind summary."""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.keys import normalize_timestamp
from app.models import EcgRecording, HeartRateSample
from app.schemas import SummaryStats


async def query_records(
    db: AsyncSession,
    model,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = 100,
) -> List:
    """Records with ``start <= timestamp <= end``, newest first, at most ``limit``."""
    stmt = select(model)
    if start is not None:
        stmt = stmt.where(model.timestamp >= normalize_timestamp(start))
    if end is not None:
        stmt = stmt.where(model.timestamp <= normalize_timestamp(end))
    stmt = stmt.order_by(model.timestamp.desc(), model.id).limit(limit)

    result = await db.execute(stmt)
    return list(result.scalars().all())


async def _count_and_latest(db: AsyncSession, model):
    result = await db.execute(select(func.count(model.id), func.max(model.timestamp)))
    return result.one()


async def summarize(db: AsyncSession) -> SummaryStats:
    hr_count, hr_latest = await _count_and_latest(db, HeartRateSample)
    ecg_count, ecg_latest = await _count_and_latest(db, EcgRecording)
    return SummaryStats(
        totalHeartRateSamples=hr_count,
        totalECGRecordings=ecg_count,
        latestHeartRateTimestamp=hr_latest,
        latestECGTimestamp=ecg_latest,
    )
