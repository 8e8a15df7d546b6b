from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from syncwarden.domain.models import BackgroundJob
from syncwarden.domain.state import JOB_STATUS_PENDING, JOB_STATUSES


async def create_job(
    session: AsyncSession,
    *,
    job_id: str,
    job_type: str,
    payload: str,
    created_at: datetime,
    created_by: str | None = None,
    correlation_id: str | None = None,
    scheduled_at: datetime | None = None,
) -> BackgroundJob:
    # New jobs always start pending with a zero retry count.
    job = BackgroundJob(
        id=job_id,
        job_type=job_type,
        payload=payload,
        status=JOB_STATUS_PENDING,
        retry_count=0,
        created_by=created_by,
        correlation_id=correlation_id,
        scheduled_at=scheduled_at,
        created_at=created_at,
        updated_at=created_at,
    )
    session.add(job)
    return job


async def get_job(session: AsyncSession, job_id: str, *, refresh: bool = False) -> BackgroundJob | None:
    stmt = select(BackgroundJob).where(BackgroundJob.id == job_id)
    if refresh:
        # Overwrite identity-map state so reads reflect the latest committed row.
        stmt = stmt.execution_options(populate_existing=True)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


def _filtered(stmt, *, status: str | None, job_type: str | None):
    if status:
        stmt = stmt.where(BackgroundJob.status == status)
    if job_type:
        stmt = stmt.where(BackgroundJob.job_type == job_type)
    return stmt


async def list_jobs(
    session: AsyncSession,
    *,
    status: str | None = None,
    job_type: str | None = None,
    offset: int = 0,
    limit: int = 20,
) -> tuple[list[BackgroundJob], int]:
    # Newest first; id breaks ties so pages stay stable.
    total_stmt = _filtered(select(func.count()).select_from(BackgroundJob), status=status, job_type=job_type)
    total = int((await session.execute(total_stmt)).scalar_one())
    rows_stmt = _filtered(select(BackgroundJob), status=status, job_type=job_type)
    rows_stmt = (
        rows_stmt.order_by(BackgroundJob.created_at.desc(), BackgroundJob.id.desc())
        .offset(offset)
        .limit(limit)
        .execution_options(populate_existing=True)
    )
    result = await session.execute(rows_stmt)
    return list(result.scalars().all()), total


async def count_by_status(session: AsyncSession) -> dict[str, int]:
    # Report every status, including those with no rows.
    result = await session.execute(
        select(BackgroundJob.status, func.count()).group_by(BackgroundJob.status)
    )
    counts = {status: 0 for status in JOB_STATUSES}
    for status, count in result.all():
        counts[status] = int(count)
    return counts


async def transition_job(
    session: AsyncSession,
    *,
    job_id: str,
    from_statuses: Iterable[str],
    values: dict[str, Any],
) -> bool:
    # Compare-and-swap on status so only one concurrent transition can win.
    stmt = (
        update(BackgroundJob)
        .where(BackgroundJob.id == job_id, BackgroundJob.status.in_(tuple(from_statuses)))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return (result.rowcount or 0) == 1


async def list_claimable_job_ids(session: AsyncSession, *, now: datetime, limit: int) -> list[str]:
    # Oldest pending jobs whose schedule has arrived.
    stmt = (
        select(BackgroundJob.id)
        .where(
            BackgroundJob.status == JOB_STATUS_PENDING,
            or_(BackgroundJob.scheduled_at.is_(None), BackgroundJob.scheduled_at <= now),
        )
        .order_by(BackgroundJob.created_at, BackgroundJob.id)
        .limit(limit)
    )
    result = await session.execute(stmt)
    return [row for row in result.scalars().all()]
