from __future__ import annotations

from datetime import datetime
import logging
from typing import Any, Iterable

from sqlalchemy.ext.asyncio import AsyncSession

from syncwarden.core.errors import InvalidTransitionError, NotFoundError
from syncwarden.domain.models import BackgroundJob
from syncwarden.domain.state import (
    CANCELLABLE_JOB_STATUSES,
    JOB_STATUS_CANCELLED,
    JOB_STATUS_COMPLETED,
    JOB_STATUS_FAILED,
    JOB_STATUS_PENDING,
    JOB_STATUS_PROCESSING,
    RETRYABLE_JOB_STATUSES,
)
from syncwarden.persistence.repos import jobs as jobs_repo
from syncwarden.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


async def _load(session: AsyncSession, job_id: str) -> BackgroundJob:
    job = await jobs_repo.get_job(session, job_id, refresh=True)
    if job is None:
        raise NotFoundError("job", job_id)
    return job


async def _transition(
    session: AsyncSession,
    *,
    job_id: str,
    action: str,
    allowed: Iterable[str],
    values: dict[str, Any],
) -> BackgroundJob:
    # Validate against the observed state, then swap only if that state still holds.
    job = await _load(session, job_id)
    observed = job.status
    if observed not in allowed:
        raise InvalidTransitionError(job_id, observed, action)
    won = await jobs_repo.transition_job(
        session,
        job_id=job_id,
        from_statuses=(observed,),
        values=values,
    )
    if not won:
        # A concurrent writer moved the job first; report the state it left behind.
        current = await _load(session, job_id)
        increment_counter("jobs.transition_conflict")
        logger.warning(
            "job_transition_conflict job_id=%s action=%s observed=%s current=%s",
            job_id,
            action,
            observed,
            current.status,
        )
        raise InvalidTransitionError(job_id, current.status, action)
    await session.commit()
    updated = await _load(session, job_id)
    increment_counter(f"jobs.{action}")
    logger.info("job_%s job_id=%s from=%s to=%s", action, job_id, observed, updated.status)
    return updated


async def retry_job(session: AsyncSession, *, job_id: str, now: datetime) -> BackgroundJob:
    # Re-queue failed or cancelled jobs; completed work is never re-run.
    return await _transition(
        session,
        job_id=job_id,
        action="retry",
        allowed=RETRYABLE_JOB_STATUSES,
        values={
            "status": JOB_STATUS_PENDING,
            "retry_count": BackgroundJob.retry_count + 1,
            "last_error": None,
            "result": None,
            "started_at": None,
            "completed_at": None,
            "updated_at": now,
        },
    )


async def cancel_job(session: AsyncSession, *, job_id: str, now: datetime) -> BackgroundJob:
    # Cancellation pauses work that has not reached a terminal state.
    return await _transition(
        session,
        job_id=job_id,
        action="cancel",
        allowed=CANCELLABLE_JOB_STATUSES,
        values={"status": JOB_STATUS_CANCELLED, "completed_at": now, "updated_at": now},
    )


async def mark_processing(session: AsyncSession, *, job_id: str, now: datetime) -> BackgroundJob:
    # Claim a pending job for execution; losing the race means another runner owns it.
    return await _transition(
        session,
        job_id=job_id,
        action="start",
        allowed=(JOB_STATUS_PENDING,),
        values={"status": JOB_STATUS_PROCESSING, "started_at": now, "updated_at": now},
    )


async def mark_completed(
    session: AsyncSession,
    *,
    job_id: str,
    now: datetime,
    result: str | None = None,
) -> BackgroundJob:
    return await _transition(
        session,
        job_id=job_id,
        action="complete",
        allowed=(JOB_STATUS_PROCESSING,),
        values={
            "status": JOB_STATUS_COMPLETED,
            "result": result,
            "completed_at": now,
            "updated_at": now,
        },
    )


async def mark_failed(session: AsyncSession, *, job_id: str, now: datetime, error: str) -> BackgroundJob:
    return await _transition(
        session,
        job_id=job_id,
        action="fail",
        allowed=(JOB_STATUS_PROCESSING,),
        values={
            "status": JOB_STATUS_FAILED,
            "last_error": error,
            "completed_at": now,
            "updated_at": now,
        },
    )
