from __future__ import annotations

from datetime import datetime, timezone

import pytest

from syncwarden.core.errors import InvalidTransitionError, NotFoundError
from syncwarden.domain.state import (
    JOB_STATUS_CANCELLED,
    JOB_STATUS_COMPLETED,
    JOB_STATUS_FAILED,
    JOB_STATUS_PENDING,
    JOB_STATUS_PROCESSING,
)
from syncwarden.persistence.db import SessionLocal
from syncwarden.persistence.repos import jobs as jobs_repo
from syncwarden.services.jobs.admin import JobAdminService
from syncwarden.services.jobs.dispatcher import JobDispatcher
from syncwarden.services.jobs.transitions import (
    cancel_job,
    mark_completed,
    mark_failed,
    mark_processing,
    retry_job,
)
from syncwarden.tests.utils.fakes import FakeClock, RecordingQueue


NOW = datetime(2026, 2, 16, 12, 0, tzinfo=timezone.utc)


async def _job_in_status(status: str) -> str:
    # Seed a job directly in the requested state.
    async with SessionLocal() as session:
        job = await jobs_repo.create_job(
            session,
            job_id=f"job-{status}",
            job_type="recalculate_standings",
            payload="{}",
            created_at=NOW,
        )
        job.status = status
        await session.commit()
        return job.id


@pytest.mark.parametrize("status", [JOB_STATUS_PENDING, JOB_STATUS_PROCESSING, JOB_STATUS_COMPLETED])
async def test_retry_rejected_from_non_retryable_states(status: str) -> None:
    job_id = await _job_in_status(status)
    async with SessionLocal() as session:
        with pytest.raises(InvalidTransitionError) as excinfo:
            await retry_job(session, job_id=job_id, now=NOW)
    assert excinfo.value.current_status == status
    assert excinfo.value.action == "retry"


@pytest.mark.parametrize("status", [JOB_STATUS_FAILED, JOB_STATUS_CANCELLED])
async def test_retry_requeues_failed_and_cancelled(status: str) -> None:
    job_id = await _job_in_status(status)
    async with SessionLocal() as session:
        job = await retry_job(session, job_id=job_id, now=NOW)
    assert job.status == JOB_STATUS_PENDING
    assert job.retry_count == 1
    assert job.last_error is None
    assert job.started_at is None
    assert job.completed_at is None


@pytest.mark.parametrize("status", [JOB_STATUS_FAILED, JOB_STATUS_CANCELLED, JOB_STATUS_COMPLETED])
async def test_cancel_rejected_from_terminal_states(status: str) -> None:
    job_id = await _job_in_status(status)
    async with SessionLocal() as session:
        with pytest.raises(InvalidTransitionError):
            await cancel_job(session, job_id=job_id, now=NOW)


@pytest.mark.parametrize("status", [JOB_STATUS_PENDING, JOB_STATUS_PROCESSING])
async def test_cancel_sets_completed_at(status: str) -> None:
    job_id = await _job_in_status(status)
    async with SessionLocal() as session:
        job = await cancel_job(session, job_id=job_id, now=NOW)
    assert job.status == JOB_STATUS_CANCELLED
    assert job.completed_at == NOW


async def test_unknown_job_is_not_found() -> None:
    async with SessionLocal() as session:
        with pytest.raises(NotFoundError):
            await retry_job(session, job_id="missing", now=NOW)
        with pytest.raises(NotFoundError):
            await cancel_job(session, job_id="missing", now=NOW)


async def test_compare_and_swap_only_lets_one_writer_win() -> None:
    job_id = await _job_in_status(JOB_STATUS_FAILED)
    values = {"status": JOB_STATUS_PENDING, "updated_at": NOW}
    async with SessionLocal() as session:
        first = await jobs_repo.transition_job(
            session, job_id=job_id, from_statuses=(JOB_STATUS_FAILED,), values=values
        )
        second = await jobs_repo.transition_job(
            session, job_id=job_id, from_statuses=(JOB_STATUS_FAILED,), values=values
        )
        await session.commit()
    assert first is True
    assert second is False


async def test_worker_transitions_follow_the_state_machine() -> None:
    job_id = await _job_in_status(JOB_STATUS_PENDING)
    async with SessionLocal() as session:
        with pytest.raises(InvalidTransitionError):
            await mark_completed(session, job_id=job_id, now=NOW)
        started = await mark_processing(session, job_id=job_id, now=NOW)
        assert started.status == JOB_STATUS_PROCESSING
        assert started.started_at == NOW
        with pytest.raises(InvalidTransitionError):
            await mark_processing(session, job_id=job_id, now=NOW)
        failed = await mark_failed(session, job_id=job_id, now=NOW, error="boom")
    assert failed.status == JOB_STATUS_FAILED
    assert failed.last_error == "boom"


async def test_end_to_end_retry_and_cancel_flow() -> None:
    queue = RecordingQueue()
    clock = FakeClock(NOW)
    dispatcher = JobDispatcher(queue=queue, time_provider=clock)
    admin = JobAdminService(dispatcher=dispatcher, time_provider=clock)

    async with SessionLocal() as session:
        job_id = await dispatcher.enqueue(session=session, job_type="recalculate_standings", payload={"league": 39})
    assert queue.notified == [job_id]

    async with SessionLocal() as session:
        with pytest.raises(InvalidTransitionError):
            await admin.retry(session=session, job_id=job_id)

    # Simulate a worker that picked the job up and failed.
    async with SessionLocal() as session:
        await mark_processing(session, job_id=job_id, now=clock())
        await mark_failed(session, job_id=job_id, now=clock(), error="upstream timeout")

    async with SessionLocal() as session:
        job = await admin.retry(session=session, job_id=job_id)
        assert job.status == JOB_STATUS_PENDING
        assert job.retry_count == 1

        job = await admin.cancel(session=session, job_id=job_id)
        assert job.status == JOB_STATUS_CANCELLED

        job = await admin.retry(session=session, job_id=job_id)
        assert job.status == JOB_STATUS_PENDING
        assert job.retry_count == 2

    # Each successful retry re-dispatches the job.
    assert queue.notified == [job_id, job_id, job_id]
