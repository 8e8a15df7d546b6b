from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from syncwarden.core.config import get_settings
from syncwarden.core.errors import NotFoundError, ProviderConfigError
from syncwarden.domain.state import HEALTH_DEGRADED, HEALTH_HEALTHY, HEALTH_UNKNOWN, JOB_STATUS_PENDING
from syncwarden.persistence.db import SessionLocal
from syncwarden.services.integrations.health import IntegrationHealthService
from syncwarden.services.integrations.providers import SyncContext, SyncProvider, register_provider
from syncwarden.services.jobs.admin import JobAdminService
from syncwarden.services.jobs.dispatcher import JobDispatcher
from syncwarden.services.quota import ProviderQuotaGuard
from syncwarden.services.scheduling.lifecycle import SyncScheduler
from syncwarden.services.scheduling.worker import (
    OUTCOME_DEFERRED_QUOTA,
    OUTCOME_FAILED,
    OUTCOME_SKIPPED_DISABLED,
    OUTCOME_SUCCEEDED,
    ScheduledSyncWorker,
    abandoned_routine_count,
)
from syncwarden.tests.utils.fakes import FakeClock, RecordingQueue


class _Routine:
    # Counts invocations and optionally raises.
    def __init__(self, error: Exception | None = None) -> None:
        self.calls = 0
        self.error = error

    async def __call__(self, ctx: SyncContext) -> None:
        self.calls += 1
        ctx.stats["fixtures"] = 10
        if self.error is not None:
            raise self.error


def _worker(
    name: str,
    routine,
    clock: FakeClock,
    *,
    run_on_start: bool = True,
    queue: RecordingQueue | None = None,
) -> tuple[ScheduledSyncWorker, IntegrationHealthService]:
    health = IntegrationHealthService(time_provider=clock)
    worker = ScheduledSyncWorker(
        name=name,
        config=get_settings().integrations[name],
        provider=SyncProvider(name=name, sync=routine),
        health=health,
        quota=ProviderQuotaGuard(time_provider=clock),
        dispatcher=JobDispatcher(queue=queue or RecordingQueue(), time_provider=clock),
        time_provider=clock,
        run_on_start=run_on_start,
    )
    return worker, health


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


async def test_successful_cycle_reports_health_and_enqueues_follow_on() -> None:
    clock = FakeClock(datetime(2026, 2, 16, 4, 0, tzinfo=timezone.utc))
    queue = RecordingQueue()
    routine = _Routine()
    worker, health = _worker("football_data_org", routine, clock, queue=queue)

    outcome = await worker.run_cycle()

    assert outcome.status == OUTCOME_SUCCEEDED
    assert outcome.stats == {"fixtures": 10}
    assert outcome.follow_on_job_id is not None
    assert queue.notified == [outcome.follow_on_job_id]
    async with SessionLocal() as session:
        row = await health.get_status(session=session, name="football_data_org")
        job = await JobAdminService().get_by_id(session=session, job_id=outcome.follow_on_job_id)
    assert row.health == HEALTH_HEALTHY
    assert row.last_success_at == clock()
    assert job.job_type == "recalculate_standings"
    assert job.status == JOB_STATUS_PENDING
    assert job.created_by == "scheduler:football_data_org"


async def test_failed_cycle_is_recorded_not_raised() -> None:
    clock = FakeClock(datetime(2026, 2, 16, 4, 0, tzinfo=timezone.utc))
    worker, health = _worker("understat", _Routine(RuntimeError("parse error")), clock)

    outcome = await worker.run_cycle()

    assert outcome.status == OUTCOME_FAILED
    assert "parse error" in (outcome.error or "")
    async with SessionLocal() as session:
        row = await health.get_status(session=session, name="understat")
    assert row.health == HEALTH_DEGRADED
    assert row.consecutive_failures == 1
    assert "RuntimeError" in (row.last_error_details or "")


async def test_loop_survives_repeated_failures() -> None:
    # A frozen clock just before the slot keeps every sleep short.
    clock = FakeClock(datetime(2026, 2, 16, 3, 59, 59, 900000, tzinfo=timezone.utc))
    routine = _Routine(RuntimeError("boom"))
    worker, health = _worker("understat", routine, clock)

    task = asyncio.create_task(worker.run())
    await _wait_for(lambda: routine.calls >= 3)
    worker.stop()
    await asyncio.wait_for(task, timeout=2.0)

    assert worker.running is False
    async with SessionLocal() as session:
        row = await health.get_status(session=session, name="understat")
    assert row.consecutive_failures == routine.calls
    assert worker.next_run_at == datetime(2026, 2, 16, 4, 0, tzinfo=timezone.utc)


async def test_stop_interrupts_a_long_sleep_promptly() -> None:
    clock = FakeClock(datetime(2026, 2, 16, 4, 0, 1, tzinfo=timezone.utc))
    routine = _Routine()
    worker, _health = _worker("understat", routine, clock, run_on_start=False)

    task = asyncio.create_task(worker.run())
    await _wait_for(lambda: worker.next_run_at is not None)
    worker.stop()
    await asyncio.wait_for(task, timeout=1.0)

    assert routine.calls == 0
    assert worker.next_run_at == datetime(2026, 2, 17, 4, 0, tzinfo=timezone.utc)


async def test_manually_disabled_provider_is_skipped() -> None:
    clock = FakeClock(datetime(2026, 2, 16, 5, 0, tzinfo=timezone.utc))
    routine = _Routine()
    worker, health = _worker("club_elo", routine, clock)
    async with SessionLocal() as session:
        await health.disable(session=session, name="club_elo", reason="upstream outage")

    outcome = await worker.run_cycle()

    assert outcome.status == OUTCOME_SKIPPED_DISABLED
    assert routine.calls == 0


async def test_quota_exhaustion_defers_without_touching_health() -> None:
    clock = FakeClock(datetime(2026, 2, 16, 6, 0, tzinfo=timezone.utc))

    async def _greedy(ctx: SyncContext) -> None:
        await ctx.require_quota(cost=81)

    worker, health = _worker("api_football", _greedy, clock)
    outcome = await worker.run_cycle()

    assert outcome.status == OUTCOME_DEFERRED_QUOTA
    async with SessionLocal() as session:
        row = await health.get_status(session=session, name="api_football")
    assert row.health == HEALTH_UNKNOWN
    assert row.consecutive_failures == 0


async def test_scheduler_runs_registered_providers_and_stops() -> None:
    # One registered routine; the other configured providers have none and get no worker.
    understat = _Routine()
    register_provider("understat", understat)
    scheduler = SyncScheduler(dispatcher=JobDispatcher(queue=RecordingQueue()), run_on_start=True)

    await scheduler.start()
    await _wait_for(lambda: understat.calls == 1)
    await _wait_for(lambda: all(row["next_run_at"] for row in scheduler.status() if row["running"]))
    status = {row["integration"]: row for row in scheduler.status()}
    await scheduler.stop(grace_s=1.0)

    assert set(scheduler.workers) == {"understat"}
    assert status["understat"]["last_outcome"] == OUTCOME_SUCCEEDED
    assert status["understat"]["next_run_at"] is not None
    assert status["club_elo"]["last_outcome"] is None
    assert status["api_football"]["running"] is False
    assert scheduler.started is False


async def test_scheduler_trigger_validates_provider() -> None:
    scheduler = SyncScheduler(dispatcher=JobDispatcher(queue=RecordingQueue()))
    with pytest.raises(NotFoundError):
        await scheduler.trigger("carrier_pigeon")
    with pytest.raises(ProviderConfigError):
        await scheduler.trigger("understat")

    routine = _Routine()
    register_provider("understat", routine)
    outcome = await scheduler.trigger("understat")
    assert outcome.status == OUTCOME_SUCCEEDED
    assert routine.calls == 1


async def test_exhausted_budget_defers_before_the_routine_runs() -> None:
    clock = FakeClock(datetime(2026, 2, 16, 6, 0, tzinfo=timezone.utc))
    routine = _Routine()
    worker, health = _worker("api_football", routine, clock)
    guard = ProviderQuotaGuard(time_provider=clock)
    async with SessionLocal() as session:
        assert await guard.try_reserve(session=session, provider="api_football", cost=80) is True
    async with SessionLocal() as session:
        assert await guard.try_reserve(session=session, provider="api_football") is False

    outcome = await worker.run_cycle()

    assert outcome.status == OUTCOME_DEFERRED_QUOTA
    assert routine.calls == 0
    assert "api_football" in (outcome.error or "")
    async with SessionLocal() as session:
        row = await health.get_status(session=session, name="api_football")
    assert row.consecutive_failures == 0
    assert row.last_attempt_at is None


async def test_stop_abandons_an_inflight_routine_without_cancelling_it() -> None:
    entered = asyncio.Event()
    release = asyncio.Event()
    finished: list[str] = []

    async def _slow(ctx: SyncContext) -> None:
        entered.set()
        try:
            await release.wait()
        except asyncio.CancelledError:
            finished.append("cancelled")
            raise
        finished.append("completed")

    register_provider("understat", _slow)
    scheduler = SyncScheduler(dispatcher=JobDispatcher(queue=RecordingQueue()), run_on_start=True)
    await scheduler.start()
    await asyncio.wait_for(entered.wait(), timeout=2.0)

    await asyncio.wait_for(scheduler.stop(grace_s=0.05), timeout=2.0)

    assert scheduler.started is False
    assert finished == []
    assert abandoned_routine_count() == 1

    release.set()
    await _wait_for(lambda: finished == ["completed"])
    await _wait_for(lambda: abandoned_routine_count() == 0)
