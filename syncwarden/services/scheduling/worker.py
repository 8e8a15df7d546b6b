from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
import time
import traceback
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from syncwarden.core.config import IntegrationSettings
from syncwarden.core.errors import QuotaExhaustedError, SyncFailureError
from syncwarden.persistence.db import SessionLocal
from syncwarden.services.integrations.health import IntegrationHealthService
from syncwarden.services.integrations.providers import SyncContext, SyncProvider
from syncwarden.services.jobs.dispatcher import JobDispatcher
from syncwarden.services.quota import ProviderQuotaGuard
from syncwarden.services.scheduling.schedule import get_next_run_utc
from syncwarden.services.telemetry import record_sync


logger = logging.getLogger(__name__)

OUTCOME_SUCCEEDED = "succeeded"
OUTCOME_FAILED = "failed"
OUTCOME_SKIPPED_DISABLED = "skipped_disabled"
OUTCOME_DEFERRED_QUOTA = "deferred_quota"

_MAX_ERROR_DETAILS = 4000


@dataclass(frozen=True)
class CycleOutcome:
    integration: str
    status: str
    started_at: datetime
    duration_ms: float = 0.0
    error: str | None = None
    follow_on_job_id: str | None = None
    stats: dict[str, int] | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _failure_from(name: str, exc: Exception) -> SyncFailureError:
    # Normalize arbitrary routine errors into a recorded sync failure.
    if isinstance(exc, SyncFailureError):
        return exc
    message = str(exc) or type(exc).__name__
    details = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))[-_MAX_ERROR_DETAILS:]
    return SyncFailureError(name, f"{type(exc).__name__}: {message}", details=details)


# Strong references keep abandoned routines alive until they finish on their own.
_abandoned_routines: set[asyncio.Task[None]] = set()


def _settle_abandoned(task: asyncio.Task[None]) -> None:
    _abandoned_routines.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("sync_routine_abandoned_failed task=%s error=%s", task.get_name(), exc)
    else:
        logger.info("sync_routine_abandoned_finished task=%s", task.get_name())


def abandoned_routine_count() -> int:
    return len(_abandoned_routines)


class ScheduledSyncWorker:
    """Periodic runner for one provider.

    Runs once on start, then sleeps until the next computed slot. A failed
    cycle is recorded against the provider's health and never ends the loop;
    only ``stop()`` or task cancellation does.
    """

    def __init__(
        self,
        *,
        name: str,
        config: IntegrationSettings,
        provider: SyncProvider,
        health: IntegrationHealthService,
        quota: ProviderQuotaGuard,
        dispatcher: JobDispatcher,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        time_provider: Callable[[], datetime] | None = None,
        run_on_start: bool = True,
    ) -> None:
        self.name = name
        self.config = config
        self._provider = provider
        self._health = health
        self._quota = quota
        self._dispatcher = dispatcher
        self._session_factory = session_factory or SessionLocal
        self._time_provider = time_provider or _utc_now
        self._run_on_start = run_on_start
        self._stop_event = asyncio.Event()
        # Cycles of one provider never overlap, scheduled or manually triggered.
        self._cycle_lock = asyncio.Lock()
        self.next_run_at: datetime | None = None
        self.last_run_started_at: datetime | None = None
        self.last_outcome: CycleOutcome | None = None
        self.running = False

    def compute_next_run(self, now: datetime) -> datetime:
        return get_next_run_utc(now, self.config.sync_hour_utc, self.config.sync_weekday)

    def stop(self) -> None:
        self._stop_event.set()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    async def run(self) -> None:
        self.running = True
        logger.info("sync_worker_started integration=%s", self.name)
        try:
            if self._run_on_start and not self.stopped:
                await self._safe_cycle()
            while not self.stopped:
                self.next_run_at = self.compute_next_run(self._time_provider())
                logger.info(
                    "sync_worker_scheduled integration=%s next_run_at=%s",
                    self.name,
                    self.next_run_at.isoformat(),
                )
                if not await self._sleep_until(self.next_run_at):
                    break
                await self._safe_cycle()
        finally:
            self.running = False
            logger.info("sync_worker_stopped integration=%s", self.name)

    async def _sleep_until(self, target: datetime) -> bool:
        # Returns False when stop() interrupts the wait.
        delay_s = (target - self._time_provider()).total_seconds()
        if delay_s <= 0:
            return not self.stopped
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay_s)
        except asyncio.TimeoutError:
            return True
        return False

    async def _safe_cycle(self) -> None:
        try:
            await self.run_cycle()
        except asyncio.CancelledError:
            raise
        except Exception:  # noqa: BLE001 - health bookkeeping errors must not end the loop.
            logger.exception("sync_worker_cycle_crashed integration=%s", self.name)

    async def run_cycle(self) -> CycleOutcome:
        async with self._cycle_lock:
            outcome = await self._run_cycle_locked()
        self.last_outcome = outcome
        return outcome

    async def _run_cycle_locked(self) -> CycleOutcome:
        started_at = self._time_provider()
        self.last_run_started_at = started_at
        async with self._session_factory() as session:
            status = await self._health.get_status(session=session, name=self.name)
            manually_disabled = status.is_manually_disabled
        if manually_disabled:
            logger.info("sync_cycle_skipped integration=%s reason=manually_disabled", self.name)
            return CycleOutcome(integration=self.name, status=OUTCOME_SKIPPED_DISABLED, started_at=started_at)

        if self.config.quota is not None:
            # Ask for budget before waking the routine; an exhausted day defers the cycle.
            async with self._session_factory() as session:
                budget = await self._quota.get_snapshot(session=session, provider=self.name)
            if budget.ordinary_remaining == 0:
                exhausted = QuotaExhaustedError(self.name)
                logger.warning(
                    "sync_cycle_deferred integration=%s reason=quota_exhausted used=%s cap=%s",
                    self.name,
                    budget.used,
                    budget.operational_cap,
                )
                return CycleOutcome(
                    integration=self.name,
                    status=OUTCOME_DEFERRED_QUOTA,
                    started_at=started_at,
                    error=str(exhausted),
                )

        context = SyncContext(
            integration=self.name,
            config=self.config,
            started_at=started_at,
            quota=self._quota,
            session_factory=self._session_factory,
            stats={},
        )
        started = time.monotonic()
        try:
            await self._run_routine(context)
        except asyncio.CancelledError:
            raise
        except QuotaExhaustedError as exc:
            # Budget exhaustion is a deferral, not a provider failure.
            duration_ms = (time.monotonic() - started) * 1000.0
            logger.warning("sync_cycle_deferred integration=%s reason=%s", self.name, exc)
            return CycleOutcome(
                integration=self.name,
                status=OUTCOME_DEFERRED_QUOTA,
                started_at=started_at,
                duration_ms=duration_ms,
                error=str(exc),
                stats=dict(context.stats),
            )
        except Exception as exc:  # noqa: BLE001 - provider failures are recorded, never propagated.
            duration_ms = (time.monotonic() - started) * 1000.0
            failure = _failure_from(self.name, exc)
            record_sync(integration=self.name, duration_ms=duration_ms, success=False)
            async with self._session_factory() as session:
                await self._health.record_failure(
                    session=session,
                    name=self.name,
                    message=failure.message,
                    details=failure.details,
                )
            return CycleOutcome(
                integration=self.name,
                status=OUTCOME_FAILED,
                started_at=started_at,
                duration_ms=duration_ms,
                error=failure.message,
                stats=dict(context.stats),
            )

        duration_ms = (time.monotonic() - started) * 1000.0
        record_sync(integration=self.name, duration_ms=duration_ms, success=True)
        async with self._session_factory() as session:
            await self._health.record_success(
                session=session,
                name=self.name,
                duration=timedelta(milliseconds=duration_ms),
            )
            follow_on_job_id = await self._enqueue_follow_on(session, started_at)
        return CycleOutcome(
            integration=self.name,
            status=OUTCOME_SUCCEEDED,
            started_at=started_at,
            duration_ms=duration_ms,
            follow_on_job_id=follow_on_job_id,
            stats=dict(context.stats),
        )

    async def _run_routine(self, context: SyncContext) -> None:
        # The routine runs in its own task; cancelling the cycle abandons it rather than killing it.
        routine = asyncio.create_task(self._provider.sync(context), name=f"sync-routine:{self.name}")
        try:
            await asyncio.shield(routine)
        except asyncio.CancelledError:
            if not routine.done():
                _abandoned_routines.add(routine)
                routine.add_done_callback(_settle_abandoned)
                logger.warning("sync_routine_abandoned integration=%s", self.name)
            raise

    async def _enqueue_follow_on(self, session: AsyncSession, started_at: datetime) -> str | None:
        job_type = self.config.follow_on_job_type
        if not job_type:
            return None
        job_id = await self._dispatcher.enqueue(
            session=session,
            job_type=job_type,
            payload={"integration": self.name, "sync_started_at": started_at.isoformat()},
            created_by=f"scheduler:{self.name}",
            correlation_id=f"{self.name}:{started_at.isoformat()}",
        )
        logger.info("sync_follow_on_enqueued integration=%s job_id=%s job_type=%s", self.name, job_id, job_type)
        return job_id
