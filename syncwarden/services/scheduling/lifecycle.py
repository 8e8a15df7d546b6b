from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import logging
from typing import Any, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from syncwarden.core.config import get_settings
from syncwarden.core.errors import NotFoundError
from syncwarden.persistence.db import SessionLocal
from syncwarden.services.integrations.health import (
    IntegrationHealthService,
    get_integration_health_service,
)
from syncwarden.services.integrations.providers import get_provider
from syncwarden.services.jobs.dispatcher import JobDispatcher, get_job_dispatcher
from syncwarden.services.quota import ProviderQuotaGuard, get_quota_guard
from syncwarden.services.scheduling.schedule import get_next_run_utc
from syncwarden.services.scheduling.worker import CycleOutcome, ScheduledSyncWorker, abandoned_routine_count


logger = logging.getLogger(__name__)

# Daily counters roll at UTC midnight.
_MAINTENANCE_HOUR_UTC = 0


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SyncScheduler:
    """Owns one sync worker task per enabled provider plus daily maintenance."""

    def __init__(
        self,
        *,
        health: IntegrationHealthService | None = None,
        quota: ProviderQuotaGuard | None = None,
        dispatcher: JobDispatcher | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        time_provider: Callable[[], datetime] | None = None,
        run_on_start: bool | None = None,
    ) -> None:
        self._health = health or get_integration_health_service()
        self._quota = quota or get_quota_guard()
        self._dispatcher = dispatcher or get_job_dispatcher()
        self._session_factory = session_factory or SessionLocal
        self._time_provider = time_provider or _utc_now
        self._run_on_start = run_on_start if run_on_start is not None else get_settings().scheduler_run_on_start
        self.workers: dict[str, ScheduledSyncWorker] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._stop_event = asyncio.Event()
        self._maintenance_task: asyncio.Task[None] | None = None
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    def _build_worker(self, name: str) -> ScheduledSyncWorker:
        config = self._health.integration_settings(name)
        return ScheduledSyncWorker(
            name=name,
            config=config,
            provider=get_provider(name),
            health=self._health,
            quota=self._quota,
            dispatcher=self._dispatcher,
            session_factory=self._session_factory,
            time_provider=self._time_provider,
            run_on_start=self._run_on_start,
        )

    async def start(self) -> None:
        if self._started:
            return
        self._stop_event = asyncio.Event()
        for name, config in get_settings().integrations.items():
            if not config.enabled:
                logger.info("sync_worker_not_started integration=%s reason=disabled_in_config", name)
                continue
            try:
                worker = self._build_worker(name)
            except Exception as exc:  # noqa: BLE001 - one misconfigured provider must not block the rest.
                logger.warning("sync_worker_not_started integration=%s reason=%s", name, exc)
                continue
            self.workers[name] = worker
            self._tasks[name] = asyncio.create_task(worker.run(), name=f"sync-worker:{name}")
        self._maintenance_task = asyncio.create_task(self._maintenance_loop(), name="sync-maintenance")
        self._started = True
        logger.info("sync_scheduler_started workers=%s", ",".join(sorted(self._tasks)) or "-")

    async def stop(self, *, grace_s: float = 5.0) -> None:
        # Wake every sleeping worker. Cycles still in flight after the grace period stop being
        # awaited; their routines run on detached and are never cancelled here.
        if not self._started:
            return
        self._stop_event.set()
        for worker in self.workers.values():
            worker.stop()
        tasks: list[asyncio.Task[Any]] = list(self._tasks.values())
        if self._maintenance_task is not None:
            tasks.append(self._maintenance_task)
        if tasks:
            _done, pending = await asyncio.wait(tasks, timeout=grace_s)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
                logger.warning(
                    "sync_scheduler_abandoned_inflight count=%s detached_routines=%s",
                    len(pending),
                    abandoned_routine_count(),
                )
        self._tasks.clear()
        self._maintenance_task = None
        self._started = False
        logger.info("sync_scheduler_stopped")

    async def trigger(self, name: str) -> CycleOutcome:
        # Run one cycle now through the provider's worker so it never overlaps a scheduled one.
        if name not in get_settings().integrations:
            raise NotFoundError("integration", name)
        worker = self.workers.get(name)
        if worker is None:
            worker = self._build_worker(name)
            self.workers[name] = worker
        logger.info("sync_cycle_triggered integration=%s", name)
        return await worker.run_cycle()

    async def _maintenance_loop(self) -> None:
        while not self._stop_event.is_set():
            next_reset = get_next_run_utc(self._time_provider(), _MAINTENANCE_HOUR_UTC)
            delay_s = max(0.0, (next_reset - self._time_provider()).total_seconds())
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay_s)
                return
            except asyncio.TimeoutError:
                pass
            try:
                async with self._session_factory() as session:
                    await self._health.reset_daily_counters(session=session)
            except Exception:  # noqa: BLE001 - keep maintenance alive while surfacing failures in logs.
                logger.exception("integration_daily_reset_failed")

    def status(self) -> list[dict[str, Any]]:
        rows: list[dict[str, Any]] = []
        for name in get_settings().integrations:
            worker = self.workers.get(name)
            outcome = worker.last_outcome if worker else None
            rows.append(
                {
                    "integration": name,
                    "running": bool(worker and worker.running),
                    "next_run_at": worker.next_run_at.isoformat() if worker and worker.next_run_at else None,
                    "last_run_started_at": (
                        worker.last_run_started_at.isoformat()
                        if worker and worker.last_run_started_at
                        else None
                    ),
                    "last_outcome": outcome.status if outcome else None,
                    "last_error": outcome.error if outcome else None,
                }
            )
        return rows


_scheduler: SyncScheduler | None = None


def get_sync_scheduler() -> SyncScheduler:
    global _scheduler
    if _scheduler is None:
        _scheduler = SyncScheduler()
    return _scheduler


def set_sync_scheduler(scheduler: SyncScheduler | None) -> None:
    global _scheduler
    _scheduler = scheduler
