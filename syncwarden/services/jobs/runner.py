from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import logging
from typing import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from syncwarden.core.config import get_settings
from syncwarden.core.errors import InvalidTransitionError, NotFoundError
from syncwarden.domain.models import BackgroundJob
from syncwarden.persistence.db import SessionLocal
from syncwarden.persistence.repos import jobs as jobs_repo
from syncwarden.services.jobs.transitions import mark_completed, mark_failed, mark_processing


logger = logging.getLogger(__name__)

JobHandler = Callable[[BackgroundJob], Awaitable[str | None]]

RUN_OUTCOME_COMPLETED = "completed"
RUN_OUTCOME_FAILED = "failed"
RUN_OUTCOME_SKIPPED = "skipped"
RUN_OUTCOME_CANCELLED = "cancelled"

_handlers: dict[str, JobHandler] = {}


def register_job_handler(job_type: str) -> Callable[[JobHandler], JobHandler]:
    # Decorator registering the routine that consumes a job type's payload.
    def _decorator(handler: JobHandler) -> JobHandler:
        _handlers[job_type] = handler
        return handler

    return _decorator


def registered_job_types() -> list[str]:
    return sorted(_handlers)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class JobRunner:
    def __init__(
        self,
        *,
        handlers: dict[str, JobHandler] | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._handlers = handlers if handlers is not None else _handlers
        self._session_factory = session_factory or SessionLocal
        self._time_provider = time_provider or _utc_now

    def register(self, job_type: str, handler: JobHandler) -> None:
        self._handlers[job_type] = handler

    async def process_job(self, job_id: str) -> str:
        # Claim, execute and settle one job; each step commits on its own.
        async with self._session_factory() as session:
            try:
                job = await mark_processing(session, job_id=job_id, now=self._time_provider())
            except (InvalidTransitionError, NotFoundError) as exc:
                logger.info("job_claim_skipped job_id=%s reason=%s", job_id, exc)
                return RUN_OUTCOME_SKIPPED

        handler = self._handlers.get(job.job_type)
        if handler is None:
            return await self._settle_failure(job_id, f"No handler registered for job type '{job.job_type}'")
        try:
            result = await handler(job)
        except Exception as exc:  # noqa: BLE001 - handler failures are recorded on the job row.
            logger.exception("job_handler_failed job_id=%s job_type=%s", job_id, job.job_type)
            return await self._settle_failure(job_id, f"{type(exc).__name__}: {exc}")

        async with self._session_factory() as session:
            try:
                await mark_completed(session, job_id=job_id, now=self._time_provider(), result=result)
            except InvalidTransitionError:
                # An administrator cancelled the job while the handler ran.
                logger.info("job_cancelled_during_run job_id=%s", job_id)
                return RUN_OUTCOME_CANCELLED
        return RUN_OUTCOME_COMPLETED

    async def _settle_failure(self, job_id: str, error: str) -> str:
        async with self._session_factory() as session:
            try:
                await mark_failed(session, job_id=job_id, now=self._time_provider(), error=error)
            except InvalidTransitionError:
                logger.info("job_cancelled_during_run job_id=%s", job_id)
                return RUN_OUTCOME_CANCELLED
        return RUN_OUTCOME_FAILED

    async def run_once(self, *, limit: int | None = None) -> dict[str, int]:
        # Drain one batch of due pending jobs sequentially.
        batch = limit if limit is not None else get_settings().job_worker_batch_size
        async with self._session_factory() as session:
            job_ids = await jobs_repo.list_claimable_job_ids(
                session,
                now=self._time_provider(),
                limit=max(1, int(batch)),
            )
        outcomes: dict[str, int] = {}
        for job_id in job_ids:
            outcome = await self.process_job(job_id)
            outcomes[outcome] = outcomes.get(outcome, 0) + 1
        return outcomes

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        # Poll until stopped; the wait between batches wakes immediately on stop.
        interval_s = max(0.1, float(get_settings().job_worker_poll_interval_s))
        logger.info("job_runner_started interval_s=%s", interval_s)
        while not stop_event.is_set():
            try:
                await self.run_once()
            except Exception:  # noqa: BLE001 - keep the runner alive across storage hiccups.
                logger.exception("job_runner_cycle_failed")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval_s)
            except asyncio.TimeoutError:
                continue
        logger.info("job_runner_stopped")
