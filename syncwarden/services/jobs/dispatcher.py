from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
from typing import Any, Callable
from uuid import uuid4

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from syncwarden.domain.models import BackgroundJob
from syncwarden.persistence.repos import jobs as jobs_repo
from syncwarden.services.jobs.queue import JobQueue, build_job_queue
from syncwarden.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def serialize_payload(payload: Any) -> str:
    # Payloads are stored opaque; strings pass through, everything else becomes JSON.
    if payload is None:
        return "{}"
    if isinstance(payload, str):
        return payload
    if isinstance(payload, bytes):
        return payload.decode("utf-8")
    if isinstance(payload, BaseModel):
        return payload.model_dump_json()
    return json.dumps(payload, default=str, sort_keys=True)


class JobDispatcher:
    def __init__(
        self,
        *,
        queue: JobQueue | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        # Allow injecting the queue and clock for deterministic tests.
        self._queue = queue or build_job_queue()
        self._time_provider = time_provider or _utc_now

    @property
    def queue(self) -> JobQueue:
        return self._queue

    async def enqueue(
        self,
        *,
        session: AsyncSession,
        job_type: str,
        payload: Any = None,
        created_by: str | None = None,
        correlation_id: str | None = None,
        scheduled_at: datetime | None = None,
        dispatch: bool = True,
    ) -> str:
        # Persist first so the record exists even if the hand-off is lost.
        if not job_type:
            raise ValueError("job_type is required")
        job_id = uuid4().hex
        job = await jobs_repo.create_job(
            session,
            job_id=job_id,
            job_type=job_type,
            payload=serialize_payload(payload),
            created_at=self._time_provider(),
            created_by=created_by,
            correlation_id=correlation_id,
            scheduled_at=scheduled_at,
        )
        await session.commit()
        increment_counter("jobs.enqueued")
        logger.info("job_enqueued job_id=%s job_type=%s", job_id, job_type)
        if dispatch:
            await self.dispatch(job)
        return job_id

    async def dispatch(self, job: BackgroundJob) -> bool:
        # Notification only; execution belongs to whatever consumes pending jobs.
        delivered = await self._queue.notify(job)
        increment_counter("jobs.dispatched" if delivered else "jobs.dispatch_failed")
        return delivered


_dispatcher: JobDispatcher | None = None


def get_job_dispatcher() -> JobDispatcher:
    # Cache the dispatcher so requests share the queue connection.
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = JobDispatcher()
    return _dispatcher


def set_job_dispatcher(dispatcher: JobDispatcher | None) -> None:
    global _dispatcher
    _dispatcher = dispatcher


def reset_job_dispatcher() -> None:
    # Drop cached queue connections for deterministic test setup.
    set_job_dispatcher(None)
