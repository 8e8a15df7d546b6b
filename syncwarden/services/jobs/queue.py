from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings

from syncwarden.core.config import get_settings
from syncwarden.core.errors import ProviderConfigError
from syncwarden.domain.models import BackgroundJob


logger = logging.getLogger(__name__)

QUEUE_BACKEND_DATABASE = "database"
QUEUE_BACKEND_ARQ = "arq"

# arq function name consumed by syncwarden.workers.job_worker.
PROCESS_JOB_FUNCTION = "process_background_job"


class JobQueue(Protocol):
    # Hand-off seam between the job table and whatever executes pending jobs.
    name: str

    async def notify(self, job: BackgroundJob) -> bool:
        ...


class DatabaseJobQueue:
    """Pending rows are the queue; runners discover them by scanning the table."""

    name = QUEUE_BACKEND_DATABASE

    async def notify(self, job: BackgroundJob) -> bool:
        logger.info("job_dispatched job_id=%s job_type=%s backend=database", job.id, job.job_type)
        return True


class ArqJobQueue:
    """Push job ids onto an arq queue so a separate worker process executes them."""

    name = QUEUE_BACKEND_ARQ

    def __init__(self, *, redis_url: str | None = None, queue_name: str | None = None) -> None:
        settings = get_settings()
        self._redis_url = redis_url or settings.redis_url
        self._queue_name = queue_name or settings.job_queue_name
        self._pool: ArqRedis | None = None
        self._pool_loop: asyncio.AbstractEventLoop | None = None
        self._lock = asyncio.Lock()

    async def _get_pool(self) -> ArqRedis:
        # Drop loop-bound pools to avoid cross-loop errors in tests.
        current_loop = asyncio.get_running_loop()
        if self._pool is not None and self._pool_loop == current_loop:
            return self._pool
        async with self._lock:
            if self._pool is None or self._pool_loop != current_loop:
                self._pool = await create_pool(
                    RedisSettings.from_dsn(self._redis_url),
                    default_queue_name=self._queue_name,
                )
                self._pool_loop = current_loop
        return self._pool

    async def notify(self, job: BackgroundJob) -> bool:
        # Best effort: the pending row stays claimable by the table-scan runner if redis is down.
        try:
            pool = await self._get_pool()
            await pool.enqueue_job(PROCESS_JOB_FUNCTION, job.id, _queue_name=self._queue_name)
        except Exception:  # noqa: BLE001 - enqueue failures must not fail the caller's transaction.
            logger.warning("job_dispatch_failed job_id=%s backend=arq", job.id, exc_info=True)
            return False
        logger.info("job_dispatched job_id=%s job_type=%s backend=arq", job.id, job.job_type)
        return True


def build_job_queue(backend: str | None = None) -> JobQueue:
    selected = (backend or get_settings().job_queue_backend).lower()
    if selected == QUEUE_BACKEND_DATABASE:
        return DatabaseJobQueue()
    if selected == QUEUE_BACKEND_ARQ:
        return ArqJobQueue()
    raise ProviderConfigError(f"Unsupported job_queue_backend: {selected}")
