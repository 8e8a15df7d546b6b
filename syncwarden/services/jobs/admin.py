from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import math
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession

from syncwarden.core.config import get_settings
from syncwarden.core.errors import NotFoundError
from syncwarden.domain.models import BackgroundJob
from syncwarden.domain.state import JOB_STATUSES
from syncwarden.persistence.repos import jobs as jobs_repo
from syncwarden.services.jobs.dispatcher import JobDispatcher, get_job_dispatcher
from syncwarden.services.jobs.transitions import cancel_job, retry_job


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobPage:
    items: list[BackgroundJob]
    total_count: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        if self.page_size <= 0:
            return 0
        return math.ceil(self.total_count / self.page_size)


@dataclass(frozen=True)
class JobStats:
    total: int
    by_status: dict[str, int]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class JobAdminService:
    def __init__(
        self,
        *,
        dispatcher: JobDispatcher | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._dispatcher = dispatcher
        self._time_provider = time_provider or _utc_now

    def _get_dispatcher(self) -> JobDispatcher:
        # Resolve lazily so tests can swap the shared dispatcher after construction.
        return self._dispatcher or get_job_dispatcher()

    async def get_by_id(self, *, session: AsyncSession, job_id: str) -> BackgroundJob:
        job = await jobs_repo.get_job(session, job_id, refresh=True)
        if job is None:
            raise NotFoundError("job", job_id)
        return job

    async def list_jobs(
        self,
        *,
        session: AsyncSession,
        status: str | None = None,
        job_type: str | None = None,
        page: int = 1,
        page_size: int | None = None,
    ) -> JobPage:
        # Clamp paging inputs to configured bounds instead of rejecting them.
        settings = get_settings()
        if status is not None and status not in JOB_STATUSES:
            raise ValueError(f"Unknown job status: {status}")
        page = max(1, int(page))
        size = page_size if page_size is not None else settings.jobs_default_page_size
        size = min(max(1, int(size)), settings.jobs_max_page_size)
        items, total = await jobs_repo.list_jobs(
            session,
            status=status,
            job_type=job_type,
            offset=(page - 1) * size,
            limit=size,
        )
        return JobPage(items=items, total_count=total, page=page, page_size=size)

    async def get_stats(self, *, session: AsyncSession) -> JobStats:
        counts = await jobs_repo.count_by_status(session)
        return JobStats(total=sum(counts.values()), by_status=counts)

    async def retry(self, *, session: AsyncSession, job_id: str) -> BackgroundJob:
        # A successful retry makes the job eligible for pickup again.
        job = await retry_job(session, job_id=job_id, now=self._time_provider())
        await self._get_dispatcher().dispatch(job)
        return job

    async def cancel(self, *, session: AsyncSession, job_id: str) -> BackgroundJob:
        return await cancel_job(session, job_id=job_id, now=self._time_provider())


_job_admin: JobAdminService | None = None


def get_job_admin() -> JobAdminService:
    global _job_admin
    if _job_admin is None:
        _job_admin = JobAdminService()
    return _job_admin


def reset_job_admin() -> None:
    global _job_admin
    _job_admin = None
