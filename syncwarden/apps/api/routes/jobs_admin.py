from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from syncwarden.apps.api.deps import Principal, get_db, require_role
from syncwarden.apps.api.errors import to_http_exception
from syncwarden.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from syncwarden.apps.api.response import PageInfo, SuccessEnvelope, success_response
from syncwarden.core.errors import SyncWardenError
from syncwarden.domain.models import BackgroundJob
from syncwarden.services.jobs.admin import get_job_admin


router = APIRouter(prefix="/admin/jobs", tags=["admin-jobs"], responses=DEFAULT_ERROR_RESPONSES)


class JobResponse(BaseModel):
    id: str
    job_type: str
    payload: str
    status: str
    retry_count: int
    last_error: str | None
    result: str | None
    created_by: str | None
    correlation_id: str | None
    scheduled_at: str | None
    created_at: str
    started_at: str | None
    completed_at: str | None
    updated_at: str


class JobListResponse(BaseModel):
    items: list[JobResponse]


class JobStatsResponse(BaseModel):
    total: int
    by_status: dict[str, int]


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _job_payload(job: BackgroundJob) -> dict[str, Any]:
    return {
        "id": job.id,
        "job_type": job.job_type,
        "payload": job.payload,
        "status": job.status,
        "retry_count": int(job.retry_count or 0),
        "last_error": job.last_error,
        "result": job.result,
        "created_by": job.created_by,
        "correlation_id": job.correlation_id,
        "scheduled_at": _iso(job.scheduled_at),
        "created_at": job.created_at.isoformat(),
        "started_at": _iso(job.started_at),
        "completed_at": _iso(job.completed_at),
        "updated_at": job.updated_at.isoformat(),
    }


@router.get("", response_model=SuccessEnvelope[JobListResponse] | dict[str, Any])
async def list_jobs(
    request: Request,
    status: str | None = Query(default=None),
    job_type: str | None = Query(default=None, alias="jobType"),
    page: int = Query(default=1, ge=1),
    page_size: int | None = Query(default=None, alias="pageSize", ge=1),
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("reader")),
) -> dict:
    try:
        result = await get_job_admin().list_jobs(
            session=db,
            status=status,
            job_type=job_type,
            page=page,
            page_size=page_size,
        )
    except ValueError as exc:
        raise HTTPException(
            status_code=400,
            detail={"code": "INVALID_FILTER", "message": str(exc)},
        ) from exc
    page_info = PageInfo.build(page=result.page, page_size=result.page_size, total_count=result.total_count)
    data = {"items": [_job_payload(job) for job in result.items]}
    return success_response(request=request, data=data, page=page_info)


# Registered before /{job_id} so "stats" is not captured as an id.
@router.get("/stats", response_model=SuccessEnvelope[JobStatsResponse] | JobStatsResponse)
async def job_stats(
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("reader")),
) -> dict:
    stats = await get_job_admin().get_stats(session=db)
    payload = JobStatsResponse(total=stats.total, by_status=stats.by_status)
    return success_response(request=request, data=payload)


@router.get("/{job_id}", response_model=SuccessEnvelope[JobResponse] | JobResponse)
async def get_job(
    job_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("reader")),
) -> dict:
    try:
        job = await get_job_admin().get_by_id(session=db, job_id=job_id)
    except SyncWardenError as exc:
        raise to_http_exception(exc) from exc
    return success_response(request=request, data=_job_payload(job))


@router.post("/{job_id}/retry", response_model=SuccessEnvelope[JobResponse] | JobResponse)
async def retry_job(
    job_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("operator")),
) -> dict:
    # Only failed or cancelled jobs may be retried; anything else is a 400.
    try:
        job = await get_job_admin().retry(session=db, job_id=job_id)
    except SyncWardenError as exc:
        raise to_http_exception(exc) from exc
    return success_response(request=request, data=_job_payload(job))


@router.post("/{job_id}/cancel", response_model=SuccessEnvelope[JobResponse] | JobResponse)
async def cancel_job(
    job_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("operator")),
) -> dict:
    try:
        job = await get_job_admin().cancel(session=db, job_id=job_id)
    except SyncWardenError as exc:
        raise to_http_exception(exc) from exc
    return success_response(request=request, data=_job_payload(job))
