from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from syncwarden.apps.api.deps import Principal, get_db, require_role
from syncwarden.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from syncwarden.apps.api.response import SuccessEnvelope, success_response
from syncwarden.core.config import get_settings
from syncwarden.persistence.db import pool_stats
from syncwarden.services.quota import QuotaSnapshot, get_quota_guard
from syncwarden.services.integrations.providers import registered_providers
from syncwarden.services.jobs.runner import registered_job_types
from syncwarden.services.scheduling.lifecycle import get_sync_scheduler
from syncwarden.services.scheduling.worker import abandoned_routine_count
from syncwarden.services.telemetry import availability, counters_snapshot, sync_stats_by_integration


router = APIRouter(prefix="/ops", tags=["ops"], responses=DEFAULT_ERROR_RESPONSES)


class OpsHealthResponse(BaseModel):
    status: str
    api: str
    db: str
    scheduler_running: bool
    checked_at: str


class QuotaFeatureResponse(BaseModel):
    limit: int | None
    used: int


class QuotaResponse(BaseModel):
    provider: str
    period_start: str
    hard_daily_limit: int | None
    operational_cap: int | None
    safety_reserve: int
    used: int
    remaining: int | None
    ordinary_remaining: int | None
    features: dict[str, QuotaFeatureResponse]


class QuotaListResponse(BaseModel):
    items: list[QuotaResponse]


class SchedulerWorkerResponse(BaseModel):
    integration: str
    running: bool
    next_run_at: str | None
    last_run_started_at: str | None
    last_outcome: str | None
    last_error: str | None


class SchedulerStatusResponse(BaseModel):
    started: bool
    workers: list[SchedulerWorkerResponse]
    registered_providers: list[str]
    job_types: list[str]
    abandoned_routines: int


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def _check_db_health(db: AsyncSession) -> bool:
    # Keep the DB check lightweight to avoid introducing new load.
    try:
        await db.execute(select(1))
        return True
    except SQLAlchemyError:
        return False


def _quota_payload(snapshot: QuotaSnapshot) -> dict[str, Any]:
    return {
        "provider": snapshot.provider,
        "period_start": snapshot.period_start.isoformat(),
        "hard_daily_limit": snapshot.hard_daily_limit,
        "operational_cap": snapshot.operational_cap,
        "safety_reserve": snapshot.safety_reserve,
        "used": snapshot.used,
        "remaining": snapshot.remaining,
        "ordinary_remaining": snapshot.ordinary_remaining,
        "features": {
            name: {"limit": usage.limit, "used": usage.used} for name, usage in snapshot.features.items()
        },
    }


@router.get("/health", response_model=SuccessEnvelope[OpsHealthResponse] | OpsHealthResponse)
async def ops_health(request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    # Unauthenticated readiness check; exempt from rate limiting like /health.
    db_ok = await _check_db_health(db)
    payload = OpsHealthResponse(
        status="ok" if db_ok else "degraded",
        api="ok",
        db="ok" if db_ok else "degraded",
        scheduler_running=get_sync_scheduler().started,
        checked_at=_utc_now().isoformat(),
    )
    return success_response(request=request, data=payload)


@router.get("/quotas", response_model=SuccessEnvelope[QuotaListResponse] | QuotaListResponse)
async def ops_quotas(
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("operator")),
) -> dict:
    # Only providers with a configured budget are reported.
    guard = get_quota_guard()
    items = []
    for name, config in get_settings().integrations.items():
        if config.quota is None:
            continue
        items.append(_quota_payload(await guard.get_snapshot(session=db, provider=name)))
    return success_response(request=request, data={"items": items})


@router.get("/scheduler", response_model=SuccessEnvelope[SchedulerStatusResponse] | SchedulerStatusResponse)
async def ops_scheduler(
    request: Request,
    principal: Principal = Depends(require_role("operator")),
) -> dict:
    # Registrations come from plugin modules; a configured provider without one never gets a worker.
    scheduler = get_sync_scheduler()
    payload = SchedulerStatusResponse(
        started=scheduler.started,
        workers=scheduler.status(),
        registered_providers=registered_providers(),
        job_types=registered_job_types(),
        abandoned_routines=abandoned_routine_count(),
    )
    return success_response(request=request, data=payload)


@router.get("/metrics", response_model=SuccessEnvelope[dict[str, Any]] | dict[str, Any])
async def ops_metrics(
    request: Request,
    window_s: int = Query(default=3600, ge=60, le=86400),
    principal: Principal = Depends(require_role("operator")),
) -> dict:
    payload = {
        "window_s": window_s,
        "availability_pct": availability(window_s),
        "sync": sync_stats_by_integration(window_s),
        "counters": counters_snapshot(),
        "db_pool": pool_stats(),
    }
    return success_response(request=request, data=payload)
