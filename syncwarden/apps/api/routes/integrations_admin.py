from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from syncwarden.apps.api.deps import Principal, get_db, require_role
from syncwarden.apps.api.errors import to_http_exception
from syncwarden.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from syncwarden.apps.api.response import SuccessEnvelope, success_response
from syncwarden.core.errors import SyncWardenError
from syncwarden.domain.models import IntegrationStatus
from syncwarden.services.integrations.health import (
    get_integration_health_service,
    has_fresh_data,
    is_data_stale,
    is_operational,
    success_rate_24h,
)
from syncwarden.services.scheduling.lifecycle import get_sync_scheduler


router = APIRouter(
    prefix="/admin/integrations",
    tags=["admin-integrations"],
    responses=DEFAULT_ERROR_RESPONSES,
)


class IntegrationResponse(BaseModel):
    integration_name: str
    health: str
    is_operational: bool
    has_fresh_data: bool
    is_data_stale: bool
    consecutive_failures: int
    last_success_at: str | None
    last_failure_at: str | None
    last_attempt_at: str | None
    last_error_message: str | None
    successful_syncs_24h: int
    total_failures_24h: int
    success_rate_24h: float
    average_sync_duration_ms: float | None
    stale_threshold_seconds: int
    is_manually_disabled: bool
    disabled_reason: str | None
    disabled_by: str | None
    disabled_at: str | None
    updated_at: str


class IntegrationListResponse(BaseModel):
    items: list[IntegrationResponse]


class DisableRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)


class SyncTriggerResponse(BaseModel):
    integration: str
    status: str
    started_at: str
    duration_ms: float
    error: str | None
    follow_on_job_id: str | None
    stats: dict[str, int] | None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _integration_payload(row: IntegrationStatus, *, now: datetime) -> dict[str, Any]:
    # Derived flags are computed at read time against the service clock.
    return {
        "integration_name": row.integration_name,
        "health": row.health,
        "is_operational": is_operational(row),
        "has_fresh_data": has_fresh_data(row, now=now),
        "is_data_stale": is_data_stale(row, now=now),
        "consecutive_failures": int(row.consecutive_failures or 0),
        "last_success_at": _iso(row.last_success_at),
        "last_failure_at": _iso(row.last_failure_at),
        "last_attempt_at": _iso(row.last_attempt_at),
        "last_error_message": row.last_error_message,
        "successful_syncs_24h": int(row.successful_syncs_24h or 0),
        "total_failures_24h": int(row.total_failures_24h or 0),
        "success_rate_24h": round(success_rate_24h(row), 2),
        "average_sync_duration_ms": row.average_sync_duration_ms,
        "stale_threshold_seconds": int(row.stale_threshold_seconds),
        "is_manually_disabled": bool(row.is_manually_disabled),
        "disabled_reason": row.disabled_reason,
        "disabled_by": row.disabled_by,
        "disabled_at": _iso(row.disabled_at),
        "updated_at": row.updated_at.isoformat(),
    }


@router.get("", response_model=SuccessEnvelope[IntegrationListResponse] | IntegrationListResponse)
async def list_integrations(
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("reader")),
) -> dict:
    # Every configured provider is listed, creating rows on first read.
    service = get_integration_health_service()
    rows = await service.get_all_statuses(session=db)
    now = service.now()
    return success_response(request=request, data={"items": [_integration_payload(row, now=now) for row in rows]})


@router.get("/availability", response_model=SuccessEnvelope[dict[str, bool]] | dict[str, bool])
async def data_availability(
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("reader")),
) -> dict:
    availability = await get_integration_health_service().get_data_availability(session=db)
    return success_response(request=request, data=availability)


@router.get("/{integration}", response_model=SuccessEnvelope[IntegrationResponse] | IntegrationResponse)
async def get_integration(
    integration: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("reader")),
) -> dict:
    service = get_integration_health_service()
    try:
        row = await service.get_status(session=db, name=integration)
    except SyncWardenError as exc:
        raise to_http_exception(exc) from exc
    return success_response(request=request, data=_integration_payload(row, now=service.now()))


@router.post("/{integration}/enable", response_model=SuccessEnvelope[IntegrationResponse] | IntegrationResponse)
async def enable_integration(
    integration: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("admin")),
) -> dict:
    service = get_integration_health_service()
    try:
        row = await service.enable(session=db, name=integration, actor=principal.user_id)
    except SyncWardenError as exc:
        raise to_http_exception(exc) from exc
    return success_response(request=request, data=_integration_payload(row, now=service.now()))


@router.post("/{integration}/disable", response_model=SuccessEnvelope[IntegrationResponse] | IntegrationResponse)
async def disable_integration(
    integration: str,
    body: DisableRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("admin")),
) -> dict:
    service = get_integration_health_service()
    try:
        row = await service.disable(
            session=db,
            name=integration,
            reason=body.reason,
            actor=principal.user_id,
        )
    except SyncWardenError as exc:
        raise to_http_exception(exc) from exc
    return success_response(request=request, data=_integration_payload(row, now=service.now()))


@router.post("/{integration}/sync", response_model=SuccessEnvelope[SyncTriggerResponse] | SyncTriggerResponse)
async def trigger_sync(
    integration: str,
    request: Request,
    principal: Principal = Depends(require_role("operator")),
) -> dict:
    # Runs one cycle inline; provider failures come back as a failed outcome, not an error.
    try:
        outcome = await get_sync_scheduler().trigger(integration)
    except SyncWardenError as exc:
        raise to_http_exception(exc) from exc
    payload = SyncTriggerResponse(
        integration=outcome.integration,
        status=outcome.status,
        started_at=outcome.started_at.isoformat(),
        duration_ms=round(outcome.duration_ms, 3),
        error=outcome.error,
        follow_on_job_id=outcome.follow_on_job_id,
        stats=outcome.stats,
    )
    return success_response(request=request, data=payload)
