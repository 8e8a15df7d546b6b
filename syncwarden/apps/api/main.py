from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime
import logging
import time
from typing import AsyncIterator
from uuid import uuid4

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from syncwarden.apps.api.deps import rate_limit_guard
from syncwarden.apps.api.errors import (
    http_exception_handler,
    service_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from syncwarden.apps.api.response import API_VERSION
from syncwarden.apps.api.routes.health import router as health_router
from syncwarden.apps.api.routes.integrations_admin import router as integrations_admin_router
from syncwarden.apps.api.routes.jobs_admin import router as jobs_admin_router
from syncwarden.apps.api.routes.ops import router as ops_router
from syncwarden.core.config import get_settings
from syncwarden.core.errors import SyncWardenError
from syncwarden.core.logging import configure_logging
from syncwarden.services.plugins import ensure_plugins_loaded
from syncwarden.services.scheduling.lifecycle import get_sync_scheduler
from syncwarden.services.telemetry import record_request


logger = logging.getLogger(__name__)

_LEGACY_SUNSET_DAYS = 90
_LEGACY_EXEMPT_PREFIXES = (
    "/v1",
    "/docs",
    "/openapi.json",
    "/redoc",
    "/health",
)

_ROUTERS = (
    health_router,
    jobs_admin_router,
    integrations_admin_router,
    ops_router,
)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    # Sync workers share the API process only when explicitly enabled.
    settings = get_settings()
    ensure_plugins_loaded()
    scheduler = get_sync_scheduler() if settings.scheduler_enabled else None
    if scheduler is not None:
        await scheduler.start()
    try:
        yield
    finally:
        if scheduler is not None:
            await scheduler.stop()


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(
        title="SyncWarden API",
        version=API_VERSION,
        lifespan=lifespan,
        dependencies=[Depends(rate_limit_guard)],
    )

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        record_request(path=request.url.path, status_code=response.status_code, latency_ms=latency_ms)
        response.headers.setdefault("X-Request-Id", request_id)
        # Mark legacy routes with deprecation headers to guide clients to /v1.
        if not request.url.path.startswith(_LEGACY_EXEMPT_PREFIXES):
            sunset_at = datetime.now(timezone.utc) + timedelta(days=_LEGACY_SUNSET_DAYS)
            response.headers["Deprecation"] = "true"
            response.headers["Sunset"] = format_datetime(sunset_at)
            response.headers["Link"] = '</v1/docs>; rel="successor-version"'
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(SyncWardenError)
    async def _service_exception_handler(request: Request, exc: SyncWardenError):
        return await service_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    # Mount versioned v1 API routes.
    for router in _ROUTERS:
        app.include_router(router, prefix=f"/{API_VERSION}")
    # Retain unversioned routes as deprecated compatibility aliases.
    for router in _ROUTERS:
        app.include_router(router, include_in_schema=False)

    @app.get("/v1/openapi.json", include_in_schema=False)
    async def openapi_json() -> JSONResponse:
        return JSONResponse(app.openapi())

    @app.get("/v1/docs", include_in_schema=False)
    async def v1_docs() -> HTMLResponse:
        return get_swagger_ui_html(openapi_url="/v1/openapi.json", title="SyncWarden API v1")

    @app.get("/docs", include_in_schema=False)
    async def docs_redirect() -> RedirectResponse:
        return RedirectResponse(url="/v1/docs")

    logger.info(
        "api_created app=%s rate_limit=%s scheduler=%s",
        settings.app_name,
        settings.rate_limit_enabled,
        settings.scheduler_enabled,
    )
    return app


app = create_app()
