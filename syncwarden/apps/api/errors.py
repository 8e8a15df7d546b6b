from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from syncwarden.apps.api.response import error_response, is_versioned_request
from syncwarden.core.errors import (
    InvalidTransitionError,
    NotFoundError,
    ProviderConfigError,
    QuotaExhaustedError,
    RateLimitedError,
    SyncFailureError,
    SyncWardenError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    502: "SYNC_FAILED",
    503: "SERVICE_UNAVAILABLE",
}


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def to_http_exception(exc: SyncWardenError) -> HTTPException:
    # Map service-layer errors onto stable HTTP status codes and error codes.
    if isinstance(exc, NotFoundError):
        return HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={
                "code": "NOT_FOUND",
                "message": str(exc),
                "resource": exc.resource,
                "id": exc.identifier,
            },
        )
    if isinstance(exc, InvalidTransitionError):
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "code": "INVALID_TRANSITION",
                "message": str(exc),
                "job_id": exc.job_id,
                "current_status": exc.current_status,
                "action": exc.action,
            },
        )
    if isinstance(exc, QuotaExhaustedError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "code": "QUOTA_EXHAUSTED",
                "message": str(exc),
                "provider": exc.provider,
                "feature": exc.feature,
            },
        )
    if isinstance(exc, RateLimitedError):
        retry_after_s = max(1, int(exc.retry_after_s))
        # Only the partition kind is echoed back, never the caller id or address.
        headers = {
            "Retry-After": str(retry_after_s),
            "X-RateLimit-Partition": exc.partition.split(":", 1)[0],
        }
        detail: dict[str, Any] = {
            "code": "RATE_LIMITED",
            "message": str(exc),
            "reason": exc.reason,
            "retry_after_s": retry_after_s,
        }
        if exc.retry_after_ms is not None:
            headers["X-RateLimit-Retry-After-Ms"] = str(exc.retry_after_ms)
            detail["retry_after_ms"] = exc.retry_after_ms
        return HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=detail,
            headers=headers,
        )
    if isinstance(exc, SyncFailureError):
        return HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"code": "SYNC_FAILED", "message": str(exc), "provider": exc.provider},
        )
    if isinstance(exc, ProviderConfigError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"code": "PROVIDER_NOT_CONFIGURED", "message": str(exc)},
        )
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"code": "INTERNAL_ERROR", "message": "Internal server error"},
    )


def _render(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    # Normalize HTTPExceptions into the shared error envelope for v1 routes.
    return _render(request, exc)


async def starlette_http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return _render(request, exc)


async def service_exception_handler(request: Request, exc: SyncWardenError) -> JSONResponse:
    # Service errors that escape a route are rendered the same way as explicit HTTP errors.
    return _render(request, to_http_exception(exc))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.errors()}, status_code=422)
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )
    return JSONResponse(content=payload, status_code=422)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.exception("unhandled_exception path=%s", request.url.path, exc_info=exc)
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": "Internal Server Error"}, status_code=500)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
