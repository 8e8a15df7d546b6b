from __future__ import annotations

from typing import Any

from syncwarden.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _error_response(
    description: str,
    *,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {
            "application/json": {
                "example": _error_example(code=code, message=message, details=details),
            }
        },
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    400: _error_response(
        "Invalid job transition",
        code="INVALID_TRANSITION",
        message="Cannot retry job 3f2c... in status 'completed'",
        details={"job_id": "3f2c...", "current_status": "completed", "action": "retry"},
    ),
    401: _error_response(
        "Unauthorized",
        code="AUTH_UNAUTHORIZED",
        message="Missing caller identity",
    ),
    403: _error_response(
        "Forbidden",
        code="AUTH_FORBIDDEN",
        message="Insufficient role for this operation",
    ),
    404: _error_response(
        "Not found",
        code="NOT_FOUND",
        message="job not found: 3f2c...",
        details={"resource": "job", "id": "3f2c..."},
    ),
    409: _error_response(
        "Outbound quota exhausted",
        code="QUOTA_EXHAUSTED",
        message="Daily quota exhausted for api_football",
        details={"provider": "api_football", "feature": None},
    ),
    422: _error_response(
        "Validation error",
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
    ),
    429: _error_response(
        "Rate limited",
        code="RATE_LIMITED",
        message="Rate limit exceeded",
        details={"reason": "token_bucket_exhausted", "retry_after_s": 2, "retry_after_ms": 1200},
    ),
    500: _error_response(
        "Internal server error",
        code="INTERNAL_ERROR",
        message="Internal server error",
    ),
    503: _error_response(
        "Service unavailable",
        code="SERVICE_UNAVAILABLE",
        message="Service unavailable",
    ),
}
