from __future__ import annotations

import math
from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel, Field


API_VERSION = "v1"

T = TypeVar("T")


class PageInfo(BaseModel):
    page: int
    page_size: int
    total_count: int
    total_pages: int

    @classmethod
    def build(cls, *, page: int, page_size: int, total_count: int) -> "PageInfo":
        total_pages = math.ceil(total_count / page_size) if page_size > 0 else 0
        return cls(page=page, page_size=page_size, total_count=total_count, total_pages=total_pages)


class ResponseMeta(BaseModel):
    # Request/version metadata, plus paging for list endpoints.
    request_id: str
    api_version: str = Field(default=API_VERSION)
    page: PageInfo | None = None


class ErrorDetail(BaseModel):
    # Stable machine code, human message, optional structured details.
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


def get_request_id(request: Request) -> str:
    # Reuse the middleware-assigned id, else the caller's header, else mint one.
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    request_id = request.headers.get("X-Request-Id") or str(uuid4())
    request.state.request_id = request_id
    return request_id


def is_versioned_request(request: Request) -> bool:
    return request.url.path.startswith(f"/{API_VERSION}")


def _meta(request: Request, page: PageInfo | None = None) -> dict[str, Any]:
    return ResponseMeta(request_id=get_request_id(request), page=page).model_dump(exclude_none=True)


def success_response(*, request: Request, data: Any, page: PageInfo | None = None) -> Any:
    # Unversioned aliases return bare payloads; /v1 wraps them.
    if not is_versioned_request(request):
        if page is not None and isinstance(data, dict):
            return {**data, **page.model_dump()}
        return data
    return {"data": data, "meta": _meta(request, page)}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error = ErrorDetail(code=code, message=message, details=details)
    return {"error": error.model_dump(exclude_none=True), "meta": _meta(request)}
