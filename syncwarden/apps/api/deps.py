from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request, Response, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from syncwarden.apps.api.rate_limit import enforce_rate_limit, is_exempt_path
from syncwarden.core.config import get_settings
from syncwarden.persistence.db import get_session


ROLE_ORDER: dict[str, int] = {
    "reader": 1,
    "operator": 2,
    "admin": 3,
}


def normalize_role(role: str) -> str:
    # Enforce a stable, lowercased role vocabulary for RBAC checks.
    normalized = role.strip().lower()
    if normalized not in ROLE_ORDER:
        raise ValueError(f"Unsupported role: {role}")
    return normalized


def role_allows(*, role: str, minimum_role: str) -> bool:
    return ROLE_ORDER.get(role, 0) >= ROLE_ORDER.get(minimum_role, 0)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


class Principal(BaseModel):
    # Caller identity asserted by the fronting gateway.
    user_id: str | None
    role: str
    auth_method: str = "gateway_header"


_ANONYMOUS_ADMIN = Principal(user_id=None, role="admin", auth_method="auth_disabled")


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
    )


def _forbidden_error(message: str) -> HTTPException:
    # Use 403 for identified callers lacking permissions.
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": message},
    )


def get_optional_principal(request: Request) -> Principal | None:
    # Resolve identity headers without failing; used for rate-limit partitioning.
    settings = get_settings()
    if not settings.auth_enabled:
        return _ANONYMOUS_ADMIN
    user_id = (request.headers.get(settings.auth_user_header) or "").strip()
    if not user_id:
        return None
    role_header = request.headers.get(settings.auth_role_header) or "reader"
    try:
        role = normalize_role(role_header)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "AUTH_INVALID_ROLE", "message": str(exc)},
        ) from exc
    return Principal(user_id=user_id, role=role)


def get_current_principal(
    principal: Principal | None = Depends(get_optional_principal),
) -> Principal:
    if principal is None:
        raise _auth_error("Missing caller identity")
    return principal


def require_role(minimum_role: str):
    # Dependency factory to enforce RBAC at the route level.
    def _dependency(principal: Principal = Depends(get_current_principal)) -> Principal:
        if not role_allows(role=principal.role, minimum_role=minimum_role):
            raise _forbidden_error(f"Role '{minimum_role}' or higher is required")
        return principal

    return _dependency


async def rate_limit_guard(request: Request, response: Response) -> None:
    # App-wide admission gate. Health paths bypass it before any identity header is read.
    if is_exempt_path(request.url.path):
        return
    principal = get_optional_principal(request)
    await enforce_rate_limit(request=request, response=response, principal=principal)
