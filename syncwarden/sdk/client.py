from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

import httpx


class SyncWardenApiError(Exception):
    """Non-2xx response from the admin API, decoded from the error envelope."""

    def __init__(self, status_code: int, code: str, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(f"{status_code} {code}: {message}")
        self.status_code = status_code
        self.code = code
        self.message = message
        self.details = details or {}


def _retry_after_seconds(headers: httpx.Headers | dict[str, str] | None) -> float | None:
    if not headers:
        return None
    retry_after = headers.get("Retry-After")
    if retry_after:
        try:
            return float(retry_after)
        except ValueError:
            return None
    retry_ms = headers.get("X-RateLimit-Retry-After-Ms")
    if retry_ms:
        try:
            return float(retry_ms) / 1000.0
        except ValueError:
            return None
    return None


def _decode_error(response: httpx.Response) -> SyncWardenApiError:
    try:
        body = response.json()
    except ValueError:
        body = {}
    error = body.get("error") if isinstance(body, dict) else None
    if not isinstance(error, dict):
        return SyncWardenApiError(response.status_code, "HTTP_ERROR", response.text or response.reason_phrase)
    return SyncWardenApiError(
        response.status_code,
        str(error.get("code") or "HTTP_ERROR"),
        str(error.get("message") or ""),
        error.get("details"),
    )


class SyncWardenClient:
    """Async client for the /v1 admin and ops routes.

    Identity travels in the same trusted headers the gateway injects. 429 and
    503 responses are retried with the server's Retry-After hint, falling
    back to capped exponential backoff.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        *,
        user_id: str | None = None,
        role: str | None = None,
        max_retries: int = 2,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        headers: dict[str, str] = {}
        if user_id:
            headers["X-User-Id"] = user_id
        if role:
            headers["X-Role"] = role
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )
        self._max_retries = max_retries
        self._sleep = sleep

    async def __aenter__(self) -> "SyncWardenClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        attempt = 0
        while True:
            response = await self._client.request(method, f"/v1{path}", **kwargs)
            if response.status_code in {429, 503} and attempt < self._max_retries:
                retry_after = _retry_after_seconds(response.headers)
                if retry_after is None:
                    retry_after = min(2.0, 0.25 * (2 ** attempt))
                await self._sleep(retry_after)
                attempt += 1
                continue
            if response.status_code >= 400:
                raise _decode_error(response)
            return response.json()["data"]

    # Jobs
    async def list_jobs(
        self,
        *,
        status: str | None = None,
        job_type: str | None = None,
        page: int = 1,
        page_size: int | None = None,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {"page": page}
        if status:
            params["status"] = status
        if job_type:
            params["jobType"] = job_type
        if page_size:
            params["pageSize"] = page_size
        return await self._request("GET", "/admin/jobs", params=params)

    async def get_job(self, job_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/admin/jobs/{job_id}")

    async def job_stats(self) -> dict[str, Any]:
        return await self._request("GET", "/admin/jobs/stats")

    async def retry_job(self, job_id: str) -> dict[str, Any]:
        return await self._request("POST", f"/admin/jobs/{job_id}/retry")

    async def cancel_job(self, job_id: str) -> dict[str, Any]:
        return await self._request("POST", f"/admin/jobs/{job_id}/cancel")

    # Integrations
    async def list_integrations(self) -> list[dict[str, Any]]:
        data = await self._request("GET", "/admin/integrations")
        return data["items"]

    async def get_integration(self, integration: str) -> dict[str, Any]:
        return await self._request("GET", f"/admin/integrations/{integration}")

    async def data_availability(self) -> dict[str, bool]:
        return await self._request("GET", "/admin/integrations/availability")

    async def disable_integration(self, integration: str, reason: str) -> dict[str, Any]:
        return await self._request("POST", f"/admin/integrations/{integration}/disable", json={"reason": reason})

    async def enable_integration(self, integration: str) -> dict[str, Any]:
        return await self._request("POST", f"/admin/integrations/{integration}/enable")

    async def trigger_sync(self, integration: str) -> dict[str, Any]:
        return await self._request("POST", f"/admin/integrations/{integration}/sync")

    # Ops
    async def quotas(self) -> list[dict[str, Any]]:
        data = await self._request("GET", "/ops/quotas")
        return data["items"]
