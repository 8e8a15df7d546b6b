from __future__ import annotations

import httpx
import pytest

from syncwarden.sdk.client import SyncWardenApiError, SyncWardenClient, _retry_after_seconds


def _envelope(data):
    return {"data": data, "meta": {"request_id": "req-1", "api_version": "v1"}}


def test_retry_after_prefers_seconds_header() -> None:
    assert _retry_after_seconds({"Retry-After": "3"}) == 3.0
    assert _retry_after_seconds({"X-RateLimit-Retry-After-Ms": "1500"}) == 1.5
    assert _retry_after_seconds({"Retry-After": "soon"}) is None
    assert _retry_after_seconds(None) is None


async def test_client_sends_identity_and_unwraps_data() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=_envelope({"items": [{"id": "j1"}]}))

    async with SyncWardenClient(
        "http://api.test/",
        user_id="alice",
        role="operator",
        transport=httpx.MockTransport(handler),
    ) as client:
        data = await client.list_jobs(status="failed", job_type="sync_odds", page_size=5)

    assert data == {"items": [{"id": "j1"}]}
    request = seen[0]
    assert request.url.path == "/v1/admin/jobs"
    assert request.url.params["jobType"] == "sync_odds"
    assert request.url.params["pageSize"] == "5"
    assert request.headers["X-User-Id"] == "alice"
    assert request.headers["X-Role"] == "operator"


async def test_client_retries_rate_limited_calls() -> None:
    responses = [
        httpx.Response(429, headers={"Retry-After": "2"}, json={"error": {"code": "RATE_LIMITED", "message": "slow"}}),
        httpx.Response(200, json=_envelope({"status": "succeeded"})),
    ]
    slept: list[float] = []

    async def fake_sleep(delay: float) -> None:
        slept.append(delay)

    async with SyncWardenClient(
        transport=httpx.MockTransport(lambda request: responses.pop(0)),
        sleep=fake_sleep,
    ) as client:
        outcome = await client.trigger_sync("understat")

    assert outcome == {"status": "succeeded"}
    assert slept == [2.0]


async def test_client_raises_decoded_errors() -> None:
    body = {
        "error": {"code": "INVALID_TRANSITION", "message": "no", "details": {"current_status": "pending"}},
        "meta": {"request_id": "req-2", "api_version": "v1"},
    }
    async with SyncWardenClient(transport=httpx.MockTransport(lambda request: httpx.Response(400, json=body))) as client:
        with pytest.raises(SyncWardenApiError) as excinfo:
            await client.retry_job("j1")
    assert excinfo.value.status_code == 400
    assert excinfo.value.code == "INVALID_TRANSITION"
    assert excinfo.value.details == {"current_status": "pending"}


async def test_client_gives_up_after_max_retries() -> None:
    async def no_sleep(delay: float) -> None:
        return None

    transport = httpx.MockTransport(lambda request: httpx.Response(503, text="down"))
    async with SyncWardenClient(transport=transport, max_retries=1, sleep=no_sleep) as client:
        with pytest.raises(SyncWardenApiError) as excinfo:
            await client.quotas()
    assert excinfo.value.status_code == 503
    assert excinfo.value.code == "HTTP_ERROR"
