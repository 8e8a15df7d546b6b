from __future__ import annotations

from syncwarden.persistence.db import SessionLocal
from syncwarden.services.jobs.dispatcher import get_job_dispatcher
from syncwarden.services.jobs.transitions import mark_failed, mark_processing
from syncwarden.tests.utils.api import build_client
from syncwarden.tests.utils.fakes import auth_headers


async def _enqueue(job_type: str = "recalculate_standings") -> str:
    async with SessionLocal() as session:
        return await get_job_dispatcher().enqueue(session=session, job_type=job_type, payload={"season": 2026})


async def _fail(job_id: str) -> None:
    async with SessionLocal() as session:
        job = await mark_processing(session, job_id=job_id, now=_now())
        await mark_failed(session, job_id=job.id, now=_now(), error="upstream 502")


def _now():
    from datetime import datetime, timezone

    return datetime.now(timezone.utc)


async def test_list_jobs_returns_paged_envelope(monkeypatch) -> None:
    ids = [await _enqueue("sync_odds") for _ in range(3)]
    await _enqueue("sync_xg")
    async with build_client(monkeypatch) as client:
        response = await client.get(
            "/v1/admin/jobs",
            params={"jobType": "sync_odds", "page": 1, "pageSize": 2},
            headers=auth_headers(role="reader"),
        )
    assert response.status_code == 200
    body = response.json()
    assert len(body["data"]["items"]) == 2
    assert {item["id"] for item in body["data"]["items"]} <= set(ids)
    assert body["meta"]["page"] == {"page": 1, "page_size": 2, "total_count": 3, "total_pages": 2}
    assert response.headers["X-Request-Id"]


async def test_list_jobs_rejects_unknown_status(monkeypatch) -> None:
    async with build_client(monkeypatch) as client:
        response = await client.get("/v1/admin/jobs", params={"status": "exploded"}, headers=auth_headers())
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_FILTER"


async def test_stats_and_single_job(monkeypatch) -> None:
    job_id = await _enqueue()
    async with build_client(monkeypatch) as client:
        stats = await client.get("/v1/admin/jobs/stats", headers=auth_headers(role="reader"))
        single = await client.get(f"/v1/admin/jobs/{job_id}", headers=auth_headers(role="reader"))
        missing = await client.get("/v1/admin/jobs/does-not-exist", headers=auth_headers(role="reader"))
    assert stats.json()["data"]["by_status"]["pending"] == 1
    assert stats.json()["data"]["total"] == 1
    job = single.json()["data"]
    assert job["id"] == job_id
    assert job["status"] == "pending"
    assert job["payload"] == '{"season": 2026}'
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "NOT_FOUND"


async def test_retry_and_cancel_flow_over_http(monkeypatch) -> None:
    job_id = await _enqueue()
    headers = auth_headers(role="operator")
    async with build_client(monkeypatch) as client:
        rejected = await client.post(f"/v1/admin/jobs/{job_id}/retry", headers=headers)
        assert rejected.status_code == 400
        error = rejected.json()["error"]
        assert error["code"] == "INVALID_TRANSITION"
        assert error["details"]["current_status"] == "pending"

        await _fail(job_id)
        retried = await client.post(f"/v1/admin/jobs/{job_id}/retry", headers=headers)
        assert retried.status_code == 200
        assert retried.json()["data"]["status"] == "pending"
        assert retried.json()["data"]["retry_count"] == 1
        assert retried.json()["data"]["last_error"] is None

        cancelled = await client.post(f"/v1/admin/jobs/{job_id}/cancel", headers=headers)
        assert cancelled.json()["data"]["status"] == "cancelled"
        again = await client.post(f"/v1/admin/jobs/{job_id}/cancel", headers=headers)
        assert again.status_code == 400

        retried = await client.post(f"/v1/admin/jobs/{job_id}/retry", headers=headers)
        assert retried.json()["data"]["retry_count"] == 2

        missing = await client.post("/v1/admin/jobs/nope/cancel", headers=headers)
        assert missing.status_code == 404


async def test_mutations_require_operator_role(monkeypatch) -> None:
    job_id = await _enqueue()
    async with build_client(monkeypatch) as client:
        anonymous = await client.post(f"/v1/admin/jobs/{job_id}/cancel")
        reader = await client.post(f"/v1/admin/jobs/{job_id}/cancel", headers=auth_headers(role="reader"))
        bad_role = await client.get("/v1/admin/jobs", headers=auth_headers(role="superuser"))
    assert anonymous.status_code == 401
    assert anonymous.json()["error"]["code"] == "AUTH_UNAUTHORIZED"
    assert reader.status_code == 403
    assert reader.json()["error"]["code"] == "AUTH_FORBIDDEN"
    assert bad_role.status_code == 400


async def test_auth_disabled_grants_admin(monkeypatch) -> None:
    job_id = await _enqueue()
    async with build_client(monkeypatch, AUTH_ENABLED="false") as client:
        response = await client.post(f"/v1/admin/jobs/{job_id}/cancel")
    assert response.status_code == 200


async def test_legacy_routes_return_bare_payloads(monkeypatch) -> None:
    await _enqueue()
    async with build_client(monkeypatch) as client:
        response = await client.get("/admin/jobs", headers=auth_headers())
        missing = await client.get("/admin/jobs/nope", headers=auth_headers())
    body = response.json()
    assert response.headers["Deprecation"] == "true"
    assert body["total_count"] == 1
    assert body["page_size"] == 20
    assert len(body["items"]) == 1
    assert missing.status_code == 404
    assert missing.json()["detail"]["code"] == "NOT_FOUND"
