from __future__ import annotations

from syncwarden.persistence.db import SessionLocal
from syncwarden.services.integrations.providers import SyncContext, register_provider
from syncwarden.services.jobs import runner
from syncwarden.services.quota import get_quota_guard
from syncwarden.tests.utils.api import build_client
from syncwarden.tests.utils.fakes import auth_headers


async def _understat_ok(context: SyncContext) -> None:
    context.stats["matches"] = 10


async def _noop_handler(job) -> None:
    return None


async def test_ops_health_needs_no_identity(monkeypatch) -> None:
    async with build_client(monkeypatch) as client:
        response = await client.get("/v1/ops/health")
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "ok"
    assert data["api"] == "ok"
    assert data["scheduler_running"] is False


async def test_quota_snapshots_cover_budgeted_providers(monkeypatch) -> None:
    async with SessionLocal() as session:
        assert await get_quota_guard().try_reserve(session=session, provider="api_football", cost=5, feature="injuries")
    async with build_client(monkeypatch) as client:
        response = await client.get("/v1/ops/quotas", headers=auth_headers(role="operator"))
        reader = await client.get("/v1/ops/quotas", headers=auth_headers(role="reader"))

    assert response.status_code == 200
    items = {item["provider"]: item for item in response.json()["data"]["items"]}
    assert set(items) == {"football_data_org", "api_football"}

    api_football = items["api_football"]
    assert api_football["used"] == 5
    assert api_football["remaining"] == 85
    assert api_football["ordinary_remaining"] == 75
    assert api_football["features"]["injuries"] == {"limit": 50, "used": 5}

    football_data = items["football_data_org"]
    assert football_data["used"] == 0
    assert football_data["ordinary_remaining"] == 11000
    assert reader.status_code == 403


async def test_scheduler_status_lists_configured_workers(monkeypatch) -> None:
    register_provider("understat", _understat_ok)
    monkeypatch.setattr(runner, "_handlers", {"recalculate_standings": _noop_handler})
    async with build_client(monkeypatch) as client:
        await client.post("/v1/admin/integrations/understat/sync", headers=auth_headers())
        response = await client.get("/v1/ops/scheduler", headers=auth_headers(role="operator"))
    data = response.json()["data"]
    assert data["started"] is False
    workers = {row["integration"]: row for row in data["workers"]}
    assert len(workers) == 5
    assert workers["understat"]["last_outcome"] == "succeeded"
    assert workers["understat"]["running"] is False
    assert workers["club_elo"]["last_outcome"] is None
    assert data["registered_providers"] == ["understat"]
    assert data["job_types"] == ["recalculate_standings"]
    assert data["abandoned_routines"] == 0


async def test_metrics_report_syncs_and_counters(monkeypatch) -> None:
    register_provider("understat", _understat_ok)
    async with build_client(monkeypatch) as client:
        await client.post("/v1/admin/integrations/understat/sync", headers=auth_headers())
        response = await client.get("/v1/ops/metrics", params={"window_s": 600}, headers=auth_headers())
        too_small = await client.get("/v1/ops/metrics", params={"window_s": 5}, headers=auth_headers())

    data = response.json()["data"]
    assert data["window_s"] == 600
    assert data["sync"]["understat"]["runs"] == 1
    assert data["sync"]["understat"]["failures"] == 0
    assert data["availability_pct"] == 100.0
    assert "db_pool" in data
    assert too_small.status_code == 422
