from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from syncwarden.core.errors import NotFoundError
from syncwarden.domain.state import HEALTH_DEGRADED, HEALTH_DISABLED, HEALTH_HEALTHY, HEALTH_UNKNOWN
from syncwarden.persistence.db import SessionLocal
from syncwarden.services.integrations.health import IntegrationHealthService, success_rate_24h
from syncwarden.tests.utils.fakes import FakeClock


START = datetime(2026, 2, 16, 4, 0, tzinfo=timezone.utc)


def _service() -> tuple[IntegrationHealthService, FakeClock]:
    clock = FakeClock(START)
    return IntegrationHealthService(time_provider=clock), clock


async def test_get_status_lazily_creates_unknown_row() -> None:
    service, _clock = _service()
    async with SessionLocal() as session:
        row = await service.get_status(session=session, name="understat")
        again = await service.get_status(session=session, name="understat")
    assert row.health == HEALTH_UNKNOWN
    assert row.consecutive_failures == 0
    assert row.stale_threshold_seconds == 48 * 3600
    assert again.created_at == row.created_at


async def test_unknown_provider_is_not_found() -> None:
    service, _clock = _service()
    async with SessionLocal() as session:
        with pytest.raises(NotFoundError):
            await service.get_status(session=session, name="carrier_pigeon")


async def test_get_all_statuses_covers_every_configured_provider() -> None:
    service, _clock = _service()
    async with SessionLocal() as session:
        rows = await service.get_all_statuses(session=session)
    assert {row.integration_name for row in rows} == {
        "football_data_org",
        "api_football",
        "understat",
        "football_data_uk",
        "club_elo",
    }


async def test_failures_degrade_then_disable_and_success_recovers() -> None:
    service, clock = _service()
    async with SessionLocal() as session:
        row = await service.record_failure(session=session, name="understat", message="HTTP 500")
        assert row.health == HEALTH_DEGRADED
        assert row.consecutive_failures == 1
        assert row.last_error_message == "HTTP 500"
        for _ in range(4):
            clock.advance(minutes=5)
            row = await service.record_failure(session=session, name="understat", message="HTTP 500")
        assert row.consecutive_failures == 5
        assert row.health == HEALTH_DISABLED
        assert await service.is_operational(session=session, name="understat") is False

        clock.advance(minutes=5)
        row = await service.record_success(session=session, name="understat", duration=timedelta(seconds=2))
    assert row.health == HEALTH_HEALTHY
    assert row.consecutive_failures == 0
    assert row.last_error_message is None
    assert row.last_success_at == clock()
    assert row.average_sync_duration_ms == 2000.0
    assert row.total_failures_24h == 5
    assert row.successful_syncs_24h == 1
    assert success_rate_24h(row) == pytest.approx(100.0 / 6)


async def test_manual_disable_outranks_success() -> None:
    service, _clock = _service()
    async with SessionLocal() as session:
        await service.record_success(session=session, name="api_football")
        row = await service.disable(session=session, name="api_football", reason="key rotated", actor="ops")
        assert row.is_manually_disabled is True
        assert row.disabled_by == "ops"
        row = await service.record_success(session=session, name="api_football")
        assert row.health == HEALTH_DISABLED
        assert await service.is_operational(session=session, name="api_football") is False
        assert await service.has_fresh_data(session=session, name="api_football") is False


async def test_enable_resets_to_unknown_but_keeps_failure_history() -> None:
    service, _clock = _service()
    async with SessionLocal() as session:
        await service.record_failure(session=session, name="club_elo", message="timeout")
        await service.disable(session=session, name="club_elo", reason="maintenance")
        row = await service.enable(session=session, name="club_elo", actor="ops")
    assert row.health == HEALTH_UNKNOWN
    assert row.is_manually_disabled is False
    assert row.disabled_reason is None
    assert row.consecutive_failures == 1


async def test_fresh_data_expires_after_stale_threshold() -> None:
    service, clock = _service()
    async with SessionLocal() as session:
        assert await service.has_fresh_data(session=session, name="understat") is False
        await service.record_success(session=session, name="understat")
        assert await service.has_fresh_data(session=session, name="understat") is True
        clock.advance(hours=48)
        assert await service.has_fresh_data(session=session, name="understat") is True
        clock.advance(seconds=1)
        assert await service.has_fresh_data(session=session, name="understat") is False


async def test_data_availability_composes_fresh_and_operational_rules() -> None:
    service, _clock = _service()
    async with SessionLocal() as session:
        availability = await service.get_data_availability(session=session)
        # Never-synced providers are operational but have no fresh data.
        assert availability["xg"] is False
        assert availability["injuries"] is True

        await service.record_success(session=session, name="understat")
        await service.disable(session=session, name="api_football", reason="quota abuse")
        availability = await service.get_data_availability(session=session)
    assert availability["xg"] is True
    assert availability["injuries"] is False
    assert availability["lineups"] is True


async def test_reset_daily_counters_zeroes_rolling_counts() -> None:
    service, _clock = _service()
    async with SessionLocal() as session:
        await service.record_success(session=session, name="understat")
        await service.record_failure(session=session, name="understat", message="x")
        assert await service.reset_daily_counters(session=session) >= 1
        row = await service.get_status(session=session, name="understat")
    assert row.successful_syncs_24h == 0
    assert row.total_failures_24h == 0
    assert row.consecutive_failures == 1


async def test_concurrent_updates_are_not_lost() -> None:
    service, _clock = _service()

    async def _fail() -> None:
        async with SessionLocal() as session:
            await service.record_failure(session=session, name="football_data_uk", message="x")

    await asyncio.gather(*(_fail() for _ in range(3)))
    async with SessionLocal() as session:
        row = await service.get_status(session=session, name="football_data_uk")
    assert row.consecutive_failures == 3
