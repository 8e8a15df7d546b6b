from __future__ import annotations

import os

# Point the shared engine at in-memory SQLite before any syncwarden module builds it.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest

from syncwarden.apps.api import rate_limit
from syncwarden.core.config import get_settings
from syncwarden.domain.models import Base
from syncwarden.persistence.db import engine
from syncwarden.services.integrations.health import set_integration_health_service
from syncwarden.services.integrations.providers import clear_providers
from syncwarden.services.jobs.admin import reset_job_admin
from syncwarden.services.jobs.dispatcher import reset_job_dispatcher
from syncwarden.services.quota import set_quota_guard
from syncwarden.services.scheduling.lifecycle import set_sync_scheduler
from syncwarden.services.telemetry import reset_telemetry


def _reset_singletons() -> None:
    get_settings.cache_clear()
    rate_limit.reset_rate_limiter_state()
    reset_job_dispatcher()
    reset_job_admin()
    set_integration_health_service(None)
    set_quota_guard(None)
    set_sync_scheduler(None)
    clear_providers()
    reset_telemetry()


@pytest.fixture(autouse=True)
async def fresh_database() -> None:
    # Each test gets empty tables; disposing the static pool drops the in-memory DB.
    _reset_singletons()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()
    _reset_singletons()
