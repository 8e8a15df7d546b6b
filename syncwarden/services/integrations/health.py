from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
import logging
from typing import Callable

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from syncwarden.core.config import IntegrationSettings, get_settings
from syncwarden.core.errors import NotFoundError
from syncwarden.domain.models import IntegrationStatus
from syncwarden.domain.state import (
    HEALTH_DEGRADED,
    HEALTH_DISABLED,
    HEALTH_HEALTHY,
    HEALTH_UNKNOWN,
)
from syncwarden.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    # Use UTC so staleness math matches timestamps written by every process.
    return datetime.now(timezone.utc)


def stale_threshold(row: IntegrationStatus) -> timedelta:
    return timedelta(seconds=int(row.stale_threshold_seconds))


def is_data_stale(row: IntegrationStatus, *, now: datetime) -> bool:
    # Data never synced is not "stale"; it is simply absent.
    if row.last_success_at is None:
        return False
    return now - row.last_success_at > stale_threshold(row)


def success_rate_24h(row: IntegrationStatus) -> float:
    attempts = int(row.successful_syncs_24h) + int(row.total_failures_24h)
    if attempts == 0:
        return 0.0
    return (int(row.successful_syncs_24h) / attempts) * 100.0


def is_operational(row: IntegrationStatus) -> bool:
    return not row.is_manually_disabled and row.health != HEALTH_DISABLED


def has_fresh_data(row: IntegrationStatus, *, now: datetime) -> bool:
    if not is_operational(row) or row.last_success_at is None:
        return False
    return now - row.last_success_at <= stale_threshold(row)


def failure_health(consecutive_failures: int, *, degraded_after: int, unavailable_after: int) -> str | None:
    # Map a failure streak to computed health; None leaves the current value in place.
    if consecutive_failures >= unavailable_after:
        return HEALTH_DISABLED
    if consecutive_failures >= degraded_after:
        return HEALTH_DEGRADED
    return None


class IntegrationHealthService:
    def __init__(self, *, time_provider: Callable[[], datetime] | None = None) -> None:
        # Allow time injection for deterministic staleness tests.
        self._time_provider = time_provider or _utc_now
        # Serialize read-modify-write per provider inside this process; row locks cover the rest.
        self._locks: dict[str, asyncio.Lock] = {}

    def now(self) -> datetime:
        return self._time_provider()

    def known_integrations(self) -> list[str]:
        return list(get_settings().integrations)

    def integration_settings(self, name: str) -> IntegrationSettings:
        config = get_settings().integrations.get(name)
        if config is None:
            raise NotFoundError("integration", name)
        return config

    def _lock_for(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[name] = lock
        return lock

    def _new_row(self, name: str) -> IntegrationStatus:
        config = self.integration_settings(name)
        now = self.now()
        return IntegrationStatus(
            integration_name=name,
            health=HEALTH_UNKNOWN,
            consecutive_failures=0,
            successful_syncs_24h=0,
            total_failures_24h=0,
            stale_threshold_seconds=int(config.stale_after_hours * 3600),
            is_manually_disabled=False,
            created_at=now,
            updated_at=now,
        )

    async def _select(self, session: AsyncSession, name: str, *, for_update: bool) -> IntegrationStatus | None:
        stmt = (
            select(IntegrationStatus)
            .where(IntegrationStatus.integration_name == name)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def _ensure_row(self, session: AsyncSession, name: str) -> None:
        # Create the row on first sight; a concurrent creator winning the insert is fine.
        self.integration_settings(name)
        if await self._select(session, name, for_update=False) is not None:
            return
        session.add(self._new_row(name))
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            return
        logger.info("integration_status_created integration=%s", name)

    async def get_status(self, *, session: AsyncSession, name: str) -> IntegrationStatus:
        await self._ensure_row(session, name)
        row = await self._select(session, name, for_update=False)
        if row is None:
            raise NotFoundError("integration", name)
        return row

    async def get_all_statuses(self, *, session: AsyncSession) -> list[IntegrationStatus]:
        # Populate every configured provider so callers never see a gap.
        return [await self.get_status(session=session, name=name) for name in self.known_integrations()]

    async def _mutate(
        self,
        *,
        session: AsyncSession,
        name: str,
        apply: Callable[[IntegrationStatus, datetime], None],
    ) -> IntegrationStatus:
        async with self._lock_for(name):
            await self._ensure_row(session, name)
            row = await self._select(session, name, for_update=True)
            if row is None:
                raise NotFoundError("integration", name)
            now = self.now()
            apply(row, now)
            row.updated_at = now
            await session.commit()
            return row

    async def record_success(
        self,
        *,
        session: AsyncSession,
        name: str,
        duration: timedelta | None = None,
    ) -> IntegrationStatus:
        duration_ms = duration.total_seconds() * 1000.0 if duration is not None else None

        def _apply(row: IntegrationStatus, now: datetime) -> None:
            row.last_success_at = now
            row.last_attempt_at = now
            row.consecutive_failures = 0
            row.successful_syncs_24h = int(row.successful_syncs_24h or 0) + 1
            row.last_error_message = None
            row.last_error_details = None
            # A manual disable outranks any recovery signal.
            row.health = HEALTH_DISABLED if row.is_manually_disabled else HEALTH_HEALTHY
            if duration_ms is not None:
                previous = row.average_sync_duration_ms
                row.average_sync_duration_ms = (
                    duration_ms if previous is None else (previous + duration_ms) / 2.0
                )

        row = await self._mutate(session=session, name=name, apply=_apply)
        increment_counter(f"integrations.{name}.success")
        logger.info(
            "integration_sync_succeeded integration=%s duration_ms=%s health=%s",
            name,
            None if duration_ms is None else round(duration_ms, 1),
            row.health,
        )
        return row

    async def record_failure(
        self,
        *,
        session: AsyncSession,
        name: str,
        message: str,
        details: str | None = None,
    ) -> IntegrationStatus:
        settings = get_settings()

        def _apply(row: IntegrationStatus, now: datetime) -> None:
            row.last_failure_at = now
            row.last_attempt_at = now
            row.consecutive_failures = int(row.consecutive_failures or 0) + 1
            row.total_failures_24h = int(row.total_failures_24h or 0) + 1
            row.last_error_message = message
            row.last_error_details = details
            if row.is_manually_disabled:
                row.health = HEALTH_DISABLED
                return
            computed = failure_health(
                row.consecutive_failures,
                degraded_after=settings.health_degraded_after_failures,
                unavailable_after=settings.health_unavailable_after_failures,
            )
            if computed is not None:
                row.health = computed

        row = await self._mutate(session=session, name=name, apply=_apply)
        increment_counter(f"integrations.{name}.failure")
        logger.warning(
            "integration_sync_failed integration=%s failures=%s health=%s error=%s",
            name,
            row.consecutive_failures,
            row.health,
            message,
        )
        return row

    async def disable(
        self,
        *,
        session: AsyncSession,
        name: str,
        reason: str,
        actor: str | None = None,
    ) -> IntegrationStatus:
        def _apply(row: IntegrationStatus, now: datetime) -> None:
            row.is_manually_disabled = True
            row.disabled_reason = reason
            row.disabled_by = actor
            row.disabled_at = now
            row.health = HEALTH_DISABLED

        row = await self._mutate(session=session, name=name, apply=_apply)
        logger.warning("integration_disabled integration=%s actor=%s reason=%s", name, actor, reason)
        return row

    async def enable(
        self,
        *,
        session: AsyncSession,
        name: str,
        actor: str | None = None,
    ) -> IntegrationStatus:
        # Failure history is kept; health waits for the next attempt to be re-evaluated.
        def _apply(row: IntegrationStatus, now: datetime) -> None:
            row.is_manually_disabled = False
            row.disabled_reason = None
            row.disabled_by = None
            row.disabled_at = None
            row.health = HEALTH_UNKNOWN

        row = await self._mutate(session=session, name=name, apply=_apply)
        logger.info("integration_enabled integration=%s actor=%s", name, actor)
        return row

    async def is_operational(self, *, session: AsyncSession, name: str) -> bool:
        return is_operational(await self.get_status(session=session, name=name))

    async def has_fresh_data(self, *, session: AsyncSession, name: str) -> bool:
        row = await self.get_status(session=session, name=name)
        return has_fresh_data(row, now=self.now())

    async def get_data_availability(self, *, session: AsyncSession) -> dict[str, bool]:
        # Compose feature flags from configured provider requirements.
        settings = get_settings()
        rows = {row.integration_name: row for row in await self.get_all_statuses(session=session)}
        now = self.now()
        availability: dict[str, bool] = {}
        for feature, rule in settings.data_availability.items():
            available = True
            for name in rule.fresh:
                row = rows.get(name)
                if row is None or not has_fresh_data(row, now=now):
                    available = False
            for name in rule.operational:
                row = rows.get(name)
                if row is None or not is_operational(row):
                    available = False
            availability[feature] = available
        return availability

    async def reset_daily_counters(self, *, session: AsyncSession) -> int:
        # Roll the 24h success/failure counters for every provider at once.
        result = await session.execute(
            update(IntegrationStatus)
            .values(successful_syncs_24h=0, total_failures_24h=0, updated_at=self.now())
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        count = int(result.rowcount or 0)
        logger.info("integration_daily_counters_reset rows=%s", count)
        return count


_health_service: IntegrationHealthService | None = None


def get_integration_health_service() -> IntegrationHealthService:
    global _health_service
    if _health_service is None:
        _health_service = IntegrationHealthService()
    return _health_service


def set_integration_health_service(service: IntegrationHealthService | None) -> None:
    global _health_service
    _health_service = service
