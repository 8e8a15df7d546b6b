from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from syncwarden.core.config import QuotaPolicySettings, get_settings
from syncwarden.core.errors import NotFoundError, QuotaExhaustedError
from syncwarden.domain.models import ProviderUsageCounter
from syncwarden.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

# Counter key for the provider-wide pool.
_POOL_FEATURE = ""


@dataclass(frozen=True)
class FeatureUsage:
    limit: int | None
    used: int


@dataclass(frozen=True)
class QuotaSnapshot:
    # Capture the day's budget and usage for ops views and error details.
    provider: str
    period_start: datetime
    hard_daily_limit: int | None
    operational_cap: int | None
    safety_reserve: int
    used: int
    features: dict[str, FeatureUsage] = field(default_factory=dict)

    @property
    def remaining(self) -> int | None:
        # Headroom under the operational cap, reserve included.
        if self.operational_cap is None:
            return None
        return max(self.operational_cap - self.used, 0)

    @property
    def ordinary_remaining(self) -> int | None:
        # Headroom ordinary callers can still draw before touching the reserve.
        if self.operational_cap is None:
            return None
        return max(self.operational_cap - self.safety_reserve - self.used, 0)


def _utc_now() -> datetime:
    # Use UTC for consistent quota period boundaries.
    return datetime.now(timezone.utc)


def _day_start(now: datetime) -> datetime:
    # Normalize to the UTC day boundary for daily quotas.
    return datetime(now.year, now.month, now.day, tzinfo=timezone.utc)


def feature_limit(policy: QuotaPolicySettings, feature: str) -> int | None:
    # A carve-out can never exceed the pool it is drawn from.
    carve = policy.sub_feature_caps.get(feature)
    if carve is None:
        return None
    return max(0, min(int(carve), int(policy.operational_cap)))


def reservation_ceiling(policy: QuotaPolicySettings, *, priority: bool) -> int:
    # Ordinary callers stop short of the reserve; priority callers may use it.
    cap = int(policy.operational_cap)
    if priority:
        return cap
    return max(cap - int(policy.safety_reserve), 0)


class ProviderQuotaGuard:
    def __init__(self, *, time_provider: Callable[[], datetime] | None = None) -> None:
        # Allow time injection for deterministic rollover tests.
        self._time_provider = time_provider or _utc_now
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, provider: str) -> asyncio.Lock:
        lock = self._locks.get(provider)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[provider] = lock
        return lock

    def _policy(self, provider: str) -> QuotaPolicySettings | None:
        config = get_settings().integrations.get(provider)
        if config is None:
            raise NotFoundError("integration", provider)
        return config.quota

    async def try_reserve(
        self,
        *,
        session: AsyncSession,
        provider: str,
        cost: int = 1,
        feature: str | None = None,
        priority: bool = False,
    ) -> bool:
        # Count a reservation only when both the pool and any carve-out have room.
        if cost < 0:
            raise ValueError("cost must be non-negative")
        policy = self._policy(provider)
        if cost == 0:
            return True

        async with self._lock_for(provider):
            period_start = _day_start(self._time_provider())
            in_transaction = session.in_transaction()
            # Use a nested transaction when prior reads have already opened one.
            tx_context = session.begin_nested() if in_transaction else session.begin()
            allowed = True
            async with tx_context:
                pool = await _get_or_create_counter(session, provider, _POOL_FEATURE, period_start)
                feature_counter = None
                if feature:
                    feature_counter = await _get_or_create_counter(session, provider, feature, period_start)

                pool_used = int(pool.calls_count or 0)
                if policy is not None:
                    ceiling = reservation_ceiling(policy, priority=priority)
                    if pool_used + cost > ceiling:
                        _log_denied(provider, feature, pool_used, ceiling, priority)
                        allowed = False
                    elif feature_counter is not None:
                        limit = feature_limit(policy, feature)
                        feature_used = int(feature_counter.calls_count or 0)
                        if limit is not None and feature_used + cost > limit:
                            _log_denied(provider, feature, feature_used, limit, priority)
                            allowed = False

                if allowed:
                    now = self._time_provider()
                    pool.calls_count = pool_used + cost
                    pool.updated_at = now
                    if feature_counter is not None:
                        feature_counter.calls_count = int(feature_counter.calls_count or 0) + cost
                        feature_counter.updated_at = now

            if in_transaction:
                # End the caller's transaction on both paths so counter-row locks are released.
                await session.commit()
        if not allowed:
            return False
        increment_counter(f"quota.{provider}.reserved", cost)
        return True

    async def require(
        self,
        *,
        session: AsyncSession,
        provider: str,
        cost: int = 1,
        feature: str | None = None,
        priority: bool = False,
    ) -> None:
        # Raise instead of returning False for callers that prefer exceptions.
        allowed = await self.try_reserve(
            session=session,
            provider=provider,
            cost=cost,
            feature=feature,
            priority=priority,
        )
        if not allowed:
            raise QuotaExhaustedError(provider, feature)

    async def get_snapshot(self, *, session: AsyncSession, provider: str) -> QuotaSnapshot:
        policy = self._policy(provider)
        period_start = _day_start(self._time_provider())
        result = await session.execute(
            select(ProviderUsageCounter)
            .where(
                ProviderUsageCounter.provider == provider,
                ProviderUsageCounter.period_start == period_start,
            )
            .execution_options(populate_existing=True)
        )
        used_by_feature = {row.feature: int(row.calls_count or 0) for row in result.scalars().all()}
        features: dict[str, FeatureUsage] = {}
        if policy is not None:
            for name in policy.sub_feature_caps:
                features[name] = FeatureUsage(limit=feature_limit(policy, name), used=used_by_feature.get(name, 0))
        for name, used in used_by_feature.items():
            if name != _POOL_FEATURE and name not in features:
                features[name] = FeatureUsage(limit=None, used=used)
        return QuotaSnapshot(
            provider=provider,
            period_start=period_start,
            hard_daily_limit=policy.hard_daily_limit if policy else None,
            operational_cap=policy.operational_cap if policy else None,
            safety_reserve=policy.safety_reserve if policy else 0,
            used=used_by_feature.get(_POOL_FEATURE, 0),
            features=features,
        )


def _log_denied(provider: str, feature: str | None, used: int, limit: int, priority: bool) -> None:
    increment_counter(f"quota.{provider}.denied")
    logger.warning(
        "quota_exhausted provider=%s feature=%s used=%s limit=%s priority=%s",
        provider,
        feature or "-",
        used,
        limit,
        priority,
    )


async def _get_or_create_counter(
    session: AsyncSession,
    provider: str,
    feature: str,
    period_start: datetime,
) -> ProviderUsageCounter:
    # Lock usage counters to ensure atomic increments.
    stmt = (
        select(ProviderUsageCounter)
        .where(
            ProviderUsageCounter.provider == provider,
            ProviderUsageCounter.feature == feature,
            ProviderUsageCounter.period_start == period_start,
        )
        .with_for_update()
    )
    result = await session.execute(stmt)
    counter = result.scalar_one_or_none()
    if counter is None:
        counter = ProviderUsageCounter(
            provider=provider,
            feature=feature,
            period_start=period_start,
            calls_count=0,
            updated_at=period_start,
        )
        session.add(counter)
    return counter


_quota_guard: ProviderQuotaGuard | None = None


def get_quota_guard() -> ProviderQuotaGuard:
    global _quota_guard
    if _quota_guard is None:
        _quota_guard = ProviderQuotaGuard()
    return _quota_guard


def set_quota_guard(guard: ProviderQuotaGuard | None) -> None:
    global _quota_guard
    _quota_guard = guard
