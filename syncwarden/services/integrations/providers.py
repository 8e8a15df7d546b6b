from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from syncwarden.core.config import IntegrationSettings
from syncwarden.core.errors import ProviderConfigError
from syncwarden.services.quota import ProviderQuotaGuard


logger = logging.getLogger(__name__)


@dataclass
class SyncContext:
    """Everything a provider routine may use during one cycle."""

    integration: str
    config: IntegrationSettings
    started_at: datetime
    quota: ProviderQuotaGuard
    session_factory: async_sessionmaker[AsyncSession]
    # Free-form counters the routine can fill for logs and the cycle outcome.
    stats: dict[str, int]

    async def try_reserve(self, cost: int = 1, *, feature: str | None = None, priority: bool = False) -> bool:
        # Check the outbound budget before calling upstream.
        async with self.session_factory() as session:
            return await self.quota.try_reserve(
                session=session,
                provider=self.integration,
                cost=cost,
                feature=feature,
                priority=priority,
            )

    async def require_quota(self, cost: int = 1, *, feature: str | None = None, priority: bool = False) -> None:
        async with self.session_factory() as session:
            await self.quota.require(
                session=session,
                provider=self.integration,
                cost=cost,
                feature=feature,
                priority=priority,
            )


SyncRoutine = Callable[[SyncContext], Awaitable[None]]


@dataclass(frozen=True)
class SyncProvider:
    # One provider is one routine behind a uniform run-and-report capability.
    name: str
    sync: SyncRoutine


_providers: dict[str, SyncProvider] = {}


def register_provider(name: str, routine: SyncRoutine) -> SyncProvider:
    provider = SyncProvider(name=name, sync=routine)
    if name in _providers:
        logger.info("sync_provider_replaced integration=%s", name)
    _providers[name] = provider
    return provider


def sync_provider(name: str) -> Callable[[SyncRoutine], SyncRoutine]:
    # Decorator form of register_provider for module-level routines.
    def _decorator(routine: SyncRoutine) -> SyncRoutine:
        register_provider(name, routine)
        return routine

    return _decorator


def get_provider(name: str) -> SyncProvider:
    provider = _providers.get(name)
    if provider is None:
        raise ProviderConfigError(f"No sync routine registered for integration '{name}'")
    return provider


def registered_providers() -> list[str]:
    return sorted(_providers)


def clear_providers() -> None:
    # Reset the registry for deterministic tests.
    _providers.clear()
