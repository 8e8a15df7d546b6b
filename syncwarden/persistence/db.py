from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from syncwarden.core.config import get_settings


settings = get_settings()
_engine_kwargs: dict[str, Any] = {"pool_pre_ping": True}
if settings.database_url.startswith("sqlite"):
    # In-memory SQLite only survives on a single shared connection.
    if ":memory:" in settings.database_url:
        _engine_kwargs["poolclass"] = StaticPool
    _engine_kwargs["connect_args"] = {"check_same_thread": False}
else:
    # Configure bounded asyncpg pools for predictable latency under load.
    _engine_kwargs["pool_size"] = max(1, int(settings.db_pool_size))
    _engine_kwargs["max_overflow"] = max(0, int(settings.db_max_overflow))
    _engine_kwargs["pool_timeout"] = 30
    _engine_kwargs["pool_recycle"] = 1800
engine = create_async_engine(settings.database_url, **_engine_kwargs)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as session:
        yield session


_POOL_COUNTERS = (
    ("size", "size"),
    ("checked_out", "checkedout"),
    ("checked_in", "checkedin"),
    ("overflow", "overflow"),
)


def pool_stats() -> dict[str, int | None]:
    # Pool classes without a given counter report it as None.
    pool = engine.sync_engine.pool
    stats: dict[str, int | None] = {}
    for key, attr in _POOL_COUNTERS:
        counter = getattr(pool, attr, None)
        stats[key] = int(counter()) if callable(counter) else None
    return stats
