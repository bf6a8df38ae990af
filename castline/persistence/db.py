from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from castline.core.config import Settings, get_settings


def _engine_options(settings: Settings) -> dict[str, Any]:
    options: dict[str, Any] = {"pool_pre_ping": True}
    # SQLite (tests, local demos) uses a static pool that rejects sizing arguments.
    if settings.database_url.startswith("sqlite"):
        return options
    options.update(
        pool_size=max(1, settings.db_pool_size),
        max_overflow=max(0, settings.db_max_overflow),
        pool_timeout=30,
        pool_recycle=1800,
    )
    if settings.db_statement_timeout_ms > 0:
        options["connect_args"] = {
            "server_settings": {"statement_timeout": str(settings.db_statement_timeout_ms)}
        }
    return options


def build_engine(settings: Settings) -> AsyncEngine:
    return create_async_engine(settings.database_url, **_engine_options(settings))


_POOL_COUNTERS = (
    ("size", "size"),
    ("checked_out", "checkedout"),
    ("checked_in", "checkedin"),
    ("overflow", "overflow"),
)

engine = build_engine(get_settings())
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as session:
        yield session


def pool_stats() -> dict[str, int | None]:
    """Connection pool counters for the health payload.

    Pools that do not track a counter (SQLite's) report ``None`` for it.
    """
    pool = engine.sync_engine.pool
    stats: dict[str, int | None] = {}
    for key, attr in _POOL_COUNTERS:
        counter = getattr(pool, attr, None)
        stats[key] = int(counter()) if callable(counter) else None
    return stats
