from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from gympass.core.config import Settings, get_settings
from gympass.domain.models import RegistryBase


def ensure_sqlite_parent(url: str) -> None:
    # SQLite will not create missing directories for a database file.
    parsed = make_url(url)
    if not parsed.drivername.startswith("sqlite"):
        return
    database = parsed.database
    if database and database != ":memory:":
        Path(database).parent.mkdir(parents=True, exist_ok=True)


def engine_kwargs_for(url: str, settings: Settings) -> dict[str, Any]:
    kwargs: dict[str, Any] = {"pool_pre_ping": True}
    if url.startswith("sqlite"):
        # Wait on competing writers instead of failing fast with "database is locked".
        kwargs["connect_args"] = {"timeout": settings.tenant_sqlite_busy_timeout_s}
    else:
        kwargs["pool_recycle"] = 1800
    return kwargs


def create_registry_engine(settings: Settings | None = None) -> AsyncEngine:
    settings = settings or get_settings()
    url = settings.registry_database_url
    ensure_sqlite_parent(url)
    return create_async_engine(url, **engine_kwargs_for(url, settings))


def build_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


async def init_registry_schema(engine: AsyncEngine) -> None:
    # Alembic owns production upgrades; this covers dev and test stores.
    async with engine.begin() as conn:
        await conn.run_sync(RegistryBase.metadata.create_all)


_engine: AsyncEngine | None = None
_sessionmaker: async_sessionmaker[AsyncSession] | None = None


def get_registry_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        _engine = create_registry_engine()
    return _engine


def get_registry_sessionmaker() -> async_sessionmaker[AsyncSession]:
    global _sessionmaker
    if _sessionmaker is None:
        _sessionmaker = build_sessionmaker(get_registry_engine())
    return _sessionmaker


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with get_registry_sessionmaker()() as session:
        yield session


async def dispose_registry_engine() -> None:
    global _engine, _sessionmaker
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _sessionmaker = None
