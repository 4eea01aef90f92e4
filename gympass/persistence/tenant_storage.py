from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from sqlalchemy import inspect, literal, text
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from gympass.core.config import SLUG_PATTERN, Settings, get_settings
from gympass.core.errors import (
    TenantBlockedError,
    TenantDeletedError,
    TenantNotFoundError,
    TenantPendingError,
)
from gympass.domain.models import Gym, TenantBase
from gympass.domain.state import TenantStatus
from gympass.persistence.db import build_sessionmaker, engine_kwargs_for
from gympass.persistence.repos.tenants import TenantRegistry
from gympass.services.offerings import migrate_legacy_pass_types
from gympass.services.resilience import retry_async, storage_errors


logger = logging.getLogger(__name__)

_SLUG_RE = re.compile(SLUG_PATTERN)


@dataclass
class TenantStorageHandle:
    """Live connection to one gym's isolated store."""

    slug: str
    engine: AsyncEngine
    sessionmaker: async_sessionmaker[AsyncSession]
    # Schema-per-tenant handles borrow the backend's pool and must not dispose it.
    owns_engine: bool = True
    schema: str | None = None

    def session(self) -> AsyncSession:
        return self.sessionmaker()

    async def dispose(self) -> None:
        if self.owns_engine:
            await self.engine.dispose()


class TenantStorageBackend(Protocol):
    name: str

    async def open(self, slug: str) -> tuple[TenantStorageHandle, bool]:
        """Open (creating if needed) the store for a slug; report whether it was new."""
        ...

    async def close(self) -> None:
        ...


class SqliteFileBackend:
    """One SQLite file per gym under a data directory."""

    name = "sqlite"

    def __init__(self, data_dir: str | Path, settings: Settings | None = None) -> None:
        self._data_dir = Path(data_dir)
        self._settings = settings or get_settings()

    def path_for(self, slug: str) -> Path:
        return self._data_dir / f"{slug}.db"

    async def open(self, slug: str) -> tuple[TenantStorageHandle, bool]:
        path = self.path_for(slug)
        fresh = not path.exists()
        path.parent.mkdir(parents=True, exist_ok=True)
        url = f"sqlite+aiosqlite:///{path}"
        engine = create_async_engine(url, **engine_kwargs_for(url, self._settings))
        return TenantStorageHandle(slug=slug, engine=engine, sessionmaker=build_sessionmaker(engine)), fresh

    async def close(self) -> None:
        return None


class PostgresSchemaBackend:
    """One PostgreSQL schema per gym on a shared engine."""

    name = "postgres"

    def __init__(self, database_url: str, settings: Settings | None = None) -> None:
        settings = settings or get_settings()
        self._engine = create_async_engine(database_url, **engine_kwargs_for(database_url, settings))

    async def open(self, slug: str) -> tuple[TenantStorageHandle, bool]:
        async with self._engine.begin() as conn:
            existing = await conn.scalar(
                text("SELECT 1 FROM information_schema.schemata WHERE schema_name = :schema"),
                {"schema": slug},
            )
            # Slugs are validated against the slug pattern before they reach storage.
            await conn.execute(text(f'CREATE SCHEMA IF NOT EXISTS "{slug}"'))
        engine = self._engine.execution_options(schema_translate_map={None: slug})
        handle = TenantStorageHandle(
            slug=slug,
            engine=engine,
            sessionmaker=build_sessionmaker(engine),
            owns_engine=False,
            schema=slug,
        )
        return handle, existing is None

    async def close(self) -> None:
        await self._engine.dispose()


def build_backend(settings: Settings | None = None) -> TenantStorageBackend:
    settings = settings or get_settings()
    backend = settings.tenant_storage_backend.strip().lower()
    if backend == "sqlite":
        return SqliteFileBackend(settings.tenant_data_dir, settings)
    if backend == "postgres":
        if not settings.tenant_database_url:
            raise ValueError("tenant_database_url is required for the postgres tenant backend")
        return PostgresSchemaBackend(settings.tenant_database_url, settings)
    raise ValueError(f"Unknown tenant storage backend: {settings.tenant_storage_backend}")


def _column_default_sql(conn: Connection, column: Any) -> str | None:
    default = column.default
    if default is None or not getattr(default, "is_scalar", False):
        return None
    compiled = literal(default.arg, column.type).compile(
        dialect=conn.dialect, compile_kwargs={"literal_binds": True}
    )
    return str(compiled)


def apply_tenant_schema(conn: Connection, schema: str | None = None) -> list[str]:
    """Create missing tenant tables and add columns older stores lack.

    Returns the list of columns that were added, as ``table.column``.
    """
    TenantBase.metadata.create_all(conn)
    inspector = inspect(conn)
    preparer = conn.dialect.identifier_preparer
    added: list[str] = []
    for table in TenantBase.metadata.sorted_tables:
        existing = {col["name"] for col in inspector.get_columns(table.name, schema=schema)}
        for column in table.columns:
            if column.name in existing:
                continue
            default_sql = _column_default_sql(conn, column)
            if not column.nullable and default_sql is None:
                logger.warning(
                    "tenant_schema_column_skipped table=%s column=%s", table.name, column.name
                )
                continue
            qualified = preparer.quote(table.name)
            if schema:
                qualified = f"{preparer.quote_schema(schema)}.{qualified}"
            ddl = (
                f"ALTER TABLE {qualified} ADD COLUMN {preparer.quote(column.name)} "
                f"{column.type.compile(dialect=conn.dialect)}"
            )
            if default_sql is not None:
                ddl += f" DEFAULT {default_sql}"
            conn.execute(text(ddl))
            added.append(f"{table.name}.{column.name}")
    return added


@dataclass
class _RouterStats:
    materialized: dict[str, int] = field(default_factory=dict)


class TenantStorageRouter:
    """Maps slugs to live storage handles, opening each store at most once."""

    def __init__(
        self,
        registry: TenantRegistry,
        backend: TenantStorageBackend,
        settings: Settings | None = None,
    ) -> None:
        self._registry = registry
        self._backend = backend
        self._settings = settings or get_settings()
        self._handles: dict[str, TenantStorageHandle] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self.stats = _RouterStats()

    @property
    def backend(self) -> TenantStorageBackend:
        return self._backend

    def cached_slugs(self) -> list[str]:
        return sorted(self._handles)

    async def lookup(self, slug: str, *, privileged: bool = False) -> Gym | None:
        """Consult the registry and refuse gyms that are not servable.

        The default gym may exist without a registry row; any other unknown
        slug is refused. Privileged callers may reach PENDING and BLOCKED gyms.
        """
        # Slugs become file names and schema names; reject anything outside the pattern.
        if not _SLUG_RE.fullmatch(slug or ""):
            raise TenantNotFoundError(slug=slug)
        tenant = await self._registry.get_by_slug(slug)
        if tenant is None:
            if slug == self._settings.default_tenant_slug:
                return None
            raise TenantNotFoundError(slug=slug)
        status = TenantStatus(tenant.status)
        if status is TenantStatus.DELETED:
            raise TenantDeletedError(slug=slug)
        if privileged:
            return tenant
        if status is TenantStatus.BLOCKED:
            raise TenantBlockedError(slug=slug)
        if status is TenantStatus.PENDING:
            raise TenantPendingError(slug=slug)
        return tenant

    async def resolve_tenant(
        self, slug: str, *, privileged: bool = False
    ) -> tuple[Gym | None, TenantStorageHandle]:
        # Status is checked on every call so a cached handle never outlives a block.
        tenant = await self.lookup(slug, privileged=privileged)
        handle = self._handles.get(slug)
        if handle is not None:
            return tenant, handle
        lock = self._locks.setdefault(slug, asyncio.Lock())
        async with lock:
            handle = self._handles.get(slug)
            if handle is None:
                handle = await retry_async(lambda: self._materialize(slug))
                self._handles[slug] = handle
        return tenant, handle

    async def resolve(self, slug: str, *, privileged: bool = False) -> TenantStorageHandle:
        _, handle = await self.resolve_tenant(slug, privileged=privileged)
        return handle

    async def _materialize(self, slug: str) -> TenantStorageHandle:
        async with storage_errors(slug):
            handle, fresh = await self._backend.open(slug)
            try:
                async with handle.engine.begin() as conn:
                    added = await conn.run_sync(apply_tenant_schema, handle.schema)
                async with handle.session() as session:
                    migrated = await migrate_legacy_pass_types(session)
            except BaseException:
                await handle.dispose()
                raise
        self.stats.materialized[slug] = self.stats.materialized.get(slug, 0) + 1
        logger.info(
            "tenant_storage_materialized slug=%s backend=%s fresh=%s columns_added=%s legacy_migrated=%s",
            slug,
            self._backend.name,
            fresh,
            len(added),
            migrated,
        )
        return handle

    async def invalidate(self, slug: str) -> bool:
        # Drop the entry before awaiting so no caller can pick it up mid-dispose.
        handle = self._handles.pop(slug, None)
        self._locks.pop(slug, None)
        if handle is None:
            return False
        await handle.dispose()
        logger.info("tenant_storage_invalidated slug=%s", slug)
        return True

    async def close(self) -> None:
        handles = list(self._handles.values())
        self._handles.clear()
        self._locks.clear()
        for handle in handles:
            await handle.dispose()
        await self._backend.close()
