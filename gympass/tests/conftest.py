from __future__ import annotations

import pytest

from gympass.core.config import Settings, get_settings
from gympass.persistence.db import build_sessionmaker, create_registry_engine, init_registry_schema
from gympass.persistence.repos.tenants import TenantRegistry
from gympass.persistence.tenant_storage import SqliteFileBackend, TenantStorageRouter
from gympass.services.checkout import DevCheckoutProvider
from gympass.services.credentials import PasswordHasher
from gympass.services.provisioning import ProvisioningWorkflow
from gympass.services.registration import RegistrationReservationManager
from gympass.tests.utils.clock import FakeClock


@pytest.fixture
def settings(tmp_path, monkeypatch) -> Settings:
    # Every test gets its own registry file and tenant directory.
    monkeypatch.setenv("APP_ENV", "test")
    monkeypatch.setenv("REGISTRY_DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path}/registry.db")
    monkeypatch.setenv("TENANT_STORAGE_BACKEND", "sqlite")
    monkeypatch.setenv("TENANT_DATA_DIR", str(tmp_path / "gyms"))
    monkeypatch.setenv("RESERVATION_SWEEP_INTERVAL_S", "0")
    monkeypatch.setenv("STORAGE_RETRY_BACKOFF_MS", "1")
    monkeypatch.setenv("STRIPE_SECRET_KEY", "")
    monkeypatch.setenv("STRIPE_PRICE_ID", "")
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", "")
    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def registry_engine(settings):
    engine = create_registry_engine(settings)
    await init_registry_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def registry_sessionmaker(registry_engine):
    return build_sessionmaker(registry_engine)


@pytest.fixture
def registry(registry_sessionmaker) -> TenantRegistry:
    return TenantRegistry(registry_sessionmaker)


@pytest.fixture
def backend(settings) -> SqliteFileBackend:
    return SqliteFileBackend(settings.tenant_data_dir, settings)


@pytest.fixture
async def router(registry, backend, settings):
    router = TenantStorageRouter(registry, backend, settings)
    yield router
    await router.close()


@pytest.fixture
def checkout(settings) -> DevCheckoutProvider:
    return DevCheckoutProvider(settings)


@pytest.fixture
def fast_hasher() -> PasswordHasher:
    # Minimal argon2 cost keeps provisioning tests quick.
    return PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1)


@pytest.fixture
def reservations(registry_sessionmaker, registry, checkout, settings, clock) -> RegistrationReservationManager:
    return RegistrationReservationManager(
        registry_sessionmaker, registry, checkout, settings=settings, time_provider=clock
    )


@pytest.fixture
def workflow(registry, router, reservations, checkout, fast_hasher, settings) -> ProvisioningWorkflow:
    return ProvisioningWorkflow(
        registry, router, reservations, checkout, hasher=fast_hasher, settings=settings
    )
