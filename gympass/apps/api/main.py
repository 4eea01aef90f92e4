from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
import logging
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from gympass.apps.api.deps import AppServices
from gympass.apps.api.errors import (
    domain_exception_handler,
    http_exception_handler,
    infrastructure_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from gympass.apps.api.response import API_VERSION
from gympass.apps.api.routes.admin import router as admin_router
from gympass.apps.api.routes.health import router as health_router
from gympass.apps.api.routes.passes import router as passes_router
from gympass.apps.api.routes.payments import router as payments_router
from gympass.apps.api.routes.registration import router as registration_router
from gympass.apps.api.routes.staff import router as staff_router
from gympass.core.config import Settings, get_settings
from gympass.core.errors import DomainError, InfrastructureError
from gympass.core.logging import configure_logging
from gympass.persistence.db import build_sessionmaker, create_registry_engine, init_registry_schema
from gympass.persistence.repos.tenants import TenantRegistry
from gympass.persistence.tenant_storage import TenantStorageRouter, build_backend
from gympass.services.billing_webhook import BillingEventHandler
from gympass.services.checkout import CheckoutProvider, build_checkout_provider
from gympass.services.passes import PassLifecycleEngine
from gympass.services.provisioning import ProvisioningWorkflow
from gympass.services.registration import RegistrationReservationManager
from gympass.services.tenant_admin import TenantAdminService
from gympass.workers.reservation_sweeper import sweeper_loop


logger = logging.getLogger(__name__)


def build_services(
    settings: Settings | None = None,
    *,
    checkout: CheckoutProvider | None = None,
) -> AppServices:
    settings = settings or get_settings()
    engine = create_registry_engine(settings)
    sessionmaker = build_sessionmaker(engine)
    registry = TenantRegistry(sessionmaker)
    router = TenantStorageRouter(registry, build_backend(settings), settings)
    checkout = checkout or build_checkout_provider(settings)
    reservations = RegistrationReservationManager(sessionmaker, registry, checkout, settings=settings)
    provisioning = ProvisioningWorkflow(registry, router, reservations, checkout, settings=settings)
    return AppServices(
        settings=settings,
        registry_engine=engine,
        registry=registry,
        router=router,
        checkout=checkout,
        reservations=reservations,
        provisioning=provisioning,
        billing=BillingEventHandler(provisioning, registry, checkout),
        passes=PassLifecycleEngine(),
        tenant_admin=TenantAdminService(registry, router),
    )


def create_app(
    settings: Settings | None = None,
    *,
    services: AppServices | None = None,
    run_sweeper: bool = True,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)
    services = services or build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await init_registry_schema(services.registry_engine)
        sweeper: asyncio.Task | None = None
        if run_sweeper and settings.reservation_sweep_interval_s > 0:
            sweeper = asyncio.create_task(
                sweeper_loop(services.reservations, settings.reservation_sweep_interval_s)
            )
        logger.info(
            "app_started env=%s tenant_backend=%s checkout=%s",
            settings.app_env,
            services.router.backend.name,
            services.checkout.name,
        )
        try:
            yield
        finally:
            if sweeper is not None:
                sweeper.cancel()
            await services.router.close()
            await services.registry_engine.dispose()

    app = FastAPI(title="GymPass API", lifespan=lifespan)
    app.state.services = services

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    app.add_exception_handler(DomainError, domain_exception_handler)
    app.add_exception_handler(InfrastructureError, infrastructure_exception_handler)
    app.add_exception_handler(StarletteHTTPException, starlette_http_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health_router)
    app.include_router(passes_router, prefix=f"/{API_VERSION}")
    app.include_router(staff_router, prefix=f"/{API_VERSION}")
    app.include_router(registration_router, prefix=f"/{API_VERSION}")
    app.include_router(payments_router, prefix=f"/{API_VERSION}")
    app.include_router(admin_router, prefix=f"/{API_VERSION}")
    return app
