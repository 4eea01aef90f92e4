from __future__ import annotations

from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncEngine

from gympass.core.config import Settings
from gympass.domain.models import PlatformAdmin, StaffUser
from gympass.persistence.repos.tenants import TenantRegistry
from gympass.persistence.tenant_storage import TenantStorageRouter
from gympass.services.billing_webhook import BillingEventHandler
from gympass.services.checkout import CheckoutProvider
from gympass.services.passes import PassLifecycleEngine
from gympass.services.provisioning import ProvisioningWorkflow
from gympass.services.registration import RegistrationReservationManager
from gympass.services.resilience import storage_errors
from gympass.services.tenancy import TenantContext, build_tenant_context, resolve_tenant_slug
from gympass.services.tenant_admin import TenantAdminService


@dataclass
class AppServices:
    """Process-wide collaborators shared by every request."""

    settings: Settings
    registry_engine: AsyncEngine
    registry: TenantRegistry
    router: TenantStorageRouter
    checkout: CheckoutProvider
    reservations: RegistrationReservationManager
    provisioning: ProvisioningWorkflow
    billing: BillingEventHandler
    passes: PassLifecycleEngine
    tenant_admin: TenantAdminService


def get_services(request: Request) -> AppServices:
    return request.app.state.services


async def get_tenant_context(
    request: Request,
    services: AppServices = Depends(get_services),
) -> TenantContext:
    # Header first, then subdomain, then the default gym.
    slug, source = resolve_tenant_slug(request.headers, request.headers.get("host"), services.settings)
    ctx = await build_tenant_context(services.router, slug, source=source)
    request.state.tenant_slug = ctx.slug
    return ctx


def _unauthorized(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
    )


def get_user_id(x_user_id: str | None = Header(default=None, alias="X-User-Id")) -> str:
    # Identity headers are set by the upstream gateway after authentication.
    if not x_user_id:
        raise _unauthorized("X-User-Id header is required")
    return x_user_id


async def get_staff_user(
    ctx: TenantContext = Depends(get_tenant_context),
    x_staff_id: str | None = Header(default=None, alias="X-Staff-Id"),
) -> StaffUser:
    if not x_staff_id:
        raise _unauthorized("X-Staff-Id header is required")
    async with storage_errors(ctx.slug), ctx.storage.session() as session:
        staff = await session.get(StaffUser, x_staff_id)
    if staff is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "FORBIDDEN", "message": "Staff account not found for this gym"},
        )
    return staff


async def require_platform_admin(
    services: AppServices = Depends(get_services),
    x_platform_admin_id: str | None = Header(default=None, alias="X-Platform-Admin-Id"),
) -> PlatformAdmin:
    if not x_platform_admin_id:
        raise _unauthorized("X-Platform-Admin-Id header is required")
    admin = await services.registry.get_platform_admin(x_platform_admin_id)
    if admin is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "FORBIDDEN", "message": "Platform admin access required"},
        )
    return admin
