from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from gympass.apps.api.deps import AppServices, get_services, require_platform_admin
from gympass.apps.api.response import success_response
from gympass.apps.api.routes.registration import EMAIL_PATTERN
from gympass.domain.models import Gym, PlatformAdmin


router = APIRouter(prefix="/admin", tags=["admin"])


class DayHours(BaseModel):
    open: str = Field(pattern=r"^\d{2}:\d{2}$")
    close: str = Field(pattern=r"^\d{2}:\d{2}$")
    closed: bool = False


class UpdateGymRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    company_name: str | None = Field(default=None, max_length=200)
    tax_number: str | None = Field(default=None, max_length=64)
    address_line1: str | None = Field(default=None, max_length=200)
    address_line2: str | None = Field(default=None, max_length=200)
    city: str | None = Field(default=None, max_length=100)
    postal_code: str | None = Field(default=None, max_length=32)
    country: str | None = Field(default=None, max_length=64)
    contact_name: str | None = Field(default=None, max_length=200)
    contact_email: str | None = Field(default=None, max_length=254, pattern=EMAIL_PATTERN)
    contact_phone: str | None = Field(default=None, max_length=64)
    opening_hours: dict[str, DayHours] | None = None


def gym_to_dict(gym: Gym) -> dict[str, Any]:
    return {
        "id": gym.id,
        "slug": gym.slug,
        "name": gym.name,
        "status": gym.status,
        "staff_login_path": gym.staff_login_path,
        "opening_hours": gym.opening_hours_json,
        "subscription_status": gym.subscription_status,
        "current_period_end": gym.current_period_end.isoformat() if gym.current_period_end else None,
        "plan_id": gym.plan_id,
        "billing_email": gym.billing_email,
        "company_name": gym.company_name,
        "tax_number": gym.tax_number,
        "address_line1": gym.address_line1,
        "address_line2": gym.address_line2,
        "city": gym.city,
        "postal_code": gym.postal_code,
        "country": gym.country,
        "contact_name": gym.contact_name,
        "contact_email": gym.contact_email,
        "contact_phone": gym.contact_phone,
        "created_at": gym.created_at.isoformat(),
        "deleted_at": gym.deleted_at.isoformat() if gym.deleted_at else None,
    }


@router.get("/gyms")
async def list_gyms(
    request: Request,
    include_deleted: bool = Query(default=False),
    admin: PlatformAdmin = Depends(require_platform_admin),
    services: AppServices = Depends(get_services),
) -> dict:
    gyms = await services.tenant_admin.list_gyms(include_deleted=include_deleted)
    return success_response(request=request, data={"items": [gym_to_dict(g) for g in gyms]})


@router.get("/gyms/{tenant_id}")
async def get_gym(
    tenant_id: str,
    request: Request,
    admin: PlatformAdmin = Depends(require_platform_admin),
    services: AppServices = Depends(get_services),
) -> dict:
    gym = await services.tenant_admin.get_gym(tenant_id)
    return success_response(request=request, data=gym_to_dict(gym))


@router.patch("/gyms/{tenant_id}")
async def update_gym(
    tenant_id: str,
    payload: UpdateGymRequest,
    request: Request,
    admin: PlatformAdmin = Depends(require_platform_admin),
    services: AppServices = Depends(get_services),
) -> dict:
    fields = payload.model_dump(exclude={"opening_hours"}, exclude_none=True)
    gym = await services.tenant_admin.get_gym(tenant_id)
    if fields:
        gym = await services.tenant_admin.update_business_info(tenant_id, fields)
    if payload.opening_hours is not None:
        hours = {day: value.model_dump() for day, value in payload.opening_hours.items()}
        gym = await services.tenant_admin.update_opening_hours(tenant_id, hours)
    return success_response(request=request, data=gym_to_dict(gym))


@router.post("/gyms/{tenant_id}/block")
async def block_gym(
    tenant_id: str,
    request: Request,
    admin: PlatformAdmin = Depends(require_platform_admin),
    services: AppServices = Depends(get_services),
) -> dict:
    gym = await services.tenant_admin.block_tenant(tenant_id)
    return success_response(request=request, data=gym_to_dict(gym))


@router.post("/gyms/{tenant_id}/unblock")
async def unblock_gym(
    tenant_id: str,
    request: Request,
    admin: PlatformAdmin = Depends(require_platform_admin),
    services: AppServices = Depends(get_services),
) -> dict:
    gym = await services.tenant_admin.unblock_tenant(tenant_id)
    return success_response(request=request, data=gym_to_dict(gym))


@router.post("/gyms/{tenant_id}/delete")
async def delete_gym(
    tenant_id: str,
    request: Request,
    admin: PlatformAdmin = Depends(require_platform_admin),
    services: AppServices = Depends(get_services),
) -> dict:
    gym = await services.tenant_admin.soft_delete_tenant(tenant_id)
    return success_response(request=request, data=gym_to_dict(gym))
