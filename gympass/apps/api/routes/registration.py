from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from gympass.apps.api.deps import AppServices, get_services
from gympass.apps.api.response import success_response
from gympass.core.errors import NotFoundError
from gympass.domain.models import Gym
from gympass.domain.state import TenantStatus
from gympass.services.registration import ApplicantInfo


router = APIRouter(tags=["registration"])

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class RegisterGymRequest(BaseModel):
    slug: str = Field(min_length=1, max_length=64)
    gym_name: str = Field(min_length=1, max_length=200)
    admin_email: str = Field(min_length=3, max_length=254, pattern=EMAIL_PATTERN)
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


def _public_gym(gym: Gym, services: AppServices) -> dict[str, Any]:
    return {
        "id": gym.id,
        "slug": gym.slug,
        "name": gym.name,
        "tenant_url": services.settings.tenant_url(gym.slug),
    }


@router.post("/gyms/register", status_code=201)
async def register_gym(
    payload: RegisterGymRequest,
    request: Request,
    services: AppServices = Depends(get_services),
) -> dict:
    applicant = ApplicantInfo(**payload.model_dump(exclude={"slug"}))
    result = await services.reservations.reserve(payload.slug, applicant)
    data = {
        "registration_session_id": result.reservation.id,
        "slug": result.reservation.slug,
        "status": result.reservation.status.value,
        "expires_at": result.reservation.expires_at.isoformat(),
        "checkout_id": result.checkout.id,
        "checkout_url": result.checkout.url,
    }
    return success_response(request=request, data=data)


@router.get("/gyms")
async def list_public_gyms(
    request: Request,
    services: AppServices = Depends(get_services),
) -> dict:
    gyms = await services.registry.list_active()
    items = [_public_gym(gym, services) for gym in gyms if gym.status == TenantStatus.ACTIVE.value]
    return success_response(request=request, data={"items": items})


@router.get("/registration/status")
async def registration_status(
    request: Request,
    session_id: str | None = Query(default=None),
    registration_session_id: str | None = Query(default=None),
    services: AppServices = Depends(get_services),
):
    if not session_id and not registration_session_id:
        raise NotFoundError("Registration session not found")
    status = await services.reservations.registration_status(
        reservation_id=registration_session_id, checkout_id=session_id
    )
    data: dict[str, Any] = {
        "state": status.state,
        "registration_session_id": status.reservation.id,
        "slug": status.reservation.slug,
        "expires_at": status.reservation.expires_at.isoformat(),
    }
    if status.gym is not None and status.state == "COMPLETED":
        data["gym"] = _public_gym(status.gym, services)
        data["staff_login_url"] = (
            f"{services.settings.tenant_url(status.gym.slug)}/staff/{status.gym.staff_login_path}"
        )
    body = success_response(request=request, data=data)
    if status.state == "PROCESSING":
        # Payment confirmed client-side but the webhook has not landed yet.
        return JSONResponse(status_code=202, content=body)
    return body
