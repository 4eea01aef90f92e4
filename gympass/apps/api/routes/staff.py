from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from gympass.apps.api.deps import AppServices, get_services, get_staff_user, get_tenant_context
from gympass.apps.api.response import success_response
from gympass.domain.models import StaffUser, User, utc_now
from gympass.services.passes import ValidationOutcome, pass_to_dict
from gympass.services.tenancy import TenantContext


router = APIRouter(prefix="/staff", tags=["staff"])


class ScanRequest(BaseModel):
    token: str = Field(min_length=1, max_length=256)
    auto_consume: bool = False


class ConsumeRequest(BaseModel):
    token: str = Field(min_length=1, max_length=256)
    entries: int = Field(default=1, ge=1, le=100)


def _user_summary(user: User | None) -> dict[str, Any] | None:
    if user is None:
        return None
    return {"id": user.id, "name": user.name, "email": user.email, "is_blocked": user.is_blocked}


def _outcome_to_dict(outcome: ValidationOutcome) -> dict[str, Any]:
    now = utc_now()
    return {
        "valid": outcome.valid,
        "reason": outcome.reason.value if outcome.reason else None,
        "auto_consumed": outcome.auto_consumed,
        "pass": pass_to_dict(outcome.user_pass, now) if outcome.user_pass is not None else None,
        "user": _user_summary(outcome.user),
    }


@router.post("/scan")
async def scan_pass(
    payload: ScanRequest,
    request: Request,
    ctx: TenantContext = Depends(get_tenant_context),
    staff: StaffUser = Depends(get_staff_user),
    services: AppServices = Depends(get_services),
) -> dict:
    outcome = await services.passes.validate_by_token(
        ctx, payload.token, auto_consume=payload.auto_consume, staff_user_id=staff.id
    )
    return success_response(request=request, data=_outcome_to_dict(outcome))


@router.post("/consume")
async def consume_entries(
    payload: ConsumeRequest,
    request: Request,
    ctx: TenantContext = Depends(get_tenant_context),
    staff: StaffUser = Depends(get_staff_user),
    services: AppServices = Depends(get_services),
) -> dict:
    user_pass = await services.passes.consume_entry(
        ctx, payload.token, count=payload.entries, staff_user_id=staff.id
    )
    return success_response(request=request, data=pass_to_dict(user_pass, utc_now()))


@router.get("/history")
async def usage_history(
    request: Request,
    limit: int | None = Query(default=None, ge=1, le=500),
    pass_id: str | None = Query(default=None),
    ctx: TenantContext = Depends(get_tenant_context),
    staff: StaffUser = Depends(get_staff_user),
    services: AppServices = Depends(get_services),
) -> dict:
    records = await services.passes.usage_history(ctx, limit, pass_id=pass_id)
    items = [
        {
            "id": r.id,
            "pass_id": r.pass_id,
            "action": r.action,
            "consumed_entries": r.consumed_entries,
            "staff_user_id": r.staff_user_id,
            "created_at": r.created_at.isoformat(),
            "serial_number": r.serial_number,
            "pass_name": r.pass_name,
            "user_id": r.user_id,
            "user_email": r.user_email,
        }
        for r in records
    ]
    return success_response(request=request, data={"items": items})


@router.post("/passes/{pass_id}/revoke")
async def revoke_pass(
    pass_id: str,
    request: Request,
    ctx: TenantContext = Depends(get_tenant_context),
    staff: StaffUser = Depends(get_staff_user),
    services: AppServices = Depends(get_services),
) -> dict:
    user_pass = await services.passes.revoke(ctx, pass_id)
    return success_response(request=request, data=pass_to_dict(user_pass, utc_now()))


@router.post("/passes/{pass_id}/restore")
async def restore_pass(
    pass_id: str,
    request: Request,
    ctx: TenantContext = Depends(get_tenant_context),
    staff: StaffUser = Depends(get_staff_user),
    services: AppServices = Depends(get_services),
) -> dict:
    user_pass = await services.passes.restore(ctx, pass_id)
    return success_response(request=request, data=pass_to_dict(user_pass, utc_now()))


@router.post("/users/{user_id}/block")
async def block_user(
    user_id: str,
    request: Request,
    ctx: TenantContext = Depends(get_tenant_context),
    staff: StaffUser = Depends(get_staff_user),
    services: AppServices = Depends(get_services),
) -> dict:
    user = await services.passes.block_user(ctx, user_id)
    return success_response(request=request, data=_user_summary(user))


@router.post("/users/{user_id}/unblock")
async def unblock_user(
    user_id: str,
    request: Request,
    ctx: TenantContext = Depends(get_tenant_context),
    staff: StaffUser = Depends(get_staff_user),
    services: AppServices = Depends(get_services),
) -> dict:
    user = await services.passes.unblock_user(ctx, user_id)
    return success_response(request=request, data=_user_summary(user))


@router.delete("/users/{user_id}")
async def delete_user(
    user_id: str,
    request: Request,
    ctx: TenantContext = Depends(get_tenant_context),
    staff: StaffUser = Depends(get_staff_user),
    services: AppServices = Depends(get_services),
) -> dict:
    counts = await services.passes.delete_user(ctx, user_id)
    return success_response(request=request, data={"deleted": counts})
