from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from gympass.apps.api.deps import AppServices, get_services, get_tenant_context, get_user_id
from gympass.apps.api.response import success_response
from gympass.domain.models import utc_now
from gympass.services.offerings import list_offerings
from gympass.services.passes import pass_to_dict
from gympass.services.resilience import storage_errors
from gympass.services.tenancy import TenantContext


router = APIRouter(tags=["passes"])


class PurchaseRequest(BaseModel):
    offering_id: str = Field(min_length=1, max_length=64)


@router.get("/offerings")
async def get_offerings(
    request: Request,
    ctx: TenantContext = Depends(get_tenant_context),
) -> dict:
    async with storage_errors(ctx.slug), ctx.storage.session() as session:
        offerings = await list_offerings(session)
    return success_response(request=request, data={"items": [o.to_dict() for o in offerings]})


@router.post("/passes/purchase", status_code=201)
async def purchase_pass(
    payload: PurchaseRequest,
    request: Request,
    ctx: TenantContext = Depends(get_tenant_context),
    user_id: str = Depends(get_user_id),
    services: AppServices = Depends(get_services),
) -> dict:
    result = await services.passes.purchase(ctx, user_id, payload.offering_id)
    data = pass_to_dict(result.user_pass, utc_now(), result.token)
    return success_response(request=request, data=data)


@router.get("/passes")
async def my_passes(
    request: Request,
    ctx: TenantContext = Depends(get_tenant_context),
    user_id: str = Depends(get_user_id),
    services: AppServices = Depends(get_services),
) -> dict:
    passes = await services.passes.list_user_passes(ctx, user_id)
    now = utc_now()
    return success_response(request=request, data={"items": [pass_to_dict(p, now) for p in passes]})


@router.get("/passes/{pass_id}")
async def get_pass(
    pass_id: str,
    request: Request,
    ctx: TenantContext = Depends(get_tenant_context),
    user_id: str = Depends(get_user_id),
    services: AppServices = Depends(get_services),
) -> dict:
    user_pass, token = await services.passes.get_pass(ctx, pass_id, user_id=user_id)
    return success_response(request=request, data=pass_to_dict(user_pass, utc_now(), token))
