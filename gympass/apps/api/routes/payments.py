from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Header, Request

from gympass.apps.api.deps import AppServices, get_services
from gympass.apps.api.response import success_response


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/webhook")
async def payment_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
    services: AppServices = Depends(get_services),
) -> dict:
    # Signature verification needs the exact bytes the provider sent.
    payload = await request.body()
    event = services.checkout.parse_event(payload, stripe_signature)
    result = await services.billing.handle(event)
    logger.info(
        "payment_webhook event_type=%s handled=%s message=%s",
        result.event_type,
        result.handled,
        result.message,
    )
    data = {
        "received": True,
        "event_type": result.event_type,
        "handled": result.handled,
        "message": result.message,
    }
    if result.provisioning is not None:
        data["slug"] = result.provisioning.tenant.slug
        data["created"] = result.provisioning.created
    return success_response(request=request, data=data)
