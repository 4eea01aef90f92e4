from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

from gympass.domain.models import Gym
from gympass.persistence.repos.tenants import TenantRegistry, period_end_from_timestamp
from gympass.services.checkout import CheckoutProvider
from gympass.services.provisioning import (
    PaymentCompletedEvent,
    ProvisioningResult,
    ProvisioningWorkflow,
)


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WebhookHandlingResult:
    # Summarize how an inbound provider event was handled for the webhook response.
    event_type: str
    handled: bool
    message: str
    provisioning: ProvisioningResult | None = None


class BillingEventHandler:
    """Routes payment provider events to provisioning and subscription updates."""

    def __init__(
        self,
        workflow: ProvisioningWorkflow,
        registry: TenantRegistry,
        checkout: CheckoutProvider,
    ) -> None:
        self._workflow = workflow
        self._registry = registry
        self._checkout = checkout

    async def handle(self, event: dict[str, Any]) -> WebhookHandlingResult:
        event_type = str(event.get("type") or "")
        obj = (event.get("data") or {}).get("object") or {}
        if event_type == "checkout.session.completed":
            result = await self._workflow.provision_from_completed_payment(
                PaymentCompletedEvent.from_checkout_session(obj)
            )
            return WebhookHandlingResult(
                event_type=event_type,
                handled=True,
                message="Gym provisioned" if result.created else "Already provisioned",
                provisioning=result,
            )
        if event_type == "customer.subscription.updated":
            return await self._subscription_updated(event_type, obj)
        if event_type == "customer.subscription.deleted":
            return await self._set_subscription_status(event_type, obj.get("metadata"), "canceled")
        if event_type == "invoice.payment_failed":
            return await self._payment_failed(event_type, obj)
        logger.info("billing_event_ignored event_type=%s", event_type)
        return WebhookHandlingResult(event_type=event_type, handled=False, message="Unhandled event type")

    async def _gym_from_metadata(self, event_type: str, metadata: dict[str, Any] | None) -> Gym | None:
        # Subscriptions carry the gym slug in metadata set at checkout.
        slug = (metadata or {}).get("gymSlug")
        gym = await self._registry.get_by_slug(slug) if slug else None
        if gym is None:
            logger.error(
                "billing_event_gym_missing event_type=%s slug=%s reservation_id=%s",
                event_type,
                slug,
                (metadata or {}).get("registrationSessionId"),
            )
        return gym

    async def _subscription_updated(self, event_type: str, subscription: dict[str, Any]) -> WebhookHandlingResult:
        gym = await self._gym_from_metadata(event_type, subscription.get("metadata"))
        if gym is None:
            return WebhookHandlingResult(event_type=event_type, handled=False, message="Gym not found")
        first_item = ((subscription.get("items") or {}).get("data") or [{}])[0]
        period_end = subscription.get("current_period_end") or first_item.get("current_period_end")
        fields = {
            "subscription_status": subscription.get("status"),
            "current_period_end": period_end_from_timestamp(period_end),
            "plan_id": (first_item.get("price") or {}).get("id"),
        }
        await self._registry.update_subscription(gym.id, fields)
        logger.info("subscription_updated slug=%s status=%s", gym.slug, fields["subscription_status"])
        return WebhookHandlingResult(event_type=event_type, handled=True, message="Subscription updated")

    async def _set_subscription_status(
        self, event_type: str, metadata: dict[str, Any] | None, status: str
    ) -> WebhookHandlingResult:
        gym = await self._gym_from_metadata(event_type, metadata)
        if gym is None:
            return WebhookHandlingResult(event_type=event_type, handled=False, message="Gym not found")
        await self._registry.update_subscription(gym.id, {"subscription_status": status})
        logger.info("subscription_status_changed slug=%s status=%s", gym.slug, status)
        return WebhookHandlingResult(event_type=event_type, handled=True, message=f"Subscription {status}")

    async def _payment_failed(self, event_type: str, invoice: dict[str, Any]) -> WebhookHandlingResult:
        subscription_id = invoice.get("subscription")
        metadata: dict[str, Any] | None = None
        if subscription_id:
            snapshot = await self._checkout.retrieve_subscription(subscription_id)
            metadata = snapshot.metadata if snapshot is not None else None
        # Invoices without a retrievable subscription may still carry the gym slug themselves.
        if not metadata:
            metadata = ((invoice.get("subscription_details") or {}).get("metadata")) or invoice.get("metadata")
        return await self._set_subscription_status(event_type, metadata, "past_due")
