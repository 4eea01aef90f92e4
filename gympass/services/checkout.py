from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Protocol

import stripe

from gympass.core.config import Settings, get_settings
from gympass.core.errors import CheckoutProviderError, CheckoutUnavailableError, WebhookSignatureError


logger = logging.getLogger(__name__)

DEV_CHECKOUT_PREFIX = "dev-mode-"


@dataclass(frozen=True)
class CheckoutRequest:
    reservation_id: str
    slug: str
    gym_name: str
    admin_email: str


@dataclass(frozen=True)
class CheckoutSession:
    id: str
    url: str


@dataclass(frozen=True)
class SubscriptionSnapshot:
    id: str
    status: str | None
    current_period_end: int | None
    plan_id: str | None
    metadata: dict[str, Any]


class CheckoutProvider(Protocol):
    name: str

    async def create_checkout(self, request: CheckoutRequest) -> CheckoutSession:
        ...

    def parse_event(self, payload: bytes, signature: str | None) -> dict[str, Any]:
        ...

    async def retrieve_subscription(self, subscription_id: str) -> SubscriptionSnapshot | None:
        ...


def _decode_event(payload: bytes) -> dict[str, Any]:
    try:
        event = json.loads(payload)
    except (TypeError, ValueError) as exc:
        raise WebhookSignatureError("Invalid webhook payload") from exc
    if not isinstance(event, dict) or not isinstance(event.get("type"), str):
        raise WebhookSignatureError("Invalid webhook payload")
    return event


class StripeCheckoutProvider:
    """Subscription checkout backed by Stripe; blocking SDK calls run in a thread."""

    name = "stripe"

    def __init__(self, settings: Settings) -> None:
        self._api_key = settings.stripe_secret_key
        self._price_id = settings.stripe_price_id
        self._webhook_secret = settings.stripe_webhook_secret
        self._base_url = settings.public_base_url.rstrip("/")

    async def create_checkout(self, request: CheckoutRequest) -> CheckoutSession:
        metadata = {
            "registrationSessionId": request.reservation_id,
            "gymSlug": request.slug,
            "gymName": request.gym_name,
        }
        try:
            session = await asyncio.to_thread(
                stripe.checkout.Session.create,
                api_key=self._api_key,
                mode="subscription",
                payment_method_types=["card"],
                line_items=[{"price": self._price_id, "quantity": 1}],
                customer_email=request.admin_email,
                metadata=metadata,
                subscription_data={
                    "metadata": {
                        "registrationSessionId": request.reservation_id,
                        "gymSlug": request.slug,
                    }
                },
                success_url=f"{self._base_url}/registration/success?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{self._base_url}/registration/cancel?session_id={request.reservation_id}",
            )
        except stripe.StripeError as exc:
            logger.error("checkout_create_failed slug=%s error=%s", request.slug, exc)
            raise CheckoutProviderError(str(exc)) from exc
        return CheckoutSession(id=session.id, url=session.url or "")

    def parse_event(self, payload: bytes, signature: str | None) -> dict[str, Any]:
        if not self._webhook_secret:
            raise CheckoutUnavailableError("Webhook secret is not configured")
        if not signature:
            raise WebhookSignatureError("Missing webhook signature")
        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"), signature, self._webhook_secret
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as exc:
            raise WebhookSignatureError() from exc
        return _decode_event(payload)

    async def retrieve_subscription(self, subscription_id: str) -> SubscriptionSnapshot | None:
        try:
            subscription = await asyncio.to_thread(
                stripe.Subscription.retrieve, subscription_id, api_key=self._api_key
            )
        except stripe.StripeError as exc:
            raise CheckoutProviderError(str(exc)) from exc
        # StripeObject renders as JSON; work on plain dicts from here.
        data = json.loads(str(subscription))
        first_item = ((data.get("items") or {}).get("data") or [{}])[0]
        return SubscriptionSnapshot(
            id=data["id"],
            status=data.get("status"),
            current_period_end=data.get("current_period_end") or first_item.get("current_period_end"),
            plan_id=(first_item.get("price") or {}).get("id"),
            metadata=data.get("metadata") or {},
        )


class DevCheckoutProvider:
    """Local stand-in used outside production when Stripe is not configured."""

    name = "dev"

    def __init__(self, settings: Settings) -> None:
        self._base_url = settings.public_base_url.rstrip("/")

    async def create_checkout(self, request: CheckoutRequest) -> CheckoutSession:
        checkout_id = f"{DEV_CHECKOUT_PREFIX}{request.reservation_id}"
        url = (
            f"{self._base_url}/registration/success?session_id={checkout_id}"
            f"&registration_session_id={request.reservation_id}"
        )
        logger.warning("dev_checkout_created slug=%s checkout_id=%s", request.slug, checkout_id)
        return CheckoutSession(id=checkout_id, url=url)

    def parse_event(self, payload: bytes, signature: str | None) -> dict[str, Any]:
        return _decode_event(payload)

    async def retrieve_subscription(self, subscription_id: str) -> SubscriptionSnapshot | None:
        return None


class UnavailableCheckoutProvider:
    """Production without Stripe credentials: every call is refused."""

    name = "unavailable"

    async def create_checkout(self, request: CheckoutRequest) -> CheckoutSession:
        raise CheckoutUnavailableError()

    def parse_event(self, payload: bytes, signature: str | None) -> dict[str, Any]:
        raise CheckoutUnavailableError()

    async def retrieve_subscription(self, subscription_id: str) -> SubscriptionSnapshot | None:
        raise CheckoutUnavailableError()


def build_checkout_provider(settings: Settings | None = None) -> CheckoutProvider:
    settings = settings or get_settings()
    if settings.stripe_configured:
        return StripeCheckoutProvider(settings)
    if settings.is_production:
        logger.error("checkout_unconfigured env=production")
        return UnavailableCheckoutProvider()
    return DevCheckoutProvider(settings)
