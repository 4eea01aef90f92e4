from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from gympass.core.config import Settings, get_settings
from gympass.core.errors import NotFoundError, ReservationExpiredError, SlugTakenError
from gympass.core.locks import KeyedLocks
from gympass.domain.models import Gym, StaffUser
from gympass.domain.state import ReservationStatus, StaffRole, TenantStatus
from gympass.persistence.repos.tenants import TenantRegistry, period_end_from_timestamp
from gympass.persistence.tenant_storage import TenantStorageRouter
from gympass.services.checkout import CheckoutProvider
from gympass.services.credentials import PasswordHasher, generate_temp_password
from gympass.services.offerings import seed_default_offerings
from gympass.services.registration import RegistrationReservationManager, Reservation


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentCompletedEvent:
    reservation_id: str | None
    checkout_id: str | None = None
    customer_id: str | None = None
    subscription_id: str | None = None
    customer_email: str | None = None

    @classmethod
    def from_checkout_session(cls, session: dict[str, Any]) -> "PaymentCompletedEvent":
        metadata = session.get("metadata") or {}
        details = session.get("customer_details") or {}
        return cls(
            reservation_id=metadata.get("registrationSessionId"),
            checkout_id=session.get("id"),
            customer_id=session.get("customer"),
            subscription_id=session.get("subscription"),
            customer_email=session.get("customer_email") or details.get("email"),
        )


@dataclass(frozen=True)
class AdminCredential:
    email: str
    temporary_password: str
    staff_login_path: str | None


@dataclass(frozen=True)
class ProvisioningResult:
    tenant: Gym
    # Only returned by the call that generated it; replays carry None.
    admin_credential: AdminCredential | None
    created: bool


class ProvisioningWorkflow:
    """Turns a paid reservation into an active gym, exactly once per reservation."""

    def __init__(
        self,
        registry: TenantRegistry,
        router: TenantStorageRouter,
        reservations: RegistrationReservationManager,
        checkout: CheckoutProvider,
        *,
        hasher: PasswordHasher | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._registry = registry
        self._router = router
        self._reservations = reservations
        self._checkout = checkout
        self._hasher = hasher or PasswordHasher()
        self._settings = settings or get_settings()
        self._locks = KeyedLocks()

    async def provision_from_completed_payment(self, event: PaymentCompletedEvent) -> ProvisioningResult:
        reservation = await self._reservations.resolve(event.reservation_id, event.checkout_id)
        if reservation is None:
            raise NotFoundError(
                "Registration session not found",
                reservation_id=event.reservation_id,
                checkout_id=event.checkout_id,
            )

        async with self._locks.hold(reservation.id):
            # Re-read under the lock; a concurrent delivery may have finished meanwhile.
            current = await self._reservations.find_by_id(reservation.id)
            if current is None:
                raise NotFoundError("Registration session not found", reservation_id=reservation.id)
            if current.status is ReservationStatus.COMPLETED:
                tenant = await self._registry.get_by_slug(current.slug)
                if tenant is None:
                    raise NotFoundError("Gym not found", slug=current.slug)
                logger.info(
                    "provisioning_replayed reservation_id=%s slug=%s", current.id, current.slug
                )
                return ProvisioningResult(tenant=tenant, admin_credential=None, created=False)
            if current.status is ReservationStatus.EXPIRED:
                raise ReservationExpiredError(reservation_id=current.id, slug=current.slug)

            try:
                return await self._provision(current, event)
            except Exception:
                logger.exception(
                    "provisioning_failed reservation_id=%s checkout_id=%s slug=%s",
                    current.id,
                    event.checkout_id or current.external_checkout_id,
                    current.slug,
                )
                raise

    async def _provision(self, reservation: Reservation, event: PaymentCompletedEvent) -> ProvisioningResult:
        tenant = await self._registry.get_by_slug(reservation.slug)
        if tenant is None:
            tenant = await self._registry.create(reservation.slug, reservation.gym_name)
        elif tenant.status in (TenantStatus.BLOCKED.value, TenantStatus.DELETED.value):
            raise SlugTakenError(slug=reservation.slug)
        else:
            # A previous attempt got this far before failing; continue with its gym.
            logger.info("provisioning_resumed reservation_id=%s slug=%s", reservation.id, reservation.slug)
        if reservation.business:
            tenant = await self._registry.update_business_info(tenant.id, reservation.business)

        handle = await self._router.resolve(reservation.slug, privileged=True)
        async with handle.session() as session:
            seeded = await seed_default_offerings(session)
            credential = await self._ensure_admin(session, reservation, tenant)

        subscription_fields = await self._subscription_fields(event)
        if subscription_fields:
            tenant = await self._registry.update_subscription(tenant.id, subscription_fields)
        tenant = await self._registry.set_status(tenant.id, TenantStatus.ACTIVE)

        # Completion is recorded last so any earlier failure can be replayed.
        await self._reservations.mark_completed(reservation.id)
        logger.info(
            "tenant_provisioned slug=%s tenant_id=%s reservation_id=%s offerings_seeded=%s",
            tenant.slug,
            tenant.id,
            reservation.id,
            seeded,
        )
        if credential is not None and not self._settings.is_production:
            logger.info(
                "dev_admin_credentials slug=%s email=%s password=%s staff_login_path=%s",
                tenant.slug,
                credential.email,
                credential.temporary_password,
                credential.staff_login_path,
            )
        return ProvisioningResult(tenant=tenant, admin_credential=credential, created=True)

    async def _ensure_admin(
        self, session: AsyncSession, reservation: Reservation, tenant: Gym
    ) -> AdminCredential | None:
        result = await session.execute(
            select(StaffUser).where(StaffUser.email == reservation.admin_email)
        )
        admin = result.scalar_one_or_none()
        if admin is not None and not admin.must_change_password:
            return None
        password = generate_temp_password(self._settings.admin_temp_password_length)
        password_hash = await self._hasher.hash(password)
        if admin is None:
            session.add(
                StaffUser(
                    id=str(uuid4()),
                    email=reservation.admin_email,
                    password_hash=password_hash,
                    name=f"{reservation.gym_name} Admin",
                    role=StaffRole.ADMIN.value,
                    must_change_password=True,
                )
            )
        else:
            # The secret from an interrupted attempt was never delivered; issue a fresh one.
            admin.password_hash = password_hash
        await session.commit()
        return AdminCredential(
            email=reservation.admin_email,
            temporary_password=password,
            staff_login_path=tenant.staff_login_path,
        )

    async def _subscription_fields(self, event: PaymentCompletedEvent) -> dict[str, Any]:
        fields: dict[str, Any] = {
            "stripe_customer_id": event.customer_id,
            "stripe_subscription_id": event.subscription_id,
            "billing_email": event.customer_email,
        }
        if event.subscription_id:
            snapshot = await self._checkout.retrieve_subscription(event.subscription_id)
            if snapshot is not None:
                fields["subscription_status"] = snapshot.status
                fields["current_period_end"] = period_end_from_timestamp(snapshot.current_period_end)
                fields["plan_id"] = snapshot.plan_id
        return {key: value for key, value in fields.items() if value is not None}
