from __future__ import annotations

import logging
import re
from dataclasses import dataclass, fields
from datetime import datetime, timedelta
from typing import Any, Callable
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gympass.core.config import SLUG_PATTERN, Settings, get_settings
from gympass.core.errors import InvalidSlugError, NotFoundError, SlugReservedError, SlugTakenError
from gympass.core.locks import KeyedLocks
from gympass.domain.models import Gym, RegistrationSession, utc_now
from gympass.domain.state import ReservationStatus, TenantStatus
from gympass.persistence.repos.tenants import TenantRegistry
from gympass.services.checkout import CheckoutProvider, CheckoutRequest, CheckoutSession
from gympass.services.resilience import storage_errors


logger = logging.getLogger(__name__)

_SLUG_RE = re.compile(SLUG_PATTERN)


def normalize_slug(value: str) -> str:
    slug = (value or "").strip().lower()
    if not _SLUG_RE.fullmatch(slug):
        raise InvalidSlugError(slug=slug)
    return slug


@dataclass(frozen=True)
class ApplicantInfo:
    gym_name: str
    admin_email: str
    company_name: str | None = None
    tax_number: str | None = None
    address_line1: str | None = None
    address_line2: str | None = None
    city: str | None = None
    postal_code: str | None = None
    country: str | None = None
    contact_name: str | None = None
    contact_email: str | None = None
    contact_phone: str | None = None

    def business_fields(self) -> dict[str, Any]:
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name not in ("gym_name", "admin_email") and getattr(self, f.name) is not None
        }


@dataclass(frozen=True)
class Reservation:
    """Snapshot of a reservation row with its status evaluated at read time."""

    id: str
    slug: str
    gym_name: str
    admin_email: str
    status: ReservationStatus
    external_checkout_id: str | None
    created_at: datetime
    expires_at: datetime
    business: dict[str, Any]

    @property
    def is_pending(self) -> bool:
        return self.status is ReservationStatus.PENDING_PAYMENT

    @classmethod
    def from_row(cls, row: RegistrationSession, now: datetime) -> "Reservation":
        status = ReservationStatus(row.status)
        if status is ReservationStatus.PENDING_PAYMENT and row.expires_at <= now:
            status = ReservationStatus.EXPIRED
        business = {
            name: getattr(row, name)
            for name in (
                "company_name",
                "tax_number",
                "address_line1",
                "address_line2",
                "city",
                "postal_code",
                "country",
                "contact_name",
                "contact_email",
                "contact_phone",
            )
            if getattr(row, name) is not None
        }
        return cls(
            id=row.id,
            slug=row.slug,
            gym_name=row.gym_name,
            admin_email=row.admin_email,
            status=status,
            external_checkout_id=row.external_checkout_id,
            created_at=row.created_at,
            expires_at=row.expires_at,
            business=business,
        )


@dataclass(frozen=True)
class ReservationResult:
    reservation: Reservation
    checkout: CheckoutSession


@dataclass(frozen=True)
class RegistrationStatus:
    # PROCESSING until the gym exists and is active.
    state: str
    reservation: Reservation
    gym: Gym | None = None


class RegistrationReservationManager:
    """Holds a slug for a bounded time while the applicant pays."""

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        registry: TenantRegistry,
        checkout: CheckoutProvider,
        *,
        settings: Settings | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._sessionmaker = sessionmaker
        self._registry = registry
        self._checkout = checkout
        self._settings = settings or get_settings()
        self._now = time_provider or utc_now
        self._locks = KeyedLocks()

    @property
    def ttl(self) -> timedelta:
        return timedelta(minutes=self._settings.reservation_ttl_minutes)

    async def reserve(self, slug: str, applicant: ApplicantInfo) -> ReservationResult:
        slug = normalize_slug(slug)
        async with self._locks.hold(slug):
            await self._ensure_slug_available(slug)

            reservation_id = str(uuid4())
            # The row is written only once the checkout exists; a failed checkout leaves no trace.
            checkout = await self._checkout.create_checkout(
                CheckoutRequest(
                    reservation_id=reservation_id,
                    slug=slug,
                    gym_name=applicant.gym_name,
                    admin_email=applicant.admin_email,
                )
            )
            now = self._now()
            row = RegistrationSession(
                id=reservation_id,
                slug=slug,
                gym_name=applicant.gym_name,
                admin_email=applicant.admin_email,
                status=ReservationStatus.PENDING_PAYMENT.value,
                external_checkout_id=checkout.id,
                created_at=now,
                expires_at=now + self.ttl,
                **applicant.business_fields(),
            )
            async with storage_errors(), self._sessionmaker() as session:
                session.add(row)
                try:
                    await session.commit()
                except IntegrityError as exc:
                    # Another process sharing the registry won the race for this slug.
                    await session.rollback()
                    raise SlugReservedError(slug=slug) from exc
        logger.info(
            "slug_reserved slug=%s reservation_id=%s checkout_id=%s",
            slug,
            reservation_id,
            checkout.id,
        )
        return ReservationResult(reservation=Reservation.from_row(row, now), checkout=checkout)

    async def _ensure_slug_available(self, slug: str) -> None:
        # Deleted gyms keep their slug row, so any registry row makes the slug unavailable.
        if slug in ("www", self._settings.default_tenant_slug):
            raise SlugTakenError(slug=slug)
        existing = await self._registry.get_by_slug(slug)
        if existing is not None:
            raise SlugTakenError(slug=slug)
        now = self._now()
        async with storage_errors(), self._sessionmaker() as session:
            # Clear stale pending rows so the partial unique index admits a new reservation.
            await session.execute(
                update(RegistrationSession)
                .where(
                    RegistrationSession.slug == slug,
                    RegistrationSession.status == ReservationStatus.PENDING_PAYMENT.value,
                    RegistrationSession.expires_at <= now,
                )
                .values(status=ReservationStatus.EXPIRED.value)
            )
            await session.commit()
            active = await self._active_row(session, slug, now)
        if active is not None:
            raise SlugReservedError(slug=slug)

    async def _active_row(
        self, session: AsyncSession, slug: str, now: datetime
    ) -> RegistrationSession | None:
        result = await session.execute(
            select(RegistrationSession).where(
                RegistrationSession.slug == slug,
                RegistrationSession.status == ReservationStatus.PENDING_PAYMENT.value,
                RegistrationSession.expires_at > now,
            )
        )
        return result.scalars().first()

    async def attach_external_checkout_id(self, reservation_id: str, checkout_id: str) -> Reservation:
        async with storage_errors(), self._sessionmaker() as session:
            row = await session.get(RegistrationSession, reservation_id)
            if row is None:
                raise NotFoundError("Registration session not found", reservation_id=reservation_id)
            row.external_checkout_id = checkout_id
            await session.commit()
            return Reservation.from_row(row, self._now())

    async def find_by_id(self, reservation_id: str) -> Reservation | None:
        async with storage_errors(), self._sessionmaker() as session:
            row = await session.get(RegistrationSession, reservation_id)
        return Reservation.from_row(row, self._now()) if row is not None else None

    async def find_by_checkout_id(self, checkout_id: str) -> Reservation | None:
        async with storage_errors(), self._sessionmaker() as session:
            result = await session.execute(
                select(RegistrationSession).where(RegistrationSession.external_checkout_id == checkout_id)
            )
            row = result.scalars().first()
        return Reservation.from_row(row, self._now()) if row is not None else None

    async def find_active_by_slug(self, slug: str) -> Reservation | None:
        now = self._now()
        async with storage_errors(), self._sessionmaker() as session:
            row = await self._active_row(session, slug, now)
        return Reservation.from_row(row, now) if row is not None else None

    async def resolve(
        self, reservation_id: str | None = None, checkout_id: str | None = None
    ) -> Reservation | None:
        # Reservation id first; the checkout id is the fallback lookup key.
        reservation = await self.find_by_id(reservation_id) if reservation_id else None
        if reservation is None and checkout_id:
            reservation = await self.find_by_checkout_id(checkout_id)
        return reservation

    async def mark_completed(self, reservation_id: str) -> bool:
        return await self._transition(reservation_id, ReservationStatus.COMPLETED)

    async def mark_expired(self, reservation_id: str) -> bool:
        return await self._transition(reservation_id, ReservationStatus.EXPIRED)

    async def _transition(self, reservation_id: str, target: ReservationStatus) -> bool:
        # Compare-and-set: only a PENDING_PAYMENT row moves.
        conditions = [
            RegistrationSession.id == reservation_id,
            RegistrationSession.status == ReservationStatus.PENDING_PAYMENT.value,
        ]
        async with storage_errors(), self._sessionmaker() as session:
            result = await session.execute(
                update(RegistrationSession).where(*conditions).values(status=target.value)
            )
            await session.commit()
        changed = (result.rowcount or 0) == 1
        if changed:
            logger.info("reservation_transition reservation_id=%s status=%s", reservation_id, target.value)
        return changed

    async def sweep_expired(self) -> list[str]:
        now = self._now()
        async with storage_errors(), self._sessionmaker() as session:
            result = await session.execute(
                select(RegistrationSession.id).where(
                    RegistrationSession.status == ReservationStatus.PENDING_PAYMENT.value,
                    RegistrationSession.expires_at <= now,
                )
            )
            ids = list(result.scalars().all())
            if ids:
                await session.execute(
                    update(RegistrationSession)
                    .where(
                        RegistrationSession.id.in_(ids),
                        RegistrationSession.status == ReservationStatus.PENDING_PAYMENT.value,
                    )
                    .values(status=ReservationStatus.EXPIRED.value)
                )
                await session.commit()
        if ids:
            logger.info("reservations_swept count=%s", len(ids))
        return ids

    async def registration_status(
        self, reservation_id: str | None = None, checkout_id: str | None = None
    ) -> RegistrationStatus:
        reservation = await self.resolve(reservation_id, checkout_id)
        if reservation is None:
            raise NotFoundError("Registration session not found")
        gym = await self._registry.get_by_slug(reservation.slug)
        if gym is not None and gym.status == TenantStatus.ACTIVE.value:
            return RegistrationStatus(state="COMPLETED", reservation=reservation, gym=gym)
        if reservation.status is ReservationStatus.EXPIRED:
            return RegistrationStatus(state="EXPIRED", reservation=reservation)
        return RegistrationStatus(state="PROCESSING", reservation=reservation, gym=gym)

