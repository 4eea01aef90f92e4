from __future__ import annotations

import logging
import secrets
import string
from datetime import datetime, timezone
from typing import Any, Mapping
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gympass.core.errors import NotFoundError, SlugTakenError
from gympass.domain.models import Gym, PlatformAdmin, utc_now
from gympass.domain.state import TenantStatus
from gympass.services.resilience import retry_async, storage_errors


logger = logging.getLogger(__name__)

_BASE62 = string.ascii_letters + string.digits

DEFAULT_OPENING_HOURS: dict[str, dict[str, Any]] = {
    "mon": {"open": "06:00", "close": "22:00", "closed": False},
    "tue": {"open": "06:00", "close": "22:00", "closed": False},
    "wed": {"open": "06:00", "close": "22:00", "closed": False},
    "thu": {"open": "06:00", "close": "22:00", "closed": False},
    "fri": {"open": "06:00", "close": "22:00", "closed": False},
    "sat": {"open": "08:00", "close": "20:00", "closed": False},
    "sun": {"open": "08:00", "close": "20:00", "closed": False},
}

SUBSCRIPTION_FIELDS = frozenset(
    {
        "stripe_customer_id",
        "stripe_subscription_id",
        "subscription_status",
        "current_period_end",
        "plan_id",
        "billing_email",
    }
)

BUSINESS_FIELDS = frozenset(
    {
        "name",
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
    }
)


def generate_staff_login_path() -> str:
    length = 12 + secrets.randbelow(4)
    return "".join(secrets.choice(_BASE62) for _ in range(length))


def _filtered(fields: Mapping[str, Any], allowed: frozenset[str]) -> dict[str, Any]:
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"Unsupported fields: {sorted(unknown)}")
    return {key: value for key, value in fields.items() if value is not None}


class TenantRegistry:
    """Durable catalog of gyms; every write touches a single row."""

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]) -> None:
        self._sessionmaker = sessionmaker

    async def create(self, slug: str, name: str, *, tenant_id: str | None = None) -> Gym:
        gym = Gym(
            id=tenant_id or str(uuid4()),
            slug=slug,
            name=name,
            status=TenantStatus.PENDING.value,
            staff_login_path=generate_staff_login_path(),
            opening_hours_json=dict(DEFAULT_OPENING_HOURS),
        )
        async with storage_errors(), self._sessionmaker() as session:
            session.add(gym)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise SlugTakenError(f'Gym with slug "{slug}" already exists', slug=slug) from exc
        logger.info("tenant_created slug=%s tenant_id=%s", slug, gym.id)
        return gym

    async def get_by_slug(self, slug: str) -> Gym | None:
        async def _load() -> Gym | None:
            async with storage_errors(), self._sessionmaker() as session:
                result = await session.execute(select(Gym).where(Gym.slug == slug))
                return result.scalar_one_or_none()

        return await retry_async(_load)

    async def get_by_id(self, tenant_id: str) -> Gym | None:
        async def _load() -> Gym | None:
            async with storage_errors(), self._sessionmaker() as session:
                return await session.get(Gym, tenant_id)

        return await retry_async(_load)

    async def require(self, tenant_id: str) -> Gym:
        gym = await self.get_by_id(tenant_id)
        if gym is None:
            raise NotFoundError("Gym not found", tenant_id=tenant_id)
        return gym

    async def list_active(self, include_deleted: bool = False) -> list[Gym]:
        async with storage_errors(), self._sessionmaker() as session:
            stmt = select(Gym).order_by(Gym.created_at.desc(), Gym.id)
            if not include_deleted:
                stmt = stmt.where(Gym.status != TenantStatus.DELETED.value)
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def set_status(self, tenant_id: str, status: TenantStatus) -> Gym:
        values: dict[str, Any] = {"status": status.value}
        if status is TenantStatus.DELETED:
            values["deleted_at"] = utc_now()
        gym = await self._update(tenant_id, values)
        logger.info("tenant_status_changed tenant_id=%s status=%s", tenant_id, status.value)
        return gym

    async def update_subscription(self, tenant_id: str, fields: Mapping[str, Any]) -> Gym:
        return await self._update(tenant_id, _filtered(fields, SUBSCRIPTION_FIELDS))

    async def update_business_info(self, tenant_id: str, fields: Mapping[str, Any]) -> Gym:
        return await self._update(tenant_id, _filtered(fields, BUSINESS_FIELDS))

    async def update_opening_hours(self, tenant_id: str, opening_hours: dict[str, Any]) -> Gym:
        return await self._update(tenant_id, {"opening_hours_json": opening_hours})

    async def create_platform_admin(self, email: str, password_hash: str, name: str) -> PlatformAdmin:
        admin = PlatformAdmin(
            id=str(uuid4()),
            email=email.strip().lower(),
            password_hash=password_hash,
            name=name,
        )
        async with storage_errors(), self._sessionmaker() as session:
            session.add(admin)
            await session.commit()
        logger.info("platform_admin_created admin_id=%s", admin.id)
        return admin

    async def get_platform_admin(self, admin_id: str) -> PlatformAdmin | None:
        async with storage_errors(), self._sessionmaker() as session:
            return await session.get(PlatformAdmin, admin_id)

    async def _update(self, tenant_id: str, values: dict[str, Any]) -> Gym:
        async with storage_errors(), self._sessionmaker() as session:
            gym = await session.get(Gym, tenant_id)
            if gym is None:
                raise NotFoundError("Gym not found", tenant_id=tenant_id)
            for key, value in values.items():
                setattr(gym, key, value)
            await session.commit()
            return gym


def period_end_from_timestamp(value: int | float | None) -> datetime | None:
    # Payment providers report period ends as unix seconds.
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)
