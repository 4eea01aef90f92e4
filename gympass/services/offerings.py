from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from gympass.core.errors import NotFoundError
from gympass.domain.models import PassOffering, PassType
from gympass.domain.state import OfferingBehavior


logger = logging.getLogger(__name__)

DURATION_UNITS = ("day", "week", "month")
EXPIRY_UNITS = ("day", "week", "month", "year")


@dataclass(frozen=True)
class PassTemplate:
    template_id: str
    behavior: OfferingBehavior
    name: str
    description: str
    # Defaults used when a gym is seeded from the catalog.
    price_cents: int
    duration_value: int | None = None
    duration_unit: str | None = None
    visits_count: int | None = None
    expires_in_value: int | None = None
    expires_in_unit: str | None = None
    never_expires: bool = False


GLOBAL_PASS_TEMPLATES: tuple[PassTemplate, ...] = (
    PassTemplate(
        template_id="VISITS_SINGLE",
        behavior=OfferingBehavior.VISITS,
        name="Single entry",
        description="1 visit with configurable expiry",
        price_cents=1500,
        visits_count=1,
        expires_in_value=1,
        expires_in_unit="month",
    ),
    PassTemplate(
        template_id="VISITS_TEN",
        behavior=OfferingBehavior.VISITS,
        name="10 visits",
        description="10 visits with configurable expiry",
        price_cents=12000,
        visits_count=10,
        expires_in_value=6,
        expires_in_unit="month",
    ),
    PassTemplate(
        template_id="DURATION_MONTHS",
        behavior=OfferingBehavior.DURATION,
        name="Monthly",
        description="Unlimited entries for 1 month",
        price_cents=8000,
        duration_value=1,
        duration_unit="month",
        expires_in_value=1,
        expires_in_unit="month",
    ),
)


def get_template(template_id: str) -> PassTemplate | None:
    return next((t for t in GLOBAL_PASS_TEMPLATES if t.template_id == template_id), None)


@dataclass(frozen=True)
class Offering:
    """Normalized view over configurable offerings and legacy pass types."""

    id: str
    name: str
    description: str
    price_cents: int
    behavior: OfferingBehavior
    enabled: bool
    duration_value: int | None = None
    duration_unit: str | None = None
    visits_count: int | None = None
    expires_in_value: int | None = None
    expires_in_unit: str | None = None
    never_expires: bool = False
    template_id: str | None = None
    # "offering" rows live in pass_offerings; "legacy" rows in pass_types.
    source: str = "offering"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "price_cents": self.price_cents,
            "behavior": self.behavior.value,
            "enabled": self.enabled,
            "duration_value": self.duration_value,
            "duration_unit": self.duration_unit,
            "visits_count": self.visits_count,
            "expires_in_value": self.expires_in_value,
            "expires_in_unit": self.expires_in_unit,
            "never_expires": self.never_expires,
            "template_id": self.template_id,
            "source": self.source,
        }


def offering_from_row(row: PassOffering) -> Offering:
    return Offering(
        id=row.id,
        name=row.name,
        description=row.description or "",
        price_cents=row.price_cents,
        behavior=OfferingBehavior(row.behavior),
        enabled=bool(row.enabled),
        duration_value=row.duration_value,
        duration_unit=row.duration_unit,
        visits_count=row.visits_count,
        expires_in_value=row.expires_in_value,
        expires_in_unit=row.expires_in_unit,
        never_expires=bool(row.never_expires),
        template_id=row.template_id,
    )


def offering_from_legacy(row: PassType) -> Offering:
    # Legacy rows carry days-based validity and an optional entry count.
    if row.total_entries is not None:
        behavior = OfferingBehavior.VISITS
        duration_value = None
        duration_unit = None
        expires_in_value = row.duration_days
        expires_in_unit = "day" if row.duration_days else None
    else:
        behavior = OfferingBehavior.DURATION
        duration_value = row.duration_days
        duration_unit = "day" if row.duration_days else None
        expires_in_value = None
        expires_in_unit = None
    return Offering(
        id=row.id,
        name=row.name,
        description=row.description or "",
        price_cents=int(round((row.price or 0) * 100)),
        behavior=behavior,
        enabled=bool(row.active),
        duration_value=duration_value,
        duration_unit=duration_unit,
        visits_count=row.total_entries,
        expires_in_value=expires_in_value,
        expires_in_unit=expires_in_unit,
        never_expires=row.duration_days is None,
        source="legacy",
    )


def _add_months(start: datetime, months: int) -> datetime:
    # Clamp to the last day of the target month (Jan 31 + 1 month -> Feb 28/29).
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def add_interval(start: datetime, value: int, unit: str) -> datetime:
    if unit == "day":
        return start + timedelta(days=value)
    if unit == "week":
        return start + timedelta(weeks=value)
    if unit == "month":
        return _add_months(start, value)
    if unit == "year":
        return _add_months(start, value * 12)
    raise ValueError(f"Unsupported interval unit: {unit}")


def compute_validity(offering: Offering, purchased_at: datetime) -> tuple[datetime | None, int | None]:
    """Return ``(valid_until, total_entries)`` for a pass bought at ``purchased_at``.

    An explicit expiry rule wins over the duration; the duration only applies
    when no expiry rule is configured.
    """
    valid_until: datetime | None = None
    if not offering.never_expires and offering.expires_in_value and offering.expires_in_unit:
        valid_until = add_interval(purchased_at, offering.expires_in_value, offering.expires_in_unit)
    elif (
        offering.behavior is OfferingBehavior.DURATION
        and offering.duration_value
        and offering.duration_unit
    ):
        valid_until = add_interval(purchased_at, offering.duration_value, offering.duration_unit)

    total_entries = offering.visits_count if offering.behavior is OfferingBehavior.VISITS else None
    return valid_until, total_entries


async def load_offering(session: AsyncSession, offering_id: str) -> Offering:
    row = await session.get(PassOffering, offering_id)
    if row is not None:
        return offering_from_row(row)
    legacy = await session.get(PassType, offering_id)
    if legacy is not None:
        return offering_from_legacy(legacy)
    raise NotFoundError("Pass offering not found", offering_id=offering_id)


async def list_offerings(session: AsyncSession, *, include_disabled: bool = False) -> list[Offering]:
    stmt = select(PassOffering).order_by(PassOffering.price_cents, PassOffering.name)
    if not include_disabled:
        stmt = stmt.where(PassOffering.enabled.is_(True))
    rows = (await session.execute(stmt)).scalars().all()
    offerings = [offering_from_row(row) for row in rows]

    # Unmigrated legacy rows stay purchasable until the migration picks them up.
    migrated_ids = {row.legacy_pass_type_id for row in rows if row.legacy_pass_type_id}
    legacy_stmt = select(PassType).order_by(PassType.price, PassType.name)
    if not include_disabled:
        legacy_stmt = legacy_stmt.where(PassType.active.is_(True))
    legacy_rows = (await session.execute(legacy_stmt)).scalars().all()
    offerings.extend(
        offering_from_legacy(row) for row in legacy_rows if row.id not in migrated_ids
    )
    return offerings


async def seed_default_offerings(session: AsyncSession) -> int:
    """Create one offering per catalog template unless the gym already has offerings."""
    existing = await session.scalar(select(func.count()).select_from(PassOffering))
    if existing:
        return 0
    for template in GLOBAL_PASS_TEMPLATES:
        session.add(
            PassOffering(
                id=str(uuid4()),
                template_id=template.template_id,
                is_custom=False,
                name=template.name,
                description=template.description,
                price_cents=template.price_cents,
                enabled=True,
                behavior=template.behavior.value,
                duration_value=template.duration_value,
                duration_unit=template.duration_unit,
                visits_count=template.visits_count,
                expires_in_value=template.expires_in_value,
                expires_in_unit=template.expires_in_unit,
                never_expires=template.never_expires,
            )
        )
    await session.commit()
    return len(GLOBAL_PASS_TEMPLATES)


async def migrate_legacy_pass_types(session: AsyncSession) -> int:
    """Copy legacy pass types into pass_offerings; safe to run repeatedly."""
    migrated = set(
        (
            await session.execute(
                select(PassOffering.legacy_pass_type_id).where(
                    PassOffering.legacy_pass_type_id.is_not(None)
                )
            )
        ).scalars()
    )
    legacy_rows = (await session.execute(select(PassType))).scalars().all()
    created = 0
    for row in legacy_rows:
        if row.id in migrated:
            continue
        offering = offering_from_legacy(row)
        session.add(
            PassOffering(
                id=str(uuid4()),
                template_id=None,
                is_custom=True,
                name=offering.name,
                description=offering.description,
                price_cents=offering.price_cents,
                enabled=offering.enabled,
                behavior=offering.behavior.value,
                duration_value=offering.duration_value,
                duration_unit=offering.duration_unit,
                visits_count=offering.visits_count,
                expires_in_value=offering.expires_in_value,
                expires_in_unit=offering.expires_in_unit,
                never_expires=offering.never_expires,
                legacy_pass_type_id=row.id,
            )
        )
        created += 1
    if created:
        await session.commit()
        logger.info("legacy_pass_types_migrated count=%s", created)
    return created
