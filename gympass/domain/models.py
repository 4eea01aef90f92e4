from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from gympass.domain.state import PassStatus, ReservationStatus, StaffRole, TenantStatus


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend.

    SQLite drops tzinfo on storage, so values are normalized to naive UTC on
    the way in and re-tagged as UTC on the way out.
    """

    impl = DateTime
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(DateTime(timezone=True))
        return dialect.type_descriptor(DateTime())

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "postgresql":
            return value
        return value.replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Central registry (one store for the whole platform)
# ---------------------------------------------------------------------------


class RegistryBase(DeclarativeBase):
    pass


class Gym(RegistryBase):
    __tablename__ = "gyms"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    # Immutable once created; doubles as the tenant storage key.
    slug: Mapped[str] = mapped_column(String, unique=True, index=True)
    name: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default=TenantStatus.PENDING.value, index=True)
    # Unguessable per-gym path segment for the staff login page.
    staff_login_path: Mapped[str | None] = mapped_column(String, nullable=True)
    opening_hours_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    stripe_customer_id: Mapped[str | None] = mapped_column(String, nullable=True)
    stripe_subscription_id: Mapped[str | None] = mapped_column(String, nullable=True)
    subscription_status: Mapped[str | None] = mapped_column(String, nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    plan_id: Mapped[str | None] = mapped_column(String, nullable=True)
    billing_email: Mapped[str | None] = mapped_column(String, nullable=True)

    company_name: Mapped[str | None] = mapped_column(String, nullable=True)
    tax_number: Mapped[str | None] = mapped_column(String, nullable=True)
    address_line1: Mapped[str | None] = mapped_column(String, nullable=True)
    address_line2: Mapped[str | None] = mapped_column(String, nullable=True)
    city: Mapped[str | None] = mapped_column(String, nullable=True)
    postal_code: Mapped[str | None] = mapped_column(String, nullable=True)
    country: Mapped[str | None] = mapped_column(String, nullable=True)
    contact_name: Mapped[str | None] = mapped_column(String, nullable=True)
    contact_email: Mapped[str | None] = mapped_column(String, nullable=True)
    contact_phone: Mapped[str | None] = mapped_column(String, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, onupdate=utc_now)
    deleted_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class RegistrationSession(RegistryBase):
    __tablename__ = "registration_sessions"
    __table_args__ = (
        # At most one live reservation per slug across every process sharing the registry.
        Index(
            "uq_registration_sessions_pending_slug",
            "slug",
            unique=True,
            sqlite_where=text("status = 'PENDING_PAYMENT'"),
            postgresql_where=text("status = 'PENDING_PAYMENT'"),
        ),
        Index("ix_registration_sessions_status_expires", "status", "expires_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    slug: Mapped[str] = mapped_column(String, index=True)
    gym_name: Mapped[str] = mapped_column(String)
    admin_email: Mapped[str] = mapped_column(String)
    company_name: Mapped[str | None] = mapped_column(String, nullable=True)
    tax_number: Mapped[str | None] = mapped_column(String, nullable=True)
    address_line1: Mapped[str | None] = mapped_column(String, nullable=True)
    address_line2: Mapped[str | None] = mapped_column(String, nullable=True)
    city: Mapped[str | None] = mapped_column(String, nullable=True)
    postal_code: Mapped[str | None] = mapped_column(String, nullable=True)
    country: Mapped[str | None] = mapped_column(String, nullable=True)
    contact_name: Mapped[str | None] = mapped_column(String, nullable=True)
    contact_email: Mapped[str | None] = mapped_column(String, nullable=True)
    contact_phone: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, default=ReservationStatus.PENDING_PAYMENT.value)
    external_checkout_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime)


class PlatformAdmin(RegistryBase):
    __tablename__ = "platform_admins"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    email: Mapped[str] = mapped_column(String, unique=True, index=True)
    password_hash: Mapped[str] = mapped_column(String)
    name: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, onupdate=utc_now)


# ---------------------------------------------------------------------------
# Per-tenant storage (one file or schema per gym)
# ---------------------------------------------------------------------------


class TenantBase(DeclarativeBase):
    pass


class User(TenantBase):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    email: Mapped[str] = mapped_column(String, unique=True)
    password_hash: Mapped[str] = mapped_column(String)
    name: Mapped[str] = mapped_column(String)
    role: Mapped[str] = mapped_column(String, default="USER")
    is_blocked: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, onupdate=utc_now)


class StaffUser(TenantBase):
    __tablename__ = "staff_users"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    email: Mapped[str] = mapped_column(String, unique=True)
    password_hash: Mapped[str] = mapped_column(String)
    name: Mapped[str] = mapped_column(String)
    role: Mapped[str] = mapped_column(String, default=StaffRole.STAFF.value)
    # Generated temporary secrets must be rotated on first login.
    must_change_password: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, onupdate=utc_now)


class PassType(TenantBase):
    """Legacy fixed catalog, read through the offering adapter only."""

    __tablename__ = "pass_types"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    code: Mapped[str] = mapped_column(String, unique=True)
    name: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_entries: Mapped[int | None] = mapped_column(Integer, nullable=True)
    price: Mapped[float] = mapped_column(Float)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, onupdate=utc_now)


class PassOffering(TenantBase):
    __tablename__ = "pass_offerings"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    template_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    is_custom: Mapped[bool] = mapped_column(Boolean, default=False)
    name: Mapped[str] = mapped_column(String)
    description: Mapped[str] = mapped_column(Text, default="")
    price_cents: Mapped[int] = mapped_column(Integer)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    behavior: Mapped[str] = mapped_column(String)
    duration_value: Mapped[int | None] = mapped_column(Integer, nullable=True)
    duration_unit: Mapped[str | None] = mapped_column(String, nullable=True)
    visits_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    expires_in_value: Mapped[int | None] = mapped_column(Integer, nullable=True)
    expires_in_unit: Mapped[str | None] = mapped_column(String, nullable=True)
    never_expires: Mapped[bool] = mapped_column(Boolean, default=False)
    # Set when a legacy pass_types row was migrated into this offering.
    legacy_pass_type_id: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, onupdate=utc_now)


class UserPass(TenantBase):
    __tablename__ = "user_passes"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    offering_id: Mapped[str | None] = mapped_column(String, nullable=True)
    pass_type_id: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, default=PassStatus.ACTIVE.value)
    purchased_at: Mapped[datetime] = mapped_column(UTCDateTime)
    valid_from: Mapped[datetime] = mapped_column(UTCDateTime)
    valid_until: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    total_entries: Mapped[int | None] = mapped_column(Integer, nullable=True)
    remaining_entries: Mapped[int | None] = mapped_column(Integer, nullable=True)
    serial_number: Mapped[str] = mapped_column(String, unique=True)
    token_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Snapshot at purchase so later catalog edits leave history untouched.
    purchased_name: Mapped[str | None] = mapped_column(String, nullable=True)
    purchased_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, onupdate=utc_now)


class PassToken(TenantBase):
    __tablename__ = "pass_tokens"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    pass_id: Mapped[str] = mapped_column(String, ForeignKey("user_passes.id"), index=True)
    token: Mapped[str] = mapped_column(String, unique=True, index=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)


class PassUsageLog(TenantBase):
    __tablename__ = "pass_usage_logs"
    __table_args__ = (Index("ix_pass_usage_logs_created_at", "created_at"),)

    # Append-only; rows are never updated.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    pass_id: Mapped[str] = mapped_column(String, ForeignKey("user_passes.id"), index=True)
    staff_user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    action: Mapped[str] = mapped_column(String)
    consumed_entries: Mapped[int] = mapped_column(Integer, default=0)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
