"""registry init

Revision ID: 0001_registry_init
Revises: 
Create Date: 2026-10-17 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0001_registry_init"
down_revision = None
branch_labels = None
depends_on = None

_PENDING = sa.text("status = 'PENDING_PAYMENT'")


def upgrade() -> None:
    op.create_table(
        "gyms",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("slug", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="PENDING"),
        sa.Column("staff_login_path", sa.String(), nullable=True),
        sa.Column("opening_hours_json", sa.JSON(), nullable=True),
        sa.Column("stripe_customer_id", sa.String(), nullable=True),
        sa.Column("stripe_subscription_id", sa.String(), nullable=True),
        sa.Column("subscription_status", sa.String(), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("plan_id", sa.String(), nullable=True),
        sa.Column("billing_email", sa.String(), nullable=True),
        sa.Column("company_name", sa.String(), nullable=True),
        sa.Column("tax_number", sa.String(), nullable=True),
        sa.Column("address_line1", sa.String(), nullable=True),
        sa.Column("address_line2", sa.String(), nullable=True),
        sa.Column("city", sa.String(), nullable=True),
        sa.Column("postal_code", sa.String(), nullable=True),
        sa.Column("country", sa.String(), nullable=True),
        sa.Column("contact_name", sa.String(), nullable=True),
        sa.Column("contact_email", sa.String(), nullable=True),
        sa.Column("contact_phone", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_gyms_slug", "gyms", ["slug"], unique=True)
    op.create_index("ix_gyms_status", "gyms", ["status"])

    op.create_table(
        "registration_sessions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("slug", sa.String(), nullable=False),
        sa.Column("gym_name", sa.String(), nullable=False),
        sa.Column("admin_email", sa.String(), nullable=False),
        sa.Column("company_name", sa.String(), nullable=True),
        sa.Column("tax_number", sa.String(), nullable=True),
        sa.Column("address_line1", sa.String(), nullable=True),
        sa.Column("address_line2", sa.String(), nullable=True),
        sa.Column("city", sa.String(), nullable=True),
        sa.Column("postal_code", sa.String(), nullable=True),
        sa.Column("country", sa.String(), nullable=True),
        sa.Column("contact_name", sa.String(), nullable=True),
        sa.Column("contact_email", sa.String(), nullable=True),
        sa.Column("contact_phone", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="PENDING_PAYMENT"),
        sa.Column("external_checkout_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_registration_sessions_slug", "registration_sessions", ["slug"])
    op.create_index(
        "ix_registration_sessions_external_checkout_id",
        "registration_sessions",
        ["external_checkout_id"],
    )
    op.create_index(
        "ix_registration_sessions_status_expires",
        "registration_sessions",
        ["status", "expires_at"],
    )
    # One live reservation per slug; expired and completed rows do not count.
    op.create_index(
        "uq_registration_sessions_pending_slug",
        "registration_sessions",
        ["slug"],
        unique=True,
        sqlite_where=_PENDING,
        postgresql_where=_PENDING,
    )

    op.create_table(
        "platform_admins",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("password_hash", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_platform_admins_email", "platform_admins", ["email"], unique=True)


def downgrade() -> None:
    op.drop_index("ix_platform_admins_email", table_name="platform_admins")
    op.drop_table("platform_admins")
    op.drop_index("uq_registration_sessions_pending_slug", table_name="registration_sessions")
    op.drop_index("ix_registration_sessions_status_expires", table_name="registration_sessions")
    op.drop_index("ix_registration_sessions_external_checkout_id", table_name="registration_sessions")
    op.drop_index("ix_registration_sessions_slug", table_name="registration_sessions")
    op.drop_table("registration_sessions")
    op.drop_index("ix_gyms_status", table_name="gyms")
    op.drop_index("ix_gyms_slug", table_name="gyms")
    op.drop_table("gyms")
