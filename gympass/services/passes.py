from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from gympass.core.config import get_settings
from gympass.core.errors import (
    AccountBlockedError,
    InsufficientEntriesError,
    NotEntryBasedError,
    NotFoundError,
    PassNotActiveError,
)
from gympass.domain.models import PassToken, User, UserPass, utc_now
from gympass.domain.state import PassStatus, UsageAction, ValidationReason
from gympass.persistence.repos import passes as pass_repo
from gympass.services.offerings import compute_validity, load_offering
from gympass.services.resilience import storage_errors
from gympass.services.tenancy import TenantContext


logger = logging.getLogger(__name__)


def generate_serial_number() -> str:
    return f"GYM-{int(time.time() * 1000)}-{uuid4().hex[:8]}"


def generate_pass_token() -> str:
    return secrets.token_urlsafe(32)


def effective_status(user_pass: UserPass, now: datetime) -> PassStatus:
    """Status as of ``now``, derived from stored status, dates and entries."""
    status = PassStatus(user_pass.status)
    if status is not PassStatus.ACTIVE:
        return status
    if user_pass.valid_until is not None and now > user_pass.valid_until:
        return PassStatus.EXPIRED
    if user_pass.remaining_entries is not None and user_pass.remaining_entries <= 0:
        return PassStatus.DEPLETED
    return PassStatus.ACTIVE


@dataclass(frozen=True)
class PurchaseResult:
    user_pass: UserPass
    token: PassToken


@dataclass(frozen=True)
class ValidationOutcome:
    # Validation failures are results, not exceptions.
    valid: bool
    reason: ValidationReason | None
    user_pass: UserPass | None = None
    user: User | None = None
    auto_consumed: bool = False

    @property
    def remaining_entries(self) -> int | None:
        return self.user_pass.remaining_entries if self.user_pass is not None else None


@dataclass(frozen=True)
class UsageRecord:
    id: str
    pass_id: str
    action: str
    consumed_entries: int
    staff_user_id: str | None
    created_at: datetime
    serial_number: str
    pass_name: str | None
    user_id: str
    user_email: str | None


class PassLifecycleEngine:
    """Purchase, scan, consume and revoke passes inside one gym's store."""

    def __init__(self, time_provider: Callable[[], datetime] | None = None) -> None:
        self._now = time_provider or utc_now

    async def purchase(self, ctx: TenantContext, user_id: str, offering_id: str) -> PurchaseResult:
        async with storage_errors(ctx.slug), ctx.storage.session() as session:
            user = await self._require_user(session, user_id)
            if user.is_blocked:
                raise AccountBlockedError("Account is blocked. Cannot purchase passes.", user_id=user_id)
            offering = await load_offering(session, offering_id)
            if not offering.enabled:
                raise NotFoundError("Pass offering is not available", offering_id=offering_id)

            now = self._now()
            valid_until, total_entries = compute_validity(offering, now)
            pass_id = str(uuid4())
            token_id = str(uuid4())
            user_pass = UserPass(
                id=pass_id,
                user_id=user_id,
                offering_id=offering.id if offering.source == "offering" else None,
                pass_type_id=offering.id if offering.source == "legacy" else None,
                status=PassStatus.ACTIVE.value,
                purchased_at=now,
                valid_from=now,
                valid_until=valid_until,
                total_entries=total_entries,
                remaining_entries=total_entries,
                serial_number=generate_serial_number(),
                token_id=token_id,
                purchased_name=offering.name,
                purchased_description=offering.description,
                created_at=now,
                updated_at=now,
            )
            token = PassToken(
                id=token_id,
                pass_id=pass_id,
                token=generate_pass_token(),
                active=True,
                created_at=now,
            )
            # Pass and token commit together or not at all.
            session.add(user_pass)
            await session.flush()
            session.add(token)
            await session.commit()
        logger.info(
            "pass_purchased slug=%s pass_id=%s user_id=%s offering_id=%s",
            ctx.slug,
            pass_id,
            user_id,
            offering.id,
        )
        return PurchaseResult(user_pass=user_pass, token=token)

    async def validate_by_token(
        self,
        ctx: TenantContext,
        token: str,
        *,
        auto_consume: bool = False,
        staff_user_id: str | None = None,
    ) -> ValidationOutcome:
        async with storage_errors(ctx.slug), ctx.storage.session() as session:
            found = await pass_repo.find_by_token(session, token)
            if found is None:
                return ValidationOutcome(valid=False, reason=ValidationReason.NOT_FOUND)
            user_pass, _ = found
            user = await session.get(User, user_pass.user_id)
            now = self._now()

            reason = await self._rejection_reason(session, user_pass, user, now)
            if reason is not None:
                await session.commit()
                await session.refresh(user_pass)
                logger.info(
                    "pass_validation_rejected slug=%s pass_id=%s reason=%s",
                    ctx.slug,
                    user_pass.id,
                    reason.value,
                )
                return ValidationOutcome(valid=False, reason=reason, user_pass=user_pass, user=user)

            auto_consumed = False
            if auto_consume and user_pass.remaining_entries is not None:
                if not await pass_repo.decrement_entries(session, user_pass.id, 1, now):
                    # A concurrent consume took the last entry between read and write.
                    await session.rollback()
                    await pass_repo.set_status(
                        session, user_pass.id, PassStatus.DEPLETED, now, expected=PassStatus.ACTIVE
                    )
                    await session.commit()
                    await session.refresh(user_pass)
                    return ValidationOutcome(
                        valid=False, reason=ValidationReason.DEPLETED, user_pass=user_pass, user=user
                    )
                auto_consumed = True

            session.add(
                pass_repo.usage_entry(user_pass.id, UsageAction.SCAN, now, staff_user_id=staff_user_id)
            )
            if auto_consumed:
                session.add(
                    pass_repo.usage_entry(
                        user_pass.id,
                        UsageAction.CONSUME,
                        now,
                        staff_user_id=staff_user_id,
                        consumed_entries=1,
                        metadata={"auto_consume": True},
                    )
                )
            await session.commit()
            await session.refresh(user_pass)
        return ValidationOutcome(
            valid=True, reason=None, user_pass=user_pass, user=user, auto_consumed=auto_consumed
        )

    async def _rejection_reason(
        self, session: AsyncSession, user_pass: UserPass, user: User | None, now: datetime
    ) -> ValidationReason | None:
        # Order matters: a blocked member outranks every pass-level state.
        if user is None or user.is_blocked:
            return ValidationReason.REVOKED
        status = PassStatus(user_pass.status)
        if status is PassStatus.REVOKED:
            return ValidationReason.REVOKED
        if status is PassStatus.DEPLETED:
            return ValidationReason.DEPLETED
        if status is PassStatus.EXPIRED:
            return ValidationReason.EXPIRED
        if user_pass.valid_until is not None and now > user_pass.valid_until:
            await pass_repo.set_status(session, user_pass.id, PassStatus.EXPIRED, now, expected=PassStatus.ACTIVE)
            return ValidationReason.EXPIRED
        if user_pass.remaining_entries is not None and user_pass.remaining_entries <= 0:
            await pass_repo.set_status(session, user_pass.id, PassStatus.DEPLETED, now, expected=PassStatus.ACTIVE)
            return ValidationReason.DEPLETED
        return None

    async def consume_entry(
        self,
        ctx: TenantContext,
        token: str,
        *,
        count: int = 1,
        staff_user_id: str | None = None,
    ) -> UserPass:
        if count < 1:
            raise ValueError("count must be at least 1")
        async with storage_errors(ctx.slug), ctx.storage.session() as session:
            found = await pass_repo.find_by_token(session, token)
            if found is None:
                raise NotFoundError("Pass not found")
            user_pass, _ = found
            user = await session.get(User, user_pass.user_id)
            now = self._now()

            reason = await self._rejection_reason(session, user_pass, user, now)
            if reason is ValidationReason.DEPLETED:
                await session.commit()
                raise InsufficientEntriesError(remaining=user_pass.remaining_entries or 0, requested=count)
            if reason is not None:
                await session.commit()
                raise PassNotActiveError(f"Pass is {reason.value.lower()}", reason=reason.value)
            if user_pass.remaining_entries is None:
                raise NotEntryBasedError()

            if not await pass_repo.decrement_entries(session, user_pass.id, count, now):
                await session.rollback()
                await session.refresh(user_pass)
                raise InsufficientEntriesError(
                    remaining=user_pass.remaining_entries or 0, requested=count
                )
            session.add(
                pass_repo.usage_entry(
                    user_pass.id,
                    UsageAction.CONSUME,
                    now,
                    staff_user_id=staff_user_id,
                    consumed_entries=count,
                )
            )
            await session.commit()
            await session.refresh(user_pass)
        logger.info(
            "pass_entries_consumed slug=%s pass_id=%s count=%s remaining=%s",
            ctx.slug,
            user_pass.id,
            count,
            user_pass.remaining_entries,
        )
        return user_pass

    async def revoke(self, ctx: TenantContext, pass_id: str) -> UserPass:
        return await self._transition(ctx, pass_id, PassStatus.REVOKED, expected=PassStatus.ACTIVE)

    async def restore(self, ctx: TenantContext, pass_id: str) -> UserPass:
        # Restored passes are re-evaluated for expiry and entries on the next read.
        return await self._transition(ctx, pass_id, PassStatus.ACTIVE, expected=PassStatus.REVOKED)

    async def _transition(
        self, ctx: TenantContext, pass_id: str, target: PassStatus, *, expected: PassStatus
    ) -> UserPass:
        async with storage_errors(ctx.slug), ctx.storage.session() as session:
            user_pass = await session.get(UserPass, pass_id)
            if user_pass is None:
                raise NotFoundError("Pass not found", pass_id=pass_id)
            if not await pass_repo.set_status(session, pass_id, target, self._now(), expected=expected):
                raise PassNotActiveError(
                    f"Pass must be {expected.value} to become {target.value}",
                    status=user_pass.status,
                )
            await session.commit()
            await session.refresh(user_pass)
        logger.info("pass_status_changed slug=%s pass_id=%s status=%s", ctx.slug, pass_id, target.value)
        return user_pass

    async def deactivate_token(self, ctx: TenantContext, token: str) -> bool:
        async with storage_errors(ctx.slug), ctx.storage.session() as session:
            result = await session.execute(
                update(PassToken)
                .where(PassToken.token == token, PassToken.active.is_(True))
                .values(active=False)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return (result.rowcount or 0) == 1

    async def usage_history(
        self, ctx: TenantContext, limit: int | None = None, *, pass_id: str | None = None
    ) -> list[UsageRecord]:
        limit = limit or get_settings().usage_history_default_limit
        async with storage_errors(ctx.slug), ctx.storage.session() as session:
            rows = await pass_repo.list_usage(session, limit=limit, pass_id=pass_id)
        return [
            UsageRecord(
                id=log.id,
                pass_id=log.pass_id,
                action=log.action,
                consumed_entries=log.consumed_entries,
                staff_user_id=log.staff_user_id,
                created_at=log.created_at,
                serial_number=user_pass.serial_number,
                pass_name=user_pass.purchased_name,
                user_id=user_pass.user_id,
                user_email=user.email if user is not None else None,
            )
            for log, user_pass, user in rows
        ]

    async def get_pass(
        self, ctx: TenantContext, pass_id: str, *, user_id: str | None = None
    ) -> tuple[UserPass, PassToken | None]:
        async with storage_errors(ctx.slug), ctx.storage.session() as session:
            user_pass = await session.get(UserPass, pass_id)
            # Members only see their own passes; a foreign id looks missing.
            if user_pass is None or (user_id is not None and user_pass.user_id != user_id):
                raise NotFoundError("Pass not found", pass_id=pass_id)
            token = await pass_repo.active_token_for(session, pass_id)
        return user_pass, token

    async def list_user_passes(self, ctx: TenantContext, user_id: str) -> list[UserPass]:
        async with storage_errors(ctx.slug), ctx.storage.session() as session:
            result = await session.execute(
                select(UserPass).where(UserPass.user_id == user_id).order_by(UserPass.purchased_at.desc())
            )
            return list(result.scalars().all())

    async def block_user(self, ctx: TenantContext, user_id: str) -> User:
        return await self._set_blocked(ctx, user_id, True)

    async def unblock_user(self, ctx: TenantContext, user_id: str) -> User:
        return await self._set_blocked(ctx, user_id, False)

    async def _set_blocked(self, ctx: TenantContext, user_id: str, blocked: bool) -> User:
        async with storage_errors(ctx.slug), ctx.storage.session() as session:
            user = await self._require_user(session, user_id)
            user.is_blocked = blocked
            user.updated_at = self._now()
            await session.commit()
        logger.info("user_block_changed slug=%s user_id=%s blocked=%s", ctx.slug, user_id, blocked)
        return user

    async def delete_user(self, ctx: TenantContext, user_id: str) -> dict[str, int]:
        async with storage_errors(ctx.slug), ctx.storage.session() as session:
            await self._require_user(session, user_id)
            counts = await pass_repo.delete_user_cascade(session, user_id)
            await session.commit()
        logger.info("user_deleted slug=%s user_id=%s counts=%s", ctx.slug, user_id, counts)
        return counts

    async def _require_user(self, session: AsyncSession, user_id: str) -> User:
        user = await session.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found", user_id=user_id)
        return user


def pass_to_dict(user_pass: UserPass, now: datetime, token: PassToken | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": user_pass.id,
        "user_id": user_pass.user_id,
        "offering_id": user_pass.offering_id,
        "pass_type_id": user_pass.pass_type_id,
        "status": effective_status(user_pass, now).value,
        "purchased_at": user_pass.purchased_at.isoformat(),
        "valid_from": user_pass.valid_from.isoformat(),
        "valid_until": user_pass.valid_until.isoformat() if user_pass.valid_until else None,
        "total_entries": user_pass.total_entries,
        "remaining_entries": user_pass.remaining_entries,
        "serial_number": user_pass.serial_number,
        "name": user_pass.purchased_name,
        "description": user_pass.purchased_description,
    }
    if token is not None:
        payload["token"] = token.token
    return payload
