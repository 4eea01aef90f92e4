from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import case, delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from gympass.domain.models import PassToken, PassUsageLog, User, UserPass
from gympass.domain.state import PassStatus, UsageAction


async def find_by_token(session: AsyncSession, token: str) -> tuple[UserPass, PassToken | None] | None:
    # Active QR token first, then the printed serial number.
    result = await session.execute(
        select(UserPass, PassToken)
        .join(PassToken, PassToken.pass_id == UserPass.id)
        .where(PassToken.token == token, PassToken.active.is_(True))
    )
    row = result.first()
    if row is not None:
        return row[0], row[1]
    result = await session.execute(select(UserPass).where(UserPass.serial_number == token))
    user_pass = result.scalar_one_or_none()
    if user_pass is None:
        return None
    token_row = await active_token_for(session, user_pass.id)
    # A serial number only resolves while its pass still has a live token.
    if token_row is None:
        return None
    return user_pass, token_row


async def active_token_for(session: AsyncSession, pass_id: str) -> PassToken | None:
    result = await session.execute(
        select(PassToken)
        .where(PassToken.pass_id == pass_id, PassToken.active.is_(True))
        .order_by(PassToken.created_at.desc())
    )
    return result.scalars().first()


async def decrement_entries(session: AsyncSession, pass_id: str, count: int, now: datetime) -> bool:
    """Take ``count`` entries in one conditional UPDATE; False when too few remain.

    The same statement flips the pass to DEPLETED when the last entry goes.
    """
    result = await session.execute(
        update(UserPass)
        .where(
            UserPass.id == pass_id,
            UserPass.status == PassStatus.ACTIVE.value,
            UserPass.remaining_entries.is_not(None),
            UserPass.remaining_entries >= count,
        )
        .values(
            remaining_entries=UserPass.remaining_entries - count,
            status=case(
                (UserPass.remaining_entries - count == 0, PassStatus.DEPLETED.value),
                else_=UserPass.status,
            ),
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1


async def set_status(
    session: AsyncSession,
    pass_id: str,
    status: PassStatus,
    now: datetime,
    *,
    expected: PassStatus | None = None,
) -> bool:
    stmt = update(UserPass).where(UserPass.id == pass_id)
    if expected is not None:
        stmt = stmt.where(UserPass.status == expected.value)
    result = await session.execute(
        stmt.values(status=status.value, updated_at=now).execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1


def usage_entry(
    pass_id: str,
    action: UsageAction,
    now: datetime,
    *,
    staff_user_id: str | None = None,
    consumed_entries: int = 0,
    metadata: dict[str, Any] | None = None,
) -> PassUsageLog:
    return PassUsageLog(
        id=str(uuid4()),
        pass_id=pass_id,
        staff_user_id=staff_user_id,
        action=action.value,
        consumed_entries=consumed_entries,
        metadata_json=metadata,
        created_at=now,
    )


async def list_usage(
    session: AsyncSession, *, limit: int, pass_id: str | None = None
) -> list[tuple[PassUsageLog, UserPass, User | None]]:
    stmt = (
        select(PassUsageLog, UserPass, User)
        .join(UserPass, UserPass.id == PassUsageLog.pass_id)
        .outerjoin(User, User.id == UserPass.user_id)
        .order_by(PassUsageLog.created_at.desc(), PassUsageLog.id.desc())
        .limit(limit)
    )
    if pass_id is not None:
        stmt = stmt.where(PassUsageLog.pass_id == pass_id)
    result = await session.execute(stmt)
    return [(row[0], row[1], row[2]) for row in result.all()]


async def delete_user_cascade(session: AsyncSession, user_id: str) -> dict[str, int]:
    # Children first: tokens and usage logs reference passes, passes reference the user.
    pass_ids = select(UserPass.id).where(UserPass.user_id == user_id)
    tokens = await session.execute(
        delete(PassToken).where(PassToken.pass_id.in_(pass_ids)).execution_options(synchronize_session=False)
    )
    logs = await session.execute(
        delete(PassUsageLog).where(PassUsageLog.pass_id.in_(pass_ids)).execution_options(synchronize_session=False)
    )
    passes = await session.execute(
        delete(UserPass).where(UserPass.user_id == user_id).execution_options(synchronize_session=False)
    )
    users = await session.execute(
        delete(User).where(User.id == user_id).execution_options(synchronize_session=False)
    )
    return {
        "tokens": tokens.rowcount or 0,
        "usage_logs": logs.rowcount or 0,
        "passes": passes.rowcount or 0,
        "users": users.rowcount or 0,
    }
