from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from gympass.core.errors import (
    AccountBlockedError,
    InsufficientEntriesError,
    NotEntryBasedError,
    NotFoundError,
    PassNotActiveError,
)
from gympass.domain.models import PassToken, PassType, PassUsageLog, User, UserPass, utc_now
from gympass.domain.state import PassStatus, UsageAction, ValidationReason
from gympass.services.passes import PassLifecycleEngine, effective_status, pass_to_dict
from gympass.tests.utils.tenants import (
    add_member,
    add_offering,
    add_staff,
    create_active_gym,
    offering_id_for_template,
)


@pytest.fixture
async def gym(registry, router):
    return await create_active_gym(registry, router)


@pytest.fixture
def engine(clock) -> PassLifecycleEngine:
    return PassLifecycleEngine(time_provider=clock)


async def _usage(ctx, pass_id: str) -> list[PassUsageLog]:
    async with ctx.storage.session() as session:
        result = await session.execute(
            select(PassUsageLog).where(PassUsageLog.pass_id == pass_id).order_by(PassUsageLog.created_at)
        )
        return list(result.scalars().all())


async def _stored_status(ctx, pass_id: str) -> str:
    async with ctx.storage.session() as session:
        return (await session.get(UserPass, pass_id)).status


@pytest.mark.asyncio
async def test_purchase_then_scan_keeps_entries(gym, engine, clock) -> None:
    member = await add_member(gym)
    offering_id = await offering_id_for_template(gym, "VISITS_TEN")

    purchase = await engine.purchase(gym, member.id, offering_id)

    user_pass = purchase.user_pass
    assert user_pass.total_entries == 10
    assert user_pass.remaining_entries == 10
    assert user_pass.purchased_name == "10 visits"
    assert user_pass.serial_number.startswith("GYM-")
    assert user_pass.valid_until > clock() + timedelta(days=180)
    assert purchase.token.active is True

    outcome = await engine.validate_by_token(gym, purchase.token.token)

    assert outcome.valid is True
    assert outcome.reason is None
    assert outcome.remaining_entries == 10
    assert outcome.user.id == member.id
    logs = await _usage(gym, user_pass.id)
    assert [log.action for log in logs] == [UsageAction.SCAN.value]


@pytest.mark.asyncio
async def test_single_visit_is_used_up_by_auto_consume(gym, engine) -> None:
    member = await add_member(gym)
    staff = await add_staff(gym)
    purchase = await engine.purchase(gym, member.id, await offering_id_for_template(gym, "VISITS_SINGLE"))
    token = purchase.token.token

    first = await engine.validate_by_token(gym, token, auto_consume=True, staff_user_id=staff.id)
    assert first.valid is True
    assert first.auto_consumed is True
    assert first.remaining_entries == 0
    assert first.user_pass.status == PassStatus.DEPLETED.value
    assert await _stored_status(gym, purchase.user_pass.id) == PassStatus.DEPLETED.value

    second = await engine.validate_by_token(gym, token, auto_consume=True, staff_user_id=staff.id)
    assert second.valid is False
    assert second.reason is ValidationReason.DEPLETED
    assert await _stored_status(gym, purchase.user_pass.id) == PassStatus.DEPLETED.value

    logs = await _usage(gym, purchase.user_pass.id)
    assert sorted(log.action for log in logs) == ["CONSUME", "SCAN"]
    consume = next(log for log in logs if log.action == "CONSUME")
    assert consume.consumed_entries == 1
    assert consume.staff_user_id == staff.id


@pytest.mark.asyncio
async def test_serial_number_works_as_token(gym, engine) -> None:
    member = await add_member(gym)
    purchase = await engine.purchase(gym, member.id, await offering_id_for_template(gym, "VISITS_TEN"))

    outcome = await engine.validate_by_token(gym, purchase.user_pass.serial_number)

    assert outcome.valid is True
    assert outcome.user_pass.id == purchase.user_pass.id


@pytest.mark.asyncio
async def test_unknown_and_deactivated_tokens(gym, engine) -> None:
    member = await add_member(gym)
    purchase = await engine.purchase(gym, member.id, await offering_id_for_template(gym, "VISITS_TEN"))

    missing = await engine.validate_by_token(gym, "no-such-token")
    assert (missing.valid, missing.reason) == (False, ValidationReason.NOT_FOUND)

    assert await engine.deactivate_token(gym, purchase.token.token) is True
    assert await engine.deactivate_token(gym, purchase.token.token) is False
    outcome = await engine.validate_by_token(gym, purchase.token.token)
    assert outcome.reason is ValidationReason.NOT_FOUND
    by_serial = await engine.validate_by_token(gym, purchase.user_pass.serial_number)
    assert (by_serial.valid, by_serial.reason) == (False, ValidationReason.NOT_FOUND)
    with pytest.raises(NotFoundError):
        await engine.consume_entry(gym, purchase.user_pass.serial_number)


@pytest.mark.asyncio
async def test_blocked_member_outranks_pass_state(gym, engine, clock) -> None:
    member = await add_member(gym)
    purchase = await engine.purchase(gym, member.id, await offering_id_for_template(gym, "VISITS_SINGLE"))
    await engine.consume_entry(gym, purchase.token.token)
    clock.advance(days=400)
    await engine.block_user(gym, member.id)

    outcome = await engine.validate_by_token(gym, purchase.token.token)

    assert outcome.reason is ValidationReason.REVOKED
    # The depleted/expired state is not written while the member is blocked.
    assert await _stored_status(gym, purchase.user_pass.id) == PassStatus.ACTIVE.value

    await engine.unblock_user(gym, member.id)
    outcome = await engine.validate_by_token(gym, purchase.token.token)
    assert outcome.reason is ValidationReason.EXPIRED


@pytest.mark.asyncio
async def test_expiry_is_persisted_on_scan(gym, engine, clock) -> None:
    member = await add_member(gym)
    purchase = await engine.purchase(gym, member.id, await offering_id_for_template(gym, "DURATION_MONTHS"))
    assert purchase.user_pass.remaining_entries is None

    clock.current = purchase.user_pass.valid_until + timedelta(seconds=1)
    outcome = await engine.validate_by_token(gym, purchase.token.token)

    assert outcome.reason is ValidationReason.EXPIRED
    assert await _stored_status(gym, purchase.user_pass.id) == PassStatus.EXPIRED.value
    assert effective_status(outcome.user_pass, clock()) is PassStatus.EXPIRED


@pytest.mark.asyncio
async def test_unlimited_pass_scan_does_not_consume(gym, engine) -> None:
    member = await add_member(gym)
    purchase = await engine.purchase(gym, member.id, await offering_id_for_template(gym, "DURATION_MONTHS"))

    outcome = await engine.validate_by_token(gym, purchase.token.token, auto_consume=True)

    assert outcome.valid is True
    assert outcome.auto_consumed is False
    with pytest.raises(NotEntryBasedError):
        await engine.consume_entry(gym, purchase.token.token)


@pytest.mark.asyncio
async def test_concurrent_consumes_never_oversell(gym, engine) -> None:
    member = await add_member(gym)
    offering_id = await add_offering(gym, visits_count=4)
    purchase = await engine.purchase(gym, member.id, offering_id)

    results = await asyncio.gather(
        *(engine.consume_entry(gym, purchase.token.token) for _ in range(6)),
        return_exceptions=True,
    )

    succeeded = [r for r in results if isinstance(r, UserPass)]
    failed = [r for r in results if isinstance(r, Exception)]
    assert len(succeeded) == 4
    assert len(failed) == 2
    assert all(isinstance(err, InsufficientEntriesError) for err in failed)
    async with gym.storage.session() as session:
        stored = await session.get(UserPass, purchase.user_pass.id)
        consumed = await session.scalar(
            select(func.sum(PassUsageLog.consumed_entries)).where(
                PassUsageLog.pass_id == purchase.user_pass.id,
                PassUsageLog.action == UsageAction.CONSUME.value,
            )
        )
    assert stored.remaining_entries == 0
    assert consumed == 4


@pytest.mark.asyncio
async def test_consume_errors(gym, engine) -> None:
    member = await add_member(gym)
    purchase = await engine.purchase(gym, member.id, await add_offering(gym, visits_count=3))
    token = purchase.token.token

    with pytest.raises(NotFoundError):
        await engine.consume_entry(gym, "missing")
    with pytest.raises(InsufficientEntriesError) as excinfo:
        await engine.consume_entry(gym, token, count=5)
    assert excinfo.value.details == {"remaining": 3, "requested": 5}

    updated = await engine.consume_entry(gym, token, count=3)
    assert updated.remaining_entries == 0
    assert updated.status == PassStatus.DEPLETED.value
    with pytest.raises(InsufficientEntriesError):
        await engine.consume_entry(gym, token)
    assert await _stored_status(gym, purchase.user_pass.id) == PassStatus.DEPLETED.value

    with pytest.raises(ValueError):
        await engine.consume_entry(gym, token, count=0)


@pytest.mark.asyncio
async def test_revoke_and_restore(gym, engine) -> None:
    member = await add_member(gym)
    purchase = await engine.purchase(gym, member.id, await offering_id_for_template(gym, "VISITS_TEN"))
    pass_id = purchase.user_pass.id

    revoked = await engine.revoke(gym, pass_id)
    assert revoked.status == PassStatus.REVOKED.value
    assert (await engine.validate_by_token(gym, purchase.token.token)).reason is ValidationReason.REVOKED
    with pytest.raises(PassNotActiveError):
        await engine.consume_entry(gym, purchase.token.token)
    with pytest.raises(PassNotActiveError):
        await engine.revoke(gym, pass_id)

    restored = await engine.restore(gym, pass_id)
    assert restored.status == PassStatus.ACTIVE.value
    assert (await engine.validate_by_token(gym, purchase.token.token)).valid is True
    with pytest.raises(PassNotActiveError):
        await engine.restore(gym, pass_id)
    with pytest.raises(NotFoundError):
        await engine.revoke(gym, "missing")


@pytest.mark.asyncio
async def test_purchase_guards(gym, engine) -> None:
    blocked = await add_member(gym, blocked=True)
    member = await add_member(gym)
    offering_id = await offering_id_for_template(gym, "VISITS_TEN")
    disabled_id = await add_offering(gym, enabled=False)

    with pytest.raises(AccountBlockedError):
        await engine.purchase(gym, blocked.id, offering_id)
    with pytest.raises(NotFoundError):
        await engine.purchase(gym, "no-such-user", offering_id)
    with pytest.raises(NotFoundError):
        await engine.purchase(gym, member.id, "no-such-offering")
    with pytest.raises(NotFoundError):
        await engine.purchase(gym, member.id, disabled_id)


@pytest.mark.asyncio
async def test_usage_history_is_newest_first(gym, engine, clock) -> None:
    member = await add_member(gym)
    purchase = await engine.purchase(gym, member.id, await offering_id_for_template(gym, "VISITS_TEN"))
    token = purchase.token.token

    await engine.validate_by_token(gym, token)
    clock.advance(minutes=1)
    await engine.consume_entry(gym, token, count=2)
    clock.advance(minutes=1)
    await engine.validate_by_token(gym, token)

    history = await engine.usage_history(gym)

    assert [(r.action, r.consumed_entries) for r in history] == [
        ("SCAN", 0),
        ("CONSUME", 2),
        ("SCAN", 0),
    ]
    assert history[0].created_at > history[1].created_at > history[2].created_at
    assert history[0].user_email == member.email
    assert history[0].serial_number == purchase.user_pass.serial_number
    assert len(await engine.usage_history(gym, 2)) == 2
    assert len(await engine.usage_history(gym, pass_id="other")) == 0


@pytest.mark.asyncio
async def test_delete_member_removes_passes_and_logs(gym, engine) -> None:
    member = await add_member(gym)
    other = await add_member(gym)
    offering_id = await offering_id_for_template(gym, "VISITS_TEN")
    doomed = await engine.purchase(gym, member.id, offering_id)
    kept = await engine.purchase(gym, other.id, offering_id)
    await engine.validate_by_token(gym, doomed.token.token, auto_consume=True)

    counts = await engine.delete_user(gym, member.id)

    assert counts == {"tokens": 1, "usage_logs": 2, "passes": 1, "users": 1}
    async with gym.storage.session() as session:
        assert await session.get(User, member.id) is None
        assert await session.get(UserPass, doomed.user_pass.id) is None
        remaining_tokens = await session.scalar(select(func.count()).select_from(PassToken))
    assert remaining_tokens == 1
    assert (await engine.validate_by_token(gym, kept.token.token)).valid is True
    with pytest.raises(NotFoundError):
        await engine.delete_user(gym, member.id)


@pytest.mark.asyncio
async def test_members_only_see_their_own_passes(gym, engine, clock) -> None:
    member = await add_member(gym)
    stranger = await add_member(gym)
    purchase = await engine.purchase(gym, member.id, await offering_id_for_template(gym, "VISITS_TEN"))

    user_pass, token = await engine.get_pass(gym, purchase.user_pass.id, user_id=member.id)
    assert token.token == purchase.token.token
    with pytest.raises(NotFoundError):
        await engine.get_pass(gym, purchase.user_pass.id, user_id=stranger.id)

    assert [p.id for p in await engine.list_user_passes(gym, member.id)] == [purchase.user_pass.id]
    assert await engine.list_user_passes(gym, stranger.id) == []

    payload = pass_to_dict(user_pass, clock(), token)
    assert payload["status"] == "ACTIVE"
    assert payload["remaining_entries"] == 10
    assert payload["token"] == purchase.token.token


@pytest.mark.asyncio
async def test_legacy_pass_type_purchase(gym, engine) -> None:
    async with gym.storage.session() as session:
        session.add(PassType(id="pt-day", code="DAY", name="Day", duration_days=1, price=7.0, active=True))
        await session.commit()
    member = await add_member(gym)

    purchase = await engine.purchase(gym, member.id, "pt-day")

    assert purchase.user_pass.pass_type_id == "pt-day"
    assert purchase.user_pass.offering_id is None
    assert purchase.user_pass.remaining_entries is None
    assert purchase.user_pass.valid_until == purchase.user_pass.purchased_at + timedelta(days=1)


def test_effective_status_without_persisting() -> None:
    now = utc_now()
    user_pass = UserPass(
        id="p",
        user_id="u",
        status=PassStatus.ACTIVE.value,
        purchased_at=now,
        valid_from=now,
        valid_until=now + timedelta(days=1),
        total_entries=2,
        remaining_entries=0,
        serial_number="GYM-1",
    )
    assert effective_status(user_pass, now) is PassStatus.DEPLETED
    user_pass.remaining_entries = 1
    assert effective_status(user_pass, now + timedelta(days=2)) is PassStatus.EXPIRED
    assert effective_status(user_pass, now) is PassStatus.ACTIVE
