from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from gympass.core.errors import InvalidSlugError, NotFoundError, SlugReservedError, SlugTakenError
from gympass.domain.state import ReservationStatus, TenantStatus
from gympass.services.checkout import DEV_CHECKOUT_PREFIX
from gympass.services.registration import ApplicantInfo, normalize_slug


def _applicant(**overrides) -> ApplicantInfo:
    values = {"gym_name": "Iron Temple", "admin_email": "owner@example.com"}
    values.update(overrides)
    return ApplicantInfo(**values)


def test_normalize_slug() -> None:
    assert normalize_slug("  Iron-Temple ") == "iron-temple"
    for bad in ("ab", "iron_temple", "iron temple", "a" * 31, "iron-temple\n-x", ""):
        with pytest.raises(InvalidSlugError):
            normalize_slug(bad)


@pytest.mark.asyncio
async def test_reserve_holds_slug_for_ttl(reservations, clock) -> None:
    result = await reservations.reserve("Iron-Temple", _applicant(city="Ljubljana"))

    reservation = result.reservation
    assert reservation.slug == "iron-temple"
    assert reservation.status is ReservationStatus.PENDING_PAYMENT
    assert reservation.expires_at == clock() + timedelta(minutes=60)
    assert reservation.business == {"city": "Ljubljana"}
    assert result.checkout.id == f"{DEV_CHECKOUT_PREFIX}{reservation.id}"
    assert reservation.external_checkout_id == result.checkout.id
    assert f"registration_session_id={reservation.id}" in result.checkout.url

    found = await reservations.find_by_checkout_id(result.checkout.id)
    assert found is not None and found.id == reservation.id


@pytest.mark.asyncio
async def test_concurrent_reservations_for_one_slug(reservations) -> None:
    results = await asyncio.gather(
        reservations.reserve("iron-temple", _applicant()),
        reservations.reserve("iron-temple", _applicant(admin_email="rival@example.com")),
        return_exceptions=True,
    )

    errors = [r for r in results if isinstance(r, Exception)]
    assert len(errors) == 1
    assert isinstance(errors[0], SlugReservedError)
    assert len(reservations._locks) == 0


@pytest.mark.asyncio
async def test_reserved_and_existing_slugs_are_taken(reservations, registry) -> None:
    await registry.create("iron-temple", "Iron Temple")
    for slug in ("www", "default", "iron-temple"):
        with pytest.raises(SlugTakenError):
            await reservations.reserve(slug, _applicant())


@pytest.mark.asyncio
async def test_deleted_gym_keeps_its_slug(reservations, registry) -> None:
    gym = await registry.create("iron-temple", "Iron Temple")
    await registry.set_status(gym.id, TenantStatus.DELETED)
    with pytest.raises(SlugTakenError):
        await reservations.reserve("iron-temple", _applicant())


@pytest.mark.asyncio
async def test_expiry_is_visible_without_a_sweep(reservations, clock) -> None:
    result = await reservations.reserve("iron-temple", _applicant())

    clock.advance(seconds=3599)
    assert (await reservations.find_by_id(result.reservation.id)).is_pending
    with pytest.raises(SlugReservedError):
        await reservations.reserve("iron-temple", _applicant())

    clock.advance(seconds=2)
    expired = await reservations.find_by_id(result.reservation.id)
    assert expired.status is ReservationStatus.EXPIRED
    assert await reservations.find_active_by_slug("iron-temple") is None

    # The stale hold no longer blocks a new applicant.
    again = await reservations.reserve("iron-temple", _applicant(admin_email="next@example.com"))
    assert again.reservation.id != result.reservation.id
    assert (await reservations.find_by_id(result.reservation.id)).status is ReservationStatus.EXPIRED


@pytest.mark.asyncio
async def test_sweep_marks_only_stale_rows(reservations, clock) -> None:
    stale = await reservations.reserve("old-hold", _applicant())
    clock.advance(minutes=30)
    fresh = await reservations.reserve("new-hold", _applicant())
    clock.advance(minutes=31)

    swept = await reservations.sweep_expired()

    assert swept == [stale.reservation.id]
    assert (await reservations.find_by_id(fresh.reservation.id)).is_pending
    assert await reservations.sweep_expired() == []


@pytest.mark.asyncio
async def test_transitions_only_leave_pending(reservations) -> None:
    result = await reservations.reserve("iron-temple", _applicant())
    rid = result.reservation.id

    assert await reservations.mark_completed(rid) is True
    assert await reservations.mark_completed(rid) is False
    assert await reservations.mark_expired(rid) is False
    assert (await reservations.find_by_id(rid)).status is ReservationStatus.COMPLETED


@pytest.mark.asyncio
async def test_resolve_prefers_reservation_id(reservations) -> None:
    first = await reservations.reserve("first-gym", _applicant())
    second = await reservations.reserve("second-gym", _applicant())

    resolved = await reservations.resolve(first.reservation.id, second.checkout.id)
    assert resolved.id == first.reservation.id
    resolved = await reservations.resolve("missing", second.checkout.id)
    assert resolved.id == second.reservation.id
    assert await reservations.resolve(None, None) is None

    updated = await reservations.attach_external_checkout_id(first.reservation.id, "cs_test_123")
    assert updated.external_checkout_id == "cs_test_123"


@pytest.mark.asyncio
async def test_registration_status_states(reservations, registry, clock) -> None:
    result = await reservations.reserve("iron-temple", _applicant())

    status = await reservations.registration_status(reservation_id=result.reservation.id)
    assert status.state == "PROCESSING"

    clock.advance(minutes=61)
    status = await reservations.registration_status(checkout_id=result.checkout.id)
    assert status.state == "EXPIRED"

    with pytest.raises(NotFoundError):
        await reservations.registration_status(reservation_id="missing")
