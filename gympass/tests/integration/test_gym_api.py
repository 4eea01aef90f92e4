from __future__ import annotations

import json

import pytest
from httpx import ASGITransport, AsyncClient

from gympass.apps.api.main import build_services, create_app
from gympass.persistence.db import init_registry_schema
from gympass.services.tenancy import build_tenant_context
from gympass.tests.utils.tenants import add_member, add_staff, create_active_gym


@pytest.fixture
async def services(settings):
    services = build_services(settings)
    # ASGITransport does not run the lifespan hooks.
    await init_registry_schema(services.registry_engine)
    yield services
    await services.router.close()
    await services.registry_engine.dispose()


@pytest.fixture
async def client(settings, services):
    app = create_app(settings, services=services, run_sweeper=False)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


def _gym(slug: str = "iron-temple") -> dict[str, str]:
    return {"X-Gym-Slug": slug}


@pytest.mark.asyncio
async def test_health(client) -> None:
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["data"] == {"status": "ok"}
    assert response.headers["X-Request-Id"]


@pytest.mark.asyncio
async def test_registration_to_first_scan(client, services) -> None:
    response = await client.post(
        "/v1/gyms/register",
        json={"slug": "Iron-Temple", "gym_name": "Iron Temple", "admin_email": "owner@example.com"},
    )
    assert response.status_code == 201
    registration = response.json()["data"]
    assert registration["slug"] == "iron-temple"
    assert registration["status"] == "PENDING_PAYMENT"
    reservation_id = registration["registration_session_id"]

    duplicate = await client.post(
        "/v1/gyms/register",
        json={"slug": "iron-temple", "gym_name": "Copycat", "admin_email": "copy@example.com"},
    )
    assert duplicate.status_code == 409
    assert duplicate.json()["error"]["code"] == "SLUG_RESERVED"

    pending = await client.get("/v1/registration/status", params={"registration_session_id": reservation_id})
    assert pending.status_code == 202
    assert pending.json()["data"]["state"] == "PROCESSING"

    # No gym exists until payment is confirmed.
    early = await client.get("/v1/offerings", headers=_gym())
    assert early.status_code == 404
    assert early.json()["error"]["code"] == "TENANT_NOT_FOUND"

    event = {
        "id": "evt_1",
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": registration["checkout_id"],
                "customer": "cus_1",
                "metadata": {"registrationSessionId": reservation_id, "gymSlug": "iron-temple"},
            }
        },
    }
    webhook = await client.post("/v1/payments/webhook", content=json.dumps(event))
    assert webhook.status_code == 200
    assert webhook.json()["data"]["created"] is True

    replay = await client.post("/v1/payments/webhook", content=json.dumps(event))
    assert replay.json()["data"]["created"] is False

    done = await client.get("/v1/registration/status", params={"session_id": registration["checkout_id"]})
    assert done.status_code == 200
    body = done.json()["data"]
    assert body["state"] == "COMPLETED"
    assert body["gym"]["tenant_url"] == "http://iron-temple.gympass.local:4000"

    listing = await client.get("/v1/gyms")
    assert [g["slug"] for g in listing.json()["data"]["items"]] == ["iron-temple"]

    ctx = await build_tenant_context(services.router, "iron-temple")
    member = await add_member(ctx)
    staff = await add_staff(ctx)

    offerings = await client.get("/v1/offerings", headers={"Host": "iron-temple.gympass.local:4000"})
    assert offerings.status_code == 200
    single = next(o for o in offerings.json()["data"]["items"] if o["template_id"] == "VISITS_SINGLE")

    purchase = await client.post(
        "/v1/passes/purchase",
        json={"offering_id": single["id"]},
        headers={**_gym(), "X-User-Id": member.id},
    )
    assert purchase.status_code == 201
    bought = purchase.json()["data"]
    assert bought["remaining_entries"] == 1
    token = bought["token"]

    scan = await client.post(
        "/v1/staff/scan",
        json={"token": token, "auto_consume": True},
        headers={**_gym(), "X-Staff-Id": staff.id},
    )
    assert scan.status_code == 200
    scanned = scan.json()["data"]
    assert scanned["valid"] is True
    assert scanned["pass"]["remaining_entries"] == 0
    assert scanned["user"]["id"] == member.id

    again = await client.post(
        "/v1/staff/scan", json={"token": token}, headers={**_gym(), "X-Staff-Id": staff.id}
    )
    assert again.json()["data"]["valid"] is False
    assert again.json()["data"]["reason"] == "DEPLETED"

    history = await client.get("/v1/staff/history", headers={**_gym(), "X-Staff-Id": staff.id})
    assert [item["action"] for item in history.json()["data"]["items"]].count("CONSUME") == 1

    mine = await client.get(f"/v1/passes/{bought['id']}", headers={**_gym(), "X-User-Id": member.id})
    assert mine.json()["data"]["status"] == "DEPLETED"


@pytest.mark.asyncio
async def test_staff_and_member_identity_is_required(client, services) -> None:
    ctx = await create_active_gym(services.registry, services.router)
    member = await add_member(ctx)

    missing = await client.post("/v1/staff/scan", json={"token": "x"}, headers=_gym())
    assert missing.status_code == 401
    assert missing.json()["error"]["code"] == "AUTH_UNAUTHORIZED"

    # A member id is not a staff id.
    forbidden = await client.post(
        "/v1/staff/scan", json={"token": "x"}, headers={**_gym(), "X-Staff-Id": member.id}
    )
    assert forbidden.status_code == 403

    anonymous = await client.post("/v1/passes/purchase", json={"offering_id": "x"}, headers=_gym())
    assert anonymous.status_code == 401


@pytest.mark.asyncio
async def test_consume_error_codes(client, services) -> None:
    ctx = await create_active_gym(services.registry, services.router)
    member = await add_member(ctx)
    staff = await add_staff(ctx)
    offerings = (await client.get("/v1/offerings", headers=_gym())).json()["data"]["items"]
    monthly = next(o for o in offerings if o["template_id"] == "DURATION_MONTHS")
    ten = next(o for o in offerings if o["template_id"] == "VISITS_TEN")
    staff_headers = {**_gym(), "X-Staff-Id": staff.id}
    member_headers = {**_gym(), "X-User-Id": member.id}

    async def buy(offering_id: str) -> dict:
        response = await client.post(
            "/v1/passes/purchase", json={"offering_id": offering_id}, headers=member_headers
        )
        return response.json()["data"]

    unlimited = await buy(monthly["id"])
    visits = await buy(ten["id"])

    not_entry = await client.post("/v1/staff/consume", json={"token": unlimited["token"]}, headers=staff_headers)
    assert not_entry.status_code == 400
    assert not_entry.json()["error"]["code"] == "NOT_ENTRY_BASED"

    too_many = await client.post(
        "/v1/staff/consume", json={"token": visits["token"], "entries": 11}, headers=staff_headers
    )
    assert too_many.status_code == 409
    assert too_many.json()["error"]["code"] == "INSUFFICIENT_ENTRIES"
    assert too_many.json()["error"]["details"] == {"remaining": 10, "requested": 11}

    ok = await client.post(
        "/v1/staff/consume", json={"token": visits["token"], "entries": 3}, headers=staff_headers
    )
    assert ok.json()["data"]["remaining_entries"] == 7

    revoked = await client.post(f"/v1/staff/passes/{visits['id']}/revoke", headers=staff_headers)
    assert revoked.json()["data"]["status"] == "REVOKED"
    inactive = await client.post("/v1/staff/consume", json={"token": visits["token"]}, headers=staff_headers)
    assert inactive.status_code == 409
    assert inactive.json()["error"]["code"] == "PASS_NOT_ACTIVE"

    invalid = await client.post(
        "/v1/staff/consume", json={"token": visits["token"], "entries": 0}, headers=staff_headers
    )
    assert invalid.status_code == 422

    blocked = await client.post(f"/v1/staff/users/{member.id}/block", headers=staff_headers)
    assert blocked.json()["data"]["is_blocked"] is True
    refused = await client.post("/v1/passes/purchase", json={"offering_id": ten["id"]}, headers=member_headers)
    assert refused.status_code == 403
    assert refused.json()["error"]["code"] == "ACCOUNT_BLOCKED"

    deleted = await client.delete(f"/v1/staff/users/{member.id}", headers=staff_headers)
    assert deleted.json()["data"]["deleted"]["passes"] == 2


@pytest.mark.asyncio
async def test_platform_admin_controls_gym_access(client, services) -> None:
    ctx = await create_active_gym(services.registry, services.router)
    admin = await services.registry.create_platform_admin("root@example.com", "hash", "Root")
    admin_headers = {"X-Platform-Admin-Id": admin.id}

    forbidden = await client.get("/v1/admin/gyms", headers={"X-Platform-Admin-Id": "nobody"})
    assert forbidden.status_code == 403

    listing = await client.get("/v1/admin/gyms", headers=admin_headers)
    assert [g["slug"] for g in listing.json()["data"]["items"]] == ["iron-temple"]

    patched = await client.patch(
        f"/v1/admin/gyms/{ctx.tenant_id}",
        json={"city": "Maribor", "opening_hours": {"sun": {"open": "10:00", "close": "14:00", "closed": False}}},
        headers=admin_headers,
    )
    assert patched.status_code == 200
    assert patched.json()["data"]["city"] == "Maribor"
    assert patched.json()["data"]["opening_hours"]["sun"]["open"] == "10:00"

    not_blocked = await client.post(f"/v1/admin/gyms/{ctx.tenant_id}/unblock", headers=admin_headers)
    assert not_blocked.status_code == 409
    assert not_blocked.json()["error"]["code"] == "TENANT_STATE_CONFLICT"

    await client.post(f"/v1/admin/gyms/{ctx.tenant_id}/block", headers=admin_headers)
    refused = await client.get("/v1/offerings", headers=_gym())
    assert refused.status_code == 403
    assert refused.json()["error"]["code"] == "TENANT_BLOCKED"

    await client.post(f"/v1/admin/gyms/{ctx.tenant_id}/unblock", headers=admin_headers)
    assert (await client.get("/v1/offerings", headers=_gym())).status_code == 200

    deleted = await client.post(f"/v1/admin/gyms/{ctx.tenant_id}/delete", headers=admin_headers)
    assert deleted.json()["data"]["status"] == "DELETED"
    gone = await client.get("/v1/offerings", headers=_gym())
    assert gone.status_code == 404
    assert gone.json()["error"]["code"] == "TENANT_DELETED"
    assert services.router.cached_slugs() == []

    again = await client.post(f"/v1/admin/gyms/{ctx.tenant_id}/block", headers=admin_headers)
    assert again.json()["error"]["code"] == "TENANT_DELETED"


@pytest.mark.asyncio
async def test_unknown_gym_and_bad_slug(client) -> None:
    unknown = await client.get("/v1/offerings", headers=_gym("ghost-gym"))
    assert unknown.status_code == 404
    assert unknown.json()["error"]["code"] == "TENANT_NOT_FOUND"

    bad = await client.post(
        "/v1/gyms/register",
        json={"slug": "no", "gym_name": "Tiny", "admin_email": "owner@example.com"},
    )
    assert bad.status_code == 400
    assert bad.json()["error"]["code"] == "INVALID_SLUG"

    taken = await client.post(
        "/v1/gyms/register",
        json={"slug": "www", "gym_name": "Web", "admin_email": "owner@example.com"},
    )
    assert taken.json()["error"]["code"] == "SLUG_TAKEN"
