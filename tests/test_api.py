"""HTTP surface over the loyalty services."""

import pytest

pytestmark = pytest.mark.asyncio


def _as(user_id: str) -> dict:
    return {"X-User-ID": user_id}


async def test_requires_caller(client):
    r = await client.get("/v1/points/balance")
    assert r.status_code == 401
    assert r.json()["error"]["code"] == "UNAUTHORIZED"


async def test_balance_and_history(client, make_user):
    await make_user("u1", points=120)
    r = await client.get("/v1/points/balance", headers=_as("u1"))
    assert r.json() == {"balance": 120}
    r = await client.get("/v1/points/history", headers=_as("u1"))
    body = r.json()
    assert [e["amount"] for e in body["entries"]] == [120]
    assert body["entries"][0]["reason"] == "other"


async def test_convert(client, make_user):
    await make_user("u1", points=100)
    r = await client.post("/v1/points/convert", json={"points": 20}, headers=_as("u1"))
    assert r.status_code == 200
    body = r.json()
    assert body["points_balance"] == 80
    assert body["wallet_credit"] == "1000"
    r = await client.get("/v1/wallet", headers=_as("u1"))
    assert r.json()["balance"] == "1000"


async def test_convert_below_minimum_error_shape(client, make_user):
    await make_user("u1", points=100)
    r = await client.post("/v1/points/convert", json={"points": 5}, headers=_as("u1"))
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "BELOW_MINIMUM_CONVERSION"


async def test_transfer_errors(client, make_user):
    await make_user("a", points=10)
    await make_user("b")
    r = await client.post("/v1/points/transfer", json={"recipient": "b@example.com", "amount": 50}, headers=_as("a"))
    assert r.status_code == 409
    assert r.json()["error"]["code"] == "INSUFFICIENT_POINTS"
    r = await client.post("/v1/points/transfer", json={"recipient": "zz@example.com", "amount": 5}, headers=_as("a"))
    assert r.status_code == 404
    assert r.json()["error"]["code"] == "RECIPIENT_NOT_FOUND"
    r = await client.post("/v1/points/transfer", json={"recipient": "b@example.com", "amount": 5}, headers=_as("a"))
    assert r.status_code == 200
    assert r.json()["points_balance"] == 5


async def test_referral_flow(client, make_user):
    await make_user("ref", full_name="Oumar Ba")
    await make_user("admin", role="admin")
    code = (await client.get("/v1/referrals/me", headers=_as("ref"))).json()["referral_code"]
    assert code.startswith("OUM")

    r = await client.post(
        "/v1/admin/users",
        json={"user_id": "new", "full_name": "Fatou Sow", "referral_code_used": code.lower()},
        headers=_as("admin"),
    )
    assert r.json()["referred_by"] == "ref"

    r = await client.post(
        "/v1/admin/events/shipment-completed",
        json={"user_id": "new", "shipment_id": "shp-1"},
        headers=_as("admin"),
    )
    assert r.status_code == 200
    stats = (await client.get("/v1/referrals/stats", headers=_as("ref"))).json()
    assert stats["completed"] == 1
    assert stats["pending"] == 0
    listed = (await client.get("/v1/referrals", headers=_as("ref"))).json()["referrals"]
    assert listed[0]["status"] == "rewarded"


async def test_existing_user_cannot_attach_referrer_later(client, make_user):
    await make_user("ref")
    await make_user("admin", role="admin")
    await make_user("veteran")
    code = (await client.get("/v1/referrals/me", headers=_as("ref"))).json()["referral_code"]
    for n in range(3):
        await client.post(
            "/v1/admin/events/shipment-completed",
            json={"user_id": "veteran", "shipment_id": f"shp-{n}"},
            headers=_as("admin"),
        )

    r = await client.post("/v1/referrals/apply", json={"code": code}, headers=_as("veteran"))
    assert r.status_code == 404
    r = await client.post(
        "/v1/admin/users",
        json={"user_id": "veteran", "referral_code_used": code},
        headers=_as("admin"),
    )
    assert r.status_code == 409
    assert r.json()["error"]["code"] == "USER_EXISTS"

    r = await client.post(
        "/v1/admin/events/shipment-completed",
        json={"user_id": "veteran", "shipment_id": "shp-3"},
        headers=_as("admin"),
    )
    assert r.json()["referral_id"] is None
    assert (await client.get("/v1/points/balance", headers=_as("ref"))).json() == {"balance": 0}


async def test_admin_routes_need_admin(client, make_user):
    await make_user("u1")
    r = await client.post("/v1/admin/points/adjust", json={"user_id": "u1", "amount": 5, "note": "x"}, headers=_as("u1"))
    assert r.status_code == 403


async def test_admin_adjust_and_verify(client, make_user):
    await make_user("admin", role="admin")
    await make_user("u1")
    r = await client.post(
        "/v1/admin/points/adjust",
        json={"user_id": "u1", "amount": 40, "note": "late delivery"},
        headers=_as("admin"),
    )
    assert r.json()["balance"] == 40
    r = await client.get("/v1/admin/points/u1/verify", headers=_as("admin"))
    assert r.json()["consistent"] is True


async def test_admin_enroll_user(client, make_user):
    await make_user("admin", role="admin")
    r = await client.post(
        "/v1/admin/users",
        json={"user_id": "n1", "full_name": "Binta Diallo", "email": "binta@example.com"},
        headers=_as("admin"),
    )
    assert r.status_code == 200
    assert r.json()["referral_code"].startswith("BIN")
