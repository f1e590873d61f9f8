from datetime import datetime, timedelta, timezone

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from noxly_api.core.settings import settings
from noxly_api.models import CouponUsage


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


def _member(user_id) -> dict[str, str]:
    return {"X-Session-User": str(user_id)}


def _staff(user_id, organization_id) -> dict[str, str]:
    return {"X-Session-User": str(user_id), "X-Organization-Id": str(organization_id)}


def _sse_events(body: str) -> list[str]:
    return [line.split(":", 1)[1].strip() for line in body.splitlines() if line.startswith("event:")]


@pytest.mark.asyncio
async def test_redemption_flow_over_http(app_with_db, world, make_coupon) -> None:
    app, session_factory = app_with_db
    coupon_id = await make_coupon(world.organization_id, points_reward=10)

    async with _client(app) as client:
        anonymous = await client.post("/api/v1/redemptions", json={"couponId": str(coupon_id)})
        assert anonymous.status_code == 401

        created = await client.post(
            "/api/v1/redemptions", json={"couponId": str(coupon_id)}, headers=_member(world.customer_id)
        )
        assert created.status_code == 201
        payload = created.json()
        assert len(payload["code"]) == 6 and payload["code"].isdigit()
        assert payload["isUsed"] is False
        assert 0 < payload["remainingSeconds"] <= 180

        duplicate = await client.post(
            "/api/v1/redemptions", json={"couponId": str(coupon_id)}, headers=_member(world.customer_id)
        )
        assert duplicate.status_code == 409
        assert duplicate.json()["detail"]["error"] == "already_pending"
        assert duplicate.json()["detail"]["usageId"] == payload["usageId"]

        status_resp = await client.get(
            f"/api/v1/redemptions/status/{coupon_id}", headers=_member(world.customer_id)
        )
        assert status_resp.json()["pending"] is True
        assert status_resp.json()["pendingUsage"]["code"] == payload["code"]

        preview = await client.get(
            f"/api/v1/redemptions/codes/{payload['code']}",
            headers=_staff(world.agent_id, world.organization_id),
        )
        assert preview.status_code == 200
        assert preview.json()["userId"] == str(world.customer_id)

        finalized = await client.post(
            "/api/v1/redemptions/finalize",
            json={"code": payload["code"]},
            headers=_staff(world.agent_id, world.organization_id),
        )
        assert finalized.status_code == 200
        assert finalized.json() == {
            "success": True,
            "usageId": payload["usageId"],
            "couponId": str(coupon_id),
            "rewardPoints": 10,
        }

        replay = await client.post(
            "/api/v1/redemptions/finalize",
            json={"code": payload["code"]},
            headers=_staff(world.agent_id, world.organization_id),
        )
        assert replay.status_code == 409
        assert replay.json()["detail"]["error"] == "already_redeemed"

        mine = await client.get("/api/v1/redemptions/mine", headers=_member(world.customer_id))
        assert [item["status"] for item in mine.json()] == ["used"]
        assert mine.json()[0]["code"] is None

        points = await client.get("/api/v1/loyalty/points", headers=_member(world.customer_id))
        assert points.json()["totalPoints"] == 10
        assert points.json()["balances"][0]["organizationName"] == "Club Aurora"

        history = await client.get("/api/v1/loyalty/points/transactions", headers=_member(world.customer_id))
        assert [entry["reason"] for entry in history.json()] == ["coupon_reward"]

        org_usages = await client.get(
            f"/api/v1/organizations/{world.organization_id}/usages", headers=_member(world.agent_id)
        )
        assert org_usages.status_code == 200
        assert org_usages.json()[0]["usageId"] == payload["usageId"]


@pytest.mark.asyncio
async def test_finalize_requires_organization_scope(app_with_db, world, make_coupon) -> None:
    app, _ = app_with_db

    async with _client(app) as client:
        missing_header = await client.post(
            "/api/v1/redemptions/finalize", json={"code": "482913"}, headers=_member(world.agent_id)
        )
        assert missing_header.status_code == 400
        assert missing_header.json()["detail"]["error"] == "missing_organization"

        not_staff = await client.post(
            "/api/v1/redemptions/finalize",
            json={"code": "482913"},
            headers=_staff(world.customer_id, world.organization_id),
        )
        assert not_staff.status_code == 403

        unknown = await client.post(
            "/api/v1/redemptions/finalize",
            json={"code": "482913"},
            headers=_staff(world.agent_id, world.organization_id),
        )
        assert unknown.status_code == 404
        assert unknown.json()["detail"]["error"] == "invalid_code"

        other_org = await client.get(
            f"/api/v1/organizations/{world.other_organization_id}/usages", headers=_member(world.agent_id)
        )
        assert other_org.status_code == 403


@pytest.mark.asyncio
async def test_cancel_pending_redemption(app_with_db, world, make_coupon) -> None:
    app, session_factory = app_with_db
    coupon_id = await make_coupon(world.organization_id)

    async with _client(app) as client:
        created = await client.post(
            "/api/v1/redemptions", json={"couponId": str(coupon_id)}, headers=_member(world.customer_id)
        )
        usage_id = created.json()["usageId"]

        foreign = await client.delete(f"/api/v1/redemptions/{usage_id}", headers=_member(world.agent_id))
        assert foreign.status_code == 404

        cancelled = await client.delete(f"/api/v1/redemptions/{usage_id}", headers=_member(world.customer_id))
        assert cancelled.status_code == 204

    async with session_factory() as session:
        assert (await session.execute(select(CouponUsage))).scalars().all() == []


@pytest.mark.asyncio
async def test_countdown_for_finalized_usage_ends_immediately(app_with_db, world, make_coupon) -> None:
    app, _ = app_with_db
    coupon_id = await make_coupon(world.organization_id, is_code_required=False)

    async with _client(app) as client:
        created = await client.post(
            "/api/v1/redemptions", json={"couponId": str(coupon_id)}, headers=_member(world.customer_id)
        )
        assert created.json()["isUsed"] is True

        response = await client.get(
            f"/api/v1/redemptions/{created.json()['usageId']}/countdown", headers=_member(world.customer_id)
        )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert _sse_events(response.text) == ["finalized"]


@pytest.mark.asyncio
async def test_countdown_for_lapsed_code_expires_and_releases_it(app_with_db, world, make_coupon) -> None:
    app, session_factory = app_with_db
    coupon_id = await make_coupon(world.organization_id)
    async with session_factory() as session:
        usage = CouponUsage(
            user_id=world.customer_id,
            coupon_id=coupon_id,
            redemption_code="121212",
            redeemed_at=datetime.now(timezone.utc) - timedelta(minutes=10),
        )
        session.add(usage)
        await session.commit()
        usage_id = usage.id

    async with _client(app) as client:
        missing = await client.get(f"/api/v1/redemptions/{usage_id}/countdown", headers=_member(world.agent_id))
        assert missing.status_code == 404

        response = await client.get(f"/api/v1/redemptions/{usage_id}/countdown", headers=_member(world.customer_id))

    assert _sse_events(response.text) == ["started", "expired"]
    async with session_factory() as session:
        assert await session.get(CouponUsage, usage_id) is None


@pytest.mark.asyncio
async def test_coupon_management_and_public_listing(app_with_db, world) -> None:
    app, _ = app_with_db

    async with _client(app) as client:
        forbidden = await client.post(
            "/api/v1/coupons/manage",
            json={"title": "Free shot"},
            headers=_staff(world.agent_id, world.organization_id),
        )
        assert forbidden.status_code == 403

        invalid = await client.post(
            "/api/v1/coupons/manage",
            json={"title": "Confused", "pointsCost": 5, "pointsReward": 5},
            headers=_staff(world.owner_id, world.organization_id),
        )
        assert invalid.status_code == 400
        assert invalid.json()["detail"]["error"] == "validation_error"

        created = await client.post(
            "/api/v1/coupons/manage",
            json={"title": "Free shot", "pointsReward": 3},
            headers=_staff(world.owner_id, world.organization_id),
        )
        assert created.status_code == 201
        coupon = created.json()

        patched = await client.patch(
            f"/api/v1/coupons/manage/{coupon['id']}",
            json={"shortDescription": "One per night"},
            headers=_staff(world.owner_id, world.organization_id),
        )
        assert patched.json()["shortDescription"] == "One per night"

        cleared = await client.patch(
            f"/api/v1/coupons/manage/{coupon['id']}",
            json={"pointsCost": None},
            headers=_staff(world.owner_id, world.organization_id),
        )
        assert cleared.status_code == 400
        assert cleared.json()["detail"]["error"] == "validation_error"

        listing = await client.get("/api/v1/coupons", headers=_member(world.customer_id))
        assert [item["title"] for item in listing.json()] == ["Free shot"]
        assert listing.json()[0]["redemption"]["canRedeem"] is True

        archived = await client.post(
            f"/api/v1/coupons/manage/{coupon['id']}/archive",
            headers=_staff(world.owner_id, world.organization_id),
        )
        assert archived.json()["isArchived"] is True
        assert (await client.get("/api/v1/coupons")).json() == []


@pytest.mark.asyncio
async def test_challenge_endpoints(app_with_db, world, make_coupon) -> None:
    app, _ = app_with_db
    coupon_id = await make_coupon(world.organization_id, is_code_required=False)
    previous_key = settings.admin_api_key
    settings.admin_api_key = "admin-secret"

    try:
        async with _client(app) as client:
            denied = await client.post(
                "/api/v1/admin/challenges",
                json={"title": "Regular", "conditionType": "REDEEM_COUNT", "conditionValue": 1},
            )
            assert denied.status_code == 401

            created = await client.post(
                "/api/v1/admin/challenges",
                json={
                    "title": "Regular",
                    "conditionType": "REDEEM_COUNT",
                    "conditionValue": 1,
                    "rewardPoints": 25,
                    "rewardOrganizationId": str(world.organization_id),
                },
                headers={"X-API-Key": "admin-secret"},
            )
            assert created.status_code == 201
            challenge_id = created.json()["id"]

            await client.post(
                "/api/v1/redemptions", json={"couponId": str(coupon_id)}, headers=_member(world.customer_id)
            )

            listing = await client.get("/api/v1/challenges", headers=_member(world.customer_id))
            [entry] = listing.json()
            assert entry["isCompleted"] is True
            assert entry["progressPercentage"] == 100

            claim = await client.post(f"/api/v1/challenges/{challenge_id}/claim", headers=_member(world.customer_id))
            assert claim.status_code == 200
            assert claim.json()["rewardPoints"] == 25

            repeat = await client.post(f"/api/v1/challenges/{challenge_id}/claim", headers=_member(world.customer_id))
            assert repeat.status_code == 409
            assert repeat.json()["detail"]["error"] == "already_claimed"

            snapshot = await client.get(
                "/api/v1/observability/redemptions", headers={"X-API-Key": "admin-secret"}
            )
            assert snapshot.json()["claims"]["claimed"] == 1
            assert snapshot.json()["initiations"]["redeemed"] == 1
    finally:
        settings.admin_api_key = previous_key


@pytest.mark.asyncio
async def test_readiness_reports_database_and_worker(app_with_db) -> None:
    app, _ = app_with_db

    async with _client(app) as client:
        response = await client.get("/api/v1/readyz")

    assert response.status_code == 200
    body = response.json()
    assert body["components"]["database"]["status"] == "ready"
    assert body["components"]["pending_sweep_worker"]["status"] == "disabled"
