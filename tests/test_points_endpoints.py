import pytest
from httpx import ASGITransport, AsyncClient

from loyalty_ledger.core.settings import get_settings
from loyalty_ledger.models.user import User, UserRoleEnum


async def _seed_users(session_factory) -> tuple[User, User]:
    async with session_factory() as session:
        member = User(email="endpoint@example.com", display_name="Endpoint Member")
        admin = User(email="ops@example.com", role=UserRoleEnum.ADMIN.value)
        session.add_all([member, admin])
        await session.commit()
        return member, admin


def _order(user_id, total="100.00"):
    return {"userId": str(user_id), "total": total, "lineItems": []}


def _session(user: User) -> dict[str, str]:
    return {"X-Session-User": str(user.id)}


@pytest.mark.asyncio
async def test_order_lifecycle_and_balance_endpoints(app_with_db) -> None:
    app, session_factory = app_with_db
    member, _ = await _seed_users(session_factory)
    user_id = str(member.id)
    headers = _session(member)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        placed = await client.post("/api/v1/points/orders/ord-500/placed", json=_order(user_id))
        assert placed.status_code == 200
        assert placed.json() == {"orderId": "ord-500", "processed": True}

        duplicate = await client.post("/api/v1/points/orders/ord-500/placed", json=_order(user_id))
        assert duplicate.json()["processed"] is False

        balance = (await client.get(f"/api/v1/points/users/{user_id}/balance", headers=headers)).json()
        assert balance["pending"] == 100
        assert balance["available"] == 0

        completed = await client.post("/api/v1/points/orders/ord-500/completed", json=_order(user_id))
        assert completed.json()["processed"] is True

        balance = (await client.get(f"/api/v1/points/users/{user_id}/balance", headers=headers)).json()
        assert balance == {
            "userId": user_id,
            "available": 100,
            "pending": 0,
            "earnedToDate": 100,
            "expiredTotal": 0,
            "redeemedTotal": 0,
        }

        refund = await client.post(
            "/api/v1/points/orders/ord-500/refunds/ref-500",
            json={"order": _order(user_id), "refundTotal": "25.00"},
        )
        assert refund.json()["processed"] is True

        history = await client.get(f"/api/v1/points/users/{user_id}/history", params={"pageSize": 1}, headers=headers)
        assert history.status_code == 200
        payload = history.json()
        assert payload["total"] == 2
        assert payload["pages"] == 2
        assert payload["items"][0]["actionType"] == "partial_refund"
        assert payload["items"][0]["points"] == -25

        filtered = await client.get(
            f"/api/v1/points/users/{user_id}/history",
            params={"actionType": "order_placement"},
            headers=headers,
        )
        assert [item["points"] for item in filtered.json()["items"]] == [100]

        reversed_refund = await client.post("/api/v1/points/refunds/ref-500/reverse")
        assert reversed_refund.status_code == 200
        assert reversed_refund.json()["processed"] is True

        balance = (await client.get(f"/api/v1/points/users/{user_id}/balance", headers=headers)).json()
        assert balance["available"] == 100


@pytest.mark.asyncio
async def test_member_routes_require_session_user(app_with_db) -> None:
    app, session_factory = app_with_db
    member, admin = await _seed_users(session_factory)
    async with session_factory() as session:
        other = User(email="other@example.com")
        session.add(other)
        await session.commit()
    user_id = str(member.id)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        missing = await client.get(f"/api/v1/points/users/{user_id}/balance")
        assert missing.status_code == 401
        assert missing.json()["detail"] == "Missing session user context"

        invalid = await client.get(
            f"/api/v1/points/users/{user_id}/balance",
            headers={"X-Session-User": "not-a-uuid"},
        )
        assert invalid.status_code == 400

        unknown = await client.get(
            f"/api/v1/points/users/{user_id}/balance",
            headers={"X-Session-User": "00000000-0000-0000-0000-000000000000"},
        )
        assert unknown.status_code == 404

        for method, path, body in (
            ("GET", f"/api/v1/points/users/{user_id}/balance", None),
            ("GET", f"/api/v1/points/users/{user_id}/history", None),
            ("GET", f"/api/v1/points/users/{user_id}/redemptions", None),
            ("GET", f"/api/v1/points/users/{user_id}/expiry-forecast", None),
            ("POST", f"/api/v1/points/users/{user_id}/redemptions", {"points": 10}),
        ):
            response = await client.request(method, path, json=body, headers=_session(other))
            assert response.status_code == 403, path

        as_admin = await client.get(f"/api/v1/points/users/{user_id}/balance", headers=_session(admin))
        assert as_admin.status_code == 200


@pytest.mark.asyncio
async def test_redemption_endpoints(app_with_db) -> None:
    app, session_factory = app_with_db
    member, _ = await _seed_users(session_factory)
    async with session_factory() as session:
        other = User(email="stranger@example.com")
        session.add(other)
        await session.commit()
    user_id = str(member.id)
    headers = _session(member)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        await client.post("/api/v1/points/orders/ord-600/placed", json=_order(user_id, "200.00"))
        await client.post("/api/v1/points/orders/ord-600/completed", json=_order(user_id, "200.00"))

        too_much = await client.post(
            f"/api/v1/points/users/{user_id}/redemptions",
            json={"points": 500},
            headers=headers,
        )
        assert too_much.status_code == 402
        assert too_much.json()["detail"]["code"] == "insufficient_balance"

        capped = await client.post(
            f"/api/v1/points/users/{user_id}/redemptions",
            json={"points": 50, "orderId": "ord-600", "order": _order(user_id, "10000.00")},
            headers=headers,
        )
        assert capped.status_code == 409
        assert capped.json()["detail"]["code"] == "redemption_limit_exceeded"
        assert capped.json()["detail"]["details"]["max_redeemable"] == "40.00"

        unknown_order = await client.post(
            f"/api/v1/points/users/{user_id}/redemptions",
            json={"points": 5, "orderId": "ord-unrecorded", "order": _order(user_id, "100.00")},
            headers=headers,
        )
        assert unknown_order.status_code == 404

        created = await client.post(
            f"/api/v1/points/users/{user_id}/redemptions",
            json={"points": 40, "orderId": "ord-600", "conversionRate": "1000", "currency": "XAU"},
            headers=headers,
        )
        assert created.status_code == 201
        body = created.json()
        assert body["discountValue"] == 40.0
        assert body["conversionRate"] == 1.0
        assert body["currency"] == "USD"
        assert body["status"] == "pending"
        assert body["remainingBalance"] == 160

        listed = await client.get(f"/api/v1/points/users/{user_id}/redemptions", headers=headers)
        assert [item["id"] for item in listed.json()] == [body["redemptionId"]]

        stolen = await client.post(
            f"/api/v1/points/redemptions/{body['redemptionId']}/cancel",
            json={"reason": "not mine"},
            headers=_session(other),
        )
        assert stolen.status_code == 404

        cancelled = await client.post(
            f"/api/v1/points/redemptions/{body['redemptionId']}/cancel",
            json={"reason": "changed mind"},
            headers=headers,
        )
        assert cancelled.status_code == 200
        assert cancelled.json()["newBalance"] == 200

        again = await client.post(
            f"/api/v1/points/redemptions/{body['redemptionId']}/cancel",
            json={},
            headers=headers,
        )
        assert again.status_code == 409

        anonymous = await client.post(f"/api/v1/points/redemptions/{body['redemptionId']}/cancel", json={})
        assert anonymous.status_code == 401


@pytest.mark.asyncio
async def test_admin_endpoints_require_api_key(app_with_db, monkeypatch) -> None:
    app, session_factory = app_with_db
    member, admin = await _seed_users(session_factory)
    monkeypatch.setattr(get_settings(), "admin_api_key", "secret-key")

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        payload = {"userId": str(member.id), "adminId": str(admin.id), "points": 30, "reason": "Support credit"}

        rejected = await client.post("/api/v1/points/admin/assign", json=payload)
        assert rejected.status_code == 401

        headers = {"X-API-Key": "secret-key"}
        assigned = await client.post("/api/v1/points/admin/assign", json=payload, headers=headers)
        assert assigned.status_code == 200
        assert assigned.json()["newBalance"] == 30

        forbidden = await client.post(
            "/api/v1/points/admin/assign",
            json={**payload, "adminId": str(member.id)},
            headers=headers,
        )
        assert forbidden.status_code == 403
        assert forbidden.json()["detail"]["message"] == "Insufficient permissions"

        audit = await client.get("/api/v1/points/admin/audit-log", headers=headers)
        assert [entry["action"] for entry in audit.json()] == ["assign_points"]

        summary = await client.get("/api/v1/points/admin/summary", headers=headers)
        assert summary.json()["assign_points"] == {"count": 1, "points": 30}

        rule = await client.put(
            "/api/v1/points/admin/expiry-rules",
            json={"name": "Bonus decay", "expiryDays": 90, "graceDays": 7, "actionTypes": ["bonus"]},
            headers=headers,
        )
        assert rule.status_code == 200
        assert rule.json()["status"] == "active"

        invalid_rule = await client.put(
            "/api/v1/points/admin/expiry-rules",
            json={"name": "Broken", "expiryDays": 0},
            headers=headers,
        )
        assert invalid_rule.status_code == 400

        sweep = await client.post("/api/v1/points/expiry/sweep", json={}, headers=headers)
        assert sweep.status_code == 200
        assert sweep.json()["expiredEntries"] == 0


@pytest.mark.asyncio
async def test_health_endpoint_reports_scheduler_and_counters(app_with_db) -> None:
    app, _ = app_with_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/healthz")

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ok"
    assert payload["scheduler"]["running"] is False
    assert set(payload["points"]) == {"ledger", "handlers", "redemptions", "expiry"}


@pytest.mark.asyncio
async def test_admin_expiry_and_summary_endpoints(app_with_db) -> None:
    app, session_factory = app_with_db
    member, admin = await _seed_users(session_factory)
    user_id = str(member.id)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        await client.post("/api/v1/points/orders/ord-800/placed", json=_order(user_id, "60.00"))
        await client.post("/api/v1/points/orders/ord-800/completed", json=_order(user_id, "60.00"))

        order_summary = await client.get("/api/v1/points/admin/orders/ord-800/summary")
        assert order_summary.status_code == 200
        assert order_summary.json()["pointsAwarded"] == 60
        assert order_summary.json()["pointsStatus"] == "earned"
        assert order_summary.json()["refundedPoints"] == 0

        missing_order = await client.get("/api/v1/points/admin/orders/ord-missing/summary")
        assert missing_order.json()["pointsStatus"] == "none"

        history = await client.get(f"/api/v1/points/users/{user_id}/history", headers=_session(member))
        ledger_id = history.json()["items"][0]["id"]

        denied = await client.post(
            "/api/v1/points/admin/expire",
            json={"ledgerId": ledger_id, "adminId": user_id},
        )
        assert denied.status_code == 403

        expired = await client.post(
            "/api/v1/points/admin/expire",
            json={"ledgerId": ledger_id, "adminId": str(admin.id), "userId": user_id, "reason": "Chargeback"},
        )
        assert expired.status_code == 200
        assert expired.json() == {
            "ledgerId": ledger_id,
            "userId": user_id,
            "expiredPoints": 60,
            "consumedPoints": 0,
            "newBalance": 0,
        }

        repeated = await client.post(
            "/api/v1/points/admin/expire",
            json={"ledgerId": ledger_id, "adminId": str(admin.id)},
        )
        assert repeated.status_code == 409

        summary = await client.get(f"/api/v1/points/admin/users/{user_id}/expired-summary")
        assert summary.status_code == 200
        payload = summary.json()
        assert payload["totalExpirations"] == 1
        assert payload["totalExpiredPoints"] == 60
        assert payload["totalConsumedPoints"] == 0
        assert payload["lastExpiryAt"] is not None

        order_summary = await client.get("/api/v1/points/admin/orders/ord-800/summary")
        assert order_summary.json()["pointsStatus"] == "expired"
