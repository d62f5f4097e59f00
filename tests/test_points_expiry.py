from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy import select

from loyalty_ledger.core.errors import InvalidTransitionError, NotFoundError, PermissionDeniedError, ValidationError
from loyalty_ledger.models.points import (
    ExpirationMarkerStatus,
    ExpiryRuleStatus,
    LedgerActionType,
    LedgerStatus,
    PointExpiration,
    PointsLedgerEntry,
)
from loyalty_ledger.models.user import UserRoleEnum
from loyalty_ledger.observability.points import get_points_store
from loyalty_ledger.services.points import (
    LedgerEntryDraft,
    LedgerStore,
    PointsEventBus,
    PointsEventType,
    PointsService,
    PointsSettings,
    StaticSettingsSource,
    UserLockRegistry,
)


NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


def _service(session, notifications, *, bus=None, settings=None):
    return PointsService(
        session,
        settings_source=StaticSettingsSource(settings or PointsSettings(expiry_days=365, expiry_grace_days=30)),
        notifications=notifications,
        event_bus=bus or PointsEventBus(),
        lock_registry=UserLockRegistry(),
        clock=lambda: NOW,
    )


async def _credit(session_factory, user_id, points, *, days_ago, action=LedgerActionType.PURCHASE):
    async with session_factory() as session:
        store = LedgerStore(session, clock=lambda: NOW - timedelta(days=days_ago))
        entry_id = await store.append(
            LedgerEntryDraft(user_id=user_id, points_amount=points, action_type=action, status=LedgerStatus.EARNED)
        )
        await session.commit()
        return entry_id


async def _markers(session, status=None):
    stmt = select(PointExpiration)
    if status is not None:
        stmt = stmt.where(PointExpiration.status == status)
    return list((await session.execute(stmt)).scalars().all())


@pytest.mark.asyncio
async def test_sweep_expires_old_credits_once(session_factory, make_user, notifications) -> None:
    user = await make_user()
    old_entry = await _credit(session_factory, user.id, 100, days_ago=400)
    await _credit(session_factory, user.id, 40, days_ago=10)

    bus = PointsEventBus()
    published = []
    bus.subscribe(published.append, PointsEventType.POINTS_EXPIRED)

    async with session_factory() as session:
        service = _service(session, notifications, bus=bus)

        first = await service.run_expiry_sweep(user.id)
        assert first["users"] == 1
        assert first["expired_entries"] == 1
        assert first["expired_points"] == 100
        assert first["errors"] == 0

        entry = await session.get(PointsLedgerEntry, old_entry)
        await session.refresh(entry)
        assert entry.status == LedgerStatus.EXPIRED
        assert await service.get_available_balance(user.id) == 40

        summary = await service.get_balance_summary(user.id)
        assert summary.expired_total == 100

        second = await service.run_expiry_sweep(user.id)
        assert second["expired_entries"] == 0
        assert second["warned_entries"] == 0
        assert len(await _markers(session, ExpirationMarkerStatus.EXPIRED)) == 1

    assert notifications.kinds() == ["points_expired"]
    assert len(published) == 1
    assert published[0].payload["points"] == 100
    assert get_points_store().snapshot().expiry["sweeps"] == 2


@pytest.mark.asyncio
async def test_sweep_warns_inside_grace_window_once(session_factory, make_user, notifications) -> None:
    user = await make_user()
    entry_id = await _credit(session_factory, user.id, 25, days_ago=350)
    await _credit(session_factory, user.id, 10, days_ago=100)

    async with session_factory() as session:
        service = _service(session, notifications)

        first = await service.run_expiry_sweep(user.id)
        assert first["warned_entries"] == 1
        assert first["expired_entries"] == 0

        second = await service.run_expiry_sweep(user.id)
        assert second["warned_entries"] == 0

        markers = await _markers(session)
        assert [(marker.ledger_id, marker.status) for marker in markers] == [
            (entry_id, ExpirationMarkerStatus.NOTIFIED)
        ]
        assert await service.get_available_balance(user.id) == 35

    assert notifications.kinds() == ["points_expiring"]
    _, _, payload = notifications.sent[0]
    assert payload["points"] == 25
    assert payload["expires_on"] == (NOW - timedelta(days=350) + timedelta(days=365)).date().isoformat()


@pytest.mark.asyncio
async def test_partly_spent_credit_expires_only_unspent_remainder(session_factory, make_user, notifications) -> None:
    user = await make_user()
    old_entry = await _credit(session_factory, user.id, 100, days_ago=400)
    await _credit(session_factory, user.id, -80, days_ago=5, action=LedgerActionType.REDEMPTION)

    async with session_factory() as session:
        service = _service(session, notifications)

        result = await service.run_expiry_sweep(user.id)
        assert result["expired_entries"] == 1
        assert result["expired_points"] == 20
        assert result["consumed_entries"] == 0

        entry = await session.get(PointsLedgerEntry, old_entry)
        await session.refresh(entry)
        assert entry.status == LedgerStatus.EARNED
        assert await service.get_available_balance(user.id) == 0

        debits = (
            await session.execute(
                select(PointsLedgerEntry).where(PointsLedgerEntry.action_type == LedgerActionType.EXPIRY)
            )
        ).scalars().all()
        assert [debit.points_amount for debit in debits] == [-20]
        assert debits[0].status == LedgerStatus.EARNED

        [marker] = await _markers(session, ExpirationMarkerStatus.EXPIRED)
        assert marker.ledger_id == old_entry
        assert marker.points == 20
        assert marker.consumed_points == 80

        summary = await service.get_balance_summary(user.id)
        assert summary.expired_total == 20
        assert summary.earned_to_date == 100

        later = await service.run_expiry_sweep(user.id, reference_time=NOW + timedelta(days=3650))
        assert later["expired_entries"] == 0
        assert later["expired_points"] == 0
        assert await service.get_available_balance(user.id) == 0

    assert notifications.kinds() == ["points_expired"]
    _, _, payload = notifications.sent[0]
    assert payload["points"] == 20
    assert payload["balance"] == 0


@pytest.mark.asyncio
async def test_fully_spent_credit_is_marked_consumed(session_factory, make_user, notifications) -> None:
    user = await make_user()
    old_entry = await _credit(session_factory, user.id, 100, days_ago=400)
    await _credit(session_factory, user.id, -100, days_ago=5, action=LedgerActionType.REDEMPTION)

    async with session_factory() as session:
        service = _service(session, notifications)

        result = await service.run_expiry_sweep(user.id)
        assert result["expired_entries"] == 0
        assert result["consumed_entries"] == 1

        entry = await session.get(PointsLedgerEntry, old_entry)
        await session.refresh(entry)
        assert entry.status == LedgerStatus.EARNED
        assert await service.get_available_balance(user.id) == 0

        [marker] = await _markers(session, ExpirationMarkerStatus.CONSUMED)
        assert marker.points == 0
        assert marker.consumed_points == 100

        again = await service.run_expiry_sweep(user.id)
        assert again["consumed_entries"] == 0

    assert notifications.sent == []


@pytest.mark.asyncio
async def test_sweep_all_users_and_custom_rules(session_factory, make_user, notifications) -> None:
    alice = await make_user()
    bob = await make_user()
    await _credit(session_factory, alice.id, 30, days_ago=45, action=LedgerActionType.BONUS)
    await _credit(session_factory, bob.id, 70, days_ago=45, action=LedgerActionType.PURCHASE)

    async with session_factory() as session:
        service = _service(session, notifications)
        rule = await service.save_expiry_rule(
            name="Promotional bonus",
            expiry_days=30,
            grace_days=0,
            action_types=["bonus"],
            priority=1,
        )
        assert rule.status == ExpiryRuleStatus.ACTIVE

        summary = await service.run_expiry_sweep()
        assert summary["users"] == 2
        assert summary["expired_entries"] == 1
        assert summary["expired_points"] == 30
        assert await service.get_available_balance(alice.id) == 0
        assert await service.get_available_balance(bob.id) == 70

        deactivated = await service.deactivate_expiry_rule(rule.id)
        assert deactivated.status == ExpiryRuleStatus.INACTIVE
        assert [saved.name for saved in await service.list_expiry_rules()] == ["Promotional bonus"]


@pytest.mark.asyncio
async def test_expiry_rule_validation(session_factory, notifications) -> None:
    async with session_factory() as session:
        service = _service(session, notifications)

        for fields in (
            {"name": " ", "expiry_days": 30},
            {"name": "Too short", "expiry_days": 0},
            {"name": "Negative grace", "expiry_days": 30, "grace_days": -1},
            {"name": "Bad action", "expiry_days": 30, "action_types": ["teleport"]},
        ):
            with pytest.raises(ValidationError) as exc:
                await service.save_expiry_rule(**fields)
            assert exc.value.code == "invalid_rule"

        with pytest.raises(NotFoundError):
            await service.deactivate_expiry_rule(uuid4())

        assert await service.list_expiry_rules() == []


@pytest.mark.asyncio
async def test_forecast_lists_upcoming_expirations(session_factory, make_user, notifications) -> None:
    user = await make_user()
    soon = await _credit(session_factory, user.id, 15, days_ago=355)
    await _credit(session_factory, user.id, 60, days_ago=10)

    async with session_factory() as session:
        service = _service(session, notifications)
        items = await service.expiry_forecast(user.id, days=30)

    assert [item.ledger_id for item in items] == [soon]
    assert items[0].points == 15
    assert items[0].rule_name == "Standard Expiry"


@pytest.mark.asyncio
async def test_admin_can_manually_expire_one_credit(session_factory, make_user, notifications) -> None:
    admin = await make_user(role=UserRoleEnum.ADMIN)
    user = await make_user()
    fresh = await _credit(session_factory, user.id, 50, days_ago=3)
    await _credit(session_factory, user.id, 30, days_ago=2)

    async with session_factory() as session:
        service = _service(session, notifications)

        result = await service.manually_expire_points(fresh, admin.id, user_id=user.id, reason="Fraudulent order")
        assert result.ledger_id == fresh
        assert result.expired_points == 50
        assert result.consumed_points == 0
        assert result.new_balance == 30

        entry = await session.get(PointsLedgerEntry, fresh)
        await session.refresh(entry)
        assert entry.status == LedgerStatus.EXPIRED
        assert entry.notes.endswith("Expired: Fraudulent order")

        [marker] = await _markers(session, ExpirationMarkerStatus.EXPIRED)
        assert marker.rule_id is None
        assert marker.reason == "Fraudulent order"

        with pytest.raises(InvalidTransitionError) as exc:
            await service.manually_expire_points(fresh, admin.id)
        assert exc.value.code == "not_expirable"

    assert notifications.kinds() == ["points_expired"]


@pytest.mark.asyncio
async def test_manual_expiry_checks_permissions_and_ownership(session_factory, make_user, notifications) -> None:
    admin = await make_user(role=UserRoleEnum.ADMIN)
    member = await make_user()
    other = await make_user()
    entry_id = await _credit(session_factory, member.id, 40, days_ago=1)

    async with session_factory() as session:
        service = _service(session, notifications)

        with pytest.raises(PermissionDeniedError):
            await service.manually_expire_points(entry_id, member.id)
        with pytest.raises(NotFoundError):
            await service.manually_expire_points(entry_id, admin.id, user_id=other.id)
        with pytest.raises(NotFoundError):
            await service.manually_expire_points(entry_id + 999, admin.id)

        assert await service.get_available_balance(member.id) == 40
        assert await _markers(session) == []

    assert notifications.sent == []


@pytest.mark.asyncio
async def test_manual_expiry_of_partly_spent_credit_and_expired_summary(session_factory, make_user, notifications) -> None:
    admin = await make_user(role=UserRoleEnum.ADMIN)
    user = await make_user()
    spent = await _credit(session_factory, user.id, 60, days_ago=20)
    await _credit(session_factory, user.id, -45, days_ago=10, action=LedgerActionType.REDEMPTION)
    await _credit(session_factory, user.id, 100, days_ago=400)

    async with session_factory() as session:
        service = _service(session, notifications)

        empty = await service.get_expired_summary(user.id)
        assert empty.total_expirations == 0
        assert empty.total_expired_points == 0
        assert empty.first_expiry_at is None

        swept = await service.run_expiry_sweep(user.id)
        assert swept["expired_points"] == 100

        result = await service.manually_expire_points(spent, admin.id)
        assert result.expired_points == 15
        assert result.consumed_points == 45
        assert result.new_balance == 0

        with pytest.raises(InvalidTransitionError) as exc:
            await service.manually_expire_points(spent, admin.id)
        assert exc.value.code == "already_expired"

        summary = await service.get_expired_summary(user.id)
        assert summary.user_id == user.id
        assert summary.total_expirations == 2
        assert summary.total_expired_points == 115
        assert summary.total_consumed_points == 45
        assert summary.first_expiry_at is not None
        assert summary.last_expiry_at is not None

        balance = await service.get_balance_summary(user.id)
        assert balance.expired_total == 115
        assert balance.available == 0
