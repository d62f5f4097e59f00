import random
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from loyalty_ledger.core.errors import InvalidTransitionError, NotFoundError, ValidationError
from loyalty_ledger.models.points import LedgerActionType, LedgerStatus
from loyalty_ledger.services.points import BalanceCalculator, LedgerEntryDraft, LedgerQuery, LedgerStore
from loyalty_ledger.services.points.ledger import ALLOWED_TRANSITIONS


def _draft(user_id, points, action=LedgerActionType.BONUS, status=LedgerStatus.EARNED, **extra):
    return LedgerEntryDraft(user_id=user_id, points_amount=points, action_type=action, status=status, **extra)


@pytest.mark.asyncio
async def test_append_rejects_invalid_drafts(session_factory, make_user) -> None:
    user = await make_user()

    async with session_factory() as session:
        store = LedgerStore(session)

        with pytest.raises(ValidationError) as zero:
            await store.append(_draft(user.id, 0))
        assert zero.value.code == "invalid_points_amount"

        with pytest.raises(ValidationError) as unknown_user:
            await store.append(_draft(uuid4(), 10))
        assert unknown_user.value.code == "invalid_user"

        with pytest.raises(ValidationError) as bad_status:
            await store.append(_draft(user.id, 10, status=LedgerStatus.REDEEMED))
        assert bad_status.value.code == "invalid_status"

        with pytest.raises(ValidationError) as bad_action:
            await store.append(_draft(user.id, 10, action="loyalty_magic"))
        assert bad_action.value.code == "invalid_action_type"

        assert await store.count_by_user(user.id) == 0


@pytest.mark.asyncio
async def test_transition_state_machine(session_factory, make_user) -> None:
    user = await make_user()

    async with session_factory() as session:
        store = LedgerStore(session)
        entry_id = await store.append(_draft(user.id, 50, status=LedgerStatus.PENDING))

        assert await store.transition_status(entry_id, LedgerStatus.EARNED, "order completed") is True
        assert await store.transition_status(entry_id, LedgerStatus.EARNED) is False

        with pytest.raises(InvalidTransitionError):
            await store.transition_status(entry_id, LedgerStatus.PENDING)

        assert await store.transition_status(entry_id, LedgerStatus.EXPIRED) is True
        assert await store.transition_status(entry_id, LedgerStatus.CANCELLED) is True

        with pytest.raises(InvalidTransitionError):
            await store.transition_status(entry_id, LedgerStatus.EARNED)

        entry = await store.get(entry_id)
        assert entry.status == LedgerStatus.CANCELLED
        assert entry.notes == "order completed"

        with pytest.raises(NotFoundError):
            await store.transition_status(entry_id + 999, LedgerStatus.EARNED)


@pytest.mark.asyncio
async def test_query_by_user_orders_newest_first_and_filters(session_factory, make_user) -> None:
    user = await make_user()
    other = await make_user()
    base = datetime(2026, 1, 1, tzinfo=timezone.utc)
    ticks = iter(base + timedelta(hours=offset) for offset in range(10))

    async with session_factory() as session:
        store = LedgerStore(session, clock=lambda: next(ticks))
        first = await store.append(_draft(user.id, 10))
        second = await store.append(_draft(user.id, 20, status=LedgerStatus.PENDING))
        third = await store.append(_draft(user.id, -5, action=LedgerActionType.REDEMPTION))
        await store.append(_draft(other.id, 99))
        await session.commit()

        entries = await store.query_by_user(user.id)
        assert [entry.id for entry in entries] == [third, second, first]

        pending = await store.query_by_user(user.id, LedgerQuery(statuses=[LedgerStatus.PENDING]))
        assert [entry.id for entry in pending] == [second]

        redemptions = await store.query_by_user(user.id, LedgerQuery(action_types=[LedgerActionType.REDEMPTION]))
        assert [entry.id for entry in redemptions] == [third]

        page = await store.query_by_user(user.id, LedgerQuery(limit=1, offset=1))
        assert [entry.id for entry in page] == [second]

        clamped = await store.query_by_user(user.id, LedgerQuery(limit=5000))
        assert len(clamped) == 3
        assert await store.count_by_user(user.id) == 3


@pytest.mark.asyncio
async def test_balances_are_derived_from_ledger_rows(session_factory, make_user) -> None:
    user = await make_user()

    async with session_factory() as session:
        store = LedgerStore(session)
        await store.append(_draft(user.id, 100, action=LedgerActionType.ORDER_COMPLETE))
        await store.append(_draft(user.id, 40, action=LedgerActionType.ORDER_PLACEMENT, status=LedgerStatus.PENDING))
        await store.append(_draft(user.id, -30, action=LedgerActionType.REDEMPTION))
        await store.append(_draft(user.id, 10, action=LedgerActionType.REDEMPTION_REVERSAL))
        expired = await store.append(_draft(user.id, 15, action=LedgerActionType.BONUS))
        await store.transition_status(expired, LedgerStatus.EXPIRED)
        await session.commit()

        calculator = BalanceCalculator(session)
        summary = await calculator.summary(user.id)

        assert summary.available == 80
        assert summary.pending == 40
        assert summary.earned_to_date == 165
        assert summary.expired_total == 15
        assert summary.redeemed_total == 20

        entries = await store.query_by_user(user.id, LedgerQuery(limit=100))
        earned_sum = sum(entry.points_amount for entry in entries if entry.status == LedgerStatus.EARNED)
        assert earned_sum == summary.available
        assert summary.as_dict()["user_id"] == str(user.id)


@pytest.mark.asyncio
async def test_balances_for_unknown_user_are_zero(session_factory) -> None:
    async with session_factory() as session:
        calculator = BalanceCalculator(session)
        assert await calculator.available_balance(uuid4()) == 0
        assert await calculator.pending_balance(str(uuid4())) == 0

        with pytest.raises(ValidationError):
            await calculator.available_balance("not-a-uuid")


@pytest.mark.asyncio
@pytest.mark.parametrize("seed", range(8))
async def test_balances_match_ledger_under_random_sequences(session_factory, make_user, seed) -> None:
    rng = random.Random(seed)
    user = await make_user()
    statuses: dict[int, LedgerStatus] = {}
    amounts: dict[int, int] = {}

    async with session_factory() as session:
        store = LedgerStore(session)
        calculator = BalanceCalculator(session)

        for step in range(60):
            movable = [entry_id for entry_id, status in statuses.items() if ALLOWED_TRANSITIONS[status]]
            if movable and rng.random() < 0.4:
                entry_id = rng.choice(movable)
                target = rng.choice(sorted(ALLOWED_TRANSITIONS[statuses[entry_id]], key=lambda status: status.value))
                assert await store.transition_status(entry_id, target) is True
                statuses[entry_id] = target
            else:
                points = rng.choice([-1, 1]) * rng.randint(1, 150)
                action = LedgerActionType.BONUS if points > 0 else LedgerActionType.REDEMPTION
                status = rng.choice([LedgerStatus.EARNED, LedgerStatus.PENDING])
                entry_id = await store.append(_draft(user.id, points, action=action, status=status))
                statuses[entry_id] = status
                amounts[entry_id] = points

            if step % 10 == 9:
                await session.commit()

            expected_available = sum(amounts[key] for key, status in statuses.items() if status == LedgerStatus.EARNED)
            expected_pending = sum(amounts[key] for key, status in statuses.items() if status == LedgerStatus.PENDING)
            available = await calculator.available_balance(user.id)
            assert available == expected_available
            assert await calculator.available_balance(user.id) == available
            assert await calculator.pending_balance(user.id) == expected_pending

        entries = await store.query_by_user(user.id, LedgerQuery(limit=100))
        assert len(entries) == len(amounts)
        first = await calculator.summary(user.id)
        second = await calculator.summary(user.id)
        assert first == second
        assert first.available == sum(entry.points_amount for entry in entries if entry.status == LedgerStatus.EARNED)
        assert first.earned_to_date == sum(
            entry.points_amount for entry in entries if entry.points_amount > 0 and entry.status != LedgerStatus.CANCELLED
        )
