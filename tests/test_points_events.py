from uuid import uuid4

import pytest

from loyalty_ledger.core.errors import InsufficientBalanceError
from loyalty_ledger.models.points import LedgerActionType
from loyalty_ledger.observability.points import get_points_store
from loyalty_ledger.services.points import (
    EventBuffer,
    LedgerEntryDraft,
    LedgerStore,
    PointsEventBus,
    PointsEventType,
    PointsService,
    StaticSettingsSource,
    UserLockRegistry,
)


@pytest.mark.asyncio
async def test_bus_swallows_listener_errors() -> None:
    bus = PointsEventBus()
    received = []

    def broken(event):
        raise RuntimeError("listener exploded")

    async def recorder(event):
        received.append(event.type)

    bus.subscribe(broken)
    bus.subscribe(recorder, PointsEventType.REDEMPTION_CREATED)

    buffer = EventBuffer()
    buffer.add(PointsEventType.REDEMPTION_CREATED, uuid4(), points=5)
    buffer.add(PointsEventType.POINTS_EXPIRED, uuid4(), points=3)
    assert len(buffer) == 2

    delivered = [await bus.publish(event) for event in buffer.drain()]

    assert delivered == [1, 0]
    assert received == [PointsEventType.REDEMPTION_CREATED]
    assert len(buffer) == 0

    bus.unsubscribe(broken)
    assert await bus.publish(_event()) == 0


def _event():
    buffer = EventBuffer()
    buffer.add(PointsEventType.ENTRY_APPENDED, uuid4())
    return buffer.drain()[0]


@pytest.mark.asyncio
async def test_events_publish_only_after_commit(session_factory, make_user, notifications) -> None:
    user = await make_user()
    async with session_factory() as session:
        await LedgerStore(session).append(
            LedgerEntryDraft(user_id=user.id, points_amount=50, action_type=LedgerActionType.BONUS)
        )
        await session.commit()

    bus = PointsEventBus()
    seen = []
    bus.subscribe(seen.append)

    async with session_factory() as session:
        service = PointsService(
            session,
            settings_source=StaticSettingsSource(),
            notifications=notifications,
            event_bus=bus,
            lock_registry=UserLockRegistry(),
        )

        with pytest.raises(InsufficientBalanceError):
            await service.redeem(user.id, 80)
        assert seen == []

        result = await service.redeem(user.id, 30)
        assert [event.type for event in seen] == [PointsEventType.REDEMPTION_CREATED]
        assert seen[0].payload["ledger_id"] == result.ledger_id

        await service.cancel_redemption(result.redemption_id)
        assert [event.type for event in seen][-1] == PointsEventType.REDEMPTION_CANCELLED

    counters = get_points_store().snapshot().ledger
    assert counters == {"redemption_created": 1, "redemption_cancelled": 1}
