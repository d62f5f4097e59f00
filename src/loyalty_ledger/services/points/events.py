"""Post-commit publish step for ledger events."""

from __future__ import annotations

import inspect
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Union
from uuid import UUID

from loguru import logger


class PointsEventType(str, Enum):
    ENTRY_APPENDED = "entry_appended"
    STATUS_TRANSITIONED = "status_transitioned"
    REDEMPTION_CREATED = "redemption_created"
    REDEMPTION_CANCELLED = "redemption_cancelled"
    POINTS_EXPIRED = "points_expired"
    ADMIN_ADJUSTMENT = "admin_adjustment"


@dataclass(frozen=True, slots=True)
class PointsEvent:
    type: PointsEventType
    user_id: UUID
    payload: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


Listener = Callable[[PointsEvent], Union[None, Awaitable[None]]]


class PointsEventBus:
    """Observer registry; listeners run after the ledger write has committed."""

    def __init__(self) -> None:
        self._listeners: dict[PointsEventType | None, list[Listener]] = defaultdict(list)

    def subscribe(self, listener: Listener, event_type: PointsEventType | None = None) -> None:
        """Register ``listener`` for one event type, or for all when ``event_type`` is None."""

        self._listeners[event_type].append(listener)

    def unsubscribe(self, listener: Listener, event_type: PointsEventType | None = None) -> None:
        listeners = self._listeners.get(event_type, [])
        if listener in listeners:
            listeners.remove(listener)

    async def publish(self, event: PointsEvent) -> int:
        """Deliver ``event`` to listeners; returns how many completed without error."""

        delivered = 0
        for listener in [*self._listeners.get(event.type, []), *self._listeners.get(None, [])]:
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.exception(
                    "Points event listener failed",
                    event_type=event.type.value,
                    user_id=str(event.user_id),
                    error=str(exc),
                )
                continue
            delivered += 1
        return delivered


class NotificationBuffer:
    """Notification sink that holds messages until the surrounding commit succeeds."""

    def __init__(self) -> None:
        self._pending: list[tuple[UUID, Any, dict[str, Any]]] = []

    async def notify(self, user_id: UUID, kind: Any, payload: Mapping[str, Any]) -> None:
        self._pending.append((user_id, kind, dict(payload)))

    def drain(self) -> list[tuple[UUID, Any, dict[str, Any]]]:
        pending, self._pending = self._pending, []
        return pending

    def discard(self) -> None:
        self._pending.clear()

    def __len__(self) -> int:
        return len(self._pending)


class EventBuffer:
    """Collects events and notifications during a unit of work so they go out only after commit."""

    def __init__(self) -> None:
        self._pending: list[PointsEvent] = []
        self.notifications = NotificationBuffer()

    def add(self, event_type: PointsEventType, user_id: UUID, **payload: Any) -> None:
        self._pending.append(PointsEvent(type=event_type, user_id=user_id, payload=payload))

    def drain(self) -> list[PointsEvent]:
        events, self._pending = self._pending, []
        return events

    def discard(self) -> None:
        self._pending.clear()
        self.notifications.discard()

    def __len__(self) -> int:
        return len(self._pending)


_BUS = PointsEventBus()


def get_event_bus() -> PointsEventBus:
    return _BUS


__all__ = [
    "EventBuffer",
    "NotificationBuffer",
    "PointsEvent",
    "PointsEventBus",
    "PointsEventType",
    "get_event_bus",
]
