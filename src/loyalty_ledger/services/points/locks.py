"""Per-user serialization for check-then-append balance operations."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_ledger.models.user import User


class UserLockRegistry:
    """Hands out one ``asyncio.Lock`` per user within this process.

    A lock lives only while someone holds or waits on it, so the registry stays
    bounded by the number of users with work in flight.
    """

    def __init__(self) -> None:
        self._locks: dict[UUID, asyncio.Lock] = {}
        self._holders: dict[UUID, int] = {}

    @asynccontextmanager
    async def hold(self, user_id: UUID) -> AsyncIterator[None]:
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        self._holders[user_id] = self._holders.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._holders[user_id] - 1
            if remaining:
                self._holders[user_id] = remaining
            else:
                del self._holders[user_id]
                del self._locks[user_id]

    def __len__(self) -> int:
        return len(self._locks)


_REGISTRY = UserLockRegistry()


def get_user_lock_registry() -> UserLockRegistry:
    return _REGISTRY


@asynccontextmanager
async def user_balance_guard(
    db_session: AsyncSession,
    user_id: UUID,
    *,
    registry: UserLockRegistry | None = None,
) -> AsyncIterator[User | None]:
    """Serialize balance-sensitive work for ``user_id``.

    Holds the in-process lock and takes ``SELECT ... FOR UPDATE`` on the user row,
    so concurrent writers in other processes block on the database instead.
    """

    async with (registry or _REGISTRY).hold(user_id):
        result = await db_session.execute(select(User).where(User.id == user_id).with_for_update())
        yield result.scalar_one_or_none()


__all__ = ["UserLockRegistry", "get_user_lock_registry", "user_balance_guard"]
