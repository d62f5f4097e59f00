"""Aggregate balance queries derived purely from ledger rows."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.elements import ColumnElement

from loyalty_ledger.models.points import LedgerActionType, LedgerStatus, PointsLedgerEntry

from .ledger import coerce_user_id


REDEMPTION_ACTIONS = (LedgerActionType.REDEMPTION, LedgerActionType.REDEMPTION_REVERSAL)


@dataclass(slots=True)
class BalanceSummary:
    user_id: UUID
    available: int
    pending: int
    earned_to_date: int
    expired_total: int
    redeemed_total: int

    def as_dict(self) -> dict[str, object]:
        payload = asdict(self)
        payload["user_id"] = str(self.user_id)
        return payload


class BalanceCalculator:
    """Read-side aggregation; every figure is recomputed from the ledger on each call."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def available_balance(self, user_id: UUID | str) -> int:
        return await self._sum(user_id, PointsLedgerEntry.status == LedgerStatus.EARNED)

    async def pending_balance(self, user_id: UUID | str) -> int:
        return await self._sum(user_id, PointsLedgerEntry.status == LedgerStatus.PENDING)

    pending_total = pending_balance

    async def earned_to_date(self, user_id: UUID | str) -> int:
        return await self._sum(
            user_id,
            PointsLedgerEntry.points_amount > 0,
            PointsLedgerEntry.status != LedgerStatus.CANCELLED,
        )

    async def expired_total(self, user_id: UUID | str) -> int:
        """Fully expired credits plus the remainders expired from partly spent credits."""

        aged_out = await self._sum(
            user_id,
            PointsLedgerEntry.status == LedgerStatus.EXPIRED,
            PointsLedgerEntry.points_amount > 0,
        )
        remainders = await self._sum(
            user_id,
            PointsLedgerEntry.action_type == LedgerActionType.EXPIRY,
            PointsLedgerEntry.status != LedgerStatus.CANCELLED,
        )
        return aged_out - remainders

    async def redeemed_total(self, user_id: UUID | str) -> int:
        """Net points spent on redemptions after reversals, as a positive number."""

        net = await self._sum(
            user_id,
            PointsLedgerEntry.action_type.in_(REDEMPTION_ACTIONS),
            PointsLedgerEntry.status != LedgerStatus.CANCELLED,
        )
        return max(-net, 0)

    async def summary(self, user_id: UUID | str) -> BalanceSummary:
        uid = coerce_user_id(user_id)
        return BalanceSummary(
            user_id=uid,
            available=await self.available_balance(uid),
            pending=await self.pending_balance(uid),
            earned_to_date=await self.earned_to_date(uid),
            expired_total=await self.expired_total(uid),
            redeemed_total=await self.redeemed_total(uid),
        )

    async def _sum(self, user_id: UUID | str, *conditions: ColumnElement[bool]) -> int:
        stmt = select(func.coalesce(func.sum(PointsLedgerEntry.points_amount), 0)).where(
            PointsLedgerEntry.user_id == coerce_user_id(user_id),
            *conditions,
        )
        result = await self._db.execute(stmt)
        return int(result.scalar_one())


__all__ = ["BalanceCalculator", "BalanceSummary"]
