"""Append-mostly points ledger: the single source of truth for balances."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import Select

from loyalty_ledger.core.errors import InvalidTransitionError, NotFoundError, ValidationError
from loyalty_ledger.models.points import LedgerActionType, LedgerStatus, PointsLedgerEntry
from loyalty_ledger.models.user import User


Clock = Callable[[], datetime]

MAX_PAGE_SIZE = 100

INITIAL_STATUSES = frozenset({LedgerStatus.PENDING, LedgerStatus.EARNED})

ALLOWED_TRANSITIONS: dict[LedgerStatus, frozenset[LedgerStatus]] = {
    LedgerStatus.PENDING: frozenset({LedgerStatus.EARNED, LedgerStatus.EXPIRED, LedgerStatus.CANCELLED}),
    LedgerStatus.EARNED: frozenset({LedgerStatus.EXPIRED, LedgerStatus.REDEEMED, LedgerStatus.CANCELLED}),
    LedgerStatus.REDEEMED: frozenset({LedgerStatus.CANCELLED}),
    LedgerStatus.EXPIRED: frozenset({LedgerStatus.CANCELLED}),
    LedgerStatus.REFUNDED: frozenset({LedgerStatus.CANCELLED}),
    LedgerStatus.CANCELLED: frozenset(),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive timestamps; treat them as UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def coerce_user_id(value: UUID | str) -> UUID:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError as exc:
        raise ValidationError("Invalid user", code="invalid_user") from exc


@dataclass(slots=True)
class LedgerEntryDraft:
    """Fields of a ledger entry before it is assigned an id."""

    user_id: UUID
    points_amount: int
    action_type: LedgerActionType | str
    status: LedgerStatus | str = LedgerStatus.EARNED
    order_id: str | None = None
    product_id: str | None = None
    description: str | None = None
    notes: str | None = None
    expires_at: datetime | None = None


@dataclass(slots=True)
class LedgerQuery:
    """Filters for reading a user's ledger history."""

    statuses: Sequence[LedgerStatus] | None = None
    action_types: Sequence[LedgerActionType] | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None
    limit: int = 20
    offset: int = 0


class LedgerStore:
    """Owns inserts and status transitions on ``points_ledger`` rows."""

    def __init__(self, db_session: AsyncSession, *, clock: Clock = utcnow) -> None:
        self._db = db_session
        self._clock = clock

    async def append(self, draft: LedgerEntryDraft) -> int:
        """Insert a new entry and return its id."""

        entry = await self.append_entry(draft)
        return int(entry.id)

    async def append_entry(self, draft: LedgerEntryDraft) -> PointsLedgerEntry:
        action_type = self._coerce_action(draft.action_type)
        status = self._coerce_status(draft.status)
        if status not in INITIAL_STATUSES:
            raise ValidationError(
                f"Ledger entries cannot be created as {status.value}",
                code="invalid_status",
            )

        if isinstance(draft.points_amount, bool) or not isinstance(draft.points_amount, int):
            raise ValidationError("Points amount must be an integer", code="invalid_points_amount")
        if draft.points_amount == 0:
            raise ValidationError("Ledger entries require a non-zero amount", code="invalid_points_amount")

        user_id = coerce_user_id(draft.user_id)
        if await self._db.get(User, user_id) is None:
            raise ValidationError("Invalid user", code="invalid_user", details={"user_id": str(user_id)})

        now = self._clock()
        entry = PointsLedgerEntry(
            user_id=user_id,
            order_id=draft.order_id,
            product_id=draft.product_id,
            action_type=action_type,
            points_amount=draft.points_amount,
            status=status,
            description=draft.description,
            notes=draft.notes,
            expires_at=draft.expires_at,
            created_at=now,
            updated_at=now,
        )
        self._db.add(entry)
        await self._db.flush()
        logger.info(
            "Appended points ledger entry",
            entry_id=entry.id,
            user_id=str(user_id),
            action_type=action_type.value,
            points=draft.points_amount,
            status=status.value,
            order_id=draft.order_id,
        )
        return entry

    async def get(self, entry_id: int, *, for_update: bool = False) -> PointsLedgerEntry:
        entry = await self._db.get(PointsLedgerEntry, entry_id, with_for_update=for_update)
        if entry is None:
            raise NotFoundError(f"Ledger entry {entry_id} not found", details={"entry_id": entry_id})
        return entry

    async def transition_status(
        self,
        entry_id: int,
        new_status: LedgerStatus | str,
        note: str | None = None,
    ) -> bool:
        """Move an entry along the status state machine.

        Returns ``False`` when the entry already carries ``new_status``.
        Illegal moves raise :class:`InvalidTransitionError` and leave the row untouched.
        """

        target = self._coerce_status(new_status)
        entry = await self.get(entry_id, for_update=True)
        current = LedgerStatus(entry.status)
        if current == target:
            return False

        if target not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransitionError(
                f"Cannot move ledger entry {entry_id} from {current.value} to {target.value}",
                details={"entry_id": entry_id, "from": current.value, "to": target.value},
            )

        entry.status = target
        if note:
            entry.notes = f"{entry.notes}\n{note}" if entry.notes else note
        entry.updated_at = self._clock()
        await self._db.flush()
        logger.info(
            "Transitioned points ledger entry",
            entry_id=entry_id,
            from_status=current.value,
            to_status=target.value,
        )
        return True

    async def attach_expiry(self, entry_id: int, expires_at: datetime) -> bool:
        entry = await self.get(entry_id, for_update=True)
        if entry.expires_at is not None:
            return False
        entry.expires_at = expires_at
        entry.updated_at = self._clock()
        await self._db.flush()
        return True

    async def query_by_user(
        self,
        user_id: UUID | str,
        filters: LedgerQuery | None = None,
    ) -> list[PointsLedgerEntry]:
        """Return a user's entries, newest first."""

        filters = filters or LedgerQuery()
        limit = max(1, min(filters.limit, MAX_PAGE_SIZE))
        offset = max(filters.offset, 0)
        stmt = (
            self._filtered(coerce_user_id(user_id), filters)
            .order_by(PointsLedgerEntry.created_at.desc(), PointsLedgerEntry.id.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def count_by_user(self, user_id: UUID | str, filters: LedgerQuery | None = None) -> int:
        filtered = self._filtered(coerce_user_id(user_id), filters or LedgerQuery()).subquery()
        result = await self._db.execute(select(func.count()).select_from(filtered))
        return int(result.scalar_one())

    def _filtered(self, user_id: UUID, filters: LedgerQuery) -> Select:
        stmt = select(PointsLedgerEntry).where(PointsLedgerEntry.user_id == user_id)
        if filters.statuses:
            stmt = stmt.where(PointsLedgerEntry.status.in_([self._coerce_status(s) for s in filters.statuses]))
        if filters.action_types:
            stmt = stmt.where(
                PointsLedgerEntry.action_type.in_([self._coerce_action(a) for a in filters.action_types])
            )
        if filters.created_from is not None:
            stmt = stmt.where(PointsLedgerEntry.created_at >= filters.created_from)
        if filters.created_to is not None:
            stmt = stmt.where(PointsLedgerEntry.created_at <= filters.created_to)
        return stmt

    @staticmethod
    def _coerce_action(value: LedgerActionType | str) -> LedgerActionType:
        try:
            return LedgerActionType(value)
        except ValueError as exc:
            raise ValidationError(f"Unknown action type: {value}", code="invalid_action_type") from exc

    @staticmethod
    def _coerce_status(value: LedgerStatus | str) -> LedgerStatus:
        try:
            return LedgerStatus(value)
        except ValueError as exc:
            raise ValidationError(f"Unknown ledger status: {value}", code="invalid_status") from exc


__all__ = [
    "ALLOWED_TRANSITIONS",
    "LedgerEntryDraft",
    "LedgerQuery",
    "LedgerStore",
    "as_utc",
    "coerce_user_id",
    "utcnow",
]
