"""Manual point adjustments with a mandatory audit trail."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_ledger.core.errors import (
    InsufficientBalanceError,
    LedgerSystemError,
    PermissionDeniedError,
    PointsError,
    ValidationError,
)
from loyalty_ledger.models.points import AdminActionType, LedgerActionType, LedgerStatus, PointsAuditLog
from loyalty_ledger.models.user import User
from loyalty_ledger.services.notifications.templates import NotificationKind

from .balances import BalanceCalculator
from .events import EventBuffer, PointsEventType
from .ledger import MAX_PAGE_SIZE, Clock, LedgerEntryDraft, LedgerStore, coerce_user_id, utcnow
from .settings import SettingsSource, StaticSettingsSource
from .sources import NotificationSink, NullNotificationSink


DEFAULT_IP_ADDRESS = "0.0.0.0"
DEFAULT_AUDIT_LIMIT = 50


async def require_admin(db_session: AsyncSession, admin_id: UUID | str) -> User:
    """Load the acting user, raising ``PermissionDeniedError`` unless they hold the admin role."""

    try:
        actor_id = coerce_user_id(admin_id)
    except ValidationError as exc:
        raise PermissionDeniedError("Insufficient permissions") from exc
    actor = await db_session.get(User, actor_id)
    if actor is None or not actor.is_admin:
        raise PermissionDeniedError("Insufficient permissions", details={"admin_id": str(actor_id)})
    return actor


@dataclass(slots=True)
class AdjustmentResult:
    audit_id: UUID
    user_id: UUID
    action: AdminActionType
    points: int
    ledger_id: int | None
    new_balance: int


@dataclass(slots=True)
class AuditLogFilters:
    admin_id: UUID | None = None
    user_id: UUID | None = None
    action_type: AdminActionType | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None
    limit: int = DEFAULT_AUDIT_LIMIT
    offset: int = 0


@dataclass(slots=True)
class BulkAssignRow:
    email: str
    points: int
    reason: str


@dataclass(slots=True)
class BulkAssignOutcome:
    processed: int = 0
    succeeded: int = 0
    results: list[dict[str, Any]] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)


class AdminAdjustmentHandler:
    """Assign, deduct or reset points on behalf of an administrator.

    Each adjustment writes its ledger entry and audit row in the same savepoint,
    so an adjustment without an audit record is never persisted. Deduct and reset
    check the balance, so callers hold ``user_balance_guard`` for the target user.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        settings_source: SettingsSource | None = None,
        notifications: NotificationSink | None = None,
        events: EventBuffer | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._db = db_session
        self._settings = settings_source or StaticSettingsSource()
        self._notifications = notifications or NullNotificationSink()
        self._events = events or EventBuffer()
        self._clock = clock
        self._ledger = LedgerStore(db_session, clock=clock)
        self._balances = BalanceCalculator(db_session)

    async def assign(
        self,
        user_id: UUID | str,
        points: int,
        reason: str,
        admin_id: UUID | str,
        ip_address: str | None = None,
    ) -> AdjustmentResult:
        user = await self._validate(admin_id, user_id, points)
        return await self._apply(
            user,
            admin_id=coerce_user_id(admin_id),
            action=AdminActionType.ASSIGN,
            ledger_action=LedgerActionType.ADMIN_ASSIGNMENT,
            amount=points,
            reason=reason,
            ip_address=ip_address,
        )

    async def deduct(
        self,
        user_id: UUID | str,
        points: int,
        reason: str,
        admin_id: UUID | str,
        ip_address: str | None = None,
    ) -> AdjustmentResult:
        user = await self._validate(admin_id, user_id, points)
        available = await self._balances.available_balance(user.id)
        if points > available:
            raise InsufficientBalanceError(available=available, requested=points)
        return await self._apply(
            user,
            admin_id=coerce_user_id(admin_id),
            action=AdminActionType.DEDUCT,
            ledger_action=LedgerActionType.ADMIN_DEDUCTION,
            amount=-points,
            reason=reason,
            ip_address=ip_address,
        )

    async def reset(
        self,
        user_id: UUID | str,
        reason: str,
        admin_id: UUID | str,
        ip_address: str | None = None,
    ) -> AdjustmentResult:
        """Zero the available balance; pending points are left alone."""

        user = await self._validate(admin_id, user_id, None)
        available = await self._balances.available_balance(user.id)
        return await self._apply(
            user,
            admin_id=coerce_user_id(admin_id),
            action=AdminActionType.RESET,
            ledger_action=LedgerActionType.ADMIN_RESET,
            amount=-available if available > 0 else 0,
            reason=reason,
            ip_address=ip_address,
        )

    async def bulk_assign(
        self,
        rows: Iterable[BulkAssignRow],
        admin_id: UUID | str,
        ip_address: str | None = None,
    ) -> BulkAssignOutcome:
        outcome = BulkAssignOutcome()
        for index, row in enumerate(rows, start=1):
            outcome.processed += 1
            email = (row.email or "").strip().lower()
            user = (
                await self._db.execute(select(User).where(func.lower(User.email) == email))
            ).scalar_one_or_none() if email else None
            if user is None:
                outcome.errors.append({"row": index, "email": row.email, "error": "User not found"})
                continue
            try:
                result = await self.assign(user.id, row.points, row.reason, admin_id, ip_address)
            except PermissionDeniedError:
                raise
            except PointsError as exc:
                outcome.errors.append({"row": index, "email": row.email, "error": exc.message})
                continue
            outcome.succeeded += 1
            outcome.results.append(
                {"row": index, "email": row.email, "points": row.points, "newBalance": result.new_balance}
            )

        logger.info(
            "Processed bulk points assignment",
            admin_id=str(admin_id),
            processed=outcome.processed,
            succeeded=outcome.succeeded,
            failed=len(outcome.errors),
        )
        return outcome

    async def get_audit_log(self, filters: AuditLogFilters | None = None) -> list[PointsAuditLog]:
        filters = filters or AuditLogFilters()
        stmt = select(PointsAuditLog)
        if filters.admin_id is not None:
            stmt = stmt.where(PointsAuditLog.admin_id == filters.admin_id)
        if filters.user_id is not None:
            stmt = stmt.where(PointsAuditLog.user_id == filters.user_id)
        if filters.action_type is not None:
            stmt = stmt.where(PointsAuditLog.action_type == AdminActionType(filters.action_type))
        if filters.created_from is not None:
            stmt = stmt.where(PointsAuditLog.created_at >= filters.created_from)
        if filters.created_to is not None:
            stmt = stmt.where(PointsAuditLog.created_at <= filters.created_to)
        stmt = (
            stmt.order_by(PointsAuditLog.created_at.desc())
            .limit(max(1, min(filters.limit, MAX_PAGE_SIZE)))
            .offset(max(filters.offset, 0))
        )
        return list((await self._db.execute(stmt)).scalars().all())

    async def action_summary(self, days: int = 30) -> dict[str, dict[str, int]]:
        since = self._clock() - timedelta(days=max(days, 0))
        stmt = (
            select(
                PointsAuditLog.action_type,
                func.count(PointsAuditLog.id),
                func.coalesce(func.sum(PointsAuditLog.points_involved), 0),
            )
            .where(PointsAuditLog.created_at >= since)
            .group_by(PointsAuditLog.action_type)
        )
        summary = {action.value: {"count": 0, "points": 0} for action in AdminActionType}
        for action, count, points in (await self._db.execute(stmt)).all():
            summary[AdminActionType(action).value] = {"count": int(count), "points": int(points)}
        return summary

    async def _validate(self, admin_id: UUID | str, user_id: UUID | str, points: int | None) -> User:
        await require_admin(self._db, admin_id)
        if not self._settings.load().points_enabled:
            raise ValidationError("Points system is currently disabled", code="system_disabled")

        user = await self._db.get(User, coerce_user_id(user_id))
        if user is None:
            raise ValidationError("Invalid user", code="invalid_user")
        if points is not None and (isinstance(points, bool) or not isinstance(points, int) or points <= 0):
            raise ValidationError("Invalid points amount", code="invalid_points_amount")
        return user

    async def _apply(
        self,
        user: User,
        *,
        admin_id: UUID,
        action: AdminActionType,
        ledger_action: LedgerActionType,
        amount: int,
        reason: str,
        ip_address: str | None,
    ) -> AdjustmentResult:
        now = self._clock()
        entry_id: int | None = None
        try:
            async with self._db.begin_nested():
                if amount:
                    entry_id = await self._ledger.append(
                        LedgerEntryDraft(
                            user_id=user.id,
                            points_amount=amount,
                            action_type=ledger_action,
                            status=LedgerStatus.EARNED,
                            description=f"Admin {action.value.replace('_', ' ')}",
                            notes=reason,
                        )
                    )
                audit = PointsAuditLog(
                    admin_id=admin_id,
                    user_id=user.id,
                    action_type=action,
                    points_involved=abs(amount),
                    ledger_id=entry_id,
                    notes=reason,
                    ip_address=ip_address or DEFAULT_IP_ADDRESS,
                    created_at=now,
                )
                self._db.add(audit)
                await self._db.flush()
        except SQLAlchemyError as exc:
            logger.exception(
                "Failed to record admin points adjustment",
                admin_id=str(admin_id),
                user_id=str(user.id),
                action=action.value,
                error=str(exc),
            )
            raise LedgerSystemError() from exc

        balance = await self._balances.available_balance(user.id)
        self._events.add(
            PointsEventType.ADMIN_ADJUSTMENT,
            user.id,
            action=action.value,
            points=amount,
            ledger_id=entry_id,
            admin_id=str(admin_id),
        )
        if amount:
            await self._notifications.notify(
                user.id,
                NotificationKind.POINTS_ADJUSTED,
                {"points": amount, "reason": reason, "balance": balance},
            )
        logger.info(
            "Recorded admin points adjustment",
            admin_id=str(admin_id),
            user_id=str(user.id),
            action=action.value,
            points=amount,
            ledger_id=entry_id,
        )
        return AdjustmentResult(
            audit_id=audit.id,
            user_id=user.id,
            action=action,
            points=amount,
            ledger_id=entry_id,
            new_balance=balance,
        )


__all__ = [
    "AdjustmentResult",
    "AdminAdjustmentHandler",
    "AuditLogFilters",
    "BulkAssignOutcome",
    "BulkAssignRow",
    "require_admin",
]
