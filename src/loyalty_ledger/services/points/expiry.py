"""Rule-driven expiry sweep over earned credits."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import and_, exists, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_ledger.core.errors import InvalidTransitionError, NotFoundError, ValidationError
from loyalty_ledger.models.points import (
    ExpirationMarkerStatus,
    ExpiryRule,
    ExpiryRuleStatus,
    LedgerActionType,
    LedgerStatus,
    PointExpiration,
    PointsLedgerEntry,
)
from loyalty_ledger.services.notifications.templates import NotificationKind

from .admin import require_admin
from .balances import BalanceCalculator
from .events import EventBuffer, PointsEventType
from .ledger import Clock, LedgerEntryDraft, LedgerStore, as_utc, coerce_user_id, utcnow
from .settings import SettingsSource, StaticSettingsSource
from .sources import NotificationSink, NullNotificationSink


DEFAULT_RULE_NAME = "Standard Expiry"
MANUAL_EXPIRY_REASON = "Manual expiration by admin"
DEFAULT_RULE_ACTIONS = (
    LedgerActionType.ORDER_PLACEMENT,
    LedgerActionType.ORDER_COMPLETE,
    LedgerActionType.PURCHASE,
    LedgerActionType.BONUS,
    LedgerActionType.ADMIN_ASSIGNMENT,
)
TERMINAL_MARKERS = (ExpirationMarkerStatus.EXPIRED, ExpirationMarkerStatus.CONSUMED)


@dataclass(frozen=True, slots=True)
class ExpiryRuleConfig:
    name: str
    expiry_days: int
    grace_days: int
    action_types: tuple[LedgerActionType, ...] = ()
    priority: int = 0
    id: UUID | None = None

    @classmethod
    def from_model(cls, rule: ExpiryRule) -> "ExpiryRuleConfig":
        return cls(
            id=rule.id,
            name=rule.name,
            expiry_days=int(rule.expiry_days),
            grace_days=int(rule.grace_days),
            action_types=tuple(LedgerActionType(value) for value in (rule.action_types or [])),
            priority=int(rule.priority or 0),
        )

    def applies_to(self, action_type: LedgerActionType) -> bool:
        return not self.action_types or action_type in self.action_types


@dataclass(slots=True)
class ExpirySweepResult:
    user_id: UUID
    expired_entries: list[int] = field(default_factory=list)
    expired_points: int = 0
    consumed_entries: list[int] = field(default_factory=list)
    warned_entries: list[int] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def expired_count(self) -> int:
        return len(self.expired_entries)


@dataclass(slots=True)
class ManualExpiryResult:
    ledger_id: int
    user_id: UUID
    expired_points: int
    consumed_points: int
    new_balance: int


@dataclass(slots=True)
class ExpiredSummary:
    user_id: UUID
    total_expirations: int
    total_expired_points: int
    total_consumed_points: int
    first_expiry_at: datetime | None
    last_expiry_at: datetime | None


@dataclass(slots=True)
class ExpiryForecastItem:
    ledger_id: int
    points: int
    expires_at: datetime
    rule_name: str


class ExpiryEngine:
    """Ages out earned credits and sends grace-window warnings."""

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

    def default_rule(self) -> ExpiryRuleConfig:
        settings = self._settings.load()
        return ExpiryRuleConfig(
            name=DEFAULT_RULE_NAME,
            expiry_days=settings.expiry_days,
            grace_days=settings.expiry_grace_days,
            action_types=DEFAULT_RULE_ACTIONS,
        )

    async def active_rules(self) -> list[ExpiryRuleConfig]:
        stmt = (
            select(ExpiryRule)
            .where(ExpiryRule.status == ExpiryRuleStatus.ACTIVE)
            .order_by(ExpiryRule.priority.asc(), ExpiryRule.name.asc())
        )
        rules = [ExpiryRuleConfig.from_model(rule) for rule in (await self._db.execute(stmt)).scalars().all()]
        return rules or [self.default_rule()]

    async def process_user_expirations(
        self,
        user_id: UUID | str,
        *,
        reference_time: datetime | None = None,
    ) -> ExpirySweepResult:
        """Expire eligible credits for one user; safe to re-run."""

        uid = coerce_user_id(user_id)
        now = reference_time or self._clock()
        result = ExpirySweepResult(user_id=uid)
        handled: set[int] = set()

        for rule in await self.active_rules():
            try:
                candidates = await self._eligible_entries(uid, rule, now)
            except Exception as exc:
                logger.exception("Failed to load expiry candidates", user_id=str(uid), rule=rule.name, error=str(exc))
                result.errors.append(f"{rule.name}: {exc}")
                continue

            for entry in candidates:
                if entry.id in handled:
                    continue
                handled.add(entry.id)
                try:
                    await self._expire_entry(entry, rule.id, rule.name, now, result)
                except Exception as exc:
                    logger.exception(
                        "Failed to expire points entry",
                        user_id=str(uid),
                        entry_id=entry.id,
                        rule=rule.name,
                        error=str(exc),
                    )
                    result.errors.append(f"entry {entry.id}: {exc}")

            try:
                await self._warn_upcoming(uid, rule, now, result, skip=handled)
            except Exception as exc:
                logger.exception("Failed to send expiry warnings", user_id=str(uid), rule=rule.name, error=str(exc))
                result.errors.append(f"{rule.name} warnings: {exc}")

        if result.expired_entries or result.consumed_entries or result.warned_entries:
            logger.info(
                "Processed points expirations",
                user_id=str(uid),
                expired=len(result.expired_entries),
                expired_points=result.expired_points,
                consumed=len(result.consumed_entries),
                warned=len(result.warned_entries),
            )
        return result

    async def users_with_expirable_credits(self) -> list[UUID]:
        stmt = (
            select(PointsLedgerEntry.user_id)
            .where(PointsLedgerEntry.status == LedgerStatus.EARNED, PointsLedgerEntry.points_amount > 0)
            .distinct()
        )
        return list((await self._db.execute(stmt)).scalars().all())

    async def forecast(
        self,
        user_id: UUID | str,
        days: int = 30,
        *,
        reference_time: datetime | None = None,
    ) -> list[ExpiryForecastItem]:
        """Credits that will expire within ``days``, soonest first."""

        uid = coerce_user_id(user_id)
        now = as_utc(reference_time or self._clock())
        horizon = now + timedelta(days=max(days, 0))
        rules = await self.active_rules()

        stmt = (
            select(PointsLedgerEntry)
            .where(
                PointsLedgerEntry.user_id == uid,
                PointsLedgerEntry.status == LedgerStatus.EARNED,
                PointsLedgerEntry.points_amount > 0,
                ~self._has_marker(TERMINAL_MARKERS),
            )
            .order_by(PointsLedgerEntry.created_at.asc())
        )
        items: list[ExpiryForecastItem] = []
        for entry in (await self._db.execute(stmt)).scalars().all():
            rule = next((candidate for candidate in rules if candidate.applies_to(entry.action_type)), None)
            if rule is None:
                continue
            expires_at = as_utc(entry.created_at) + timedelta(days=rule.expiry_days)
            if entry.expires_at is not None:
                expires_at = min(expires_at, as_utc(entry.expires_at))
            if now <= expires_at <= horizon:
                items.append(
                    ExpiryForecastItem(
                        ledger_id=int(entry.id),
                        points=int(entry.points_amount),
                        expires_at=expires_at,
                        rule_name=rule.name,
                    )
                )
        items.sort(key=lambda item: item.expires_at)
        return items

    async def list_rules(self, *, include_inactive: bool = True) -> list[ExpiryRule]:
        stmt = select(ExpiryRule).order_by(ExpiryRule.priority.asc(), ExpiryRule.name.asc())
        if not include_inactive:
            stmt = stmt.where(ExpiryRule.status == ExpiryRuleStatus.ACTIVE)
        return list((await self._db.execute(stmt)).scalars().all())

    async def upsert_rule(
        self,
        *,
        name: str,
        expiry_days: int,
        grace_days: int = 0,
        action_types: Iterable[LedgerActionType | str] = (),
        priority: int = 0,
        status: ExpiryRuleStatus | str = ExpiryRuleStatus.ACTIVE,
        description: str | None = None,
    ) -> ExpiryRule:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Expiry rule name is required", code="invalid_rule")
        if expiry_days < 1:
            raise ValidationError("Expiry days must be at least 1", code="invalid_rule")
        if grace_days < 0:
            raise ValidationError("Grace days cannot be negative", code="invalid_rule")
        try:
            actions = [LedgerActionType(value).value for value in action_types]
            rule_status = ExpiryRuleStatus(status)
        except ValueError as exc:
            raise ValidationError(str(exc), code="invalid_rule") from exc

        rule = (await self._db.execute(select(ExpiryRule).where(ExpiryRule.name == name))).scalar_one_or_none()
        if rule is None:
            rule = ExpiryRule(name=name)
            self._db.add(rule)
        rule.expiry_days = expiry_days
        rule.grace_days = grace_days
        rule.action_types = actions
        rule.priority = priority
        rule.status = rule_status
        rule.description = description
        await self._db.flush()
        logger.info("Saved expiry rule", rule=name, expiry_days=expiry_days, grace_days=grace_days)
        return rule

    async def deactivate_rule(self, rule_id: UUID) -> ExpiryRule:
        rule = await self._db.get(ExpiryRule, rule_id)
        if rule is None:
            raise NotFoundError("Expiry rule not found", details={"rule_id": str(rule_id)})
        rule.status = ExpiryRuleStatus.INACTIVE
        await self._db.flush()
        return rule

    async def manually_expire(
        self,
        entry_id: int,
        admin_id: UUID | str,
        *,
        user_id: UUID | str | None = None,
        reason: str | None = None,
    ) -> ManualExpiryResult:
        """Expire one earned credit on an administrator's request, outside any rule."""

        actor = await require_admin(self._db, admin_id)
        entry = await self._ledger.get(entry_id)
        if user_id is not None and entry.user_id != coerce_user_id(user_id):
            raise NotFoundError("Points record not found", details={"entry_id": entry_id})
        if entry.status != LedgerStatus.EARNED or entry.points_amount <= 0:
            raise InvalidTransitionError(
                "Only earned credits can be expired",
                code="not_expirable",
                details={"entry_id": entry_id, "status": entry.status.value},
            )
        marked = (
            await self._db.execute(
                select(PointExpiration.id).where(
                    PointExpiration.ledger_id == entry.id,
                    PointExpiration.status.in_(TERMINAL_MARKERS),
                )
            )
        ).first()
        if marked is not None:
            raise InvalidTransitionError(
                "Points record has already been expired",
                code="already_expired",
                details={"entry_id": entry_id},
            )

        result = ExpirySweepResult(user_id=entry.user_id)
        marker = await self._expire_entry(
            entry,
            None,
            reason or MANUAL_EXPIRY_REASON,
            self._clock(),
            result,
        )
        logger.info(
            "Manually expired points entry",
            entry_id=entry.id,
            admin_id=str(actor.id),
            expired_points=marker.points,
            consumed_points=marker.consumed_points,
        )
        return ManualExpiryResult(
            ledger_id=int(entry.id),
            user_id=entry.user_id,
            expired_points=int(marker.points),
            consumed_points=int(marker.consumed_points),
            new_balance=await self._balances.available_balance(entry.user_id),
        )

    async def expired_summary(self, user_id: UUID | str) -> ExpiredSummary:
        uid = coerce_user_id(user_id)
        expired = (
            await self._db.execute(
                select(
                    func.count(PointExpiration.id),
                    func.coalesce(func.sum(PointExpiration.points), 0),
                    func.min(PointExpiration.created_at),
                    func.max(PointExpiration.created_at),
                ).where(
                    PointExpiration.user_id == uid,
                    PointExpiration.status == ExpirationMarkerStatus.EXPIRED,
                )
            )
        ).one()
        consumed = (
            await self._db.execute(
                select(func.coalesce(func.sum(PointExpiration.consumed_points), 0)).where(
                    PointExpiration.user_id == uid,
                    PointExpiration.status.in_(TERMINAL_MARKERS),
                )
            )
        ).scalar_one()
        return ExpiredSummary(
            user_id=uid,
            total_expirations=int(expired[0]),
            total_expired_points=int(expired[1]),
            total_consumed_points=int(consumed),
            first_expiry_at=expired[2],
            last_expiry_at=expired[3],
        )

    async def _eligible_entries(self, user_id: UUID, rule: ExpiryRuleConfig, now: datetime) -> Sequence[PointsLedgerEntry]:
        cutoff = now - timedelta(days=rule.expiry_days)
        stmt = select(PointsLedgerEntry).where(
            PointsLedgerEntry.user_id == user_id,
            PointsLedgerEntry.status == LedgerStatus.EARNED,
            PointsLedgerEntry.points_amount > 0,
            or_(
                PointsLedgerEntry.created_at < cutoff,
                and_(PointsLedgerEntry.expires_at.is_not(None), PointsLedgerEntry.expires_at <= now),
            ),
            ~self._has_marker(TERMINAL_MARKERS),
        )
        if rule.action_types:
            stmt = stmt.where(PointsLedgerEntry.action_type.in_(rule.action_types))
        stmt = stmt.order_by(PointsLedgerEntry.created_at.asc(), PointsLedgerEntry.id.asc())
        return (await self._db.execute(stmt)).scalars().all()

    async def _expire_entry(
        self,
        entry: PointsLedgerEntry,
        rule_id: UUID | None,
        reason: str,
        now: datetime,
        result: ExpirySweepResult,
    ) -> PointExpiration:
        points = int(entry.points_amount)
        available = await self._balances.available_balance(entry.user_id)
        # Only the part of the credit still covered by the balance can expire;
        # the rest was already spent by later debits.
        unspent = max(min(points, available), 0)
        consumed = points - unspent
        marker = PointExpiration(
            user_id=entry.user_id,
            ledger_id=entry.id,
            rule_id=rule_id,
            status=ExpirationMarkerStatus.EXPIRED if unspent else ExpirationMarkerStatus.CONSUMED,
            points=unspent,
            consumed_points=consumed,
            reason=reason,
            created_at=now,
        )

        async with self._db.begin_nested():
            self._db.add(marker)
            await self._db.flush()
            if not consumed:
                await self._ledger.transition_status(entry.id, LedgerStatus.EXPIRED, f"Expired: {reason}")
            elif unspent:
                await self._ledger.append_entry(
                    LedgerEntryDraft(
                        user_id=entry.user_id,
                        points_amount=-unspent,
                        action_type=LedgerActionType.EXPIRY,
                        status=LedgerStatus.EARNED,
                        order_id=entry.order_id,
                        description=f"Expired unspent remainder of entry {entry.id}",
                        notes=reason,
                    )
                )

        if not unspent:
            result.consumed_entries.append(int(entry.id))
            logger.warning(
                "Expiring entry already consumed by debits",
                entry_id=entry.id,
                points=points,
                available=available,
            )
            return marker

        if consumed:
            logger.info(
                "Expired unspent remainder of partly consumed entry",
                entry_id=entry.id,
                expired_points=unspent,
                consumed_points=consumed,
            )
        result.expired_entries.append(int(entry.id))
        result.expired_points += unspent
        self._events.add(
            PointsEventType.POINTS_EXPIRED,
            entry.user_id,
            entry_id=entry.id,
            points=unspent,
            consumed_points=consumed,
            rule=reason,
        )
        await self._notifications.notify(
            entry.user_id,
            NotificationKind.POINTS_EXPIRED,
            {"points": unspent, "reason": reason, "balance": available - unspent},
        )
        return marker

    async def _warn_upcoming(
        self,
        user_id: UUID,
        rule: ExpiryRuleConfig,
        now: datetime,
        result: ExpirySweepResult,
        *,
        skip: set[int],
    ) -> None:
        if rule.grace_days <= 0:
            return

        cutoff = now - timedelta(days=rule.expiry_days)
        warn_from = cutoff + timedelta(days=rule.grace_days)
        stmt = select(PointsLedgerEntry).where(
            PointsLedgerEntry.user_id == user_id,
            PointsLedgerEntry.status == LedgerStatus.EARNED,
            PointsLedgerEntry.points_amount > 0,
            PointsLedgerEntry.created_at >= cutoff,
            PointsLedgerEntry.created_at < warn_from,
            ~self._has_marker((ExpirationMarkerStatus.NOTIFIED, *TERMINAL_MARKERS)),
        )
        if rule.action_types:
            stmt = stmt.where(PointsLedgerEntry.action_type.in_(rule.action_types))
        entries = [entry for entry in (await self._db.execute(stmt)).scalars().all() if entry.id not in skip]
        if not entries:
            return

        async with self._db.begin_nested():
            for entry in entries:
                self._db.add(
                    PointExpiration(
                        user_id=user_id,
                        ledger_id=entry.id,
                        rule_id=rule.id,
                        status=ExpirationMarkerStatus.NOTIFIED,
                        points=int(entry.points_amount),
                        reason=rule.name,
                        created_at=now,
                    )
                )
            await self._db.flush()

        skip.update(entry.id for entry in entries)
        result.warned_entries.extend(int(entry.id) for entry in entries)
        earliest = min(as_utc(entry.created_at) for entry in entries) + timedelta(days=rule.expiry_days)
        await self._notifications.notify(
            user_id,
            NotificationKind.POINTS_EXPIRING,
            {
                "points": sum(int(entry.points_amount) for entry in entries),
                "expires_on": earliest.date().isoformat(),
                "reason": rule.name,
            },
        )

    @staticmethod
    def _has_marker(statuses: Sequence[ExpirationMarkerStatus]):
        return exists().where(
            PointExpiration.ledger_id == PointsLedgerEntry.id,
            PointExpiration.status.in_(statuses),
        )


__all__ = [
    "DEFAULT_RULE_NAME",
    "ExpiredSummary",
    "ExpiryEngine",
    "ExpiryForecastItem",
    "ExpiryRuleConfig",
    "ExpirySweepResult",
    "MANUAL_EXPIRY_REASON",
    "ManualExpiryResult",
]
