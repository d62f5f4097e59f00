"""Point-to-discount conversion with balance and per-order cap checks."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_ledger.core.errors import (
    InsufficientBalanceError,
    InvalidTransitionError,
    LedgerSystemError,
    NotFoundError,
    RedemptionLimitExceededError,
    ValidationError,
)
from loyalty_ledger.models.points import (
    LedgerActionType,
    LedgerStatus,
    PointRedemption,
    PointsLedgerEntry,
    RedemptionStatus,
)
from loyalty_ledger.models.user import User
from loyalty_ledger.services.notifications.templates import NotificationKind

from .balances import BalanceCalculator
from .events import EventBuffer, PointsEventType
from .ledger import Clock, LedgerEntryDraft, LedgerStore, coerce_user_id, utcnow
from .settings import SettingsSource, StaticSettingsSource
from .sources import NotificationSink, NullNotificationSink, OrderSource


CENT = Decimal("0.01")
APPLIED_REDEMPTION_STATUSES = (RedemptionStatus.PENDING, RedemptionStatus.COMPLETED)


@dataclass(slots=True)
class RedemptionResult:
    redemption_id: UUID
    ledger_id: int
    user_id: UUID
    points: int
    discount_value: Decimal
    conversion_rate: Decimal
    currency: str
    order_id: str | None
    status: RedemptionStatus
    remaining_balance: int


@dataclass(slots=True)
class RestoreResult:
    redemption_id: UUID
    ledger_id: int
    restored_points: int
    new_balance: int


class RedemptionEngine:
    """Validates and records redemptions.

    ``redeem`` and ``cancel`` must run inside ``user_balance_guard`` for the
    redeeming user, and the caller commits before releasing it.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        settings_source: SettingsSource | None = None,
        order_source: OrderSource | None = None,
        notifications: NotificationSink | None = None,
        events: EventBuffer | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._db = db_session
        self._settings = settings_source or StaticSettingsSource()
        self._orders = order_source
        self._notifications = notifications or NullNotificationSink()
        self._events = events or EventBuffer()
        self._clock = clock
        self._ledger = LedgerStore(db_session, clock=clock)
        self._balances = BalanceCalculator(db_session)

    async def redeem(
        self,
        user_id: UUID | str,
        points: int,
        order_id: str | None = None,
        rate: Decimal | str | float | None = None,
        currency: str | None = None,
    ) -> RedemptionResult:
        settings = self._settings.load()
        if not settings.points_enabled:
            raise ValidationError("Points system is currently disabled", code="system_disabled")
        if isinstance(points, bool) or not isinstance(points, int) or points <= 0:
            raise ValidationError("Invalid points amount", code="invalid_points_amount")

        uid = coerce_user_id(user_id)
        if await self._db.get(User, uid) is None:
            raise ValidationError("Invalid user", code="invalid_user")

        available = await self._balances.available_balance(uid)
        if points > available:
            raise InsufficientBalanceError(available=available, requested=points)

        conversion_rate = self._resolve_rate(rate, settings.conversion_rate)
        resolved_currency = (currency or settings.currency).upper()
        discount_value = (Decimal(points) * conversion_rate).quantize(CENT, rounding=ROUND_HALF_UP)

        if order_id is not None:
            await self._enforce_order_cap(uid, order_id, discount_value, settings.max_redeemable_percentage)

        now = self._clock()
        status = RedemptionStatus.PENDING if order_id else RedemptionStatus.COMPLETED
        try:
            async with self._db.begin_nested():
                entry = await self._ledger.append_entry(
                    LedgerEntryDraft(
                        user_id=uid,
                        points_amount=-points,
                        action_type=LedgerActionType.REDEMPTION,
                        status=LedgerStatus.EARNED,
                        order_id=order_id,
                        description=f"Redeemed {points} points for {discount_value} {resolved_currency}",
                    )
                )
                redemption = await self._insert_redemption(
                    entry,
                    discount_value=discount_value,
                    conversion_rate=conversion_rate,
                    currency=resolved_currency,
                    status=status,
                    now=now,
                )
        except SQLAlchemyError as exc:
            logger.exception("Failed to record points redemption", user_id=str(uid), points=points, error=str(exc))
            raise LedgerSystemError() from exc

        remaining = available - points
        self._events.add(
            PointsEventType.REDEMPTION_CREATED,
            uid,
            redemption_id=str(redemption.id),
            ledger_id=entry.id,
            points=points,
            discount_value=str(discount_value),
            order_id=order_id,
        )
        await self._notifications.notify(
            uid,
            NotificationKind.POINTS_REDEEMED,
            {
                "points": points,
                "discount_value": str(discount_value),
                "currency": resolved_currency,
                "order_id": order_id,
                "balance": remaining,
            },
        )
        logger.info(
            "Created points redemption",
            redemption_id=str(redemption.id),
            user_id=str(uid),
            points=points,
            discount_value=str(discount_value),
            order_id=order_id,
        )
        return RedemptionResult(
            redemption_id=redemption.id,
            ledger_id=int(entry.id),
            user_id=uid,
            points=points,
            discount_value=discount_value,
            conversion_rate=conversion_rate,
            currency=resolved_currency,
            order_id=order_id,
            status=status,
            remaining_balance=remaining,
        )

    async def cancel(self, redemption_id: UUID | str, reason: str | None = None) -> RestoreResult:
        """Restore a redemption's points with an offsetting credit; the debit stays untouched."""

        redemption = await self.get_redemption(redemption_id, for_update=True)
        current = RedemptionStatus(redemption.status)
        if current in (RedemptionStatus.CANCELLED, RedemptionStatus.REFUNDED):
            raise InvalidTransitionError(
                f"Redemption is already {current.value}",
                code=f"already_{current.value}",
                details={"redemption_id": str(redemption.id)},
            )

        now = self._clock()
        try:
            async with self._db.begin_nested():
                entry = await self._ledger.append_entry(
                    LedgerEntryDraft(
                        user_id=redemption.user_id,
                        points_amount=int(redemption.points),
                        action_type=LedgerActionType.REDEMPTION_REVERSAL,
                        status=LedgerStatus.EARNED,
                        order_id=redemption.order_id,
                        description=f"Reversal of redemption {redemption.id}",
                        notes=reason,
                    )
                )
                redemption.status = RedemptionStatus.CANCELLED
                redemption.cancelled_at = now
                redemption.updated_at = now
                if reason:
                    redemption.notes = f"{redemption.notes}\n{reason}" if redemption.notes else reason
                await self._db.flush()
        except SQLAlchemyError as exc:
            logger.exception("Failed to cancel points redemption", redemption_id=str(redemption_id), error=str(exc))
            raise LedgerSystemError() from exc

        balance = await self._balances.available_balance(redemption.user_id)
        self._events.add(
            PointsEventType.REDEMPTION_CANCELLED,
            redemption.user_id,
            redemption_id=str(redemption.id),
            ledger_id=entry.id,
            points=int(redemption.points),
        )
        await self._notifications.notify(
            redemption.user_id,
            NotificationKind.REDEMPTION_CANCELLED,
            {"points": int(redemption.points), "balance": balance},
        )
        logger.info("Cancelled points redemption", redemption_id=str(redemption.id), points=int(redemption.points))
        return RestoreResult(
            redemption_id=redemption.id,
            ledger_id=int(entry.id),
            restored_points=int(redemption.points),
            new_balance=balance,
        )

    async def get_redemption(self, redemption_id: UUID | str, *, for_update: bool = False) -> PointRedemption:
        try:
            rid = redemption_id if isinstance(redemption_id, UUID) else UUID(str(redemption_id))
        except ValueError as exc:
            raise NotFoundError("Redemption not found") from exc
        redemption = await self._db.get(
            PointRedemption,
            rid,
            with_for_update=for_update,
            populate_existing=for_update,
        )
        if redemption is None:
            raise NotFoundError("Redemption not found", details={"redemption_id": str(rid)})
        return redemption

    async def applied_discount(self, order_id: str) -> Decimal:
        stmt = select(func.coalesce(func.sum(PointRedemption.discount_value), 0)).where(
            PointRedemption.order_id == order_id,
            PointRedemption.status.in_(APPLIED_REDEMPTION_STATUSES),
        )
        value = (await self._db.execute(stmt)).scalar_one()
        return Decimal(str(value)).quantize(CENT)

    async def list_user_redemptions(
        self,
        user_id: UUID | str,
        *,
        limit: int = 20,
        offset: int = 0,
    ) -> list[PointRedemption]:
        bounded_limit = max(1, min(limit, 100))
        stmt = (
            select(PointRedemption)
            .where(PointRedemption.user_id == coerce_user_id(user_id))
            .order_by(PointRedemption.created_at.desc())
            .limit(bounded_limit)
            .offset(max(offset, 0))
        )
        return list((await self._db.execute(stmt)).scalars().all())

    async def total_redeemed_value(self, user_id: UUID | str) -> Decimal:
        stmt = select(func.coalesce(func.sum(PointRedemption.discount_value), 0)).where(
            PointRedemption.user_id == coerce_user_id(user_id),
            PointRedemption.status.in_(APPLIED_REDEMPTION_STATUSES),
        )
        value = (await self._db.execute(stmt)).scalar_one()
        return Decimal(str(value)).quantize(CENT)

    async def _enforce_order_cap(
        self,
        user_id: UUID,
        order_id: str,
        discount_value: Decimal,
        max_percentage: Decimal,
    ) -> None:
        if self._orders is None:
            raise NotFoundError(f"Order {order_id} not found")
        order = await self._orders.get_order(order_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")
        if order.user_id != user_id:
            raise ValidationError("Order does not belong to this user", code="invalid_order")
        if order.status == "cancelled":
            raise ValidationError("Cannot redeem points against a cancelled order", code="invalid_order")

        max_redeemable = (Decimal(order.total) * Decimal(max_percentage) / Decimal("100")).quantize(CENT)
        already_applied = await self.applied_discount(order_id)
        if already_applied + discount_value > max_redeemable:
            raise RedemptionLimitExceededError(
                f"Maximum redeemable discount for this order is {max_redeemable}",
                details={
                    "max_redeemable": str(max_redeemable),
                    "already_applied": str(already_applied),
                    "requested": str(discount_value),
                },
            )

    async def _insert_redemption(
        self,
        entry: PointsLedgerEntry,
        *,
        discount_value: Decimal,
        conversion_rate: Decimal,
        currency: str,
        status: RedemptionStatus,
        now: datetime,
    ) -> PointRedemption:
        redemption = PointRedemption(
            user_id=entry.user_id,
            ledger_id=entry.id,
            order_id=entry.order_id,
            points=-entry.points_amount,
            discount_value=discount_value,
            conversion_rate=conversion_rate,
            currency=currency,
            status=status,
            created_at=now,
            updated_at=now,
        )
        self._db.add(redemption)
        await self._db.flush()
        return redemption

    @staticmethod
    def _resolve_rate(rate: Decimal | str | float | None, default: Decimal) -> Decimal:
        try:
            value = Decimal(str(rate)) if rate is not None else Decimal(default)
        except InvalidOperation as exc:
            raise ValidationError("Invalid conversion rate", code="invalid_conversion_rate") from exc
        if not value.is_finite() or value <= 0:
            raise ValidationError("Invalid conversion rate", code="invalid_conversion_rate")
        return value


__all__ = ["RedemptionEngine", "RedemptionResult", "RestoreResult"]
