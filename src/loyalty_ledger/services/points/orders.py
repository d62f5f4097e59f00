"""Order lifecycle handlers that append ledger entries exactly once per event."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Awaitable, Callable

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_ledger.core.errors import NotFoundError, ValidationError
from loyalty_ledger.models.points import (
    LedgerActionType,
    LedgerStatus,
    OrderPointsState,
    PointRedemption,
    PointsLedgerEntry,
    RedemptionStatus,
    RefundKind,
    RefundPointsState,
)
from loyalty_ledger.observability.points import PointsObservabilityStore, get_points_store
from loyalty_ledger.services.notifications.templates import NotificationKind

from .balances import BalanceCalculator
from .calculator import calculate_order_points
from .events import EventBuffer, PointsEventType
from .ledger import Clock, LedgerEntryDraft, LedgerStore, utcnow
from .settings import SettingsSource, StaticSettingsSource
from .sources import (
    NotificationSink,
    NullNotificationSink,
    OrderSource,
    ProductPointsSource,
    StaticProductPointsSource,
)


REFUNDABLE_CREDIT_ACTIONS = (
    LedgerActionType.ORDER_PLACEMENT,
    LedgerActionType.ORDER_COMPLETE,
    LedgerActionType.PURCHASE,
    LedgerActionType.BONUS,
)
REFUND_DEBIT_ACTIONS = (
    LedgerActionType.REFUND,
    LedgerActionType.PARTIAL_REFUND,
    LedgerActionType.FULL_REFUND,
)
LIVE_STATUSES = (LedgerStatus.PENDING, LedgerStatus.EARNED)
OPEN_REDEMPTION_STATUSES = (RedemptionStatus.PENDING, RedemptionStatus.COMPLETED)


@dataclass(slots=True)
class OrderPointsSummary:
    order_id: str
    points_awarded: int
    points_status: str
    refunded_points: int = 0
    created_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None


class SkippedEvent(Exception):
    """Raised inside a handler when the event was already applied or has nothing to do."""


class OrderPointsHandler:
    """Reacts to order transitions; every public handler returns a success flag and never raises."""

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        order_source: OrderSource,
        product_points: ProductPointsSource | None = None,
        settings_source: SettingsSource | None = None,
        notifications: NotificationSink | None = None,
        events: EventBuffer | None = None,
        clock: Clock = utcnow,
        observability: PointsObservabilityStore | None = None,
    ) -> None:
        self._db = db_session
        self._orders = order_source
        self._products = product_points or StaticProductPointsSource()
        self._settings = settings_source or StaticSettingsSource()
        self._notifications = notifications or NullNotificationSink()
        self._events = events or EventBuffer()
        self._clock = clock
        self._observability = observability or get_points_store()
        self._ledger = LedgerStore(db_session, clock=clock)
        self._balances = BalanceCalculator(db_session)
        self._pending_notifications: list[tuple[Any, NotificationKind, dict[str, Any]]] = []

    async def handle_order_placed(self, order_id: str) -> bool:
        return await self._run("order_placed", self._order_placed, order_id=order_id)

    async def handle_order_completed(self, order_id: str) -> bool:
        return await self._run("order_completed", self._order_completed, order_id=order_id)

    async def handle_order_cancelled(self, order_id: str) -> bool:
        return await self._run("order_cancelled", self._order_cancelled, order_id=order_id)

    async def handle_refund(self, order_id: str, refund_id: str) -> bool:
        return await self._run("refund", self._refund, order_id=order_id, refund_id=refund_id)

    async def handle_refund_reversed(self, refund_id: str) -> bool:
        return await self._run("refund_reversed", self._refund_reversed, refund_id=refund_id)

    async def get_order_points_summary(self, order_id: str) -> OrderPointsSummary:
        """Points awarded for an order and the current status of its placement entry."""

        state = await self._order_state(order_id)
        if state is None:
            return OrderPointsSummary(order_id=order_id, points_awarded=0, points_status="none")

        points_awarded, points_status = 0, "none"
        if state.ledger_entry_id is not None:
            entry = await self._ledger.get(state.ledger_entry_id)
            points_awarded, points_status = int(entry.points_amount), entry.status.value
        return OrderPointsSummary(
            order_id=order_id,
            points_awarded=points_awarded,
            points_status=points_status,
            refunded_points=await self._already_deducted(order_id),
            created_at=state.created_at,
            completed_at=state.completed_at,
            cancelled_at=state.cancelled_at,
        )

    async def _run(self, handler: str, operation: Callable[..., Awaitable[None]], **context: str) -> bool:
        self._pending_notifications.clear()
        try:
            async with self._db.begin_nested():
                await operation(**context)
        except SkippedEvent as exc:
            logger.info("Skipped order points event", handler=handler, reason=str(exc), **context)
            self._observability.record_handler_result(handler, "skipped")
            return False
        except IntegrityError:
            logger.info("Order points event already recorded by a concurrent delivery", handler=handler, **context)
            self._observability.record_handler_result(handler, "skipped")
            return False
        except Exception as exc:
            logger.exception("Order points handler failed", handler=handler, error=str(exc), **context)
            self._observability.record_handler_result(handler, "failed")
            return False

        self._observability.record_handler_result(handler, "processed")
        for user_id, kind, payload in self._pending_notifications:
            await self._notifications.notify(user_id, kind, payload)
        self._pending_notifications.clear()
        return True

    async def _order_placed(self, *, order_id: str) -> None:
        settings = self._settings.load()
        if not settings.points_enabled:
            raise SkippedEvent("points system disabled")
        if await self._order_state(order_id) is not None:
            raise SkippedEvent("order already processed")

        order = await self._orders.get_order(order_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")

        breakdown = await calculate_order_points(order, self._products, settings)
        now = self._clock()
        entry: PointsLedgerEntry | None = None
        if breakdown.total > 0:
            expires_at = now + timedelta(days=settings.expiry_days) if settings.enable_expiry else None
            entry = await self._ledger.append_entry(
                LedgerEntryDraft(
                    user_id=order.user_id,
                    points_amount=breakdown.total,
                    action_type=LedgerActionType.ORDER_PLACEMENT,
                    status=LedgerStatus.PENDING,
                    order_id=order_id,
                    description=f"Points for order #{order_id}",
                    expires_at=expires_at,
                )
            )

        self._db.add(
            OrderPointsState(
                order_id=order_id,
                user_id=order.user_id,
                ledger_entry_id=entry.id if entry else None,
                points=breakdown.total,
                order_total=Decimal(order.total),
                currency=order.currency,
                created_at=now,
            )
        )
        await self._db.flush()

        if entry is not None:
            self._events.add(
                PointsEventType.ENTRY_APPENDED,
                order.user_id,
                entry_id=entry.id,
                action_type=entry.action_type.value,
                points=entry.points_amount,
                order_id=order_id,
            )
            self._pending_notifications.append(
                (order.user_id, NotificationKind.POINTS_AWARDED, {"points": breakdown.total, "order_id": order_id})
            )
        logger.info(
            "Recorded order placement points",
            order_id=order_id,
            user_id=str(order.user_id),
            points=breakdown.total,
            used_global_rate=breakdown.used_global_rate,
        )

    async def _order_completed(self, *, order_id: str) -> None:
        state = await self._order_state(order_id, for_update=True)
        if state is None:
            raise SkippedEvent("order has no points record")
        if state.completed_at is not None:
            raise SkippedEvent("order already completed")
        if state.cancelled_at is not None:
            raise SkippedEvent("order was cancelled")

        state.completed_at = self._clock()
        promoted = 0
        if state.ledger_entry_id is not None:
            entry = await self._ledger.get(state.ledger_entry_id)
            if entry.status == LedgerStatus.PENDING:
                await self._ledger.transition_status(entry.id, LedgerStatus.EARNED, f"Order #{order_id} completed")
                promoted = entry.points_amount
                self._events.add(
                    PointsEventType.STATUS_TRANSITIONED,
                    state.user_id,
                    entry_id=entry.id,
                    status=LedgerStatus.EARNED.value,
                )

        for debit in await self._refund_debits(order_id, LedgerStatus.PENDING):
            await self._ledger.transition_status(debit.id, LedgerStatus.EARNED, f"Order #{order_id} completed")

        await self._set_redemption_status(order_id, (RedemptionStatus.PENDING,), RedemptionStatus.COMPLETED)
        await self._db.flush()

        if promoted:
            balance = await self._balances.available_balance(state.user_id)
            self._pending_notifications.append(
                (
                    state.user_id,
                    NotificationKind.POINTS_EARNED,
                    {"points": promoted, "order_id": order_id, "balance": balance},
                )
            )
        logger.info("Completed order points", order_id=order_id, points=promoted)

    async def _order_cancelled(self, *, order_id: str) -> None:
        state = await self._order_state(order_id, for_update=True)
        if state is None:
            raise SkippedEvent("order has no points record")
        if state.cancelled_at is not None:
            raise SkippedEvent("order already cancelled")
        if state.completed_at is not None:
            raise SkippedEvent("completed orders are reversed through refunds")

        state.cancelled_at = self._clock()
        if state.ledger_entry_id is not None:
            entry = await self._ledger.get(state.ledger_entry_id)
            if entry.status == LedgerStatus.PENDING:
                await self._ledger.transition_status(entry.id, LedgerStatus.CANCELLED, f"Order #{order_id} cancelled")

        for debit in await self._refund_debits(order_id, LedgerStatus.PENDING):
            await self._ledger.transition_status(debit.id, LedgerStatus.CANCELLED, f"Order #{order_id} cancelled")

        restored = await self._restore_redemptions(order_id, RedemptionStatus.CANCELLED, f"Order #{order_id} cancelled")
        await self._db.flush()
        logger.info("Cancelled order points", order_id=order_id, restored_points=restored)

    async def _refund(self, *, order_id: str, refund_id: str) -> None:
        if await self._refund_state(refund_id) is not None:
            raise SkippedEvent("refund already processed")

        refund = await self._orders.get_refund(refund_id)
        if refund is None:
            raise NotFoundError(f"Refund {refund_id} not found")
        if refund.parent_order_id != order_id:
            raise ValidationError(f"Refund {refund_id} does not belong to order {order_id}")
        order = await self._orders.get_order(order_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")

        order_total = Decimal(order.total)
        refund_total = Decimal(refund.refund_total)
        kind = RefundKind.FULL if order_total > 0 and refund_total >= order_total else RefundKind.PARTIAL
        order_state = await self._order_state(order_id)

        credited = await self._live_order_credits(order_id)
        remaining = max(credited - await self._already_deducted(order_id), 0)

        deduction = 0
        if kind is RefundKind.FULL:
            deduction = remaining
        elif order_total > 0 and order_state is not None:
            proportion = refund_total / order_total
            deduction = min(int(Decimal(order_state.points) * proportion), remaining)

        restored = 0
        if kind is RefundKind.FULL:
            restored = await self._restore_redemptions(order_id, RedemptionStatus.REFUNDED, f"Refund #{refund_id}")

        status = LedgerStatus.EARNED
        if order_state is not None and order_state.ledger_entry_id is not None:
            placement = await self._ledger.get(order_state.ledger_entry_id)
            if placement.status == LedgerStatus.PENDING:
                status = LedgerStatus.PENDING

        if deduction > 0 and status == LedgerStatus.EARNED:
            available = await self._balances.available_balance(order.user_id)
            if deduction > available:
                logger.warning(
                    "Refund deduction clamped to available balance",
                    order_id=order_id,
                    refund_id=refund_id,
                    requested=deduction,
                    available=available,
                )
                deduction = max(available, 0)

        entry: PointsLedgerEntry | None = None
        if deduction > 0:
            action = LedgerActionType.FULL_REFUND if kind is RefundKind.FULL else LedgerActionType.PARTIAL_REFUND
            entry = await self._ledger.append_entry(
                LedgerEntryDraft(
                    user_id=order.user_id,
                    points_amount=-deduction,
                    action_type=action,
                    status=status,
                    order_id=order_id,
                    description=f"Refund #{refund_id} for order #{order_id}",
                )
            )
            self._events.add(
                PointsEventType.ENTRY_APPENDED,
                order.user_id,
                entry_id=entry.id,
                action_type=action.value,
                points=-deduction,
                order_id=order_id,
            )

        self._db.add(
            RefundPointsState(
                refund_id=refund_id,
                order_id=order_id,
                kind=kind,
                ledger_entry_id=entry.id if entry else None,
                points=deduction,
                refund_total=refund_total,
                created_at=self._clock(),
            )
        )
        await self._db.flush()

        if deduction or restored:
            self._pending_notifications.append(
                (
                    order.user_id,
                    NotificationKind.POINTS_REFUNDED,
                    {"points": deduction, "order_id": order_id, "restored_points": restored},
                )
            )
        logger.info(
            "Recorded refund points deduction",
            order_id=order_id,
            refund_id=refund_id,
            kind=kind.value,
            points=deduction,
            restored_points=restored,
        )

    async def _refund_reversed(self, *, refund_id: str) -> None:
        state = await self._refund_state(refund_id, for_update=True)
        if state is None:
            raise NotFoundError(f"Refund {refund_id} has no points record")
        if state.reversed_at is not None:
            raise SkippedEvent("refund already reversed")

        state.reversed_at = self._clock()
        if state.ledger_entry_id is not None:
            debit = await self._ledger.get(state.ledger_entry_id)
            if debit.status == LedgerStatus.PENDING:
                await self._ledger.transition_status(debit.id, LedgerStatus.CANCELLED, f"Refund #{refund_id} reversed")
            elif debit.status == LedgerStatus.EARNED:
                await self._ledger.append_entry(
                    LedgerEntryDraft(
                        user_id=debit.user_id,
                        points_amount=-debit.points_amount,
                        action_type=LedgerActionType.REFUND_REVERSAL,
                        status=LedgerStatus.EARNED,
                        order_id=state.order_id,
                        description=f"Reversal of refund #{refund_id}",
                    )
                )
        await self._db.flush()
        logger.info("Reversed refund points deduction", refund_id=refund_id, points=state.points)

    async def _restore_redemptions(self, order_id: str, final_status: RedemptionStatus, reason: str) -> int:
        stmt = (
            select(PointRedemption)
            .where(
                PointRedemption.order_id == order_id,
                PointRedemption.status.in_(OPEN_REDEMPTION_STATUSES),
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        redemptions = (await self._db.execute(stmt)).scalars().all()
        restored = 0
        now = self._clock()
        for redemption in redemptions:
            await self._ledger.append_entry(
                LedgerEntryDraft(
                    user_id=redemption.user_id,
                    points_amount=int(redemption.points),
                    action_type=LedgerActionType.REDEMPTION_REVERSAL,
                    status=LedgerStatus.EARNED,
                    order_id=order_id,
                    description=f"Points restored from redemption {redemption.id}",
                    notes=reason,
                )
            )
            redemption.status = final_status
            redemption.cancelled_at = now
            redemption.updated_at = now
            restored += int(redemption.points)
        return restored

    async def _set_redemption_status(
        self,
        order_id: str,
        from_statuses: tuple[RedemptionStatus, ...],
        to_status: RedemptionStatus,
    ) -> None:
        stmt = select(PointRedemption).where(
            PointRedemption.order_id == order_id,
            PointRedemption.status.in_(from_statuses),
        )
        now = self._clock()
        for redemption in (await self._db.execute(stmt)).scalars().all():
            redemption.status = to_status
            redemption.updated_at = now

    async def _order_state(self, order_id: str, *, for_update: bool = False) -> OrderPointsState | None:
        stmt = select(OrderPointsState).where(OrderPointsState.order_id == order_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return (await self._db.execute(stmt)).scalar_one_or_none()

    async def _refund_state(self, refund_id: str, *, for_update: bool = False) -> RefundPointsState | None:
        stmt = select(RefundPointsState).where(RefundPointsState.refund_id == refund_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return (await self._db.execute(stmt)).scalar_one_or_none()

    async def _live_order_credits(self, order_id: str) -> int:
        stmt = select(func.coalesce(func.sum(PointsLedgerEntry.points_amount), 0)).where(
            PointsLedgerEntry.order_id == order_id,
            PointsLedgerEntry.action_type.in_(REFUNDABLE_CREDIT_ACTIONS),
            PointsLedgerEntry.status.in_(LIVE_STATUSES),
            PointsLedgerEntry.points_amount > 0,
        )
        return int((await self._db.execute(stmt)).scalar_one())

    async def _already_deducted(self, order_id: str) -> int:
        stmt = select(func.coalesce(func.sum(RefundPointsState.points), 0)).where(
            RefundPointsState.order_id == order_id,
            RefundPointsState.reversed_at.is_(None),
        )
        return int((await self._db.execute(stmt)).scalar_one())

    async def _refund_debits(self, order_id: str, status: LedgerStatus) -> list[PointsLedgerEntry]:
        stmt = select(PointsLedgerEntry).where(
            PointsLedgerEntry.order_id == order_id,
            PointsLedgerEntry.action_type.in_(REFUND_DEBIT_ACTIONS),
            PointsLedgerEntry.status == status,
        )
        return list((await self._db.execute(stmt)).scalars().all())


__all__ = ["OrderPointsHandler", "OrderPointsSummary", "SkippedEvent"]
