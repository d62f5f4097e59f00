"""Points service facade owning the unit of work for ledger operations."""

from __future__ import annotations

import math
from contextlib import asynccontextmanager, nullcontext
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable
from uuid import UUID

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_ledger.core.errors import (
    InsufficientBalanceError,
    LedgerSystemError,
    NotFoundError,
    PointsError,
    RedemptionLimitExceededError,
)
from loyalty_ledger.models.points import ExpiryRule, PointRedemption, PointsAuditLog, PointsLedgerEntry
from loyalty_ledger.observability.points import PointsObservabilityStore, get_points_store
from loyalty_ledger.services.notifications import NotificationService

from .admin import AdjustmentResult, AdminAdjustmentHandler, AuditLogFilters, BulkAssignOutcome, BulkAssignRow
from .balances import BalanceCalculator, BalanceSummary
from .events import EventBuffer, PointsEventBus, get_event_bus
from .expiry import ExpiredSummary, ExpiryEngine, ExpiryForecastItem, ManualExpiryResult
from .ledger import MAX_PAGE_SIZE, Clock, LedgerQuery, LedgerStore, coerce_user_id, utcnow
from .locks import UserLockRegistry, get_user_lock_registry, user_balance_guard
from .orders import OrderPointsHandler, OrderPointsSummary
from .redemptions import RedemptionEngine, RedemptionResult, RestoreResult
from .settings import ConfiguredSettingsSource, SettingsSource
from .sources import NotificationSink, OrderSource, ProductPointsSource, StaticOrderSource


@dataclass(slots=True)
class HistoryPage:
    items: list[PointsLedgerEntry]
    total: int
    page: int
    page_size: int
    pages: int


class PointsService:
    """Entry point used by the HTTP layer, jobs and scripts.

    Every write runs as one unit of work: balance-sensitive operations hold the
    per-user guard until the commit finishes. Buffered events and notifications
    go out only once the commit has succeeded and the guard is released.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        settings_source: SettingsSource | None = None,
        order_source: OrderSource | None = None,
        product_points: ProductPointsSource | None = None,
        notifications: NotificationSink | None = None,
        event_bus: PointsEventBus | None = None,
        lock_registry: UserLockRegistry | None = None,
        observability: PointsObservabilityStore | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._db = db_session
        self._settings = settings_source or ConfiguredSettingsSource()
        self._orders = order_source or StaticOrderSource()
        self._products = product_points
        self._notifications = notifications or NotificationService(db_session)
        self._bus = event_bus or get_event_bus()
        self._locks = lock_registry or get_user_lock_registry()
        self._observability = observability or get_points_store()
        self._clock = clock

    # Balances and history

    async def get_available_balance(self, user_id: UUID | str) -> int:
        return await BalanceCalculator(self._db).available_balance(user_id)

    async def get_pending_balance(self, user_id: UUID | str) -> int:
        return await BalanceCalculator(self._db).pending_balance(user_id)

    async def get_balance_summary(self, user_id: UUID | str) -> BalanceSummary:
        return await BalanceCalculator(self._db).summary(user_id)

    async def get_history(
        self,
        user_id: UUID | str,
        page: int = 1,
        page_size: int = 20,
        filters: LedgerQuery | None = None,
    ) -> HistoryPage:
        page = max(page, 1)
        page_size = max(1, min(page_size, MAX_PAGE_SIZE))
        query = filters or LedgerQuery()
        query.limit = page_size
        query.offset = (page - 1) * page_size

        store = LedgerStore(self._db, clock=self._clock)
        total = await store.count_by_user(user_id, query)
        items = await store.query_by_user(user_id, query)
        return HistoryPage(
            items=items,
            total=total,
            page=page,
            page_size=page_size,
            pages=math.ceil(total / page_size) if total else 0,
        )

    # Redemptions

    async def redeem(
        self,
        user_id: UUID | str,
        points: int,
        order_id: str | None = None,
        rate: Any = None,
        currency: str | None = None,
    ) -> RedemptionResult:
        uid = coerce_user_id(user_id)
        try:
            async with self._unit_of_work(uid) as events:
                result = await self._redemption_engine(events).redeem(uid, points, order_id, rate, currency)
        except InsufficientBalanceError:
            self._observability.record_redemption("insufficient_balance")
            raise
        except RedemptionLimitExceededError:
            self._observability.record_redemption("limit_exceeded")
            raise
        except PointsError:
            self._observability.record_redemption("rejected")
            raise
        self._observability.record_redemption("created")
        return result

    async def cancel_redemption(
        self,
        redemption_id: UUID | str,
        reason: str | None = None,
        *,
        owner_id: UUID | None = None,
    ) -> RestoreResult:
        redemption = await self._redemption_engine(EventBuffer()).get_redemption(redemption_id)
        if owner_id is not None and redemption.user_id != owner_id:
            raise NotFoundError("Redemption not found", details={"redemption_id": str(redemption.id)})
        async with self._unit_of_work(redemption.user_id) as events:
            result = await self._redemption_engine(events).cancel(redemption.id, reason)
        self._observability.record_redemption("cancelled")
        return result

    async def list_redemptions(self, user_id: UUID | str, *, limit: int = 20, offset: int = 0) -> list[PointRedemption]:
        return await self._redemption_engine(EventBuffer()).list_user_redemptions(user_id, limit=limit, offset=offset)

    # Order lifecycle

    async def process_order_placed(self, order_id: str) -> bool:
        return await self._process_order_event(order_id, lambda handler: handler.handle_order_placed(order_id))

    async def process_order_completed(self, order_id: str) -> bool:
        return await self._process_order_event(order_id, lambda handler: handler.handle_order_completed(order_id))

    async def process_order_cancelled(self, order_id: str) -> bool:
        return await self._process_order_event(order_id, lambda handler: handler.handle_order_cancelled(order_id))

    async def process_refund(self, order_id: str, refund_id: str) -> bool:
        return await self._process_order_event(
            order_id,
            lambda handler: handler.handle_refund(order_id, refund_id),
        )

    async def reverse_refund(self, refund_id: str, order_id: str | None = None) -> bool:
        if order_id is None:
            refund = await self._orders.get_refund(refund_id)
            order_id = refund.parent_order_id if refund else None
        return await self._process_order_event(order_id, lambda handler: handler.handle_refund_reversed(refund_id))

    async def get_order_points_summary(self, order_id: str) -> OrderPointsSummary:
        return await self._order_handler(EventBuffer()).get_order_points_summary(order_id)

    # Expiry

    async def run_expiry_sweep(
        self,
        user_id: UUID | str | None = None,
        *,
        reference_time: datetime | None = None,
    ) -> dict[str, int]:
        """Sweep one user or every user holding earned credits, committing per user."""

        if user_id is not None:
            users = [coerce_user_id(user_id)]
        else:
            users = await self._expiry_engine(EventBuffer()).users_with_expirable_credits()

        summary = {
            "users": 0,
            "expired_entries": 0,
            "expired_points": 0,
            "consumed_entries": 0,
            "warned_entries": 0,
            "errors": 0,
        }
        for uid in users:
            try:
                async with self._unit_of_work(uid) as events:
                    result = await self._expiry_engine(events).process_user_expirations(
                        uid,
                        reference_time=reference_time,
                    )
            except LedgerSystemError:
                summary["errors"] += 1
                continue
            summary["users"] += 1
            summary["expired_entries"] += len(result.expired_entries)
            summary["expired_points"] += result.expired_points
            summary["consumed_entries"] += len(result.consumed_entries)
            summary["warned_entries"] += len(result.warned_entries)
            summary["errors"] += len(result.errors)

        self._observability.record_expiry(
            expired=summary["expired_entries"],
            consumed=summary["consumed_entries"],
            warned=summary["warned_entries"],
            errors=summary["errors"],
        )
        logger.info("Completed points expiry sweep", **summary)
        return summary

    async def manually_expire_points(
        self,
        entry_id: int,
        admin_id: UUID | str,
        *,
        user_id: UUID | str | None = None,
        reason: str | None = None,
    ) -> ManualExpiryResult:
        entry = await LedgerStore(self._db, clock=self._clock).get(entry_id)
        async with self._unit_of_work(entry.user_id) as events:
            result = await self._expiry_engine(events).manually_expire(
                entry_id,
                admin_id,
                user_id=user_id,
                reason=reason,
            )
        return result

    async def get_expired_summary(self, user_id: UUID | str) -> ExpiredSummary:
        return await self._expiry_engine(EventBuffer()).expired_summary(user_id)

    async def expiry_forecast(self, user_id: UUID | str, days: int = 30) -> list[ExpiryForecastItem]:
        return await self._expiry_engine(EventBuffer()).forecast(user_id, days)

    async def list_expiry_rules(self) -> list[ExpiryRule]:
        return await self._expiry_engine(EventBuffer()).list_rules()

    async def save_expiry_rule(self, **fields: Any) -> ExpiryRule:
        async with self._unit_of_work() as events:
            rule = await self._expiry_engine(events).upsert_rule(**fields)
        return rule

    async def deactivate_expiry_rule(self, rule_id: UUID) -> ExpiryRule:
        async with self._unit_of_work() as events:
            rule = await self._expiry_engine(events).deactivate_rule(rule_id)
        return rule

    # Admin adjustments

    async def admin_assign(
        self,
        user_id: UUID | str,
        points: int,
        reason: str,
        admin_id: UUID | str,
        ip_address: str | None = None,
    ) -> AdjustmentResult:
        uid = coerce_user_id(user_id)
        async with self._unit_of_work(uid) as events:
            return await self._admin_handler(events).assign(uid, points, reason, admin_id, ip_address)

    async def admin_deduct(
        self,
        user_id: UUID | str,
        points: int,
        reason: str,
        admin_id: UUID | str,
        ip_address: str | None = None,
    ) -> AdjustmentResult:
        uid = coerce_user_id(user_id)
        async with self._unit_of_work(uid) as events:
            return await self._admin_handler(events).deduct(uid, points, reason, admin_id, ip_address)

    async def admin_reset(
        self,
        user_id: UUID | str,
        reason: str,
        admin_id: UUID | str,
        ip_address: str | None = None,
    ) -> AdjustmentResult:
        uid = coerce_user_id(user_id)
        async with self._unit_of_work(uid) as events:
            return await self._admin_handler(events).reset(uid, reason, admin_id, ip_address)

    async def admin_bulk_assign(
        self,
        rows: Iterable[BulkAssignRow],
        admin_id: UUID | str,
        ip_address: str | None = None,
    ) -> BulkAssignOutcome:
        async with self._unit_of_work() as events:
            return await self._admin_handler(events).bulk_assign(rows, admin_id, ip_address)

    async def get_audit_log(self, filters: AuditLogFilters | None = None) -> list[PointsAuditLog]:
        return await self._admin_handler(EventBuffer()).get_audit_log(filters)

    async def admin_action_summary(self, days: int = 30) -> dict[str, dict[str, int]]:
        return await self._admin_handler(EventBuffer()).action_summary(days)

    # Internals

    @asynccontextmanager
    async def _unit_of_work(self, user_id: UUID | None = None) -> AsyncIterator[EventBuffer]:
        events = EventBuffer()
        guard = user_balance_guard(self._db, user_id, registry=self._locks) if user_id else nullcontext()
        async with guard:
            try:
                yield events
                await self._db.commit()
            except SQLAlchemyError as exc:
                await self._db.rollback()
                events.discard()
                logger.exception(
                    "Points unit of work failed",
                    user_id=str(user_id) if user_id else None,
                    error=str(exc),
                )
                raise LedgerSystemError() from exc
            except Exception:
                await self._db.rollback()
                events.discard()
                raise

        for event in events.drain():
            self._observability.record_ledger_event(event.type.value)
            await self._bus.publish(event)
        for recipient, kind, payload in events.notifications.drain():
            try:
                await self._notifications.notify(recipient, kind, payload)
            except Exception as exc:
                logger.exception("Points notification failed", user_id=str(recipient), kind=str(kind), error=str(exc))

    async def _process_order_event(
        self,
        order_id: str | None,
        run: Callable[[OrderPointsHandler], Awaitable[bool]],
    ) -> bool:
        owner = await self._order_owner(order_id) if order_id else None
        try:
            async with self._unit_of_work(owner) as events:
                return await run(self._order_handler(events))
        except LedgerSystemError:
            return False

    async def _order_owner(self, order_id: str) -> UUID | None:
        order = await self._orders.get_order(order_id)
        return order.user_id if order else None

    def _order_handler(self, events: EventBuffer) -> OrderPointsHandler:
        return OrderPointsHandler(
            self._db,
            order_source=self._orders,
            product_points=self._products,
            settings_source=self._settings,
            notifications=events.notifications,
            events=events,
            clock=self._clock,
            observability=self._observability,
        )

    def _redemption_engine(self, events: EventBuffer) -> RedemptionEngine:
        return RedemptionEngine(
            self._db,
            settings_source=self._settings,
            order_source=self._orders,
            notifications=events.notifications,
            events=events,
            clock=self._clock,
        )

    def _expiry_engine(self, events: EventBuffer) -> ExpiryEngine:
        return ExpiryEngine(
            self._db,
            settings_source=self._settings,
            notifications=events.notifications,
            events=events,
            clock=self._clock,
        )

    def _admin_handler(self, events: EventBuffer) -> AdminAdjustmentHandler:
        return AdminAdjustmentHandler(
            self._db,
            settings_source=self._settings,
            notifications=events.notifications,
            events=events,
            clock=self._clock,
        )


__all__ = ["HistoryPage", "PointsService"]
