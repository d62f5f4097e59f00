"""Read-only collaborator contracts consumed by the points services."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Iterable, Literal, Mapping, Protocol
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_ledger.models.points import OrderPointsState, RefundPointsState

from .calculator import product_points


@dataclass(frozen=True, slots=True)
class OrderLineItem:
    product_id: str
    quantity: int
    line_total: Decimal

    @property
    def unit_price(self) -> Decimal:
        if self.quantity <= 0:
            return Decimal("0")
        return self.line_total / self.quantity


@dataclass(frozen=True, slots=True)
class OrderSnapshot:
    """What the points services need to know about a host-platform order."""

    order_id: str
    user_id: UUID
    total: Decimal
    status: str = "pending"
    currency: str = "USD"
    line_items: tuple[OrderLineItem, ...] = field(default_factory=tuple)


@dataclass(frozen=True, slots=True)
class RefundSnapshot:
    refund_id: str
    parent_order_id: str
    refund_total: Decimal


class OrderSource(Protocol):
    async def get_order(self, order_id: str) -> OrderSnapshot | None:
        ...

    async def get_refund(self, refund_id: str) -> RefundSnapshot | None:
        ...


class StaticOrderSource:
    """In-memory order source fed from request payloads or test fixtures."""

    def __init__(
        self,
        orders: Iterable[OrderSnapshot] = (),
        refunds: Iterable[RefundSnapshot] = (),
    ) -> None:
        self._orders = {order.order_id: order for order in orders}
        self._refunds = {refund.refund_id: refund for refund in refunds}

    def add_order(self, order: OrderSnapshot) -> None:
        self._orders[order.order_id] = order

    def add_refund(self, refund: RefundSnapshot) -> None:
        self._refunds[refund.refund_id] = refund

    async def get_order(self, order_id: str) -> OrderSnapshot | None:
        return self._orders.get(order_id)

    async def get_refund(self, refund_id: str) -> RefundSnapshot | None:
        return self._refunds.get(refund_id)


class RecordedOrderSource:
    """Order and refund snapshots rebuilt from the totals stored when their events were processed.

    Only orders delivered through the order event handlers are known here, which
    keeps member-facing callers from supplying their own order totals.
    """

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def get_order(self, order_id: str) -> OrderSnapshot | None:
        stmt = select(OrderPointsState).where(OrderPointsState.order_id == order_id)
        state = (await self._db.execute(stmt)).scalar_one_or_none()
        if state is None or state.order_total is None:
            return None
        if state.cancelled_at is not None:
            status = "cancelled"
        elif state.completed_at is not None:
            status = "completed"
        else:
            status = "pending"
        return OrderSnapshot(
            order_id=state.order_id,
            user_id=state.user_id,
            total=Decimal(str(state.order_total)),
            status=status,
            currency=state.currency or "USD",
        )

    async def get_refund(self, refund_id: str) -> RefundSnapshot | None:
        stmt = select(RefundPointsState).where(RefundPointsState.refund_id == refund_id)
        state = (await self._db.execute(stmt)).scalar_one_or_none()
        if state is None:
            return None
        return RefundSnapshot(
            refund_id=state.refund_id,
            parent_order_id=state.order_id,
            refund_total=Decimal(str(state.refund_total or 0)),
        )


@dataclass(frozen=True, slots=True)
class ProductPointsRule:
    """Product-level earning rule: a flat amount or a percentage of unit price."""

    type: Literal["fixed", "percentage"]
    value: Decimal


class ProductPointsSource(Protocol):
    async def points_for(self, product_id: str, price: Decimal | None = None) -> int:
        ...


class StaticProductPointsSource:
    """Product points backed by a mapping of product id to rule."""

    def __init__(self, rules: Mapping[str, ProductPointsRule] | None = None) -> None:
        self._rules = dict(rules or {})

    def set_rule(self, product_id: str, rule: ProductPointsRule) -> None:
        self._rules[product_id] = rule

    async def points_for(self, product_id: str, price: Decimal | None = None) -> int:
        rule = self._rules.get(product_id)
        if rule is None:
            return 0
        return product_points(rule, price)


class NotificationSink(Protocol):
    """Fire-and-forget notification dispatch; implementations never raise."""

    async def notify(self, user_id: UUID, kind: Any, payload: Mapping[str, Any]) -> None:
        ...


class NullNotificationSink:
    async def notify(self, user_id: UUID, kind: Any, payload: Mapping[str, Any]) -> None:
        return None


__all__ = [
    "NotificationSink",
    "NullNotificationSink",
    "OrderLineItem",
    "OrderSnapshot",
    "OrderSource",
    "ProductPointsRule",
    "ProductPointsSource",
    "RecordedOrderSource",
    "RefundSnapshot",
    "StaticOrderSource",
    "StaticProductPointsSource",
]
