"""Earning arithmetic for orders and products."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from decimal import Decimal
from typing import TYPE_CHECKING

from .settings import PointsSettings

if TYPE_CHECKING:  # pragma: no cover
    from .sources import OrderSnapshot, ProductPointsRule, ProductPointsSource


def _floor(value: Decimal) -> int:
    if value <= 0:
        return 0
    return int(math.floor(value))


def product_points(rule: "ProductPointsRule", price: Decimal | None) -> int:
    """Points for a single unit of a product under its earning rule."""

    value = Decimal(rule.value)
    if rule.type == "percentage":
        if price is None:
            return 0
        return _floor(Decimal(price) * value / Decimal("100"))
    return _floor(value)


def global_order_points(total: Decimal, settings: PointsSettings) -> int:
    """Fallback earning applied to the order total when no product rule matched."""

    if total <= 0:
        return 0
    if settings.point_calculation_method == "percentage":
        return _floor(total * settings.points_percentage / Decimal("100"))
    return _floor(total * settings.points_per_dollar)


@dataclass(slots=True)
class OrderPointsBreakdown:
    total: int
    by_product: dict[str, int] = field(default_factory=dict)
    used_global_rate: bool = False


async def calculate_order_points(
    order: "OrderSnapshot",
    product_source: "ProductPointsSource",
    settings: PointsSettings,
) -> OrderPointsBreakdown:
    """Sum per-line product points, falling back to the global rate when none apply."""

    by_product: dict[str, int] = {}
    for item in order.line_items:
        if item.quantity <= 0:
            continue
        per_unit = await product_source.points_for(item.product_id, item.unit_price)
        if per_unit > 0:
            by_product[item.product_id] = by_product.get(item.product_id, 0) + per_unit * item.quantity

    product_total = sum(by_product.values())
    if product_total > 0:
        return OrderPointsBreakdown(total=product_total, by_product=by_product)

    return OrderPointsBreakdown(
        total=global_order_points(Decimal(order.total), settings),
        used_global_rate=True,
    )


__all__ = [
    "OrderPointsBreakdown",
    "calculate_order_points",
    "global_order_points",
    "product_points",
]
