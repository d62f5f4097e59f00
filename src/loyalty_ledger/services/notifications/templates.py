"""Notification templates for points lifecycle events."""

from __future__ import annotations

import html
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, Mapping


class NotificationKind(str, Enum):
    POINTS_AWARDED = "points_awarded"
    POINTS_EARNED = "points_earned"
    POINTS_REDEEMED = "points_redeemed"
    REDEMPTION_CANCELLED = "redemption_cancelled"
    POINTS_REFUNDED = "points_refunded"
    POINTS_EXPIRING = "points_expiring"
    POINTS_EXPIRED = "points_expired"
    POINTS_ADJUSTED = "points_adjusted"


@dataclass
class RenderedTemplate:
    subject: str
    text_body: str
    html_body: str


Renderer = Callable[[Mapping[str, Any], str | None], RenderedTemplate]

SIGNATURE = "The Rewards Team"


def _format_currency(amount: Any, currency: str) -> str:
    symbols = {
        "EUR": "€",
        "USD": "$",
        "GBP": "£",
    }
    try:
        numeric = f"{Decimal(str(amount)):.2f}"
    except (InvalidOperation, ValueError):
        numeric = str(amount)
    symbol = symbols.get(currency.upper(), "")
    return f"{symbol}{numeric}" if symbol else f"{numeric} {currency.upper()}"


def _points(payload: Mapping[str, Any], key: str = "points") -> int:
    try:
        return abs(int(payload.get(key) or 0))
    except (TypeError, ValueError):
        return 0


def _compose(subject: str, contact_name: str | None, lines: list[str]) -> RenderedTemplate:
    greeting = f"Hi {contact_name}," if contact_name else "Hi there,"
    text_body = "\n".join([greeting, "", *lines, "", "Thanks,", SIGNATURE])
    paragraphs = "".join(f"    <p>{html.escape(line)}</p>\n" for line in lines if line)
    html_body = f"""<html>
  <body>
    <p>{html.escape(greeting)}</p>
{paragraphs}    <p>Thanks,<br />{SIGNATURE}</p>
  </body>
</html>"""
    return RenderedTemplate(subject=subject, text_body=text_body, html_body=html_body)


def _balance_line(payload: Mapping[str, Any]) -> list[str]:
    if payload.get("balance") is None:
        return []
    return [f"Your available balance is now {int(payload['balance'])} points."]


def render_points_awarded(payload: Mapping[str, Any], contact_name: str | None) -> RenderedTemplate:
    points = _points(payload)
    order_id = payload.get("order_id", "")
    return _compose(
        f"You'll earn {points} points for order #{order_id}",
        contact_name,
        [
            f"Thanks for your order #{order_id}.",
            f"{points} points are pending and become spendable once the order is completed.",
        ],
    )


def render_points_earned(payload: Mapping[str, Any], contact_name: str | None) -> RenderedTemplate:
    points = _points(payload)
    order_id = payload.get("order_id", "")
    return _compose(
        f"{points} points added to your account",
        contact_name,
        [f"Order #{order_id} is complete and {points} points are now available.", *_balance_line(payload)],
    )


def render_points_redeemed(payload: Mapping[str, Any], contact_name: str | None) -> RenderedTemplate:
    points = _points(payload)
    discount = _format_currency(payload.get("discount_value", 0), str(payload.get("currency") or "USD"))
    lines = [f"You redeemed {points} points for a {discount} discount."]
    if payload.get("order_id"):
        lines.append(f"The discount was applied to order #{payload['order_id']}.")
    lines.extend(_balance_line(payload))
    return _compose(f"You redeemed {points} points", contact_name, lines)


def render_redemption_cancelled(payload: Mapping[str, Any], contact_name: str | None) -> RenderedTemplate:
    points = _points(payload)
    return _compose(
        f"{points} points returned to your account",
        contact_name,
        [f"Your redemption was cancelled and {points} points were restored.", *_balance_line(payload)],
    )


def render_points_refunded(payload: Mapping[str, Any], contact_name: str | None) -> RenderedTemplate:
    points = _points(payload)
    order_id = payload.get("order_id", "")
    lines = [f"Order #{order_id} was refunded, so {points} points were deducted."]
    restored = _points(payload, "restored_points")
    if restored:
        lines.append(f"{restored} points you redeemed on this order were returned.")
    return _compose(f"Points adjusted for refunded order #{order_id}", contact_name, lines)


def render_points_expiring(payload: Mapping[str, Any], contact_name: str | None) -> RenderedTemplate:
    points = _points(payload)
    expires_on = payload.get("expires_on") or "soon"
    return _compose(
        f"{points} points expire on {expires_on}",
        contact_name,
        [f"{points} of your points expire on {expires_on}.", "Redeem them before then to keep their value."],
    )


def render_points_expired(payload: Mapping[str, Any], contact_name: str | None) -> RenderedTemplate:
    points = _points(payload)
    reason = payload.get("reason") or "the points program expiry policy"
    return _compose(
        f"{points} points have expired",
        contact_name,
        [f"{points} points expired under {reason}.", *_balance_line(payload)],
    )


def render_points_adjusted(payload: Mapping[str, Any], contact_name: str | None) -> RenderedTemplate:
    points = int(payload.get("points") or 0)
    direction = "added to" if points >= 0 else "removed from"
    lines = [f"An administrator {direction} your account: {abs(points)} points."]
    if payload.get("reason"):
        lines.append(f"Reason: {payload['reason']}")
    lines.extend(_balance_line(payload))
    return _compose("Your points balance was adjusted", contact_name, lines)


TEMPLATES: dict[NotificationKind, Renderer] = {
    NotificationKind.POINTS_AWARDED: render_points_awarded,
    NotificationKind.POINTS_EARNED: render_points_earned,
    NotificationKind.POINTS_REDEEMED: render_points_redeemed,
    NotificationKind.REDEMPTION_CANCELLED: render_redemption_cancelled,
    NotificationKind.POINTS_REFUNDED: render_points_refunded,
    NotificationKind.POINTS_EXPIRING: render_points_expiring,
    NotificationKind.POINTS_EXPIRED: render_points_expired,
    NotificationKind.POINTS_ADJUSTED: render_points_adjusted,
}


def render_notification(
    kind: NotificationKind,
    payload: Mapping[str, Any],
    *,
    contact_name: str | None = None,
) -> RenderedTemplate:
    return TEMPLATES[kind](payload, contact_name)


__all__ = [
    "NotificationKind",
    "RenderedTemplate",
    "TEMPLATES",
    "render_notification",
]
