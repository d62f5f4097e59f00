"""Points program configuration passed explicitly into every component."""

from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Callable, Literal, Protocol

from loyalty_ledger.core.settings import Settings, get_settings


CalculationMethod = Literal["fixed", "percentage"]


@dataclass(frozen=True, slots=True)
class PointsSettings:
    """Immutable snapshot of the points program configuration."""

    points_enabled: bool = True
    conversion_rate: Decimal = Decimal("1")
    currency: str = "USD"
    point_calculation_method: CalculationMethod = "fixed"
    points_per_dollar: Decimal = Decimal("1")
    points_percentage: Decimal = Decimal("0")
    max_redeemable_percentage: Decimal = Decimal("20")
    enable_expiry: bool = False
    expiry_days: int = 365
    expiry_grace_days: int = 30

    def with_overrides(self, **changes: object) -> "PointsSettings":
        return replace(self, **changes)


class SettingsSource(Protocol):
    """Loads the current configuration; called once per operation, never cached."""

    def load(self) -> PointsSettings:
        ...


class StaticSettingsSource:
    """Settings source returning a fixed value, used by tests and scripts."""

    def __init__(self, value: PointsSettings | None = None) -> None:
        self.value = value or PointsSettings()

    def load(self) -> PointsSettings:
        return self.value


class ConfiguredSettingsSource:
    """Settings source backed by the environment-driven application settings."""

    def __init__(self, loader: Callable[[], Settings] = get_settings) -> None:
        self._loader = loader

    def load(self) -> PointsSettings:
        config = self._loader()
        return PointsSettings(
            points_enabled=config.points_enabled,
            conversion_rate=Decimal(config.points_conversion_rate),
            currency=config.points_currency,
            point_calculation_method=config.points_calculation_method,
            points_per_dollar=Decimal(config.points_per_dollar),
            points_percentage=Decimal(config.points_percentage),
            max_redeemable_percentage=Decimal(config.points_max_redeemable_percentage),
            enable_expiry=config.points_enable_expiry,
            expiry_days=config.points_expiry_days,
            expiry_grace_days=config.points_expiry_grace_days,
        )


__all__ = [
    "CalculationMethod",
    "ConfiguredSettingsSource",
    "PointsSettings",
    "SettingsSource",
    "StaticSettingsSource",
]
