"""Points ledger services."""

from .admin import (
    AdjustmentResult,
    AdminAdjustmentHandler,
    AuditLogFilters,
    BulkAssignOutcome,
    BulkAssignRow,
    require_admin,
)
from .balances import BalanceCalculator, BalanceSummary
from .events import EventBuffer, NotificationBuffer, PointsEvent, PointsEventBus, PointsEventType, get_event_bus
from .expiry import (
    ExpiredSummary,
    ExpiryEngine,
    ExpiryForecastItem,
    ExpiryRuleConfig,
    ExpirySweepResult,
    ManualExpiryResult,
)
from .ledger import LedgerEntryDraft, LedgerQuery, LedgerStore
from .locks import UserLockRegistry, get_user_lock_registry, user_balance_guard
from .orders import OrderPointsHandler, OrderPointsSummary
from .redemptions import RedemptionEngine, RedemptionResult, RestoreResult
from .service import HistoryPage, PointsService
from .settings import ConfiguredSettingsSource, PointsSettings, SettingsSource, StaticSettingsSource
from .sources import (
    NotificationSink,
    NullNotificationSink,
    OrderLineItem,
    OrderSnapshot,
    OrderSource,
    ProductPointsRule,
    ProductPointsSource,
    RecordedOrderSource,
    RefundSnapshot,
    StaticOrderSource,
    StaticProductPointsSource,
)

__all__ = [
    "AdjustmentResult",
    "AdminAdjustmentHandler",
    "AuditLogFilters",
    "BalanceCalculator",
    "BalanceSummary",
    "BulkAssignOutcome",
    "BulkAssignRow",
    "ConfiguredSettingsSource",
    "EventBuffer",
    "ExpiredSummary",
    "ExpiryEngine",
    "ExpiryForecastItem",
    "ExpiryRuleConfig",
    "ExpirySweepResult",
    "HistoryPage",
    "LedgerEntryDraft",
    "LedgerQuery",
    "LedgerStore",
    "ManualExpiryResult",
    "NotificationBuffer",
    "NotificationSink",
    "NullNotificationSink",
    "OrderLineItem",
    "OrderPointsHandler",
    "OrderPointsSummary",
    "OrderSnapshot",
    "OrderSource",
    "PointsEvent",
    "PointsEventBus",
    "PointsEventType",
    "PointsService",
    "PointsSettings",
    "ProductPointsRule",
    "ProductPointsSource",
    "RecordedOrderSource",
    "RedemptionEngine",
    "RedemptionResult",
    "RefundSnapshot",
    "RestoreResult",
    "SettingsSource",
    "StaticOrderSource",
    "StaticProductPointsSource",
    "StaticSettingsSource",
    "UserLockRegistry",
    "get_event_bus",
    "get_user_lock_registry",
    "require_admin",
    "user_balance_guard",
]
