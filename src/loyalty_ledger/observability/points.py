from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict


@dataclass
class PointsSnapshot:
    ledger: Dict[str, int]
    handlers: Dict[str, Dict[str, int]]
    redemptions: Dict[str, int]
    expiry: Dict[str, int]

    def as_dict(self) -> Dict[str, object]:
        return {
            "ledger": dict(self.ledger),
            "handlers": {key: dict(value) for key, value in self.handlers.items()},
            "redemptions": dict(self.redemptions),
            "expiry": dict(self.expiry),
        }


class PointsObservabilityStore:
    """Counters for ledger writes, order handler outcomes and sweeps."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._ledger: Dict[str, int] = defaultdict(int)
        self._handlers: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._redemptions: Dict[str, int] = defaultdict(int)
        self._expiry: Dict[str, int] = defaultdict(int)

    def record_ledger_event(self, event_type: str) -> None:
        with self._lock:
            self._ledger[event_type] += 1

    def record_handler_result(self, handler: str, outcome: str) -> None:
        with self._lock:
            self._handlers[handler][outcome] += 1

    def record_redemption(self, outcome: str) -> None:
        with self._lock:
            self._redemptions[outcome] += 1

    def record_expiry(self, *, expired: int, consumed: int = 0, warned: int = 0, errors: int = 0) -> None:
        with self._lock:
            self._expiry["sweeps"] += 1
            self._expiry["expired_entries"] += expired
            self._expiry["consumed_entries"] += consumed
            self._expiry["warnings"] += warned
            self._expiry["errors"] += errors

    def snapshot(self) -> PointsSnapshot:
        with self._lock:
            return PointsSnapshot(
                ledger=dict(self._ledger),
                handlers={key: dict(value) for key, value in self._handlers.items()},
                redemptions=dict(self._redemptions),
                expiry=dict(self._expiry),
            )

    def reset(self) -> None:
        with self._lock:
            self._ledger.clear()
            self._handlers.clear()
            self._redemptions.clear()
            self._expiry.clear()


_STORE = PointsObservabilityStore()


def get_points_store() -> PointsObservabilityStore:
    return _STORE


__all__ = ["PointsObservabilityStore", "PointsSnapshot", "get_points_store"]
