"""In-process counters exposed on the health endpoint."""

from .points import PointsObservabilityStore, PointsSnapshot, get_points_store
from .scheduler import SchedulerObservabilityStore, get_scheduler_store

__all__ = [
    "PointsObservabilityStore",
    "PointsSnapshot",
    "SchedulerObservabilityStore",
    "get_points_store",
    "get_scheduler_store",
]
