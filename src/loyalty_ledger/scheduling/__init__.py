"""Recurring job scheduling."""

from .config import RetryPolicy, ScheduleConfig, ScheduledJob, load_schedule
from .runner import ExpiryJobScheduler, resolve_task

__all__ = ["ExpiryJobScheduler", "RetryPolicy", "ScheduleConfig", "ScheduledJob", "load_schedule", "resolve_task"]
