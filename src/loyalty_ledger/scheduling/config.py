"""TOML schedule loader for recurring points jobs."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import tomllib


@dataclass(slots=True)
class RetryPolicy:
    max_attempts: int = 1
    base_delay_seconds: float = 5.0
    multiplier: float = 2.0
    max_delay_seconds: float = 60.0
    jitter_seconds: float = 1.0

    def delay_for(self, attempt: int) -> float:
        """Backoff before retrying after ``attempt`` failed, without jitter."""

        delay = self.base_delay_seconds * (self.multiplier ** (attempt - 1))
        if self.max_delay_seconds:
            delay = min(delay, self.max_delay_seconds)
        return max(delay, 0.0)


@dataclass(slots=True)
class ScheduledJob:
    id: str
    task: str
    cron: str
    kwargs: dict[str, Any] = field(default_factory=dict)
    enabled: bool = True
    retry: RetryPolicy = field(default_factory=RetryPolicy)


@dataclass(slots=True)
class ScheduleConfig:
    timezone: str
    jobs: list[ScheduledJob]


def _retry_policy(payload: dict[str, Any]) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=max(int(payload.get("max_attempts", 1) or 1), 1),
        base_delay_seconds=max(float(payload.get("base_delay_seconds", 5.0) or 0), 0.0),
        multiplier=max(float(payload.get("multiplier", 2.0) or 1), 1.0),
        max_delay_seconds=max(float(payload.get("max_delay_seconds", 60.0) or 0), 0.0),
        jitter_seconds=max(float(payload.get("jitter_seconds", 1.0) or 0), 0.0),
    )


def load_schedule(config_path: Path) -> ScheduleConfig:
    """Parse ``[jobs.<name>]`` tables; entries without a task or cron are ignored."""

    if not config_path.exists():
        raise FileNotFoundError(f"Schedule config not found: {config_path}")

    data = tomllib.loads(config_path.read_text())
    jobs: list[ScheduledJob] = []
    for key, payload in (data.get("jobs") or {}).items():
        if not isinstance(payload, dict):
            continue
        task = payload.get("task")
        cron = payload.get("cron")
        if not isinstance(task, str) or not isinstance(cron, str):
            continue
        kwargs = payload.get("kwargs")
        jobs.append(
            ScheduledJob(
                id=str(payload.get("id") or key),
                task=task,
                cron=cron,
                kwargs=kwargs if isinstance(kwargs, dict) else {},
                enabled=bool(payload.get("enabled", True)),
                retry=_retry_policy(payload.get("retry") or {}),
            )
        )

    return ScheduleConfig(timezone=str(data.get("timezone", "UTC")), jobs=jobs)


__all__ = ["RetryPolicy", "ScheduleConfig", "ScheduledJob", "load_schedule"]
