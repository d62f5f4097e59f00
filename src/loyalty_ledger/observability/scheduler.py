"""Run counters for scheduled points jobs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Dict


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class JobRunState:
    job_id: str
    task: str
    runs: int = 0
    successes: int = 0
    failures: int = 0
    failed_attempts: int = 0
    retries: int = 0
    runtime_seconds: float = 0.0
    last_started_at: datetime | None = None
    last_finished_at: datetime | None = None
    last_error: str | None = None
    last_result: dict[str, object] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, object]:
        return {
            "job_id": self.job_id,
            "task": self.task,
            "runs": self.runs,
            "successes": self.successes,
            "failures": self.failures,
            "failed_attempts": self.failed_attempts,
            "retries": self.retries,
            "runtime_seconds": round(self.runtime_seconds, 3),
            "last_started_at": self.last_started_at.isoformat() if self.last_started_at else None,
            "last_finished_at": self.last_finished_at.isoformat() if self.last_finished_at else None,
            "last_error": self.last_error,
            "last_result": dict(self.last_result),
        }


class SchedulerObservabilityStore:
    """Thread-safe record of dispatches, retries and outcomes per job."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._jobs: Dict[str, JobRunState] = {}

    def _state(self, job_id: str, task: str) -> JobRunState:
        state = self._jobs.get(job_id)
        if state is None:
            state = self._jobs[job_id] = JobRunState(job_id=job_id, task=task)
        return state

    def record_dispatch(self, job_id: str, task: str) -> None:
        with self._lock:
            state = self._state(job_id, task)
            state.runs += 1
            state.last_started_at = _utcnow()

    def record_retry(self, job_id: str, task: str, *, error: str) -> None:
        with self._lock:
            state = self._state(job_id, task)
            state.failed_attempts += 1
            state.retries += 1
            state.last_error = error

    def record_success(
        self,
        job_id: str,
        task: str,
        *,
        runtime_seconds: float,
        result: dict[str, object] | None = None,
    ) -> None:
        with self._lock:
            state = self._state(job_id, task)
            state.successes += 1
            state.runtime_seconds += runtime_seconds
            state.last_finished_at = _utcnow()
            state.last_error = None
            state.last_result = dict(result or {})

    def record_failure(self, job_id: str, task: str, *, runtime_seconds: float, error: str) -> None:
        with self._lock:
            state = self._state(job_id, task)
            state.failures += 1
            state.failed_attempts += 1
            state.runtime_seconds += runtime_seconds
            state.last_finished_at = _utcnow()
            state.last_error = error

    def snapshot(self) -> Dict[str, Dict[str, object]]:
        with self._lock:
            return {job_id: state.as_dict() for job_id, state in self._jobs.items()}

    def reset(self) -> None:
        with self._lock:
            self._jobs.clear()


_STORE = SchedulerObservabilityStore()


def get_scheduler_store() -> SchedulerObservabilityStore:
    return _STORE


__all__ = ["JobRunState", "SchedulerObservabilityStore", "get_scheduler_store"]
