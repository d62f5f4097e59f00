"""APScheduler runtime for the points expiry sweep and related jobs."""

from __future__ import annotations

import asyncio
import inspect
import random
import time
from importlib import import_module
from pathlib import Path
from typing import Any, Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from loguru import logger
from zoneinfo import ZoneInfo

from loyalty_ledger.observability.scheduler import SchedulerObservabilityStore, get_scheduler_store

from .config import ScheduleConfig, ScheduledJob, load_schedule

SessionFactory = Callable[[], Any]
JobCallable = Callable[..., Awaitable[Any]]


def resolve_task(path: str) -> JobCallable:
    module_name, _, attr = path.rpartition(".")
    if not module_name:
        raise ValueError(f"Invalid task path: {path}")
    func = getattr(import_module(module_name), attr, None)
    if func is None:
        raise AttributeError(f"Task {path} not found")
    if not inspect.iscoroutinefunction(func):
        raise TypeError(f"Task {path} must be an async function")
    return func


class ExpiryJobScheduler:
    """Registers configured jobs on an ``AsyncIOScheduler`` and retries failures with backoff."""

    def __init__(
        self,
        *,
        session_factory: SessionFactory,
        config_path: Path,
        observability: SchedulerObservabilityStore | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._session_factory = session_factory
        self._config_path = config_path
        self._observability = observability or get_scheduler_store()
        self._sleep = sleep
        self._config: ScheduleConfig | None = None
        self._scheduler: AsyncIOScheduler | None = None

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None

    def start(self) -> None:
        config = load_schedule(self._config_path)
        timezone = ZoneInfo(config.timezone)
        scheduler = AsyncIOScheduler(timezone=timezone)

        for job in config.jobs:
            if not job.enabled:
                logger.info("Skipping disabled scheduled job", job_id=job.id, task=job.task)
                continue
            scheduler.add_job(
                self.build_runner(job, resolve_task(job.task)),
                trigger=CronTrigger.from_crontab(job.cron, timezone=timezone),
                id=job.id,
                replace_existing=True,
            )
            logger.info("Registered scheduled job", job_id=job.id, task=job.task, cron=job.cron)

        scheduler.start()
        self._config = config
        self._scheduler = scheduler
        logger.info("Points job scheduler started", jobs=len(scheduler.get_jobs()))

    async def stop(self) -> None:
        if self._scheduler is None:
            return
        result = self._scheduler.shutdown(wait=False)
        if inspect.isawaitable(result):
            await result
        self._scheduler = None
        logger.info("Points job scheduler stopped")

    def build_runner(self, job: ScheduledJob, func: JobCallable) -> Callable[[], Awaitable[Any]]:
        async def _run() -> Any:
            policy = job.retry
            self._observability.record_dispatch(job.id, job.task)
            started = time.perf_counter()

            for attempt in range(1, policy.max_attempts + 1):
                try:
                    result = await func(session_factory=self._session_factory, **job.kwargs)
                except Exception as exc:
                    if attempt >= policy.max_attempts:
                        self._observability.record_failure(
                            job.id,
                            job.task,
                            runtime_seconds=time.perf_counter() - started,
                            error=str(exc),
                        )
                        logger.exception("Scheduled job failed", job_id=job.id, attempts=attempt, error=str(exc))
                        return None

                    delay = policy.delay_for(attempt)
                    if policy.jitter_seconds:
                        delay += random.uniform(0, policy.jitter_seconds)
                    self._observability.record_retry(job.id, job.task, error=str(exc))
                    logger.warning(
                        "Scheduled job retrying",
                        job_id=job.id,
                        attempt=attempt + 1,
                        delay_seconds=delay,
                        error=str(exc),
                    )
                    if delay:
                        await self._sleep(delay)
                    continue

                self._observability.record_success(
                    job.id,
                    job.task,
                    runtime_seconds=time.perf_counter() - started,
                    result=result if isinstance(result, dict) else None,
                )
                logger.info("Scheduled job completed", job_id=job.id, attempts=attempt)
                return result
            return None

        return _run

    def health(self) -> dict[str, object]:
        metrics = self._observability.snapshot()
        jobs = self._config.jobs if self._config else []
        return {
            "running": self.is_running,
            "jobs": [
                {
                    "id": job.id,
                    "task": job.task,
                    "cron": job.cron,
                    "enabled": job.enabled,
                    "metrics": metrics.get(job.id),
                }
                for job in jobs
            ],
        }


__all__ = ["ExpiryJobScheduler", "resolve_task"]
