from pathlib import Path

import pytest

from loyalty_ledger.jobs.expiry import run_expiry_sweep
from loyalty_ledger.models.points import LedgerActionType
from loyalty_ledger.observability.scheduler import get_scheduler_store
from loyalty_ledger.scheduling import ExpiryJobScheduler, RetryPolicy, ScheduledJob, load_schedule, resolve_task
from loyalty_ledger.services.points import LedgerEntryDraft, LedgerStore, PointsSettings, StaticSettingsSource


def test_load_schedule_parses_jobs_and_retry_policy(tmp_path: Path) -> None:
    config_path = tmp_path / "schedules.toml"
    config_path.write_text(
        """
timezone = "Europe/Berlin"

[jobs.points_expiry_sweep]
task = "loyalty_ledger.jobs.expiry.run_expiry_sweep"
cron = "15 2 * * *"
kwargs = { force = true }

[jobs.points_expiry_sweep.retry]
max_attempts = 4
base_delay_seconds = 2
multiplier = 3
max_delay_seconds = 10
jitter_seconds = 0

[jobs.disabled]
task = "loyalty_ledger.jobs.expiry.run_expiry_sweep"
cron = "0 * * * *"
enabled = false

[jobs.incomplete]
task = "loyalty_ledger.jobs.expiry.run_expiry_sweep"
"""
    )

    config = load_schedule(config_path)

    assert config.timezone == "Europe/Berlin"
    assert [job.id for job in config.jobs] == ["points_expiry_sweep", "disabled"]
    sweep = config.jobs[0]
    assert sweep.kwargs == {"force": True}
    assert sweep.retry.max_attempts == 4
    assert [sweep.retry.delay_for(attempt) for attempt in (1, 2, 3)] == [2.0, 6.0, 10.0]
    assert config.jobs[1].enabled is False


def test_load_schedule_requires_existing_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_schedule(tmp_path / "missing.toml")


def test_bundled_schedule_resolves_tasks() -> None:
    config = load_schedule(Path(__file__).resolve().parents[1] / "config" / "schedules.toml")

    assert config.jobs
    for job in config.jobs:
        assert resolve_task(job.task) is run_expiry_sweep

    with pytest.raises(TypeError):
        resolve_task("loyalty_ledger.scheduling.config.load_schedule")
    with pytest.raises(AttributeError):
        resolve_task("loyalty_ledger.jobs.expiry.missing_task")


@pytest.mark.asyncio
async def test_runner_retries_with_backoff_and_records_success(tmp_path: Path) -> None:
    delays: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        delays.append(seconds)

    scheduler = ExpiryJobScheduler(session_factory=lambda: None, config_path=tmp_path / "noop.toml", sleep=fake_sleep)
    attempts = 0

    async def flaky_job(*, session_factory, batch: int) -> dict:
        nonlocal attempts
        attempts += 1
        if attempts < 3:
            raise RuntimeError("database unavailable")
        return {"batch": batch, "expired_entries": 2}

    job = ScheduledJob(
        id="job-flaky",
        task="tests.flaky",
        cron="* * * * *",
        kwargs={"batch": 7},
        retry=RetryPolicy(max_attempts=3, base_delay_seconds=1.0, multiplier=2.0, max_delay_seconds=30, jitter_seconds=0),
    )

    result = await scheduler.build_runner(job, flaky_job)()

    assert result == {"batch": 7, "expired_entries": 2}
    assert attempts == 3
    assert delays == [1.0, 2.0]
    state = get_scheduler_store().snapshot()["job-flaky"]
    assert state["runs"] == 1
    assert state["successes"] == 1
    assert state["retries"] == 2
    assert state["failed_attempts"] == 2
    assert state["last_error"] is None
    assert state["last_result"] == {"batch": 7, "expired_entries": 2}


@pytest.mark.asyncio
async def test_runner_records_final_failure(tmp_path: Path) -> None:
    async def no_sleep(seconds: float) -> None:
        return None

    scheduler = ExpiryJobScheduler(session_factory=lambda: None, config_path=tmp_path / "noop.toml", sleep=no_sleep)

    async def failing_job(*, session_factory) -> None:
        raise RuntimeError("boom")

    job = ScheduledJob(
        id="job-failure",
        task="tests.failing",
        cron="* * * * *",
        retry=RetryPolicy(max_attempts=2, base_delay_seconds=0, jitter_seconds=0),
    )

    assert await scheduler.build_runner(job, failing_job)() is None

    state = get_scheduler_store().snapshot()["job-failure"]
    assert state["failures"] == 1
    assert state["failed_attempts"] == 2
    assert state["last_error"] == "boom"
    assert scheduler.health() == {"running": False, "jobs": []}


@pytest.mark.asyncio
async def test_expiry_job_skips_when_disabled_and_runs_when_forced(session_factory, make_user) -> None:
    user = await make_user()
    async with session_factory() as session:
        await LedgerStore(session).append(
            LedgerEntryDraft(user_id=user.id, points_amount=10, action_type=LedgerActionType.BONUS)
        )
        await session.commit()

    disabled = StaticSettingsSource(PointsSettings(enable_expiry=False))
    skipped = await run_expiry_sweep(session_factory=session_factory, settings_source=disabled)
    assert skipped == {"skipped": True, "reason": "expiry_disabled"}

    forced = await run_expiry_sweep(session_factory=session_factory, settings_source=disabled, force=True)
    assert forced["skipped"] is False
    assert forced["users"] == 1
    assert forced["expired_entries"] == 0

    enabled = StaticSettingsSource(PointsSettings(enable_expiry=True))
    summary = await run_expiry_sweep(session_factory=session_factory, settings_source=enabled, user_id=user.id)
    assert summary["skipped"] is False
    assert summary["users"] == 1
