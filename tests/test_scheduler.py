"""
Tests for the durable job queue and the weekly re-scrape scheduler.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from workflows.pipeline import RunResult
from workflows.scheduler import (
    IMMEDIATE_JOB,
    RECURRING_JOB,
    Scheduler,
    SchedulerConfig,
    next_run_at,
    stagger_hours,
)

NOW = datetime(2026, 10, 1, 9, 0, tzinfo=timezone.utc)


def completed(user_id="u1", trigger="schedule") -> RunResult:
    result = RunResult(run_id="r", user_id=user_id, trigger=trigger)
    result.complete("completed")
    return result


@pytest.fixture
def runner():
    mock = MagicMock()
    mock.run = AsyncMock(side_effect=lambda user_id, trigger: completed(user_id, trigger))
    return mock


@pytest.fixture
def scheduler(job_store, runner, store):
    return Scheduler(job_store, runner, store, SchedulerConfig(poll_seconds=0.01))


class TestJobStore:
    """Queue operations."""

    @pytest.mark.asyncio
    async def test_schedule_replaces_pending_job(self, job_store):
        await job_store.schedule(RECURRING_JOB, "u1", NOW)
        await job_store.schedule(RECURRING_JOB, "u1", NOW + timedelta(days=1))

        pending = await job_store.get_pending(RECURRING_JOB, "u1")
        assert len(pending) == 1
        assert pending[0].run_at == NOW + timedelta(days=1)

    @pytest.mark.asyncio
    async def test_keep_pending_when_asked(self, job_store):
        await job_store.schedule(IMMEDIATE_JOB, "u1", NOW, cancel_pending=False)
        await job_store.schedule(IMMEDIATE_JOB, "u1", NOW, cancel_pending=False)
        assert len(await job_store.get_pending(IMMEDIATE_JOB, "u1")) == 2

    @pytest.mark.asyncio
    async def test_claim_due_only_claims_once(self, job_store):
        await job_store.schedule(RECURRING_JOB, "u1", NOW - timedelta(minutes=1), data={"k": 1})
        await job_store.schedule(RECURRING_JOB, "u2", NOW + timedelta(hours=1))

        first = await job_store.claim_due(10, now=NOW)
        second = await job_store.claim_due(10, now=NOW)

        assert [(j.user_id, j.status, j.attempts, j.data) for j in first] == [("u1", "running", 1, {"k": 1})]
        assert second == []

    @pytest.mark.asyncio
    async def test_reset_running_requeues(self, job_store):
        await job_store.schedule(RECURRING_JOB, "u1", NOW)
        await job_store.claim_due(10, now=NOW)

        assert await job_store.reset_running() == 1
        assert len(await job_store.get_pending(RECURRING_JOB, "u1")) == 1

    @pytest.mark.asyncio
    async def test_cancel(self, job_store):
        await job_store.schedule(RECURRING_JOB, "u1", NOW)
        assert await job_store.cancel(RECURRING_JOB, "u1") == 1
        assert await job_store.get_pending(RECURRING_JOB, "u1") == []


class TestStagger:

    def test_stable_and_bounded(self):
        assert stagger_hours("user-123") == stagger_hours("user-123")
        assert all(0 <= stagger_hours(f"user-{i}") < 24 for i in range(100))

    def test_next_run_at(self):
        assert stagger_hours("a") == 97 % 24
        assert next_run_at("a", NOW) == NOW + timedelta(days=7, hours=1)


class TestScheduler:
    """Recurring and immediate jobs."""

    @pytest.mark.asyncio
    async def test_two_schedules_leave_one_pending(self, scheduler, job_store):
        await scheduler.schedule_recurring("u1")
        await scheduler.schedule_recurring("u1")
        assert len(await job_store.get_pending(RECURRING_JOB, "u1")) == 1

    @pytest.mark.asyncio
    async def test_trigger_now_keeps_recurring_job(self, scheduler, job_store):
        await scheduler.schedule_recurring("u1")
        await scheduler.trigger_now("u1", "admin")

        assert len(await job_store.get_pending(RECURRING_JOB, "u1")) == 1
        immediate = await job_store.get_pending(IMMEDIATE_JOB, "u1")
        assert immediate[0].data == {"trigger": "admin"}

    @pytest.mark.asyncio
    async def test_bootstrap_fills_missing_users_only(self, scheduler, store, job_store):
        await store.upsert_user("u1", "a")
        await store.upsert_user("u2", "b")
        await scheduler.schedule_recurring("u1")

        assert await scheduler.bootstrap() == 1
        assert await scheduler.bootstrap() == 0
        assert len(await job_store.get_pending(RECURRING_JOB)) == 2

    @pytest.mark.asyncio
    async def test_recurring_job_runs_and_reschedules(self, scheduler, job_store, runner):
        await job_store.schedule(RECURRING_JOB, "u1", NOW - timedelta(minutes=5))

        assert await scheduler.run_due() == 1

        runner.run.assert_awaited_once_with("u1", "schedule")
        pending = await job_store.get_pending(RECURRING_JOB, "u1")
        assert len(pending) == 1
        assert pending[0].run_at > datetime.now(timezone.utc) + timedelta(days=6)

    @pytest.mark.asyncio
    async def test_failed_run_marks_job_failed_and_still_reschedules(self, scheduler, job_store, runner):
        failed = RunResult(run_id="r", user_id="u1", trigger="schedule", error="No GitHub username set for user")
        failed.complete("failed")
        runner.run = AsyncMock(return_value=failed)
        job_id = await job_store.schedule(RECURRING_JOB, "u1", NOW)

        await scheduler.run_due()

        cursor = await job_store.db.execute("SELECT status, last_error FROM scheduled_jobs WHERE id = ?", (job_id,))
        row = await cursor.fetchone()
        assert row["status"] == "failed"
        assert row["last_error"] == "No GitHub username set for user"
        assert len(await job_store.get_pending(RECURRING_JOB, "u1")) == 1

    @pytest.mark.asyncio
    async def test_immediate_job_uses_its_trigger_and_is_not_rescheduled(self, scheduler, job_store, runner):
        await scheduler.trigger_now("u1", "manual")

        await scheduler.run_due()

        runner.run.assert_awaited_once_with("u1", "manual")
        assert await job_store.get_pending(IMMEDIATE_JOB, "u1") == []
        assert await job_store.get_pending(RECURRING_JOB, "u1") == []

    @pytest.mark.asyncio
    async def test_worker_loop_processes_and_stops(self, scheduler, runner):
        await scheduler.trigger_now("u1")
        scheduler.start()
        for _ in range(100):
            if runner.run.await_count:
                break
            await asyncio.sleep(0.01)
        await scheduler.stop()
        assert runner.run.await_count == 1

    def test_config_from_env(self, monkeypatch):
        monkeypatch.setenv("SCHEDULER_ENABLED", "false")
        monkeypatch.setenv("SCHEDULER_POLL_SECONDS", "5")
        config = SchedulerConfig.from_env()
        assert config.enabled is False
        assert config.poll_seconds == 5.0
