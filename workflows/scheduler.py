"""
Re-scrape Scheduler

Re-runs the skill pipeline for every user roughly once a week. Jobs live
in the durable JobStore, so a restart loses nothing; bootstrap() fills in
any user who lacks a pending job.

Each user's recurring run is offset by a stable 0-23 hour stagger derived
from the user id, spreading runs across the day instead of bursting the
GitHub quota at one instant.

Usage:
    scheduler = Scheduler(jobs, runner, store, SchedulerConfig.from_env())
    await scheduler.bootstrap()
    scheduler.start()          # polling worker
    ...
    await scheduler.stop()
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from storage.job_store import JobStore, ScheduledJob
from storage.skill_store import SkillStore
from workflows.pipeline import PipelineRunner, Trigger

logger = logging.getLogger(__name__)


RECURRING_JOB = "rescrape-github"
IMMEDIATE_JOB = "rescrape-github-now"


@dataclass
class SchedulerConfig:
    enabled: bool = True
    poll_seconds: float = 60.0
    max_concurrency: int = 5
    interval: timedelta = timedelta(days=7)

    @classmethod
    def from_env(cls) -> SchedulerConfig:
        return cls(
            enabled=os.getenv("SCHEDULER_ENABLED", "true").lower() == "true",
            poll_seconds=float(os.getenv("SCHEDULER_POLL_SECONDS", "60")),
            max_concurrency=int(os.getenv("SCHEDULER_MAX_CONCURRENCY", "5")),
        )


def stagger_hours(user_id: str) -> int:
    """Stable per-user offset in whole hours, 0-23."""
    return sum(ord(ch) for ch in user_id) % 24


def next_run_at(user_id: str, now: datetime, interval: timedelta = timedelta(days=7)) -> datetime:
    return now + interval + timedelta(hours=stagger_hours(user_id))


class Scheduler:
    def __init__(
        self,
        jobs: JobStore,
        runner: PipelineRunner,
        store: SkillStore,
        config: Optional[SchedulerConfig] = None,
    ):
        self.jobs = jobs
        self.runner = runner
        self.store = store
        self.config = config or SchedulerConfig()
        self._task: Optional[asyncio.Task] = None

    async def schedule_recurring(self, user_id: str, now: Optional[datetime] = None) -> datetime:
        """Replace the user's pending recurring job with one due a week (plus stagger) from now."""
        run_at = next_run_at(user_id, now or datetime.now(timezone.utc), self.config.interval)
        await self.jobs.schedule(RECURRING_JOB, user_id, run_at, cancel_pending=True)
        logger.info(f"Scheduled {RECURRING_JOB} for {user_id} at {run_at.isoformat()}")
        return run_at

    async def trigger_now(self, user_id: str, trigger: str = Trigger.ADMIN.value) -> int:
        """Queue an immediate run without touching the recurring job."""
        job_id = await self.jobs.schedule(
            IMMEDIATE_JOB,
            user_id,
            datetime.now(timezone.utc),
            data={"trigger": Trigger(trigger).value},
        )
        logger.info(f"Queued immediate run for {user_id} (job {job_id})")
        return job_id

    async def bootstrap(self) -> int:
        """
        Give every known user a pending recurring job if they lack one.
        Returns the number of jobs created.
        """
        await self.jobs.reset_running()

        created = 0
        for user_id in await self.store.list_user_ids():
            if await self.jobs.get_pending(RECURRING_JOB, user_id):
                continue
            await self.schedule_recurring(user_id)
            created += 1

        logger.info(f"Scheduler bootstrap: {created} recurring job(s) created")
        return created

    # =========================================================================
    # WORKER
    # =========================================================================

    async def run_due(self, now: Optional[datetime] = None) -> int:
        """Claim and execute due jobs, up to max_concurrency at once."""
        jobs = await self.jobs.claim_due(self.config.max_concurrency, now=now)
        if jobs:
            await asyncio.gather(*(self._execute(job) for job in jobs))
        return len(jobs)

    async def _execute(self, job: ScheduledJob) -> None:
        trigger = Trigger.SCHEDULE.value if job.name == RECURRING_JOB else job.data.get("trigger", Trigger.ADMIN.value)
        try:
            result = await self.runner.run(job.user_id, trigger)
            if result is not None and result.status == "failed":
                await self.jobs.mark_failed(job.id, result.error or "run failed")
                logger.warning(f"Job {job.name} for {job.user_id} failed: {result.error}")
            else:
                await self.jobs.mark_done(job.id)
        except Exception as e:
            logger.error(f"Job {job.name} for {job.user_id} raised: {e}")
            await self.jobs.mark_failed(job.id, str(e))
        finally:
            if job.name == RECURRING_JOB:
                await self.schedule_recurring(job.user_id)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop(), name="scheduler")
            logger.info(f"Scheduler started (poll every {self.config.poll_seconds}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Scheduler stopped")

    async def _loop(self) -> None:
        while True:
            try:
                processed = await self.run_due()
                if processed:
                    logger.debug(f"Scheduler processed {processed} job(s)")
            except Exception as e:
                logger.error(f"Scheduler tick failed: {e}")
            await asyncio.sleep(self.config.poll_seconds)
