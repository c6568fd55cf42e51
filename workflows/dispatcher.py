"""
Background dispatch of pipeline runs.

Webhook and manual-refresh handlers must answer immediately, so they
submit runs here instead of awaiting them. Every submitted task is kept
referenced until it finishes, and anything that escapes the runner is
logged rather than lost in an unawaited coroutine.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Set

from workflows.pipeline import PipelineRunner, RunResult

logger = logging.getLogger(__name__)


class RunDispatcher:
    def __init__(self, runner: PipelineRunner):
        self.runner = runner
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, user_id: str, trigger: str) -> asyncio.Task:
        """Start a run in the background and return its task."""
        task = asyncio.create_task(self.runner.run(user_id, trigger), name=f"pipeline:{user_id}:{trigger}")
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        logger.debug(f"Submitted {trigger} run for {user_id}")
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning(f"Background run {task.get_name()} was cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background run {task.get_name()} raised: {error!r}")
            return
        result: Optional[RunResult] = task.result()
        if result is not None and result.status == "failed":
            logger.warning(f"Background run {task.get_name()} failed: {result.error}")

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight runs, cancelling whatever is left after ``timeout``."""
        if not self._tasks:
            return
        done, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
