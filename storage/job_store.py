"""
Durable job queue for the re-scrape scheduler.

Jobs survive process restarts: a job is a row with a name, a user, a due
time and a status (pending -> running -> done | failed, or cancelled).
The scheduler claims due rows atomically, so two workers pointed at the
same database never run the same job twice.

Usage:
    jobs = JobStore("skills.db")
    await jobs.initialize()

    await jobs.schedule("rescrape-github", "u1", run_at)
    due = await jobs.claim_due(limit=5)
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

import aiosqlite

from storage.connection import open_database

logger = logging.getLogger(__name__)


# Own migrations table so the queue can share a file with SkillStore
MIGRATIONS = {
    1: """
    CREATE TABLE IF NOT EXISTS job_store_migrations (
        version INTEGER PRIMARY KEY,
        applied_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS scheduled_jobs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        user_id TEXT NOT NULL,
        data TEXT NOT NULL DEFAULT '{}',  -- JSON
        run_at TEXT NOT NULL,
        status TEXT NOT NULL,  -- pending, running, done, failed, cancelled
        attempts INTEGER NOT NULL DEFAULT 0,
        last_error TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_jobs_due ON scheduled_jobs(status, run_at);
    CREATE INDEX IF NOT EXISTS idx_jobs_user ON scheduled_jobs(name, user_id, status);
    """,
}


@dataclass
class ScheduledJob:
    """One row of the job queue"""
    id: int
    name: str
    user_id: str
    run_at: datetime
    status: str
    attempts: int = 0
    data: Dict[str, Any] = field(default_factory=dict)
    last_error: Optional[str] = None


class JobStore:
    """Async SQLite-backed job queue."""

    def __init__(self, db_path: str | Path = "skills.db"):
        self.db_path = Path(db_path)
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        self._db = await open_database(self.db_path, foreign_keys=False)
        await self._apply_migrations()
        logger.info(f"JobStore initialized: {self.db_path}")

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if not self._db:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        return self._db

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        db = self.db
        async with self._lock:
            try:
                await db.execute("BEGIN IMMEDIATE")
                yield db
                await db.commit()
            except Exception:
                await db.rollback()
                raise

    async def _apply_migrations(self) -> None:
        db = self.db
        try:
            cursor = await db.execute("SELECT MAX(version) FROM job_store_migrations")
            row = await cursor.fetchone()
            current_version = row[0] if row and row[0] else 0
        except aiosqlite.OperationalError:
            current_version = 0

        for version in sorted(MIGRATIONS.keys()):
            if version <= current_version:
                continue
            await db.executescript(MIGRATIONS[version])
            async with self.transaction() as conn:
                await conn.execute(
                    "INSERT INTO job_store_migrations (version, applied_at) VALUES (?, ?)",
                    (version, datetime.now(timezone.utc).isoformat()),
                )
            logger.info(f"Job store migration v{version} applied")

    # =========================================================================
    # QUEUE OPERATIONS
    # =========================================================================

    async def schedule(
        self,
        name: str,
        user_id: str,
        run_at: datetime,
        data: Optional[Dict[str, Any]] = None,
        cancel_pending: bool = True,
    ) -> int:
        """
        Enqueue a job. With ``cancel_pending`` any pending job with the same
        name for the same user is cancelled first, in the same transaction.
        """
        now = datetime.now(timezone.utc).isoformat()
        async with self.transaction() as conn:
            if cancel_pending:
                await conn.execute(
                    """
                    UPDATE scheduled_jobs SET status = 'cancelled', updated_at = ?
                    WHERE name = ? AND user_id = ? AND status = 'pending'
                    """,
                    (now, name, user_id),
                )
            cursor = await conn.execute(
                """
                INSERT INTO scheduled_jobs (name, user_id, data, run_at, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, 'pending', ?, ?)
                """,
                (name, user_id, json.dumps(data or {}), run_at.isoformat(), now, now),
            )
            return cursor.lastrowid

    async def cancel(self, name: str, user_id: str) -> int:
        async with self.transaction() as conn:
            cursor = await conn.execute(
                """
                UPDATE scheduled_jobs SET status = 'cancelled', updated_at = ?
                WHERE name = ? AND user_id = ? AND status = 'pending'
                """,
                (datetime.now(timezone.utc).isoformat(), name, user_id),
            )
            return cursor.rowcount

    async def get_pending(self, name: str, user_id: Optional[str] = None) -> List[ScheduledJob]:
        query = "SELECT * FROM scheduled_jobs WHERE name = ? AND status = 'pending'"
        params: List[Any] = [name]
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        cursor = await self.db.execute(query + " ORDER BY run_at", params)
        return [self._row_to_job(row) for row in await cursor.fetchall()]

    async def claim_due(self, limit: int, now: Optional[datetime] = None) -> List[ScheduledJob]:
        """Mark up to ``limit`` due pending jobs as running and return them."""
        now_iso = (now or datetime.now(timezone.utc)).isoformat()
        async with self.transaction() as conn:
            cursor = await conn.execute(
                """
                SELECT * FROM scheduled_jobs
                WHERE status = 'pending' AND run_at <= ?
                ORDER BY run_at, id
                LIMIT ?
                """,
                (now_iso, limit),
            )
            jobs = [self._row_to_job(row) for row in await cursor.fetchall()]
            for job in jobs:
                await conn.execute(
                    """
                    UPDATE scheduled_jobs
                    SET status = 'running', attempts = attempts + 1, updated_at = ?
                    WHERE id = ?
                    """,
                    (now_iso, job.id),
                )
                job.status = "running"
                job.attempts += 1
        return jobs

    async def mark_done(self, job_id: int) -> None:
        await self._finish(job_id, "done", None)

    async def mark_failed(self, job_id: int, error: str) -> None:
        await self._finish(job_id, "failed", error)

    async def _finish(self, job_id: int, status: str, error: Optional[str]) -> None:
        async with self.transaction() as conn:
            await conn.execute(
                "UPDATE scheduled_jobs SET status = ?, last_error = ?, updated_at = ? WHERE id = ?",
                (status, error, datetime.now(timezone.utc).isoformat(), job_id),
            )

    async def reset_running(self) -> int:
        """Return jobs left ``running`` by a dead process to the queue."""
        async with self.transaction() as conn:
            cursor = await conn.execute(
                "UPDATE scheduled_jobs SET status = 'pending', updated_at = ? WHERE status = 'running'",
                (datetime.now(timezone.utc).isoformat(),),
            )
            count = cursor.rowcount
        if count:
            logger.warning(f"Reset {count} interrupted job(s) to pending")
        return count

    @staticmethod
    def _row_to_job(row: aiosqlite.Row) -> ScheduledJob:
        return ScheduledJob(
            id=row["id"],
            name=row["name"],
            user_id=row["user_id"],
            run_at=datetime.fromisoformat(row["run_at"]),
            status=row["status"],
            attempts=row["attempts"],
            data=json.loads(row["data"]),
            last_error=row["last_error"],
        )
