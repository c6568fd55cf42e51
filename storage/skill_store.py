"""
Skill Storage Layer

Persistent SQLite storage for everything the skill-verification pipeline
reads and writes:

Tables:
  - users: platform users and their GitHub username
  - user_repos: repositories a user has linked, in link order
  - skill_claims: the externally visible verified-skill claims
  - skill_evidence: aggregated evidence behind each claim (JSON)
  - webhook_subscriptions: per-repository webhook registrations
  - pipeline_runs: append-only audit trail of pipeline invocations
  - notifications: change notifications for users
  - profile_update_history: per-run audit entries
  - narrative_cache: README SHA -> generated summary, shared by all users
  - schema_migrations: applied migrations

Usage:
    store = SkillStore("skills.db")
    await store.initialize()

    await store.upsert_user("u1", github_username="octocat")
    await store.link_repos("u1", [("octocat", "hello-world")])

    run_id = await store.begin_run("u1", "schedule")
    ...
    await store.complete_run(run_id, changes_found=True, repos_scraped=3)
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Tuple

import aiosqlite

from storage.connection import open_database

logger = logging.getLogger(__name__)


# =============================================================================
# SCHEMA VERSION
# =============================================================================

CURRENT_SCHEMA_VERSION = 3

MIGRATIONS = {
    1: """
    CREATE TABLE IF NOT EXISTS schema_migrations (
        version INTEGER PRIMARY KEY,
        applied_at TEXT NOT NULL,
        description TEXT
    );

    CREATE TABLE IF NOT EXISTS users (
        user_id TEXT PRIMARY KEY,
        github_username TEXT,
        last_github_synced_at TEXT,
        created_at TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_users_github_username
        ON users(github_username COLLATE NOCASE);

    CREATE TABLE IF NOT EXISTS user_repos (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        owner TEXT NOT NULL,
        repo_name TEXT NOT NULL,
        linked_at TEXT NOT NULL,
        UNIQUE(user_id, owner, repo_name),
        FOREIGN KEY (user_id) REFERENCES users(user_id) ON DELETE CASCADE
    );

    CREATE TABLE IF NOT EXISTS skill_claims (
        user_id TEXT NOT NULL,
        skill_name TEXT NOT NULL,
        verified INTEGER NOT NULL,
        confidence_score INTEGER NOT NULL,
        display_label TEXT NOT NULL,
        source TEXT NOT NULL DEFAULT 'github',  -- github, linkedin, both
        active INTEGER NOT NULL DEFAULT 1,
        verified_at TEXT,
        last_updated TEXT NOT NULL,
        created_at TEXT NOT NULL,
        PRIMARY KEY (user_id, skill_name)
    );

    CREATE TABLE IF NOT EXISTS skill_evidence (
        user_id TEXT NOT NULL,
        skill_name TEXT NOT NULL,
        evidence TEXT NOT NULL,  -- JSON
        readme_sha TEXT,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (user_id, skill_name)
    );

    CREATE TABLE IF NOT EXISTS narrative_cache (
        readme_sha TEXT PRIMARY KEY,
        summary TEXT NOT NULL,
        created_at TEXT NOT NULL
    );
    """,
    2: """
    CREATE TABLE IF NOT EXISTS webhook_subscriptions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        repo_owner TEXT NOT NULL,
        repo_name TEXT NOT NULL,
        webhook_id INTEGER NOT NULL,
        secret TEXT NOT NULL,
        events TEXT NOT NULL,  -- JSON array
        active INTEGER NOT NULL DEFAULT 1,
        last_triggered_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE(repo_owner, repo_name)
    );

    CREATE INDEX IF NOT EXISTS idx_subscriptions_user ON webhook_subscriptions(user_id, active);

    CREATE TABLE IF NOT EXISTS pipeline_runs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        run_id TEXT NOT NULL UNIQUE,
        user_id TEXT NOT NULL,
        triggered_by TEXT NOT NULL,  -- webhook, schedule, manual, admin
        status TEXT NOT NULL,  -- running, completed, failed
        repos_scraped INTEGER NOT NULL DEFAULT 0,
        changes_found INTEGER,
        error_message TEXT,
        started_at TEXT NOT NULL,
        completed_at TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_runs_user_status ON pipeline_runs(user_id, status);
    CREATE INDEX IF NOT EXISTS idx_runs_started_at ON pipeline_runs(started_at);
    """,
    3: """
    CREATE TABLE IF NOT EXISTS notifications (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        type TEXT NOT NULL,
        message TEXT NOT NULL,
        payload TEXT NOT NULL,  -- JSON
        read INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id, read);

    CREATE TABLE IF NOT EXISTS profile_update_history (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        update_type TEXT NOT NULL,  -- github_webhook, scheduled_rescrape, manual_refresh
        changes_detected TEXT NOT NULL,  -- JSON
        skills_added TEXT NOT NULL,  -- JSON array
        skills_strengthened TEXT NOT NULL,  -- JSON array
        triggered_by TEXT NOT NULL,
        repos_scraped INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_history_user ON profile_update_history(user_id, created_at);
    """,
}

# Retention windows used by purge_expired()
RUN_RETENTION = timedelta(days=30)
NOTIFICATION_RETENTION = timedelta(days=60)
HISTORY_RETENTION = timedelta(days=90)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class StoredUser:
    """A platform user as seen by the pipeline"""
    user_id: str
    github_username: Optional[str]
    last_github_synced_at: Optional[datetime] = None


@dataclass
class ClaimUpsert:
    """One scored skill to be written by a pipeline run"""
    skill_name: str
    verified: bool
    confidence_score: int
    display_label: str
    evidence: Dict[str, Any]
    readme_sha: Optional[str] = None


@dataclass
class StoredClaim:
    """A verified-skill claim joined with its evidence"""
    user_id: str
    skill_name: str
    verified: bool
    confidence_score: int
    display_label: str
    source: str
    active: bool
    verified_at: Optional[datetime]
    last_updated: datetime
    evidence: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SubscriptionRecord:
    """A webhook registered on one repository"""
    id: int
    user_id: str
    repo_owner: str
    repo_name: str
    webhook_id: int
    secret: str
    events: List[str]
    active: bool
    last_triggered_at: Optional[datetime] = None

    @property
    def full_name(self) -> str:
        return f"{self.repo_owner}/{self.repo_name}"


@dataclass
class PipelineRunRecord:
    """Audit record for one pipeline invocation"""
    run_id: str
    user_id: str
    triggered_by: str
    status: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    changes_found: Optional[bool] = None
    repos_scraped: int = 0
    error_message: Optional[str] = None


@dataclass
class ChangeNotification:
    """A notification created when a run detects added or strengthened skills"""
    id: int
    user_id: str
    type: str
    message: str
    payload: Dict[str, Any]
    read: bool
    created_at: datetime


# =============================================================================
# SKILL STORE
# =============================================================================

class SkillStore:
    """
    Async SQLite storage for users, skill claims and pipeline audit data.

    Features:
    - Automatic schema migrations
    - Lock-guarded transactions
    - JSON serialization for evidence and payloads
    - Per-user running guard for pipeline runs
    """

    def __init__(self, db_path: str | Path = "skills.db"):
        self.db_path = Path(db_path)
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Open the connection and apply pending migrations."""
        self._db = await open_database(self.db_path, foreign_keys=True)
        await self._apply_migrations()

        logger.info(f"SkillStore initialized: {self.db_path}")

    async def close(self) -> None:
        """Close database connection."""
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if not self._db:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        return self._db

    @asynccontextmanager
    async def transaction(self, immediate: bool = False) -> AsyncIterator[aiosqlite.Connection]:
        """
        Context manager for transactions.

        Commits on success, rolls back on exception. ``immediate=True`` takes
        the write lock up front so check-then-insert sequences stay atomic
        across processes sharing the database file.
        """
        db = self.db
        async with self._lock:
            try:
                await db.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
                yield db
                await db.commit()
            except Exception:
                await db.rollback()
                raise

    async def _apply_migrations(self) -> None:
        db = self.db
        try:
            cursor = await db.execute("SELECT MAX(version) FROM schema_migrations")
            row = await cursor.fetchone()
            current_version = row[0] if row and row[0] else 0
        except aiosqlite.OperationalError:
            current_version = 0

        for version in sorted(MIGRATIONS.keys()):
            if version <= current_version:
                continue

            logger.info(f"Applying migration v{version}...")
            await db.executescript(MIGRATIONS[version])
            async with self.transaction() as conn:
                await conn.execute(
                    "INSERT INTO schema_migrations (version, applied_at, description) VALUES (?, ?, ?)",
                    (version, _utcnow().isoformat(), f"Schema version {version}"),
                )

    # =========================================================================
    # USERS & LINKED REPOS
    # =========================================================================

    async def upsert_user(self, user_id: str, github_username: Optional[str] = None) -> None:
        """Create a user, or update the GitHub username of an existing one.

        A None username leaves the stored one in place.
        """
        async with self.transaction() as conn:
            await conn.execute(
                """
                INSERT INTO users (user_id, github_username, created_at)
                VALUES (?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    github_username = COALESCE(excluded.github_username, users.github_username)
                """,
                (user_id, github_username, _utcnow().isoformat()),
            )

    async def get_user(self, user_id: str) -> Optional[StoredUser]:
        cursor = await self.db.execute("SELECT * FROM users WHERE user_id = ?", (user_id,))
        row = await cursor.fetchone()
        return self._row_to_user(row) if row else None

    async def get_user_by_github_username(self, username: str) -> Optional[StoredUser]:
        """GitHub logins are case-insensitive, so is this lookup."""
        cursor = await self.db.execute(
            "SELECT * FROM users WHERE github_username = ? COLLATE NOCASE LIMIT 1",
            (username,),
        )
        row = await cursor.fetchone()
        return self._row_to_user(row) if row else None

    async def list_user_ids(self) -> List[str]:
        cursor = await self.db.execute("SELECT user_id FROM users ORDER BY created_at, user_id")
        return [row["user_id"] for row in await cursor.fetchall()]

    async def mark_synced(self, user_id: str, synced_at: Optional[datetime] = None) -> None:
        async with self.transaction() as conn:
            await conn.execute(
                "UPDATE users SET last_github_synced_at = ? WHERE user_id = ?",
                ((synced_at or _utcnow()).isoformat(), user_id),
            )

    async def link_repos(self, user_id: str, repos: Iterable[Tuple[str, str]]) -> int:
        """Link repositories to a user. Already-linked repos are ignored. Returns count added."""
        added = 0
        now = _utcnow().isoformat()
        async with self.transaction() as conn:
            for owner, repo_name in repos:
                cursor = await conn.execute(
                    """
                    INSERT OR IGNORE INTO user_repos (user_id, owner, repo_name, linked_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (user_id, owner, repo_name, now),
                )
                added += cursor.rowcount
        return added

    async def get_linked_repos(self, user_id: str) -> List[Tuple[str, str]]:
        cursor = await self.db.execute(
            "SELECT owner, repo_name FROM user_repos WHERE user_id = ? ORDER BY id",
            (user_id,),
        )
        return [(row["owner"], row["repo_name"]) for row in await cursor.fetchall()]

    @staticmethod
    def _row_to_user(row: aiosqlite.Row) -> StoredUser:
        return StoredUser(
            user_id=row["user_id"],
            github_username=row["github_username"],
            last_github_synced_at=_parse_ts(row["last_github_synced_at"]),
        )

    # =========================================================================
    # CLAIMS & EVIDENCE
    # =========================================================================

    async def get_claims(self, user_id: str, include_inactive: bool = True) -> Dict[str, StoredClaim]:
        """Claims for a user keyed by skill name, with their evidence attached."""
        query = """
            SELECT c.*, e.evidence AS evidence_json
            FROM skill_claims c
            LEFT JOIN skill_evidence e
              ON e.user_id = c.user_id AND e.skill_name = c.skill_name
            WHERE c.user_id = ?
        """
        if not include_inactive:
            query += " AND c.active = 1"
        query += " ORDER BY c.confidence_score DESC, c.skill_name"

        cursor = await self.db.execute(query, (user_id,))
        claims: Dict[str, StoredClaim] = {}
        for row in await cursor.fetchall():
            claims[row["skill_name"]] = StoredClaim(
                user_id=row["user_id"],
                skill_name=row["skill_name"],
                verified=bool(row["verified"]),
                confidence_score=row["confidence_score"],
                display_label=row["display_label"],
                source=row["source"],
                active=bool(row["active"]),
                verified_at=_parse_ts(row["verified_at"]),
                last_updated=_parse_ts(row["last_updated"]),
                evidence=json.loads(row["evidence_json"]) if row["evidence_json"] else {},
            )
        return claims

    async def upsert_claims(
        self,
        user_id: str,
        claims: List[ClaimUpsert],
        deactivate_missing: bool = False,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Write claims and evidence for a user in one transaction.

        ``verified_at`` is set when a claim becomes verified, kept while it
        stays verified and cleared when it drops below the threshold. A claim
        that came from LinkedIn becomes ``both``. With ``deactivate_missing``,
        claims for skills not in ``claims`` are marked inactive.

        Returns the number of claims marked inactive.
        """
        now_iso = (now or _utcnow()).isoformat()
        deactivated = 0

        async with self.transaction() as conn:
            for claim in claims:
                verified_at = now_iso if claim.verified else None
                await conn.execute(
                    """
                    INSERT INTO skill_claims (
                        user_id, skill_name, verified, confidence_score, display_label,
                        source, active, verified_at, last_updated, created_at
                    ) VALUES (?, ?, ?, ?, ?, 'github', 1, ?, ?, ?)
                    ON CONFLICT(user_id, skill_name) DO UPDATE SET
                        verified = excluded.verified,
                        confidence_score = excluded.confidence_score,
                        display_label = excluded.display_label,
                        source = CASE WHEN skill_claims.source = 'linkedin' THEN 'both'
                                      ELSE skill_claims.source END,
                        active = 1,
                        verified_at = CASE
                            WHEN excluded.verified = 0 THEN NULL
                            WHEN skill_claims.verified_at IS NOT NULL THEN skill_claims.verified_at
                            ELSE excluded.verified_at END,
                        last_updated = excluded.last_updated
                    """,
                    (
                        user_id,
                        claim.skill_name,
                        int(claim.verified),
                        claim.confidence_score,
                        claim.display_label,
                        verified_at,
                        now_iso,
                        now_iso,
                    ),
                )
                await conn.execute(
                    """
                    INSERT INTO skill_evidence (user_id, skill_name, evidence, readme_sha, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(user_id, skill_name) DO UPDATE SET
                        evidence = excluded.evidence,
                        readme_sha = excluded.readme_sha,
                        updated_at = excluded.updated_at
                    """,
                    (
                        user_id,
                        claim.skill_name,
                        json.dumps(claim.evidence, sort_keys=True),
                        claim.readme_sha,
                        now_iso,
                    ),
                )

            if deactivate_missing:
                names = [c.skill_name for c in claims]
                placeholders = ",".join("?" for _ in names)
                query = "UPDATE skill_claims SET active = 0, last_updated = ? WHERE user_id = ? AND active = 1"
                if names:
                    query += f" AND skill_name NOT IN ({placeholders})"
                cursor = await conn.execute(query, (now_iso, user_id, *names))
                deactivated = cursor.rowcount

        return deactivated

    # =========================================================================
    # WEBHOOK SUBSCRIPTIONS
    # =========================================================================

    async def upsert_subscription(
        self,
        user_id: str,
        repo_owner: str,
        repo_name: str,
        webhook_id: int,
        secret: str,
        events: List[str],
    ) -> None:
        """Record an active webhook for a repository, replacing any earlier registration."""
        now = _utcnow().isoformat()
        async with self.transaction() as conn:
            await conn.execute(
                """
                INSERT INTO webhook_subscriptions (
                    user_id, repo_owner, repo_name, webhook_id, secret, events,
                    active, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?)
                ON CONFLICT(repo_owner, repo_name) DO UPDATE SET
                    user_id = excluded.user_id,
                    webhook_id = excluded.webhook_id,
                    secret = excluded.secret,
                    events = excluded.events,
                    active = 1,
                    updated_at = excluded.updated_at
                """,
                (user_id, repo_owner, repo_name, webhook_id, secret, json.dumps(events), now, now),
            )

    async def get_active_subscription(self, repo_owner: str, repo_name: str) -> Optional[SubscriptionRecord]:
        cursor = await self.db.execute(
            """
            SELECT * FROM webhook_subscriptions
            WHERE repo_owner = ? COLLATE NOCASE AND repo_name = ? COLLATE NOCASE AND active = 1
            """,
            (repo_owner, repo_name),
        )
        row = await cursor.fetchone()
        return self._row_to_subscription(row) if row else None

    async def list_active_subscriptions(self, user_id: str) -> List[SubscriptionRecord]:
        cursor = await self.db.execute(
            "SELECT * FROM webhook_subscriptions WHERE user_id = ? AND active = 1 ORDER BY id",
            (user_id,),
        )
        return [self._row_to_subscription(row) for row in await cursor.fetchall()]

    async def deactivate_subscription(self, subscription_id: int) -> None:
        async with self.transaction() as conn:
            await conn.execute(
                "UPDATE webhook_subscriptions SET active = 0, updated_at = ? WHERE id = ?",
                (_utcnow().isoformat(), subscription_id),
            )

    async def touch_subscription(self, repo_owner: str, repo_name: str) -> None:
        async with self.transaction() as conn:
            await conn.execute(
                """
                UPDATE webhook_subscriptions SET last_triggered_at = ?
                WHERE repo_owner = ? COLLATE NOCASE AND repo_name = ? COLLATE NOCASE AND active = 1
                """,
                (_utcnow().isoformat(), repo_owner, repo_name),
            )

    @staticmethod
    def _row_to_subscription(row: aiosqlite.Row) -> SubscriptionRecord:
        return SubscriptionRecord(
            id=row["id"],
            user_id=row["user_id"],
            repo_owner=row["repo_owner"],
            repo_name=row["repo_name"],
            webhook_id=row["webhook_id"],
            secret=row["secret"],
            events=json.loads(row["events"]),
            active=bool(row["active"]),
            last_triggered_at=_parse_ts(row["last_triggered_at"]),
        )

    # =========================================================================
    # PIPELINE RUNS
    # =========================================================================

    async def begin_run(
        self,
        user_id: str,
        triggered_by: str,
        stale_after_seconds: float = 1800,
    ) -> Optional[str]:
        """
        Create a ``running`` record for a user unless one is already in flight.

        A running record older than ``stale_after_seconds`` belongs to a
        crashed process and no longer blocks. Returns the new run id, or
        None when a run for this user is already running.
        """
        now = _utcnow()
        cutoff = (now - timedelta(seconds=stale_after_seconds)).isoformat()

        async with self.transaction(immediate=True) as conn:
            cursor = await conn.execute(
                """
                SELECT run_id FROM pipeline_runs
                WHERE user_id = ? AND status = 'running' AND started_at > ?
                LIMIT 1
                """,
                (user_id, cutoff),
            )
            if await cursor.fetchone():
                return None

            run_id = str(uuid.uuid4())
            await conn.execute(
                """
                INSERT INTO pipeline_runs (run_id, user_id, triggered_by, status, started_at)
                VALUES (?, ?, ?, 'running', ?)
                """,
                (run_id, user_id, triggered_by, now.isoformat()),
            )
        return run_id

    async def complete_run(self, run_id: str, changes_found: bool, repos_scraped: int) -> None:
        async with self.transaction() as conn:
            await conn.execute(
                """
                UPDATE pipeline_runs
                SET status = 'completed', changes_found = ?, repos_scraped = ?, completed_at = ?
                WHERE run_id = ?
                """,
                (int(changes_found), repos_scraped, _utcnow().isoformat(), run_id),
            )

    async def fail_run(self, run_id: str, error_message: str) -> None:
        async with self.transaction() as conn:
            await conn.execute(
                """
                UPDATE pipeline_runs
                SET status = 'failed', changes_found = NULL, error_message = ?, completed_at = ?
                WHERE run_id = ?
                """,
                (error_message, _utcnow().isoformat(), run_id),
            )

    async def get_run(self, run_id: str) -> Optional[PipelineRunRecord]:
        cursor = await self.db.execute("SELECT * FROM pipeline_runs WHERE run_id = ?", (run_id,))
        row = await cursor.fetchone()
        return self._row_to_run(row) if row else None

    async def list_runs(self, user_id: str, limit: int = 20) -> List[PipelineRunRecord]:
        cursor = await self.db.execute(
            "SELECT * FROM pipeline_runs WHERE user_id = ? ORDER BY started_at DESC, id DESC LIMIT ?",
            (user_id, limit),
        )
        return [self._row_to_run(row) for row in await cursor.fetchall()]

    async def last_run_started_at(self, user_id: str, triggered_by: str) -> Optional[datetime]:
        cursor = await self.db.execute(
            "SELECT MAX(started_at) FROM pipeline_runs WHERE user_id = ? AND triggered_by = ?",
            (user_id, triggered_by),
        )
        row = await cursor.fetchone()
        return _parse_ts(row[0]) if row else None

    @staticmethod
    def _row_to_run(row: aiosqlite.Row) -> PipelineRunRecord:
        changes = row["changes_found"]
        return PipelineRunRecord(
            run_id=row["run_id"],
            user_id=row["user_id"],
            triggered_by=row["triggered_by"],
            status=row["status"],
            started_at=_parse_ts(row["started_at"]),
            completed_at=_parse_ts(row["completed_at"]),
            changes_found=None if changes is None else bool(changes),
            repos_scraped=row["repos_scraped"],
            error_message=row["error_message"],
        )

    # =========================================================================
    # NOTIFICATIONS & HISTORY
    # =========================================================================

    async def create_notification(
        self,
        user_id: str,
        message: str,
        payload: Dict[str, Any],
        notification_type: str = "profile_update",
    ) -> int:
        async with self.transaction() as conn:
            cursor = await conn.execute(
                """
                INSERT INTO notifications (user_id, type, message, payload, read, created_at)
                VALUES (?, ?, ?, ?, 0, ?)
                """,
                (user_id, notification_type, message, json.dumps(payload), _utcnow().isoformat()),
            )
            return cursor.lastrowid

    async def list_notifications(self, user_id: str, unread_only: bool = False) -> List[ChangeNotification]:
        query = "SELECT * FROM notifications WHERE user_id = ?"
        if unread_only:
            query += " AND read = 0"
        query += " ORDER BY created_at DESC, id DESC"

        cursor = await self.db.execute(query, (user_id,))
        return [
            ChangeNotification(
                id=row["id"],
                user_id=row["user_id"],
                type=row["type"],
                message=row["message"],
                payload=json.loads(row["payload"]),
                read=bool(row["read"]),
                created_at=_parse_ts(row["created_at"]),
            )
            for row in await cursor.fetchall()
        ]

    async def add_update_history(
        self,
        user_id: str,
        update_type: str,
        changes_detected: Dict[str, Any],
        skills_added: List[str],
        skills_strengthened: List[str],
        triggered_by: str,
        repos_scraped: int,
    ) -> None:
        async with self.transaction() as conn:
            await conn.execute(
                """
                INSERT INTO profile_update_history (
                    user_id, update_type, changes_detected, skills_added,
                    skills_strengthened, triggered_by, repos_scraped, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    update_type,
                    json.dumps(changes_detected),
                    json.dumps(skills_added),
                    json.dumps(skills_strengthened),
                    triggered_by,
                    repos_scraped,
                    _utcnow().isoformat(),
                ),
            )

    async def list_update_history(self, user_id: str) -> List[Dict[str, Any]]:
        cursor = await self.db.execute(
            "SELECT * FROM profile_update_history WHERE user_id = ? ORDER BY created_at DESC, id DESC",
            (user_id,),
        )
        return [
            {
                "update_type": row["update_type"],
                "changes_detected": json.loads(row["changes_detected"]),
                "skills_added": json.loads(row["skills_added"]),
                "skills_strengthened": json.loads(row["skills_strengthened"]),
                "triggered_by": row["triggered_by"],
                "repos_scraped": row["repos_scraped"],
                "created_at": row["created_at"],
            }
            for row in await cursor.fetchall()
        ]

    # =========================================================================
    # NARRATIVE CACHE
    # =========================================================================

    async def get_narrative(self, readme_sha: str) -> Optional[str]:
        cursor = await self.db.execute(
            "SELECT summary FROM narrative_cache WHERE readme_sha = ?", (readme_sha,)
        )
        row = await cursor.fetchone()
        return row["summary"] if row else None

    async def put_narrative(self, readme_sha: str, summary: str) -> None:
        """Append-only: the first summary stored for a SHA wins."""
        async with self.transaction() as conn:
            await conn.execute(
                "INSERT OR IGNORE INTO narrative_cache (readme_sha, summary, created_at) VALUES (?, ?, ?)",
                (readme_sha, summary, _utcnow().isoformat()),
            )

    # =========================================================================
    # RETENTION
    # =========================================================================

    async def purge_expired(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Delete finished runs, notifications and history past their retention window."""
        now = now or _utcnow()
        async with self.transaction() as conn:
            runs = await conn.execute(
                """
                DELETE FROM pipeline_runs
                WHERE status IN ('completed', 'failed') AND completed_at < ?
                """,
                ((now - RUN_RETENTION).isoformat(),),
            )
            notifications = await conn.execute(
                "DELETE FROM notifications WHERE created_at < ?",
                ((now - NOTIFICATION_RETENTION).isoformat(),),
            )
            history = await conn.execute(
                "DELETE FROM profile_update_history WHERE created_at < ?",
                ((now - HISTORY_RETENTION).isoformat(),),
            )
            counts = {
                "pipeline_runs": runs.rowcount,
                "notifications": notifications.rowcount,
                "profile_update_history": history.rowcount,
            }

        logger.info(f"Purged expired records: {counts}")
        return counts
