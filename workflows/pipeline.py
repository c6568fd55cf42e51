"""
Skill Verification Pipeline

Orchestrates one run for one user:

    repositories -> RepoAnalyzer (bounded concurrency)
                 -> SkillAggregator
                 -> ConfidenceScorer
                 -> NarrativeCache (strongest repo README per skill)
                 -> ChangeDetector
                 -> persist claims, sync timestamp, history, notification

Every invocation gets a PipelineRunRecord before any I/O. A run for a user
who already has one running is dropped. Failures end up on the run record;
run() never raises to background callers.

Usage:
    config = PipelineConfig.from_env()
    runner = PipelineRunner(store, analyzer, narratives, config)
    result = await runner.run("user-123", trigger="schedule")
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from collectors.repo_analyzer import RepoAnalyzer, RepoFacts
from services.narrative_cache import NarrativeCache
from storage.skill_store import ClaimUpsert, SkillStore
from verification.change_detector import SkillDiff, diff_skills
from verification.confidence_scorer import ScoredSkill, score_all
from verification.skill_aggregator import SkillAggregator, SkillEvidence

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

class Trigger(str, Enum):
    WEBHOOK = "webhook"
    SCHEDULE = "schedule"
    MANUAL = "manual"
    ADMIN = "admin"


UPDATE_TYPES = {
    Trigger.WEBHOOK: "github_webhook",
    Trigger.SCHEDULE: "scheduled_rescrape",
    Trigger.MANUAL: "manual_refresh",
    Trigger.ADMIN: "manual_refresh",
}


class PipelinePreconditionError(Exception):
    """The user is not in a state the pipeline can run for."""


class MissingGitHubUsername(PipelinePreconditionError):
    def __init__(self, user_id: str):
        super().__init__("No GitHub username set for user")
        self.user_id = user_id


@dataclass
class PipelineConfig:
    """Configuration for the skill pipeline"""

    # Storage
    db_path: str = "skills.db"

    # GitHub
    github_token: Optional[str] = None
    github_api_url: str = "https://api.github.com"
    github_timeout_seconds: float = 15.0

    # Execution
    repo_concurrency: int = 5
    repo_batch_size: int = 20
    repo_batch_cooldown_seconds: float = 2.0
    repo_timeout_seconds: float = 90.0
    run_stale_after_seconds: float = 1800.0

    @classmethod
    def from_env(cls) -> PipelineConfig:
        """Load configuration from environment variables"""
        return cls(
            db_path=os.getenv("SKILLS_DB_PATH", "skills.db"),
            github_token=os.getenv("GITHUB_TOKEN"),
            github_api_url=os.getenv("GITHUB_API_URL", "https://api.github.com"),
            github_timeout_seconds=float(os.getenv("GITHUB_TIMEOUT_SECONDS", "15")),
            repo_concurrency=int(os.getenv("REPO_CONCURRENCY", "5")),
            repo_batch_size=int(os.getenv("REPO_BATCH_SIZE", "20")),
            repo_batch_cooldown_seconds=float(os.getenv("REPO_BATCH_COOLDOWN_SECONDS", "2.0")),
            repo_timeout_seconds=float(os.getenv("REPO_TIMEOUT_SECONDS", "90")),
            run_stale_after_seconds=float(os.getenv("RUN_STALE_AFTER_SECONDS", "1800")),
        )


@dataclass
class RunResult:
    """Outcome of one pipeline run"""
    run_id: str
    user_id: str
    trigger: str
    status: str = "running"
    repos_analyzed: int = 0
    skills: List[ScoredSkill] = field(default_factory=list)
    diff: SkillDiff = field(default_factory=SkillDiff)
    skills_deactivated: int = 0
    notification_id: Optional[int] = None
    error: Optional[str] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None

    @property
    def changes_found(self) -> bool:
        return not self.diff.is_empty

    def complete(self, status: str) -> None:
        self.status = status
        self.completed_at = datetime.now(timezone.utc)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "user_id": self.user_id,
            "trigger": self.trigger,
            "status": self.status,
            "repos_analyzed": self.repos_analyzed,
            "skills_detected": len(self.skills),
            "skills_verified": sum(1 for s in self.skills if s.verified),
            "changes": self.diff.to_dict(),
            "skills_deactivated": self.skills_deactivated,
            "error": self.error,
            "duration_seconds": self.duration_seconds,
        }


def format_change_message(diff: SkillDiff) -> str:
    parts = []
    if diff.added:
        n = len(diff.added)
        parts.append(f"{n} new skill{'s' if n != 1 else ''} verified")
    if diff.strengthened:
        n = len(diff.strengthened)
        parts.append(f"{n} skill{'s' if n != 1 else ''} strengthened")
    return f"Your profile was updated — {', '.join(parts)}"


# =============================================================================
# RUNNER
# =============================================================================

class PipelineRunner:
    """Runs the skill pipeline for one user at a time per user."""

    def __init__(
        self,
        store: SkillStore,
        analyzer: RepoAnalyzer,
        narratives: Optional[NarrativeCache] = None,
        config: Optional[PipelineConfig] = None,
        aggregator: Optional[SkillAggregator] = None,
    ):
        self.store = store
        self.analyzer = analyzer
        self.narratives = narratives
        self.config = config or PipelineConfig()
        self.aggregator = aggregator or SkillAggregator()
        self._user_locks: Dict[str, asyncio.Lock] = {}

    def is_running(self, user_id: str) -> bool:
        lock = self._user_locks.get(user_id)
        return lock is not None and lock.locked()

    async def run(self, user_id: str, trigger: str = Trigger.SCHEDULE.value) -> Optional[RunResult]:
        """
        Run the pipeline for a user.

        Returns None when the run was dropped as a duplicate of one already
        in progress, otherwise the completed or failed RunResult.
        """
        trigger = Trigger(trigger)
        lock = self._user_locks.setdefault(user_id, asyncio.Lock())
        if lock.locked():
            logger.info(f"Run for {user_id} already in progress, dropping {trigger.value} trigger")
            return None

        try:
            async with lock:
                return await self._run_locked(user_id, trigger)
        finally:
            # Duplicates never wait on the lock, so a released lock has no waiters
            if not lock.locked() and self._user_locks.get(user_id) is lock:
                del self._user_locks[user_id]

    async def _run_locked(self, user_id: str, trigger: Trigger) -> Optional[RunResult]:
        run_id = await self.store.begin_run(
            user_id, trigger.value, stale_after_seconds=self.config.run_stale_after_seconds
        )
        if run_id is None:
            logger.info(f"Run for {user_id} already recorded as running, dropping {trigger.value} trigger")
            return None

        result = RunResult(run_id=run_id, user_id=user_id, trigger=trigger.value)
        logger.info(f"Pipeline run {run_id} started for {user_id} ({trigger.value})")

        try:
            await self._execute(result, trigger)
        except PipelinePreconditionError as e:
            await self._fail(result, str(e))
        except Exception as e:
            logger.exception(f"Pipeline run {run_id} for {user_id} failed")
            await self._fail(result, f"{type(e).__name__}: {e}")
        return result

    async def _fail(self, result: RunResult, message: str) -> None:
        result.error = message
        result.complete("failed")
        logger.error(f"Pipeline run {result.run_id} failed: {message}")
        try:
            await self.store.fail_run(result.run_id, message)
        except Exception as e:
            logger.error(f"Could not record failure of run {result.run_id}: {e}")

    async def _execute(self, result: RunResult, trigger: Trigger) -> None:
        user = await self.store.get_user(result.user_id)
        if user is None or not user.github_username:
            raise MissingGitHubUsername(result.user_id)

        repos = await self.store.get_linked_repos(result.user_id)
        if not repos:
            logger.info(f"{result.user_id} has no linked repositories")
            await self.store.complete_run(result.run_id, changes_found=False, repos_scraped=0)
            result.complete("completed")
            return

        facts = await self.analyzer.analyze_all(repos, user.github_username)
        result.repos_analyzed = len(facts)

        evidence = self.aggregator.aggregate(facts)
        scored = score_all(list(evidence.values()))
        await self._enrich(scored, facts)

        previous = await self.store.get_claims(result.user_id)
        result.skills = scored
        result.diff = diff_skills(previous, scored)

        # Nothing analyzed means no information, not that every skill vanished
        result.skills_deactivated = await self.store.upsert_claims(
            result.user_id,
            [
                ClaimUpsert(
                    skill_name=s.skill_name,
                    verified=s.verified,
                    confidence_score=s.score,
                    display_label=s.label,
                    evidence=s.evidence.to_dict(),
                    readme_sha=s.evidence.readme_sha,
                )
                for s in scored
            ],
            deactivate_missing=bool(facts),
        )
        await self.store.mark_synced(result.user_id)

        if not result.diff.is_empty:
            result.notification_id = await self.store.create_notification(
                result.user_id,
                format_change_message(result.diff),
                result.diff.to_dict(),
            )

        await self.store.add_update_history(
            result.user_id,
            update_type=UPDATE_TYPES[trigger],
            changes_detected={
                "repos_analyzed": len(facts),
                "total_skills_detected": len(scored),
            },
            skills_added=list(result.diff.added),
            skills_strengthened=[s.skill for s in result.diff.strengthened],
            triggered_by=trigger.value,
            repos_scraped=len(facts),
        )

        await self.store.complete_run(
            result.run_id, changes_found=result.changes_found, repos_scraped=len(facts)
        )
        result.complete("completed")
        logger.info(
            f"Pipeline run {result.run_id} completed: {len(facts)} repos, {len(scored)} skills, "
            f"{len(result.diff.added)} added, {len(result.diff.strengthened)} strengthened"
        )

    async def _enrich(self, scored: List[ScoredSkill], facts: List[RepoFacts]) -> None:
        """
        Attach a README narrative to each skill's strongest repo. One
        summarizer attempt per README SHA per run, whatever the outcome.
        """
        if self.narratives is None:
            return

        by_name = {(f.owner, f.repo_name): f for f in facts}
        attempted: Dict[str, Optional[str]] = {}

        for item in scored:
            evidence: SkillEvidence = item.evidence
            strongest = evidence.strongest_repo
            repo = by_name.get((strongest.owner, strongest.name))
            if repo is None or not repo.readme_sha or not repo.readme_text:
                continue

            if repo.readme_sha not in attempted:
                try:
                    attempted[repo.readme_sha] = await self.narratives.get_or_summarize(
                        repo.readme_sha, repo.repo_name, repo.readme_text
                    )
                except Exception as e:
                    logger.warning(f"Narrative enrichment failed for {repo.full_name}: {e}")
                    attempted[repo.readme_sha] = None

            narrative = attempted[repo.readme_sha]
            evidence.narrative = narrative
            if narrative:
                strongest.description = narrative
