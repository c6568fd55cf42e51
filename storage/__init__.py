"""
Storage layer for the skill pipeline.

Provides persistent SQLite storage for users, skill claims, webhook
subscriptions, pipeline run records and the scheduler's job queue.

Main components:
- SkillStore: claims, evidence, subscriptions, runs, notifications
- JobStore: durable scheduled jobs

Quick start:
    from storage import SkillStore

    store = SkillStore("skills.db")
    await store.initialize()
    claims = await store.get_claims("user-123")
"""

from storage.job_store import JobStore, ScheduledJob
from storage.skill_store import (
    ClaimUpsert,
    PipelineRunRecord,
    SkillStore,
    StoredClaim,
    StoredUser,
    SubscriptionRecord,
)

__all__ = [
    "SkillStore",
    "StoredUser",
    "StoredClaim",
    "ClaimUpsert",
    "SubscriptionRecord",
    "PipelineRunRecord",
    "JobStore",
    "ScheduledJob",
]
