"""
Process-wide service graph.

Everything with a lifecycle (database connections, the HTTP client, the
Gemini client, the scheduler) is built once here and handed to the API or
CLI, then closed in reverse order.

Usage:
    services = await build_services()
    try:
        await services.runner.run("user-123", "manual")
    finally:
        await services.close()
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from collectors.github_client import GitHubClient
from collectors.repo_analyzer import RepoAnalyzer
from connectors.github_webhook_handler import GitHubWebhookHandler
from connectors.subscription_manager import SubscriptionManager
from services.narrative_cache import NarrativeCache
from services.readme_summarizer import ReadmeSummarizer, SummarizerConfig
from storage.job_store import JobStore
from storage.skill_store import SkillStore
from workflows.dispatcher import RunDispatcher
from workflows.pipeline import PipelineConfig, PipelineRunner
from workflows.scheduler import Scheduler, SchedulerConfig

logger = logging.getLogger(__name__)


@dataclass
class ServiceSettings:
    """Settings for the HTTP surface"""
    public_base_url: str = "http://localhost:8000"
    webhook_secret: Optional[str] = None
    admin_secret: Optional[str] = None

    @classmethod
    def from_env(cls) -> ServiceSettings:
        return cls(
            public_base_url=os.getenv("PUBLIC_BASE_URL", "http://localhost:8000"),
            webhook_secret=os.getenv("GITHUB_WEBHOOK_SECRET"),
            admin_secret=os.getenv("ADMIN_SECRET"),
        )


@dataclass
class Services:
    settings: ServiceSettings
    pipeline_config: PipelineConfig
    store: SkillStore
    jobs: JobStore
    github: GitHubClient
    summarizer: ReadmeSummarizer
    narratives: NarrativeCache
    analyzer: RepoAnalyzer
    runner: PipelineRunner
    dispatcher: RunDispatcher
    scheduler: Scheduler
    webhooks: GitHubWebhookHandler
    subscriptions: SubscriptionManager

    async def close(self, drain_timeout: float = 30.0) -> None:
        await self.scheduler.stop()
        await self.dispatcher.drain(timeout=drain_timeout)
        await self.github.close()
        await self.jobs.close()
        await self.store.close()
        logger.info("Services closed")


async def build_services(
    pipeline_config: Optional[PipelineConfig] = None,
    summarizer_config: Optional[SummarizerConfig] = None,
    scheduler_config: Optional[SchedulerConfig] = None,
    settings: Optional[ServiceSettings] = None,
    github_transport: Optional[httpx.AsyncBaseTransport] = None,
    summarizer_client: Optional[Any] = None,
) -> Services:
    """Construct and initialize the full graph. Configs default to the environment."""
    pipeline_config = pipeline_config or PipelineConfig.from_env()
    summarizer_config = summarizer_config or SummarizerConfig.from_env()
    scheduler_config = scheduler_config or SchedulerConfig.from_env()
    settings = settings or ServiceSettings.from_env()

    store = SkillStore(pipeline_config.db_path)
    await store.initialize()
    jobs = JobStore(pipeline_config.db_path)
    await jobs.initialize()

    github = GitHubClient(
        token=pipeline_config.github_token,
        base_url=pipeline_config.github_api_url,
        timeout=pipeline_config.github_timeout_seconds,
        transport=github_transport,
    )
    summarizer = ReadmeSummarizer(summarizer_config, client=summarizer_client)
    narratives = NarrativeCache(store, summarizer)
    analyzer = RepoAnalyzer(
        github,
        concurrency=pipeline_config.repo_concurrency,
        batch_size=pipeline_config.repo_batch_size,
        batch_cooldown_seconds=pipeline_config.repo_batch_cooldown_seconds,
        repo_timeout_seconds=pipeline_config.repo_timeout_seconds,
    )
    runner = PipelineRunner(store, analyzer, narratives, pipeline_config)
    dispatcher = RunDispatcher(runner)

    return Services(
        settings=settings,
        pipeline_config=pipeline_config,
        store=store,
        jobs=jobs,
        github=github,
        summarizer=summarizer,
        narratives=narratives,
        analyzer=analyzer,
        runner=runner,
        dispatcher=dispatcher,
        scheduler=Scheduler(jobs, runner, store, scheduler_config),
        webhooks=GitHubWebhookHandler(store, dispatcher, fallback_secret=settings.webhook_secret),
        subscriptions=SubscriptionManager(store, github, settings.public_base_url),
    )
