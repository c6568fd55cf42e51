"""
Workflows for the skill pipeline

This package contains high-level workflow orchestration:
- pipeline.py: per-user pipeline run (analyze, aggregate, score, diff, persist)
- dispatcher.py: background submission for webhook and manual triggers
- scheduler.py: weekly re-scrape jobs on the durable job queue

Usage:
    from workflows.pipeline import PipelineRunner
    runner = PipelineRunner(store, analyzer, narratives)
    result = await runner.run("user-123", "schedule")
"""

# Lazy imports to avoid circular dependencies
__all__ = [
    "PipelineRunner",
    "PipelineConfig",
    "RunResult",
    "Trigger",
    "RunDispatcher",
    "Scheduler",
    "SchedulerConfig",
]


def __getattr__(name):
    """Lazy import to avoid circular dependencies."""
    if name in ("PipelineRunner", "PipelineConfig", "RunResult", "Trigger"):
        from workflows import pipeline
        return getattr(pipeline, name)
    elif name == "RunDispatcher":
        from workflows.dispatcher import RunDispatcher
        return RunDispatcher
    elif name in ("Scheduler", "SchedulerConfig"):
        from workflows import scheduler
        return getattr(scheduler, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
