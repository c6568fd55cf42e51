#!/usr/bin/env python3
"""
CLI interface for the skill-verification pipeline.

Commands:
  link       - Register a user and link repositories to them
  run        - Run the pipeline for a user now and print the result
  schedule   - (Re)schedule a user's weekly re-scrape
  trigger    - Queue an immediate re-scrape through the scheduler
  bootstrap  - Ensure every user has a pending weekly re-scrape
  worker     - Run the scheduler worker until interrupted
  purge      - Delete expired runs, notifications and history
  status     - Show a user's claims and recent runs

Examples:
  python run_pipeline.py link user-1 --github octocat --repo octocat/hello-world
  python run_pipeline.py run user-1
  python run_pipeline.py worker
"""

import argparse
import asyncio
import json
import logging
import sys

from dotenv import load_dotenv

from services.container import Services, build_services
from workflows.pipeline import Trigger


# =============================================================================
# LOGGING SETUP
# =============================================================================

def setup_logging(verbose: bool = False):
    """Configure logging for the CLI"""
    level = logging.DEBUG if verbose else logging.INFO
    fmt = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    if sys.stdout.isatty():
        colors = {
            "DEBUG": "\033[36m",
            "INFO": "\033[32m",
            "WARNING": "\033[33m",
            "ERROR": "\033[31m",
            "CRITICAL": "\033[35m",
            "RESET": "\033[0m",
        }

        class ColoredFormatter(logging.Formatter):
            def format(self, record):
                levelname = record.levelname
                if levelname in colors:
                    record.levelname = f"{colors[levelname]}{levelname}{colors['RESET']}"
                return super().format(record)

        formatter = ColoredFormatter(fmt, datefmt="%H:%M:%S")
    else:
        formatter = logging.Formatter(fmt)

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)
    logging.basicConfig(level=level, handlers=[handler], force=True)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def parse_repo(value: str):
    if value.count("/") != 1 or value.startswith("/") or value.endswith("/"):
        raise argparse.ArgumentTypeError(f"expected owner/name, got {value!r}")
    owner, name = value.split("/")
    return owner, name


# =============================================================================
# COMMAND HANDLERS
# =============================================================================

async def cmd_link(services: Services, args) -> int:
    await services.store.upsert_user(args.user_id, github_username=args.github)
    added = await services.store.link_repos(args.user_id, args.repo or [])
    print(f"User {args.user_id}: {added} repositories linked")
    return 0


async def cmd_run(services: Services, args) -> int:
    result = await services.runner.run(args.user_id, args.trigger)
    if result is None:
        print(f"A run for {args.user_id} is already in progress")
        return 1
    print_json(result.to_dict())
    for skill in result.skills:
        marker = "✓" if skill.verified else " "
        print(f"  [{marker}] {skill.label}")
    return 0 if result.status == "completed" else 1


async def cmd_schedule(services: Services, args) -> int:
    run_at = await services.scheduler.schedule_recurring(args.user_id)
    print(f"Next re-scrape for {args.user_id}: {run_at.isoformat()}")
    return 0


async def cmd_trigger(services: Services, args) -> int:
    job_id = await services.scheduler.trigger_now(args.user_id)
    print(f"Queued job {job_id} for {args.user_id}")
    return 0


async def cmd_bootstrap(services: Services, args) -> int:
    created = await services.scheduler.bootstrap()
    print(f"Created {created} recurring job(s)")
    return 0


async def cmd_worker(services: Services, args) -> int:
    await services.scheduler.bootstrap()
    services.scheduler.start()
    try:
        await asyncio.Event().wait()
    finally:
        await services.scheduler.stop()
    return 0


async def cmd_purge(services: Services, args) -> int:
    print_json(await services.store.purge_expired())
    return 0


async def cmd_status(services: Services, args) -> int:
    user = await services.store.get_user(args.user_id)
    if user is None:
        print(f"Unknown user {args.user_id}")
        return 1
    claims = await services.store.get_claims(args.user_id)
    runs = await services.store.list_runs(args.user_id, limit=args.limit)
    print_json({
        "user_id": user.user_id,
        "github_username": user.github_username,
        "last_github_synced_at": user.last_github_synced_at,
        "claims": [
            {"skill": c.skill_name, "score": c.confidence_score, "verified": c.verified, "active": c.active}
            for c in claims.values()
        ],
        "runs": [r.__dict__ for r in runs],
    })
    return 0


COMMANDS = {
    "link": cmd_link,
    "run": cmd_run,
    "schedule": cmd_schedule,
    "trigger": cmd_trigger,
    "bootstrap": cmd_bootstrap,
    "worker": cmd_worker,
    "purge": cmd_purge,
    "status": cmd_status,
}


# =============================================================================
# ARGUMENT PARSER
# =============================================================================

def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Skill-verification pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment variables:
  SKILLS_DB_PATH        - Path to SQLite database (default: skills.db)
  GITHUB_TOKEN          - GitHub API token
  GOOGLE_API_KEY        - Gemini key for README summaries (optional)
  REPO_CONCURRENCY      - Repositories analyzed at once (default: 5)
  SCHEDULER_POLL_SECONDS - Worker poll interval (default: 60)
        """,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    link_parser = subparsers.add_parser("link", help="Register a user and link repositories")
    link_parser.add_argument("user_id")
    link_parser.add_argument("--github", help="GitHub username")
    link_parser.add_argument("--repo", action="append", type=parse_repo, help="owner/name (repeatable)")

    run_parser = subparsers.add_parser("run", help="Run the pipeline for a user now")
    run_parser.add_argument("user_id")
    run_parser.add_argument(
        "--trigger",
        choices=[t.value for t in Trigger],
        default=Trigger.ADMIN.value,
        help="Trigger recorded on the run (default: admin)",
    )

    for name, help_text in (
        ("schedule", "Schedule the weekly re-scrape for a user"),
        ("trigger", "Queue an immediate re-scrape through the scheduler"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("user_id")

    subparsers.add_parser("bootstrap", help="Ensure every user has a pending weekly re-scrape")
    subparsers.add_parser("worker", help="Run the scheduler worker")
    subparsers.add_parser("purge", help="Delete expired audit records")

    status_parser = subparsers.add_parser("status", help="Show a user's claims and runs")
    status_parser.add_argument("user_id")
    status_parser.add_argument("--limit", type=int, default=10)

    return parser


# =============================================================================
# MAIN
# =============================================================================

async def main(argv=None) -> int:
    parser = create_parser()
    args = parser.parse_args(argv)
    setup_logging(verbose=args.verbose)

    if not args.command:
        parser.print_help()
        return 1

    load_dotenv()
    services = await build_services()
    try:
        return await COMMANDS[args.command](services, args)
    finally:
        await services.close()


def cli() -> None:
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        print("\n\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        logging.exception("Fatal error")
        print(f"\nFatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    cli()
