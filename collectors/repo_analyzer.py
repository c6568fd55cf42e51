"""
Repository Analyzer

Collects the raw facts for one repository that skill scoring needs:

1. Metadata and language byte counts (concurrently)
2. Recursive file tree (partial trees are accepted)
3. Frameworks from package.json / requirements.txt, only if present in the tree
4. Test markers and deployment markers from tree paths
5. README text and blob SHA, live-demo URL from the README
6. Commit totals from pagination metadata: all authors and the tracked user

No cross-repo logic lives here; see verification.skill_aggregator.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Dict, Iterable, List, Optional, Sequence, Tuple, TypeVar

from collectors.github_client import GitHubClient

logger = logging.getLogger(__name__)

T = TypeVar("T")


# =============================================================================
# DETECTION TABLES
# =============================================================================

# package.json dependency key -> skill name (case-sensitive keys)
JS_FRAMEWORK_MAP: Dict[str, str] = {
    "react": "React",
    "react-dom": "React",
    "next": "Next.js",
    "next-auth": "Next.js",
    "vue": "Vue.js",
    "@vue/core": "Vue.js",
    "nuxt": "Nuxt.js",
    "angular": "Angular",
    "@angular/core": "Angular",
    "svelte": "Svelte",
    "express": "Express.js",
    "fastify": "Fastify",
    "koa": "Koa",
    "socket.io": "Socket.io",
    "redux": "Redux",
    "@reduxjs/toolkit": "Redux",
    "react-query": "React Query",
    "framer-motion": "Framer Motion",
    "tailwindcss": "Tailwind CSS",
    "prisma": "Prisma",
    "@prisma/client": "Prisma",
    "graphql": "GraphQL",
    "apollo-server": "GraphQL",
    "@apollo/client": "GraphQL",
    "mongoose": "MongoDB",
    "mongodb": "MongoDB",
    "typeorm": "TypeORM",
    "sequelize": "Sequelize",
    "pg": "PostgreSQL",
    "mysql2": "MySQL",
    "jest": "Jest",
    "vitest": "Vitest",
    "@testing-library/react": "Testing Library",
    "cypress": "Cypress",
    "playwright": "Playwright",
    "webpack": "Webpack",
    "vite": "Vite",
    "electron": "Electron",
    "react-native": "React Native",
}

# requirements.txt package name (lowercased) -> skill name
PY_LIB_MAP: Dict[str, str] = {
    "django": "Django",
    "flask": "Flask",
    "fastapi": "FastAPI",
    "uvicorn": "FastAPI",
    "sqlalchemy": "SQLAlchemy",
    "pandas": "Pandas",
    "numpy": "NumPy",
    "scikit_learn": "Scikit-learn",
    "scikit-learn": "Scikit-learn",
    "tensorflow": "TensorFlow",
    "torch": "PyTorch",
    "keras": "Keras",
    "celery": "Celery",
    "redis": "Redis",
    "pytest": "pytest",
    "pydantic": "Pydantic",
    "httpx": "HTTPX",
    "requests": "Requests",
    "aiohttp": "aiohttp",
    "streamlit": "Streamlit",
    "langchain": "LangChain",
    "openai": "OpenAI",
    "anthropic": "Anthropic",
    "groq": "Groq",
}

# A path matches if it equals an entry or lives under it
DEPLOYMENT_FILES: Tuple[str, ...] = (
    "Dockerfile",
    "docker-compose.yml",
    "docker-compose.yaml",
    "vercel.json",
    ".vercel",
    "netlify.toml",
    "netlify.yml",
    ".netlify",
    "Procfile",
    "render.yaml",
    "render.yml",
    "railway.json",
    "railway.toml",
    "fly.toml",
    "heroku.yml",
    ".github/workflows/deploy.yml",
    ".github/workflows/ci-cd.yml",
    ".github/workflows/deploy.yaml",
    "kubernetes",
    "k8s",
    "helm",
    "serverless.yml",
    "serverless.yaml",
    "amplify.yml",
)

TEST_PATTERNS: Tuple[re.Pattern, ...] = (
    re.compile(r"^tests?/", re.IGNORECASE),
    re.compile(r"^__tests__/", re.IGNORECASE),
    re.compile(r"\.test\.[jt]sx?$"),
    re.compile(r"\.spec\.[jt]sx?$"),
    re.compile(r"^jest\.config\."),
    re.compile(r"^vitest\.config\."),
    re.compile(r"^pytest\.ini$"),
    re.compile(r"^setup\.cfg$"),
    re.compile(r"^pyproject\.toml$"),
    re.compile(r"^conftest\.py$"),
    re.compile(r"^cypress/", re.IGNORECASE),
    re.compile(r"^playwright\.config\."),
)

LIVE_URL_PATTERNS: Tuple[re.Pattern, ...] = (
    re.compile(r"https?://[^\s)\]]+\.vercel\.app[^\s)\]]*", re.IGNORECASE),
    re.compile(r"https?://[^\s)\]]+\.netlify\.app[^\s)\]]*", re.IGNORECASE),
    re.compile(r"https?://[^\s)\]]+\.railway\.app[^\s)\]]*", re.IGNORECASE),
    re.compile(r"https?://[^\s)\]]+\.render\.com[^\s)\]]*", re.IGNORECASE),
    re.compile(r"https?://[^\s)\]]+\.fly\.dev[^\s)\]]*", re.IGNORECASE),
    re.compile(r"https?://[^\s)\]]+\.herokuapp\.com[^\s)\]]*", re.IGNORECASE),
    re.compile(r"\[(?:live demo|live|demo|app|try it|production)\]\((https?://[^)]+)\)", re.IGNORECASE),
)

README_PATTERN = re.compile(r"^readme\.(md|txt|rst)$", re.IGNORECASE)
REQUIREMENT_SPLIT = re.compile(r"[>=<!;#\[\s~]")

JS_MANIFEST = "package.json"
PY_MANIFEST = "requirements.txt"


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class RepoFacts:
    """Everything learned about one repository in one run. Never mutated."""
    owner: str
    repo_name: str
    stars: int = 0
    description: Optional[str] = None
    last_pushed_at: Optional[str] = None  # ISO 8601 from GitHub
    total_commits: int = 0
    user_commits: int = 0
    languages: Dict[str, int] = field(default_factory=dict)
    frameworks: Tuple[str, ...] = ()
    has_readme: bool = False
    readme_text: Optional[str] = None
    readme_sha: Optional[str] = None
    has_tests: bool = False
    has_deployment: bool = False
    live_url: Optional[str] = None

    def __post_init__(self):
        if self.user_commits > self.total_commits:
            raise ValueError(
                f"{self.full_name}: user commits ({self.user_commits}) exceed "
                f"total commits ({self.total_commits})"
            )

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo_name}"

    @property
    def total_bytes(self) -> int:
        return sum(self.languages.values())

    @property
    def skills(self) -> List[str]:
        """Languages first, then frameworks, each name once."""
        return list(dict.fromkeys([*self.languages.keys(), *self.frameworks]))


# =============================================================================
# PURE DETECTORS
# =============================================================================

def detect_js_frameworks(package_json: str) -> List[str]:
    """Skill names for dependency keys in a package.json document."""
    try:
        manifest = json.loads(package_json)
    except json.JSONDecodeError:
        logger.debug("Unparseable package.json")
        return []
    if not isinstance(manifest, dict):
        return []

    found: List[str] = []
    for section in ("dependencies", "devDependencies"):
        deps = manifest.get(section)
        if not isinstance(deps, dict):
            continue
        for name in deps:
            skill = JS_FRAMEWORK_MAP.get(name)
            if skill and skill not in found:
                found.append(skill)
    return found


def detect_python_libraries(requirements: str) -> List[str]:
    """Skill names for packages listed in a requirements.txt document."""
    found: List[str] = []
    for line in requirements.splitlines():
        name = REQUIREMENT_SPLIT.split(line.strip(), maxsplit=1)[0].strip().lower()
        if not name or name.startswith("-"):
            continue
        skill = PY_LIB_MAP.get(name) or PY_LIB_MAP.get(name.replace("-", "_"))
        if skill and skill not in found:
            found.append(skill)
    return found


def has_test_markers(paths: Iterable[str]) -> bool:
    return any(pattern.search(path) for path in paths for pattern in TEST_PATTERNS)


def has_deployment_markers(paths: Iterable[str]) -> bool:
    for path in paths:
        for marker in DEPLOYMENT_FILES:
            if path == marker or path.startswith(marker + "/"):
                return True
    return False


def find_live_url(readme_text: Optional[str]) -> Optional[str]:
    """First hosted-app URL or demo link in a README."""
    if not readme_text:
        return None
    for pattern in LIVE_URL_PATTERNS:
        match = pattern.search(readme_text)
        if match:
            return match.group(1) if match.groups() else match.group(0)
    return None


def find_readme_path(paths: Iterable[str]) -> Optional[str]:
    for path in paths:
        if README_PATTERN.match(path):
            return path
    return None


# =============================================================================
# ANALYZER
# =============================================================================

class RepoAnalyzer:
    """
    Builds RepoFacts for repositories through a shared GitHubClient.

    Usage:
        analyzer = RepoAnalyzer(github)
        facts = await analyzer.analyze("octocat", "hello-world", "octocat")
        all_facts = await analyzer.analyze_all(repos, "octocat")
    """

    def __init__(
        self,
        github: GitHubClient,
        concurrency: int = 5,
        batch_size: int = 20,
        batch_cooldown_seconds: float = 2.0,
        repo_timeout_seconds: float = 90.0,
    ):
        self.github = github
        self.concurrency = max(1, concurrency)
        self.batch_size = max(1, batch_size)
        self.batch_cooldown_seconds = batch_cooldown_seconds
        self.repo_timeout_seconds = repo_timeout_seconds

    async def analyze(
        self, owner: str, repo_name: str, tracked_username: Optional[str] = None
    ) -> Optional[RepoFacts]:
        """
        Facts for one repository, or None when its metadata is unavailable.

        Failures of any other call degrade to empty values.
        """
        try:
            metadata, languages = await asyncio.gather(
                self.github.get_repo(owner, repo_name),
                self._safe(self.github.get_languages(owner, repo_name), {}, "languages", owner, repo_name),
            )
        except Exception as e:
            logger.warning(f"{owner}/{repo_name}: metadata request failed: {e}")
            return None
        if not metadata:
            logger.info(f"{owner}/{repo_name}: not found, skipping")
            return None

        paths, truncated = await self._safe(
            self.github.get_tree(owner, repo_name), ([], False), "tree", owner, repo_name
        )
        if truncated:
            logger.warning(f"{owner}/{repo_name}: file tree truncated, using partial list")

        path_set = set(paths)
        readme_path = find_readme_path(paths)

        (js_frameworks, py_frameworks, readme, total_commits, user_commits) = await asyncio.gather(
            self._frameworks_from(owner, repo_name, JS_MANIFEST, path_set, detect_js_frameworks),
            self._frameworks_from(owner, repo_name, PY_MANIFEST, path_set, detect_python_libraries),
            self._safe(self.github.get_file(owner, repo_name, readme_path), None, "readme", owner, repo_name)
            if readme_path else _resolved(None),
            self._safe(self.github.count_commits(owner, repo_name), 0, "commits", owner, repo_name),
            self._safe(
                self.github.count_commits(owner, repo_name, author=tracked_username),
                0, "user commits", owner, repo_name,
            ) if tracked_username else _resolved(0),
        )

        readme_text, readme_sha = readme if readme else (None, None)
        live_url = find_live_url(readme_text)
        frameworks = tuple(dict.fromkeys([*js_frameworks, *py_frameworks]))

        return RepoFacts(
            owner=owner,
            repo_name=repo_name,
            stars=int(metadata.get("stargazers_count") or 0),
            description=metadata.get("description"),
            last_pushed_at=metadata.get("pushed_at"),
            # A failed total probe must not push the user count over the total
            total_commits=max(total_commits, user_commits),
            user_commits=user_commits,
            languages=dict(languages),
            frameworks=frameworks,
            has_readme=readme_text is not None,
            readme_text=readme_text,
            readme_sha=readme_sha or None,
            has_tests=has_test_markers(paths),
            has_deployment=has_deployment_markers(paths) or live_url is not None,
            live_url=live_url,
        )

    async def analyze_all(
        self, repos: Sequence[Tuple[str, str]], tracked_username: Optional[str] = None
    ) -> List[RepoFacts]:
        """
        Analyze many repositories with bounded concurrency, pausing between
        batches of ``batch_size``. Failed or missing repos are left out;
        the order of the result follows ``repos``.
        """
        semaphore = asyncio.Semaphore(self.concurrency)

        async def one(owner: str, repo_name: str) -> Optional[RepoFacts]:
            async with semaphore:
                try:
                    return await asyncio.wait_for(
                        self.analyze(owner, repo_name, tracked_username),
                        timeout=self.repo_timeout_seconds,
                    )
                except asyncio.TimeoutError:
                    logger.warning(f"{owner}/{repo_name}: analysis timed out, skipping")
                except Exception as e:
                    logger.warning(f"{owner}/{repo_name}: analysis failed, skipping: {e}")
                return None

        results: List[RepoFacts] = []
        for start in range(0, len(repos), self.batch_size):
            if start > 0 and self.batch_cooldown_seconds > 0:
                logger.debug(f"Cooling down {self.batch_cooldown_seconds}s after {start} repos")
                await asyncio.sleep(self.batch_cooldown_seconds)

            batch = repos[start:start + self.batch_size]
            facts = await asyncio.gather(*(one(owner, name) for owner, name in batch))
            results.extend(f for f in facts if f is not None)

        logger.info(f"Analyzed {len(results)}/{len(repos)} repositories")
        return results

    async def _frameworks_from(self, owner, repo_name, manifest, path_set, detector) -> List[str]:
        if manifest not in path_set:
            return []
        content = await self._safe(
            self.github.get_file(owner, repo_name, manifest), None, manifest, owner, repo_name
        )
        return detector(content[0]) if content else []

    @staticmethod
    async def _safe(awaitable: Awaitable[T], default: T, what: str, owner: str, repo_name: str) -> T:
        try:
            return await awaitable
        except Exception as e:
            logger.warning(f"{owner}/{repo_name}: {what} request failed, continuing without it: {e}")
            return default


async def _resolved(value: T) -> T:
    return value
