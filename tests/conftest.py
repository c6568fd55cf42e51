"""
Shared fixtures: temporary stores, a fake GitHub API and a mocked Gemini client.
"""

import pytest
import pytest_asyncio

from collectors.github_client import GitHubClient
from services.readme_summarizer import ReadmeSummarizer
from storage.job_store import JobStore
from storage.skill_store import SkillStore
from tests.helpers import FakeGitHub, make_gemini_client
from utils.rate_limiter import AsyncRateLimiter


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "skills.db")


@pytest_asyncio.fixture
async def store(db_path):
    skill_store = SkillStore(db_path)
    await skill_store.initialize()
    yield skill_store
    await skill_store.close()


@pytest_asyncio.fixture
async def job_store(db_path):
    jobs = JobStore(db_path)
    await jobs.initialize()
    yield jobs
    await jobs.close()


@pytest.fixture
def fake_github():
    return FakeGitHub()


@pytest_asyncio.fixture
async def github(fake_github):
    client = GitHubClient(
        token="test-token",
        transport=fake_github.transport,
        rate_limiter=AsyncRateLimiter(),
    )
    yield client
    await client.close()


@pytest.fixture
def gemini_client():
    return make_gemini_client()


@pytest.fixture
def summarizer(gemini_client):
    return ReadmeSummarizer(client=gemini_client, rate_limiter=AsyncRateLimiter())
