"""
Tests for GitHubClient against a MockTransport.
"""

import time

import httpx
import pytest

from collectors.github_client import GitHubClient
from collectors.retry_strategy import RetryConfig
from utils.rate_limiter import AsyncRateLimiter

FAST_RETRY = RetryConfig(max_attempts=3, backoff_min=0, backoff_max=0)


def client_for(handler, **kwargs) -> GitHubClient:
    return GitHubClient(
        token="t0ken",
        transport=httpx.MockTransport(handler),
        rate_limiter=AsyncRateLimiter(),
        retry_config=FAST_RETRY,
        **kwargs,
    )


class TestRequests:
    """Headers, retries and status handling."""

    @pytest.mark.asyncio
    async def test_sends_auth_and_user_agent(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={})

        async with client_for(handler) as github:
            await github.get_repo("octocat", "app")
            await github.list_hooks("octocat", "app", token="user-token")

        assert seen[0].headers["Authorization"] == "Bearer t0ken"
        assert seen[0].headers["User-Agent"]
        assert seen[1].headers["Authorization"] == "Bearer user-token"

    @pytest.mark.asyncio
    async def test_retries_server_errors(self):
        calls = {"n": 0}

        def handler(request):
            calls["n"] += 1
            if calls["n"] < 3:
                return httpx.Response(502)
            return httpx.Response(200, json={"name": "app"})

        async with client_for(handler) as github:
            assert await github.get_repo("octocat", "app") == {"name": "app"}
        assert calls["n"] == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        def handler(request):
            return httpx.Response(503)

        async with client_for(handler) as github:
            with pytest.raises(httpx.HTTPStatusError):
                await github.get_repo("octocat", "app")
            assert github.request_count == 3

    @pytest.mark.asyncio
    async def test_not_found_is_none_without_retry(self):
        calls = {"n": 0}

        def handler(request):
            calls["n"] += 1
            return httpx.Response(404, json={"message": "Not Found"})

        async with client_for(handler) as github:
            assert await github.get_repo("octocat", "gone") is None
        assert calls["n"] == 1


    @pytest.mark.asyncio
    async def test_exhausted_quota_pauses_shared_limiter(self):
        reset = str(int(time.time()) + 120)

        def handler(request):
            return httpx.Response(
                200, json={}, headers={"X-RateLimit-Remaining": "0", "X-RateLimit-Reset": reset}
            )

        async with client_for(handler) as github:
            await github.get_repo("octocat", "app")
            assert github.rate_limiter.paused


class TestRepositoryData:
    """Tree, file and commit-count helpers against the fake API."""

    @pytest.mark.asyncio
    async def test_tree_returns_blobs_and_truncation(self, fake_github, github):
        fake_github.add_repo("octocat/app", tree=["README.md", "src/index.js"], truncated=True)
        paths, truncated = await github.get_tree("octocat", "app")
        assert paths == ["README.md", "src/index.js"]
        assert truncated is True

    @pytest.mark.asyncio
    async def test_get_file_decodes_wrapped_base64(self, fake_github, github):
        text = "# App\n" + "long line " * 40
        fake_github.add_repo("octocat/app", files={"README.md": text})
        content, sha = await github.get_file("octocat", "app", "README.md")
        assert content == text
        assert sha

    @pytest.mark.asyncio
    async def test_get_file_missing(self, fake_github, github):
        fake_github.add_repo("octocat/app")
        assert await github.get_file("octocat", "app", "README.md") is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("total", [0, 1, 2, 345])
    async def test_count_commits_from_link_header(self, fake_github, github, total):
        fake_github.add_repo("octocat/app", commits=total)
        assert await github.count_commits("octocat", "app") == total

    @pytest.mark.asyncio
    async def test_count_commits_by_author(self, fake_github, github):
        fake_github.add_repo("octocat/app", commits=50, user_commits=12)
        assert await github.count_commits("octocat", "app", author="octocat") == 12

    @pytest.mark.asyncio
    async def test_empty_repository_counts_zero(self, fake_github, github):
        fake_github.add_repo("octocat/app")
        fake_github.fail_paths["/commits"] = 409
        assert await github.count_commits("octocat", "app") == 0


class TestHooks:

    @pytest.mark.asyncio
    async def test_create_list_delete(self, fake_github, github):
        payload = {"name": "web", "config": {"url": "https://x/hook"}, "events": ["push"]}
        created = await github.create_hook("octocat", "app", payload)
        assert created.status_code == 201
        hook_id = created.json()["id"]

        assert [h["id"] for h in await github.list_hooks("octocat", "app")] == [hook_id]
        assert await github.delete_hook("octocat", "app", hook_id) == 204
        assert await github.delete_hook("octocat", "app", hook_id) == 404
