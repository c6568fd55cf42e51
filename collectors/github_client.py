"""
GitHub REST client used by the repository analyzer and webhook subscriptions.

One instance is constructed at process start and shared. Every request:
- acquires a token from the shared "github" rate limiter
- carries a fixed User-Agent and, when configured, a bearer token
- has a bounded timeout
- is retried (tenacity) on transport errors, 5xx and rate limiting

Non-retryable 4xx responses are returned to the caller, who decides what
"not found" means for that call.
"""

from __future__ import annotations

import base64
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

import httpx
from tenacity import AsyncRetrying

from collectors.retry_strategy import RetryConfig, raise_for_retryable_status
from utils.rate_limiter import AsyncRateLimiter, get_rate_limiter

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

GITHUB_API_URL = "https://api.github.com"
USER_AGENT = "skill-verification-pipeline"
DEFAULT_TIMEOUT_SECONDS = 15.0

LAST_PAGE_PATTERN = re.compile(r'[?&]page=(\d+)>;\s*rel="last"')


class GitHubClient:
    """
    Async GitHub API client.

    Usage:
        async with GitHubClient(token=os.getenv("GITHUB_TOKEN")) as github:
            repo = await github.get_repo("octocat", "hello-world")
    """

    def __init__(
        self,
        token: Optional[str] = None,
        base_url: str = GITHUB_API_URL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        retry_config: Optional[RetryConfig] = None,
        rate_limiter: Optional[AsyncRateLimiter] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.token = token
        self.retry_config = retry_config or RetryConfig()
        self.rate_limiter = rate_limiter or get_rate_limiter("github")
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
            headers={
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
                "User-Agent": USER_AGENT,
            },
        )
        self._request_count = 0

    async def __aenter__(self) -> GitHubClient:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    @property
    def request_count(self) -> int:
        return self._request_count

    # =========================================================================
    # TRANSPORT
    # =========================================================================

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        token: Optional[str] = None,
    ) -> httpx.Response:
        """
        Rate-limited, retried request. ``token`` overrides the client's
        credential for calls made on a user's behalf (webhook management).
        """
        headers = {}
        credential = token or self.token
        if credential:
            headers["Authorization"] = f"Bearer {credential}"

        async for attempt in AsyncRetrying(**self.retry_config.tenacity_kwargs()):
            with attempt:
                await self.rate_limiter.acquire()
                logger.debug(f"GitHub API: {method} {path}")
                response = await self._client.request(
                    method, path, params=params, json=json, headers=headers
                )
                self._request_count += 1

                self._observe_quota(response)

                raise_for_retryable_status(response)
        return response

    def _observe_quota(self, response: httpx.Response) -> None:
        remaining = response.headers.get("X-RateLimit-Remaining")
        if not remaining or not remaining.isdigit():
            return
        if int(remaining) == 0:
            reset = response.headers.get("X-RateLimit-Reset", "")
            if reset.isdigit():
                self.rate_limiter.pause_until(float(reset))
        elif int(remaining) < 10:
            logger.warning(f"GitHub rate limit low: {remaining} remaining")

    async def get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Optional[Any]:
        """GET returning parsed JSON, or None for any non-success status."""
        response = await self.request("GET", path, params=params)
        if not response.is_success:
            logger.debug(f"GitHub API {path} returned {response.status_code}")
            return None
        return response.json()

    # =========================================================================
    # REPOSITORY DATA
    # =========================================================================

    async def get_repo(self, owner: str, repo: str) -> Optional[Dict[str, Any]]:
        return await self.get_json(f"/repos/{owner}/{repo}")

    async def get_languages(self, owner: str, repo: str) -> Dict[str, int]:
        data = await self.get_json(f"/repos/{owner}/{repo}/languages")
        return data if isinstance(data, dict) else {}

    async def get_tree(self, owner: str, repo: str) -> Tuple[List[str], bool]:
        """
        Blob paths of the default branch in one recursive call.

        Returns (paths, truncated). GitHub truncates very large trees; the
        partial list is still returned.
        """
        data = await self.get_json(
            f"/repos/{owner}/{repo}/git/trees/HEAD", params={"recursive": "1"}
        )
        if not isinstance(data, dict):
            return [], False
        paths = [
            item["path"]
            for item in data.get("tree", [])
            if item.get("type") == "blob" and item.get("path")
        ]
        return paths, bool(data.get("truncated"))

    async def get_file(self, owner: str, repo: str, path: str) -> Optional[Tuple[str, str]]:
        """Decoded text and blob SHA of one file, or None."""
        data = await self.get_json(f"/repos/{owner}/{repo}/contents/{path}")
        if not isinstance(data, dict) or "content" not in data:
            return None
        raw = base64.b64decode(data["content"])
        return raw.decode("utf-8", errors="replace"), data.get("sha", "")

    async def count_commits(self, owner: str, repo: str, author: Optional[str] = None) -> int:
        """
        Total commits without paging: ask for one commit per page and read
        the last page number from the Link header.
        """
        params: Dict[str, Any] = {"per_page": 1}
        if author:
            params["author"] = author

        response = await self.request("GET", f"/repos/{owner}/{repo}/commits", params=params)
        if not response.is_success:
            # 409 for empty repositories
            return 0

        match = LAST_PAGE_PATTERN.search(response.headers.get("Link", ""))
        if match:
            return int(match.group(1))

        data = response.json()
        return len(data) if isinstance(data, list) else 0

    # =========================================================================
    # WEBHOOKS
    # =========================================================================

    async def create_hook(
        self, owner: str, repo: str, payload: Dict[str, Any], token: Optional[str] = None
    ) -> httpx.Response:
        return await self.request("POST", f"/repos/{owner}/{repo}/hooks", json=payload, token=token)

    async def list_hooks(self, owner: str, repo: str, token: Optional[str] = None) -> List[Dict[str, Any]]:
        response = await self.request("GET", f"/repos/{owner}/{repo}/hooks", token=token)
        if not response.is_success:
            return []
        data = response.json()
        return data if isinstance(data, list) else []

    async def delete_hook(self, owner: str, repo: str, hook_id: int, token: Optional[str] = None) -> int:
        """Returns the response status (204 on success, 404 if already gone)."""
        response = await self.request("DELETE", f"/repos/{owner}/{repo}/hooks/{hook_id}", token=token)
        return response.status_code
