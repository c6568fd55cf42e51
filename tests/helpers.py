"""
Test helpers: a fake GitHub REST API on httpx.MockTransport, RepoFacts
builders and a mocked Gemini client.
"""

import base64
import hashlib
import json
from types import SimpleNamespace
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import httpx

from collectors.repo_analyzer import RepoFacts


def readme_sha(text: str) -> str:
    return hashlib.sha1(text.encode("utf-8")).hexdigest()


class FakeGitHub:
    """
    In-memory GitHub REST API.

    repos: {"owner/name": {"metadata": {...}, "languages": {...}, "tree": [...],
            "files": {path: text}, "commits": int, "user_commits": int,
            "truncated": bool}}
    """

    def __init__(self, repos: Optional[Dict[str, Dict[str, Any]]] = None):
        self.repos = repos or {}
        self.hooks: Dict[str, List[Dict[str, Any]]] = {}
        self.requests: List[httpx.Request] = []
        self.fail_paths: Dict[str, int] = {}  # path suffix -> status
        self._next_hook_id = 100

    def add_repo(self, full_name: str, **data) -> None:
        owner, name = full_name.split("/")
        data.setdefault("metadata", {})
        data["metadata"].setdefault("full_name", full_name)
        data["metadata"].setdefault("name", name)
        data["metadata"].setdefault("stargazers_count", 0)
        data["metadata"].setdefault("pushed_at", "2026-09-15T12:00:00Z")
        self.repos[full_name] = data

    def count(self, suffix: str) -> int:
        return sum(1 for r in self.requests if r.url.path.endswith(suffix))

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        for suffix, status in self.fail_paths.items():
            if path.endswith(suffix):
                return httpx.Response(status, json={"message": "forced failure"})

        parts = path.strip("/").split("/")
        if len(parts) < 3 or parts[0] != "repos":
            return httpx.Response(404, json={"message": "Not Found"})

        full_name = f"{parts[1]}/{parts[2]}"
        rest = parts[3:]

        if rest[:1] == ["hooks"]:
            return self._hooks(request, full_name, rest)

        repo = self.repos.get(full_name)
        if repo is None:
            return httpx.Response(404, json={"message": "Not Found"})

        if not rest:
            return httpx.Response(200, json=repo["metadata"])
        if rest == ["languages"]:
            return httpx.Response(200, json=repo.get("languages", {}))
        if rest[:2] == ["git", "trees"]:
            tree = [{"path": p, "type": "blob"} for p in repo.get("tree", [])]
            tree.append({"path": "src", "type": "tree"})
            return httpx.Response(200, json={"tree": tree, "truncated": repo.get("truncated", False)})
        if rest[:1] == ["contents"]:
            file_path = "/".join(rest[1:])
            text = repo.get("files", {}).get(file_path)
            if text is None:
                return httpx.Response(404, json={"message": "Not Found"})
            encoded = base64.b64encode(text.encode("utf-8")).decode("ascii")
            # GitHub wraps base64 at 60 columns
            wrapped = "\n".join(encoded[i:i + 60] for i in range(0, len(encoded), 60))
            return httpx.Response(200, json={"content": wrapped, "encoding": "base64", "sha": readme_sha(text)})
        if rest == ["commits"]:
            key = "user_commits" if request.url.params.get("author") else "commits"
            total = repo.get(key, 0)
            if total == 0:
                return httpx.Response(200, json=[])
            if total == 1:
                return httpx.Response(200, json=[{"sha": "abc"}])
            link = (
                f'<https://api.github.com/repos/{full_name}/commits?per_page=1&page=2>; rel="next", '
                f'<https://api.github.com/repos/{full_name}/commits?per_page=1&page={total}>; rel="last"'
            )
            return httpx.Response(200, json=[{"sha": "abc"}], headers={"Link": link})

        return httpx.Response(404, json={"message": "Not Found"})

    def _hooks(self, request: httpx.Request, full_name: str, rest: List[str]) -> httpx.Response:
        hooks = self.hooks.setdefault(full_name, [])
        if request.method == "POST":
            body = json.loads(request.content)
            if any(h["config"]["url"] == body["config"]["url"] for h in hooks):
                return httpx.Response(422, json={"message": "Hook already exists on this repository"})
            self._next_hook_id += 1
            hook = {"id": self._next_hook_id, **body}
            hooks.append(hook)
            return httpx.Response(201, json=hook)
        if request.method == "GET":
            return httpx.Response(200, json=hooks)
        if request.method in ("DELETE", "PATCH") and len(rest) == 2:
            hook_id = int(rest[1])
            match = [h for h in hooks if h["id"] == hook_id]
            if not match:
                return httpx.Response(404, json={"message": "Not Found"})
            if request.method == "DELETE":
                hooks.remove(match[0])
                return httpx.Response(204)
            match[0].update(json.loads(request.content))
            return httpx.Response(200, json=match[0])
        return httpx.Response(405)


def make_facts(name: str = "app", owner: str = "octocat", **overrides) -> RepoFacts:
    fields = dict(
        owner=owner,
        repo_name=name,
        stars=0,
        description=f"{name} description",
        last_pushed_at="2026-09-01T00:00:00Z",
        total_commits=0,
        user_commits=0,
        languages={},
        frameworks=(),
    )
    fields.update(overrides)
    if fields["total_commits"] < fields["user_commits"]:
        fields["total_commits"] = fields["user_commits"]
    return RepoFacts(**fields)


def make_gemini_client(text: str = '{"summary": "A demo app.", "techStack": ["React"]}') -> MagicMock:
    client = MagicMock()
    client.aio.models.generate_content = AsyncMock(return_value=SimpleNamespace(text=text))
    return client


