"""
Webhook subscription management on GitHub.

subscribe() registers one webhook per repository, each with its own
random secret. GitHub answers 422 when an identical hook exists; the
existing hook is then looked up by URL, adopted and given the new secret.
If that update fails the repository is reported as failed and the stored
secret is left as it was, so it still matches what GitHub signs with.

unsubscribe() deletes every active hook of a user on a best-effort basis
and deactivates the local records whatever GitHub says.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from collectors.github_client import GitHubClient
from storage.skill_store import SkillStore

logger = logging.getLogger(__name__)

WEBHOOK_EVENTS = ["push", "create", "public", "repository"]
WEBHOOK_PATH = "/api/webhooks/github"


@dataclass
class SubscriptionOutcome:
    owner: str
    repo_name: str
    status: str  # registered, existing, failed, deleted, already_gone, delete_failed
    webhook_id: Optional[int] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status != "failed"


def webhook_url(base_url: str) -> str:
    return f"{base_url.rstrip('/')}{WEBHOOK_PATH}"


class SubscriptionManager:
    def __init__(self, store: SkillStore, github: GitHubClient, base_url: str):
        self.store = store
        self.github = github
        self.webhook_url = webhook_url(base_url)

    async def subscribe(
        self,
        user_id: str,
        repos: Optional[Iterable[Tuple[str, str]]] = None,
        token: Optional[str] = None,
    ) -> List[SubscriptionOutcome]:
        """Register webhooks for ``repos`` (default: all linked repos of the user)."""
        targets = list(repos) if repos is not None else await self.store.get_linked_repos(user_id)
        outcomes = []
        for owner, repo_name in targets:
            outcomes.append(await self._subscribe_one(user_id, owner, repo_name, token))

        registered = sum(1 for o in outcomes if o.ok)
        logger.info(f"Subscribed {registered}/{len(outcomes)} repositories for {user_id}")
        return outcomes

    async def _subscribe_one(
        self, user_id: str, owner: str, repo_name: str, token: Optional[str]
    ) -> SubscriptionOutcome:
        secret = secrets.token_hex(24)
        body = {
            "name": "web",
            "active": True,
            "events": WEBHOOK_EVENTS,
            "config": {
                "url": self.webhook_url,
                "content_type": "json",
                "secret": secret,
                "insecure_ssl": "0",
            },
        }

        try:
            response = await self.github.create_hook(owner, repo_name, body, token=token)
            if response.status_code == 201:
                hook_id = response.json()["id"]
                status = "registered"
            elif response.status_code == 422:
                hook_id = await self._find_existing_hook(owner, repo_name, token)
                if hook_id is None:
                    return SubscriptionOutcome(owner, repo_name, "failed", error="Hook exists but was not found")
                status = "existing"
            else:
                logger.warning(f"Webhook registration for {owner}/{repo_name} returned {response.status_code}")
                return SubscriptionOutcome(owner, repo_name, "failed", error=f"HTTP {response.status_code}")
        except Exception as e:
            logger.warning(f"Webhook registration for {owner}/{repo_name} failed: {e}")
            return SubscriptionOutcome(owner, repo_name, "failed", error=str(e))

        # Adopted hooks get the fresh secret so signatures match the stored record
        if status == "existing":
            error = await self._update_hook_secret(owner, repo_name, hook_id, body, token)
            if error:
                return SubscriptionOutcome(owner, repo_name, "failed", webhook_id=hook_id, error=error)

        await self.store.upsert_subscription(user_id, owner, repo_name, hook_id, secret, WEBHOOK_EVENTS)
        return SubscriptionOutcome(owner, repo_name, status, webhook_id=hook_id)

    async def _find_existing_hook(self, owner: str, repo_name: str, token: Optional[str]) -> Optional[int]:
        for hook in await self.github.list_hooks(owner, repo_name, token=token):
            if (hook.get("config") or {}).get("url") == self.webhook_url:
                return hook.get("id")
        return None

    async def _update_hook_secret(self, owner, repo_name, hook_id, body, token) -> Optional[str]:
        """PATCH the hook's secret. Returns an error message, or None on success."""
        try:
            response = await self.github.request(
                "PATCH", f"/repos/{owner}/{repo_name}/hooks/{hook_id}",
                json={"config": body["config"], "events": body["events"], "active": True},
                token=token,
            )
        except Exception as e:
            logger.warning(f"Could not rotate secret on {owner}/{repo_name} hook {hook_id}: {e}")
            return str(e)
        if not response.is_success:
            logger.warning(f"Could not rotate secret on {owner}/{repo_name} hook {hook_id}: {response.status_code}")
            return f"Secret rotation failed: HTTP {response.status_code}"
        return None

    async def unsubscribe(self, user_id: str, token: Optional[str] = None) -> List[SubscriptionOutcome]:
        outcomes = []
        for sub in await self.store.list_active_subscriptions(user_id):
            try:
                status_code = await self.github.delete_hook(sub.repo_owner, sub.repo_name, sub.webhook_id, token=token)
                if status_code == 204:
                    status = "deleted"
                elif status_code == 404:
                    status = "already_gone"
                else:
                    status = "delete_failed"
                error = None if status != "delete_failed" else f"HTTP {status_code}"
            except Exception as e:
                logger.warning(f"Deleting webhook on {sub.full_name} failed: {e}")
                status, error = "delete_failed", str(e)

            await self.store.deactivate_subscription(sub.id)
            outcomes.append(SubscriptionOutcome(sub.repo_owner, sub.repo_name, status, sub.webhook_id, error))

        logger.info(f"Unsubscribed {len(outcomes)} repositories for {user_id}")
        return outcomes
