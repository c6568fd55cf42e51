"""
Tests for webhook subscription management against the fake GitHub API.
"""

import pytest
import pytest_asyncio

from connectors.subscription_manager import WEBHOOK_EVENTS, SubscriptionManager, webhook_url

BASE_URL = "https://skills.example.com/"


@pytest.fixture
def manager(store, github):
    return SubscriptionManager(store, github, BASE_URL)


@pytest_asyncio.fixture
async def linked_user(store):
    await store.upsert_user("u1", "octocat")
    await store.link_repos("u1", [("octocat", "shop"), ("octocat", "cli")])


class TestSubscribe:
    """Registering hooks."""

    def test_webhook_url(self):
        assert webhook_url(BASE_URL) == "https://skills.example.com/api/webhooks/github"

    @pytest.mark.asyncio
    async def test_registers_each_linked_repo_with_own_secret(self, manager, store, fake_github, linked_user):
        outcomes = await manager.subscribe("u1", token="user-token")

        assert [o.status for o in outcomes] == ["registered", "registered"]
        shop = await store.get_active_subscription("octocat", "shop")
        cli = await store.get_active_subscription("octocat", "cli")
        assert shop.secret != cli.secret
        assert shop.events == WEBHOOK_EVENTS

        hook = fake_github.hooks["octocat/shop"][0]
        assert hook["config"]["secret"] == shop.secret
        assert hook["config"]["url"] == manager.webhook_url
        assert fake_github.requests[0].headers["Authorization"] == "Bearer user-token"

    @pytest.mark.asyncio
    async def test_duplicate_registration_is_success(self, manager, store, fake_github):
        first = await manager.subscribe("u1", [("octocat", "shop")])
        second = await manager.subscribe("u1", [("octocat", "shop")])

        assert first[0].status == "registered"
        assert second[0].status == "existing"
        assert second[0].ok
        assert second[0].webhook_id == first[0].webhook_id
        assert len(fake_github.hooks["octocat/shop"]) == 1

        # stored secret matches what GitHub will sign with
        stored = await store.get_active_subscription("octocat", "shop")
        assert fake_github.hooks["octocat/shop"][0]["config"]["secret"] == stored.secret

    @pytest.mark.asyncio
    async def test_failed_secret_rotation_keeps_stored_secret(self, manager, store, fake_github):
        first = await manager.subscribe("u1", [("octocat", "shop")])
        before = await store.get_active_subscription("octocat", "shop")
        fake_github.fail_paths[f"/hooks/{first[0].webhook_id}"] = 403

        second = await manager.subscribe("u1", [("octocat", "shop")])

        assert second[0].status == "failed"
        assert not second[0].ok
        assert second[0].error == "Secret rotation failed: HTTP 403"
        after = await store.get_active_subscription("octocat", "shop")
        assert after.secret == before.secret
        assert fake_github.hooks["octocat/shop"][0]["config"]["secret"] == after.secret

    @pytest.mark.asyncio
    async def test_permission_error_reported_per_repo(self, manager, store, fake_github):
        fake_github.fail_paths["/octocat/cli/hooks"] = 403
        outcomes = await manager.subscribe("u1", [("octocat", "shop"), ("octocat", "cli")])

        assert [o.status for o in outcomes] == ["registered", "failed"]
        assert outcomes[1].error == "HTTP 403"
        assert await store.get_active_subscription("octocat", "cli") is None


class TestUnsubscribe:
    """Removing hooks."""

    @pytest.mark.asyncio
    async def test_deletes_and_deactivates(self, manager, store, fake_github):
        await manager.subscribe("u1", [("octocat", "shop"), ("octocat", "cli")])
        fake_github.hooks["octocat/cli"].clear()

        outcomes = await manager.unsubscribe("u1")

        assert sorted(o.status for o in outcomes) == ["already_gone", "deleted"]
        assert fake_github.hooks["octocat/shop"] == []
        assert await store.list_active_subscriptions("u1") == []

    @pytest.mark.asyncio
    async def test_failed_delete_still_deactivates(self, manager, store, fake_github):
        await manager.subscribe("u1", [("octocat", "shop")])
        hook_id = fake_github.hooks["octocat/shop"][0]["id"]
        fake_github.fail_paths[f"/hooks/{hook_id}"] = 403

        outcomes = await manager.unsubscribe("u1")

        assert outcomes[0].status == "delete_failed"
        assert outcomes[0].error == "HTTP 403"
        assert await store.list_active_subscriptions("u1") == []
