"""
Tests for GitHub webhook ingestion.
"""

import json
from unittest.mock import MagicMock

import pytest
import pytest_asyncio

from connectors.github_webhook_handler import (
    GitHubWebhookHandler,
    WebhookOutcome,
    compute_signature,
    is_meaningful_change,
    repository_from,
    verify_signature,
)

SECRET = "repo-secret"


def push_body(sender="octocat", full_name="octocat/shop") -> bytes:
    owner = full_name.split("/")[0]
    return json.dumps({
        "ref": "refs/heads/main",
        "sender": {"login": sender},
        "repository": {"full_name": full_name, "owner": {"login": owner}},
    }).encode()


@pytest.fixture
def dispatcher():
    return MagicMock()


@pytest_asyncio.fixture
async def handler(store, dispatcher):
    await store.upsert_user("u1", "octocat")
    await store.upsert_subscription("u1", "octocat", "shop", 7, SECRET, ["push"])
    return GitHubWebhookHandler(store, dispatcher, fallback_secret="global-secret")


class TestSignature:
    """HMAC-SHA256 verification."""

    def test_valid_signature(self):
        body = b'{"a": 1}'
        assert verify_signature(body, compute_signature(body, SECRET), SECRET)

    def test_single_altered_byte_rejected(self):
        body = b'{"a": 1}'
        signature = compute_signature(body, SECRET)
        assert not verify_signature(b'{"a": 2}', signature, SECRET)

    def test_wrong_secret_or_format(self):
        body = b"{}"
        assert not verify_signature(body, compute_signature(body, "other"), SECRET)
        assert not verify_signature(body, compute_signature(body, SECRET)[7:], SECRET)
        assert not verify_signature(body, None, SECRET)
        assert not verify_signature(body, compute_signature(body, SECRET), "")

    def test_non_ascii_header_rejected(self):
        assert not verify_signature(b"{}", "sha256=\u00e9", SECRET)
        assert not verify_signature(b"{}", "sha256=\udce9", SECRET)


class TestMeaningfulChange:
    """Event filter."""

    @pytest.mark.parametrize("event,payload,expected", [
        ("push", {}, True),
        ("public", {}, True),
        ("create", {"ref_type": "branch"}, True),
        ("create", {"ref_type": "repository"}, True),
        ("create", {"ref_type": "tag"}, False),
        ("repository", {"action": "created"}, True),
        ("repository", {"action": "publicized"}, True),
        ("repository", {"action": "renamed"}, False),
        ("ping", {}, False),
        ("issues", {"action": "opened"}, False),
    ])
    def test_filter(self, event, payload, expected):
        assert is_meaningful_change(event, payload) is expected


class TestRepositoryFrom:

    def test_header_wins(self):
        assert repository_from({"repository": {"full_name": "a/b"}}, "c/d") == ("c", "d")

    def test_payload_fallback_and_missing(self):
        assert repository_from({"repository": {"full_name": "a/b"}}, None) == ("a", "b")
        assert repository_from({}, None) is None


class TestHandle:
    """Full handling path."""

    @pytest.mark.asyncio
    async def test_push_accepted_and_run_submitted(self, handler, dispatcher, store):
        body = push_body()
        result = await handler.handle(body, compute_signature(body, SECRET), "push", "d-1")

        assert result.outcome == WebhookOutcome.ACCEPTED
        assert result.status_code == 200
        assert result.user_id == "u1"
        dispatcher.submit.assert_called_once_with("u1", "webhook")
        assert (await store.get_active_subscription("octocat", "shop")).last_triggered_at is not None

    @pytest.mark.asyncio
    async def test_missing_signature(self, handler, dispatcher):
        result = await handler.handle(push_body(), None, "push")
        assert result.status_code == 401
        dispatcher.submit.assert_not_called()

    @pytest.mark.asyncio
    async def test_tampered_body_rejected(self, handler, dispatcher):
        body = push_body()
        signature = compute_signature(body, SECRET)
        tampered = body.replace(b"main", b"mair")
        result = await handler.handle(tampered, signature, "push")
        assert result.outcome == WebhookOutcome.REJECTED_UNAUTHORIZED
        assert result.status_code == 401
        dispatcher.submit.assert_not_called()

    @pytest.mark.asyncio
    async def test_global_secret_does_not_override_repo_secret(self, handler, dispatcher):
        body = push_body()
        result = await handler.handle(body, compute_signature(body, "global-secret"), "push")
        assert result.status_code == 401

    @pytest.mark.asyncio
    async def test_fallback_secret_for_unsubscribed_repo(self, handler, dispatcher):
        body = push_body(full_name="octocat/other")
        result = await handler.handle(body, compute_signature(body, "global-secret"), "push")
        assert result.outcome == WebhookOutcome.ACCEPTED

    @pytest.mark.asyncio
    async def test_no_secret_available(self, store, dispatcher):
        handler = GitHubWebhookHandler(store, dispatcher)
        body = push_body(full_name="octocat/other")
        result = await handler.handle(body, compute_signature(body, "x"), "push")
        assert result.status_code == 400

    @pytest.mark.asyncio
    async def test_ping_answers_without_run(self, handler, dispatcher):
        body = json.dumps({"zen": "Keep it simple.", "repository": {"full_name": "octocat/shop"}}).encode()
        result = await handler.handle(body, compute_signature(body, SECRET), "ping")
        assert result.status_code == 200
        assert result.message == "pong"
        dispatcher.submit.assert_not_called()

    @pytest.mark.asyncio
    async def test_not_meaningful_event_skipped(self, handler, dispatcher):
        body = push_body()
        result = await handler.handle(body, compute_signature(body, SECRET), "issues")
        assert result.outcome == WebhookOutcome.IGNORED_NOT_MEANINGFUL
        assert result.status_code == 200
        dispatcher.submit.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_sender_falls_back_to_subscriber(self, handler, dispatcher):
        body = push_body(sender="stranger")
        body = body.replace(b'"owner": {"login": "octocat"}', b'"owner": {"login": "some-org"}')
        result = await handler.handle(body, compute_signature(body, SECRET), "push")
        assert result.user_id == "u1"

    @pytest.mark.asyncio
    async def test_unknown_user_ignored(self, handler, dispatcher):
        body = push_body(sender="stranger", full_name="nobody/repo")
        result = await handler.handle(body, compute_signature(body, "global-secret"), "push")
        assert result.outcome == WebhookOutcome.IGNORED_UNKNOWN_USER
        assert result.status_code == 200
        dispatcher.submit.assert_not_called()

    @pytest.mark.asyncio
    async def test_invalid_json_after_valid_signature(self, handler):
        body = b"not json"
        result = await handler.handle(
            body, compute_signature(body, "global-secret"), "push", repository_header="octocat/new"
        )
        assert result.status_code == 400

    @pytest.mark.asyncio
    async def test_duplicate_delivery_ignored(self, handler, dispatcher):
        body = push_body()
        signature = compute_signature(body, SECRET)
        await handler.handle(body, signature, "push", "d-9")
        second = await handler.handle(body, signature, "push", "d-9")
        assert second.outcome == WebhookOutcome.IGNORED_DUPLICATE
        assert dispatcher.submit.call_count == 1
