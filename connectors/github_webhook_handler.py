"""
GitHub Webhook Ingestion

Handles repository webhooks from GitHub:
1. Verifies the X-Hub-Signature-256 HMAC over the raw body
2. Filters for events worth a full re-analysis
3. Resolves the sender to a platform user
4. Submits a background pipeline run and returns at once

The secret comes from the active subscription for the repository; the
global GITHUB_WEBHOOK_SECRET is the fallback for repositories configured
by hand.

Usage:
    handler = GitHubWebhookHandler(store, dispatcher, fallback_secret=os.getenv("GITHUB_WEBHOOK_SECRET"))
    result = await handler.handle(raw_body, signature, event_type, delivery_id)
    return JSONResponse({"message": result.message}, status_code=result.status_code)
"""

import hashlib
import hmac
import json
import logging
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Protocol, Tuple

from storage.skill_store import SkillStore
from workflows.pipeline import Trigger

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="
RECENT_DELIVERIES = 1000


class RunSubmitter(Protocol):
    def submit(self, user_id: str, trigger: str) -> Any: ...


class WebhookOutcome(str, Enum):
    ACCEPTED = "accepted"
    REJECTED_UNAUTHORIZED = "rejected_unauthorized"
    IGNORED_NOT_MEANINGFUL = "ignored_not_meaningful"
    IGNORED_UNKNOWN_USER = "ignored_unknown_user"
    IGNORED_DUPLICATE = "ignored_duplicate"
    BAD_REQUEST = "bad_request"


STATUS_CODES = {
    WebhookOutcome.REJECTED_UNAUTHORIZED: 401,
    WebhookOutcome.BAD_REQUEST: 400,
}


@dataclass
class WebhookResult:
    outcome: WebhookOutcome
    message: str
    user_id: Optional[str] = None

    @property
    def status_code(self) -> int:
        return STATUS_CODES.get(self.outcome, 200)


def compute_signature(raw_body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def secrets_match(expected: str, provided: str) -> bool:
    """
    Constant-time string comparison that tolerates any characters.

    Header values arrive decoded as latin-1, and compare_digest refuses
    non-ASCII str, so both sides are compared as UTF-8 bytes.
    """
    return hmac.compare_digest(
        expected.encode("utf-8", "surrogatepass"),
        provided.encode("utf-8", "surrogatepass"),
    )


def verify_signature(raw_body: bytes, signature_header: Optional[str], secret: str) -> bool:
    """Constant-time check of a ``sha256=<hex>`` header against the raw body."""
    if not signature_header or not secret or not signature_header.startswith(SIGNATURE_PREFIX):
        return False
    return secrets_match(compute_signature(raw_body, secret), signature_header)


def is_meaningful_change(event_type: str, payload: Dict[str, Any]) -> bool:
    """Whether an event can change a user's detected skills."""
    if event_type == "push":
        return True
    if event_type == "create":
        return payload.get("ref_type") in ("branch", "repository")
    if event_type == "public":
        return True
    if event_type == "repository":
        return payload.get("action") in ("created", "publicized")
    return False


def repository_from(payload: Optional[Dict[str, Any]], header: Optional[str]) -> Optional[Tuple[str, str]]:
    full_name = header
    if not full_name and payload:
        full_name = (payload.get("repository") or {}).get("full_name")
    if not full_name or "/" not in full_name:
        return None
    owner, name = full_name.split("/", 1)
    return owner, name


class GitHubWebhookHandler:
    """Handler for GitHub repository webhooks"""

    def __init__(
        self,
        store: SkillStore,
        dispatcher: RunSubmitter,
        fallback_secret: Optional[str] = None,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.fallback_secret = fallback_secret
        self._recent_deliveries: "OrderedDict[str, None]" = OrderedDict()

    def _seen_delivery(self, delivery_id: Optional[str]) -> bool:
        if not delivery_id:
            return False
        if delivery_id in self._recent_deliveries:
            return True
        self._recent_deliveries[delivery_id] = None
        if len(self._recent_deliveries) > RECENT_DELIVERIES:
            self._recent_deliveries.popitem(last=False)
        return False

    async def handle(
        self,
        raw_body: bytes,
        signature_header: Optional[str],
        event_type: str,
        delivery_id: Optional[str] = None,
        repository_header: Optional[str] = None,
    ) -> WebhookResult:
        if not signature_header:
            return WebhookResult(WebhookOutcome.REJECTED_UNAUTHORIZED, "Missing signature")

        try:
            payload = json.loads(raw_body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            payload = None
        if payload is not None and not isinstance(payload, dict):
            payload = None

        repo = repository_from(payload, repository_header)
        subscription = await self.store.get_active_subscription(*repo) if repo else None
        secret = subscription.secret if subscription else self.fallback_secret
        if not secret:
            logger.warning(f"No webhook secret for {repo}; rejecting delivery {delivery_id}")
            return WebhookResult(WebhookOutcome.BAD_REQUEST, "No webhook secret configured")

        if not verify_signature(raw_body, signature_header, secret):
            logger.warning(f"Invalid webhook signature for {repo} (delivery {delivery_id})")
            return WebhookResult(WebhookOutcome.REJECTED_UNAUTHORIZED, "Invalid signature")

        if payload is None:
            return WebhookResult(WebhookOutcome.BAD_REQUEST, "Invalid JSON payload")

        if self._seen_delivery(delivery_id):
            logger.info(f"Duplicate delivery {delivery_id} ignored")
            return WebhookResult(WebhookOutcome.IGNORED_DUPLICATE, "Duplicate delivery")

        if event_type == "ping":
            if repo:
                await self.store.touch_subscription(*repo)
            return WebhookResult(WebhookOutcome.IGNORED_NOT_MEANINGFUL, "pong")

        if not is_meaningful_change(event_type, payload):
            logger.debug(f"Event {event_type} on {repo} not meaningful")
            return WebhookResult(WebhookOutcome.IGNORED_NOT_MEANINGFUL, "Event skipped, not meaningful")

        user_id = await self._resolve_user(payload, subscription.user_id if subscription else None)
        if user_id is None:
            logger.info(f"No platform user for {event_type} event on {repo}")
            return WebhookResult(WebhookOutcome.IGNORED_UNKNOWN_USER, "User not found on platform")

        if repo:
            await self.store.touch_subscription(*repo)
        self.dispatcher.submit(user_id, Trigger.WEBHOOK.value)
        logger.info(f"Webhook {event_type} on {repo} queued run for {user_id}")
        return WebhookResult(
            WebhookOutcome.ACCEPTED, "Webhook received, processing in background", user_id=user_id
        )

    async def _resolve_user(self, payload: Dict[str, Any], subscriber: Optional[str]) -> Optional[str]:
        repository = payload.get("repository") or {}
        candidates = [
            (payload.get("sender") or {}).get("login"),
            (repository.get("owner") or {}).get("login"),
        ]
        for login in candidates:
            if login:
                user = await self.store.get_user_by_github_username(login)
                if user:
                    return user.user_id
        return subscriber
