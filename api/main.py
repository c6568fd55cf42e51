"""
Skill Verification API

FastAPI surface for the pipeline:
- POST /api/webhooks/github            GitHub repository webhooks
- POST /api/profile/refresh            user-triggered re-scrape (10 min cooldown)
- GET  /api/profile/skills             claims with improvement tips
- GET  /api/profile/notifications      change notifications
- POST /api/github/subscriptions       register webhooks for linked repos
- DELETE /api/github/subscriptions     remove them
- POST /api/admin/trigger-rescrape     admin-triggered re-scrape
- GET  /health

The caller's identity arrives in X-User-Id from the identity provider in
front of this service.

Run:
    uvicorn api.main:app --host 0.0.0.0 --port 8000
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from connectors.github_webhook_handler import secrets_match
from services.container import Services, build_services
from verification.confidence_scorer import generate_improvement_tips
from verification.skill_aggregator import SkillEvidence
from workflows.pipeline import Trigger

logger = logging.getLogger(__name__)

MANUAL_REFRESH_COOLDOWN = timedelta(minutes=10)


# =============================================================================
# MODELS
# =============================================================================

class HealthResponse(BaseModel):
    status: str
    timestamp: str
    version: str


class SkillResponse(BaseModel):
    skill_name: str
    verified: bool
    confidence_score: int
    display_label: str
    source: str
    active: bool
    verified_at: Optional[str] = None
    last_updated: Optional[str] = None
    evidence: Dict[str, Any] = Field(default_factory=dict)
    improvement_tips: List[str] = Field(default_factory=list)


class SkillsResponse(BaseModel):
    user_id: str
    last_github_synced_at: Optional[str] = None
    verified: List[SkillResponse] = Field(default_factory=list)
    unverified: List[SkillResponse] = Field(default_factory=list)
    stale: List[SkillResponse] = Field(default_factory=list)


class NotificationResponse(BaseModel):
    id: int
    type: str
    message: str
    payload: Dict[str, Any]
    read: bool
    created_at: str


class SubscribeRequest(BaseModel):
    repos: Optional[List[str]] = None  # "owner/name"; default is every linked repo


class AdminTriggerRequest(BaseModel):
    user_id: str
    use_scheduler: bool = True


# =============================================================================
# APP
# =============================================================================

def create_app(services: Optional[Services] = None) -> FastAPI:
    """
    Build the app. With ``services`` given the caller owns their lifecycle;
    otherwise they are built from the environment on startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if services is not None:
            yield
            return

        load_dotenv()
        built = await build_services()
        app.state.services = built
        if built.scheduler.config.enabled:
            await built.scheduler.bootstrap()
            built.scheduler.start()
        try:
            yield
        finally:
            await built.close()

    # user_id -> time of the last accepted manual refresh in this process
    refresh_claims: Dict[str, datetime] = {}

    app = FastAPI(
        title="Skill Verification API",
        description="Evidence-backed skill claims from linked GitHub repositories",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    if services is not None:
        app.state.services = services

    _register_routes(app, refresh_claims)
    return app


def get_services(request: Request) -> Services:
    return request.app.state.services


def require_user(x_user_id: Optional[str] = Header(default=None)) -> str:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id")
    return x_user_id


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _register_routes(app: FastAPI, refresh_claims: Dict[str, datetime]) -> None:

    @app.get("/health", response_model=HealthResponse)
    async def health():
        return HealthResponse(
            status="ok",
            timestamp=datetime.now(timezone.utc).isoformat(),
            version=app.version,
        )

    @app.post("/api/webhooks/github")
    async def github_webhook(
        request: Request,
        services: Services = Depends(get_services),
        x_github_event: str = Header(default=""),
        x_github_delivery: Optional[str] = Header(default=None),
        x_hub_signature_256: Optional[str] = Header(default=None),
        x_github_repository: Optional[str] = Header(default=None),
    ):
        raw_body = await request.body()
        result = await services.webhooks.handle(
            raw_body,
            x_hub_signature_256,
            x_github_event,
            delivery_id=x_github_delivery,
            repository_header=x_github_repository,
        )
        if result.status_code == 200:
            content = {"ok": True, "message": result.message, "outcome": result.outcome.value}
        else:
            content = {"error": result.message}
        return JSONResponse(content, status_code=result.status_code)

    @app.post("/api/profile/refresh", status_code=202)
    async def refresh_profile(
        user_id: str = Depends(require_user),
        services: Services = Depends(get_services),
    ):
        user = await services.store.get_user(user_id)
        if user is None or not user.github_username:
            raise HTTPException(status_code=400, detail="No GitHub username set for user")

        recorded = await services.store.last_run_started_at(user_id, Trigger.MANUAL.value)
        # No await between this check and the claim below
        now = datetime.now(timezone.utc)
        last = max(filter(None, (recorded, refresh_claims.get(user_id))), default=None)
        if last and now - last < MANUAL_REFRESH_COOLDOWN:
            next_allowed = last + MANUAL_REFRESH_COOLDOWN
            return JSONResponse(
                {"error": "Refresh already requested recently", "next_allowed_at": next_allowed.isoformat()},
                status_code=429,
            )

        for expired in [u for u, at in refresh_claims.items() if now - at >= MANUAL_REFRESH_COOLDOWN]:
            del refresh_claims[expired]
        refresh_claims[user_id] = now
        services.dispatcher.submit(user_id, Trigger.MANUAL.value)
        return {"ok": True, "message": "Profile refresh started"}

    @app.get("/api/profile/skills", response_model=SkillsResponse)
    async def list_skills(
        user_id: str = Depends(require_user),
        services: Services = Depends(get_services),
    ):
        user = await services.store.get_user(user_id)
        if user is None:
            raise HTTPException(status_code=404, detail="User not found")

        response = SkillsResponse(user_id=user_id, last_github_synced_at=_iso(user.last_github_synced_at))
        for claim in (await services.store.get_claims(user_id)).values():
            tips: List[str] = []
            if claim.evidence:
                tips = generate_improvement_tips(SkillEvidence.from_dict(claim.evidence), claim.confidence_score)
            item = SkillResponse(
                skill_name=claim.skill_name,
                verified=claim.verified,
                confidence_score=claim.confidence_score,
                display_label=claim.display_label,
                source=claim.source,
                active=claim.active,
                verified_at=_iso(claim.verified_at),
                last_updated=_iso(claim.last_updated),
                evidence=claim.evidence,
                improvement_tips=tips,
            )
            if not claim.active:
                response.stale.append(item)
            elif claim.verified:
                response.verified.append(item)
            else:
                response.unverified.append(item)
        return response

    @app.get("/api/profile/notifications", response_model=List[NotificationResponse])
    async def list_notifications(
        unread_only: bool = False,
        user_id: str = Depends(require_user),
        services: Services = Depends(get_services),
    ):
        notifications = await services.store.list_notifications(user_id, unread_only=unread_only)
        return [
            NotificationResponse(
                id=n.id,
                type=n.type,
                message=n.message,
                payload=n.payload,
                read=n.read,
                created_at=n.created_at.isoformat(),
            )
            for n in notifications
        ]

    @app.post("/api/github/subscriptions")
    async def subscribe(
        body: SubscribeRequest,
        user_id: str = Depends(require_user),
        x_github_token: Optional[str] = Header(default=None),
        services: Services = Depends(get_services),
    ):
        repos = None
        if body.repos is not None:
            repos = [tuple(full_name.split("/", 1)) for full_name in body.repos]
            if any(len(r) != 2 or not all(r) for r in repos):
                raise HTTPException(status_code=400, detail="Repos must be owner/name")

        outcomes = await services.subscriptions.subscribe(user_id, repos, token=x_github_token)
        return {"results": [o.__dict__ for o in outcomes]}

    @app.delete("/api/github/subscriptions")
    async def unsubscribe(
        user_id: str = Depends(require_user),
        x_github_token: Optional[str] = Header(default=None),
        services: Services = Depends(get_services),
    ):
        outcomes = await services.subscriptions.unsubscribe(user_id, token=x_github_token)
        return {"results": [o.__dict__ for o in outcomes]}

    @app.post("/api/admin/trigger-rescrape")
    async def admin_trigger(
        body: AdminTriggerRequest,
        services: Services = Depends(get_services),
        x_admin_secret: Optional[str] = Header(default=None),
        authorization: Optional[str] = Header(default=None),
    ):
        expected = services.settings.admin_secret
        provided = x_admin_secret
        if not provided and authorization and authorization.startswith("Bearer "):
            provided = authorization[len("Bearer "):]
        if not expected or not provided or not secrets_match(expected, provided):
            raise HTTPException(status_code=403, detail="Forbidden")

        if await services.store.get_user(body.user_id) is None:
            raise HTTPException(status_code=404, detail="User not found")

        if body.use_scheduler:
            job_id = await services.scheduler.trigger_now(body.user_id, Trigger.ADMIN.value)
            return {"ok": True, "queued": True, "job_id": job_id}

        result = await services.runner.run(body.user_id, Trigger.ADMIN.value)
        if result is None:
            return JSONResponse({"ok": False, "error": "A run is already in progress"}, status_code=409)
        return {"ok": result.status == "completed", "result": result.to_dict()}


app = create_app()
