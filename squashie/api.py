"""
Squashie Conflict Service API
=============================

FastAPI endpoints for the conflict lifecycle, the public ruling feed and
reward notifications.

Endpoints:
- GET  /health                                  - Health check
- POST /api/v1/conflicts                        - Start a conflict
- GET  /api/v1/conflicts                        - My conflicts
- GET  /api/v1/conflicts/{id}                   - Conflict + phase + allowed actions
- POST /api/v1/conflicts/{id}/response          - Invitee responds
- POST /api/v1/conflicts/{id}/core-issue        - Submit core issue
- POST /api/v1/conflicts/{id}/satisfaction      - Vote on the current round
- POST /api/v1/conflicts/{id}/final-ruling      - Ask the AI judge
- GET  /api/v1/rulings                          - Public AI rulings
- GET  /api/v1/rulings/{id}/votes               - Crowd vote counts
- POST /api/v1/rulings/{id}/votes               - Cast crowd vote
- GET  /api/v1/stats                            - Global stats
- GET  /api/v1/notifications                    - Drain my notifications

The caller is identified by the X-User-Id / X-User-Email headers set by the
auth proxy in front of this service.

Run with:
    uvicorn squashie.api:app --host 0.0.0.0 --port 8000
"""

import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import get_llm_mode, get_settings
from .db.session import init_db
from .engine import ConflictEngine, LifecycleView
from .errors import (
    ConflictNotFound,
    ExternalServiceDegraded,
    PersistenceFailure,
    SquashieError,
    ValidationError,
)
from .events import NotificationBus
from .feed import PublicFeed
from .lifecycle import Party, party_for
from .llm_client import get_llm_client
from .mediator import MediationService
from .models import ConflictRecord
from .rewards import RewardNotifier
from .schemas import (
    CastVoteRequest,
    ConflictListResponse,
    ConflictOutput,
    ConflictView,
    CoreIssueRequest,
    CreateConflictRequest,
    ErrorResponse,
    GlobalStatsResponse,
    HealthResponse,
    NotificationListResponse,
    NotificationOutput,
    PublicRulingOutput,
    RespondRequest,
    SatisfactionRequest,
    VoteCountOutput,
    VoteSummaryResponse,
)

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


# =============================================================================
# FastAPI App
# =============================================================================

app = FastAPI(
    title="Squashie Conflict Service",
    description="Conflict mediation lifecycle, AI rulings and SquashCred rewards",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS - get allowed origins from environment, default to localhost for development
def _parse_cors_origins(raw: str) -> List[str]:
    origins: List[str] = []
    for item in raw.split(","):
        origin = item.strip().strip('"').strip("'").rstrip("/")
        if origin:
            origins.append(origin)
    return origins

_cors_raw = os.environ.get(
    "CORS_ALLOW_ORIGINS",
    "http://localhost:3000,http://127.0.0.1:3000,http://localhost:8000,http://127.0.0.1:8000"
)
CORS_ALLOW_ORIGINS = _parse_cors_origins(_cors_raw)
logger.info(f"CORS allow origins: {CORS_ALLOW_ORIGINS}")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

api_router = APIRouter(
    prefix="/api/v1",
    responses={code: {"model": ErrorResponse} for code in (403, 404, 409, 503)},
)


# =============================================================================
# Startup / shutdown
# =============================================================================

@app.on_event("startup")
async def startup_event():
    """Create tables and the app-scoped collaborators"""
    settings = get_settings()
    logger.info(f"Starting Squashie Conflict Service v{settings.service_version}")
    logger.info(f"LLM Mode: {settings.llm_mode.value}")
    for warning in settings.validate_llm_config():
        logger.warning(f"Config: {warning}")

    init_db()

    bus = NotificationBus(max_queue_size=settings.notification_queue_size)
    notifier = RewardNotifier(bus)
    app.state.bus = bus
    app.state.engine = ConflictEngine(mediator=MediationService(), notifier=notifier)
    app.state.feed = PublicFeed(notifier=notifier)


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on shutdown"""
    bus = getattr(app.state, "bus", None)
    if bus is not None:
        bus.close()
    client = get_llm_client()
    await client.close()


# =============================================================================
# Dependencies
# =============================================================================

@dataclass
class Actor:
    user_id: Optional[str]
    email: Optional[str]


def get_optional_actor(
    x_user_id: Optional[str] = Header(default=None),
    x_user_email: Optional[str] = Header(default=None),
) -> Actor:
    return Actor(user_id=(x_user_id or "").strip() or None, email=(x_user_email or "").strip() or None)


def get_actor(actor: Actor = Depends(get_optional_actor)) -> Actor:
    if not actor.user_id:
        raise HTTPException(status_code=401, detail="X-User-Id header is required")
    return actor


def get_engine_dependency(request: Request) -> ConflictEngine:
    return request.app.state.engine


def get_feed_dependency(request: Request) -> PublicFeed:
    return request.app.state.feed


def get_bus_dependency(request: Request) -> NotificationBus:
    return request.app.state.bus


# =============================================================================
# Converters
# =============================================================================

def convert_record_to_output(record: ConflictRecord, party: Optional[Party]) -> ConflictOutput:
    """A party only ever sees their own raw message."""
    data = record.to_dict()
    if party is not Party.USER1:
        data["user1_raw_message"] = None
    if party is not Party.USER2:
        data["user2_raw_message"] = None
    return ConflictOutput(**{k: v for k, v in data.items() if k in ConflictOutput.model_fields})


def convert_view(view: LifecycleView) -> ConflictView:
    return ConflictView(
        conflict=convert_record_to_output(view.record, view.party),
        phase=view.phase.value,
        round=view.round.value,
        party=view.party.value if view.party else None,
        allowed_actions=[a.value for a in view.allowed_actions],
    )


def _action_response(record: ConflictRecord, actor: Actor) -> ConflictView:
    """View of the record the write returned; the store is not read again."""
    party = party_for(record, actor.user_id, actor.email)
    return convert_view(ConflictEngine.view_of(record, actor.user_id, actor.email, party))


# =============================================================================
# Health
# =============================================================================

@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check():
    """Health check endpoint"""
    settings = get_settings()
    return HealthResponse(
        status="healthy",
        version=settings.service_version,
        llm_mode=get_llm_mode(),
        timestamp=datetime.now()
    )


# =============================================================================
# Conflicts
# =============================================================================

@api_router.post("/conflicts", response_model=ConflictView, status_code=201, tags=["Conflicts"])
async def api_create_conflict(
    body: CreateConflictRequest,
    actor: Actor = Depends(get_actor),
    engine: ConflictEngine = Depends(get_engine_dependency),
):
    record = await engine.create_conflict(
        title=body.title,
        initiator_id=actor.user_id,
        other_email=body.other_user_email,
        description=body.description,
        mood=body.mood.value,
        initiator_email=actor.email,
    )
    return _action_response(record, actor)


@api_router.get("/conflicts", response_model=ConflictListResponse, tags=["Conflicts"])
async def api_list_conflicts(
    actor: Actor = Depends(get_actor),
    engine: ConflictEngine = Depends(get_engine_dependency),
):
    views = [convert_view(v) for v in engine.list_for_user(actor.user_id, actor.email)]
    return ConflictListResponse(conflicts=views, total=len(views))


@api_router.get("/conflicts/{conflict_id}", response_model=ConflictView, tags=["Conflicts"])
async def api_get_conflict(
    conflict_id: str,
    actor: Actor = Depends(get_actor),
    engine: ConflictEngine = Depends(get_engine_dependency),
):
    return convert_view(engine.get_view(conflict_id, actor.user_id, actor.email))


@api_router.post("/conflicts/{conflict_id}/response", response_model=ConflictView, tags=["Conflicts"])
async def api_respond(
    conflict_id: str,
    body: RespondRequest,
    actor: Actor = Depends(get_actor),
    engine: ConflictEngine = Depends(get_engine_dependency),
):
    record = await engine.respond(conflict_id, body.text, actor.user_id, actor.email)
    return _action_response(record, actor)


@api_router.post("/conflicts/{conflict_id}/core-issue", response_model=ConflictView, tags=["Conflicts"])
async def api_submit_core_issue(
    conflict_id: str,
    body: CoreIssueRequest,
    actor: Actor = Depends(get_actor),
    engine: ConflictEngine = Depends(get_engine_dependency),
):
    record = await engine.submit_core_issue(conflict_id, body.text, actor.user_id, actor.email)
    return _action_response(record, actor)


@api_router.post("/conflicts/{conflict_id}/satisfaction", response_model=ConflictView, tags=["Conflicts"])
async def api_vote_satisfaction(
    conflict_id: str,
    body: SatisfactionRequest,
    actor: Actor = Depends(get_actor),
    engine: ConflictEngine = Depends(get_engine_dependency),
):
    record = await engine.vote_satisfaction(conflict_id, body.satisfied, actor.user_id, actor.email)
    return _action_response(record, actor)


@api_router.post("/conflicts/{conflict_id}/final-ruling", response_model=ConflictView, tags=["Conflicts"])
async def api_issue_final_ruling(
    conflict_id: str,
    actor: Actor = Depends(get_actor),
    engine: ConflictEngine = Depends(get_engine_dependency),
):
    record = await engine.issue_final_ruling(conflict_id, actor.user_id, actor.email)
    return _action_response(record, actor)


# =============================================================================
# Public feed
# =============================================================================

@api_router.get("/rulings", response_model=List[PublicRulingOutput], tags=["Feed"])
async def api_list_rulings(
    limit: int = Query(default=50, ge=1, le=200),
    feed: PublicFeed = Depends(get_feed_dependency),
):
    return [PublicRulingOutput(**row) for row in feed.list_public_rulings(limit=limit)]


def _vote_summary(feed: PublicFeed, conflict_id: str, actor: Actor) -> VoteSummaryResponse:
    can_vote, reason = feed.vote_eligibility(conflict_id, actor.user_id)
    counts = feed.vote_counts(conflict_id)
    return VoteSummaryResponse(
        conflict_id=conflict_id,
        counts=[VoteCountOutput(vote_type=k, vote_count=v) for k, v in counts.items()],
        user_vote=feed.user_vote(conflict_id, actor.user_id),
        can_vote=can_vote,
        reason=reason,
    )


@api_router.get("/rulings/{conflict_id}/votes", response_model=VoteSummaryResponse, tags=["Feed"])
async def api_ruling_votes(
    conflict_id: str,
    actor: Actor = Depends(get_optional_actor),
    feed: PublicFeed = Depends(get_feed_dependency),
):
    return _vote_summary(feed, conflict_id, actor)


@api_router.post("/rulings/{conflict_id}/votes", response_model=VoteSummaryResponse, tags=["Feed"])
async def api_cast_ruling_vote(
    conflict_id: str,
    body: CastVoteRequest,
    actor: Actor = Depends(get_actor),
    feed: PublicFeed = Depends(get_feed_dependency),
):
    feed.cast_vote(conflict_id, body.vote_type, actor.user_id)
    return _vote_summary(feed, conflict_id, actor)


@api_router.get("/stats", response_model=GlobalStatsResponse, tags=["Feed"])
async def api_global_stats(feed: PublicFeed = Depends(get_feed_dependency)):
    return GlobalStatsResponse(**feed.global_stats())


# =============================================================================
# Notifications
# =============================================================================

@api_router.get("/notifications", response_model=NotificationListResponse, tags=["Notifications"])
async def api_notifications(
    actor: Actor = Depends(get_actor),
    bus: NotificationBus = Depends(get_bus_dependency),
):
    notifications = bus.drain(actor.user_id)
    return NotificationListResponse(notifications=[
        NotificationOutput(kind=n.kind, user_id=n.user_id, payload=n.payload, created_at=n.created_at)
        for n in notifications
    ])


app.include_router(api_router)


# =============================================================================
# Error handling
# =============================================================================

# Validation rules that mean "not your conflict / not your turn" rather than "wrong phase"
FORBIDDEN_RULES = {"wrong_actor", "not_participant", "own_conflict"}


def _status_for(exc: SquashieError) -> int:
    if isinstance(exc, ConflictNotFound):
        return 404
    if isinstance(exc, (PersistenceFailure, ExternalServiceDegraded)):
        return 503
    if isinstance(exc, ValidationError) and exc.rule in FORBIDDEN_RULES:
        return 403
    return 409


@app.exception_handler(SquashieError)
async def squashie_exception_handler(request: Request, exc: SquashieError):
    """Structured lifecycle errors: {error, rule, detail, retryable}"""
    status_code = _status_for(exc)
    log = logger.error if status_code >= 500 else logger.info
    log(f"{request.method} {request.url.path} -> {status_code} {exc.code} ({exc.rule}): {exc.message}")
    body = ErrorResponse(error=exc.code, rule=exc.rule, detail=exc.message, retryable=exc.retryable)
    return JSONResponse(status_code=status_code, content=body.model_dump())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler - always return valid JSON"""
    logger.error("Unhandled exception on %s: %s", request.url.path, exc.__class__.__name__, exc_info=exc)
    body = ErrorResponse(error="internal_error", detail="Internal server error")
    return JSONResponse(status_code=500, content=body.model_dump())
