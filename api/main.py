from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from core.config import settings
from core.errors import (
    AuthRequiredError,
    CooldownViolationError,
    InvalidTransitionError,
    LearningApiError,
    TransientApiError,
)
from core.logger import logger, setup_logging
from db.session import create_redis
from models.session import ItemKind, SessionView
from services.monitoring_service import tick_sessions
from services.session_registry import SessionRegistry
from services.session_service import SessionOrchestrator
from services.storage import RedisStorage

API_DESCRIPTION = """
## LearnLoop Session API

Drives timed flashcard / quiz sessions for one learner at a time.

### Authentication

Every endpoint except `/api/health` requires the learner's backend token:

- Header: `Authorization: Bearer <token>`

The same token is forwarded to the learning content backend.

### Responses

Every session endpoint returns the current `SessionView`. Display directives
(`request_fullscreen`, `exit_fullscreen`, `pin_history`) queued since the last
response are returned in `directives` and must be applied by the client.
"""

TAGS_METADATA = [
    {
        "name": "session",
        "description": "Session lifecycle: start, rate, answer, retry, next batch.",
    },
    {
        "name": "integrity",
        "description": "Tab visibility, navigation and warning acknowledgement events.",
    },
    {
        "name": "info",
        "description": "Health and review information.",
    },
]


# === Request Models ===

class StartRequest(BaseModel):
    """Request body for starting (or resuming) a session."""
    item_kind: ItemKind = Field(ItemKind.FLASHCARD, description="flashcard (30s per item) or quiz (60s per item)")
    force_new: bool = Field(False, description="Discard any resumable snapshot")


class RatingRequest(BaseModel):
    rating: int = Field(..., description="Self-assessed confidence", ge=1, le=5, examples=[4])


class AnswerRequest(BaseModel):
    option: str = Field(..., description="Key of the chosen option", examples=["B"])


class VisibilityRequest(BaseModel):
    hidden: bool = Field(..., description="True when the session tab was hidden")


class AcknowledgeRequest(BaseModel):
    confirm: bool = Field(..., description="True to stay in the session, False to leave it")


class HealthResponse(BaseModel):
    status: str = "ok"
    sessions: int = Field(..., description="Number of learners with an orchestrator in memory")


# === Dependencies ===

def get_registry(request: Request) -> SessionRegistry:
    return request.app.state.registry


def get_token(authorization: Optional[str] = Header(None)) -> str:
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization.split(" ", 1)[1].strip()
        if token:
            return token
    logger.warning("Auth failed: missing bearer token")
    raise HTTPException(status_code=401, detail="Unauthorized")


def get_orchestrator(token: str = Depends(get_token),
                     registry: SessionRegistry = Depends(get_registry)) -> SessionOrchestrator:
    return registry.get(token)


def _respond(orchestrator: SessionOrchestrator, view: SessionView) -> SessionView:
    view.directives = orchestrator.display.drain()
    return view


# === App ===

def create_app(registry: Optional[SessionRegistry] = None, run_scheduler: bool = True) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging()
        redis = None
        if registry is None:
            redis = create_redis()
            app.state.registry = SessionRegistry(RedisStorage(redis))
        else:
            app.state.registry = registry

        scheduler = None
        if run_scheduler:
            scheduler = AsyncIOScheduler()
            scheduler.add_job(
                tick_sessions,
                trigger="interval",
                seconds=settings.TICK_INTERVAL_SECONDS,
                args=[app.state.registry],
                id="session_tick",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            scheduler.start()
            logger.info("Scheduler started (session tick)", interval=settings.TICK_INTERVAL_SECONDS)

        try:
            yield
        finally:
            if scheduler:
                scheduler.shutdown(wait=False)
            await app.state.registry.close_all()
            if redis is not None:
                await redis.aclose()
            logger.info("API stopped")

    app = FastAPI(
        title="LearnLoop Session API",
        description=API_DESCRIPTION,
        version="1.0.0",
        openapi_tags=TAGS_METADATA,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_cache_headers(request: Request, call_next):
        response = await call_next(request)
        # Session state must never be served from a cache
        if request.url.path.startswith("/api/session"):
            response.headers.setdefault("Cache-Control", "no-store")
        return response

    _register_error_handlers(app)
    _register_routes(app)
    return app


def _register_error_handlers(app: FastAPI):
    @app.exception_handler(CooldownViolationError)
    async def cooldown_handler(request: Request, exc: CooldownViolationError):
        return JSONResponse(
            status_code=429,
            content={"detail": str(exc), "remainingSeconds": exc.remaining_seconds},
        )

    @app.exception_handler(AuthRequiredError)
    async def auth_handler(request: Request, exc: AuthRequiredError):
        return JSONResponse(status_code=401, content={"detail": str(exc) or "Unauthorized"})

    @app.exception_handler(InvalidTransitionError)
    async def transition_handler(request: Request, exc: InvalidTransitionError):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(TransientApiError)
    async def unavailable_handler(request: Request, exc: TransientApiError):
        logger.warning("Backend unavailable", path=request.url.path, error=str(exc))
        return JSONResponse(status_code=503, content={"detail": str(exc), "retryable": True})

    @app.exception_handler(LearningApiError)
    async def backend_handler(request: Request, exc: LearningApiError):
        logger.error("Backend error reached the host", path=request.url.path, error=str(exc), status=exc.status)
        return JSONResponse(status_code=502, content={"detail": str(exc)})


def _register_routes(app: FastAPI):

    @app.get("/api/health", response_model=HealthResponse, tags=["info"], summary="Health check")
    async def health(registry: SessionRegistry = Depends(get_registry)):
        return {"status": "ok", "sessions": len(registry.live())}

    @app.get(
        "/api/due-reviews",
        response_model=List[Dict[str, Any]],
        tags=["info"],
        summary="List due reviews",
        description="Flashcards whose spaced-repetition review date has passed.",
    )
    async def due_reviews(orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
        return await orchestrator.api.fetch_due_reviews()

    @app.get("/api/session", response_model=SessionView, tags=["session"], summary="Current session state")
    async def get_session(orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
        return _respond(orchestrator, orchestrator.view())

    @app.post(
        "/api/session/start",
        response_model=SessionView,
        tags=["session"],
        summary="Start or resume a session",
        responses={
            409: {"description": "A session is already running"},
            429: {"description": "Cooldown still active"},
        },
    )
    async def start_session(body: StartRequest, orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
        view = await orchestrator.start(body.item_kind, force_new=body.force_new)
        return _respond(orchestrator, view)

    @app.post("/api/session/rating", response_model=SessionView, tags=["session"], summary="Rate the current item")
    async def rate(body: RatingRequest, orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
        view = await orchestrator.rate(body.rating)
        return _respond(orchestrator, view)

    @app.post("/api/session/answer", response_model=SessionView, tags=["session"],
              summary="Answer the follow-up question")
    async def answer(body: AnswerRequest, orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
        try:
            view = await orchestrator.answer(body.option)
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        return _respond(orchestrator, view)

    @app.post("/api/session/retry", response_model=SessionView, tags=["session"],
              summary="Retry the last failed step")
    async def retry(orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
        view = await orchestrator.retry()
        return _respond(orchestrator, view)

    @app.post(
        "/api/session/next-batch",
        response_model=SessionView,
        tags=["session"],
        summary="Start the next batch",
        responses={429: {"description": "Cooldown still active"}},
    )
    async def next_batch(orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
        view = await orchestrator.start_next_batch()
        return _respond(orchestrator, view)

    @app.post("/api/session/close", response_model=SessionView, tags=["session"],
              summary="Leave the session, keeping it resumable")
    async def close(orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
        await orchestrator.close()
        return _respond(orchestrator, orchestrator.view())

    @app.post("/api/session/logout", response_model=SessionView, tags=["session"],
              summary="End the session and forget local state")
    async def logout(token: str = Depends(get_token), registry: SessionRegistry = Depends(get_registry)):
        orchestrator = registry.get(token)
        await orchestrator.logout()
        view = _respond(orchestrator, orchestrator.view())
        await registry.remove(token)
        return view

    @app.post("/api/session/visibility", response_model=SessionView, tags=["integrity"],
              summary="Report a tab visibility change")
    async def visibility(body: VisibilityRequest, orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
        view = await orchestrator.report_visibility(body.hidden)
        return _respond(orchestrator, view)

    @app.post("/api/session/navigation", response_model=SessionView, tags=["integrity"],
              summary="Report a back/forward navigation attempt")
    async def navigation(orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
        view = await orchestrator.report_navigation()
        return _respond(orchestrator, view)

    @app.post("/api/session/acknowledge", response_model=SessionView, tags=["integrity"],
              summary="Answer the pending integrity warning")
    async def acknowledge(body: AcknowledgeRequest, orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
        view = await orchestrator.acknowledge(body.confirm)
        return _respond(orchestrator, view)


app = create_app()
