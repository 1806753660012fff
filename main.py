"""
Scribe: request-shaping gateway for AI note actions.

Rate limits clients, memoizes identical AI requests, and streams model
output straight through while caching it on the side.
"""

import logging
import time
import asyncio
import os
from datetime import datetime, timezone
from typing import AsyncIterator, Optional
from uuid import UUID
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Query
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from dotenv import load_dotenv
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

load_dotenv()

from cache import BoundedTTLCache
from llm_provider import GroqProvider
from memoizer import ResponseMemoizer
from models import (
    ActionKind,
    Folder,
    FolderCreate,
    HealthResponse,
    Note,
    NoteCreate,
    NoteUpdate,
    StatsResponse,
)
from note_service import InMemoryNoteRepository, NoteService, SortOrder
from pipeline import ActionPipeline
from rate_limiter import FixedWindowRateLimiter, RateLimitGate, client_id_from_headers
from exceptions import (
    ActionValidationError,
    CircuitBreakerOpenError,
    GenerationError,
    NoteNotFoundError,
    ThrottledError,
    UpstreamLimiterError,
)
import metrics  # Prometheus instrumentation

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)

VERSION = "0.1.0"
SHUTDOWN_TIMEOUT_SEC = 10
TEXT_MEDIA_TYPE = "text/plain; charset=utf-8"


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


async def _build_pipeline() -> ActionPipeline:
    """Create the limiter, memo cache and provider from environment settings."""
    limiter = FixedWindowRateLimiter(
        max_requests=_env_int("RATE_LIMIT_REQUESTS", 15),
        window_seconds=_env_int("RATE_LIMIT_WINDOW", 300),
        timeout_seconds=_env_float("RATE_LIMIT_TIMEOUT", 2.0),
    )
    await limiter.connect()

    gate = RateLimitGate(upstream=limiter, local_ttl_seconds=_env_float("RATE_LIMIT_LOCAL_TTL", 60.0))
    memoizer = ResponseMemoizer(
        BoundedTTLCache(
            max_entries=_env_int("RESPONSE_CACHE_MAX_ENTRIES", 1000),
            default_ttl=_env_float("RESPONSE_CACHE_TTL", 3600.0),
        )
    )
    provider = GroqProvider()
    await provider.connect()

    return ActionPipeline(gate=gate, memoizer=memoizer, llm_provider=provider)


async def _close_pipeline(pipeline: ActionPipeline) -> None:
    disconnect = getattr(pipeline.llm_provider, "disconnect", None)
    if disconnect is not None:
        await disconnect()
    await pipeline.gate.upstream.disconnect()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: build services not injected by the caller. Shutdown: drain requests, release connections."""
    app.state.shutdown_event = asyncio.Event()
    built_pipeline = app.state.pipeline is None

    try:
        if built_pipeline:
            app.state.pipeline = await _build_pipeline()
        if app.state.notes is None:
            app.state.notes = NoteService(InMemoryNoteRepository())
        logger.info("Scribe started")
    except (OSError, ConnectionError, ValueError) as e:
        logger.error(f"Startup failed: {e}")
        raise

    yield

    logger.info("Shutting down gracefully...")
    app.state.shutdown_event.set()

    start_shutdown = time.time()
    while app.state.active_requests > 0 and time.time() - start_shutdown < SHUTDOWN_TIMEOUT_SEC:
        logger.info(f"Waiting for {app.state.active_requests} active request(s) to complete...")
        await asyncio.sleep(0.1)

    if app.state.active_requests > 0:
        logger.warning(
            f"Shutdown timeout: {app.state.active_requests} request(s) still active after {SHUTDOWN_TIMEOUT_SEC}s"
        )

    if built_pipeline:
        await _close_pipeline(app.state.pipeline)
    logger.info("Scribe shut down")


async def _stream_body(stream: AsyncIterator[str], state) -> AsyncIterator[str]:
    """
    Forward chunks to the client; closing early (disconnect) closes the tee without caching.

    The middleware stops counting a request once its headers are sent, so the
    body counts itself as in flight until the last chunk for shutdown draining.
    """
    state.active_requests += 1
    metrics.increment_active_streams()
    try:
        async for chunk in stream:
            yield chunk
    finally:
        state.active_requests -= 1
        metrics.decrement_active_streams()
        await stream.aclose()


async def _run_action(request: Request, action: Optional[ActionKind] = None) -> StreamingResponse:
    pipeline: ActionPipeline = request.app.state.pipeline
    result = await pipeline.handle(
        body=await request.body(),
        content_type=request.headers.get("content-type"),
        client_id=client_id_from_headers(request.headers),
        action=action,
    )

    headers = {
        "Cache-Control": "no-store",
        "X-Cache-Hit": "true" if result.cache_hit else "false",
        **result.decision.headers(),
    }
    return StreamingResponse(
        _stream_body(result.stream, request.app.state), media_type=TEXT_MEDIA_TYPE, headers=headers
    )


def create_app(pipeline: Optional[ActionPipeline] = None, notes: Optional[NoteService] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Services passed in are used as-is (tests inject fakes); anything left
    as None is built from the environment during startup.
    """
    app = FastAPI(
        title="Scribe",
        description="Rate-limited, memoized, streaming AI actions for notes",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.pipeline = pipeline
    app.state.notes = notes
    app.state.active_requests = 0
    app.state.shutdown_event = None

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """
        Log request method, path, and response latency; record Prometheus metrics.

        Rejects new requests once shutdown has begun and tracks in-flight
        requests so shutdown can drain them.
        """
        shutdown_event = request.app.state.shutdown_event
        if shutdown_event and shutdown_event.is_set():
            logger.warning(f"Rejecting request during shutdown: {request.method} {request.url.path}")
            return JSONResponse(status_code=503, content={"error": "server_shutting_down"})

        request.app.state.active_requests += 1
        start_time = time.time()
        endpoint = request.url.path

        logger.info(f"→ {request.method} {endpoint}")

        try:
            response = await call_next(request)
        finally:
            request.app.state.active_requests -= 1

        latency_seconds = time.time() - start_time
        logger.info(f"← {response.status_code} | {latency_seconds * 1000:.1f}ms")

        metrics.record_request(
            endpoint=request.scope.get("route").path if request.scope.get("route") else endpoint,
            status=response.status_code,
            duration_seconds=latency_seconds,
        )
        return response

    # EXCEPTION HANDLERS: Map service exceptions to HTTP status codes.
    # The service layer is transport-agnostic; HTTP semantics live here.

    @app.exception_handler(ActionValidationError)
    async def action_validation_error_handler(request: Request, exc: ActionValidationError):
        """Malformed AI action request. Status: 400, plain text."""
        logger.info(f"Rejected AI action: {exc}")
        return PlainTextResponse(str(exc), status_code=400)

    @app.exception_handler(RequestValidationError)
    async def request_validation_error_handler(request: Request, exc: RequestValidationError):
        """Malformed note/folder request. Status: 400."""
        first = exc.errors()[0] if exc.errors() else {}
        field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        return JSONResponse(
            status_code=400,
            content={
                "error": "invalid_request",
                "message": f"{field}: {first.get('msg', 'invalid value')}" if field else first.get("msg", "invalid request"),
            },
        )

    @app.exception_handler(ThrottledError)
    async def throttled_error_handler(request: Request, exc: ThrottledError):
        """
        Client exceeded its quota.

        Status: 429 Too Many Requests
        Client action: Back off until X-RateLimit-Reset.
        """
        decision = exc.decision
        retry_after = max(0, decision.reset_at - int(time.time()))
        return JSONResponse(
            status_code=429,
            content={"message": exc.message, "rateLimitState": decision.model_dump(by_alias=True)},
            headers={**decision.headers(), "Retry-After": str(retry_after)},
        )

    @app.exception_handler(UpstreamLimiterError)
    async def upstream_limiter_error_handler(request: Request, exc: UpstreamLimiterError):
        """
        Shared rate-limit store failed.

        Status: 503 Service Unavailable
        Fail closed: without a decision no AI call is made.
        """
        logger.error(f"Rate limiter unavailable: {exc}")
        return JSONResponse(
            status_code=503,
            content={
                "error": "rate_limiter_unavailable",
                "message": "Rate limiting is temporarily unavailable, please retry shortly",
                "retry": True,
            },
            headers={"Retry-After": "5"},
        )

    @app.exception_handler(CircuitBreakerOpenError)
    async def circuit_breaker_error_handler(request: Request, exc: CircuitBreakerOpenError):
        """
        Circuit breaker is open - LLM API failing repeatedly.

        Status: 503 Service Unavailable
        Client action: Back off and retry after cooldown period (60s).
        """
        logger.warning(f"Circuit breaker open: {exc}")
        return JSONResponse(
            status_code=503,
            content={
                "error": "circuit_breaker_open",
                "message": "AI service is temporarily unavailable",
                "retry_after": 60,
            },
            headers={"Retry-After": "60"},
        )

    @app.exception_handler(GenerationError)
    async def generation_error_handler(request: Request, exc: GenerationError):
        """
        Generation failed before any output was streamed.

        Status: 502 Bad Gateway (the upstream model service failed, not us)
        """
        logger.error(f"Generation error: {exc}")
        return JSONResponse(
            status_code=502,
            content={
                "error": "generation_failed",
                "message": "The AI service failed to respond, please try again",
                "retry": True,
            },
        )

    @app.exception_handler(NoteNotFoundError)
    async def note_not_found_handler(request: Request, exc: NoteNotFoundError):
        return JSONResponse(status_code=404, content={"error": "Note not found"})

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """
        Handle unhandled exceptions (last resort).

        Status: 500 Internal Server Error. No internals in the body.
        """
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_error",
                "message": "An unexpected error occurred"
            }
        )

    @app.get("/", tags=["health"])
    async def root() -> dict:
        """Connectivity check."""
        return {"message": "Scribe gateway is running", "timestamp": datetime.now(timezone.utc).isoformat()}

    @app.get("/health", response_model=HealthResponse, tags=["health"])
    async def health_check() -> HealthResponse:
        """Health check for load balancers."""
        return HealthResponse(status="healthy", version=VERSION)

    @app.post("/ai-action", tags=["ai"])
    async def ai_action(request: Request) -> StreamingResponse:
        """Run an AI action on note content. Streams text/plain; X-Cache-Hit reports replays."""
        return await _run_action(request)

    @app.post("/summarize", tags=["ai"])
    async def summarize(request: Request) -> StreamingResponse:
        """Legacy summarize endpoint: /ai-action with the action fixed to summarize."""
        return await _run_action(request, ActionKind.SUMMARIZE)

    @app.get("/notes", response_model=list[Note], tags=["notes"])
    async def list_notes(request: Request, sort: SortOrder = "newest") -> JSONResponse:
        notes = await request.app.state.notes.list_notes(sort)
        return JSONResponse(
            content=[note.model_dump(mode="json", by_alias=True) for note in notes],
            headers={"Cache-Control": "public, s-maxage=30"},
        )

    @app.post("/notes", response_model=Note, status_code=201, tags=["notes"])
    async def create_note(request: Request, payload: NoteCreate) -> Note:
        return await request.app.state.notes.create_note(payload)

    @app.get("/notes/{note_id}", response_model=Note, tags=["notes"])
    async def get_note(request: Request, note_id: UUID) -> Note:
        return await request.app.state.notes.get_note(note_id)

    @app.put("/notes/{note_id}", response_model=Note, tags=["notes"])
    async def update_note(request: Request, note_id: UUID, payload: NoteUpdate) -> Note:
        return await request.app.state.notes.update_note(note_id, payload)

    @app.delete("/notes/{note_id}", tags=["notes"])
    async def delete_note(request: Request, note_id: UUID) -> dict:
        await request.app.state.notes.delete_note(note_id)
        return {"success": True}

    @app.get("/folders", response_model=list[Folder], tags=["folders"])
    async def list_folders(request: Request) -> list[Folder]:
        return await request.app.state.notes.list_folders()

    @app.post("/folders", response_model=Folder, status_code=201, tags=["folders"])
    async def create_folder(request: Request, payload: FolderCreate) -> Folder:
        return await request.app.state.notes.create_folder(payload)

    @app.delete("/folders", tags=["folders"])
    async def delete_folder(request: Request, folder_id: Optional[UUID] = Query(default=None, alias="id")):
        if folder_id is None:
            return JSONResponse(status_code=400, content={"error": "Folder ID is required"})
        await request.app.state.notes.delete_folder(folder_id)
        return {"success": True}

    @app.get("/metrics", tags=["monitoring"])
    async def prometheus_metrics() -> Response:
        """Prometheus metrics endpoint (text format, Prometheus scraping standard)."""
        return Response(
            content=generate_latest(metrics.REGISTRY),
            media_type=CONTENT_TYPE_LATEST
        )

    @app.get("/stats", response_model=StatsResponse, tags=["monitoring"])
    async def stats(request: Request) -> StatsResponse:
        """Cache statistics for quick debugging (JSON)."""
        pipeline: ActionPipeline = request.app.state.pipeline
        return StatsResponse(
            response_cache=pipeline.memoizer.cache.stats(),
            rate_limit_cache=pipeline.gate.decisions.stats(),
            notes_cache=request.app.state.notes.cache.stats(),
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000, log_level="info")
