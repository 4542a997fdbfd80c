"""
Swapmatch — FastAPI Application Entry Point

Production-ready application with:
- Async lifespan management (DB pool, Redis event publisher, discovery scheduler)
- CORS, timeout, and structured-logging middleware
- Engine error -> JSON error mapping
- Health-check endpoints (liveness + deep readiness)
- Active-request tracking for graceful shutdown
"""

from __future__ import annotations

import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from app.config import get_engine_config, get_settings
from app.database import async_session_factory, engine
from app.services.discovery_service import DiscoveryScheduler, DiscoveryService
from app.services.event_service import EventPublisher, RedisEventPublisher, set_publisher
from app.utils.errors import SwapEngineError, ValidationError
from app.utils.logging import configure_logging

settings = get_settings()
configure_logging(settings.LOG_LEVEL, settings.ENVIRONMENT)

logger: structlog.stdlib.BoundLogger = structlog.get_logger("swapmatch")

# ---------------------------------------------------------------------------
# Active request counter for graceful shutdown
# ---------------------------------------------------------------------------

_active_requests: int = 0
_active_requests_lock = asyncio.Lock()
_shutdown_event = asyncio.Event()

DRAIN_TIMEOUT_SECONDS = 15


async def _increment_active() -> None:
    global _active_requests
    async with _active_requests_lock:
        _active_requests += 1


async def _decrement_active() -> None:
    global _active_requests
    async with _active_requests_lock:
        _active_requests -= 1


async def _drain_active_requests() -> None:
    """Wait until all in-flight requests complete or timeout expires."""
    deadline = time.monotonic() + DRAIN_TIMEOUT_SECONDS
    while True:
        async with _active_requests_lock:
            if _active_requests <= 0:
                break
        if time.monotonic() >= deadline:
            logger.warning(
                "drain_timeout_exceeded",
                remaining_requests=_active_requests,
            )
            break
        await asyncio.sleep(0.25)


# ---------------------------------------------------------------------------
# Redis helpers
# ---------------------------------------------------------------------------

_redis_client = None


async def _connect_redis() -> None:
    """Connect Redis and install it as the event transport (best-effort)."""
    global _redis_client
    import redis.asyncio as aioredis

    client = aioredis.from_url(
        settings.REDIS_URL,
        decode_responses=True,
        socket_connect_timeout=5,
    )
    try:
        await client.ping()
    except Exception as exc:
        logger.warning("redis_unavailable", error=str(exc), note="events will only be logged")
        await client.aclose()
        set_publisher(EventPublisher())
        return

    _redis_client = client
    set_publisher(RedisEventPublisher(client, settings.EVENT_CHANNEL))
    logger.info("redis_connected", channel=settings.EVENT_CHANNEL)


async def _close_redis() -> None:
    global _redis_client
    set_publisher(EventPublisher())
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("redis_closed")


def get_redis():
    """Return the shared Redis client (for use in health checks, etc.)."""
    return _redis_client


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage startup and shutdown of long-lived resources."""
    # -- Startup --------------------------------------------------------- #
    logger.info(
        "startup_begin",
        environment=settings.ENVIRONMENT,
        log_level=settings.LOG_LEVEL,
    )

    # 1. Database connection pool — engine is already created at module level
    #    in app.database; issuing a simple query warms the pool.
    async with engine.begin() as conn:
        await conn.execute(text("SELECT 1"))
    logger.info("database_pool_initialised")

    # 2. Redis event publisher
    await _connect_redis()

    # 3. Discovery scheduler
    scheduler: DiscoveryScheduler | None = None
    if settings.DISCOVERY_SCHEDULER_ENABLED:
        scheduler = DiscoveryScheduler(
            service_factory=lambda: DiscoveryService(get_engine_config()),
            interval_seconds=settings.DISCOVERY_INTERVAL_SECONDS,
        )
        scheduler.start()
    app.state.scheduler = scheduler

    logger.info("startup_complete")

    yield

    # -- Shutdown -------------------------------------------------------- #
    logger.info("shutdown_begin")

    # 1. Stop scheduling new discovery runs
    if scheduler is not None:
        await scheduler.stop()

    # 2. Drain in-flight requests
    _shutdown_event.set()
    await _drain_active_requests()

    # 3. Close Redis
    await _close_redis()

    # 4. Dispose DB engine (closes the connection pool)
    await engine.dispose()
    logger.info("database_pool_closed")

    logger.info("shutdown_complete")


# ---------------------------------------------------------------------------
# Middleware classes
# ---------------------------------------------------------------------------

class TimeoutMiddleware(BaseHTTPMiddleware):
    """Answer 504 when a request overruns its wall-clock budget.

    Discovery runs triggered over HTTP get the engine time budget plus a
    margin; everything else gets ``timeout_seconds``.
    """

    def __init__(self, app, timeout_seconds: float = 30.0, discovery_timeout_seconds: float = 150.0) -> None:
        super().__init__(app)
        self.timeout_seconds = timeout_seconds
        self.discovery_timeout_seconds = discovery_timeout_seconds

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        is_discovery = request.url.path.startswith("/api/v1/discovery")
        timeout = self.discovery_timeout_seconds if is_discovery else self.timeout_seconds
        try:
            return await asyncio.wait_for(call_next(request), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("request_timeout", path=request.url.path, timeout=timeout)
            return JSONResponse(
                status_code=504,
                content={"error": "timeout", "reason": None, "detail": "Request timed out"},
            )


class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    """Bind a request id into the structlog context and log the outcome."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        structlog.contextvars.bind_contextvars(request_id=request_id)
        start = time.perf_counter()

        await _increment_active()
        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "request_error",
                method=request.method,
                path=request.url.path,
                duration_ms=round((time.perf_counter() - start) * 1000, 2),
            )
            structlog.contextvars.unbind_contextvars("request_id")
            raise
        finally:
            await _decrement_active()

        response.headers["x-request-id"] = request_id
        logger.info(
            "request_handled",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            duration_ms=round((time.perf_counter() - start) * 1000, 2),
        )
        structlog.contextvars.unbind_contextvars("request_id")
        return response


# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------

async def swap_engine_error_handler(request: Request, exc: SwapEngineError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("engine_error", path=request.url.path, code=exc.code, error=exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.code,
            "reason": getattr(exc, "reason", None),
            "detail": exc.message,
            **({"context": exc.details} if exc.details else {}),
        },
    )


async def request_validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    error = ValidationError("malformed", "Request body or parameters are invalid")
    return JSONResponse(
        status_code=error.status_code,
        content={
            "error": error.code,
            "reason": error.reason,
            "detail": error.message,
            "context": {"errors": [
                {"loc": list(e.get("loc", ())), "msg": e.get("msg")} for e in exc.errors()
            ]},
        },
    )


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Swapmatch",
    description="Swap matching and opportunity engine",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs" if not settings.is_production else None,
    redoc_url="/redoc" if not settings.is_production else None,
)

app.add_exception_handler(SwapEngineError, swap_engine_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_error_handler)

# -- Middleware (applied in reverse order — last added runs first) ---------- #

app.add_middleware(StructuredLoggingMiddleware)
app.add_middleware(
    TimeoutMiddleware,
    timeout_seconds=30.0,
    discovery_timeout_seconds=settings.DISCOVERY_TIME_BUDGET_SECONDS + 30.0,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# -- Health-check endpoints ------------------------------------------------ #


@app.get("/health", tags=["health"])
async def health_liveness() -> dict:
    """Lightweight liveness probe — always returns healthy if the process is
    running."""
    return {"status": "healthy"}


@app.get("/health/deep", tags=["health"])
async def health_deep() -> dict:
    """Deep readiness probe — verifies database and Redis connectivity."""
    result: dict = {
        "status": "healthy",
        "database": "connected",
        "redis": "connected",
    }

    # Database
    try:
        async with async_session_factory() as session:
            await session.execute(text("SELECT 1"))
    except Exception as exc:
        logger.error("health_db_failure", error=str(exc))
        result["database"] = f"error: {exc}"
        result["status"] = "degraded"

    # Redis
    try:
        redis = get_redis()
        if redis is None:
            raise RuntimeError("Redis client not initialised")
        await redis.ping()
    except Exception as exc:
        logger.error("health_redis_failure", error=str(exc))
        result["redis"] = f"error: {exc}"
        result["status"] = "degraded"

    scheduler = getattr(app.state, "scheduler", None)
    result["discovery_scheduler"] = (
        {"running": scheduler.running, "runs": scheduler.runs} if scheduler else "disabled"
    )
    return result


# -- API router ------------------------------------------------------------ #

from app.api.router import router as api_router  # noqa: E402

app.include_router(api_router, prefix="/api/v1")
