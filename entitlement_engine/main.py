"""
Entitlement Engine - Main Application
=====================================

FastAPI application entry point with middleware configuration
and route registration.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import newrelic.agent

# Configure logging for the application (root logger defaults to WARNING)
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from entitlement_engine.config import settings
from entitlement_engine.core.errors import setup_exception_handlers
from entitlement_engine.db.session import close_db, init_db
from entitlement_engine.dependencies import get_pipeline
from entitlement_engine.services.ingest_worker import IngestWorker
from entitlement_engine.services.reconciliation import ReconciliationScheduler
from entitlement_engine.services.redis_client import close_redis, init_redis

logger = logging.getLogger(__name__)


# =============================================================================
# New Relic Transaction Middleware (Raw ASGI)
# =============================================================================

# request.state keys copied onto the transaction when a route sets them
_STATE_ATTRIBUTES = (
    ("user_id", "enduser.id"),
    ("webhook_provider", "entitlement.provider"),
    ("webhook_event_id", "entitlement.event_id"),
    ("webhook_outcome", "entitlement.outcome"),
)


class NewRelicTransactionMiddleware:
    """
    Tags each New Relic transaction with route, status and latency, plus
    the webhook provider, event id and ledger outcome when a webhook route
    recorded them. Outcome dashboards (stale rejections, dead letters)
    filter on ``entitlement.outcome``.

    Raw ASGI so the route handler runs in the same task and database spans
    stay attached to the transaction.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        start = time.perf_counter()
        status_code = 500

        async def capture_status(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, capture_status)
        finally:
            if newrelic.agent.current_transaction():
                self._annotate(scope, status_code, time.perf_counter() - start)

    @staticmethod
    def _annotate(scope, status_code: int, elapsed: float) -> None:
        route = scope.get("route")
        attributes = [
            ("http.method", scope.get("method", "")),
            ("http.route", route.path if route else scope.get("path", "unknown")),
            ("http.status_code", status_code),
            ("http.duration_ms", round(elapsed * 1000, 2)),
            ("environment", settings.ENVIRONMENT),
        ]

        state = scope.get("state")
        if isinstance(state, dict):
            attributes.extend(
                (name, str(state[key]))
                for key, name in _STATE_ATTRIBUTES
                if state.get(key) is not None
            )

        newrelic.agent.add_custom_attributes(attributes)


_scheduler: ReconciliationScheduler | None = None
_ingest_worker: IngestWorker | None = None


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Handles startup and shutdown of:
    - Database connection
    - Redis connection and ingest worker (queued webhook mode only)
    - Reconciliation scheduler
    """
    global _scheduler, _ingest_worker

    logger.info("Starting Entitlement Engine (%s)", settings.ENVIRONMENT)

    if settings.auth_disabled:
        logger.warning(
            "Authentication is DISABLED (DEV_AUTH_DISABLED=true); "
            "all requests use the development user"
        )

    # Continue startup even if DB fails (for health checks)
    try:
        await init_db()
    except Exception as e:
        logger.error("Database connection failed: %s", e)

    pipeline = get_pipeline()

    if settings.WEBHOOK_INGEST_MODE == "queued":
        try:
            await init_redis()
            _ingest_worker = IngestWorker(pipeline)
            await _ingest_worker.start()
        except Exception as e:
            logger.error("Ingest worker failed to start, webhooks fall back to inline: %s", e)
            _ingest_worker = None

    if settings.SCHEDULER_ENABLED:
        _scheduler = ReconciliationScheduler(pipeline)
        await _scheduler.start()

    yield

    logger.info("Shutting down Entitlement Engine")
    if _scheduler is not None:
        await _scheduler.stop()
        _scheduler = None
    if _ingest_worker is not None:
        await _ingest_worker.stop()
        _ingest_worker = None
    await close_redis()
    await close_db()


# Create FastAPI application
app = FastAPI(
    title="Entitlement Engine",
    description="""
## Subscription Entitlement Reconciliation

Keeps each user's entitlement consistent with what card billing and the
App Store report about their subscriptions.

### Surfaces
- **Webhooks**: provider lifecycle notifications (signature verified)
- **Entitlements**: current tier and limits per user
- **Commands**: client purchase / restore hints, pending provider confirmation
    """,
    version="1.0.0",
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
    openapi_url="/openapi.json" if settings.is_development else None,
    lifespan=lifespan,
    responses={
        401: {"description": "Not authenticated"},
        422: {"description": "Validation error"},
        500: {"description": "Internal server error"},
        503: {"description": "Ledger unavailable"},
    },
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# New Relic transaction enrichment (adds custom attrs to every transaction)
app.add_middleware(NewRelicTransactionMiddleware)

# Setup exception handlers
setup_exception_handlers(app)


# =============================================================================
# Health Check Endpoints
# =============================================================================

@app.get("/health", tags=["Health"])
async def health_check() -> dict:
    """Current status of the API."""
    return {
        "status": "healthy",
        "version": "1.0.0",
        "environment": settings.ENVIRONMENT,
        "ingest_mode": settings.WEBHOOK_INGEST_MODE,
        "scheduler": _scheduler is not None,
    }


@app.get("/", tags=["Health"])
async def root() -> dict:
    """Root endpoint with API information."""
    return {
        "name": "Entitlement Engine",
        "version": "1.0.0",
        "docs": "/docs" if settings.is_development else "Disabled in production",
    }


# =============================================================================
# API Routes
# =============================================================================

from entitlement_engine.api.v1 import commands, entitlements, webhooks
app.include_router(webhooks.router, prefix="/api/v1/webhooks", tags=["Webhooks"])
app.include_router(entitlements.router, prefix="/api/v1/entitlements", tags=["Entitlements"])
app.include_router(commands.router, prefix="/api/v1/commands", tags=["Commands"])
