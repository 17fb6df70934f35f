"""
Premium Entitlement API - Main Application
==========================================

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

from app.config import settings
from app.core.errors import setup_exception_handlers
from app.db.session import close_db, init_db
from app.services.cache import close_redis, init_redis

logger = logging.getLogger(__name__)


# =============================================================================
# New Relic Transaction Enrichment Middleware (Raw ASGI)
# =============================================================================

class NewRelicTransactionMiddleware:
    """
    Raw ASGI middleware that tags every New Relic transaction.

    Raw ASGI rather than BaseHTTPMiddleware so the route handler runs in
    the same task and New Relic's contextvars-based spans stay attached.

    Captures: HTTP method, route pattern, status, latency, environment and
    the user id set by ``get_current_user_id`` or the webhook route.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        start = time.perf_counter()
        status_code = 500  # until the response starts

        async def send_wrapper(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            txn = newrelic.agent.current_transaction()
            if txn:
                route = scope.get("route")
                route_path = route.path if route else scope.get("path", "unknown")

                newrelic.agent.add_custom_attributes([
                    ("http.method", scope.get("method", "")),
                    ("http.route", route_path),
                    ("http.status_code", status_code),
                    ("http.duration_ms", round((time.perf_counter() - start) * 1000, 2)),
                    ("environment", settings.ENVIRONMENT),
                ])

                state = scope.get("state") or {}
                user_id = state.get("user_id") if isinstance(state, dict) else None
                if user_id:
                    newrelic.agent.add_custom_attribute("enduser.id", str(user_id))


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Handles startup and shutdown of the database and Redis connections.
    """
    logger.info("Starting Premium Entitlement API (%s)", settings.ENVIRONMENT)

    if not settings.REVENUECAT_WEBHOOK_SECRET:
        logger.warning("REVENUECAT_WEBHOOK_SECRET not set: webhooks will be rejected")
    if not settings.REVENUECAT_ENFORCE_REAL_MODE:
        logger.warning("Sandbox entitlements can grant premium (REVENUECAT_ENFORCE_REAL_MODE=false)")

    # Continue startup even if DB fails (for health checks)
    try:
        await init_db()
    except Exception as e:
        logger.error("Database connection failed: %s", e)

    try:
        await init_redis()
    except Exception as e:
        logger.error("Redis connection failed, status cache disabled: %s", e)

    yield

    logger.info("Shutting down Premium Entitlement API")
    await close_db()
    await close_redis()


# Create FastAPI application
app = FastAPI(
    title="Premium Entitlement API",
    description="""
## Premium Entitlement Reconciliation

Keeps one authoritative premium record per user from RevenueCat webhooks,
client purchase syncs and restores.

### Endpoints
- **Webhooks**: RevenueCat lifecycle events (shared-secret header)
- **Premium**: sync, restore, transfer restore and status (bearer token)
    """,
    version="1.0.0",
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
    openapi_url="/openapi.json" if settings.is_development else None,
    lifespan=lifespan,
    responses={
        400: {"description": "Invalid payload"},
        401: {"description": "Not authenticated"},
        409: {"description": "Concurrent update, retry"},
        422: {"description": "Validation error"},
        500: {"description": "Internal server error"},
        503: {"description": "Billing provider unavailable"},
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
    """Liveness probe."""
    return {
        "status": "healthy",
        "version": "1.0.0",
        "environment": settings.ENVIRONMENT,
    }


@app.get("/", tags=["Health"])
async def root() -> dict:
    """Root endpoint with API information."""
    return {
        "name": "Premium Entitlement API",
        "version": "1.0.0",
        "docs": "/docs" if settings.is_development else "Disabled in production",
    }


# =============================================================================
# API Routes
# =============================================================================

from app.api.v1 import premium, webhooks
app.include_router(premium.router, prefix="/api/v1/premium", tags=["Premium"])
app.include_router(webhooks.router, prefix="/api/v1/webhooks", tags=["Webhooks"])
