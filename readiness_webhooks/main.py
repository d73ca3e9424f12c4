"""
AI Readiness Webhooks - webhook delivery service

FastAPI application entry point.
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# Import observability modules
from readiness_webhooks.config import settings
from readiness_webhooks.database import AsyncSessionLocal, engine
from readiness_webhooks.logging_config import configure_logging, logger
from readiness_webhooks.sentry_config import configure_sentry
from readiness_webhooks.middleware.logging import LoggingMiddleware
from readiness_webhooks.routes.metrics import router as metrics_router

# Import route modules
from readiness_webhooks.routes.events import router as events_router
from readiness_webhooks.routes.webhooks import router as webhooks_router
from readiness_webhooks.services.webhook_service import WebhookManager
from readiness_webhooks.services.webhook_store import WebhookStore

# Initialize logging first
configure_logging()

# Initialize Sentry (if SENTRY_DSN is set)
configure_sentry()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the webhook manager; give in-flight deliveries a grace period on shutdown."""
    app.state.webhook_manager = WebhookManager(WebhookStore(AsyncSessionLocal))
    yield
    manager = app.state.webhook_manager
    pending = manager.pending_deliveries
    if pending:
        logger.info("waiting_for_deliveries", pending=pending)
    idle = await manager.wait_idle(timeout=settings.WEBHOOK_SHUTDOWN_GRACE_SECONDS)
    if not idle:
        logger.warning("deliveries_abandoned", pending=manager.pending_deliveries)
    await engine.dispose()


# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Webhook registry and signed event delivery for the AI Readiness platform",
    lifespan=lifespan,
)

# Add logging middleware FIRST (runs before other middleware)
app.add_middleware(LoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.FRONTEND_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include metrics endpoint FIRST (so it's always available)
app.include_router(metrics_router)

# Include webhook routes
app.include_router(webhooks_router)

# Include event trigger routes
app.include_router(events_router)


@app.get("/")
async def root():
    """Health check endpoint."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running"
    }


@app.get("/health")
async def health():
    """Detailed health check."""
    manager = getattr(app.state, "webhook_manager", None)
    return {
        "status": "healthy",
        "pending_deliveries": manager.pending_deliveries if manager else 0,
    }
