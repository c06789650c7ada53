"""
InviteDispatch - WhatsApp invitation dispatch service

FastAPI application entry point.
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI

# Import observability modules
from invite_dispatch.config import settings
from invite_dispatch.logging_config import configure_logging
from invite_dispatch.sentry_config import configure_sentry
from invite_dispatch.middleware.logging import LoggingMiddleware
from invite_dispatch.routes.metrics import router as metrics_router

# Import route modules
from invite_dispatch.routes.whatsapp import router as whatsapp_router
from invite_dispatch.routes.webhooks import router as webhooks_router
from invite_dispatch.services.kv_store import RedisStore

# Initialize logging first
configure_logging()

# Initialize Sentry (if SENTRY_DSN is set)
configure_sentry()


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.store = RedisStore.from_url(settings.REDIS_URL)
    yield
    await app.state.store.close()


# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Queues WhatsApp and SMS invitations and reconciles provider delivery status",
    lifespan=lifespan,
)

# Add logging middleware FIRST (runs before other middleware)
app.add_middleware(LoggingMiddleware)

# Include metrics endpoint FIRST (so it's always available)
app.include_router(metrics_router)

# Include invitation routes
app.include_router(whatsapp_router)

# Include provider webhook routes
app.include_router(webhooks_router)


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
    return {
        "status": "healthy",
        "environment": settings.ENVIRONMENT,
    }
