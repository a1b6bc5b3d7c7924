"""
FastAPI Application — entry point.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from cleversearch.config import settings
from cleversearch.database import async_session, close_db, init_db
from cleversearch.routes import VERSION, router
from cleversearch.routes.admin import admin_router
from cleversearch.routes.tracker import tracker_router
from cleversearch.routes.tracker_v2 import tracker_v2_router
from cleversearch.services.buffer_store import create_buffer_store
from cleversearch.services.event_processor import EventProcessor
from cleversearch.services.rate_limiter import install_rate_limiting

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown hook."""
    logger.info("🚀 Starting Clever Search Tracker API v%s", VERSION)
    await init_db()
    logger.info("✅ Database ready")

    buffer_store = create_buffer_store(settings.redis_effective_url)
    if not await buffer_store.ping():
        logger.error("❌ Buffer store unreachable at startup — beacons will be dropped until it recovers")

    event_processor = EventProcessor(
        buffer_store,
        async_session,
        interval_ms=settings.event_processor_interval_ms,
        batch_size=settings.event_batch_size,
    )
    app.state.buffer_store = buffer_store
    app.state.event_processor = event_processor

    if settings.event_processor_enabled:
        event_processor.start()
    else:
        logger.info("ℹ️ Event processor disabled (EVENT_PROCESSOR_ENABLED=false)")

    yield

    # Shutdown
    await event_processor.stop()
    await buffer_store.close()
    await close_db()
    logger.info("👋 Shutdown complete")


app = FastAPI(
    title="Clever Search Tracker API",
    description=(
        "Tracker ingestion and content delivery for the Clever Search "
        "embedded script."
    ),
    version=VERSION,
    lifespan=lifespan,
)

# CORS: the tracker script is served to arbitrary customer origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials="*" not in settings.cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset", "Retry-After"],
)

install_rate_limiting(app)

app.include_router(router, prefix="/api/v1")
app.include_router(admin_router, prefix="/api/v1")
app.include_router(tracker_router, prefix="/api/v1/tracker")
app.include_router(tracker_router, prefix="/tracker", include_in_schema=False)
app.include_router(tracker_v2_router, prefix="/api/v2/tracker")


@app.get("/", include_in_schema=False)
async def root():
    return {
        "service": "Clever Search Tracker API",
        "version": VERSION,
        "docs": "/docs",
    }
