"""
API Routes — health.

The tracker and admin routers live in their own modules; ``main`` mounts
them all.
"""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request

from cleversearch.database import ping_db
from cleversearch.schemas import HealthResponse, ProcessorStats

logger = logging.getLogger(__name__)

router = APIRouter()

VERSION = "1.0.0"


# ── Health ──────────────────────────────────────────────

@router.get("/health", response_model=HealthResponse, tags=["system"])
async def health(request: Request):
    db_ok = await ping_db()

    buffer = getattr(request.app.state, "buffer_store", None)
    buffer_ok = bool(buffer) and await buffer.ping()

    processor = getattr(request.app.state, "event_processor", None)
    stats = ProcessorStats(**processor.get_stats()) if processor else None

    if not (db_ok and buffer_ok):
        logger.warning("Health degraded: database=%s buffer_store=%s", db_ok, buffer_ok)

    return HealthResponse(
        status="ok" if db_ok and buffer_ok else "degraded",
        version=VERSION,
        timestamp=datetime.now(timezone.utc).isoformat(),
        database="connected" if db_ok else "unreachable",
        buffer_store="connected" if buffer_ok else "unreachable",
        event_processor=stats,
    )
