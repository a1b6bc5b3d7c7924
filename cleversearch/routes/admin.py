"""
Admin routes — event processor status and manual drains.

Guarded by the shared ``X-Internal-Api-Key`` header; with no key
configured the endpoints are disabled.
"""

import logging
import secrets
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from cleversearch.config import settings
from cleversearch.schemas import DrainReportResponse, ProcessorStats
from cleversearch.services.event_processor import EventProcessor
from cleversearch.services.rate_limiter import dashboard_rate_limit

logger = logging.getLogger("tracker.admin")


async def require_internal_key(
    x_internal_api_key: Optional[str] = Header(None, alias="X-Internal-Api-Key"),
) -> None:
    if not settings.internal_api_key:
        raise HTTPException(status_code=403, detail="Admin API disabled")
    if not x_internal_api_key or not secrets.compare_digest(
        x_internal_api_key, settings.internal_api_key
    ):
        raise HTTPException(status_code=401, detail="Invalid internal API key")


admin_router = APIRouter(
    prefix="/admin",
    tags=["admin"],
    dependencies=[Depends(dashboard_rate_limit), Depends(require_internal_key)],
)


def _processor(request: Request) -> EventProcessor:
    processor = getattr(request.app.state, "event_processor", None)
    if processor is None:
        raise HTTPException(status_code=503, detail="Event processor not configured")
    return processor


@admin_router.get("/event-processor", response_model=ProcessorStats)
async def event_processor_stats(processor: EventProcessor = Depends(_processor)):
    return ProcessorStats(**processor.get_stats())


@admin_router.post("/event-processor/run", response_model=DrainReportResponse)
async def run_event_processor(processor: EventProcessor = Depends(_processor)):
    """Drain every site's buffer now. 409 if a drain is already running."""
    if processor.is_processing:
        raise HTTPException(status_code=409, detail="A drain is already in progress")

    report = await processor.process_now()
    if report is None:
        raise HTTPException(status_code=409, detail="A drain is already in progress")

    logger.info("🔧 Manual drain: %d events processed", report.processed)
    return DrainReportResponse(
        sites=report.sites,
        processed=report.processed,
        skipped=report.skipped,
        failed_sites=report.failed_sites,
        duration_ms=report.duration_ms,
        finished_at=report.finished_at,
    )
