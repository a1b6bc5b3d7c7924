"""
Tracker routes (v2) — page-view beacons and the embeddable script.

``/track`` and ``/pixel.gif`` always answer with the 1x1 GIF so a broken
backend can never break (or even slow down) the customer's page.
"""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy.ext.asyncio import AsyncSession

from cleversearch.config import settings
from cleversearch.database import get_db
from cleversearch.schemas import EventType
from cleversearch.services.buffer_store import BufferStoreError
from cleversearch.services.rate_limiter import (
    client_ip,
    tracker_beacon_rate_limit,
    tracker_script_rate_limit,
)
from cleversearch.services.tracker_service import (
    TRACKING_PIXEL,
    build_tracking_event,
    get_site_by_tracker_id,
    render_tracker_script,
    upsert_page,
)

logger = logging.getLogger("tracker.v2")

tracker_v2_router = APIRouter(tags=["tracker-v2"])


def _pixel_response() -> Response:
    return Response(
        content=TRACKING_PIXEL,
        media_type="image/gif",
        headers={
            "Content-Length": str(len(TRACKING_PIXEL)),
            "Cache-Control": "no-cache, no-store, must-revalidate",
            "Pragma": "no-cache",
            "Expires": "0",
        },
    )


def _str_or_none(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


async def _record_page_view(
    tracker_id: str, data: dict, request: Request, db: AsyncSession
) -> None:
    url = _str_or_none(data.get("url") or data.get("pageUrl"))
    if not url:
        logger.warning("Beacon for %s without a url — ignored", tracker_id)
        return

    site = await get_site_by_tracker_id(db, tracker_id)
    if not site:
        logger.warning("Beacon for unknown tracker %s", tracker_id)
        return

    event_data = data.get("eventData") if isinstance(data.get("eventData"), dict) else {}
    title = _str_or_none(data.get("title"))
    if title:
        event_data = {**event_data, "title": title}
    screen_width = data.get("screenWidth")
    if screen_width not in (None, ""):
        event_data = {**event_data, "screenWidth": screen_width}

    event = build_tracking_event(
        site.id,
        url,
        _str_or_none(data.get("eventType")) or EventType.PAGE_VIEW,
        event_data=event_data,
        session_id=_str_or_none(data.get("sessionId")),
        anonymous_user_id=_str_or_none(data.get("anonymousUserId")),
        user_agent=_str_or_none(data.get("userAgent")) or request.headers.get("user-agent"),
        ip_address=client_ip(request),
        referrer=_str_or_none(data.get("referrer")) or request.headers.get("referer"),
        timestamp=_str_or_none(data.get("timestamp")),
    )

    buffer = getattr(request.app.state, "buffer_store", None)
    try:
        if buffer is None:
            raise BufferStoreError("no buffer store configured")
        await buffer.append(site.id, event)
    except BufferStoreError as e:
        logger.error("❌ Failed to buffer page view for site %s: %s", site.id, e)

    await upsert_page(db, site.id, url, title)


async def _track(tracker_id: str, data: dict, request: Request, db: AsyncSession) -> Response:
    try:
        await _record_page_view(tracker_id, data, request, db)
    except Exception as e:
        logger.error("Tracking failed for %s: %s", tracker_id, e)
    return _pixel_response()


@tracker_v2_router.post("/{trackerId}/track", dependencies=[Depends(tracker_beacon_rate_limit)])
async def track_page_view(
    trackerId: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    try:
        payload = await request.json()
    except ValueError:
        payload = None
    return await _track(trackerId, payload if isinstance(payload, dict) else {}, request, db)


@tracker_v2_router.get("/{trackerId}/pixel.gif", dependencies=[Depends(tracker_beacon_rate_limit)])
async def track_pixel(
    trackerId: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """Image-beacon fallback for browsers without fetch / CORS."""
    return await _track(trackerId, dict(request.query_params), request, db)


@tracker_v2_router.get("/{trackerId}/script.js", dependencies=[Depends(tracker_script_rate_limit)])
async def tracker_script(
    trackerId: str,
    db: AsyncSession = Depends(get_db),
):
    site = await get_site_by_tracker_id(db, trackerId)
    if not site:
        return JSONResponse(status_code=404, content={"error": "Tracker not found"})

    return Response(
        content=render_tracker_script(site.tracker_id, settings.api_base_url),
        media_type="application/javascript",
        headers={"Cache-Control": "public, max-age=3600"},
    )
