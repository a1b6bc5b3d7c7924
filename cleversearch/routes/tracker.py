"""
Tracker routes (v1) — beacon ingestion and content delivery for the
embedded client script.

Mounted twice: under ``/api/v1/tracker`` and the bare ``/tracker`` path
older snippets still call.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from cleversearch.config import settings
from cleversearch.database import get_db
from cleversearch.schemas import TrackerDataRequest
from cleversearch.services.buffer_store import BufferStore, BufferStoreError
from cleversearch.services.rate_limiter import (
    client_ip,
    tracker_rate_limit,
    tracker_specific_rate_limit,
)
from cleversearch.services.tracker_service import (
    build_tracking_event,
    content_cache_key,
    find_page,
    get_active_fragments,
    get_site_by_tracker_id,
    is_absolute_http_url,
    is_valid_tracker_id,
)

logger = logging.getLogger("tracker.routes")

tracker_router = APIRouter(tags=["tracker"])

_tracker_limits = [Depends(tracker_rate_limit), Depends(tracker_specific_rate_limit())]

BROWSER_CACHE = "public, max-age=300"


def _buffer(request: Request) -> Optional[BufferStore]:
    return getattr(request.app.state, "buffer_store", None)


def _bad_request(error: str, details=None) -> JSONResponse:
    body = {"error": error}
    if details is not None:
        body["details"] = details
    return JSONResponse(status_code=400, content=body)


# ── Ingestion ───────────────────────────────────────────

@tracker_router.post("/{trackerId}/data", status_code=204, dependencies=_tracker_limits)
async def collect_data(
    trackerId: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """Accept one beacon and append it to the site's buffer."""
    if not is_valid_tracker_id(trackerId):
        return _bad_request("Invalid tracker ID format")

    try:
        payload = await request.json()
    except ValueError:
        return _bad_request("Invalid JSON body")

    try:
        data = TrackerDataRequest.model_validate(payload)
    except ValidationError as e:
        details = [
            {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
            for err in e.errors()
        ]
        return _bad_request("Invalid tracking data", details)

    site = await get_site_by_tracker_id(db, trackerId)
    if not site:
        logger.warning("Tracker ID not found: %s", trackerId)
        return JSONResponse(status_code=404, content={"error": "Tracker not found"})

    event = build_tracking_event(
        site.id,
        data.page_url,
        data.event_type,
        event_data=data.event_data,
        session_id=data.session_id,
        anonymous_user_id=data.anonymous_user_id,
        user_agent=data.user_agent or request.headers.get("user-agent"),
        ip_address=client_ip(request),
        referrer=data.referrer or request.headers.get("referer"),
        timestamp=data.timestamp,
    )

    buffer = _buffer(request)
    try:
        if buffer is None:
            raise BufferStoreError("no buffer store configured")
        await buffer.append(site.id, event)
    except BufferStoreError as e:
        # The beacon is lost, but the customer page must not see an error
        logger.error("❌ Failed to buffer event for site %s: %s", site.id, e)

    return Response(status_code=204)


# ── Content ─────────────────────────────────────────────

@tracker_router.get("/{trackerId}/content", dependencies=_tracker_limits)
async def get_content(
    trackerId: str,
    request: Request,
    page_url: Optional[str] = Query(None, alias="pageUrl"),
    db: AsyncSession = Depends(get_db),
):
    """Active content fragments the script should inject into ``pageUrl``."""
    if not page_url:
        return _bad_request("pageUrl query parameter is required")
    if not is_absolute_http_url(page_url):
        return _bad_request("pageUrl must be an absolute http(s) URL")

    buffer = _buffer(request)
    cache_key = content_cache_key(trackerId, page_url)

    cached = await _cache_get(buffer, cache_key)
    if cached is not None:
        logger.debug("📦 Cached content for %s (%d items)", page_url, len(cached["items"]))
        return _content_response(cached["items"], cached["etag"])

    try:
        site = await get_site_by_tracker_id(db, trackerId)
        if not site:
            logger.warning("Content requested for unknown tracker %s", trackerId)
            return JSONResponse(status_code=404, content={"error": "Tracker not found"})

        page = await find_page(db, site.id, page_url)
        if not page:
            items: list[dict] = []
            etag = f'"{trackerId}-none-0"'
        else:
            items = await get_active_fragments(db, page.id)
            etag = f'"{trackerId}-{page.id}-{len(items)}"'
    except Exception as e:
        logger.error("Error retrieving tracker content for %s: %s", page_url, e)
        return JSONResponse(status_code=200, content=[])

    await _cache_set(buffer, cache_key, {"items": items, "etag": etag})
    return _content_response(items, etag)


def _content_response(items: list[dict], etag: str) -> JSONResponse:
    return JSONResponse(
        status_code=200,
        content=items,
        headers={"Cache-Control": BROWSER_CACHE, "ETag": etag},
    )


async def _cache_get(buffer: Optional[BufferStore], key: str) -> Optional[dict]:
    if buffer is None:
        return None
    try:
        cached = await buffer.get_json(key)
    except BufferStoreError as e:
        logger.warning("Content cache read failed for %s: %s", key, e)
        return None
    if isinstance(cached, dict) and isinstance(cached.get("items"), list):
        return cached
    return None


async def _cache_set(buffer: Optional[BufferStore], key: str, value: dict) -> None:
    if buffer is None:
        return
    try:
        await buffer.set_json(key, value, settings.tracker_content_cache_ttl)
    except BufferStoreError as e:
        logger.warning("Content cache write failed for %s: %s", key, e)
