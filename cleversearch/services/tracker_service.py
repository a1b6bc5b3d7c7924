"""
Tracker Service — lookups and helpers behind the public tracker endpoints.

Everything here runs on the critical path of a third-party page load, so
it only does point lookups and a buffer append; aggregation happens later
in the event processor.
"""

import base64
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlsplit

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from cleversearch.models.content import ContentDeployment
from cleversearch.models.site import Page, Site
from cleversearch.schemas import TrackingEvent

logger = logging.getLogger("tracker.service")

# 1x1 transparent GIF (43 bytes)
TRACKING_PIXEL = base64.b64decode("R0lGODlhAQABAIAAAP///wAAACH5BAEAAAAALAAAAAABAAEAAAICRAEAOw==")

CONTENT_CACHE_PREFIX = "tracker:content"


def is_valid_tracker_id(tracker_id: str) -> bool:
    try:
        uuid.UUID(str(tracker_id))
    except ValueError:
        return False
    return True


def is_absolute_http_url(value: Optional[str]) -> bool:
    if not value:
        return False
    parts = urlsplit(value)
    return parts.scheme in ("http", "https") and bool(parts.netloc)


def normalize_url(url: str) -> str:
    """Stable cache form: lowercase origin, case-kept path without trailing slash, query."""
    parts = urlsplit(url.strip())
    if not parts.scheme or not parts.netloc:
        return url.strip().rstrip("/")
    normalized = f"{parts.scheme.lower()}://{parts.netloc.lower()}{parts.path.rstrip('/')}"
    if parts.query:
        normalized += f"?{parts.query}"
    return normalized


def content_cache_key(tracker_id: str, page_url: str) -> str:
    return f"{CONTENT_CACHE_PREFIX}:{tracker_id}:{normalize_url(page_url)}"


def _url_variants(url: str) -> list[str]:
    """Exact URL first, then the trailing-slash twin."""
    if url.endswith("/"):
        return [url, url[:-1]] if len(url) > 1 else [url]
    return [url, url + "/"]


async def get_site_by_tracker_id(db: AsyncSession, tracker_id: str) -> Optional[Site]:
    """Resolve a public tracker id to a live (not soft-deleted) site."""
    if not is_valid_tracker_id(tracker_id):
        return None
    result = await db.execute(
        select(Site)
        .where(Site.tracker_id == str(tracker_id))
        .where(Site.deleted_at.is_(None))
        .limit(1)
    )
    return result.scalar_one_or_none()


async def find_page(db: AsyncSession, site_id: str, url: str) -> Optional[Page]:
    for candidate in _url_variants(url):
        result = await db.execute(
            select(Page).where(Page.site_id == site_id, Page.url == candidate).limit(1)
        )
        page = result.scalar_one_or_none()
        if page:
            return page
    return None


async def get_active_fragments(db: AsyncSession, page_id: str) -> list[dict]:
    """Deployed + active content for a page, oldest deployment first."""
    result = await db.execute(
        select(ContentDeployment)
        .where(ContentDeployment.page_id == page_id)
        .where(ContentDeployment.status == "deployed")
        .where(ContentDeployment.is_active.is_(True))
        .order_by(ContentDeployment.deployed_at)
    )
    return [
        {"id": d.id, "type": d.section_type, "content": d.deployed_content}
        for d in result.scalars().all()
    ]


async def upsert_page(
    db: AsyncSession, site_id: str, url: str, title: Optional[str] = None
) -> Optional[Page]:
    """Create the page on first sight, otherwise bump ``last_seen_at`` (and title)."""
    now = datetime.now(timezone.utc)
    page = await find_page(db, site_id, url)

    if page is None:
        page = Page(site_id=site_id, url=url[:1024], title=(title or None) and title[:512],
                    last_seen_at=now)
        db.add(page)
        try:
            await db.commit()
        except IntegrityError:
            # Another beacon created it between our lookup and insert
            await db.rollback()
            return await find_page(db, site_id, url)
        logger.info("🆕 New page tracked: %s", url)
        return page

    page.last_seen_at = now
    if title and title != page.title:
        page.title = title[:512]
    await db.commit()
    return page


def build_tracking_event(
    site_id: str,
    page_url: str,
    event_type: str,
    *,
    event_data: Optional[dict] = None,
    session_id: Optional[str] = None,
    anonymous_user_id: Optional[str] = None,
    user_agent: Optional[str] = None,
    ip_address: Optional[str] = None,
    referrer: Optional[str] = None,
    timestamp: Optional[str] = None,
) -> dict:
    """Shape one beacon into the buffered wire format."""
    event = TrackingEvent(
        site_id=site_id,
        page_url=page_url[:1024],
        event_type=event_type[:64],
        event_data=event_data or {},
        session_id=session_id,
        anonymous_user_id=anonymous_user_id,
        user_agent=(user_agent or "unknown")[:500],
        ip_address=(ip_address or "unknown")[:45],
        referrer=(referrer or "")[:1024],
        timestamp=timestamp or datetime.now(timezone.utc).isoformat(),
    )
    return event.to_buffer()


def render_tracker_script(tracker_id: str, api_base_url: str) -> str:
    """The embeddable snippet: one page_view per navigation, pixel fallback."""
    base = api_base_url.rstrip("/")
    return f"""
(function() {{
  'use strict';

  var trackerId = '{tracker_id}';
  var apiUrl = '{base}';
  var tracked = false;

  function pixel(data) {{
    var img = new Image();
    img.src = apiUrl + '/api/v2/tracker/' + trackerId + '/pixel.gif?' +
              'url=' + encodeURIComponent(data.url) +
              '&title=' + encodeURIComponent(data.title) +
              '&referrer=' + encodeURIComponent(data.referrer);
  }}

  function trackPageView() {{
    if (tracked) return;
    tracked = true;

    var data = {{
      url: window.location.href,
      title: document.title,
      referrer: document.referrer,
      userAgent: navigator.userAgent,
      screenWidth: window.screen ? window.screen.width : null,
      timestamp: new Date().toISOString()
    }};

    if (typeof fetch !== 'undefined') {{
      fetch(apiUrl + '/api/v2/tracker/' + trackerId + '/track', {{
        method: 'POST',
        headers: {{ 'Content-Type': 'application/json' }},
        body: JSON.stringify(data),
        mode: 'cors',
        keepalive: true
      }}).catch(function() {{ pixel(data); }});
    }} else {{
      pixel(data);
    }}
  }}

  function retrack() {{
    setTimeout(function() {{
      tracked = false;
      trackPageView();
    }}, 100);
  }}

  if (document.readyState === 'complete') {{
    trackPageView();
  }} else {{
    window.addEventListener('load', trackPageView);
  }}

  var originalPushState = history.pushState;
  var originalReplaceState = history.replaceState;
  history.pushState = function() {{
    originalPushState.apply(history, arguments);
    retrack();
  }};
  history.replaceState = function() {{
    originalReplaceState.apply(history, arguments);
    retrack();
  }};
  window.addEventListener('popstate', retrack);
}})();
""".strip()
