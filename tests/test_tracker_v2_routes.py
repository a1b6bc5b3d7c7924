"""
Tests for the v2 tracker routes — the pixel always comes back, whatever happens.
"""

import uuid
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from cleversearch.models.site import Page
from cleversearch.services.buffer_store import BufferStoreError
from cleversearch.services.tracker_service import TRACKING_PIXEL


def assert_pixel(resp):
    assert resp.status_code == 200
    assert resp.content == TRACKING_PIXEL
    assert resp.headers["Content-Type"] == "image/gif"
    assert resp.headers["Content-Length"] == "43"
    assert "no-cache" in resp.headers["Cache-Control"]


async def _pages(session_factory, site_id):
    async with session_factory() as s:
        result = await s.execute(select(Page).where(Page.site_id == site_id))
        return list(result.scalars().all())


class TestPixelAlwaysReturned:
    def test_pixel_is_43_byte_gif(self):
        assert len(TRACKING_PIXEL) == 43
        assert TRACKING_PIXEL.startswith(b"GIF89a")

    @pytest.mark.parametrize("kwargs", [
        {"json": {"url": "https://ex.com/a", "title": "A"}},
        {"json": {}},
        {"json": ["not", "an", "object"]},
        {"json": {"title": "no url"}},
        {"content": b"{broken", "headers": {"Content-Type": "application/json"}},
        {"content": b""},
    ])
    async def test_any_body(self, client, site, kwargs):
        resp = await client.post(f"/api/v2/tracker/{site.tracker_id}/track", **kwargs)
        assert_pixel(resp)

    @pytest.mark.parametrize("tracker_id", ["not-a-uuid", str(uuid.uuid4())])
    async def test_unknown_tracker(self, client, tracker_id):
        resp = await client.post(f"/api/v2/tracker/{tracker_id}/track", json={"url": "https://ex.com"})
        assert_pixel(resp)

    async def test_buffer_outage(self, client, buffer_store, site):
        with patch.object(buffer_store, "append", new=AsyncMock(side_effect=BufferStoreError("down"))):
            resp = await client.post(
                f"/api/v2/tracker/{site.tracker_id}/track", json={"url": "https://ex.com/a"},
            )
        assert_pixel(resp)

    async def test_database_outage(self, client, site):
        with patch(
            "cleversearch.routes.tracker_v2.get_site_by_tracker_id",
            new=AsyncMock(side_effect=RuntimeError("db down")),
        ):
            resp = await client.post(
                f"/api/v2/tracker/{site.tracker_id}/track", json={"url": "https://ex.com/a"},
            )
        assert_pixel(resp)

    async def test_rate_limit_rejection_is_not_a_pixel(self, client, buffer_store, site):
        # 429 is the one case the limiter answers before the handler runs
        with patch.object(
            buffer_store, "increment_and_check",
            new=AsyncMock(return_value=await buffer_store.increment_and_check("x", 0, 60)),
        ):
            resp = await client.post(f"/api/v2/tracker/{site.tracker_id}/track", json={})
        assert resp.status_code == 429


class TestTrackRecords:
    async def test_track_buffers_event_and_creates_page(self, client, buffer_store, session_factory, site):
        resp = await client.post(
            f"/api/v2/tracker/{site.tracker_id}/track",
            json={
                "url": "https://ex.com/pricing",
                "title": "Pricing",
                "referrer": "https://google.com",
                "screenWidth": 1280,
            },
            headers={"User-Agent": "pytest-agent"},
        )
        assert_pixel(resp)

        [event] = await buffer_store.pop_batch(site.id, 10)
        assert event["pageUrl"] == "https://ex.com/pricing"
        assert event["eventType"] == "page_view"
        assert event["referrer"] == "https://google.com"
        assert event["userAgent"] == "pytest-agent"
        assert event["eventData"]["title"] == "Pricing"
        assert event["eventData"]["screenWidth"] == 1280

        [page] = await _pages(session_factory, site.id)
        assert page.url == "https://ex.com/pricing"
        assert page.title == "Pricing"
        assert page.last_seen_at is not None

    async def test_repeat_view_updates_existing_page(self, client, session_factory, site):
        path = f"/api/v2/tracker/{site.tracker_id}/track"
        await client.post(path, json={"url": "https://ex.com/a", "title": "Old"})
        await client.post(path, json={"pageUrl": "https://ex.com/a/", "title": "New"})

        [page] = await _pages(session_factory, site.id)
        assert page.title == "New"

    async def test_custom_event_type(self, client, buffer_store, site):
        await client.post(
            f"/api/v2/tracker/{site.tracker_id}/track",
            json={"url": "https://ex.com/a", "eventType": "page_unload", "eventData": {"timeOnPage": 12}},
        )
        [event] = await buffer_store.pop_batch(site.id, 10)
        assert event["eventType"] == "page_unload"
        assert event["eventData"]["timeOnPage"] == 12

    async def test_pixel_gif_query_params(self, client, buffer_store, session_factory, site):
        resp = await client.get(
            f"/api/v2/tracker/{site.tracker_id}/pixel.gif",
            params={"url": "https://ex.com/b", "title": "B", "referrer": "https://bing.com"},
        )
        assert_pixel(resp)

        [event] = await buffer_store.pop_batch(site.id, 10)
        assert event["pageUrl"] == "https://ex.com/b"
        assert event["referrer"] == "https://bing.com"
        [page] = await _pages(session_factory, site.id)
        assert page.title == "B"

    async def test_pixel_gif_without_params(self, client, buffer_store, site):
        resp = await client.get(f"/api/v2/tracker/{site.tracker_id}/pixel.gif")
        assert_pixel(resp)
        assert await buffer_store.buffered_count(site.id) == 0


class TestTrackerScript:
    async def test_script_for_known_tracker(self, client, site):
        resp = await client.get(f"/api/v2/tracker/{site.tracker_id}/script.js")

        assert resp.status_code == 200
        assert resp.headers["Content-Type"].startswith("application/javascript")
        assert resp.headers["Cache-Control"] == "public, max-age=3600"
        assert site.tracker_id in resp.text
        assert "/api/v2/tracker/" in resp.text

    async def test_script_unknown_tracker(self, client):
        resp = await client.get(f"/api/v2/tracker/{uuid.uuid4()}/script.js")
        assert resp.status_code == 404
