"""
Tests for tracker service helpers — URL handling, lookups, event shaping.
"""

import uuid

import pytest

from cleversearch.models.site import Page
from cleversearch.services.tracker_service import (
    build_tracking_event,
    content_cache_key,
    find_page,
    get_active_fragments,
    get_site_by_tracker_id,
    is_absolute_http_url,
    is_valid_tracker_id,
    normalize_url,
    render_tracker_script,
    upsert_page,
)


class TestUrlHelpers:
    @pytest.mark.parametrize("raw,expected", [
        ("https://Ex.com/Path/", "https://ex.com/Path"),
        ("HTTPS://EX.COM/a?Q=Yes", "https://ex.com/a?Q=Yes"),
        ("https://ex.com/a?b=1", "https://ex.com/a?b=1"),
        ("https://ex.com/", "https://ex.com"),
        ("not a url/", "not a url"),
    ])
    def test_normalize_url(self, raw, expected):
        assert normalize_url(raw) == expected

    def test_cache_key_ignores_trailing_slash(self):
        assert content_cache_key("t", "https://ex.com/a/") == content_cache_key("t", "https://ex.com/a")

    def test_cache_key_keeps_path_case(self):
        assert content_cache_key("t", "https://ex.com/A") != content_cache_key("t", "https://ex.com/a")
        assert content_cache_key("t", "https://EX.com/a") == content_cache_key("t", "https://ex.com/a")

    @pytest.mark.parametrize("value,ok", [
        ("https://ex.com", True),
        ("http://ex.com/a?b=c", True),
        ("ftp://ex.com", False),
        ("/relative", False),
        ("", False),
        (None, False),
    ])
    def test_is_absolute_http_url(self, value, ok):
        assert is_absolute_http_url(value) is ok

    def test_tracker_id_format(self):
        assert is_valid_tracker_id(str(uuid.uuid4()))
        assert not is_valid_tracker_id("abc")


class TestLookups:
    async def test_site_by_tracker_id(self, db_session, site):
        assert (await get_site_by_tracker_id(db_session, site.tracker_id)).id == site.id
        assert await get_site_by_tracker_id(db_session, str(uuid.uuid4())) is None
        assert await get_site_by_tracker_id(db_session, "garbage") is None

    async def test_find_page_slash_variants(self, db_session, site):
        db_session.add_all([
            Page(site_id=site.id, url="https://ex.com/with-slash/"),
            Page(site_id=site.id, url="https://ex.com/no-slash"),
        ])
        await db_session.commit()

        assert (await find_page(db_session, site.id, "https://ex.com/with-slash")).url == "https://ex.com/with-slash/"
        assert (await find_page(db_session, site.id, "https://ex.com/no-slash/")).url == "https://ex.com/no-slash"
        assert await find_page(db_session, site.id, "https://ex.com/other") is None

    async def test_active_fragments(self, db_session, page_with_content):
        items = await get_active_fragments(db_session, page_with_content.id)
        assert [(i["type"], i["content"]) for i in items] == [("title", "Better Title"), ("faq", "<faq/>")]

    async def test_upsert_page_creates_then_updates(self, db_session, site):
        created = await upsert_page(db_session, site.id, "https://ex.com/new", "First")
        assert created.title == "First"
        first_seen = created.last_seen_at

        updated = await upsert_page(db_session, site.id, "https://ex.com/new/", "Second")
        assert updated.id == created.id
        assert updated.title == "Second"
        assert updated.last_seen_at >= first_seen


class TestEventShape:
    def test_defaults_and_truncation(self):
        event = build_tracking_event("site-1", "https://ex.com/" + "a" * 2000, "page_view",
                                     ip_address="1" * 60)
        assert event["siteId"] == "site-1"
        assert len(event["pageUrl"]) == 1024
        assert event["eventData"] == {}
        assert event["userAgent"] == "unknown"
        assert len(event["ipAddress"]) == 45
        assert event["referrer"] == ""
        assert event["timestamp"]

    def test_keeps_client_timestamp(self):
        event = build_tracking_event("s", "https://ex.com", "page_view", timestamp="2025-01-01T00:00:00Z")
        assert event["timestamp"] == "2025-01-01T00:00:00Z"


class TestScript:
    def test_script_embeds_tracker_and_base(self):
        js = render_tracker_script("abc-123", "https://api.example.com/")
        assert "var trackerId = 'abc-123';" in js
        assert "var apiUrl = 'https://api.example.com';" in js
        assert "pixel.gif" in js
