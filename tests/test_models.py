"""
Tests for SQLAlchemy models — defaults and uniqueness.
"""

import uuid

import pytest
from sqlalchemy.exc import IntegrityError

from cleversearch.models.site import Page, Site
from cleversearch.models.tracking import PageAnalytics


class TestSite:
    async def test_defaults(self, db_session):
        site = Site(user_id="u1", name="Acme", url="https://acme.test")
        db_session.add(site)
        await db_session.commit()

        assert uuid.UUID(site.tracker_id)
        assert site.status == "active"
        assert site.deleted_at is None

    async def test_tracker_id_unique(self, db_session, site):
        db_session.add(Site(user_id="u2", name="Clone", url="https://clone.test", tracker_id=site.tracker_id))
        with pytest.raises(IntegrityError):
            await db_session.commit()


class TestPage:
    async def test_site_url_unique(self, db_session, site):
        db_session.add(Page(site_id=site.id, url="https://ex.com/a"))
        await db_session.commit()

        db_session.add(Page(site_id=site.id, url="https://ex.com/a"))
        with pytest.raises(IntegrityError):
            await db_session.commit()

    async def test_same_url_on_different_sites(self, db_session, site, other_site):
        db_session.add_all([
            Page(site_id=site.id, url="https://shared.test/"),
            Page(site_id=other_site.id, url="https://shared.test/"),
        ])
        await db_session.commit()


class TestPageAnalytics:
    async def test_one_row_per_site_url_day(self, db_session, site):
        db_session.add(PageAnalytics(site_id=site.id, page_url="https://ex.com/a", visit_date="2025-01-01"))
        await db_session.commit()

        db_session.add(PageAnalytics(site_id=site.id, page_url="https://ex.com/a", visit_date="2025-01-01"))
        with pytest.raises(IntegrityError):
            await db_session.commit()

    async def test_defaults(self, db_session, site):
        row = PageAnalytics(site_id=site.id, page_url="https://ex.com/a", visit_date="2025-01-02")
        db_session.add(row)
        await db_session.commit()

        assert row.page_views == 0
        assert row.content_injected is False
        assert row.content_types_injected == []
        assert row.load_time_ms is None
