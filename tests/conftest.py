"""
Shared test fixtures — async DB, memory buffer, event processor, FastAPI test client.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("EVENT_PROCESSOR_ENABLED", "false")
os.environ.setdefault("INTERNAL_API_KEY", "test-internal-key")

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker

from cleversearch.database import Base, get_db
from cleversearch.main import app
from cleversearch.models.content import ContentDeployment
from cleversearch.models.site import Page, Site
from cleversearch.services.buffer_store import MemoryBufferStore
from cleversearch.services.event_processor import EventProcessor

INTERNAL_KEY = os.environ["INTERNAL_API_KEY"]


# ── Test Database (SQLite file per test) ────────────────

@pytest_asyncio.fixture()
async def db_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture()
async def session_factory(db_engine):
    return async_sessionmaker(db_engine, expire_on_commit=False)


@pytest_asyncio.fixture()
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


# ── Buffer + Processor ──────────────────────────────────

@pytest.fixture
def buffer_store():
    return MemoryBufferStore()


@pytest.fixture
def processor(buffer_store, session_factory):
    return EventProcessor(buffer_store, session_factory, interval_ms=60_000, batch_size=100)


# ── FastAPI client ──────────────────────────────────────

@pytest_asyncio.fixture()
async def client(session_factory, buffer_store, processor):
    """FastAPI test client with test DB, memory buffer and processor injected."""

    async def _override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _override_get_db
    # ASGITransport does not run the lifespan hook
    app.state.buffer_store = buffer_store
    app.state.event_processor = processor

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    await processor.stop()
    app.dependency_overrides.clear()
    del app.state.buffer_store
    del app.state.event_processor


@pytest.fixture
def admin_headers():
    return {"X-Internal-Api-Key": INTERNAL_KEY}


# ── Sample data ─────────────────────────────────────────

@pytest_asyncio.fixture()
async def site(db_session):
    s = Site(user_id="user_123", name="Example Co", url="https://ex.com")
    db_session.add(s)
    await db_session.commit()
    await db_session.refresh(s)
    return s


@pytest_asyncio.fixture()
async def other_site(db_session):
    s = Site(user_id="user_456", name="Other Co", url="https://other.example")
    db_session.add(s)
    await db_session.commit()
    await db_session.refresh(s)
    return s


@pytest_asyncio.fixture()
async def page_with_content(db_session, site):
    """Page with two live fragments, one rolled back and one deactivated."""
    page = Page(site_id=site.id, url="https://ex.com/a", title="Page A")
    db_session.add(page)
    await db_session.flush()

    base = datetime(2025, 1, 1, tzinfo=timezone.utc)
    db_session.add_all([
        ContentDeployment(
            page_id=page.id, section_type="faq", deployed_content="<faq/>",
            deployed_at=base + timedelta(hours=2),
        ),
        ContentDeployment(
            page_id=page.id, section_type="title", deployed_content="Better Title",
            deployed_at=base,
        ),
        ContentDeployment(
            page_id=page.id, section_type="description", deployed_content="Old description",
            status="rolled_back", deployed_at=base + timedelta(hours=1),
        ),
        ContentDeployment(
            page_id=page.id, section_type="keywords", deployed_content="a, b",
            is_active=False, deployed_at=base + timedelta(hours=3),
        ),
    ])
    await db_session.commit()
    return page
