"""
Clever Search Tracker — Tracker event and daily page analytics models.

Both tables are written exclusively by the event processor while it
drains the per-site Redis buffers. ``tracker_data`` keeps one immutable
row per valid event; ``page_analytics`` folds page views into one row per
(site, page URL, day).
"""

import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    func,
)

from cleversearch.database import Base


class TrackerRecord(Base):
    """One ingested tracking event. Never updated or deleted here."""
    __tablename__ = "tracker_data"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    site_id = Column(String(36), ForeignKey("sites.id", ondelete="CASCADE"), nullable=False)

    page_url = Column(String(1024), nullable=False)
    event_type = Column(String(64), nullable=False)       # "page_view", "page_unload", "web_vital"…
    event_data = Column(JSON, default=dict)

    session_id = Column(String(255), nullable=True)
    anonymous_user_id = Column(String(255), nullable=True)
    user_agent = Column(String(500), default="unknown")
    ip_address = Column(String(45), default="unknown")    # IPv6 max length
    referrer = Column(String(1024), default="")

    timestamp = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("ix_tracker_data_site_ts", "site_id", "timestamp"),
    )

    def __repr__(self):
        return f"<TrackerRecord {self.event_type} {self.page_url}>"


class PageAnalytics(Base):
    """Daily aggregate for one page. At most one row per (site, URL, date)."""
    __tablename__ = "page_analytics"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    site_id = Column(String(36), ForeignKey("sites.id", ondelete="CASCADE"), nullable=False)
    page_url = Column(String(1024), nullable=False)

    # "YYYY-MM-DD" (UTC)
    visit_date = Column(String(10), nullable=False)

    page_views = Column(Integer, nullable=False, default=0)
    unique_visitors = Column(Integer, nullable=False, default=0)
    bounce_rate = Column(Float, nullable=True)
    avg_session_duration = Column(Integer, nullable=True)    # seconds
    load_time_ms = Column(Integer, nullable=True)

    # Sticky: once True for a day it never goes back to False
    content_injected = Column(Boolean, nullable=False, default=False)
    content_types_injected = Column(JSON, default=list)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("ix_page_analytics_key", "site_id", "page_url", "visit_date", unique=True),
        Index("ix_page_analytics_site_views", "site_id", "page_views"),
    )

    def __repr__(self):
        return (
            f"<PageAnalytics {self.page_url} {self.visit_date} "
            f"({self.page_views} views)>"
        )
