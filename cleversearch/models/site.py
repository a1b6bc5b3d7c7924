"""
Clever Search Tracker — Site and Page models.

A Site owns a public ``tracker_id`` that the embedded script sends with
every beacon. Pages are the URLs the tracker has seen (or the crawler has
imported) for that site.
"""

import uuid

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Index,
    String,
    func,
)
from sqlalchemy.orm import relationship

from cleversearch.database import Base


class Site(Base):
    """A customer website. Ownership and lifecycle are managed by the dashboard."""
    __tablename__ = "sites"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(255), nullable=False)
    name = Column(String(255), nullable=False)
    url = Column(String(512), nullable=False)

    # Public identifier embedded in the tracker snippet
    tracker_id = Column(
        String(36), nullable=False, unique=True, default=lambda: str(uuid.uuid4())
    )

    status = Column(String(32), nullable=False, default="active")
    settings = Column(JSON, default=dict)

    deleted_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    pages = relationship("Page", back_populates="site", cascade="all, delete-orphan")

    __table_args__ = (
        Index("ix_sites_user_id", "user_id"),
    )

    def __repr__(self):
        return f"<Site {self.name} tracker={self.tracker_id}>"


class Page(Base):
    """A single URL on a site. Content deployments hang off pages."""
    __tablename__ = "pages"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    site_id = Column(String(36), ForeignKey("sites.id", ondelete="CASCADE"), nullable=False)
    url = Column(String(1024), nullable=False)
    title = Column(String(512), nullable=True)

    # Last time the tracker reported a view of this URL
    last_seen_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    site = relationship("Site", back_populates="pages")
    deployments = relationship(
        "ContentDeployment", back_populates="page", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_pages_site_url", "site_id", "url", unique=True),
    )

    def __repr__(self):
        return f"<Page {self.url}>"
