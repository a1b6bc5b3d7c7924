"""
Clever Search Tracker — Content deployment model.

Rows are written by the dashboard when a user deploys an AI-generated
improvement. The tracker only ever reads the active ones.
"""

import uuid

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import relationship

from cleversearch.database import Base


class ContentDeployment(Base):
    """One deployed content fragment (title, description, faq, keywords…) for a page."""
    __tablename__ = "content_deployments"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    page_id = Column(String(36), ForeignKey("pages.id", ondelete="CASCADE"), nullable=False)

    section_type = Column(String(64), nullable=False)     # "title", "description", "faq", "keywords"
    deployed_content = Column(Text, nullable=False)

    previous_score = Column(Float, nullable=True)
    new_score = Column(Float, nullable=True)
    ai_model = Column(String(128), nullable=True)
    deployed_by = Column(String(255), nullable=True)

    status = Column(String(32), nullable=False, default="deployed")   # deployed | draft | archived
    is_active = Column(Boolean, nullable=False, default=True)         # False once superseded
    version = Column(Integer, nullable=False, default=1)

    deployed_at = Column(DateTime(timezone=True), server_default=func.now())
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    page = relationship("Page", back_populates="deployments")

    __table_args__ = (
        Index("ix_content_page_section_active", "page_id", "section_type", "is_active"),
    )

    def __repr__(self):
        state = "active" if self.is_active else "inactive"
        return f"<ContentDeployment {self.section_type} v{self.version} ({state})>"
