"""
Clever Search Tracker — Pydantic request/response schemas.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class EventType:
    PAGE_VIEW = "page_view"
    PAGE_UNLOAD = "page_unload"
    WEB_VITAL = "web_vital"
    ERROR = "error"


class TrackerDataRequest(BaseModel):
    """Body of the legacy ``POST /tracker/{trackerId}/data`` beacon."""

    page_url: str = Field(..., alias="pageUrl", min_length=1, max_length=1024)
    event_type: str = Field(..., alias="eventType", min_length=1, max_length=64)
    timestamp: str | None = None
    session_id: str | None = Field(None, alias="sessionId", max_length=255)
    anonymous_user_id: str | None = Field(None, alias="anonymousUserId", max_length=255)
    event_data: dict[str, Any] | None = Field(None, alias="eventData")
    referrer: str | None = Field(None, max_length=1024)
    user_agent: str | None = Field(None, alias="userAgent", max_length=500)
    screen_width: int | None = Field(None, alias="screenWidth", ge=0)

    model_config = {"populate_by_name": True}


class TrackingEvent(BaseModel):
    """What gets buffered per beacon (camelCase on the wire, as the script sends it)."""

    site_id: str = Field(..., alias="siteId")
    page_url: str = Field(..., alias="pageUrl")
    event_type: str = Field(..., alias="eventType")
    event_data: dict[str, Any] = Field(default_factory=dict, alias="eventData")
    session_id: str | None = Field(None, alias="sessionId")
    anonymous_user_id: str | None = Field(None, alias="anonymousUserId")
    user_agent: str = Field("unknown", alias="userAgent")
    ip_address: str = Field("unknown", alias="ipAddress")
    referrer: str = ""
    timestamp: str

    model_config = {"populate_by_name": True}

    def to_buffer(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class ContentItem(BaseModel):
    id: str
    type: str
    content: str


class ProcessorStats(BaseModel):
    is_processing: bool
    is_running: bool
    interval_ms: int
    batch_size: int
    last_report: dict | None = None


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str = "1.0.0"
    timestamp: str | None = None
    database: str = "connected"
    buffer_store: str = "connected"
    event_processor: ProcessorStats | None = None


class DrainReportResponse(BaseModel):
    sites: int
    processed: int
    skipped: int
    failed_sites: list[str] = []
    duration_ms: int
    finished_at: datetime | None = None
