"""
Clever Search Tracker — Configuration via environment variables.
"""

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

DEFAULT_EVENT_PROCESSOR_INTERVAL_MS = 1000 * 60 * 60 * 5  # 5 hours


class Settings(BaseSettings):
    """All settings read from env / .env file."""

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./cleversearch.db",
        description="Async SQLAlchemy DB URL",
    )

    # Buffer store (Redis). Blank URL + blank host → in-process memory buffer.
    redis_url: str = Field(default="", description="redis:// URL for the event buffer")
    redis_host: str = Field(default="")
    redis_port: int = Field(default=6379)
    redis_password: str = Field(default="")

    # Event processor
    event_processor_interval_ms: int = Field(
        default=DEFAULT_EVENT_PROCESSOR_INTERVAL_MS,
        description="Milliseconds between buffer drain cycles",
    )
    event_processor_enabled: bool = Field(default=True)
    event_batch_size: int = Field(default=100, ge=1, le=10_000)

    # Tracker
    tracker_content_cache_ttl: int = Field(
        default=300, description="Seconds a /content response stays cached"
    )
    api_base_url: str = Field(
        default="http://localhost:8000",
        description="Public API origin baked into the generated tracker script",
    )

    # Admin endpoints (blank = disabled)
    internal_api_key: str = Field(default="")

    cors_origins: list[str] = Field(default=["*"])

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    @field_validator("event_processor_interval_ms", mode="before")
    @classmethod
    def _interval_or_default(cls, value):
        """Non-numeric or non-positive intervals fall back to the default."""
        try:
            interval = int(float(value))
        except (TypeError, ValueError):
            return DEFAULT_EVENT_PROCESSOR_INTERVAL_MS
        if interval <= 0:
            return DEFAULT_EVENT_PROCESSOR_INTERVAL_MS
        return interval

    @property
    def redis_effective_url(self) -> str:
        """Resolve the Redis URL from REDIS_URL or host/port/password."""
        if self.redis_url:
            return self.redis_url
        if not self.redis_host:
            return ""
        auth = f":{self.redis_password}@" if self.redis_password else ""
        return f"redis://{auth}{self.redis_host}:{self.redis_port}/0"


settings = Settings()
