"""
Clever Search Tracker — Event buffer & counter store.

Per-site FIFO buffers of raw tracking events, rate-limit counters and a
small JSON cache, all behind one async contract so the tracker routes
(producer) and the event processor (consumer) never talk to each other
directly.

Two implementations:

* ``RedisBufferStore`` — production. One Redis list per site
  (``tracker_events:<site_id>``), RPUSH on ingest, LRANGE + LTRIM on drain.
* ``MemoryBufferStore`` — single-process dev / tests. Same semantics on
  top of ``collections.deque``.

Producers append at the tail and the single consumer trims from the head,
so a drain can never trim an event that arrived after its read.
"""

import asyncio
import json
import logging
import math
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

from redis import asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

EVENTS_PREFIX = "tracker_events"
RATE_LIMIT_PREFIX = "rate_limit"


class BufferStoreError(Exception):
    """The buffer store is unreachable or rejected an operation."""


@dataclass(frozen=True)
class RateLimitVerdict:
    allowed: bool
    count: int
    limit: int
    remaining: int
    reset_time: int  # epoch milliseconds

    @property
    def retry_after(self) -> int:
        """Whole seconds until the window resets (at least 1)."""
        return max(1, math.ceil((self.reset_time - now_ms()) / 1000))


class BufferAppender(Protocol):
    """Producer side — what the tracker endpoints need."""

    async def append(self, site_id: str, event: dict) -> None: ...


class BatchDrainer(Protocol):
    """Consumer side — what the event processor needs."""

    async def pop_batch(self, site_id: str, max_count: int) -> list[dict]: ...

    async def remove_batch(self, site_id: str, count: int) -> None: ...


def now_ms() -> int:
    return int(time.time() * 1000)


def events_key(site_id: str) -> str:
    return f"{EVENTS_PREFIX}:{site_id}"


def rate_limit_key(key: str) -> str:
    return f"{RATE_LIMIT_PREFIX}:{key}"


def encode_event(event: dict) -> str:
    return json.dumps(
        {**event, "bufferedAt": now_ms()},
        default=str,
    )


def decode_event(raw: str) -> dict:
    """Decode one buffered entry. Corrupt entries become ``{}`` (invalid, skipped)."""
    try:
        value = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        logger.warning("Dropping undecodable buffered event (%d bytes)", len(raw or ""))
        return {}
    return value if isinstance(value, dict) else {}


class BufferStore(ABC):
    """Async contract shared by every buffer backend."""

    @abstractmethod
    async def append(self, site_id: str, event: dict) -> None:
        """Append one event to the tail of the site's buffer."""

    @abstractmethod
    async def pop_batch(self, site_id: str, max_count: int) -> list[dict]:
        """Read up to ``max_count`` events from the head without removing them.

        The returned list always has one entry per buffered item read, so
        ``len(batch)`` is the exact count to pass to ``remove_batch``.
        """

    @abstractmethod
    async def remove_batch(self, site_id: str, count: int) -> None:
        """Drop ``count`` events from the head — the drain's commit point."""

    @abstractmethod
    async def buffered_count(self, site_id: str) -> int:
        ...

    @abstractmethod
    async def increment_and_check(
        self, key: str, limit: int, window_seconds: int
    ) -> RateLimitVerdict:
        """Atomically bump the counter for ``key`` and report the verdict."""

    @abstractmethod
    async def decrement(self, key: str) -> None:
        """Refund one hit on a live counter (no-op once the window expired)."""

    @abstractmethod
    async def get_json(self, key: str) -> Optional[Any]:
        ...

    @abstractmethod
    async def set_json(self, key: str, value: Any, ttl: int) -> None:
        ...

    @abstractmethod
    async def ping(self) -> bool:
        ...

    async def close(self) -> None:
        return None


# ─────────────────────────────────────────────────────────────────────
# Redis
# ─────────────────────────────────────────────────────────────────────

class RedisBufferStore(BufferStore):
    """Redis-backed buffer with a pooled asyncio client."""

    def __init__(self, url: str, max_connections: int = 20):
        self.url = url
        self.client = aioredis.from_url(
            url,
            max_connections=max_connections,
            decode_responses=True,
            socket_timeout=5,
            socket_connect_timeout=5,
            retry_on_timeout=True,
        )

    async def append(self, site_id: str, event: dict) -> None:
        try:
            await self.client.rpush(events_key(site_id), encode_event(event))
        except (RedisError, OSError) as e:
            raise BufferStoreError(f"append to {site_id} failed: {e}") from e
        logger.debug("📊 Event buffered for site %s", site_id)

    async def pop_batch(self, site_id: str, max_count: int) -> list[dict]:
        if max_count <= 0:
            return []
        try:
            raw = await self.client.lrange(events_key(site_id), 0, max_count - 1)
        except (RedisError, OSError) as e:
            raise BufferStoreError(f"read from {site_id} failed: {e}") from e
        return [decode_event(item) for item in raw]

    async def remove_batch(self, site_id: str, count: int) -> None:
        if count <= 0:
            return
        try:
            await self.client.ltrim(events_key(site_id), count, -1)
        except (RedisError, OSError) as e:
            raise BufferStoreError(f"trim of {site_id} failed: {e}") from e

    async def buffered_count(self, site_id: str) -> int:
        try:
            return int(await self.client.llen(events_key(site_id)))
        except (RedisError, OSError) as e:
            raise BufferStoreError(f"length of {site_id} failed: {e}") from e

    async def increment_and_check(
        self, key: str, limit: int, window_seconds: int
    ) -> RateLimitVerdict:
        redis_key = rate_limit_key(key)
        window_ms = window_seconds * 1000
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                count, ttl_ms = await pipe.incr(redis_key).pttl(redis_key).execute()
            if ttl_ms is None or ttl_ms < 0:
                await self.client.pexpire(redis_key, window_ms)
                ttl_ms = window_ms
        except (RedisError, OSError) as e:
            raise BufferStoreError(f"rate limit check for {key} failed: {e}") from e

        count = int(count)
        return RateLimitVerdict(
            allowed=count <= limit,
            count=count,
            limit=limit,
            remaining=max(0, limit - count),
            reset_time=now_ms() + int(ttl_ms),
        )

    async def decrement(self, key: str) -> None:
        redis_key = rate_limit_key(key)
        try:
            if await self.client.pttl(redis_key) > 0:
                await self.client.decr(redis_key)
        except (RedisError, OSError) as e:
            raise BufferStoreError(f"refund for {key} failed: {e}") from e

    async def get_json(self, key: str) -> Optional[Any]:
        try:
            raw = await self.client.get(key)
        except (RedisError, OSError) as e:
            raise BufferStoreError(f"GET {key} failed: {e}") from e
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return None

    async def set_json(self, key: str, value: Any, ttl: int) -> None:
        try:
            await self.client.set(key, json.dumps(value, default=str), ex=ttl)
        except (RedisError, OSError) as e:
            raise BufferStoreError(f"SET {key} failed: {e}") from e

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except (RedisError, OSError):
            return False

    async def close(self) -> None:
        await self.client.aclose()


# ─────────────────────────────────────────────────────────────────────
# In-process memory
# ─────────────────────────────────────────────────────────────────────

class MemoryBufferStore(BufferStore):
    """Deque-per-site buffer for a single process. Lost on restart."""

    def __init__(self):
        self._queues: dict[str, deque[str]] = {}
        self._counters: dict[str, tuple[int, float]] = {}   # key → (count, expires_at monotonic)
        self._cache: dict[str, tuple[str, float]] = {}
        self._lock = asyncio.Lock()

    async def append(self, site_id: str, event: dict) -> None:
        self._queues.setdefault(site_id, deque()).append(encode_event(event))
        logger.debug("📊 Event buffered for site %s (depth %d)", site_id, len(self._queues[site_id]))

    async def pop_batch(self, site_id: str, max_count: int) -> list[dict]:
        queue = self._queues.get(site_id)
        if not queue or max_count <= 0:
            return []
        return [decode_event(queue[i]) for i in range(min(max_count, len(queue)))]

    async def remove_batch(self, site_id: str, count: int) -> None:
        queue = self._queues.get(site_id)
        if not queue:
            return
        for _ in range(min(count, len(queue))):
            queue.popleft()

    async def buffered_count(self, site_id: str) -> int:
        return len(self._queues.get(site_id, ()))

    async def increment_and_check(
        self, key: str, limit: int, window_seconds: int
    ) -> RateLimitVerdict:
        async with self._lock:
            now = time.monotonic()
            count, expires_at = self._counters.get(key, (0, 0.0))
            if expires_at <= now:
                count, expires_at = 0, now + window_seconds
            count += 1
            self._counters[key] = (count, expires_at)

        return RateLimitVerdict(
            allowed=count <= limit,
            count=count,
            limit=limit,
            remaining=max(0, limit - count),
            reset_time=now_ms() + int((expires_at - now) * 1000),
        )

    async def decrement(self, key: str) -> None:
        async with self._lock:
            count, expires_at = self._counters.get(key, (0, 0.0))
            if expires_at > time.monotonic() and count > 0:
                self._counters[key] = (count - 1, expires_at)

    async def get_json(self, key: str) -> Optional[Any]:
        entry = self._cache.get(key)
        if not entry:
            return None
        raw, expires_at = entry
        if expires_at <= time.monotonic():
            self._cache.pop(key, None)
            return None
        return json.loads(raw)

    async def set_json(self, key: str, value: Any, ttl: int) -> None:
        self._cache[key] = (json.dumps(value, default=str), time.monotonic() + ttl)

    async def ping(self) -> bool:
        return True


def create_buffer_store(redis_url: str = "") -> BufferStore:
    """Build the buffer backend for the configured Redis URL (blank → memory)."""
    if redis_url:
        logger.info("🔴 Event buffer: Redis (%s)", redis_url.split("@")[-1])
        return RedisBufferStore(redis_url)
    logger.info("ℹ️ Event buffer: in-process memory (no REDIS_URL configured)")
    return MemoryBufferStore()


def utc_iso(epoch_ms: int) -> str:
    """Epoch milliseconds → ISO-8601 UTC string (``X-RateLimit-Reset`` format)."""
    return datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc).isoformat()
