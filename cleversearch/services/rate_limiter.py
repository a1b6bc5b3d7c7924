"""
Clever Search Tracker — Request rate limiting.

Fixed-window counters kept in the buffer store, exposed as FastAPI
dependencies::

    @router.post("/{trackerId}/data", dependencies=[Depends(tracker_rate_limit)])

Every limited request gets ``X-RateLimit-Limit`` / ``-Remaining`` /
``-Reset`` headers, admitted or not. If the counting store is down the
limiter fails open: the request goes through and the outage is logged.
"""

import inspect
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Union

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from cleversearch.services.buffer_store import (
    BufferStore,
    BufferStoreError,
    RateLimitVerdict,
    now_ms,
    utc_iso,
)

logger = logging.getLogger("tracker.rate_limit")

KeyFunc = Callable[[Request], Union[str, Awaitable[str]]]


def client_ip(request: Request) -> str:
    """First hop of X-Forwarded-For, else the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def _user_or_ip(request: Request) -> str:
    return request.headers.get("x-user-id") or client_ip(request)


@dataclass
class RateLimitState:
    """What the header middleware needs to finish the job after the handler ran."""
    headers: dict[str, str]
    remaining: int
    store: Optional[BufferStore] = None
    refund_keys: list[str] = field(default_factory=list)


class RateLimitExceeded(Exception):
    def __init__(self, name: str, limit: int, window_seconds: int, retry_after: int,
                 headers: dict[str, str]):
        self.name = name
        self.limit = limit
        self.window_seconds = window_seconds
        self.retry_after = retry_after
        self.headers = headers
        super().__init__(f"{name}: more than {limit} requests per {window_seconds}s")


class RateLimit:
    """One named limit: ``max_requests`` per ``window_seconds`` per key."""

    def __init__(
        self,
        name: str,
        window_seconds: int,
        max_requests: int,
        key_func: Optional[KeyFunc] = None,
        skip_successful_requests: bool = False,
    ):
        self.name = name
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self.key_func = key_func or (lambda req: f"{client_ip(req)}:{req.url.path}")
        self.skip_successful_requests = skip_successful_requests

    def _headers(self, remaining: int, reset_time: int) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.max_requests),
            "X-RateLimit-Remaining": str(remaining),
            "X-RateLimit-Reset": utc_iso(reset_time),
        }

    async def _resolve_key(self, request: Request) -> str:
        key = self.key_func(request)
        if inspect.isawaitable(key):
            key = await key
        return key

    async def check(self, store: Optional[BufferStore], key: str) -> Optional[RateLimitVerdict]:
        """Count one hit. ``None`` means the store could not answer."""
        if store is None:
            logger.error("Rate limit %s: no buffer store configured — failing open", self.name)
            return None
        try:
            return await store.increment_and_check(key, self.max_requests, self.window_seconds)
        except BufferStoreError as e:
            logger.error("Rate limit %s: store error for %s — failing open: %s", self.name, key, e)
            return None

    async def __call__(self, request: Request) -> None:
        store = getattr(request.app.state, "buffer_store", None)
        key = await self._resolve_key(request)
        verdict = await self.check(store, key)

        if verdict is None:
            remaining = self.max_requests
            headers = self._headers(remaining, now_ms() + self.window_seconds * 1000)
        else:
            remaining = verdict.remaining
            headers = self._headers(remaining, verdict.reset_time)

        self._record(request, headers, remaining, store, key if verdict and self.skip_successful_requests else None)

        if verdict is not None and not verdict.allowed:
            logger.warning(
                "🚫 Rate limit %s exceeded for %s: %d requests per %ds",
                self.name, key, self.max_requests, self.window_seconds,
            )
            raise RateLimitExceeded(
                self.name, self.max_requests, self.window_seconds, verdict.retry_after, headers,
            )

    @staticmethod
    def _record(request: Request, headers: dict[str, str], remaining: int,
                store: Optional[BufferStore], refund_key: Optional[str]) -> None:
        """Keep the tightest limit's headers when several limits guard one route."""
        state: Optional[RateLimitState] = getattr(request.state, "rate_limit", None)
        if state is None:
            state = RateLimitState(headers=headers, remaining=remaining, store=store)
            request.state.rate_limit = state
        elif remaining <= state.remaining:
            state.headers = headers
            state.remaining = remaining
        if refund_key:
            state.store = store
            state.refund_keys.append(refund_key)


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={
            "error": "Rate limit exceeded",
            "message": (
                f"Too many requests. Limit: {exc.limit} per "
                f"{exc.window_seconds * 1000}ms"
            ),
            "retryAfter": exc.retry_after,
        },
        headers={**exc.headers, "Retry-After": str(exc.retry_after)},
    )


def install_rate_limiting(app: FastAPI) -> None:
    """Register the 429 handler and the middleware that stamps X-RateLimit-* headers."""
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

    @app.middleware("http")
    async def apply_rate_limit_headers(request: Request, call_next):
        request.state.rate_limit = None
        response = await call_next(request)

        state: Optional[RateLimitState] = getattr(request.state, "rate_limit", None)
        if state is None:
            return response

        for name, value in state.headers.items():
            response.headers[name] = value

        # Success-exempt limits (auth) only count failures
        if state.refund_keys and state.store is not None and response.status_code < 400:
            for key in state.refund_keys:
                try:
                    await state.store.decrement(key)
                except BufferStoreError as e:
                    logger.error("Rate limit refund for %s failed: %s", key, e)
        return response


# ─────────────────────────────────────────────────────────────────────
# Named limits
# ─────────────────────────────────────────────────────────────────────

# Tracker beacons: high volume, per IP
tracker_rate_limit = RateLimit(
    "tracker",
    window_seconds=60,
    max_requests=1000,
    key_func=lambda req: f"tracker:{client_ip(req)}",
)

# Dashboard API: per user (falls back to IP)
dashboard_rate_limit = RateLimit(
    "dashboard",
    window_seconds=15 * 60,
    max_requests=1000,
    key_func=lambda req: f"dashboard:{_user_or_ip(req)}",
)

# Login / token attempts: only failures count
auth_rate_limit = RateLimit(
    "auth",
    window_seconds=15 * 60,
    max_requests=10,
    key_func=lambda req: f"auth:{client_ip(req)}",
    skip_successful_requests=True,
)

# Sitemap import
sitemap_import_rate_limit = RateLimit(
    "sitemap_import",
    window_seconds=60 * 60,
    max_requests=5,
    key_func=lambda req: f"sitemap:{_user_or_ip(req)}",
)

# AI analysis
analysis_rate_limit = RateLimit(
    "analysis",
    window_seconds=60 * 60,
    max_requests=100,
    key_func=lambda req: f"analysis:{_user_or_ip(req)}",
)

# v2 tracker beacons (POST /track and the pixel.gif fallback), per ip:path
tracker_beacon_rate_limit = RateLimit("tracker_beacon", window_seconds=15 * 60, max_requests=10_000)

# v2 tracker script download, per ip:path
tracker_script_rate_limit = RateLimit("tracker_script", window_seconds=15 * 60, max_requests=1000)

# Catch-all per IP
general_rate_limit = RateLimit(
    "general",
    window_seconds=15 * 60,
    max_requests=10_000,
    key_func=lambda req: f"general:{client_ip(req)}",
)


async def _tracker_id_key(request: Request) -> str:
    tracker_id = request.path_params.get("trackerId")
    if not tracker_id and request.method in ("POST", "PUT"):
        try:
            body = await request.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            tracker_id = body.get("trackerId")
    return f"tracker_specific:{tracker_id or 'unknown'}"


def tracker_specific_rate_limit(max_requests_per_minute: int = 500) -> RateLimit:
    """Per-tracker limit: one noisy customer site can't starve the others."""
    return RateLimit(
        "tracker_specific",
        window_seconds=60,
        max_requests=max_requests_per_minute,
        key_func=_tracker_id_key,
    )
