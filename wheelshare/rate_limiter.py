"""
Rate Limiting for the public share endpoint

Anyone can call GET /api/public/s/{shortCode}, so it is the only route that
is throttled: PUBLIC_ACCESS_RATE_LIMIT requests per minute per client IP
(sliding window). Short codes carry ~46 bits and keys 256, so this is about
keeping scrapers off the store, not about guessing resistance.

Usage:
    from .rate_limiter import public_access_rate_limit

    @router.get("/public/s/{short_code}", dependencies=[Depends(public_access_rate_limit)])
    async def access(...):
        ...
"""

import logging
import time
from collections import defaultdict, deque
from typing import Deque, Dict, Optional, Tuple

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)


class RateLimitExceeded(Exception):
    """Rendered as 429 with Retry-After and X-RateLimit-* headers."""

    def __init__(self, limit: int, window_seconds: int, retry_after: int, reset_time: int):
        self.limit = limit
        self.window_seconds = window_seconds
        self.retry_after = retry_after
        self.reset_time = reset_time
        super().__init__(f"Too many requests. Limit: {limit} per {window_seconds}s")

    @property
    def headers(self) -> Dict[str, str]:
        return {
            "Retry-After": str(self.retry_after),
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": str(self.reset_time),
        }


# ────────────────────────────────────────────────────────────────
# In-Memory Rate Limiter
# ────────────────────────────────────────────────────────────────

class RateLimiter:
    """
    Sliding-window counter per (client IP, endpoint).

    Process local; with several workers each one enforces the limit on its
    own share of the traffic.
    """

    def __init__(self, cleanup_interval: int = 300):
        self.requests: Dict[Tuple[str, str], Deque[float]] = defaultdict(deque)
        self.cleanup_interval = cleanup_interval
        self.last_cleanup = time.time()

    @staticmethod
    def client_ip(request: Request) -> str:
        """First X-Forwarded-For hop when behind a proxy, else the socket peer."""
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()
        if request.client:
            return request.client.host
        return "unknown"

    def _cleanup(self, now: float, window_seconds: int) -> None:
        if now - self.last_cleanup < self.cleanup_interval:
            return
        cutoff = now - window_seconds
        for key in list(self.requests.keys()):
            hits = self.requests[key]
            while hits and hits[0] <= cutoff:
                hits.popleft()
            if not hits:
                del self.requests[key]
        self.last_cleanup = now
        logger.debug(f"[RATE_LIMIT] Cleanup: {len(self.requests)} clients tracked")

    def hit(self, client: str, endpoint: str, max_requests: int, window_seconds: int = 60) -> dict:
        """
        Record one request, or raise RateLimitExceeded if the window is full.

        Returns the limit metadata used for the X-RateLimit-* headers.
        """
        now = time.time()
        self._cleanup(now, window_seconds)

        hits = self.requests[(client, endpoint)]
        window_start = now - window_seconds
        while hits and hits[0] <= window_start:
            hits.popleft()

        reset_time = int((hits[0] if hits else now) + window_seconds)
        if len(hits) >= max_requests:
            retry_after = max(1, reset_time - int(now))
            logger.warning(
                f"[RATE_LIMIT] Blocked request from {client} to {endpoint}: "
                f"{len(hits)}/{max_requests} in {window_seconds}s window"
            )
            raise RateLimitExceeded(max_requests, window_seconds, retry_after, reset_time)

        hits.append(now)
        return {
            "limit": max_requests,
            "remaining": max_requests - len(hits),
            "reset_time": reset_time,
        }

    def clear(self, client: Optional[str] = None) -> None:
        if client is None:
            self.requests.clear()
            return
        for key in [k for k in self.requests if k[0] == client]:
            del self.requests[key]


# Global rate limiter instance
_rate_limiter = RateLimiter()


def clear_rate_limits(client: Optional[str] = None) -> None:
    _rate_limiter.clear(client)


# ────────────────────────────────────────────────────────────────
# FastAPI Dependencies
# ────────────────────────────────────────────────────────────────

async def public_access_rate_limit(request: Request) -> None:
    settings = request.app.state.settings
    metadata = _rate_limiter.hit(
        client=RateLimiter.client_ip(request),
        endpoint=request.scope.get("route").path if request.scope.get("route") else request.url.path,
        max_requests=settings.public_access_rate_limit,
    )
    request.state.rate_limit_headers = {
        "X-RateLimit-Limit": str(metadata["limit"]),
        "X-RateLimit-Remaining": str(metadata["remaining"]),
        "X-RateLimit-Reset": str(metadata["reset_time"]),
    }


class RateLimitHeadersMiddleware(BaseHTTPMiddleware):
    """Copy the headers the rate limit dependency left on request.state onto the response."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        headers = getattr(request.state, "rate_limit_headers", None)
        if headers:
            for header, value in headers.items():
                response.headers[header] = value
        return response
