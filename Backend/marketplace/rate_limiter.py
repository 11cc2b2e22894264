"""
Rate Limiting

In-memory sliding-window limiter for public endpoints (booking holds).

Usage:
    from .rate_limiter import rate_limit_dependency

    @router.post("/booking-holds", dependencies=[Depends(rate_limit_dependency(10))])
    async def create_hold(...):
        ...

RateLimitHeadersMiddleware (installed in main.py) adds the X-RateLimit-*
headers of allowed requests to their responses.
"""

import logging
import time
from collections import defaultdict, deque
from typing import Deque, Dict, Optional, Tuple

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from .core.responses import ApiError, ErrorCodes

logger = logging.getLogger(__name__)


# ────────────────────────────────────────────────────────────────
# In-Memory Rate Limiter
# ────────────────────────────────────────────────────────────────

class RateLimiter:
    """
    Sliding-window rate limiter keyed by (client IP, endpoint).

    State is per process; a multi-instance deployment needs a shared store.
    Keys with no hits left in their window are swept at most once a minute.
    """

    SWEEP_INTERVAL_SECONDS = 60

    def __init__(self):
        self.hits: Dict[Tuple[str, str], Deque[float]] = defaultdict(deque)
        self.windows: Dict[Tuple[str, str], int] = {}
        self._last_sweep = 0.0

    @staticmethod
    def client_ip(request: Request) -> str:
        """X-Forwarded-For (first hop) when proxied, else the socket peer."""
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()
        if request.client:
            return request.client.host
        return "unknown"

    def _prune(self, key: Tuple[str, str], window_start: float) -> Deque[float]:
        hits = self.hits[key]
        while hits and hits[0] <= window_start:
            hits.popleft()
        return hits

    def _sweep(self, now: float) -> None:
        if now - self._last_sweep < self.SWEEP_INTERVAL_SECONDS:
            return
        self._last_sweep = now
        idle = [
            key for key, hits in self.hits.items()
            if not hits or hits[-1] <= now - self.windows.get(key, 0)
        ]
        for key in idle:
            del self.hits[key]
            self.windows.pop(key, None)
        if idle:
            logger.debug(f"Evicted {len(idle)} idle rate limit keys")

    def hit(self, ip: str, endpoint: str, max_requests: int, window_seconds: int = 60) -> Tuple[bool, dict]:
        """
        Record a request from ip to endpoint if it fits in the window.

        Returns:
            (is_allowed, metadata) with remaining, reset_time, total_requests,
            limit and window_seconds
        """
        now = time.time()
        self._sweep(now)
        key = (ip, endpoint)
        self.windows[key] = window_seconds
        hits = self._prune(key, now - window_seconds)
        count = len(hits)
        is_allowed = count < max_requests
        reset_time = (hits[0] if hits else now) + window_seconds
        if is_allowed:
            hits.append(now)

        return is_allowed, {
            "remaining": max(0, max_requests - count - (1 if is_allowed else 0)),
            "reset_time": int(reset_time),
            "total_requests": count,
            "limit": max_requests,
            "window_seconds": window_seconds,
        }

    def reset(self, ip_address: Optional[str] = None) -> None:
        """Forget tracked requests for one IP, or for everyone."""
        if ip_address:
            for key in [key for key in self.hits if key[0] == ip_address]:
                del self.hits[key]
                self.windows.pop(key, None)
        else:
            self.hits.clear()
            self.windows.clear()
        logger.info(f"Cleared rate limits for {ip_address or 'all IPs'}")


# Global rate limiter instance
_rate_limiter = RateLimiter()


def reset(ip_address: Optional[str] = None) -> None:
    _rate_limiter.reset(ip_address)


# ────────────────────────────────────────────────────────────────
# FastAPI Dependencies
# ────────────────────────────────────────────────────────────────

def rate_limit_dependency(max_requests: int, window_seconds: int = 60):
    """
    Create a rate limit dependency.

    Raises:
        ApiError 429 RATE_LIMITED with Retry-After and X-RateLimit-* headers
    """
    async def dependency(request: Request):
        route = request.scope.get("route")
        endpoint = route.path if route else request.url.path
        ip = RateLimiter.client_ip(request)
        is_allowed, metadata = _rate_limiter.hit(ip, endpoint, max_requests, window_seconds)

        if not is_allowed:
            retry_after = max(1, metadata["reset_time"] - int(time.time()))
            logger.warning(
                f"[RATE_LIMIT] Blocked request from {ip} "
                f"to {endpoint}: {metadata['total_requests']}/{metadata['limit']} "
                f"in {metadata['window_seconds']}s window"
            )
            raise ApiError(
                429,
                ErrorCodes.RATE_LIMITED,
                f"Too many requests. Limit: {max_requests} per {window_seconds}s",
                details={"retry_after": retry_after, "limit": max_requests, "window_seconds": window_seconds},
                headers={
                    "Retry-After": str(retry_after),
                    "X-RateLimit-Limit": str(max_requests),
                    "X-RateLimit-Remaining": "0",
                    "X-RateLimit-Reset": str(metadata["reset_time"]),
                },
            )

        request.state.rate_limit_headers = {
            "X-RateLimit-Limit": str(metadata["limit"]),
            "X-RateLimit-Remaining": str(metadata["remaining"]),
            "X-RateLimit-Reset": str(metadata["reset_time"]),
        }
        return None

    return dependency


class RateLimitHeadersMiddleware(BaseHTTPMiddleware):
    """Copy the X-RateLimit-* headers stored by the dependency onto the response."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        headers = getattr(request.state, "rate_limit_headers", None)
        if headers:
            for header, value in headers.items():
                response.headers[header] = value
        return response
