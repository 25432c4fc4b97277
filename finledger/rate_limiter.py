"""
Token-bucket admission control keyed by client address.

Buckets live in process memory, guarded by a lock, and are evicted once they have
been idle for ``idle_seconds``. A horizontally scaled deployment can swap in any
object exposing the same ``limit(key)`` contract backed by a shared store.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Protocol

from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

logger = logging.getLogger(__name__)


class RateLimiterUnavailable(RuntimeError):
    """Raised when the limiter's backing store cannot be reached."""


@dataclass(frozen=True)
class RateLimitResult:
    success: bool
    limit: int
    remaining: int
    reset: int


@dataclass
class TokenBucket:
    tokens: float
    last_refill_at: float


class RateLimiter(Protocol):
    def limit(self, key: str) -> RateLimitResult: ...


class TokenBucketRateLimiter:
    def __init__(
        self,
        capacity: int = 20,
        window_seconds: float = 10.0,
        idle_seconds: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ):
        if capacity <= 0 or window_seconds <= 0:
            raise ValueError("capacity and window_seconds must be positive.")
        self.capacity = capacity
        self.window_seconds = window_seconds
        self.refill_per_second = capacity / window_seconds
        self.idle_seconds = idle_seconds
        self._clock = clock
        self._wall_clock = wall_clock
        self._buckets: dict[str, TokenBucket] = {}
        self._lock = threading.Lock()

    def limit(self, key: str) -> RateLimitResult:
        with self._lock:
            now = self._clock()
            self._evict_idle(now)
            bucket = self._refill(key, now)
            success = bucket.tokens >= 1
            if success:
                bucket.tokens -= 1
            tokens_to_full = self.capacity - bucket.tokens
            seconds_to_full = 0.0 if tokens_to_full <= 0 else tokens_to_full / self.refill_per_second
            return RateLimitResult(
                success=success,
                limit=self.capacity,
                remaining=max(0, math.floor(bucket.tokens)),
                reset=math.ceil(self._wall_clock() + seconds_to_full),
            )

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()

    def __len__(self) -> int:
        return len(self._buckets)

    def _refill(self, key: str, now: float) -> TokenBucket:
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = TokenBucket(tokens=float(self.capacity), last_refill_at=now)
            self._buckets[key] = bucket
            return bucket
        elapsed = max(0.0, now - bucket.last_refill_at)
        if elapsed > 0:
            bucket.tokens = min(float(self.capacity), bucket.tokens + elapsed * self.refill_per_second)
            bucket.last_refill_at = now
        return bucket

    def _evict_idle(self, now: float) -> None:
        stale = [key for key, bucket in self._buckets.items() if now - bucket.last_refill_at > self.idle_seconds]
        for key in stale:
            del self._buckets[key]


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Applies the limiter stored on ``app.state.rate_limiter`` to every request."""

    def __init__(self, app, fail_open: bool = True):
        super().__init__(app)
        self.fail_open = fail_open

    async def dispatch(self, request: Request, call_next):
        limiter: RateLimiter | None = getattr(request.app.state, "rate_limiter", None)
        if limiter is None:
            return await call_next(request)

        key = request.client.host if request.client else "anonymous"
        try:
            result = limiter.limit(key)
        except RateLimiterUnavailable:
            logger.exception("Rate limiter unavailable")
            if not self.fail_open:
                return JSONResponse(
                    status_code=500,
                    content={"success": False, "error": "Rate limiter unavailable"},
                )
            response = await call_next(request)
            response.headers["X-RateLimit-Bypass"] = "true"
            return response

        headers = {
            "X-RateLimit-Limit": str(result.limit),
            "X-RateLimit-Remaining": str(result.remaining),
            "X-RateLimit-Reset": str(result.reset),
        }
        if not result.success:
            return JSONResponse(
                status_code=429,
                content={"success": False, "error": "Rate limit exceeded"},
                headers=headers,
            )
        response = await call_next(request)
        response.headers.update(headers)
        return response
