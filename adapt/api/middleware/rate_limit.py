"""
Per-learner rate limiting with sliding window.
"""

import time
from collections import defaultdict
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from adapt.shared.config import settings
from adapt.shared.logging import get_logger

logger = get_logger(__name__)


class SlidingWindowRateLimiter:
    """In-memory sliding window rate limiter per learner."""

    def __init__(self, requests_per_minute: int = 60, window_seconds: int = 60):
        self.requests_per_minute = requests_per_minute
        self.window_seconds = window_seconds
        # key -> request timestamps inside the window
        self._requests: dict[str, list[float]] = defaultdict(list)

    def _prune(self, key: str):
        cutoff = time.time() - self.window_seconds
        self._requests[key] = [t for t in self._requests[key] if t > cutoff]

    def is_allowed(self, key: str) -> bool:
        self._prune(key)
        return len(self._requests[key]) < self.requests_per_minute

    def record(self, key: str):
        self._requests[key].append(time.time())

    def retry_after_seconds(self, key: str) -> int:
        """Seconds until the oldest request leaves the window."""
        self._prune(key)
        if len(self._requests[key]) < self.requests_per_minute:
            return 0
        oldest = min(self._requests[key])
        return max(1, int(self.window_seconds - (time.time() - oldest)))


def get_learner_key(request: Request) -> Optional[str]:
    """Identify the caller: learner header, then bearer token, then client IP."""
    learner_id = request.headers.get("X-Learner-Id")
    if learner_id:
        return f"learner:{learner_id[:64]}"
    auth = request.headers.get("Authorization")
    if auth and auth.startswith("Bearer "):
        return f"bearer:{auth[7:][:64]}"
    client = request.client
    if client:
        return f"ip:{client.host}"
    return None


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Per-learner rate limiting middleware."""

    def __init__(
        self,
        app,
        requests_per_minute: Optional[int] = None,
        skip_paths: Optional[list[str]] = None,
    ):
        super().__init__(app)
        self.limiter = SlidingWindowRateLimiter(
            requests_per_minute or settings.api.rate_limit_requests_per_minute
        )
        self.skip_paths = set(skip_paths or ["/health", "/docs", "/openapi.json", "/redoc"])

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if path in self.skip_paths or path.startswith("/docs") or path.startswith("/redoc"):
            return await call_next(request)

        key = get_learner_key(request)
        if not key:
            return await call_next(request)

        if not self.limiter.is_allowed(key):
            retry_after = self.limiter.retry_after_seconds(key)
            logger.warning(
                "Rate limit exceeded",
                extra={"rate_key": key[:16], "retry_after": retry_after},
            )
            return Response(
                content='{"code":"RATE_LIMITED","detail":"Rate limit exceeded. Try again later."}',
                status_code=429,
                headers={"Retry-After": str(retry_after), "Content-Type": "application/json"},
            )

        self.limiter.record(key)
        return await call_next(request)
