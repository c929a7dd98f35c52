"""Redis-backed fixed window rate limiting.

Access codes are short, so guessing is throttled per client IP. Code
endpoints get a tighter budget than the rest of the API.
"""

import time
from typing import Any

from redis.exceptions import RedisError
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from worldhub.redis_client import get_redis, rate_limit_key

_EXEMPT_PATHS = frozenset({"/health", "/ready", "/version"})
_CODE_PATH_PREFIXES = ("/api/v1/codes", "/api/v1/privacy")


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Rate limit requests per IP using Redis counters."""

    def __init__(self, app: Any, requests_per_window: int = 100, window_seconds: int = 60) -> None:  # noqa: ANN401
        super().__init__(app)
        self.requests_per_window = requests_per_window
        self.window_seconds = window_seconds

    def _limit_for(self, path: str) -> tuple[str, int]:
        if path.startswith(_CODE_PATH_PREFIXES):
            return "codes", max(1, self.requests_per_window // 5)
        return "api", self.requests_per_window

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path in _EXEMPT_PATHS:
            return await call_next(request)

        bucket, limit = self._limit_for(request.url.path)
        client_ip = request.client.host if request.client else "unknown"
        window = int(time.time()) // self.window_seconds
        rate_key = rate_limit_key(bucket, client_ip, window)

        try:
            redis = get_redis()
            pipe = redis.pipeline()
            pipe.incr(rate_key)
            pipe.expire(rate_key, self.window_seconds + 1)
            results: list[Any] = await pipe.execute()
        except (RuntimeError, RedisError, OSError):
            # Redis not initialized or unreachable: let the request through
            return await call_next(request)

        current_count: int = results[0]
        remaining = max(0, limit - current_count)
        if current_count > limit:
            return JSONResponse(
                status_code=429,
                content={"detail": "Rate limit exceeded. Try again later.", "code": "rate_limited"},
                headers={
                    "Retry-After": str(self.window_seconds),
                    "X-RateLimit-Remaining": "0",
                    "X-RateLimit-Limit": str(limit),
                },
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Remaining"] = str(remaining)
        response.headers["X-RateLimit-Limit"] = str(limit)
        return response
