"""HTTP middleware: rate limiting, request logging, security headers."""

import logging
import time

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

import redis.asyncio as redis

from app.config import settings
from app.core.exceptions import RateLimitExceeded

logger = logging.getLogger(__name__)

# Never throttled: health checks, docs and provider webhooks (providers retry on their own)
UNLIMITED_PATHS = ("/health", "/docs", "/redoc", "/openapi.json")
UNLIMITED_PREFIXES = (f"{settings.api_prefix}/webhooks/",)


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip
    return request.client.host if request.client else "unknown"


async def _hit(client: redis.Redis, key: str, window: int = 60) -> tuple[int, int]:
    """Record one request in a sliding window.

    Returns:
        Tuple of (requests already in window, window reset timestamp)
    """
    now = int(time.time())
    async with client.pipeline(transaction=True) as pipe:
        await pipe.zremrangebyscore(key, 0, now - window)
        await pipe.zcard(key)
        await pipe.zadd(key, {str(time.time_ns()): now})
        await pipe.expire(key, window)
        results = await pipe.execute()
    return results[1], now + window


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Per-IP rate limiting backed by a Redis sliding window."""

    def __init__(self, app, requests_per_minute: int = 100, redis_url: str | None = None):
        super().__init__(app)
        self.requests_per_minute = requests_per_minute
        self.redis_url = redis_url or settings.redis_url
        self._redis: redis.Redis | None = None

    async def get_redis(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url, encoding="utf-8", decode_responses=True)
        return self._redis

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if settings.debug or path in UNLIMITED_PATHS or path.startswith(UNLIMITED_PREFIXES):
            return await call_next(request)

        try:
            count, reset_at = await _hit(
                await self.get_redis(), f"rate_limit:{_client_ip(request)}"
            )
        except redis.RedisError as e:
            # Redis down: fail open
            logger.warning(f"Rate limiter unavailable: {e}")
            return await call_next(request)

        headers = {
            "X-RateLimit-Limit": str(self.requests_per_minute),
            "X-RateLimit-Reset": str(reset_at),
        }
        if count >= self.requests_per_minute:
            exc = RateLimitExceeded()
            return JSONResponse(
                status_code=exc.status_code,
                content={"detail": exc.detail, "retry_after": 60},
                headers={**headers, "Retry-After": "60", "X-RateLimit-Remaining": "0"},
            )

        response = await call_next(request)
        response.headers.update(headers)
        response.headers["X-RateLimit-Remaining"] = str(
            max(0, self.requests_per_minute - count - 1)
        )
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Tags each request with an id and logs its outcome and timing."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        start_time = time.perf_counter()
        request_id = request.headers.get("X-Request-ID") or str(time.time_ns())
        request.state.request_id = request_id

        response = await call_next(request)

        duration = time.perf_counter() - start_time
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time"] = f"{duration:.3f}s"

        message = (
            f"{request.method} {request.url.path} -> {response.status_code} "
            f"in {duration:.3f}s [{request_id}]"
        )
        if duration > 1.0:
            logger.warning(f"SLOW REQUEST: {message}")
        else:
            logger.debug(message)
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds standard security headers to every response."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        if not settings.debug:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response


class RateLimiter:
    """Tighter per-endpoint limit, used as a route dependency.

    Checkout creation calls a paid provider API, so it gets its own budget.
    """

    def __init__(self, requests_per_minute: int = 10, key_prefix: str = "api"):
        self.requests_per_minute = requests_per_minute
        self.key_prefix = key_prefix
        self._redis: redis.Redis | None = None

    async def get_redis(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.from_url(
                settings.redis_url, encoding="utf-8", decode_responses=True
            )
        return self._redis

    async def __call__(self, request: Request) -> None:
        if settings.debug or settings.environment == "development":
            return
        key = f"rate_limit:{self.key_prefix}:{_client_ip(request)}"
        try:
            count, _ = await _hit(await self.get_redis(), key)
        except redis.RedisError as e:
            logger.warning(f"Rate limiter unavailable for {self.key_prefix}: {e}")
            return
        if count >= self.requests_per_minute:
            raise RateLimitExceeded()
