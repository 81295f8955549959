"""Redis-backed rate limiter."""
import hashlib
import logging
import time
from typing import Optional, Tuple
import redis
from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from monitoring import rate_limit_exceeded_counter

logger = logging.getLogger(__name__)

EXEMPT_PATHS = {"/health"}


class RedisRateLimiter(BaseHTTPMiddleware):
    """
    Sliding-window rate limiter shared by all service instances.

    Two tiers: a generous per-IP limit (many users can share one address)
    and a stricter limit per bearer credential. The Redis client is read
    from ``app.state`` on every request. If Redis is unavailable requests
    are let through.
    """

    def __init__(
        self,
        app,
        requests_per_minute_ip: int = 600,
        requests_per_minute_user: int = 120,
        window_seconds: int = 60
    ):
        """
        Initialize Redis-backed rate limiter.

        Args:
            app: FastAPI application
            requests_per_minute_ip: Max requests per IP per window
            requests_per_minute_user: Max requests per credential per window
            window_seconds: Sliding window size in seconds
        """
        super().__init__(app)
        self.requests_per_minute_ip = requests_per_minute_ip
        self.requests_per_minute_user = requests_per_minute_user
        self.window_seconds = window_seconds

    def _check_rate_limit(
        self,
        redis_client: redis.Redis,
        key: str,
        limit: int,
        window: int
    ) -> Tuple[bool, int]:
        """
        Check rate limit using a Redis sorted set (sliding window).

        Args:
            redis_client: Redis connection
            key: Redis key for this limit (e.g., "rate:ip:192.168.1.1")
            limit: Maximum requests allowed
            window: Time window in seconds

        Returns:
            Tuple of (is_allowed, current_count)
        """
        try:
            current_time = time.time()
            window_start = current_time - window

            pipe = redis_client.pipeline()
            pipe.zremrangebyscore(key, 0, window_start)
            pipe.zcard(key)
            pipe.zadd(key, {f"{current_time:.6f}": current_time})
            pipe.expire(key, window + 1)
            results = pipe.execute()

            # Count before the current request
            count = results[1]
            return count < limit, count + 1

        except redis.RedisError as e:
            logger.error(f"Redis rate limit error: {e}")
            return True, 0

    def _rejection(self, limit_type: str, limit: int) -> JSONResponse:
        return JSONResponse(
            status_code=429,
            content={
                "detail": f"Rate limit exceeded for {limit_type}. Maximum {limit} requests per minute.",
                "code": "rate_limited"
            },
            headers={"Retry-After": str(self.window_seconds)}
        )

    @staticmethod
    def _credential_fingerprint(request: Request) -> Optional[str]:
        auth_header = request.headers.get("authorization")
        if not auth_header or not auth_header.startswith("Bearer "):
            return None
        token = auth_header.split(" ", 1)[1]
        return hashlib.sha256(token.encode("utf-8")).hexdigest()[:16]

    async def dispatch(self, request: Request, call_next):
        """
        Process request with Redis-backed dual-tier rate limiting.

        Returns:
            Response or 429 if rate limited
        """
        redis_client = getattr(request.app.state, "redis_client", None)
        if redis_client is None or request.url.path in EXEMPT_PATHS:
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        if "x-forwarded-for" in request.headers:
            client_ip = request.headers["x-forwarded-for"].split(",")[0].strip()

        ip_allowed, ip_count = self._check_rate_limit(
            redis_client,
            f"rate:ip:{client_ip}",
            self.requests_per_minute_ip,
            self.window_seconds
        )
        if not ip_allowed:
            rate_limit_exceeded_counter.add(1, {"limit_type": "ip"})
            logger.warning("IP rate limit exceeded", extra={
                "client_ip": client_ip,
                "requests_in_window": ip_count,
                "limit": self.requests_per_minute_ip
            })
            return self._rejection("IP", self.requests_per_minute_ip)

        fingerprint = self._credential_fingerprint(request)
        if fingerprint:
            user_allowed, user_count = self._check_rate_limit(
                redis_client,
                f"rate:user:{fingerprint}",
                self.requests_per_minute_user,
                self.window_seconds
            )
            if not user_allowed:
                rate_limit_exceeded_counter.add(1, {"limit_type": "user"})
                logger.warning("User rate limit exceeded", extra={
                    "client_ip": client_ip,
                    "requests_in_window": user_count,
                    "limit": self.requests_per_minute_user
                })
                return self._rejection("user", self.requests_per_minute_user)

        return await call_next(request)
