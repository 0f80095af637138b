"""Rate limiting middleware: Redis-based fixed window per minute.

Learn: Each IP gets a counter key like "tlca:rl:{ip}:{bucket}:{minute}".
Sign-in and sign-up get a stricter limit (10/min) to slow down password
guessing and account spraying.

Gracefully skips rate limiting if Redis is unavailable (e.g., in tests).
"""

import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

STRICT_PATHS = ("/api/v1/auth/sign-in", "/api/v1/auth/sign-up")


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Redis-based rate limiting per IP per minute."""

    def __init__(self, app, default_rpm: int = 100, auth_rpm: int = 10):
        super().__init__(app)
        self.default_rpm = default_rpm
        self.auth_rpm = auth_rpm

    async def dispatch(self, request: Request, call_next) -> Response:
        # No Redis: skip rate limiting if unavailable
        try:
            from tlca.cache import get_redis

            redis = get_redis()
        except RuntimeError:
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        is_auth = request.url.path.startswith(STRICT_PATHS)
        rpm = self.auth_rpm if is_auth else self.default_rpm

        window = int(time.time() // 60)
        bucket = "auth" if is_auth else "api"
        key = f"tlca:rl:{client_ip}:{bucket}:{window}"

        try:
            count = await redis.incr(key)
            if count == 1:
                await redis.expire(key, 120)
        except Exception:
            # Redis error: let the request through
            return await call_next(request)

        if count > rpm:
            return JSONResponse(
                status_code=429,
                content={"detail": "Rate limit exceeded. Try again later."},
                headers={"Retry-After": "60"},
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(rpm)
        response.headers["X-RateLimit-Remaining"] = str(max(0, rpm - count))
        return response
