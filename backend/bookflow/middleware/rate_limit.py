"""
Bookflow Backend — Per-IP Rate Limiting Middleware
====================================================

What:  Rejects clients that exceed `rate_limit_requests` per
       `rate_limit_window` seconds with 429 Too Many Requests.
How:   Delegates to the application's shared RateLimiter
       (app.state.rate_limiter) with keys "ip:<address>". The same instance
       serves the per-user author-addition limit, so one background sweep
       keeps both bounded.

Scope:
    Process-local counters. Behind a proxy request.client is the proxy; the
    platform must forward the client address (uvicorn --proxy-headers).
"""

import logging

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from bookflow.config import settings

logger = logging.getLogger(__name__)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Sliding-window limit per client IP.

    Excluded paths: health checks and API docs.
    Requests are counted when they are let through, rejected ones are not.
    """

    EXCLUDED_PATHS = {"/health", "/docs", "/openapi.json", "/redoc"}

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        limiter = getattr(request.app.state, "rate_limiter", None)
        if limiter is None or request.url.path in self.EXCLUDED_PATHS:
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        key = f"ip:{client_ip}"
        window_ms = settings.rate_limit_window * 1000

        if limiter.check_rate_limit(key, settings.rate_limit_requests, window_ms):
            retry_after = limiter.retry_after(key, window_ms)
            logger.warning(
                "Rate limit exceeded for IP %s: %d requests in %ds window",
                client_ip,
                settings.rate_limit_requests,
                settings.rate_limit_window,
            )
            return JSONResponse(
                status_code=429,
                content={
                    "error": "Too Many Requests",
                    "message": f"Too many requests. Please wait {retry_after} seconds before retrying.",
                },
                headers={"Retry-After": str(retry_after)},
            )

        limiter.record_request(key)
        return await call_next(request)
