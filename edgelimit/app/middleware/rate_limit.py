"""Rate limiting middleware for Starlette and FastAPI applications.

Each request is limited per API key when it carries a bearer token,
otherwise per client IP. Keys and IPs are hashed before they are used as
identifiers so raw credentials never reach Redis.
"""

import hashlib
import math
from typing import Iterable, Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from edgelimit.app.core import clock
from edgelimit.app.core.logging import get_log_context, get_logger
from edgelimit.app.services.ratelimit.models import LimitOptions, RateLimitResponse
from edgelimit.app.services.ratelimit.service import Ratelimit

logger = get_logger(__name__)

MAX_API_KEY_LENGTH = 512
COUNTRY_HEADERS = ("CF-IPCountry", "X-Vercel-IP-Country")


def _hash(value: str) -> str:
    # 32 hex chars (128 bits)
    return hashlib.sha256(value.encode()).hexdigest()[:32]


def get_client_ip(request: Request) -> str:
    """Client IP, preferring the first ``X-Forwarded-For`` hop."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def get_country(request: Request) -> Optional[str]:
    for header in COUNTRY_HEADERS:
        value = request.headers.get(header)
        if value:
            return value.strip().upper()
    return None


def rate_limit_headers(result: RateLimitResponse) -> dict[str, str]:
    return {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(result.reset),
    }


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Middleware to enforce rate limits on requests.

    Args:
        app: The ASGI application
        ratelimit: The configured rate limiter
        exempt_paths: Paths that are never limited, e.g. health checks
    """

    def __init__(
        self,
        app,
        ratelimit: Ratelimit,
        exempt_paths: Iterable[str] = (),
    ):
        super().__init__(app)
        self.ratelimit = ratelimit
        self.exempt_paths = frozenset(exempt_paths)

    def _get_client_key(self, request: Request) -> Optional[str]:
        """Identifier for the request, or None when the API key is oversized."""
        auth = request.headers.get("Authorization", "")
        if auth.startswith("Bearer "):
            api_key = auth[7:].strip()
            if len(api_key) > MAX_API_KEY_LENGTH:
                return None
            return f"apikey:{_hash(api_key)}"
        return f"ip:{_hash(get_client_ip(request))}"

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        """Process request with rate limiting."""
        if request.url.path in self.exempt_paths:
            return await call_next(request)

        key = self._get_client_key(request)
        if key is None:
            return JSONResponse(
                status_code=400,
                content={
                    "error": "invalid_api_key",
                    "message": f"API key too long (max {MAX_API_KEY_LENGTH} characters)",
                },
            )

        options = LimitOptions(
            ip=get_client_ip(request),
            user_agent=request.headers.get("User-Agent"),
            country=get_country(request),
        )
        result = await self.ratelimit.limit(key, options)
        headers = rate_limit_headers(result)

        if not result.success:
            retry_after = math.ceil(result.retry_after_ms(clock.now_ms()) / 1000)
            logger.info(
                "Request rejected by rate limiter",
                extra=get_log_context(
                    identifier=key,
                    reason=result.reason.value if result.reason else None,
                    denied_value=result.denied_value,
                ),
            )
            headers["Retry-After"] = str(retry_after)
            return JSONResponse(
                status_code=429,
                content={
                    "error": "rate_limit_exceeded",
                    "message": "Rate limit exceeded. Please try again later.",
                    "reason": result.reason.value if result.reason else None,
                    "retry_after": retry_after,
                },
                headers=headers,
            )

        response = await call_next(request)
        response.headers.update(headers)
        return response
