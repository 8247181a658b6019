"""Middleware package for the rate limiter."""

from edgelimit.app.middleware.rate_limit import RateLimitMiddleware

__all__ = ["RateLimitMiddleware"]
