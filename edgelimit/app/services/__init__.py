"""Services package for the rate limiter.

This package provides:
- Rate limiting algorithms for single and multi-region Redis
- The ``Ratelimit`` orchestrator (timeout race, analytics)
- Deny list protection with the IP reputation list
"""

from edgelimit.app.services.ratelimit import (
    Analytics,
    CacheConfig,
    EphemeralCache,
    LimitOptions,
    RateLimitReason,
    RateLimitResponse,
    RemainingResponse,
    cached_fixed_window,
    fixed_window,
    sliding_window,
    token_bucket,
)
from edgelimit.app.services.ratelimit.service import Ratelimit
from edgelimit.app.services.deny_list import (
    DenyListCache,
    add_to_deny_list,
    disable_ip_deny_list,
    remove_from_deny_list,
    update_ip_deny_list,
)

__all__ = [
    # Orchestrator
    "Ratelimit",
    "LimitOptions",
    "RateLimitReason",
    "RateLimitResponse",
    "RemainingResponse",
    # Algorithms
    "fixed_window",
    "sliding_window",
    "token_bucket",
    "cached_fixed_window",
    # Caching and analytics
    "Analytics",
    "CacheConfig",
    "EphemeralCache",
    # Deny list
    "DenyListCache",
    "add_to_deny_list",
    "remove_from_deny_list",
    "update_ip_deny_list",
    "disable_ip_deny_list",
]
