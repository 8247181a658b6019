"""Rate limiting algorithms and their building blocks.

The orchestrator lives in ``edgelimit.app.services.ratelimit.service`` and
is imported from there (or from ``edgelimit``); this package only exposes
the engine so the deny list can build on it without a circular import.
"""

from edgelimit.app.services.ratelimit.algorithms import (
    Limiter,
    cached_fixed_window,
    fixed_window,
    sliding_window,
    token_bucket,
)
from edgelimit.app.services.ratelimit.analytics import Analytics
from edgelimit.app.services.ratelimit.concurrency import first_success, gather_pending, isolate, spawn
from edgelimit.app.services.ratelimit.context import MultiRegionContext, SingleRegionContext, safe_eval
from edgelimit.app.services.ratelimit.ephemeral_cache import CacheConfig, CacheMode, EphemeralCache
from edgelimit.app.services.ratelimit.models import (
    LimitOptions,
    RateLimitReason,
    RateLimitResponse,
    RemainingResponse,
    resolved_pending,
)

__all__ = [
    "Analytics",
    "CacheConfig",
    "CacheMode",
    "EphemeralCache",
    "LimitOptions",
    "Limiter",
    "MultiRegionContext",
    "RateLimitReason",
    "RateLimitResponse",
    "RemainingResponse",
    "SingleRegionContext",
    "cached_fixed_window",
    "first_success",
    "fixed_window",
    "gather_pending",
    "isolate",
    "resolved_pending",
    "safe_eval",
    "sliding_window",
    "spawn",
    "token_bucket",
]
