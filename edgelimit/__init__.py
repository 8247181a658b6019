"""edgelimit: Redis-backed rate limiting for asyncio services."""

from edgelimit.app.exceptions import (
    CacheRequiredError,
    ConfigurationError,
    InvalidDurationError,
    IpDenyListFetchError,
    RatelimitError,
    RegionsUnavailableError,
    ThresholdError,
    UnsupportedContextError,
)
from edgelimit.app.services import (
    Analytics,
    CacheConfig,
    DenyListCache,
    LimitOptions,
    Ratelimit,
    RateLimitReason,
    RateLimitResponse,
    RemainingResponse,
    add_to_deny_list,
    cached_fixed_window,
    disable_ip_deny_list,
    fixed_window,
    remove_from_deny_list,
    sliding_window,
    token_bucket,
    update_ip_deny_list,
)

__version__ = "0.1.0"

__all__ = [
    "Analytics",
    "CacheConfig",
    "CacheRequiredError",
    "ConfigurationError",
    "DenyListCache",
    "InvalidDurationError",
    "IpDenyListFetchError",
    "LimitOptions",
    "Ratelimit",
    "RateLimitReason",
    "RateLimitResponse",
    "RatelimitError",
    "RegionsUnavailableError",
    "RemainingResponse",
    "ThresholdError",
    "UnsupportedContextError",
    "add_to_deny_list",
    "cached_fixed_window",
    "disable_ip_deny_list",
    "fixed_window",
    "remove_from_deny_list",
    "sliding_window",
    "token_bucket",
    "update_ip_deny_list",
]
