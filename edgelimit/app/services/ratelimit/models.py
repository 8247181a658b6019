"""Data models for rate limit requests and decisions."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Optional


class RateLimitReason(str, Enum):
    """Why a decision was not produced by the algorithm alone."""

    TIMEOUT = "timeout"
    CACHE_BLOCK = "cacheBlock"
    DENY_LIST = "denyList"


class _ResolvedPending:
    """Awaitable that completes immediately; usable outside a running loop."""

    def __await__(self):
        return None
        yield  # makes __await__ a generator

    def __repr__(self) -> str:
        return "<resolved>"


RESOLVED = _ResolvedPending()


def resolved_pending() -> Awaitable[None]:
    """Return an already completed awaitable for responses with no background work."""
    return RESOLVED


@dataclass
class LimitOptions:
    """Per-call options for ``Ratelimit.limit``.

    Attributes:
        rate: Consumption weight of this call, defaults to 1
        ip: Client IP, checked against the deny list
        user_agent: Client user agent, checked against the deny list
        country: Client country code, checked against the deny list
        geo: Free-form geo attributes recorded with analytics events
    """
    rate: Optional[int] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    country: Optional[str] = None
    geo: Optional[dict[str, Any]] = None

    @property
    def increment_by(self) -> int:
        return increment_for(self.rate)


def increment_for(rate: Optional[int]) -> int:
    """Translate an optional caller rate into the counter increment."""
    return max(1, int(rate)) if rate else 1


@dataclass
class RateLimitResponse:
    """Result of a rate limit decision.

    Attributes:
        success: Whether the request may proceed
        limit: Configured capacity of the algorithm
        remaining: Capacity left, never negative
        reset: Epoch milliseconds at which capacity replenishes
        pending: Background work (reconciliation, analytics, deny list
            refresh) still in flight; may be awaited or ignored
        reason: Set when the decision was not made by the algorithm alone
        denied_value: The deny-listed member when reason is denyList
    """
    success: bool
    limit: int
    remaining: int
    reset: int
    pending: Awaitable[Any] = field(default_factory=resolved_pending, repr=False)
    reason: Optional[RateLimitReason] = None
    denied_value: Optional[str] = None

    def __post_init__(self) -> None:
        if self.remaining < 0:
            self.remaining = 0

    def retry_after_ms(self, now: int) -> int:
        """Milliseconds until the identifier may try again (0 if allowed)."""
        if self.success:
            return 0
        return max(0, self.reset - now)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization (without ``pending``)."""
        return {
            "success": self.success,
            "limit": self.limit,
            "remaining": self.remaining,
            "reset": self.reset,
            "reason": self.reason.value if self.reason else None,
            "denied_value": self.denied_value,
        }


@dataclass
class RemainingResponse:
    """Read-only view of an identifier's remaining capacity."""
    remaining: int
    reset: int

    def __post_init__(self) -> None:
        if self.remaining < 0:
            self.remaining = 0
