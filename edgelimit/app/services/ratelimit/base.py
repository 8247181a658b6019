"""Abstract base class for rate limiting algorithms."""

from abc import ABC, abstractmethod
import logging
from typing import Any, Optional

from edgelimit.app.core.logging import get_log_context
from edgelimit.app.exceptions import ConfigurationError
from edgelimit.app.services.ratelimit.models import (
    RateLimitReason,
    RateLimitResponse,
    RemainingResponse,
)

logger = logging.getLogger(__name__)


def require_positive(name: str, value: object) -> int:
    """Return value if it is a positive integer, else raise ConfigurationError."""
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigurationError(f"{name} must be a positive integer. Received: {value}")
    return value


class Algorithm(ABC):
    """A rate limiting strategy bound to one context shape.

    ``identifier`` arguments are already prefixed keys (``<prefix>:<id>``).
    """

    name: str = "algorithm"

    @property
    @abstractmethod
    def limit_value(self) -> int:
        """Capacity reported in responses."""

    @abstractmethod
    async def limit(self, ctx: Any, identifier: str, rate: Optional[int] = None) -> RateLimitResponse:
        """Consume ``rate`` units for identifier and decide.

        Args:
            ctx: The region context
            identifier: Prefixed key
            rate: Consumption weight, defaults to 1

        Returns:
            RateLimitResponse with success status and metadata
        """

    @abstractmethod
    async def get_remaining(self, ctx: Any, identifier: str) -> RemainingResponse:
        """Return remaining capacity without consuming any."""

    @abstractmethod
    async def reset_tokens(self, ctx: Any, identifier: str) -> None:
        """Delete all backend state and cache entries for identifier."""

    def check_cache(self, ctx: Any, identifier: str) -> Optional[RateLimitResponse]:
        """Short-circuit identifiers the ephemeral cache already knows are blocked."""
        if ctx.cache is None:
            return None
        blocked, reset = ctx.cache.is_blocked(identifier)
        if not blocked:
            return None
        logger.debug(
            "Rejected from ephemeral cache",
            extra=get_log_context(identifier=identifier, algorithm=self.name, reason="cacheBlock"),
        )
        return RateLimitResponse(
            success=False,
            limit=self.limit_value,
            remaining=0,
            reset=reset,
            reason=RateLimitReason.CACHE_BLOCK,
        )

    def remember_rejection(self, ctx: Any, identifier: str, success: bool, reset: int) -> None:
        if ctx.cache is not None and not success:
            ctx.cache.block_until(identifier, reset)
