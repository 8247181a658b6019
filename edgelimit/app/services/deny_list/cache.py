"""Process-local cache of members recently found on the deny list."""

from typing import Iterable, Optional

from edgelimit.app.core import clock
from edgelimit.app.services.ratelimit.ephemeral_cache import EphemeralCache


class DenyListCache:
    """Bounded cache of denied members.

    Each denial is cached for a fixed window regardless of any backend TTL.
    The bound is coarse: once the cache holds ``max_size`` entries the whole
    cache is flushed before the next denial is stored.
    """

    DEFAULT_MAX_SIZE = 1000
    DEFAULT_TTL_MS = 60_000

    def __init__(self, max_size: int = DEFAULT_MAX_SIZE, ttl_ms: int = DEFAULT_TTL_MS) -> None:
        self.max_size = max_size
        self.ttl_ms = ttl_ms
        self._cache = EphemeralCache()

    def check(self, members: Iterable[str]) -> Optional[str]:
        """Return the first member currently cached as denied, if any."""
        for member in members:
            blocked, _ = self._cache.is_blocked(member)
            if blocked:
                return member
        return None

    def block(self, member: str) -> None:
        if self._cache.size() >= self.max_size:
            self._cache.empty()
        self._cache.block_until(member, clock.now_ms() + self.ttl_ms)

    def size(self) -> int:
        return self._cache.size()

    def clear(self) -> None:
        self._cache.empty()


# Global deny list cache instance
_deny_list_cache: Optional[DenyListCache] = None


def get_deny_list_cache() -> DenyListCache:
    """Get the process-wide deny list cache, creating it on first use."""
    global _deny_list_cache
    if _deny_list_cache is None:
        _deny_list_cache = DenyListCache()
    return _deny_list_cache


def reset_deny_list_cache() -> None:
    """Drop the process-wide deny list cache (used by tests)."""
    global _deny_list_cache
    _deny_list_cache = None
