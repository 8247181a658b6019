"""Algorithm constructors.

Each constructor returns a ``Limiter``: a description of the algorithm that
the orchestrator binds to its region context. Binding picks the
single-region or multi-region implementation, so one limiter definition
works for both deployments where the algorithm supports them.

Example:
    >>> ratelimit = Ratelimit.single_region(redis, sliding_window(10, "10 s"))
"""

from dataclasses import dataclass
from typing import Callable, Optional

from edgelimit.app.exceptions import UnsupportedContextError
from edgelimit.app.services.ratelimit.base import Algorithm
from edgelimit.app.services.ratelimit.multi_region import (
    MultiRegionFixedWindow,
    MultiRegionSlidingWindow,
)
from edgelimit.app.services.ratelimit.single_region import (
    CachedFixedWindow,
    FixedWindow,
    SlidingWindow,
    TokenBucket,
)


@dataclass(frozen=True)
class Limiter:
    """An algorithm definition not yet bound to a context shape."""

    name: str
    single_region: Callable[[], Algorithm]
    multi_region: Optional[Callable[[], Algorithm]] = None

    def bind(self, ctx) -> Algorithm:
        """Return the implementation for ctx's shape.

        Raises:
            UnsupportedContextError: If the algorithm has no implementation
                for the context shape.
        """
        if ctx.multi_region:
            if self.multi_region is None:
                raise UnsupportedContextError(self.name, "multi-region")
            return self.multi_region()
        return self.single_region()


def fixed_window(tokens: int, window: str | int) -> Limiter:
    """Each request inside a fixed time window increases a counter.

    Args:
        tokens: How many requests an identifier can make in each window
        window: Window size, e.g. ``"10 s"``
    """
    FixedWindow(tokens, window)  # validate eagerly
    return Limiter(
        name="fixedWindow",
        single_region=lambda: FixedWindow(tokens, window),
        multi_region=lambda: MultiRegionFixedWindow(tokens, window),
    )


def sliding_window(tokens: int, window: str | int) -> Limiter:
    """Weighted blend of the current and previous fixed windows.

    Args:
        tokens: How many requests an identifier can make per window
        window: Window size, e.g. ``"1 m"``
    """
    SlidingWindow(tokens, window)
    return Limiter(
        name="slidingWindow",
        single_region=lambda: SlidingWindow(tokens, window),
        multi_region=lambda: MultiRegionSlidingWindow(tokens, window),
    )


def token_bucket(refill_rate: int, interval: str | int, max_tokens: int) -> Limiter:
    """A bucket of ``max_tokens`` refilled by ``refill_rate`` every ``interval``.

    Single-region only.
    """
    TokenBucket(refill_rate, interval, max_tokens)
    return Limiter(
        name="tokenBucket",
        single_region=lambda: TokenBucket(refill_rate, interval, max_tokens),
    )


def cached_fixed_window(tokens: int, window: str | int) -> Limiter:
    """Fixed window decided from the local cache first (experimental).

    Single-region only, and requires an ephemeral cache.
    """
    CachedFixedWindow(tokens, window)
    return Limiter(
        name="cachedFixedWindow",
        single_region=lambda: CachedFixedWindow(tokens, window),
    )
