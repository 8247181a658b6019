"""Rate limiting algorithms for a single Redis backend."""

import logging
from typing import Optional

from edgelimit.app.core import clock
from edgelimit.app.core.duration import ms
from edgelimit.app.exceptions import CacheRequiredError
from edgelimit.app.services.ratelimit.base import Algorithm, require_positive
from edgelimit.app.services.ratelimit.concurrency import isolate
from edgelimit.app.services.ratelimit.context import SingleRegionContext, safe_eval
from edgelimit.app.services.ratelimit.models import (
    RESOLVED,
    RateLimitResponse,
    RemainingResponse,
    increment_for,
)
from edgelimit.app.services.ratelimit.redis_lua import (
    CACHED_FIXED_WINDOW_LIMIT,
    CACHED_FIXED_WINDOW_REMAINING,
    FIXED_WINDOW_LIMIT,
    FIXED_WINDOW_REMAINING,
    RESET_SCRIPT,
    SLIDING_WINDOW_LIMIT,
    SLIDING_WINDOW_REMAINING,
    TOKEN_BUCKET_IDENTIFIER_NOT_FOUND,
    TOKEN_BUCKET_LIMIT,
    TOKEN_BUCKET_REMAINING,
)

logger = logging.getLogger(__name__)


async def reset_pattern(ctx: SingleRegionContext, pattern: str) -> None:
    """Delete every key matching pattern on the backend."""
    await safe_eval(ctx.redis, RESET_SCRIPT, [pattern], [])


class FixedWindow(Algorithm):
    """Counts requests per fixed, consecutive window.

    Pro: newer requests are not starved by old ones, and storage is one
    counter per identifier and window.

    Con: a burst straddling a window boundary can briefly pass up to twice
    the nominal rate.
    """

    name = "fixedWindow"

    def __init__(self, tokens: int, window: str | int):
        self.tokens = require_positive("tokens", tokens)
        self.window = ms(window)

    @property
    def limit_value(self) -> int:
        return self.tokens

    def _bucket(self) -> int:
        return clock.now_ms() // self.window

    async def limit(
        self, ctx: SingleRegionContext, identifier: str, rate: Optional[int] = None
    ) -> RateLimitResponse:
        bucket = self._bucket()
        key = f"{identifier}:{bucket}"

        cached = self.check_cache(ctx, identifier)
        if cached is not None:
            return cached

        used = int(await safe_eval(
            ctx.redis, FIXED_WINDOW_LIMIT, [key], [self.window, increment_for(rate)]
        ))
        success = used <= self.tokens
        reset = (bucket + 1) * self.window
        self.remember_rejection(ctx, identifier, success, reset)

        return RateLimitResponse(
            success=success,
            limit=self.tokens,
            remaining=self.tokens - used,
            reset=reset,
        )

    async def get_remaining(self, ctx: SingleRegionContext, identifier: str) -> RemainingResponse:
        bucket = self._bucket()
        used = int(await safe_eval(
            ctx.redis, FIXED_WINDOW_REMAINING, [f"{identifier}:{bucket}"], []
        ))
        return RemainingResponse(
            remaining=self.tokens - used,
            reset=(bucket + 1) * self.window,
        )

    async def reset_tokens(self, ctx: SingleRegionContext, identifier: str) -> None:
        if ctx.cache is not None:
            ctx.cache.pop(identifier)
        await reset_pattern(ctx, f"{identifier}:*")


class SlidingWindow(Algorithm):
    """Approximates a moving window by blending two fixed windows.

    The previous window's count is weighted by the fraction of it that still
    overlaps the notional sliding window:

        weighted = floor((1 - (now % window) / window) * previous)

    A request is rejected when ``weighted + current >= tokens``.
    """

    name = "slidingWindow"

    def __init__(self, tokens: int, window: str | int):
        self.tokens = require_positive("tokens", tokens)
        self.window = ms(window)

    @property
    def limit_value(self) -> int:
        return self.tokens

    def _keys(self, identifier: str, now: int) -> tuple[int, str, str]:
        current_window = now // self.window
        return (
            current_window,
            f"{identifier}:{current_window}",
            f"{identifier}:{current_window - 1}",
        )

    async def limit(
        self, ctx: SingleRegionContext, identifier: str, rate: Optional[int] = None
    ) -> RateLimitResponse:
        now = clock.now_ms()
        current_window, current_key, previous_key = self._keys(identifier, now)

        cached = self.check_cache(ctx, identifier)
        if cached is not None:
            return cached

        remaining = int(await safe_eval(
            ctx.redis,
            SLIDING_WINDOW_LIMIT,
            [current_key, previous_key],
            [self.tokens, now, self.window, increment_for(rate)],
        ))
        success = remaining >= 0
        reset = (current_window + 1) * self.window
        self.remember_rejection(ctx, identifier, success, reset)

        return RateLimitResponse(
            success=success,
            limit=self.tokens,
            remaining=remaining,
            reset=reset,
        )

    async def get_remaining(self, ctx: SingleRegionContext, identifier: str) -> RemainingResponse:
        now = clock.now_ms()
        current_window, current_key, previous_key = self._keys(identifier, now)
        used = int(await safe_eval(
            ctx.redis,
            SLIDING_WINDOW_REMAINING,
            [current_key, previous_key],
            [now, self.window],
        ))
        return RemainingResponse(
            remaining=self.tokens - used,
            reset=(current_window + 1) * self.window,
        )

    async def reset_tokens(self, ctx: SingleRegionContext, identifier: str) -> None:
        if ctx.cache is not None:
            ctx.cache.pop(identifier)
        await reset_pattern(ctx, f"{identifier}:*")


class TokenBucket(Algorithm):
    """A bucket of ``max_tokens`` refilled by ``refill_rate`` every ``interval``.

    Every request removes tokens; requests are rejected while the bucket is
    empty. Refills are whole steps, never fractional credit. Setting
    ``max_tokens`` above ``refill_rate`` allows an initial burst.
    """

    name = "tokenBucket"

    def __init__(self, refill_rate: int, interval: str | int, max_tokens: int):
        self.refill_rate = require_positive("refill_rate", refill_rate)
        self.interval = ms(interval)
        self.max_tokens = require_positive("max_tokens", max_tokens)

    @property
    def limit_value(self) -> int:
        return self.max_tokens

    async def limit(
        self, ctx: SingleRegionContext, identifier: str, rate: Optional[int] = None
    ) -> RateLimitResponse:
        cached = self.check_cache(ctx, identifier)
        if cached is not None:
            return cached

        remaining, reset = await safe_eval(
            ctx.redis,
            TOKEN_BUCKET_LIMIT,
            [identifier],
            [self.max_tokens, self.interval, self.refill_rate, clock.now_ms(), increment_for(rate)],
        )
        remaining = int(remaining)
        reset = int(reset)
        success = remaining >= 0
        self.remember_rejection(ctx, identifier, success, reset)

        return RateLimitResponse(
            success=success,
            limit=self.max_tokens,
            remaining=remaining,
            reset=reset,
        )

    async def get_remaining(self, ctx: SingleRegionContext, identifier: str) -> RemainingResponse:
        tokens, refilled_at = await safe_eval(
            ctx.redis, TOKEN_BUCKET_REMAINING, [identifier], [self.max_tokens]
        )
        refilled_at = int(refilled_at)
        if refilled_at == TOKEN_BUCKET_IDENTIFIER_NOT_FOUND:
            reset = clock.now_ms() + self.interval
        else:
            reset = refilled_at + self.interval
        return RemainingResponse(remaining=int(tokens), reset=reset)

    async def reset_tokens(self, ctx: SingleRegionContext, identifier: str) -> None:
        if ctx.cache is not None:
            ctx.cache.pop(identifier)
        await reset_pattern(ctx, identifier)


class CachedFixedWindow(Algorithm):
    """Fixed window that decides from the local cache first (experimental).

    On a cache hit the local counter is incremented and the decision is
    returned immediately; the backend increment is fired in the background
    only when the local count still admits the request. On a miss the
    backend is incremented synchronously and its count seeds the cache.

    Several processes can each admit locally before their backend increments
    land, so this trades a bounded amount of over-admission for near-zero
    added latency.
    """

    name = "cachedFixedWindow"

    def __init__(self, tokens: int, window: str | int):
        self.tokens = require_positive("tokens", tokens)
        self.window = ms(window)

    @property
    def limit_value(self) -> int:
        return self.tokens

    def _bucket(self) -> int:
        return clock.now_ms() // self.window

    async def limit(
        self, ctx: SingleRegionContext, identifier: str, rate: Optional[int] = None
    ) -> RateLimitResponse:
        if ctx.cache is None:
            raise CacheRequiredError(self.name)

        cached = self.check_cache(ctx, identifier)
        if cached is not None:
            return cached

        bucket = self._bucket()
        key = f"{identifier}:{bucket}"
        reset = (bucket + 1) * self.window
        increment_by = increment_for(rate)

        if ctx.cache.get(key) is not None:
            local_used = ctx.cache.incr(key, increment_by)
            success = local_used <= self.tokens
            pending = RESOLVED
            if success:
                pending = isolate(
                    safe_eval(
                        ctx.redis, CACHED_FIXED_WINDOW_LIMIT, [key], [self.window, increment_by]
                    ),
                    "cached fixed window sync",
                )
            self.remember_rejection(ctx, identifier, success, reset)
            return RateLimitResponse(
                success=success,
                limit=self.tokens,
                remaining=self.tokens - local_used,
                reset=reset,
                pending=pending,
            )

        used = int(await safe_eval(
            ctx.redis, CACHED_FIXED_WINDOW_LIMIT, [key], [self.window, increment_by]
        ))
        ctx.cache.set(key, used)
        success = used <= self.tokens
        self.remember_rejection(ctx, identifier, success, reset)
        return RateLimitResponse(
            success=success,
            limit=self.tokens,
            remaining=self.tokens - used,
            reset=reset,
        )

    async def get_remaining(self, ctx: SingleRegionContext, identifier: str) -> RemainingResponse:
        if ctx.cache is None:
            raise CacheRequiredError(self.name)

        bucket = self._bucket()
        key = f"{identifier}:{bucket}"
        reset = (bucket + 1) * self.window

        cached_used = ctx.cache.get(key)
        if cached_used is not None:
            return RemainingResponse(remaining=self.tokens - cached_used, reset=reset)

        used = int(await safe_eval(ctx.redis, CACHED_FIXED_WINDOW_REMAINING, [key], []))
        return RemainingResponse(remaining=self.tokens - used, reset=reset)

    async def reset_tokens(self, ctx: SingleRegionContext, identifier: str) -> None:
        if ctx.cache is None:
            raise CacheRequiredError(self.name)

        ctx.cache.pop(f"{identifier}:{self._bucket()}")
        ctx.cache.pop(identifier)
        await reset_pattern(ctx, f"{identifier}:*")
