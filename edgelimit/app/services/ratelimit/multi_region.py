"""Rate limiting algorithms across N independent Redis regions.

Each region stores a bucket as a hash of ``request_id -> increment`` instead
of a plain counter, so reconciliation can tell exactly which requests a
region has not seen yet. The limit script runs on every region
concurrently and the first region to answer decides the call; the other
answers are used in the background to replay missing requests into the
regions that lack them. Regions converge eventually but are never
linearized, and the deciding region may under-count global usage.
"""

import asyncio
import logging
import math
import secrets
import string
from typing import Any, Optional, Sequence

from edgelimit.app.core import clock
from edgelimit.app.core.duration import ms
from edgelimit.app.core.logging import get_log_context
from edgelimit.app.services.ratelimit.base import Algorithm, require_positive
from edgelimit.app.services.ratelimit.concurrency import first_success, isolate, spawn
from edgelimit.app.services.ratelimit.context import MultiRegionContext, safe_eval
from edgelimit.app.services.ratelimit.models import (
    RateLimitResponse,
    RemainingResponse,
    increment_for,
)
from edgelimit.app.services.ratelimit.redis_lua import (
    MULTI_FIXED_WINDOW_LIMIT,
    MULTI_FIXED_WINDOW_REMAINING,
    MULTI_SLIDING_WINDOW_LIMIT,
    MULTI_SLIDING_WINDOW_REMAINING,
    RESET_SCRIPT,
    LuaScript,
)

logger = logging.getLogger(__name__)

_REQUEST_ID_ALPHABET = string.ascii_letters + string.digits
_REQUEST_ID_LENGTH = 16


def random_request_id() -> str:
    """Return a fresh 16 character request id."""
    return "".join(secrets.choice(_REQUEST_ID_ALPHABET) for _ in range(_REQUEST_ID_LENGTH))


def _decode(value: Any) -> str:
    return value.decode() if isinstance(value, bytes) else str(value)


def parse_fields(reply: Sequence[Any]) -> dict[str, int]:
    """Turn a flat HGETALL reply ``[id, inc, id, inc, ...]`` into a dict."""
    if isinstance(reply, dict):
        return {_decode(k): int(v) for k, v in reply.items()}
    items = list(reply or [])
    return {_decode(items[i]): int(items[i + 1]) for i in range(0, len(items) - 1, 2)}


def _run_everywhere(
    ctx: MultiRegionContext, script: LuaScript, keys: list[Any], args: list[Any]
) -> list[asyncio.Task]:
    return [
        spawn(safe_eval(redis, script, keys, args), name=f"{script.name}[{index}]")
        for index, redis in enumerate(ctx.regions)
    ]


async def reconcile(
    ctx: MultiRegionContext,
    key: str,
    tokens: int,
    views: Sequence[Optional[dict[str, int]]],
    ttl: int,
) -> int:
    """Replay request ids missing from each region's view of one bucket.

    Args:
        ctx: The multi-region context
        key: Bucket key to repair
        tokens: Capacity; regions already at or above it are skipped
        views: Per region ``request_id -> increment`` map, ``None`` for a
            region that failed to answer
        ttl: Bucket lifetime in ms, set on regions that had no bucket yet

    Returns:
        Number of regions written to.
    """
    union: dict[str, int] = {}
    for view in views:
        if view:
            for request_id, increment in view.items():
                union.setdefault(request_id, increment)

    repaired = 0
    for index, (redis, view) in enumerate(zip(ctx.regions, views)):
        if view is None:
            continue
        if sum(view.values()) >= tokens:
            continue
        missing = {rid: inc for rid, inc in union.items() if rid not in view}
        if not missing:
            continue
        async with redis.pipeline(transaction=True) as pipe:
            pipe.hset(key, mapping=missing)
            if not view:
                pipe.pexpire(key, ttl)
            await pipe.execute()
        repaired += 1
        logger.debug(
            f"Replayed {len(missing)} requests into region {index}",
            extra=get_log_context(identifier=key, region=index),
        )
    return repaired


async def _collect(tasks: list[asyncio.Task], key: str) -> list[Optional[Any]]:
    results = await asyncio.gather(*tasks, return_exceptions=True)
    replies: list[Optional[Any]] = []
    for index, result in enumerate(results):
        if isinstance(result, BaseException):
            logger.warning(
                f"Region {index} failed during reconciliation: {result}",
                extra=get_log_context(identifier=key, region=index),
            )
            replies.append(None)
        else:
            replies.append(result)
    return replies


async def reset_everywhere(ctx: MultiRegionContext, identifier: str, pattern: str) -> None:
    if ctx.cache is not None:
        ctx.cache.pop(identifier)
    await asyncio.gather(*(
        safe_eval(redis, RESET_SCRIPT, [pattern], []) for redis in ctx.regions
    ))


class MultiRegionFixedWindow(Algorithm):
    """Fixed window over N regions, first answer wins, reconciled in the background."""

    name = "fixedWindow"

    def __init__(self, tokens: int, window: str | int):
        self.tokens = require_positive("tokens", tokens)
        self.window = ms(window)

    @property
    def limit_value(self) -> int:
        return self.tokens

    async def limit(
        self, ctx: MultiRegionContext, identifier: str, rate: Optional[int] = None
    ) -> RateLimitResponse:
        cached = self.check_cache(ctx, identifier)
        if cached is not None:
            return cached

        request_id = random_request_id()
        bucket = clock.now_ms() // self.window
        key = f"{identifier}:{bucket}"
        increment_by = increment_for(rate)

        tasks = _run_everywhere(
            ctx, MULTI_FIXED_WINDOW_LIMIT, [key], [request_id, self.window, increment_by]
        )
        first = parse_fields(await first_success(tasks))
        used = sum(first.values())
        remaining = self.tokens - used
        success = remaining >= 0
        reset = (bucket + 1) * self.window
        self.remember_rejection(ctx, identifier, success, reset)

        async def sync() -> None:
            replies = await _collect(tasks, key)
            views = [parse_fields(r) if r is not None else None for r in replies]
            await reconcile(ctx, key, self.tokens, views, self.window)

        return RateLimitResponse(
            success=success,
            limit=self.tokens,
            remaining=remaining,
            reset=reset,
            pending=isolate(sync(), "multi-region fixed window reconciliation"),
        )

    async def get_remaining(self, ctx: MultiRegionContext, identifier: str) -> RemainingResponse:
        bucket = clock.now_ms() // self.window
        tasks = _run_everywhere(ctx, MULTI_FIXED_WINDOW_REMAINING, [f"{identifier}:{bucket}"], [])
        used = sum(parse_fields(await first_success(tasks)).values())
        return RemainingResponse(
            remaining=self.tokens - used,
            reset=(bucket + 1) * self.window,
        )

    async def reset_tokens(self, ctx: MultiRegionContext, identifier: str) -> None:
        await reset_everywhere(ctx, identifier, f"{identifier}:*")


class MultiRegionSlidingWindow(Algorithm):
    """Sliding window over N regions, first answer wins, reconciled in the background."""

    name = "slidingWindow"

    def __init__(self, tokens: int, window: str | int):
        self.tokens = require_positive("tokens", tokens)
        self.window = ms(window)

    @property
    def limit_value(self) -> int:
        return self.tokens

    async def limit(
        self, ctx: MultiRegionContext, identifier: str, rate: Optional[int] = None
    ) -> RateLimitResponse:
        cached = self.check_cache(ctx, identifier)
        if cached is not None:
            return cached

        request_id = random_request_id()
        now = clock.now_ms()
        current_window = now // self.window
        current_key = f"{identifier}:{current_window}"
        previous_key = f"{identifier}:{current_window - 1}"
        increment_by = increment_for(rate)

        tasks = _run_everywhere(
            ctx,
            MULTI_SLIDING_WINDOW_LIMIT,
            [current_key, previous_key],
            [self.tokens, now, self.window, request_id, increment_by],
        )

        def view_of(reply: Any) -> dict[str, int]:
            # The script reads the hash before writing, so add our own entry back.
            current_fields, _previous_fields, admitted = reply
            current = parse_fields(current_fields)
            if admitted:
                current[request_id] = increment_by
            return current

        first = await first_success(tasks)
        success = bool(first[2])
        previous_used = sum(parse_fields(first[1]).values())
        current_used = sum(view_of(first).values())

        percentage_in_current = (now % self.window) / self.window
        previous_partial = math.floor((1 - percentage_in_current) * previous_used)
        remaining = self.tokens - (previous_partial + current_used)

        reset = (current_window + 1) * self.window
        self.remember_rejection(ctx, identifier, success, reset)

        async def sync() -> None:
            replies = await _collect(tasks, current_key)
            views = [view_of(r) if r is not None else None for r in replies]
            await reconcile(ctx, current_key, self.tokens, views, self.window * 2 + 1000)

        return RateLimitResponse(
            success=success,
            limit=self.tokens,
            remaining=remaining,
            reset=reset,
            pending=isolate(sync(), "multi-region sliding window reconciliation"),
        )

    async def get_remaining(self, ctx: MultiRegionContext, identifier: str) -> RemainingResponse:
        now = clock.now_ms()
        current_window = now // self.window
        tasks = _run_everywhere(
            ctx,
            MULTI_SLIDING_WINDOW_REMAINING,
            [f"{identifier}:{current_window}", f"{identifier}:{current_window - 1}"],
            [now, self.window],
        )
        used = int(await first_success(tasks))
        return RemainingResponse(
            remaining=self.tokens - used,
            reset=(current_window + 1) * self.window,
        )

    async def reset_tokens(self, ctx: MultiRegionContext, identifier: str) -> None:
        await reset_everywhere(ctx, identifier, f"{identifier}:*")
