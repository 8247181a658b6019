"""Rate limit orchestration.

``Ratelimit`` ties an algorithm to its Redis context and adds the parts
every deployment shares: the ephemeral cache, deny list protection, the
timeout race and analytics.

Example:
    >>> ratelimit = Ratelimit.single_region(redis, sliding_window(10, "10 s"))
    >>> response = await ratelimit.limit("user-1")
    >>> if not response.success:
    ...     return "Too many requests"
"""

import asyncio
import logging
from typing import Any, Optional, Sequence

from edgelimit.app.core import clock
from edgelimit.app.core.config import settings
from edgelimit.app.core.logging import get_log_context
from edgelimit.app.core.redis_client import create_redis_client, create_region_clients
from edgelimit.app.exceptions import RatelimitError
from edgelimit.app.services.deny_list import (
    NOT_DENIED,
    DenyListCache,
    DenyListResponse,
    check_deny_list,
    default_denied_response,
    get_deny_list_cache,
    resolve_limit_payload,
)
from edgelimit.app.services.ratelimit.algorithms import Limiter
from edgelimit.app.services.ratelimit.analytics import Analytics
from edgelimit.app.services.ratelimit.concurrency import gather_pending, isolate, spawn
from edgelimit.app.services.ratelimit.context import (
    BackendContext,
    MultiRegionContext,
    SingleRegionContext,
)
from edgelimit.app.services.ratelimit.ephemeral_cache import CacheConfig
from edgelimit.app.services.ratelimit.models import (
    LimitOptions,
    RateLimitReason,
    RateLimitResponse,
    RemainingResponse,
)

logger = logging.getLogger(__name__)


class Ratelimit:
    """Rate limiter bound to one algorithm and one region context.

    Args:
        context: Single or multi-region Redis context
        limiter: Algorithm definition, e.g. ``fixed_window(10, "10 s")``
        prefix: Namespace for every Redis key. Defaults to
            ``settings.ratelimit_prefix``
        timeout: Milliseconds to wait for Redis before allowing the request
            anyway; 0 disables the race. Defaults to
            ``settings.ratelimit_timeout_ms``
        ephemeral_cache: How to obtain the local block cache. Defaults to a
            fresh private cache
        analytics: ``True`` to record events, or an ``Analytics`` instance.
            Defaults to ``settings.ratelimit_analytics``
        enable_protection: Check the deny list on every call. Defaults to
            ``settings.ratelimit_enable_protection``
        deny_list_threshold: ipsum level (1..8) used when the IP list is
            refreshed. Defaults to ``settings.deny_list_threshold``
        deny_list_cache: Local cache of denied members. Defaults to the
            process-wide cache
        http_client: Client used for IP list downloads

    Raises:
        UnsupportedContextError: If the algorithm does not support the
            context shape.
    """

    def __init__(
        self,
        context: BackendContext,
        limiter: Limiter,
        *,
        prefix: Optional[str] = None,
        timeout: Optional[int] = None,
        ephemeral_cache: Optional[CacheConfig] = None,
        analytics: bool | Analytics | None = None,
        enable_protection: Optional[bool] = None,
        deny_list_threshold: Optional[int] = None,
        deny_list_cache: Optional[DenyListCache] = None,
        http_client: Optional[Any] = None,
    ) -> None:
        self.prefix = prefix if prefix is not None else settings.ratelimit_prefix
        self.timeout = timeout if timeout is not None else settings.ratelimit_timeout_ms
        if self.timeout < 0:
            raise ValueError("timeout must not be negative")

        if ephemeral_cache is not None or context.cache is None:
            context.cache = (ephemeral_cache or CacheConfig.default()).build()
        self.context = context
        self.limiter = limiter
        self.algorithm = limiter.bind(context)
        self.primary_redis = context.primary_redis

        if analytics is None:
            analytics = settings.ratelimit_analytics
        if isinstance(analytics, Analytics):
            self.analytics: Optional[Analytics] = analytics
        elif analytics:
            self.analytics = Analytics(
                self.primary_redis, self.prefix, settings.analytics_retention_days
            )
        else:
            self.analytics = None

        self.enable_protection = (
            enable_protection
            if enable_protection is not None
            else settings.ratelimit_enable_protection
        )
        self.deny_list_threshold = (
            deny_list_threshold
            if deny_list_threshold is not None
            else settings.deny_list_threshold
        )
        self.deny_list_cache = deny_list_cache if deny_list_cache is not None else get_deny_list_cache()
        self._http_client = http_client

    @classmethod
    def single_region(cls, redis: Any, limiter: Limiter, **kwargs: Any) -> "Ratelimit":
        """Rate limiter backed by one Redis client."""
        return cls(SingleRegionContext(redis=redis), limiter, **kwargs)

    @classmethod
    def multi_region(
        cls, redis_clients: Sequence[Any], limiter: Limiter, **kwargs: Any
    ) -> "Ratelimit":
        """Rate limiter replicated over several independent Redis clients."""
        return cls(MultiRegionContext(regions=list(redis_clients)), limiter, **kwargs)

    @classmethod
    def from_settings(cls, limiter: Limiter, **kwargs: Any) -> "Ratelimit":
        """Build clients from ``settings.redis_region_urls`` or ``settings.redis_url``."""
        if settings.redis_region_urls:
            return cls.multi_region(create_region_clients(), limiter, **kwargs)
        return cls.single_region(create_redis_client(), limiter, **kwargs)

    def get_key(self, identifier: str) -> str:
        return f"{self.prefix}:{identifier}"

    @staticmethod
    def get_defined_members(identifier: str, options: Optional[LimitOptions]) -> list[str]:
        """Identifier plus whichever of ip, user agent and country are set."""
        members = [identifier]
        if options is not None:
            members.extend([options.ip, options.user_agent, options.country])
        return [m for m in members if m]

    async def limit(
        self, identifier: str, options: Optional[LimitOptions] = None
    ) -> RateLimitResponse:
        """Decide whether a request for identifier may proceed.

        When Redis does not answer within ``timeout`` ms the request is
        allowed with ``reason="timeout"``; the decision keeps running in the
        background and its completion is exposed through ``pending``.

        Args:
            identifier: What to limit on, e.g. a user id or an API key hash
            options: Rate weight and deny list attributes

        Returns:
            RateLimitResponse with success status and metadata

        Raises:
            RatelimitError: Configuration errors, or every region failing
            redis.exceptions.RedisError: Backend errors raised before the
                timeout elapsed
        """
        started = clock.now_ms()

        if self.timeout > 0:
            task = spawn(
                self.get_ratelimit_response(identifier, options),
                name=f"ratelimit:{identifier}",
            )
            done, _ = await asyncio.wait({task}, timeout=self.timeout / 1000)
            if task in done:
                response = task.result()
            else:
                logger.warning(
                    f"Rate limit decision exceeded {self.timeout}ms, allowing request",
                    extra=get_log_context(
                        identifier=identifier,
                        prefix=self.prefix,
                        algorithm=self.algorithm.name,
                        reason=RateLimitReason.TIMEOUT.value,
                    ),
                )
                response = RateLimitResponse(
                    success=True,
                    limit=0,
                    remaining=0,
                    reset=0,
                    pending=isolate(_settle(task), "rate limit decision after timeout"),
                    reason=RateLimitReason.TIMEOUT,
                )
        else:
            response = await self.get_ratelimit_response(identifier, options)

        logger.debug(
            f"Rate limit decision: success={response.success} remaining={response.remaining}",
            extra=get_log_context(
                identifier=identifier,
                prefix=self.prefix,
                algorithm=self.algorithm.name,
                reason=response.reason.value if response.reason else None,
                duration_ms=clock.now_ms() - started,
            ),
        )
        return self.submit_analytics(response, identifier, options)

    async def get_ratelimit_response(
        self, identifier: str, options: Optional[LimitOptions] = None
    ) -> RateLimitResponse:
        """Algorithm decision merged with the deny list, without the timeout race."""
        key = self.get_key(identifier)
        members = self.get_defined_members(identifier, options)
        rate = options.rate if options is not None else None

        denied_value = self.deny_list_cache.check(members)
        if denied_value is not None:
            response = default_denied_response(denied_value)
            deny_list_response = DenyListResponse(denied_value=denied_value)
        elif self.enable_protection:
            response, deny_list_response = await asyncio.gather(
                self.algorithm.limit(self.context, key, rate),
                check_deny_list(self.primary_redis, self.prefix, members, self.deny_list_cache),
            )
        else:
            response = await self.algorithm.limit(self.context, key, rate)
            deny_list_response = NOT_DENIED

        return resolve_limit_payload(
            self.primary_redis,
            self.prefix,
            response,
            deny_list_response,
            self.deny_list_threshold,
            http_client=self._http_client,
        )

    def submit_analytics(
        self,
        response: RateLimitResponse,
        identifier: str,
        options: Optional[LimitOptions] = None,
    ) -> RateLimitResponse:
        """Record the decision in the background and fold it into ``pending``."""
        if self.analytics is None:
            return response

        denied = response.reason is RateLimitReason.DENY_LIST
        event = {
            "identifier": response.denied_value if denied else identifier,
            "time": clock.now_ms(),
            "success": "denied" if denied else response.success,
            **self.analytics.extract_geo(options),
        }
        recording = spawn(self.analytics.record_safely(event), name="analytics")
        response.pending = gather_pending(response.pending, recording)
        return response

    async def block_until_ready(
        self,
        identifier: str,
        timeout: int,
        options: Optional[LimitOptions] = None,
    ) -> RateLimitResponse:
        """Wait until a request for identifier may proceed or timeout ms pass.

        The deadline is checked between attempts, so the call can return up
        to one ``limit`` round trip after it.

        Raises:
            ValueError: If timeout is not positive
            RatelimitError: If a rejection carries no reset time
        """
        if timeout <= 0:
            raise ValueError("timeout must be positive")

        deadline = clock.now_ms() + timeout
        while True:
            response = await self.limit(identifier, options)
            if response.success:
                return response
            if response.reset == 0:
                raise RatelimitError(
                    f"Rejected without a reset time (reason: {response.reason})"
                )

            wait = min(response.reset, deadline) - clock.now_ms()
            await asyncio.sleep(max(wait, 0) / 1000)
            if clock.now_ms() > deadline:
                return response

    async def get_remaining(self, identifier: str) -> RemainingResponse:
        """Remaining capacity for identifier, without consuming any."""
        return await self.algorithm.get_remaining(self.context, self.get_key(identifier))

    async def reset_used_tokens(self, identifier: str) -> None:
        """Forget all usage recorded for identifier."""
        await self.algorithm.reset_tokens(self.context, self.get_key(identifier))


async def _settle(task: asyncio.Task) -> None:
    """Wait for a decision that lost the timeout race and its own background work."""
    response = await task
    await response.pending
