"""Region contexts: the Redis handles an algorithm runs against.

A single-region context wraps one Redis client. A multi-region context
wraps N independent replicas with no consistency between them. Both share
at most one process-wide ephemeral cache.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

from redis.exceptions import NoScriptError

from edgelimit.app.services.ratelimit.ephemeral_cache import EphemeralCache
from edgelimit.app.services.ratelimit.redis_lua import LuaScript

logger = logging.getLogger(__name__)


async def safe_eval(redis: Any, script: LuaScript, keys: Sequence[Any], args: Sequence[Any]) -> Any:
    """Run a script by hash, loading it once if Redis does not know it yet.

    Args:
        redis: An async Redis client
        script: The script to run
        keys: KEYS passed to the script
        args: ARGV passed to the script

    Returns:
        The script's reply as decoded by the client.
    """
    try:
        return await redis.evalsha(script.sha, len(keys), *keys, *args)
    except NoScriptError:
        sha = await redis.script_load(script.body)
        if isinstance(sha, bytes):
            sha = sha.decode()
        logger.debug(f"Loaded Lua script {script.name} ({sha})")
        if sha != script.sha:
            logger.warning(
                f"Expected hash {script.sha} for script {script.name} but Redis "
                f"returned {sha}. Rate limiting works as usual but every call "
                f"will reload the script."
            )
        return await redis.evalsha(sha, len(keys), *keys, *args)


@dataclass
class SingleRegionContext:
    """One Redis backend."""
    redis: Any
    cache: Optional[EphemeralCache] = None

    multi_region = False

    @property
    def primary_redis(self) -> Any:
        return self.redis


@dataclass
class MultiRegionContext:
    """N independent Redis replicas sharing one local cache."""
    regions: list[Any] = field(default_factory=list)
    cache: Optional[EphemeralCache] = None

    multi_region = True

    def __post_init__(self) -> None:
        if not self.regions:
            raise ValueError("MultiRegionContext requires at least one region")

    @property
    def primary_redis(self) -> Any:
        return self.regions[0]


BackendContext = SingleRegionContext | MultiRegionContext
