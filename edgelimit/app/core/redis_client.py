"""Redis client construction from settings."""

from typing import Optional

import redis.asyncio as aioredis

from edgelimit.app.core.config import settings


def create_redis_client(redis_url: Optional[str] = None) -> aioredis.Redis:
    """Create an async Redis client for one region.

    Args:
        redis_url: Connection URL, defaults to ``settings.redis_url``.
    """
    return aioredis.from_url(redis_url or settings.redis_url)


def create_region_clients(redis_urls: Optional[list[str]] = None) -> list[aioredis.Redis]:
    """Create one async Redis client per region URL.

    Falls back to the single ``settings.redis_url`` when no region URLs are
    configured, giving a one-region deployment.
    """
    urls = redis_urls if redis_urls is not None else settings.redis_region_urls
    if not urls:
        urls = [settings.redis_url]
    return [aioredis.from_url(url) for url in urls]
