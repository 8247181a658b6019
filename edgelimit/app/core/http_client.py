"""HTTP client factory for outbound fetches.

The only outbound HTTP traffic is the IP reputation list download, which
happens at most once per day per deployment, so clients are created per
refresh instead of being pooled for the process lifetime.
"""

import httpx

from edgelimit.app.core.config import settings


def create_http_client(**kwargs) -> httpx.AsyncClient:
    """Create a new HTTP client with default settings.

    Note: The returned client should be closed when done:
        async with create_http_client() as client:
            # use client
            pass

    Args:
        **kwargs: Override default settings. Can include:
            - timeout: Single timeout value (overrides all granular timeouts)
            - connect_timeout: Connection timeout
            - read_timeout: Read timeout
            - write_timeout: Write timeout
            - pool_timeout: Pool acquisition timeout

    Returns:
        A new httpx.AsyncClient instance with granular timeout configuration.
    """
    timeout_override = kwargs.get("timeout")
    if timeout_override is not None:
        timeout = httpx.Timeout(timeout_override)
    else:
        timeout = httpx.Timeout(
            settings.httpx_timeout,
            connect=kwargs.get("connect_timeout", settings.httpx_connect_timeout),
            read=kwargs.get("read_timeout", settings.httpx_read_timeout),
            write=kwargs.get("write_timeout", settings.httpx_write_timeout),
            pool=kwargs.get("pool_timeout", settings.httpx_pool_timeout),
        )

    return httpx.AsyncClient(timeout=timeout, follow_redirects=True)
