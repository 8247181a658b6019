"""Synchronization of the IP reputation list into the deny list.

The list comes from the ipsum project, which publishes one file per
threshold: ``levels/<n>.txt`` lists addresses reported by at least ``n``
blacklists. ipsum refreshes daily, so the local copy is marked valid until
the next 02:00 UTC.
"""

import logging
from typing import Any, Optional

import httpx

from edgelimit.app.core import clock
from edgelimit.app.core.config import settings
from edgelimit.app.core.http_client import create_http_client
from edgelimit.app.core.logging import get_log_context
from edgelimit.app.exceptions import IpDenyListFetchError, ThresholdError
from edgelimit.app.services.deny_list.keys import (
    all_deny_lists_key,
    ip_deny_list_key,
    ip_deny_list_status_key,
)

logger = logging.getLogger(__name__)

MILLISECONDS_IN_HOUR = 60 * 60 * 1000
MILLISECONDS_IN_DAY = 24 * MILLISECONDS_IN_HOUR
MILLISECONDS_TO_2AM = 2 * MILLISECONDS_IN_HOUR

MIN_THRESHOLD = 1
MAX_THRESHOLD = 8


def get_ip_list_ttl(now: Optional[int] = None) -> int:
    """Milliseconds from now until the next 02:00 UTC."""
    if now is None:
        now = clock.now_ms()
    time_since_last_2am = (now - MILLISECONDS_TO_2AM) % MILLISECONDS_IN_DAY
    return MILLISECONDS_IN_DAY - time_since_last_2am


def validate_threshold(threshold: Any) -> int:
    if (
        isinstance(threshold, bool)
        or not isinstance(threshold, int)
        or not MIN_THRESHOLD <= threshold <= MAX_THRESHOLD
    ):
        raise ThresholdError(threshold)
    return threshold


async def get_ip_deny_list(
    threshold: int,
    http_client: Optional[httpx.AsyncClient] = None,
    base_url: Optional[str] = None,
) -> list[str]:
    """Download the IP list for a threshold.

    Args:
        threshold: Minimum number of blacklists an IP must appear on (1..8)
        http_client: Client to reuse; a short-lived one is created otherwise
        base_url: Overrides ``settings.ip_deny_list_base_url``

    Raises:
        ThresholdError: If threshold is outside 1..8
        IpDenyListFetchError: On transport errors or non-2xx responses
    """
    validate_threshold(threshold)
    url = f"{(base_url or settings.ip_deny_list_base_url).rstrip('/')}/{threshold}.txt"

    try:
        if http_client is not None:
            response = await http_client.get(url)
        else:
            async with create_http_client() as client:
                response = await client.get(url)
        response.raise_for_status()
    except httpx.HTTPStatusError as e:
        raise IpDenyListFetchError(
            f"Error fetching data: {e.response.status_code} {e.response.reason_phrase}"
        ) from e
    except httpx.HTTPError as e:
        raise IpDenyListFetchError(str(e)) from e

    return [line.strip() for line in response.text.split("\n") if line.strip()]


async def update_ip_deny_list(
    redis: Any,
    prefix: str,
    threshold: int,
    ttl: Optional[int] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    base_url: Optional[str] = None,
) -> list[Any]:
    """Replace the IP list contribution to the deny list.

    Runs as one MULTI transaction:

    1. remove the previous IP entries from the combined set
    2. replace the IP set with the fresh download
    3. drop IPs that were already denied manually, so disabling the IP list
       later never removes a manual entry
    4. merge the IP set back into the combined set
    5. mark the status valid for ``ttl`` ms (default: until next 02:00 UTC)

    Returns:
        The transaction's replies.
    """
    ips = await get_ip_deny_list(threshold, http_client=http_client, base_url=base_url)

    all_key = all_deny_lists_key(prefix)
    ip_key = ip_deny_list_key(prefix)

    async with redis.pipeline(transaction=True) as pipe:
        pipe.sdiffstore(all_key, [all_key, ip_key])
        pipe.delete(ip_key)
        if ips:
            pipe.sadd(ip_key, *ips)
        pipe.sdiffstore(ip_key, [ip_key, all_key])
        pipe.sunionstore(all_key, [all_key, ip_key])
        pipe.set(ip_deny_list_status_key(prefix), "valid", px=ttl if ttl is not None else get_ip_list_ttl())
        result = await pipe.execute()

    logger.info(
        f"Refreshed IP deny list with {len(ips)} addresses (threshold {threshold})",
        extra=get_log_context(prefix=prefix),
    )
    return result


async def disable_ip_deny_list(redis: Any, prefix: str) -> list[Any]:
    """Remove the IP list from the deny list and stop refreshing it.

    Manually denied members are kept.
    """
    all_key = all_deny_lists_key(prefix)
    ip_key = ip_deny_list_key(prefix)

    async with redis.pipeline(transaction=True) as pipe:
        pipe.sdiffstore(all_key, [all_key, ip_key])
        pipe.delete(ip_key)
        pipe.set(ip_deny_list_status_key(prefix), "disabled")
        result = await pipe.execute()

    logger.info("Disabled IP deny list", extra=get_log_context(prefix=prefix))
    return result
