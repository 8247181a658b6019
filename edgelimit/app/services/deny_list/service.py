"""Deny list checks and their merge into rate limit decisions.

A deny list is a Redis set of members (identifiers, IPs, user agents,
country codes) that are always rejected. Members found on it are cached
locally for a minute so repeated offenders never reach Redis.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from edgelimit.app.core.logging import get_log_context
from edgelimit.app.services.deny_list.cache import DenyListCache
from edgelimit.app.services.deny_list.ip_deny_list import (
    update_ip_deny_list,
    validate_threshold,
)
from edgelimit.app.services.deny_list.keys import (
    all_deny_lists_key,
    ip_deny_list_status_key,
)
from edgelimit.app.services.deny_list.redis_lua import (
    CHECK_DENY_LIST_SCRIPT,
    IP_DENY_LIST_STATUS_EXPIRED,
)
from edgelimit.app.services.ratelimit.concurrency import gather_pending, isolate
from edgelimit.app.services.ratelimit.context import safe_eval
from edgelimit.app.services.ratelimit.models import (
    RESOLVED,
    RateLimitReason,
    RateLimitResponse,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DenyListResponse:
    """Outcome of a backend deny list check.

    Attributes:
        denied_value: The last member found on the deny list, if any
        invalid_ip_deny_list: True when the IP list status has expired and
            this caller is responsible for refreshing it
    """
    denied_value: Optional[str] = None
    invalid_ip_deny_list: bool = False


NOT_DENIED = DenyListResponse()


async def check_deny_list(
    redis: Any,
    prefix: str,
    members: Sequence[str],
    cache: DenyListCache,
) -> DenyListResponse:
    """Check members against the backend deny list in one round trip.

    Every denied member is cached locally. When several are denied the
    last one is reported.
    """
    if not members:
        return NOT_DENIED

    denied, status = await safe_eval(
        redis,
        CHECK_DENY_LIST_SCRIPT,
        [all_deny_lists_key(prefix), ip_deny_list_status_key(prefix)],
        list(members),
    )

    denied_value: Optional[str] = None
    for member, is_denied in zip(members, denied):
        if int(is_denied):
            cache.block(member)
            denied_value = member

    return DenyListResponse(
        denied_value=denied_value,
        invalid_ip_deny_list=int(status) == IP_DENY_LIST_STATUS_EXPIRED,
    )


def resolve_limit_payload(
    redis: Any,
    prefix: str,
    ratelimit_response: RateLimitResponse,
    deny_list_response: DenyListResponse,
    threshold: int,
    http_client: Optional[Any] = None,
) -> RateLimitResponse:
    """Merge a deny list outcome into a rate limit response.

    A denied member overrides the algorithm's decision. An expired IP list
    schedules a background refresh whose completion is folded into
    ``pending``.

    Raises:
        ThresholdError: If a refresh is due and threshold is outside 1..8.
    """
    if deny_list_response.denied_value:
        ratelimit_response.success = False
        ratelimit_response.remaining = 0
        ratelimit_response.reason = RateLimitReason.DENY_LIST
        ratelimit_response.denied_value = deny_list_response.denied_value
        logger.debug(
            "Request denied by deny list",
            extra=get_log_context(
                prefix=prefix,
                reason=RateLimitReason.DENY_LIST.value,
                denied_value=deny_list_response.denied_value,
            ),
        )

    if deny_list_response.invalid_ip_deny_list:
        validate_threshold(threshold)
        refresh = isolate(
            update_ip_deny_list(redis, prefix, threshold, http_client=http_client),
            "ip deny list refresh",
        )
        ratelimit_response.pending = gather_pending(ratelimit_response.pending, refresh)

    return ratelimit_response


def default_denied_response(denied_value: str) -> RateLimitResponse:
    """Canned rejection for members already cached as denied."""
    return RateLimitResponse(
        success=False,
        limit=0,
        remaining=0,
        reset=0,
        pending=RESOLVED,
        reason=RateLimitReason.DENY_LIST,
        denied_value=denied_value,
    )


async def add_to_deny_list(redis: Any, prefix: str, members: Sequence[str]) -> int:
    """Add members to the deny list. Returns how many were new."""
    if not members:
        return 0
    added = await redis.sadd(all_deny_lists_key(prefix), *members)
    logger.info(f"Added {added} members to deny list", extra=get_log_context(prefix=prefix))
    return int(added)


async def remove_from_deny_list(redis: Any, prefix: str, members: Sequence[str]) -> int:
    """Remove members from the deny list. Returns how many were present.

    Members removed here are only cleared from the local cache of this
    process once their cached denial expires.
    """
    if not members:
        return 0
    removed = await redis.srem(all_deny_lists_key(prefix), *members)
    logger.info(f"Removed {removed} members from deny list", extra=get_log_context(prefix=prefix))
    return int(removed)
