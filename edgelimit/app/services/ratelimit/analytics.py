"""Best-effort analytics for rate limit decisions.

Events are aggregated into hourly Redis hashes:

    <prefix>:events:<hour_bucket_ms>  ->  { <event json>: <count> }

The event JSON holds the identifier, the outcome (``true``, ``false`` or
``"denied"``) and any geo attributes, serialized with sorted keys so
identical events share one counter.
"""

import json
import logging
from typing import Any, Iterator, Optional

from edgelimit.app.core import clock
from edgelimit.app.core.logging import get_log_context
from edgelimit.app.services.ratelimit.models import LimitOptions

logger = logging.getLogger(__name__)

ANALYTICS_TABLE = "events"
BUCKET_MS = 60 * 60 * 1000
MAX_BUCKETS = 256

WRONGTYPE_HINT = (
    "Failed to record analytics. This can occur after upgrading from a "
    "version that stored analytics in a different layout. Disable analytics "
    "for an hour, then enable it again."
)


def get_bucket(timestamp_ms: int) -> int:
    """Start of the hourly bucket containing timestamp_ms."""
    return timestamp_ms - timestamp_ms % BUCKET_MS


class Analytics:
    """Records rate limit outcomes and reads usage back.

    Args:
        redis: The primary Redis client
        prefix: Key prefix shared with the rate limiter
        retention_days: How long each hourly bucket is kept
    """

    def __init__(self, redis: Any, prefix: str, retention_days: int = 90) -> None:
        self._redis = redis
        self.prefix = prefix
        self.retention_ms = retention_days * 24 * BUCKET_MS

    def _key(self, bucket: int) -> str:
        return f"{self.prefix}:{ANALYTICS_TABLE}:{bucket}"

    @staticmethod
    def extract_geo(options: Optional[LimitOptions]) -> dict[str, Any]:
        """Geo attributes to attach to an event, empty when unknown."""
        if options is None or not options.geo:
            return {}
        return dict(options.geo)

    async def record(self, event: dict[str, Any]) -> None:
        """Count one event in the bucket of its ``time`` field.

        Raises:
            redis.exceptions.RedisError: Propagated to the caller, which
                logs it (see ``record_safely``).
        """
        event = dict(event)
        timestamp = int(event.pop("time", None) or clock.now_ms())
        key = self._key(get_bucket(timestamp))
        field = json.dumps(event, sort_keys=True, separators=(",", ":"))

        async with self._redis.pipeline(transaction=False) as pipe:
            pipe.hincrby(key, field, 1)
            pipe.pexpire(key, self.retention_ms)
            await pipe.execute()

    async def record_safely(self, event: dict[str, Any]) -> None:
        """``record`` that logs failures instead of raising them."""
        try:
            await self.record(event)
        except Exception as e:
            message = WRONGTYPE_HINT if "WRONGTYPE" in str(e) else "Failed to record analytics"
            logger.warning(
                f"{message}: {e}",
                extra=get_log_context(identifier=event.get("identifier"), prefix=self.prefix),
            )

    def _bucket_count(self, cutoff_ms: int) -> int:
        hours = (get_bucket(clock.now_ms()) - get_bucket(cutoff_ms)) // BUCKET_MS
        return max(1, min(hours, MAX_BUCKETS))

    async def _read_buckets(self, count: int) -> list[tuple[int, dict[Any, Any]]]:
        newest = get_bucket(clock.now_ms())
        buckets = [newest - i * BUCKET_MS for i in range(count)]
        async with self._redis.pipeline(transaction=False) as pipe:
            for bucket in buckets:
                pipe.hgetall(self._key(bucket))
            replies = await pipe.execute()
        return list(zip(buckets, replies))

    @staticmethod
    def _events(fields: Optional[dict[Any, Any]]) -> Iterator[tuple[dict[str, Any], int]]:
        for raw, count in (fields or {}).items():
            if isinstance(raw, bytes):
                raw = raw.decode()
            try:
                event = json.loads(raw)
            except ValueError:
                logger.debug(f"Skipping malformed analytics field {raw!r}")
                continue
            yield event, int(count)

    async def get_usage(self, cutoff_ms: int = 0) -> dict[str, dict[str, int]]:
        """Allowed and blocked counts per identifier since cutoff_ms.

        At most the last 256 hourly buckets are read. Denied requests count
        as blocked.
        """
        usage: dict[str, dict[str, int]] = {}
        for _bucket, fields in await self._read_buckets(self._bucket_count(cutoff_ms)):
            for event, count in self._events(fields):
                identifier = event.get("identifier")
                if identifier is None:
                    continue
                entry = usage.setdefault(identifier, {"allowed": 0, "blocked": 0})
                if event.get("success") is True:
                    entry["allowed"] += count
                else:
                    entry["blocked"] += count
        return usage

    async def get_most_allowed_blocked(
        self, cutoff_ms: int = 0, top: int = 5
    ) -> dict[str, list[tuple[str, int]]]:
        """The ``top`` identifiers by allowed and by blocked count."""
        usage = await self.get_usage(cutoff_ms)
        by_allowed = sorted(usage.items(), key=lambda item: item[1]["allowed"], reverse=True)
        by_blocked = sorted(usage.items(), key=lambda item: item[1]["blocked"], reverse=True)
        return {
            "allowed": [(identifier, c["allowed"]) for identifier, c in by_allowed[:top] if c["allowed"]],
            "blocked": [(identifier, c["blocked"]) for identifier, c in by_blocked[:top] if c["blocked"]],
        }

    async def get_usage_over_time(
        self, timestamp_count: int, groupby: str
    ) -> list[dict[str, Any]]:
        """Hourly series of outcomes grouped by one event attribute.

        Args:
            timestamp_count: Number of hourly buckets to read, newest first
                (clamped to 1..256)
            groupby: Event attribute to group on, e.g. ``"identifier"`` or
                ``"country"``

        Returns:
            One entry per bucket, oldest first::

                {"time": 1699920000000,
                 "user-1": {"true": 3, "false": 1},
                 "user-2": {"denied": 2}}

            Events without the attribute are left out.
        """
        count = max(1, min(timestamp_count, MAX_BUCKETS))
        series: list[dict[str, Any]] = []
        for bucket, fields in reversed(await self._read_buckets(count)):
            point: dict[str, Any] = {"time": bucket}
            for event, hits in self._events(fields):
                value = event.get(groupby)
                if value is None:
                    continue
                success = event.get("success")
                outcome = success if isinstance(success, str) else json.dumps(success)
                counts = point.setdefault(str(value), {})
                counts[outcome] = counts.get(outcome, 0) + hits
            series.append(point)
        return series
