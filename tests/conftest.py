"""Shared fixtures: an in-memory Redis double and a controllable clock."""

import asyncio
import fnmatch
import hashlib
import math
from typing import Any, Optional
from unittest.mock import patch

import pytest
from redis.exceptions import NoScriptError, ResponseError

from edgelimit.app.core import clock
from edgelimit.app.services.deny_list.cache import reset_deny_list_cache
from edgelimit.app.services.deny_list.redis_lua import CHECK_DENY_LIST_SCRIPT
from edgelimit.app.services.ratelimit import redis_lua

# Midnight UTC, aligned to every window unit.
EPOCH_START = 1_699_920_000_000


class FakeClock:
    """Callable replacement for ``clock.now_ms``."""

    def __init__(self, now: int = EPOCH_START):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakePipeline:
    """Buffers commands and replays them against the owning FakeRedis."""

    def __init__(self, redis: "FakeRedis", transaction: bool):
        self._redis = redis
        self.transaction = transaction
        self.commands: list[tuple[str, tuple, dict]] = []

    async def __aenter__(self) -> "FakePipeline":
        return self

    async def __aexit__(self, *exc_info) -> None:
        return None

    def __getattr__(self, name: str):
        def record(*args, **kwargs):
            self.commands.append((name, args, kwargs))
            return self
        return record

    async def execute(self) -> list[Any]:
        self._redis.pipelines.append(self)
        await self._redis._before_command("EXEC")
        results = []
        for name, args, kwargs in self.commands:
            results.append(getattr(self._redis, f"_{name}")(*args, **kwargs))
        return results


class FakeRedis:
    """In-memory stand-in for ``redis.asyncio.Redis``.

    ``evalsha`` dispatches on the script hash to a Python rendition of the
    Lua script. Like a freshly started Redis, no script is known until
    ``script_load`` is called.

    Attributes:
        delay: Seconds every command sleeps before running
        error: Raised by every command when set
    """

    def __init__(self, name: str = "redis", delay: float = 0.0):
        self.name = name
        self.delay = delay
        self.error: Optional[Exception] = None
        self.data: dict[str, Any] = {}
        self.expiry: dict[str, int] = {}
        self.loaded: set[str] = set()
        self.script_loads = 0
        self.evals: list[str] = []
        self.pipelines: list[FakePipeline] = []
        self._scripts = {
            redis_lua.FIXED_WINDOW_LIMIT.sha: self._fixed_window_limit,
            redis_lua.FIXED_WINDOW_REMAINING.sha: self._fixed_window_remaining,
            redis_lua.SLIDING_WINDOW_LIMIT.sha: self._sliding_window_limit,
            redis_lua.SLIDING_WINDOW_REMAINING.sha: self._sliding_window_remaining,
            redis_lua.TOKEN_BUCKET_LIMIT.sha: self._token_bucket_limit,
            redis_lua.TOKEN_BUCKET_REMAINING.sha: self._token_bucket_remaining,
            redis_lua.MULTI_FIXED_WINDOW_LIMIT.sha: self._multi_fixed_window_limit,
            redis_lua.MULTI_FIXED_WINDOW_REMAINING.sha: self._multi_fixed_window_remaining,
            redis_lua.MULTI_SLIDING_WINDOW_LIMIT.sha: self._multi_sliding_window_limit,
            redis_lua.MULTI_SLIDING_WINDOW_REMAINING.sha: self._multi_sliding_window_remaining,
            redis_lua.RESET_SCRIPT.sha: self._reset,
            CHECK_DENY_LIST_SCRIPT.sha: self._check_deny_list,
        }

    # -- plumbing ----------------------------------------------------------

    async def _before_command(self, name: str) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error

    def _alive(self, key: str) -> bool:
        deadline = self.expiry.get(key)
        if deadline is not None and deadline <= clock.now_ms():
            self.data.pop(key, None)
            self.expiry.pop(key, None)
        return key in self.data

    def _hash(self, key: str) -> dict[str, int]:
        if not self._alive(key):
            return {}
        value = self.data[key]
        if not isinstance(value, dict):
            raise ResponseError("WRONGTYPE Operation against a key holding the wrong kind of value")
        return value

    def _set_members(self, key: str) -> set[str]:
        if not self._alive(key):
            return set()
        return self.data[key]

    def _flat(self, fields: dict[str, int]) -> list[str]:
        flat: list[str] = []
        for field, value in fields.items():
            flat.extend([field, str(value)])
        return flat

    # -- plain commands (sync bodies reused by pipelines) -----------------

    def _get(self, key: str) -> Optional[str]:
        return self.data.get(key) if self._alive(key) else None

    def _set(self, key: str, value: Any, px: Optional[int] = None, ex: Optional[int] = None) -> bool:
        self.data[key] = str(value)
        self.expiry.pop(key, None)
        if px is not None:
            self.expiry[key] = clock.now_ms() + int(px)
        elif ex is not None:
            self.expiry[key] = clock.now_ms() + int(ex) * 1000
        return True

    def _incrby(self, key: str, amount: int) -> int:
        value = int(self._get(key) or 0) + int(amount)
        self.data[key] = str(value)
        return value

    def _pexpire(self, key: str, ms: int) -> bool:
        if not self._alive(key):
            return False
        self.expiry[key] = clock.now_ms() + int(ms)
        return True

    def _ttl(self, key: str) -> int:
        if not self._alive(key):
            return -2
        if key not in self.expiry:
            return -1
        return math.ceil((self.expiry[key] - clock.now_ms()) / 1000)

    def _hset(self, key: str, field: Optional[str] = None, value: Any = None, mapping: Optional[dict] = None) -> int:
        fields = self._hash(key)
        self.data[key] = fields
        updates = dict(mapping or {})
        if field is not None:
            updates[field] = value
        added = 0
        for f, v in updates.items():
            if f not in fields:
                added += 1
            fields[f] = int(v)
        return added

    def _hgetall(self, key: str) -> dict[str, int]:
        return {f: str(v) for f, v in self._hash(key).items()}

    def _hincrby(self, key: str, field: str, amount: int = 1) -> int:
        fields = self._hash(key)
        self.data[key] = fields
        fields[field] = fields.get(field, 0) + int(amount)
        return fields[field]

    def _delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._alive(key):
                removed += 1
            self.data.pop(key, None)
            self.expiry.pop(key, None)
        return removed

    def _sadd(self, key: str, *members: str) -> int:
        current = self._set_members(key)
        added = len(set(members) - current)
        self.data[key] = current | set(members)
        return added

    def _srem(self, key: str, *members: str) -> int:
        current = self._set_members(key)
        removed = len(current & set(members))
        remaining = current - set(members)
        if remaining:
            self.data[key] = remaining
        else:
            self._delete(key)
        return removed

    def _smembers(self, key: str) -> set[str]:
        return set(self._set_members(key))

    def _store_set(self, dest: str, members: set[str]) -> int:
        self._delete(dest)
        if members:
            self.data[dest] = members
        return len(members)

    def _sdiffstore(self, dest: str, keys: list[str]) -> int:
        first, *others = keys
        result = set(self._set_members(first))
        for key in others:
            result -= self._set_members(key)
        return self._store_set(dest, result)

    def _sunionstore(self, dest: str, keys: list[str]) -> int:
        result: set[str] = set()
        for key in keys:
            result |= self._set_members(key)
        return self._store_set(dest, result)

    def __getattr__(self, name: str):
        # Async wrappers around the sync command bodies: redis.get(...) etc.
        if name.startswith("_"):
            raise AttributeError(name)
        body = getattr(type(self), f"_{name}", None)
        if body is None:
            raise AttributeError(name)

        async def command(*args, **kwargs):
            await self._before_command(name)
            return body(self, *args, **kwargs)
        return command

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self, transaction)

    # -- scripting ---------------------------------------------------------

    async def script_load(self, body: str) -> str:
        await self._before_command("SCRIPT LOAD")
        sha = hashlib.sha1(body.encode("utf-8")).hexdigest()
        self.loaded.add(sha)
        self.script_loads += 1
        return sha

    async def evalsha(self, sha: str, numkeys: int, *args: Any) -> Any:
        await self._before_command("EVALSHA")
        if sha not in self.loaded:
            raise NoScriptError("No matching script. Please use EVAL.")
        self.evals.append(sha)
        keys = list(args[:numkeys])
        argv = list(args[numkeys:])
        return self._scripts[sha](keys, argv)

    def _fixed_window_limit(self, keys, argv):
        window, increment_by = int(argv[0]), int(argv[1])
        used = self._incrby(keys[0], increment_by)
        if used == increment_by:
            self._pexpire(keys[0], window)
        return used

    def _fixed_window_remaining(self, keys, argv):
        return self._get(keys[0]) or 0

    def _sliding_window_limit(self, keys, argv):
        tokens, now, window, increment_by = (int(a) for a in argv)
        current = int(self._get(keys[0]) or 0)
        previous = int(self._get(keys[1]) or 0)
        previous = math.floor((1 - (now % window) / window) * previous)
        if previous + current >= tokens:
            return -1
        new_value = self._incrby(keys[0], increment_by)
        if new_value == increment_by:
            self._pexpire(keys[0], window * 2 + 1000)
        return tokens - (new_value + previous)

    def _sliding_window_remaining(self, keys, argv):
        now, window = int(argv[0]), int(argv[1])
        current = int(self._get(keys[0]) or 0)
        previous = int(self._get(keys[1]) or 0)
        return math.floor((1 - (now % window) / window) * previous) + current

    def _token_bucket_limit(self, keys, argv):
        max_tokens, interval, refill_rate, now, increment_by = (int(a) for a in argv)
        bucket = self._hash(keys[0])
        if not bucket:
            refilled_at, tokens = now, max_tokens
        else:
            refilled_at, tokens = bucket["refilledAt"], bucket["tokens"]

        if now >= refilled_at + interval:
            refills = (now - refilled_at) // interval
            tokens = min(max_tokens, tokens + refills * refill_rate)
            refilled_at += refills * interval

        if tokens <= 0:
            return [-1, refilled_at + interval]

        remaining = tokens - increment_by
        expire_at = math.ceil((max_tokens - remaining) / refill_rate) * interval
        self._hset(keys[0], mapping={"refilledAt": refilled_at, "tokens": remaining})
        self._pexpire(keys[0], expire_at)
        return [remaining, refilled_at + interval]

    def _token_bucket_remaining(self, keys, argv):
        bucket = self._hash(keys[0])
        if not bucket:
            return [int(argv[0]), redis_lua.TOKEN_BUCKET_IDENTIFIER_NOT_FOUND]
        return [bucket["tokens"], bucket["refilledAt"]]

    def _multi_fixed_window_limit(self, keys, argv):
        request_id, window, increment_by = argv[0], int(argv[1]), int(argv[2])
        self._hset(keys[0], request_id, increment_by)
        fields = self._flat(self._hash(keys[0]))
        if len(fields) == 2 and int(fields[1]) == increment_by:
            self._pexpire(keys[0], window)
        return fields

    def _multi_fixed_window_remaining(self, keys, argv):
        return self._flat(self._hash(keys[0]))

    def _multi_sliding_window_limit(self, keys, argv):
        tokens, now, window = int(argv[0]), int(argv[1]), int(argv[2])
        request_id, increment_by = argv[3], int(argv[4])
        current_fields = self._flat(self._hash(keys[0]))
        previous_fields = self._flat(self._hash(keys[1]))
        current = sum(self._hash(keys[0]).values())
        previous = sum(self._hash(keys[1]).values())
        previous = math.floor((1 - (now % window) / window) * previous)
        if previous + current >= tokens:
            return [current_fields, previous_fields, 0]
        self._hset(keys[0], request_id, increment_by)
        if current == 0:
            self._pexpire(keys[0], window * 2 + 1000)
        return [current_fields, previous_fields, 1]

    def _multi_sliding_window_remaining(self, keys, argv):
        now, window = int(argv[0]), int(argv[1])
        current = sum(self._hash(keys[0]).values())
        previous = sum(self._hash(keys[1]).values())
        return current + math.floor((1 - (now % window) / window) * previous)

    def _reset(self, keys, argv):
        for key in [k for k in list(self.data) if fnmatch.fnmatchcase(k, keys[0])]:
            self._delete(key)
        return None

    def _check_deny_list(self, keys, argv):
        denied = self._set_members(keys[0])
        results = [1 if member in denied else 0 for member in argv]
        status = self._ttl(keys[1])
        if status == -2:
            self._set(keys[1], "pending", ex=30)
        return [results, status]


def loaded_redis(name: str = "redis", delay: float = 0.0) -> FakeRedis:
    """A FakeRedis that already knows every script."""
    redis = FakeRedis(name=name, delay=delay)
    redis.loaded.update(script.sha for script in (*redis_lua.ALL_SCRIPTS, CHECK_DENY_LIST_SCRIPT))
    return redis


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture(autouse=True)
def reset_globals():
    """Reset the process-wide deny list cache around each test."""
    reset_deny_list_cache()
    yield
    reset_deny_list_cache()


@pytest.fixture
def fake_clock():
    """Freeze ``clock.now_ms`` at a window-aligned instant."""
    fake = FakeClock()
    with patch("edgelimit.app.core.clock.now_ms", fake):
        yield fake


@pytest.fixture
def redis():
    return loaded_redis()


@pytest.fixture
def regions():
    return [loaded_redis(name=f"region-{i}") for i in range(3)]
