"""Redis Lua scripts for the rate limiting algorithms.

Every mutating operation runs as a single script so concurrent callers
hitting the same key cannot interleave a read-modify-write.
"""

import hashlib
from dataclasses import dataclass, field


@dataclass(frozen=True)
class LuaScript:
    """A Lua script body together with the SHA1 digest Redis caches it under."""

    name: str
    body: str
    sha: str = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "sha", hashlib.sha1(self.body.encode("utf-8")).hexdigest())


# ---------------------------------------------------------------------------
# Single region
# ---------------------------------------------------------------------------

FIXED_WINDOW_LIMIT = LuaScript("fixed_window_limit", """
    local key         = KEYS[1]
    local window      = ARGV[1]
    local incrementBy = tonumber(ARGV[2])

    local r = redis.call("INCRBY", key, incrementBy)
    if r == incrementBy then
        -- first write to this bucket
        redis.call("PEXPIRE", key, window)
    end

    return r
""")

FIXED_WINDOW_REMAINING = LuaScript("fixed_window_remaining", """
    local key = KEYS[1]
    local tokens = 0

    local value = redis.call("GET", key)
    if value then
        tokens = value
    end
    return tokens
""")

SLIDING_WINDOW_LIMIT = LuaScript("sliding_window_limit", """
    local currentKey  = KEYS[1]
    local previousKey = KEYS[2]
    local tokens      = tonumber(ARGV[1])
    local now         = tonumber(ARGV[2])
    local window      = tonumber(ARGV[3])
    local incrementBy = tonumber(ARGV[4])

    local requestsInCurrentWindow = tonumber(redis.call("GET", currentKey) or 0)
    local requestsInPreviousWindow = tonumber(redis.call("GET", previousKey) or 0)

    local percentageInCurrent = (now % window) / window
    requestsInPreviousWindow = math.floor((1 - percentageInCurrent) * requestsInPreviousWindow)
    if requestsInPreviousWindow + requestsInCurrentWindow >= tokens then
        return -1
    end

    local newValue = redis.call("INCRBY", currentKey, incrementBy)
    if newValue == incrementBy then
        -- must outlive the next bucket, which reads it as "previous"
        redis.call("PEXPIRE", currentKey, window * 2 + 1000)
    end
    return tokens - (newValue + requestsInPreviousWindow)
""")

SLIDING_WINDOW_REMAINING = LuaScript("sliding_window_remaining", """
    local currentKey  = KEYS[1]
    local previousKey = KEYS[2]
    local now         = tonumber(ARGV[1])
    local window      = tonumber(ARGV[2])

    local requestsInCurrentWindow = tonumber(redis.call("GET", currentKey) or 0)
    local requestsInPreviousWindow = tonumber(redis.call("GET", previousKey) or 0)

    local percentageInCurrent = (now % window) / window
    requestsInPreviousWindow = math.floor((1 - percentageInCurrent) * requestsInPreviousWindow)

    return requestsInPreviousWindow + requestsInCurrentWindow
""")

TOKEN_BUCKET_LIMIT = LuaScript("token_bucket_limit", """
    local key         = KEYS[1]
    local maxTokens   = tonumber(ARGV[1])
    local interval    = tonumber(ARGV[2])
    local refillRate  = tonumber(ARGV[3])
    local now         = tonumber(ARGV[4])
    local incrementBy = tonumber(ARGV[5])

    local bucket = redis.call("HMGET", key, "refilledAt", "tokens")

    local refilledAt
    local tokens
    if bucket[1] == false then
        refilledAt = now
        tokens = maxTokens
    else
        refilledAt = tonumber(bucket[1])
        tokens = tonumber(bucket[2])
    end

    if now >= refilledAt + interval then
        local numRefills = math.floor((now - refilledAt) / interval)
        tokens = math.min(maxTokens, tokens + numRefills * refillRate)
        refilledAt = refilledAt + numRefills * interval
    end

    if tokens <= 0 then
        return {-1, refilledAt + interval}
    end

    local remaining = tokens - incrementBy
    local expireAt = math.ceil((maxTokens - remaining) / refillRate) * interval

    redis.call("HSET", key, "refilledAt", refilledAt, "tokens", remaining)
    redis.call("PEXPIRE", key, expireAt)
    return {remaining, refilledAt + interval}
""")

TOKEN_BUCKET_IDENTIFIER_NOT_FOUND = -1

TOKEN_BUCKET_REMAINING = LuaScript("token_bucket_remaining", f"""
    local key       = KEYS[1]
    local maxTokens = tonumber(ARGV[1])

    local bucket = redis.call("HMGET", key, "refilledAt", "tokens")
    if bucket[1] == false then
        return {{maxTokens, {TOKEN_BUCKET_IDENTIFIER_NOT_FOUND}}}
    end

    return {{tonumber(bucket[2]), tonumber(bucket[1])}}
""")

# The cached fixed window keeps the authoritative counter exactly like the
# plain fixed window; only the client-side handling differs.
CACHED_FIXED_WINDOW_LIMIT = LuaScript("cached_fixed_window_limit", FIXED_WINDOW_LIMIT.body)
CACHED_FIXED_WINDOW_REMAINING = LuaScript(
    "cached_fixed_window_remaining", FIXED_WINDOW_REMAINING.body
)

# ---------------------------------------------------------------------------
# Multi region: buckets are hashes of request id -> increment
# ---------------------------------------------------------------------------

MULTI_FIXED_WINDOW_LIMIT = LuaScript("multi_fixed_window_limit", """
    local key         = KEYS[1]
    local id          = ARGV[1]
    local window      = ARGV[2]
    local incrementBy = tonumber(ARGV[3])

    redis.call("HSET", key, id, incrementBy)
    local fields = redis.call("HGETALL", key)
    if #fields == 2 and tonumber(fields[2]) == incrementBy then
        -- first write to this bucket
        redis.call("PEXPIRE", key, window)
    end

    return fields
""")

MULTI_FIXED_WINDOW_REMAINING = LuaScript("multi_fixed_window_remaining", """
    local key = KEYS[1]
    return redis.call("HGETALL", key)
""")

MULTI_SLIDING_WINDOW_LIMIT = LuaScript("multi_sliding_window_limit", """
    local currentKey  = KEYS[1]
    local previousKey = KEYS[2]
    local tokens      = tonumber(ARGV[1])
    local now         = tonumber(ARGV[2])
    local window      = tonumber(ARGV[3])
    local requestId   = ARGV[4]
    local incrementBy = tonumber(ARGV[5])

    local currentFields = redis.call("HGETALL", currentKey)
    local requestsInCurrentWindow = 0
    for i = 2, #currentFields, 2 do
        requestsInCurrentWindow = requestsInCurrentWindow + tonumber(currentFields[i])
    end

    local previousFields = redis.call("HGETALL", previousKey)
    local requestsInPreviousWindow = 0
    for i = 2, #previousFields, 2 do
        requestsInPreviousWindow = requestsInPreviousWindow + tonumber(previousFields[i])
    end

    local percentageInCurrent = (now % window) / window
    requestsInPreviousWindow = math.floor((1 - percentageInCurrent) * requestsInPreviousWindow)
    if requestsInPreviousWindow + requestsInCurrentWindow >= tokens then
        return {currentFields, previousFields, 0}
    end

    redis.call("HSET", currentKey, requestId, incrementBy)
    if requestsInCurrentWindow == 0 then
        -- must outlive the next bucket, which reads it as "previous"
        redis.call("PEXPIRE", currentKey, window * 2 + 1000)
    end
    return {currentFields, previousFields, 1}
""")

MULTI_SLIDING_WINDOW_REMAINING = LuaScript("multi_sliding_window_remaining", """
    local currentKey  = KEYS[1]
    local previousKey = KEYS[2]
    local now         = tonumber(ARGV[1])
    local window      = tonumber(ARGV[2])

    local currentFields = redis.call("HGETALL", currentKey)
    local requestsInCurrentWindow = 0
    for i = 2, #currentFields, 2 do
        requestsInCurrentWindow = requestsInCurrentWindow + tonumber(currentFields[i])
    end

    local previousFields = redis.call("HGETALL", previousKey)
    local requestsInPreviousWindow = 0
    for i = 2, #previousFields, 2 do
        requestsInPreviousWindow = requestsInPreviousWindow + tonumber(previousFields[i])
    end

    local percentageInCurrent = (now % window) / window
    requestsInPreviousWindow = math.floor((1 - percentageInCurrent) * requestsInPreviousWindow)

    return requestsInCurrentWindow + requestsInPreviousWindow
""")

# ---------------------------------------------------------------------------
# Reset
# ---------------------------------------------------------------------------

RESET_SCRIPT = LuaScript("reset", """
    local pattern = KEYS[1]
    local cursor = "0"

    repeat
        local scanResult = redis.call("SCAN", cursor, "MATCH", pattern)
        cursor = scanResult[1]
        local keys = scanResult[2]
        for i = 1, #keys do
            redis.call("DEL", keys[i])
        end
    until cursor == "0"
""")


ALL_SCRIPTS = (
    FIXED_WINDOW_LIMIT,
    FIXED_WINDOW_REMAINING,
    SLIDING_WINDOW_LIMIT,
    SLIDING_WINDOW_REMAINING,
    TOKEN_BUCKET_LIMIT,
    TOKEN_BUCKET_REMAINING,
    CACHED_FIXED_WINDOW_LIMIT,
    CACHED_FIXED_WINDOW_REMAINING,
    MULTI_FIXED_WINDOW_LIMIT,
    MULTI_FIXED_WINDOW_REMAINING,
    MULTI_SLIDING_WINDOW_LIMIT,
    MULTI_SLIDING_WINDOW_REMAINING,
    RESET_SCRIPT,
)
