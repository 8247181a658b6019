"""Redis Lua script for the deny list membership check."""

from edgelimit.app.services.ratelimit.redis_lua import LuaScript

# Status key TTL replies:
#   -1  "disabled", stored without TTL
#   -2  missing: the IP list was valid before and has expired
#   >0  "valid" (or "pending"), seconds until the next refresh
#
# On -2 the script atomically writes a 30 second "pending" marker so only
# the caller that observed the expiry refreshes the list.
CHECK_DENY_LIST_SCRIPT = LuaScript("check_deny_list", """
    local allDenyListsKey     = KEYS[1]
    local ipDenyListStatusKey = KEYS[2]
    local unpack = unpack or table.unpack

    local results = redis.call("SMISMEMBER", allDenyListsKey, unpack(ARGV))
    local status  = redis.call("TTL", ipDenyListStatusKey)
    if status == -2 then
        redis.call("SETEX", ipDenyListStatusKey, 30, "pending")
    end

    return { results, status }
""")

IP_DENY_LIST_STATUS_EXPIRED = -2
