"""Lua sources evaluated server-side by the scripted strategy.

All scripts take the lock key as KEYS[1] and the caller's token as ARGV[1],
and return 1 on success, 0 otherwise.
"""

# ARGV[2]: TTL in milliseconds
ACQUIRE_SCRIPT = """
if redis.call('setnx', KEYS[1], ARGV[1]) == 1 then
    redis.call('pexpire', KEYS[1], ARGV[2])
    return 1
end
return 0
"""

RELEASE_SCRIPT = """
local token = redis.call('get', KEYS[1])
if not token or token ~= ARGV[1] then
    return 0
end
redis.call('del', KEYS[1])
return 1
"""

# ARGV[2]: milliseconds added to the remaining TTL
EXTEND_SCRIPT = """
local token = redis.call('get', KEYS[1])
if not token or token ~= ARGV[1] then
    return 0
end
local expiration = redis.call('pttl', KEYS[1])
if expiration < 0 then
    return 0
end
redis.call('pexpire', KEYS[1], expiration + tonumber(ARGV[2]))
return 1
"""

SCRIPTS = {
    "acquire": ACQUIRE_SCRIPT,
    "release": RELEASE_SCRIPT,
    "extend": EXTEND_SCRIPT,
}
