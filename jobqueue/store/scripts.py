"""
Lua scripts executed atomically inside Redis.

Each script is a single indivisible operation against the store, so
concurrently running dispatchers and reapers never observe a half-applied
transition.
"""

# KEYS: pending, in-flight, scheduled
# ARGV: now_ms, lease_deadline_ms, worker_id, job_key_prefix, claimed_at, promote_limit
CLAIM_JOB = """
local due = redis.call('ZRANGEBYSCORE', KEYS[3], '-inf', ARGV[1], 'LIMIT', 0, tonumber(ARGV[6]))
for _, id in ipairs(due) do
    redis.call('ZREM', KEYS[3], id)
    redis.call('LPUSH', KEYS[1], id)
    redis.call('HSET', ARGV[4] .. id, 'state', 'pending')
    redis.call('HDEL', ARGV[4] .. id, 'available_at')
end
local id = redis.call('RPOP', KEYS[1])
if not id then
    return false
end
redis.call('ZADD', KEYS[2], ARGV[2], id)
redis.call('HSET', ARGV[4] .. id, 'state', 'in_flight', 'lease_owner', ARGV[3], 'claimed_at', ARGV[5])
return id
"""

# KEYS: in-flight, job record
# ARGV: worker_id, lease_deadline_ms, job_id
EXTEND_LEASE = """
if redis.call('HGET', KEYS[2], 'lease_owner') ~= ARGV[1] then
    return 0
end
if not redis.call('ZSCORE', KEYS[1], ARGV[3]) then
    return 0
end
redis.call('ZADD', KEYS[1], 'XX', ARGV[2], ARGV[3])
return 1
"""

# KEYS: in-flight, pending
# ARGV: now_ms, limit, job_key_prefix
RECOVER_EXPIRED = """
local expired = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', '(' .. ARGV[1], 'LIMIT', 0, tonumber(ARGV[2]))
for _, id in ipairs(expired) do
    redis.call('ZREM', KEYS[1], id)
    redis.call('RPUSH', KEYS[2], id)
    redis.call('HSET', ARGV[3] .. id, 'state', 'pending')
    redis.call('HDEL', ARGV[3] .. id, 'lease_owner', 'claimed_at')
end
return expired
"""
