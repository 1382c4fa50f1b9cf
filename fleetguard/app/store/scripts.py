"""Redis Lua scripts for atomic admission checks.

Each limiter check that reads and then writes shared state is exactly one
of these scripts, so concurrent callers can never interleave between the
read and the write.
"""

TOKEN_BUCKET = "token_bucket"
CONCURRENCY_PRUNE = "concurrency_prune"
CONCURRENCY_ACQUIRE = "concurrency_acquire"
CONCURRENCY_RELEASE = "concurrency_release"

# KEYS: <prefix>.tokens, <prefix>.timestamp
# ARGV: rate, capacity, now, requested
# Refill is computed lazily from elapsed time; a denied check still moves
# the refill baseline forward but consumes nothing. The balance is returned
# as a string because Lua numbers are truncated to integers in replies.
TOKEN_BUCKET_SCRIPT = """
    local tokens_key = KEYS[1]
    local timestamp_key = KEYS[2]
    local rate = tonumber(ARGV[1])
    local capacity = tonumber(ARGV[2])
    local now = tonumber(ARGV[3])
    local requested = tonumber(ARGV[4])

    local ttl = math.max(1, math.floor(2 * capacity / rate))

    local last_tokens = tonumber(redis.call('GET', tokens_key))
    if last_tokens == nil then
        last_tokens = capacity
    end
    local last_refill = tonumber(redis.call('GET', timestamp_key))
    if last_refill == nil then
        last_refill = 0
    end

    -- Clock skew between callers must never drain the bucket
    local delta = math.max(0, now - last_refill)
    local filled = math.min(capacity, last_tokens + delta * rate)
    local allowed = filled >= requested
    local new_tokens = filled
    if allowed then
        new_tokens = filled - requested
    end

    redis.call('SETEX', tokens_key, ttl, tostring(new_tokens))
    redis.call('SETEX', timestamp_key, ttl, tostring(now))

    if allowed then
        return {1, tostring(new_tokens)}
    end
    return {0, tostring(new_tokens)}
"""

# KEYS: set key
# ARGV: cutoff, ttl
# Drops members whose timestamp is strictly older than cutoff. Write-only
# and idempotent, so it may run as its own call before acquire.
CONCURRENCY_PRUNE_SCRIPT = """
    local key = KEYS[1]
    redis.call('ZREMRANGEBYSCORE', key, '-inf', '(' .. ARGV[1])
    redis.call('EXPIRE', key, tonumber(ARGV[2]))
    return redis.call('ZCARD', key)
"""

# KEYS: set key
# ARGV: capacity, timestamp, id[, ttl]
# Cardinality check and insert in one step; returns {allowed, count}
# where count includes the new member when admitted. With ttl, the set
# expiry is refreshed on insert, since prune cannot expire a missing key.
CONCURRENCY_ACQUIRE_SCRIPT = """
    local key = KEYS[1]
    local capacity = tonumber(ARGV[1])
    local timestamp = tonumber(ARGV[2])
    local id = ARGV[3]
    local ttl = tonumber(ARGV[4])

    local count = redis.call('ZCARD', key)
    if count < capacity then
        redis.call('ZADD', key, timestamp, id)
        if ttl then
            redis.call('EXPIRE', key, ttl)
        end
        return {1, count + 1}
    end
    return {0, count}
"""

# KEYS: set key
# ARGV: id
CONCURRENCY_RELEASE_SCRIPT = """
    return redis.call('ZREM', KEYS[1], ARGV[1])
"""

SCRIPTS = {
    TOKEN_BUCKET: TOKEN_BUCKET_SCRIPT,
    CONCURRENCY_PRUNE: CONCURRENCY_PRUNE_SCRIPT,
    CONCURRENCY_ACQUIRE: CONCURRENCY_ACQUIRE_SCRIPT,
    CONCURRENCY_RELEASE: CONCURRENCY_RELEASE_SCRIPT,
}
