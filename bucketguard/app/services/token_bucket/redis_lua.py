"""Redis Lua scripts for the token bucket protocol.

Each script runs as a single atomic step inside Redis, so concurrent callers
on any instance can never interleave their reads and writes on one bucket.

Bucket record (Redis hash at ``<prefix>:<client_id>``):
- tokens: decimal string, currently available tokens in [0, capacity]
- timestamp: integer seconds of the last refill computation
"""

# Atomic refill-then-consume of N tokens with lazy initialization
# KEYS[1] = bucket key
# ARGV[1] = capacity (max tokens)
# ARGV[2] = refill rate (tokens per second)
# ARGV[3] = current timestamp (seconds)
# ARGV[4] = TTL in seconds
# ARGV[5] = number of tokens to consume
# Returns {allowed (0|1), remaining tokens as string}
# Remaining tokens go back as a string: Redis truncates Lua numbers to integers
CONSUME_SCRIPT = """
    local key = KEYS[1]
    local capacity = tonumber(ARGV[1])
    local refill_rate = tonumber(ARGV[2])
    local now = tonumber(ARGV[3])
    local ttl = tonumber(ARGV[4])
    local requested = tonumber(ARGV[5])

    local state = redis.call('HMGET', key, 'tokens', 'timestamp')
    local tokens = tonumber(state[1])
    local last_refill = tonumber(state[2])

    -- First touch: the bucket starts full
    if tokens == nil or last_refill == nil then
        tokens = capacity
        last_refill = now
    end

    -- A zero or negative elapsed time adds nothing and keeps the timestamp
    local added = (now - last_refill) * refill_rate
    if added > 0 then
        tokens = tokens + added
        last_refill = now
    end

    if tokens > capacity then
        tokens = capacity
    end

    local allowed = 0
    if tokens >= requested then
        tokens = tokens - requested
        allowed = 1
    end

    -- Written even on denial so the refill credit is committed
    redis.call('HSET', key, 'tokens', tostring(tokens), 'timestamp', tostring(last_refill))
    redis.call('EXPIRE', key, ttl)

    return {allowed, tostring(tokens)}
"""

# Read-only projection of what a consume would see right now
# KEYS[1] = bucket key
# ARGV[1] = capacity (max tokens)
# ARGV[2] = refill rate (tokens per second)
# ARGV[3] = current timestamp (seconds)
# Returns {floor(tokens), capacity as string}
STATUS_SCRIPT = """
    local key = KEYS[1]
    local capacity = tonumber(ARGV[1])
    local refill_rate = tonumber(ARGV[2])
    local now = tonumber(ARGV[3])

    local state = redis.call('HMGET', key, 'tokens', 'timestamp')
    local tokens = tonumber(state[1])
    local last_refill = tonumber(state[2])

    if tokens == nil or last_refill == nil then
        tokens = capacity
    else
        local added = (now - last_refill) * refill_rate
        if added > 0 then
            tokens = tokens + added
        end
        if tokens > capacity then
            tokens = capacity
        end
    end

    return {math.floor(tokens), tostring(capacity)}
"""
