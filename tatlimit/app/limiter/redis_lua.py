"""Redis Lua scripts for GCRA decisions.

Each script runs the whole read-compute-write sequence on the server, so no
other caller's GET/SET on the same key can interleave with it. ``now`` is
taken from the Redis clock (TIME) as seconds since 2017-01-01T00:00:00Z,
matching tatlimit.app.core.clock.EPOCH.

KEYS[1] = namespaced key
ARGV[1] = burst
ARGV[2] = rate
ARGV[3] = period in seconds
ARGV[4] = cost (allow_n) or maximum units (allow_at_most)

Reply: {allowed, remaining, retry_after, reset_after}
Durations and the stored TAT travel as %.17g strings because Redis
truncates Lua numbers to integers in replies.
A non-numeric stored TAT produces an error reply prefixed MALFORMED_TAT.
"""

MALFORMED_TAT_MARKER = "MALFORMED_TAT"

_PRELUDE = """
-- effect replication is the default (and the only mode) from Redis 7
if redis.replicate_commands then
  redis.replicate_commands()
end

local rate_limit_key = KEYS[1]
local burst = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local period = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local function fmt(value)
  return string.format("%.17g", value)
end

local emission_interval = period / rate
local burst_offset = emission_interval * burst

local jan_1_2017 = 1483228800
local now = redis.call("TIME")
now = (now[1] - jan_1_2017) + (now[2] / 1000000)

-- each of up to burst writes rounds the stored TAT by half an ulp of now
local drift = (burst + 2) * math.abs(now) * 2.220446049250313e-16
local tolerance = math.min(1e-3, math.max(1e-9, drift / emission_interval))

local function snap(value)
  local nearest = math.floor(value + 0.5)
  if math.abs(value - nearest) < tolerance then
    return nearest
  end
  return value
end

local raw_tat = redis.call("GET", rate_limit_key)
local tat_offset = 0
if raw_tat then
  local tat = nil
  if not string.find(raw_tat, "[^%d%.eE+%-]") then
    tat = tonumber(raw_tat)
  end
  if not tat or tat ~= tat or tat == math.huge or tat == -math.huge then
    return redis.error_reply("MALFORMED_TAT " .. tostring(raw_tat))
  end
  tat_offset = math.max(tat - now, 0)
end
"""

ALLOW_N_SCRIPT = _PRELUDE + """
local increment = emission_interval * cost

-- now - allow_at, where allow_at = tat + increment - burst_offset
local diff = burst_offset - tat_offset - increment
local remaining = snap(diff / emission_interval)

if remaining < 0 then
  return {0, 0, fmt(-diff), fmt(tat_offset)}
end

local reset_after = tat_offset + increment
if cost > 0 and reset_after > 0 then
  redis.call("SET", rate_limit_key, fmt(now + reset_after), "EX", math.ceil(reset_after))
end
return {cost, math.floor(remaining), "-1", fmt(reset_after)}
"""

ALLOW_AT_MOST_SCRIPT = _PRELUDE + """
local diff = burst_offset - tat_offset
local remaining = snap(diff / emission_interval)

if remaining < 1 then
  return {0, 0, fmt(emission_interval - diff), fmt(tat_offset)}
end

local allowed = math.min(cost, math.floor(remaining))
remaining = remaining - allowed

local reset_after = tat_offset + emission_interval * allowed
if allowed > 0 and reset_after > 0 then
  redis.call("SET", rate_limit_key, fmt(now + reset_after), "EX", math.ceil(reset_after))
end
return {allowed, math.floor(remaining), "-1", fmt(reset_after)}
"""
