from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging

from redis.asyncio import Redis
from redis.exceptions import RedisError

from tenantgate.core.errors import StoreUnavailableError
from tenantgate.domain.lockout import AttemptRecord, LockoutPolicy
from tenantgate.domain.throttle import BucketConfig, BucketDecision


logger = logging.getLogger(__name__)

# Mirrors domain.lockout.apply_failure so the read-modify-write runs atomically in Redis.
_RECORD_FAILURE_LUA = r"""
local key = KEYS[1]
local now_ms = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])
local soft = tonumber(ARGV[3])
local hard = tonumber(ARGV[4])
local soft_lock_ms = tonumber(ARGV[5])

local data = redis.call("HMGET", key, "count", "window_start", "lock_until", "hard")
local count = tonumber(data[1])
local window_start = tonumber(data[2]) or now_ms
local lock_until = tonumber(data[3]) or 0
local hard_locked = tonumber(data[4]) or 0

local function anchor()
  if lock_until > window_start then
    return lock_until
  end
  return window_start
end

local stale = false
if count == nil then
  stale = true
elseif hard_locked == 0 and lock_until <= now_ms and (now_ms - anchor()) > window_ms then
  stale = true
end
if stale then
  count = 0
  window_start = now_ms
  lock_until = 0
  hard_locked = 0
end

count = count + 1
if count >= hard then
  hard_locked = 1
end
if count >= soft then
  lock_until = now_ms + soft_lock_ms
end

redis.call("HSET", key, "count", count, "window_start", window_start, "lock_until", lock_until, "hard", hard_locked)
if hard_locked == 1 then
  redis.call("PERSIST", key)
else
  local ttl_ms = anchor() + window_ms - now_ms
  if ttl_ms < 1000 then
    ttl_ms = 1000
  end
  redis.call("PEXPIRE", key, ttl_ms)
end

return {count, window_start, lock_until, hard_locked}
"""

# Single-bucket form of the refill/spend transition in domain.throttle.take.
_TOKEN_BUCKET_LUA = r"""
local key = KEYS[1]
local now_ms = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local burst = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])
local ttl = tonumber(ARGV[5])

local data = redis.call("HMGET", key, "tokens", "ts")
local tokens = tonumber(data[1])
local ts = tonumber(data[2])
if tokens == nil then
  tokens = burst
  ts = now_ms
end
if now_ms < ts then
  ts = now_ms
end
tokens = math.min(burst, tokens + ((now_ms - ts) / 1000.0) * rate)

local retry_ms = 0
if tokens < cost then
  if rate <= 0 then
    retry_ms = 1000
  else
    retry_ms = math.ceil(((cost - tokens) / rate) * 1000)
  end
end

local allowed = tokens >= cost
if allowed then
  tokens = tokens - cost
end

redis.call("HSET", key, "tokens", tostring(tokens), "ts", now_ms)
redis.call("EXPIRE", key, ttl)

return {allowed and 1 or 0, tostring(tokens), retry_ms}
"""


def _to_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def _from_ms(value: int | str | None) -> datetime | None:
    if value is None:
        return None
    millis = int(float(value))
    if millis <= 0:
        return None
    return datetime.fromtimestamp(millis / 1000.0, tz=timezone.utc)


class RedisCounterStore:
    def __init__(self, redis: Redis, *, prefix: str) -> None:
        self._redis = redis
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str, *, prefix: str) -> RedisCounterStore:
        return cls(Redis.from_url(url, encoding="utf-8", decode_responses=True), prefix=prefix)

    def _key(self, identifier: str) -> str:
        return f"{self._prefix}:{identifier}"

    async def record_failure(
        self, identifier: str, *, now: datetime, policy: LockoutPolicy
    ) -> AttemptRecord:
        try:
            result = await self._redis.eval(
                _RECORD_FAILURE_LUA,
                1,
                self._key(identifier),
                _to_ms(now),
                policy.window_seconds * 1000,
                policy.soft_threshold,
                policy.hard_threshold,
                policy.soft_lock_seconds * 1000,
            )
        except RedisError as exc:
            logger.error("lockout_counter_unavailable identifier=%s", identifier, exc_info=exc)
            raise StoreUnavailableError() from exc
        return AttemptRecord(
            identifier=identifier,
            count=int(result[0]),
            window_start=_from_ms(result[1]) or now,
            lock_until=_from_ms(result[2]),
            hard_locked=int(result[3]) == 1,
        )

    async def get(self, identifier: str) -> AttemptRecord | None:
        try:
            data = await self._redis.hgetall(self._key(identifier))
        except RedisError as exc:
            logger.error("lockout_counter_unavailable identifier=%s", identifier, exc_info=exc)
            raise StoreUnavailableError() from exc
        if not data:
            return None
        return AttemptRecord(
            identifier=identifier,
            count=int(data.get("count", 0)),
            window_start=_from_ms(data.get("window_start")) or datetime.now(timezone.utc),
            lock_until=_from_ms(data.get("lock_until")),
            hard_locked=str(data.get("hard", "0")) == "1",
        )

    async def reset(self, identifier: str) -> None:
        try:
            await self._redis.delete(self._key(identifier))
        except RedisError as exc:
            logger.error("lockout_counter_unavailable identifier=%s", identifier, exc_info=exc)
            raise StoreUnavailableError() from exc

    async def take_token(
        self, key: str, *, now: datetime, config: BucketConfig, cost: int = 1
    ) -> BucketDecision:
        try:
            result = await self._redis.eval(
                _TOKEN_BUCKET_LUA,
                1,
                f"{self._prefix}:bucket:{key}",
                _to_ms(now),
                config.rate,
                config.burst,
                cost,
                config.ttl_seconds,
            )
        except RedisError as exc:
            logger.error("throttle_counter_unavailable key=%s", key, exc_info=exc)
            raise StoreUnavailableError() from exc
        allowed = int(result[0]) == 1
        return BucketDecision(
            allowed=allowed,
            remaining=float(result[1]),
            retry_after_ms=0 if allowed else int(float(result[2])),
        )

    async def consume_once(self, key: str, *, now: datetime, ttl: timedelta) -> bool:
        # SET NX is the single-use check; the marker outlives the token it guards.
        ttl_ms = max(1000, int(ttl.total_seconds() * 1000))
        try:
            created = await self._redis.set(f"{self._prefix}:used:{key}", _to_ms(now), nx=True, px=ttl_ms)
        except RedisError as exc:
            logger.error("single_use_marker_unavailable key=%s", key, exc_info=exc)
            raise StoreUnavailableError() from exc
        return bool(created)
