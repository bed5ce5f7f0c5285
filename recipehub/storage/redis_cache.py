from __future__ import annotations

import hashlib
import time
from typing import Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

RateLimitResult = Union[bool, Tuple[bool, int, int]]


def _bucket_key(key: str) -> str:
    # Hashed so emails and IPs never appear in Redis key names
    return f"recipehub:rate:{hashlib.sha256(key.encode()).hexdigest()}"


def _unpack(result, return_remaining: bool) -> RateLimitResult:
    allowed, tokens, reset_after = result
    allowed_bool = bool(int(allowed))
    if not return_remaining:
        return allowed_bool
    return allowed_bool, max(0, int(float(tokens))), int(reset_after) if reset_after else 0


class RedisCache:
    """Redis-backed token buckets for the auth endpoints."""

    # Refill then consume in one round trip; returns {allowed, tokens, reset_after}
    TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

tokens = math.min(capacity, tokens + math.max(0, now - last) * refill_rate)

if tokens < cost then
  redis.call('HSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tostring(tokens), reset_after}
end

tokens = tokens - cost
redis.call('HSET', key, 'tokens', tokens, 'ts', now)
redis.call('EXPIRE', key, math.max(math.ceil(capacity / refill_rate), 1))
return {1, tostring(tokens), 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self.TOKEN_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        """Ping Redis at startup.

        A throwaway synchronous client keeps the async pool from binding to
        whatever loop happens to run the check.
        """
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> RateLimitResult:
        refill_rate = float(limit) / float(window_seconds)
        result = await self._token_bucket(
            keys=[_bucket_key(key)],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        return _unpack(result, return_remaining)

    async def close(self) -> None:
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Same interface as RedisCache over a synchronous client.

    Used under TEST_MODE, where TestClient runs each request on its own event
    loop and an async pool would end up bound to a dead one.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self._sync_client.register_script(
            RedisCache.TOKEN_BUCKET_SCRIPT
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> RateLimitResult:
        refill_rate = float(limit) / float(window_seconds)
        result = self._token_bucket(
            keys=[_bucket_key(key)],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        return _unpack(result, return_remaining)

    async def close(self) -> None:
        self._sync_client.close()
