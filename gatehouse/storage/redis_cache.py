from __future__ import annotations

import hashlib
import time

import redis.asyncio as aioredis
from redis import Redis


def _digest(value: str) -> str:
    return hashlib.sha256(value.encode()).hexdigest()


class RedisCache:
    """Thin Redis wrapper for sign-in rate limits and consumed refresh tokens.

    Keys never contain raw emails or tokens; both are hashed first.
    """

    # Lua token bucket: atomic refill + consume
    _TOKEN_BUCKET_SCRIPT = """
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

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)

    @staticmethod
    def _rate_key(key: str) -> str:
        return f"rate:{_digest(key)}"

    @staticmethod
    def _refresh_key(refresh_token: str) -> str:
        return f"auth:refresh:consumed:{_digest(refresh_token)}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def check_rate_limit(self, key: str, limit: int, window_seconds: int) -> bool:
        refill_rate = float(limit) / float(window_seconds)
        allowed, _tokens, _reset_after = await self._token_bucket(
            keys=[self._rate_key(key)],
            args=[time.time(), refill_rate, limit, 1],
        )
        return bool(int(allowed))

    async def mark_refresh_consumed(self, refresh_token: str, ttl_seconds: int) -> None:
        await self.client.set(
            self._refresh_key(refresh_token), "1", ex=max(1, ttl_seconds)
        )

    async def is_refresh_consumed(self, refresh_token: str) -> bool:
        return bool(await self.client.exists(self._refresh_key(refresh_token)))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally so nothing binds to the per-test
    event loop, but exposes the same awaitable methods as ``RedisCache``.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(
            RedisCache._TOKEN_BUCKET_SCRIPT
        )

    def verify_connection(self) -> None:
        self.client.ping()

    async def check_rate_limit(self, key: str, limit: int, window_seconds: int) -> bool:
        refill_rate = float(limit) / float(window_seconds)
        allowed, _tokens, _reset_after = self._token_bucket(
            keys=[RedisCache._rate_key(key)],
            args=[time.time(), refill_rate, limit, 1],
        )
        return bool(int(allowed))

    async def mark_refresh_consumed(self, refresh_token: str, ttl_seconds: int) -> None:
        self.client.set(
            RedisCache._refresh_key(refresh_token), "1", ex=max(1, ttl_seconds)
        )

    async def is_refresh_consumed(self, refresh_token: str) -> bool:
        return bool(self.client.exists(RedisCache._refresh_key(refresh_token)))

    async def close(self) -> None:
        self.client.close()
