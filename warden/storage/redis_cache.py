from __future__ import annotations

import hashlib
import time
from typing import Any, Dict, List, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis

# KEYS[1] bucket hash; ARGV now, tokens per second, capacity, cost.
# Replies {allowed, tokens_left, retry_after_seconds}.
TOKEN_BUCKET_SCRIPT = """
local now = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local state = redis.call('HMGET', KEYS[1], 'tokens', 'ts')
local tokens = tonumber(state[1]) or capacity
local stamp = tonumber(state[2]) or now

tokens = math.min(capacity, tokens + math.max(0, now - stamp) * rate)

local allowed = 0
local wait = 0
if tokens >= cost then
  allowed = 1
  tokens = tokens - cost
else
  wait = math.ceil((cost - tokens) / rate)
end

redis.call('HSET', KEYS[1], 'tokens', tokens, 'ts', now)
-- a bucket that refilled completely carries no state worth keeping
redis.call('EXPIRE', KEYS[1], math.max(1, math.ceil(capacity / rate)))
return {allowed, tostring(tokens), wait}
"""


def normalize_rate_key(key: str, namespace: Optional[str] = None) -> str:
    """Hash a logical rate-limit subject into a Redis key.

    Hashing keeps user-supplied parts (emails, IPs) from injecting delimiters
    and keeps raw addresses out of Redis.
    """
    digest = hashlib.sha256(key.encode()).hexdigest()
    scope = f"{namespace}:" if namespace else ""
    return f"warden:rate:{scope}{digest}"


def _unpack(result) -> Tuple[bool, int, int]:
    allowed, tokens, retry_after = result
    return bool(int(allowed)), max(0, int(float(tokens))), int(retry_after or 0)


def _client_options(socket_timeout: float) -> Dict[str, Any]:
    return {
        "decode_responses": True,
        "socket_timeout": socket_timeout,
        "socket_connect_timeout": socket_timeout,
    }


class _BucketCache:
    def __init__(self, redis_url: str):
        self.redis_url = redis_url

    @staticmethod
    def _bucket_call(
        key: str, limit: int, window_seconds: int, namespace: Optional[str], cost: int
    ) -> Tuple[List[str], List[Any]]:
        rate = float(limit) / float(window_seconds)
        return [normalize_rate_key(key, namespace)], [time.time(), rate, limit, max(1, cost)]


class RedisCache(_BucketCache):
    """Async Redis client holding the shared rate-limit buckets."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        super().__init__(redis_url)
        self.client = aioredis.from_url(redis_url, **_client_options(socket_timeout))
        self._token_bucket = self.client.register_script(TOKEN_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        # Throwaway sync ping; the async pool must not bind to the startup loop
        probe = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            probe.ping()
        finally:
            probe.close()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        namespace: Optional[str] = None,
        cost: int = 1,
    ) -> Tuple[bool, int, int]:
        """Consume ``cost`` tokens from the bucket for ``key``.

        Returns ``(allowed, remaining, retry_after_seconds)``.
        """
        keys, args = self._bucket_call(key, limit, window_seconds, namespace, cost)
        return _unpack(await self._token_bucket(keys=keys, args=args))

    async def close(self) -> None:
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


class SyncRedisCache(_BucketCache):
    """Blocking twin of :class:`RedisCache` for TEST_MODE.

    Same awaitable surface, but nothing inside it is tied to an event loop, so
    it survives test clients that spin up a loop per request.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        super().__init__(redis_url)
        self.client = Redis.from_url(redis_url, **_client_options(socket_timeout))
        self._token_bucket = self.client.register_script(TOKEN_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        self.client.ping()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        namespace: Optional[str] = None,
        cost: int = 1,
    ) -> Tuple[bool, int, int]:
        keys, args = self._bucket_call(key, limit, window_seconds, namespace, cost)
        return _unpack(self._token_bucket(keys=keys, args=args))

    async def close(self) -> None:
        self.client.close()


__all__ = ["RedisCache", "SyncRedisCache", "normalize_rate_key", "TOKEN_BUCKET_SCRIPT"]
