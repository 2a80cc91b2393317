from __future__ import annotations

import hashlib
import time
from typing import Any, List, Sequence, Tuple

import redis.asyncio as aioredis
from redis import Redis

# KEYS[1] bucket hash; ARGV: now, capacity, window seconds, cost.
# Replies {allowed, tokens left, seconds until enough tokens}.
RATE_BUCKET_LUA = """
local bucket = KEYS[1]
local now = tonumber(ARGV[1])
local capacity = tonumber(ARGV[2])
local window = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])
local per_second = capacity / window

local state = redis.call('HMGET', bucket, 'level', 'seen')
local level = tonumber(state[1]) or capacity
local seen = tonumber(state[2]) or now

level = math.min(capacity, level + math.max(0, now - seen) * per_second)

local granted = 0
local wait = 0
if level >= cost then
  level = level - cost
  granted = 1
else
  wait = math.ceil((cost - level) / per_second)
end

redis.call('HSET', bucket, 'level', level, 'seen', now)
redis.call('EXPIRE', bucket, math.max(1, math.ceil(window)))
return {granted, math.floor(level), wait}
"""

RateDecision = Tuple[bool, int, int]


class _BucketClient:
    """Key hashing and reply decoding shared by both Redis flavours."""

    key_prefix = "classgate:rate:"

    @classmethod
    def bucket_key(cls, subject: str) -> str:
        # emails never appear verbatim in Redis
        return cls.key_prefix + hashlib.sha256(subject.encode("utf-8")).hexdigest()

    @staticmethod
    def script_args(limit: int, window_seconds: int, cost: int) -> List[Any]:
        return [time.time(), limit, window_seconds, max(1, cost)]

    @staticmethod
    def decode(reply: Sequence[Any]) -> RateDecision:
        granted, level, wait = reply
        return int(granted) == 1, max(0, int(level)), int(wait or 0)


class RedisCache(_BucketClient):
    """Token buckets for the unauthenticated auth endpoints on an asyncio client."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._consume = self.client.register_script(RATE_BUCKET_LUA)

    def verify_connection(self) -> None:
        """Ping through a throwaway sync client; the async pool stays unbound."""
        probe = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            probe.ping()
        finally:
            probe.close()

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> RateDecision:
        reply = await self._consume(
            keys=[self.bucket_key(key)], args=self.script_args(limit, window_seconds, cost)
        )
        return self.decode(reply)

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache(_BucketClient):
    """Blocking client behind the same awaitable surface.

    Chosen in test mode so per-test event loops never own a connection pool.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._consume = self.client.register_script(RATE_BUCKET_LUA)

    def verify_connection(self) -> None:
        self.client.ping()

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> RateDecision:
        reply = self._consume(
            keys=[self.bucket_key(key)], args=self.script_args(limit, window_seconds, cost)
        )
        return self.decode(reply)

    async def close(self) -> None:
        self.client.close()
