from __future__ import annotations

import asyncio
import hashlib
import time
from typing import Any, Awaitable, List, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError
from redis.exceptions import TimeoutError as RedisTimeoutError

from authkeep.logging import get_logger
from authkeep.storage.errors import StoreUnavailable

logger = get_logger(__name__)


class RedisCache:
    """Redis-backed ephemeral token store.

    Keys are opaque to this class; callers namespace them by purpose. Every
    single-key operation maps to one Redis command (or one Lua script), so the
    server's single-threaded execution provides the atomicity guarantees.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0  # seconds

    # Atomic refill + consume
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
  redis.call('HSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

    # GETDEL for servers older than 6.2
    _GET_AND_DELETE_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if value then
    redis.call('DEL', KEYS[1])
end
return value
"""

    _POP_MEMBERS_SCRIPT = """
local members = redis.call('SMEMBERS', KEYS[1])
redis.call('DEL', KEYS[1])
return members
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        client: Any | None = None,
    ):
        self.redis_url = redis_url
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)
        self._get_and_delete = self.client.register_script(self._GET_AND_DELETE_SCRIPT)
        self._pop_members = self.client.register_script(self._POP_MEMBERS_SCRIPT)

    async def _run(self, operation: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(awaitable, self.DEFAULT_OPERATION_TIMEOUT)
        except (RedisConnectionError, RedisTimeoutError, asyncio.TimeoutError) as exc:
            logger.error("redis_operation_failed", operation=operation, error=str(exc))
            raise StoreUnavailable("redis", f"{operation} failed") from exc

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate-limit subjects so arbitrary input cannot collide with token keys."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""

        # A short-lived synchronous client avoids binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._run("set", self.client.set(key, value, ex=max(1, int(ttl_seconds))))

    async def get(self, key: str) -> Optional[str]:
        return await self._run("get", self.client.get(key))

    async def delete(self, key: str) -> None:
        await self._run("delete", self.client.delete(key))

    async def pop(self, key: str) -> Optional[str]:
        """Atomically get and delete ``key``.

        Of several concurrent callers popping the same key, exactly one
        receives the value; the others see None.
        """
        try:
            return await self._run("getdel", self.client.getdel(key))
        except (AttributeError, ResponseError):
            return await self._run("getdel_script", self._get_and_delete(keys=[key]))

    async def add_member(self, set_key: str, member: str, ttl_seconds: int) -> None:
        pipe = self.client.pipeline()
        pipe.sadd(set_key, member)
        pipe.expire(set_key, max(1, int(ttl_seconds)))
        await self._run("add_member", pipe.execute())

    async def remove_member(self, set_key: str, member: str) -> None:
        await self._run("remove_member", self.client.srem(set_key, member))

    async def pop_members(self, set_key: str) -> List[str]:
        members = await self._run("pop_members", self._pop_members(keys=[set_key]))
        return list(members or [])

    async def check_rate_limit(self, key: str, limit: int, window_seconds: int) -> bool:
        """Consume one token from the bucket for ``key``; False when exhausted."""

        refill_rate = float(limit) / float(window_seconds)
        allowed, _tokens, _reset_after = await self._run(
            "rate_limit",
            self._token_bucket(
                keys=[self._normalize_rate_key(key)],
                args=[time.time(), refill_rate, limit, 1],
            ),
        )
        return bool(int(allowed))

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
