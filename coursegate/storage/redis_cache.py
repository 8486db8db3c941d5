from __future__ import annotations

import asyncio
import hashlib
import json
import secrets
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional, Tuple, Union

import redis.asyncio as aioredis

from coursegate.logging import get_logger
from coursegate.storage.errors import LockUnavailable

logger = get_logger(__name__)


class RedisCache:
    """Thin Redis wrapper for rate limits and ephemeral auth state.

    Used when several API instances must share pending verification codes
    and password reset tokens.
    """

    # Lua token bucket script: atomic refill + consume
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

    # Delete the lock key only if we still own it
    _RELEASE_LOCK_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""

    _POP_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if value then
  redis.call('DEL', KEYS[1])
end
return value
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        lock_ttl_seconds: int = 30,
        lock_wait_seconds: float = 20.0,
    ):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self.lock_ttl_seconds = lock_ttl_seconds
        self.lock_wait_seconds = lock_wait_seconds
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate limit subjects so user input cannot inject delimiters."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    @staticmethod
    def _ephemeral_key(namespace: str, key: str) -> str:
        return f"ephemeral:{namespace}:{key}"

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Check rate limit using a Redis-backed token bucket."""

        safe_key = self._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[safe_key],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )

        allowed_bool = bool(int(allowed))
        remaining = max(0, int(tokens))
        reset_seconds = int(reset_after) if reset_after else 0
        if return_remaining:
            return (allowed_bool, remaining, reset_seconds)
        return allowed_bool

    # =========================================================================
    # Ephemeral auth state (2FA codes, password reset tokens)
    # =========================================================================

    async def get(self, namespace: str, key: str) -> Optional[dict]:
        cached = await self.client.get(self._ephemeral_key(namespace, key))
        if cached is None:
            return None
        try:
            return json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            logger.warning("ephemeral_entry_corrupt", namespace=namespace)
            return None

    async def put(self, namespace: str, key: str, value: dict, ttl_seconds: int) -> None:
        await self.client.set(
            self._ephemeral_key(namespace, key),
            json.dumps(value),
            ex=max(1, int(ttl_seconds)),
        )

    async def delete(self, namespace: str, key: str) -> bool:
        return bool(await self.client.delete(self._ephemeral_key(namespace, key)))

    async def pop(self, namespace: str, key: str) -> Optional[dict]:
        """Atomically read and delete an entry so a token can be used only once."""
        cached = await self.client.eval(
            self._POP_SCRIPT, 1, self._ephemeral_key(namespace, key)
        )
        if cached is None:
            return None
        try:
            return json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            return None

    async def keys(self, namespace: str) -> List[str]:
        prefix = self._ephemeral_key(namespace, "")
        found: List[str] = []
        async for raw in self.client.scan_iter(match=f"{prefix}*"):
            found.append(raw[len(prefix):])
        return found

    async def purge_expired(self) -> int:
        # Redis evicts entries on their own TTL
        return 0

    @asynccontextmanager
    async def lock(self, namespace: str, key: str) -> AsyncIterator[None]:
        """Cross-instance lock on one ephemeral key using SET NX PX."""
        lock_key = f"lock:{self._ephemeral_key(namespace, key)}"
        token = secrets.token_hex(16)
        deadline = time.monotonic() + self.lock_wait_seconds
        while True:
            acquired = await self.client.set(
                lock_key, token, nx=True, px=self.lock_ttl_seconds * 1000
            )
            if acquired:
                break
            if time.monotonic() >= deadline:
                raise LockUnavailable(lock_key, self.lock_wait_seconds)
            await asyncio.sleep(0.05)
        try:
            yield
        finally:
            await self.client.eval(self._RELEASE_LOCK_SCRIPT, 1, lock_key, token)

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
