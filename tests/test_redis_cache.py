"""Tests for the Redis-backed ephemeral store with a mocked client."""

import json
from unittest.mock import AsyncMock

import pytest

from coursegate.storage.errors import LockUnavailable
from coursegate.storage.redis_cache import RedisCache


async def _aiter(items):
    for item in items:
        yield item


@pytest.fixture
def cache():
    cache = RedisCache("redis://localhost:6379/0", lock_wait_seconds=0)
    cache.client = AsyncMock()
    cache._token_bucket = AsyncMock()
    return cache


class TestEphemeralState:
    async def test_put_sets_expiry(self, cache):
        await cache.put("two_factor", "u1", {"code": "123456"}, 900)

        cache.client.set.assert_awaited_once_with(
            "ephemeral:two_factor:u1", json.dumps({"code": "123456"}), ex=900
        )

    async def test_get_decodes_json(self, cache):
        cache.client.get.return_value = json.dumps({"attempts": 1})
        assert await cache.get("two_factor", "u1") == {"attempts": 1}
        cache.client.get.assert_awaited_once_with("ephemeral:two_factor:u1")

    async def test_get_missing_and_corrupt(self, cache):
        cache.client.get.return_value = None
        assert await cache.get("two_factor", "u1") is None
        cache.client.get.return_value = "{oops"
        assert await cache.get("two_factor", "u1") is None

    async def test_delete(self, cache):
        cache.client.delete.return_value = 1
        assert await cache.delete("password_reset", "abc") is True
        cache.client.delete.return_value = 0
        assert await cache.delete("password_reset", "abc") is False

    async def test_pop_is_atomic_script(self, cache):
        cache.client.eval.return_value = json.dumps({"user_id": "u1"})

        assert await cache.pop("password_reset", "abc") == {"user_id": "u1"}

        script, numkeys, key = cache.client.eval.await_args.args
        assert numkeys == 1
        assert key == "ephemeral:password_reset:abc"
        assert "DEL" in script

    async def test_pop_missing(self, cache):
        cache.client.eval.return_value = None
        assert await cache.pop("password_reset", "abc") is None

    async def test_keys_strip_prefix(self, cache):
        cache.client.scan_iter = lambda match: _aiter(
            ["ephemeral:two_factor:u1", "ephemeral:two_factor:u2"]
        )
        assert await cache.keys("two_factor") == ["u1", "u2"]

    async def test_purge_is_left_to_redis(self, cache):
        assert await cache.purge_expired() == 0


class TestLock:
    async def test_lock_acquires_and_releases(self, cache):
        cache.client.set.return_value = True

        async with cache.lock("two_factor", "u1"):
            pass

        args, kwargs = cache.client.set.await_args
        assert args[0] == "lock:ephemeral:two_factor:u1"
        assert kwargs == {"nx": True, "px": 30000}
        release = cache.client.eval.await_args.args
        assert release[2] == "lock:ephemeral:two_factor:u1"
        assert release[3] == args[1]

    async def test_lock_released_on_error(self, cache):
        cache.client.set.return_value = True
        with pytest.raises(ValueError):
            async with cache.lock("two_factor", "u1"):
                raise ValueError("inside")
        cache.client.eval.assert_awaited_once()

    async def test_lock_unavailable(self, cache):
        cache.client.set.return_value = None

        with pytest.raises(LockUnavailable) as exc_info:
            async with cache.lock("two_factor", "u1"):
                pass

        assert exc_info.value.key == "lock:ephemeral:two_factor:u1"
        cache.client.eval.assert_not_awaited()


class TestRateLimit:
    async def test_rate_limit_uses_hashed_key(self, cache):
        cache._token_bucket.return_value = [1, 4, 0]

        allowed, remaining, reset = await cache.check_rate_limit(
            "login:alice@example.com", 5, 60, return_remaining=True
        )

        assert (allowed, remaining, reset) == (True, 4, 0)
        keys = cache._token_bucket.await_args.kwargs["keys"]
        assert keys[0].startswith("rate:")
        assert "alice" not in keys[0]

    async def test_rate_limit_denied(self, cache):
        cache._token_bucket.return_value = [0, 0, 12]
        assert await cache.check_rate_limit("k", 5, 60) is False
