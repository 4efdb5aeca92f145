"""Tests for the ephemeral token store and its key helpers."""

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from airsocial.storage.cache_keys import (
    access_blocked_key,
    email_processed_key,
    email_reset_key,
    email_verify_key,
    upload_session_key,
)
from airsocial.storage.errors import CacheKeyNotFound, StorageError
from airsocial.storage.memory import MemoryCache
from airsocial.storage.redis_cache import _EphemeralTokenOps


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


class TestKeys:
    def test_prefixes(self):
        assert email_verify_key("t") == "worker:email:verify:t"
        assert email_reset_key("t") == "worker:email:reset:t"
        assert email_processed_key("e") == "worker:email:processed:e"
        assert upload_session_key("users/1/avatar.png") == "upload:verify:users/1/avatar.png"

    def test_blocked_key_hides_raw_token(self):
        key = access_blocked_key("header.payload.signature")
        assert key.startswith("auth:blocked:")
        assert "payload" not in key
        assert key == access_blocked_key("header.payload.signature")


class TestMemoryCache:
    async def test_put_get_roundtrip(self, cache):
        await cache.put("worker:email:verify:abc", "a@x.io", 60)
        assert await cache.get("worker:email:verify:abc") == "a@x.io"
        assert await cache.exists("worker:email:verify:abc")

    async def test_missing_key_raises(self, cache):
        with pytest.raises(CacheKeyNotFound):
            await cache.get("worker:email:verify:missing")

    async def test_entries_expire(self, cache, clock):
        await cache.put("k", {"email": "a@x.io"}, 30)
        clock.now += 29
        assert await cache.get("k") == {"email": "a@x.io"}
        clock.now += 1
        assert not await cache.exists("k")
        with pytest.raises(CacheKeyNotFound):
            await cache.get("k")

    async def test_delete_then_absent(self, cache):
        await cache.put("k", "v", 30)
        await cache.delete("k")
        assert not await cache.exists("k")
        # Deleting twice is harmless
        await cache.delete("k")

    async def test_pop_returns_value_once(self, cache):
        await cache.put("worker:email:reset:t", "a@x.io", 30)
        assert await cache.pop("worker:email:reset:t") == "a@x.io"
        assert not await cache.exists("worker:email:reset:t")
        with pytest.raises(CacheKeyNotFound):
            await cache.pop("worker:email:reset:t")

    async def test_pop_ignores_expired_entries(self, cache, clock):
        await cache.put("k", "v", 5)
        clock.now += 5
        with pytest.raises(CacheKeyNotFound):
            await cache.pop("k")

    async def test_non_positive_ttl_rejected(self, cache):
        with pytest.raises(ValueError):
            await cache.put("k", "v", 0)

    async def test_block_list(self, cache, clock):
        await cache.block_access_token("tok", 10)
        assert await cache.is_access_token_blocked("tok")
        assert not await cache.is_access_token_blocked("other")
        clock.now += 10
        assert not await cache.is_access_token_blocked("tok")


class _BrokenClient:
    async def get(self, key):
        raise RedisConnectionError("connection refused")

    async def set(self, key, value, ex=None):
        raise RedisConnectionError("connection refused")

    async def getdel(self, key):
        raise RedisConnectionError("connection refused")

    async def delete(self, key):
        raise RedisConnectionError("connection refused")

    async def exists(self, key):
        raise RedisConnectionError("connection refused")


class _BrokenCache(_EphemeralTokenOps):
    def __init__(self):
        self.client = _BrokenClient()


class TestRedisFailures:
    async def test_errors_become_storage_errors(self):
        cache = _BrokenCache()
        with pytest.raises(StorageError):
            await cache.put("worker:email:verify:t", "a@x.io", 60)
        with pytest.raises(StorageError):
            await cache.get("worker:email:verify:t")
        with pytest.raises(StorageError):
            await cache.pop("worker:email:verify:t")
        with pytest.raises(StorageError):
            await cache.delete("worker:email:verify:t")
        with pytest.raises(StorageError):
            await cache.exists("worker:email:verify:t")
