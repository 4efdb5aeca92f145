from __future__ import annotations

import json
from typing import Any, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from airsocial.logging import get_logger
from airsocial.storage.cache_keys import access_blocked_key
from airsocial.storage.errors import CacheKeyNotFound, StorageError

logger = get_logger(__name__)


class _EphemeralTokenOps:
    """TTL key/value operations shared by the async and sync Redis wrappers.

    Subclasses provide ``self.client`` exposing awaitable ``get``, ``set``,
    ``getdel``, ``delete`` and ``exists``. Values are stored JSON-encoded.
    """

    client: Any

    async def put(self, key: str, value: Any, ttl_seconds: int) -> bool:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        try:
            return bool(await self.client.set(key, json.dumps(value), ex=int(ttl_seconds)))
        except RedisError as exc:
            logger.error("cache_put_failed", key_prefix=_prefix(key), error=str(exc))
            raise StorageError("cache write failed") from exc

    async def get(self, key: str) -> Any:
        try:
            raw = await self.client.get(key)
        except RedisError as exc:
            logger.error("cache_get_failed", key_prefix=_prefix(key), error=str(exc))
            raise StorageError("cache read failed") from exc
        if raw is None:
            raise CacheKeyNotFound(key)
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError) as exc:
            raise StorageError("cache value is not valid JSON", {"key_prefix": _prefix(key)}) from exc

    async def pop(self, key: str) -> Any:
        """Read and remove ``key`` in one step; only one caller can ever win.

        Raises CacheKeyNotFound when the key is absent, expired or already taken.
        """
        try:
            raw = await self.client.getdel(key)
        except RedisError as exc:
            logger.error("cache_pop_failed", key_prefix=_prefix(key), error=str(exc))
            raise StorageError("cache read failed") from exc
        if raw is None:
            raise CacheKeyNotFound(key)
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError) as exc:
            raise StorageError("cache value is not valid JSON", {"key_prefix": _prefix(key)}) from exc

    async def delete(self, key: str) -> None:
        try:
            await self.client.delete(key)
        except RedisError as exc:
            logger.error("cache_delete_failed", key_prefix=_prefix(key), error=str(exc))
            raise StorageError("cache delete failed") from exc

    async def exists(self, key: str) -> bool:
        try:
            return bool(await self.client.exists(key))
        except RedisError as exc:
            logger.error("cache_exists_failed", key_prefix=_prefix(key), error=str(exc))
            raise StorageError("cache read failed") from exc

    async def block_access_token(self, access_token: str, ttl_seconds: int) -> None:
        """Add an access token to the block list until it would have expired anyway."""
        if ttl_seconds > 0:
            await self.put(access_blocked_key(access_token), 1, ttl_seconds)

    async def is_access_token_blocked(self, access_token: str) -> bool:
        return await self.exists(access_blocked_key(access_token))


def _prefix(key: str) -> str:
    # Never log the token part of a key
    head, sep, _ = key.rpartition(":")
    return f"{head}{sep}" if sep else "<unprefixed>"


class RedisCache(_EphemeralTokenOps):
    """Redis-backed ephemeral token store."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async one is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()


class _SyncClientAdapter:
    """Adapter that wraps a sync Redis client with async method signatures."""

    def __init__(self, sync_client: Redis):
        self._sync = sync_client

    async def get(self, key: str) -> Optional[str]:
        return self._sync.get(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        return self._sync.set(key, value, ex=ex)

    async def getdel(self, key: str) -> Optional[str]:
        return self._sync.getdel(key)

    async def delete(self, key: str) -> int:
        return self._sync.delete(key)

    async def exists(self, key: str) -> int:
        return self._sync.exists(key)


class SyncRedisCache(_EphemeralTokenOps):
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues when each test runs its own loop, but exposes async methods so it
    can be awaited uniformly like RedisCache.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self.client = _SyncClientAdapter(self._sync_client)

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._sync_client.ping()

    async def close(self) -> None:
        """Close Redis connection."""
        self._sync_client.close()
