"""Redis session store wrappers exercised against mocked clients."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from apitemplate.storage.errors import CacheError
from apitemplate.storage.redis_cache import RedisCache, SyncRedisCache


@pytest.fixture
def async_cache():
    cache = RedisCache("redis://localhost:6379/0")
    cache.client = AsyncMock()
    return cache


@pytest.fixture
def sync_cache():
    cache = SyncRedisCache("redis://localhost:6379/0")
    cache.client = MagicMock()
    return cache


class TestRedisCache:
    async def test_set_uses_expiry(self, async_cache):
        await async_cache.set("auth:refresh:abc", "42", 259200)
        async_cache.client.set.assert_awaited_once_with("auth:refresh:abc", "42", ex=259200)

    async def test_ttl_never_below_one_second(self, async_cache):
        await async_cache.set("k", "v", 0)
        async_cache.client.set.assert_awaited_once_with("k", "v", ex=1)

    async def test_get_returns_value(self, async_cache):
        async_cache.client.get.return_value = "42"
        assert await async_cache.get("auth:refresh:abc") == "42"

    async def test_get_missing_returns_none(self, async_cache):
        async_cache.client.get.return_value = None
        assert await async_cache.get("missing") is None

    async def test_delete(self, async_cache):
        await async_cache.delete("user:1:online")
        async_cache.client.delete.assert_awaited_once_with("user:1:online")

    @pytest.mark.parametrize("operation", ["set", "get", "delete"])
    async def test_redis_errors_become_cache_errors(self, async_cache, operation):
        getattr(async_cache.client, operation).side_effect = RedisConnectionError("down")
        args = {"set": ("k", "v", 10), "get": ("k",), "delete": ("k",)}[operation]

        with pytest.raises(CacheError) as excinfo:
            await getattr(async_cache, operation)(*args)
        assert excinfo.value.operation == operation
        assert isinstance(excinfo.value.cause, RedisConnectionError)

    async def test_close_releases_client(self, async_cache):
        await async_cache.close()
        async_cache.client.aclose.assert_awaited_once()


class TestSyncRedisCache:
    async def test_set_get_delete_delegate_to_sync_client(self, sync_cache):
        sync_cache.client.get.return_value = "online"

        await sync_cache.set("user:1:online", "online", 900)
        value = await sync_cache.get("user:1:online")
        await sync_cache.delete("user:1:online")

        sync_cache.client.set.assert_called_once_with("user:1:online", "online", ex=900)
        sync_cache.client.delete.assert_called_once_with("user:1:online")
        assert value == "online"

    async def test_errors_become_cache_errors(self, sync_cache):
        sync_cache.client.get.side_effect = RedisConnectionError("down")
        with pytest.raises(CacheError):
            await sync_cache.get("k")

    def test_verify_connection_pings(self, sync_cache):
        sync_cache.verify_connection()
        sync_cache.client.ping.assert_called_once()
