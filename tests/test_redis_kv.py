"""Unit tests for the Redis-backed KV store with a mocked client."""

from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from gatekeep.storage.errors import StoreUnavailableError
from gatekeep.storage.redis_cache import RedisKeyValueStore


def make_store(client=None):
    return RedisKeyValueStore("redis://localhost:6379/0", client=client or AsyncMock())


class TestRedisKeyValueStore:
    async def test_set_with_ttl_uses_expiry(self):
        client = AsyncMock()
        store = make_store(client)

        await store.set_with_ttl("otp:u1:login", "123456", 300)

        client.set.assert_awaited_once_with("otp:u1:login", "123456", ex=300)

    async def test_get_and_delete_uses_getdel(self):
        client = AsyncMock()
        client.getdel.return_value = "123456"
        store = make_store(client)

        assert await store.get_and_delete("otp:u1:login") == "123456"
        client.getdel.assert_awaited_once_with("otp:u1:login")
        client.eval.assert_not_awaited()

    async def test_increment_runs_counter_script(self):
        client = AsyncMock()
        client.eval.return_value = 3
        store = make_store(client)

        assert await store.increment_with_ttl("otp_attempts:u1:request", 3600) == 3
        client.eval.assert_awaited_once_with(
            RedisKeyValueStore._INCREMENT_SCRIPT, 1, "otp_attempts:u1:request", 3600
        )

    @pytest.mark.parametrize("raw, expected", [(-2, None), (-1, None), (42, 42)])
    async def test_ttl_maps_sentinels(self, raw, expected):
        client = AsyncMock()
        client.ttl.return_value = raw
        store = make_store(client)

        assert await store.ttl("k") == expected

    async def test_redis_errors_become_store_unavailable(self):
        client = AsyncMock()
        client.get.side_effect = RedisConnectionError("connection refused")
        store = make_store(client)

        with pytest.raises(StoreUnavailableError):
            await store.get("otp:u1:login")

    async def test_sweep_is_noop(self):
        assert await make_store().sweep_expired() == 0

    async def test_close_disconnects_pool(self):
        client = AsyncMock()
        store = make_store(client)

        await store.close()

        client.close.assert_awaited_once()
        client.connection_pool.disconnect.assert_awaited_once()
