"""
共享 KV 单元测试（进程内实现 + Redis 实现的调用参数）
"""
import pytest
from unittest.mock import AsyncMock, MagicMock

from agentflow.db.kv_store import InMemoryKeyValueStore, RedisKeyValueStore


class TestInMemoryKeyValueStore:

    @pytest.mark.asyncio
    async def test_only_if_absent(self):
        store = InMemoryKeyValueStore()

        assert await store.set("k", "a", only_if_absent=True) is True
        assert await store.set("k", "b", only_if_absent=True) is False
        assert await store.get("k") == "a"

    @pytest.mark.asyncio
    async def test_ttl_expiry(self):
        now = [0.0]
        store = InMemoryKeyValueStore(clock=lambda: now[0])
        await store.set("k", "v", ttl=10)

        now[0] = 9.9
        assert await store.get("k") == "v"
        now[0] = 10.0
        assert await store.get("k") is None
        assert store.keys() == []

    @pytest.mark.asyncio
    async def test_delete_if_equals(self):
        store = InMemoryKeyValueStore()
        await store.set("lease", "mine")

        assert await store.delete_if_equals("lease", "theirs") is False
        assert await store.delete_if_equals("lease", "mine") is True
        assert await store.get("lease") is None


class TestRedisKeyValueStore:

    @pytest.fixture
    def client(self):
        client = MagicMock()
        client.get = AsyncMock(return_value="v")
        client.set = AsyncMock(return_value=True)
        client.delete = AsyncMock()
        client.eval = AsyncMock(return_value=1)
        return client

    @pytest.fixture
    def store(self, client):
        redis = MagicMock()
        redis.connect = AsyncMock(return_value=client)
        return RedisKeyValueStore(redis)

    @pytest.mark.asyncio
    async def test_set_with_ttl_and_nx(self, store, client):
        assert await store.set("lease", "token", ttl=30, only_if_absent=True) is True

        client.set.assert_awaited_once_with("lease", "token", px=30000, nx=True)

    @pytest.mark.asyncio
    async def test_set_without_ttl(self, store, client):
        client.set.return_value = None

        assert await store.set("k", "v") is False
        client.set.assert_awaited_once_with("k", "v", px=None, nx=False)

    @pytest.mark.asyncio
    async def test_compare_and_delete(self, store, client):
        assert await store.delete_if_equals("lease", "token") is True

        script, numkeys, key, expected = client.eval.await_args.args
        assert numkeys == 1
        assert (key, expected) == ("lease", "token")
        assert "redis.call('del'" in script
