"""
共享键值存储

AIRequestThrottler 的租约与限速时间戳存放在共享 KV 中，
多个引擎进程共享同一份状态。

- KeyValueStore: 协议接口
- RedisKeyValueStore: 基于 redis.asyncio 的生产实现
- InMemoryKeyValueStore: 单进程实现（测试 / 本地开发）
"""
import asyncio
import time
from typing import Callable, Optional, Protocol

import structlog

from agentflow.db.redis_client import RedisClient

logger = structlog.get_logger()


class KeyValueStore(Protocol):
    """共享 KV 协议"""

    async def get(self, key: str) -> Optional[str]:
        ...

    async def set(
        self,
        key: str,
        value: str,
        ttl: Optional[float] = None,
        only_if_absent: bool = False,
    ) -> bool:
        """写入键；only_if_absent=True 时仅在键不存在时写入，返回是否写入成功"""
        ...

    async def delete(self, key: str) -> None:
        ...

    async def delete_if_equals(self, key: str, expected: str) -> bool:
        """仅当当前值等于 expected 时删除（租约释放用）"""
        ...


# 比较并删除：只释放自己持有的租约
_COMPARE_AND_DELETE = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


class RedisKeyValueStore:
    """基于 Redis 的共享 KV"""

    def __init__(self, redis: RedisClient):
        self._redis = redis

    async def get(self, key: str) -> Optional[str]:
        client = await self._redis.connect()
        return await client.get(key)

    async def set(
        self,
        key: str,
        value: str,
        ttl: Optional[float] = None,
        only_if_absent: bool = False,
    ) -> bool:
        client = await self._redis.connect()
        px = int(ttl * 1000) if ttl else None
        result = await client.set(key, value, px=px, nx=only_if_absent)
        return bool(result)

    async def delete(self, key: str) -> None:
        client = await self._redis.connect()
        await client.delete(key)

    async def delete_if_equals(self, key: str, expected: str) -> bool:
        client = await self._redis.connect()
        deleted = await client.eval(_COMPARE_AND_DELETE, 1, key, expected)
        return bool(deleted)


class InMemoryKeyValueStore:
    """
    进程内 KV（带 TTL）

    语义与 Redis 实现一致，时钟可注入以便测试。
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: dict[str, tuple[str, Optional[float]]] = {}
        self._lock = asyncio.Lock()

    def _live_value(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return value

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            return self._live_value(key)

    async def set(
        self,
        key: str,
        value: str,
        ttl: Optional[float] = None,
        only_if_absent: bool = False,
    ) -> bool:
        async with self._lock:
            if only_if_absent and self._live_value(key) is not None:
                return False
            expires_at = self._clock() + ttl if ttl else None
            self._data[key] = (value, expires_at)
            return True

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    async def delete_if_equals(self, key: str, expected: str) -> bool:
        async with self._lock:
            if self._live_value(key) == expected:
                del self._data[key]
                return True
            return False

    def keys(self) -> list[str]:
        return [key for key in list(self._data) if self._live_value(key) is not None]
