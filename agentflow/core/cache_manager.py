"""
资源缓存管理器

缓存分两类：
- 静态命名空间（模板、任务、Agent 定义）：数量少且很少变化，永不过期，
  只在显式 invalidate / reload 时清除
- 工作命名空间（工作流状态、执行器、锁）：记录最后访问时间，
  sweep() 时回收空闲超过 max_age 的条目，避免长时间运行的进程无限增长
"""
import asyncio
import inspect
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

import structlog

from agentflow.models.constants import CacheNamespace, STATIC_NAMESPACES

logger = structlog.get_logger()

Loader = Callable[[], Union[Any, Awaitable[Any]]]


@dataclass
class CacheEntry:
    value: Any
    last_access: float


class ResourceCacheManager:
    """
    资源缓存管理器

    使用方式：
        template = await cache.get_or_load(
            "prd-tmpl.yaml",
            lambda: loader.load_template("prd-tmpl.yaml"),
            namespace=CacheNamespace.TEMPLATE,
        )
    """

    def __init__(
        self,
        max_age_seconds: float = 86400.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            max_age_seconds: 工作命名空间条目的最大空闲时间
            clock: 时钟函数（测试中可注入合成时间）
        """
        self.max_age_seconds = max_age_seconds
        self._clock = clock
        self._entries: dict[tuple[str, str], CacheEntry] = {}
        self._sweeper_task: Optional[asyncio.Task] = None
        self._hits = 0
        self._misses = 0

    @staticmethod
    def _ns(namespace: Union[CacheNamespace, str]) -> str:
        return namespace.value if isinstance(namespace, CacheNamespace) else str(namespace)

    @staticmethod
    def _is_static(namespace: str) -> bool:
        return namespace in {ns.value for ns in STATIC_NAMESPACES}

    # ============================================================
    # 读写
    # ============================================================

    def get(self, key: str, namespace: Union[CacheNamespace, str] = CacheNamespace.TEMPLATE) -> Any:
        """读取缓存并刷新访问时间，不存在返回 None"""
        entry = self._entries.get((self._ns(namespace), key))
        if entry is None:
            return None
        entry.last_access = self._clock()
        return entry.value

    def contains(self, key: str, namespace: Union[CacheNamespace, str] = CacheNamespace.TEMPLATE) -> bool:
        return (self._ns(namespace), key) in self._entries

    def set(self, key: str, value: Any, namespace: Union[CacheNamespace, str] = CacheNamespace.TEMPLATE) -> None:
        self._entries[(self._ns(namespace), key)] = CacheEntry(value=value, last_access=self._clock())

    async def get_or_load(
        self,
        key: str,
        loader: Loader,
        namespace: Union[CacheNamespace, str] = CacheNamespace.TEMPLATE,
    ) -> Any:
        """
        读取缓存，未命中时调用 loader 加载并写入

        loader 可以是同步或异步函数；返回 None 时不写入缓存（未找到的定义不会被缓存）。
        """
        ns = self._ns(namespace)
        entry = self._entries.get((ns, key))
        if entry is not None:
            self._hits += 1
            entry.last_access = self._clock()
            return entry.value

        self._misses += 1
        value = loader()
        if inspect.isawaitable(value):
            value = await value

        if value is not None:
            self._entries[(ns, key)] = CacheEntry(value=value, last_access=self._clock())
            logger.debug("cache_entry_loaded", namespace=ns, key=key)
        return value

    # ============================================================
    # 失效与回收
    # ============================================================

    def invalidate(self, key: str, namespace: Union[CacheNamespace, str] = CacheNamespace.TEMPLATE) -> bool:
        removed = self._entries.pop((self._ns(namespace), key), None) is not None
        if removed:
            logger.debug("cache_entry_invalidated", namespace=self._ns(namespace), key=key)
        return removed

    def invalidate_namespace(self, namespace: Union[CacheNamespace, str]) -> int:
        ns = self._ns(namespace)
        keys = [k for k in self._entries if k[0] == ns]
        for k in keys:
            del self._entries[k]
        logger.info("cache_namespace_invalidated", namespace=ns, count=len(keys))
        return len(keys)

    def sweep(self, now: Optional[float] = None) -> int:
        """
        回收工作命名空间中空闲超过 max_age 的条目

        Args:
            now: 当前时间（默认取注入的时钟）

        Returns:
            回收的条目数
        """
        now = self._clock() if now is None else now
        expired = [
            k for k, entry in self._entries.items()
            if not self._is_static(k[0]) and now - entry.last_access > self.max_age_seconds
        ]
        for k in expired:
            del self._entries[k]

        if expired:
            logger.info("cache_swept", removed=len(expired), remaining=len(self._entries))
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()
        logger.info("cache_cleared")

    def stats(self) -> dict[str, Any]:
        per_namespace: dict[str, int] = {}
        for ns, _ in self._entries:
            per_namespace[ns] = per_namespace.get(ns, 0) + 1
        return {
            "size": len(self._entries),
            "hits": self._hits,
            "misses": self._misses,
            "namespaces": per_namespace,
        }

    # ============================================================
    # 后台清理
    # ============================================================

    def start_sweeper(self, interval_seconds: float) -> None:
        """启动后台周期清理任务（需在事件循环中调用）"""
        if self._sweeper_task is not None and not self._sweeper_task.done():
            return
        self._sweeper_task = asyncio.create_task(self._sweep_loop(interval_seconds))
        logger.info("cache_sweeper_started", interval_seconds=interval_seconds)

    async def stop_sweeper(self) -> None:
        if self._sweeper_task is None:
            return
        self._sweeper_task.cancel()
        try:
            await self._sweeper_task
        except asyncio.CancelledError:
            pass
        self._sweeper_task = None
        logger.info("cache_sweeper_stopped")

    async def _sweep_loop(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                self.sweep()
            except Exception as e:
                logger.error("cache_sweep_failed", error=str(e))
