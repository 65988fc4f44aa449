"""
AI 请求节流器（支持多进程）

每个租户（工作流发起人）的 AI 调用需要满足：
- 同一时刻最多一个调用在 Provider 侧执行（租约互斥，跨进程生效）
- 两次成功调用之间至少间隔 min_interval 秒

设计原则：
- 租约与最后处理时间存放在共享 KV（Redis）中，无需中心调度进程
- 租约带 TTL，进程崩溃后自动过期
- 租约竞争时等待一个间隔后重试（轮询），超过最大等待时间才失败
- 租约在 finally 中释放，只删除自己持有的租约（比较并删除）
"""
import asyncio
import time
import uuid
from collections import defaultdict
from typing import Awaitable, Callable, Optional, TypeVar

import structlog

from agentflow.core.exceptions import ThrottleTimeoutError
from agentflow.db.kv_store import KeyValueStore

logger = structlog.get_logger()

T = TypeVar("T")


class AIRequestThrottler:
    """
    按租户节流的 AI 请求队列

    使用方式：
        response = await throttler.enqueue(
            tenant_id,
            lambda: provider.complete(prompt, persona_context),
        )
    """

    def __init__(
        self,
        store: KeyValueStore,
        min_interval_seconds: float = 2.0,
        lease_ttl_seconds: float = 30.0,
        max_wait_seconds: Optional[float] = 120.0,
        key_prefix: str = "ai:queue",
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        初始化节流器

        Args:
            store: 共享 KV 存储
            min_interval_seconds: 同一租户两次调用的最小间隔
            lease_ttl_seconds: 租约 TTL
            max_wait_seconds: 等待租约的最长时间，None 表示无限等待
            key_prefix: KV key 前缀
            clock: 墙钟（跨进程比较时间戳，必须是 epoch 秒）
            sleep: 等待函数（测试中可替换）
        """
        self.store = store
        self.min_interval_seconds = min_interval_seconds
        self.lease_ttl_seconds = lease_ttl_seconds
        self.max_wait_seconds = max_wait_seconds
        self.key_prefix = key_prefix
        self._clock = clock
        self._sleep = sleep
        self._in_flight: dict[str, int] = defaultdict(int)
        self._held_leases: dict[str, str] = {}

    def lease_key(self, tenant_id: str) -> str:
        return f"{self.key_prefix}:{tenant_id}:lock"

    def last_processed_key(self, tenant_id: str) -> str:
        return f"{self.key_prefix}:{tenant_id}:last_processed"

    def in_flight(self, tenant_id: str) -> int:
        return self._in_flight.get(tenant_id, 0)

    async def enqueue(self, tenant_id: str, request_fn: Callable[[], Awaitable[T]]) -> T:
        """
        在租户的节流约束下执行 request_fn

        Raises:
            ThrottleTimeoutError: 等待租约超过 max_wait_seconds
            Exception: request_fn 抛出的原始异常（租约已释放，时间戳不更新）
        """
        token = uuid.uuid4().hex
        await self._acquire_lease(tenant_id, token)
        self._held_leases[tenant_id] = token
        self._in_flight[tenant_id] += 1

        try:
            await self._wait_for_interval(tenant_id)
            result = await request_fn()
            await self.store.set(
                self.last_processed_key(tenant_id),
                repr(self._clock()),
                ttl=max(self.min_interval_seconds * 2, 60.0),
            )
            return result
        finally:
            self._in_flight[tenant_id] -= 1
            if self._in_flight[tenant_id] <= 0:
                self._in_flight.pop(tenant_id, None)
            if self._held_leases.get(tenant_id) == token:
                del self._held_leases[tenant_id]
            released = await self.store.delete_if_equals(self.lease_key(tenant_id), token)
            logger.debug(
                "ai_request_lease_released",
                tenant_id=tenant_id,
                released=released,
            )

    async def _acquire_lease(self, tenant_id: str, token: str) -> None:
        """获取租户租约（竞争时等待一个间隔后重试）"""
        key = self.lease_key(tenant_id)
        start_time = self._clock()
        attempts = 0

        while True:
            attempts += 1
            acquired = await self.store.set(
                key, token, ttl=self.lease_ttl_seconds, only_if_absent=True
            )
            if acquired:
                if attempts > 1:
                    logger.debug("ai_request_lease_acquired", tenant_id=tenant_id, attempts=attempts)
                return

            waited = self._clock() - start_time
            if self.max_wait_seconds is not None and waited >= self.max_wait_seconds:
                logger.warning(
                    "ai_request_lease_timeout",
                    tenant_id=tenant_id,
                    waited_seconds=round(waited, 2),
                    attempts=attempts,
                )
                raise ThrottleTimeoutError(
                    f"Timed out after {waited:.1f}s waiting for AI request lease",
                    tenant_id=tenant_id,
                )

            logger.debug(
                "ai_request_lease_busy",
                tenant_id=tenant_id,
                attempts=attempts,
            )
            await self._sleep(self.min_interval_seconds or 0.01)

    async def _wait_for_interval(self, tenant_id: str) -> None:
        """等待距离租户上次成功调用满 min_interval"""
        last = await self.store.get(self.last_processed_key(tenant_id))
        if not last:
            return
        elapsed = self._clock() - float(last)
        remaining = self.min_interval_seconds - elapsed
        if remaining > 0:
            logger.debug(
                "ai_request_rate_limited",
                tenant_id=tenant_id,
                wait_seconds=round(remaining, 3),
            )
            await self._sleep(remaining)

    async def release_tenant(self, tenant_id: str) -> None:
        """
        释放租户的节流状态（工作流完成时调用）

        清除最后处理时间；本进程没有进行中的调用时，同时释放本进程持有的租约。
        """
        await self.store.delete(self.last_processed_key(tenant_id))
        if not self.in_flight(tenant_id):
            token = self._held_leases.pop(tenant_id, None)
            if token:
                await self.store.delete_if_equals(self.lease_key(tenant_id), token)
        logger.debug("ai_request_tenant_released", tenant_id=tenant_id)

    async def shutdown(self) -> None:
        """释放本进程持有的全部租约"""
        for tenant_id, token in list(self._held_leases.items()):
            await self.store.delete_if_equals(self.lease_key(tenant_id), token)
        released = len(self._held_leases)
        self._held_leases.clear()
        logger.info("ai_request_throttler_shutdown", released_leases=released)
