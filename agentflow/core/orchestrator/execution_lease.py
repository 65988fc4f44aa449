"""
工作流执行租约（支持多进程）

同一工作流在任意时刻只由一个引擎进程驱动：
- 驱动前在共享 KV 中写入租约（仅在不存在时写入，带 TTL）
- 每个步骤边界续期，续期时发现租约已不属于自己则停止驱动
- 驱动结束在 finally 中释放，只删除自己持有的租约（比较并删除）
- 进程崩溃后租约随 TTL 过期，其他进程可重新挂载
"""
import uuid

import structlog

from agentflow.db.kv_store import KeyValueStore

logger = structlog.get_logger()


class WorkflowExecutionLease:
    """按工作流的执行租约"""

    def __init__(
        self,
        store: KeyValueStore,
        ttl_seconds: float = 600.0,
        key_prefix: str = "agentflow:workflow-lease",
    ):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.key_prefix = key_prefix
        self._held: dict[str, str] = {}

    def lease_key(self, workflow_id: str) -> str:
        return f"{self.key_prefix}:{workflow_id}"

    async def acquire(self, workflow_id: str) -> bool:
        """
        尝试获取租约（不等待）

        Returns:
            是否获取成功；租约被其他持有者占用时返回 False
        """
        token = uuid.uuid4().hex
        acquired = await self.store.set(
            self.lease_key(workflow_id), token, ttl=self.ttl_seconds, only_if_absent=True
        )
        if acquired:
            self._held[workflow_id] = token
            logger.debug("workflow_execution_lease_acquired", workflow_id=workflow_id)
        return acquired

    async def refresh(self, workflow_id: str) -> bool:
        """
        续期本进程持有的租约

        Returns:
            租约仍归本进程所有时返回 True；本进程未持有租约时同样返回 True
        """
        token = self._held.get(workflow_id)
        if token is None:
            return True

        key = self.lease_key(workflow_id)
        current = await self.store.get(key)
        if current is not None and current != token:
            del self._held[workflow_id]
            logger.warning("workflow_execution_lease_lost", workflow_id=workflow_id)
            return False

        await self.store.set(key, token, ttl=self.ttl_seconds)
        return True

    async def release(self, workflow_id: str) -> None:
        token = self._held.pop(workflow_id, None)
        if token is None:
            return
        released = await self.store.delete_if_equals(self.lease_key(workflow_id), token)
        logger.debug("workflow_execution_lease_released", workflow_id=workflow_id, released=released)

    async def is_held(self, workflow_id: str) -> bool:
        """租约是否被任意持有者（包括本进程）占用"""
        return await self.store.get(self.lease_key(workflow_id)) is not None

    def holds(self, workflow_id: str) -> bool:
        return workflow_id in self._held

    async def shutdown(self) -> None:
        """释放本进程持有的全部租约"""
        for workflow_id, token in list(self._held.items()):
            await self.store.delete_if_equals(self.lease_key(workflow_id), token)
        released = len(self._held)
        self._held.clear()
        logger.info("workflow_execution_lease_shutdown", released_leases=released)
