"""
工作流状态管理器

- 工作流读写统一入口（持久化层是唯一事实来源）
- 每个工作流一把 asyncio.Lock，串行化步骤循环与生命周期操作对状态的修改
- live_step 缓存（当前执行步骤），用于快速查询与监控

锁与 live_step 都放在 ResourceCacheManager 的工作命名空间中，
长时间空闲后由 sweep() 回收。
"""
import asyncio
from typing import Optional

import structlog

from agentflow.core.cache_manager import ResourceCacheManager
from agentflow.core.exceptions import AgentFlowError, PersistenceError, WorkflowNotFoundError
from agentflow.db.repositories.base import WorkflowRepository
from agentflow.models.constants import CacheNamespace
from agentflow.models.domain import Workflow

logger = structlog.get_logger()


class WorkflowStateManager:
    """工作流状态管理器"""

    def __init__(self, repository: WorkflowRepository, cache: ResourceCacheManager):
        self.repository = repository
        self.cache = cache

    def lock(self, workflow_id: str) -> asyncio.Lock:
        """获取工作流的状态锁（不存在时创建）"""
        lock = self.cache.get(workflow_id, CacheNamespace.LOCK)
        if lock is None:
            lock = asyncio.Lock()
            self.cache.set(workflow_id, lock, CacheNamespace.LOCK)
        return lock

    async def get(self, workflow_id: str) -> Optional[Workflow]:
        return await self.repository.load_workflow(workflow_id)

    async def load(self, workflow_id: str) -> Workflow:
        """
        加载工作流

        Raises:
            WorkflowNotFoundError: 工作流不存在
        """
        workflow = await self.repository.load_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        return workflow

    async def save(self, workflow: Workflow) -> None:
        """
        持久化工作流

        Raises:
            PersistenceError: 持久化失败
        """
        workflow.touch()
        try:
            await self.repository.save_workflow(workflow)
        except AgentFlowError:
            raise
        except Exception as e:
            raise PersistenceError(f"Failed to save workflow {workflow.id}: {e}") from e
        self.set_live_step(workflow)

    # ============================================================
    # live_step 缓存
    # ============================================================

    def set_live_step(self, workflow: Workflow) -> None:
        step = workflow.current_step
        self.cache.set(
            workflow.id,
            {
                "status": workflow.status.value,
                "step_index": workflow.current_step_index,
                "agent_id": step.agent_id if step else None,
            },
            CacheNamespace.WORKFLOW_STATE,
        )

    def get_live_step(self, workflow_id: str) -> Optional[dict]:
        return self.cache.get(workflow_id, CacheNamespace.WORKFLOW_STATE)

    def clear_live_step(self, workflow_id: str) -> None:
        """在工作流结束时调用"""
        self.cache.invalidate(workflow_id, CacheNamespace.WORKFLOW_STATE)
        logger.debug("live_step_cleared", workflow_id=workflow_id)
