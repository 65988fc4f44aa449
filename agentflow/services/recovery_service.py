"""
工作流恢复服务

进程重启或运行异常后处理 RUNNING 状态的工作流：
- 更新时间超过阈值（卡住）的工作流：从最近的检查点恢复；没有检查点的标记为 ERROR
- 未超过阈值的工作流：重新挂到本进程的执行循环上，从已持久化的索引继续
  （执行租约由其他进程持有的工作流跳过）

使用 Semaphore 限制并发恢复数量。
"""
import asyncio
from datetime import timedelta
from typing import Any, Optional

import structlog

from agentflow.core.exceptions import AgentFlowError, CheckpointNotFoundError
from agentflow.core.orchestrator.lifecycle import WorkflowLifecycleManager
from agentflow.db.repositories.base import WorkflowRepository
from agentflow.models.constants import WorkflowStatus
from agentflow.models.domain import Workflow, utc_now

logger = structlog.get_logger()


class WorkflowRecoveryService:
    """工作流恢复服务"""

    def __init__(
        self,
        repository: WorkflowRepository,
        lifecycle: WorkflowLifecycleManager,
        stale_after_seconds: float = 1800.0,
        max_concurrent: int = 3,
    ):
        self.repository = repository
        self.lifecycle = lifecycle
        self.stale_after_seconds = stale_after_seconds
        self.max_concurrent = max_concurrent

    async def find_stale_workflows(self) -> list[Workflow]:
        """查找 RUNNING 且长时间未更新的工作流"""
        threshold = utc_now() - timedelta(seconds=self.stale_after_seconds)
        return await self.repository.list_workflows(
            status=WorkflowStatus.RUNNING,
            updated_before=threshold,
        )

    async def recover_stale_workflows(self) -> dict[str, Any]:
        """
        从检查点恢复所有卡住的工作流

        Returns:
            恢复统计：{"total", "recovered", "failed", "workflow_ids"}
        """
        stale = await self.find_stale_workflows()
        if not stale:
            logger.info("no_stale_workflows_found")
            return {"total": 0, "recovered": 0, "failed": 0, "workflow_ids": []}

        logger.info(
            "stale_workflows_found",
            count=len(stale),
            workflow_ids=[w.id for w in stale],
        )

        semaphore = asyncio.Semaphore(self.max_concurrent)

        async def recover_one(workflow: Workflow) -> Optional[str]:
            async with semaphore:
                return await self._recover(workflow)

        results = await asyncio.gather(*(recover_one(w) for w in stale))
        recovered = [wid for wid in results if wid]

        summary = {
            "total": len(stale),
            "recovered": len(recovered),
            "failed": len(stale) - len(recovered),
            "workflow_ids": recovered,
        }
        logger.info("stale_workflow_recovery_completed", **summary)
        return summary

    async def _recover(self, workflow: Workflow) -> Optional[str]:
        try:
            await self.lifecycle.recover_from_checkpoint(workflow.id)
            return workflow.id
        except CheckpointNotFoundError as e:
            logger.warning("stale_workflow_without_checkpoint", workflow_id=workflow.id)
            await self.lifecycle.error_handler.mark_failed(workflow.id, e)
        except AgentFlowError as e:
            logger.error(
                "stale_workflow_recovery_failed",
                workflow_id=workflow.id,
                error=str(e),
                error_type=type(e).__name__,
            )
        return None

    async def reattach_running(self) -> list[str]:
        """重新调度未卡住的 RUNNING 工作流（进程启动时调用）"""
        threshold = utc_now() - timedelta(seconds=self.stale_after_seconds)
        running = await self.repository.list_workflows(status=WorkflowStatus.RUNNING)
        reattached = []
        for workflow in running:
            if workflow.updated_at < threshold:
                continue
            if await self.lifecycle.is_driven_elsewhere(workflow.id):
                logger.info("running_workflow_leased_elsewhere", workflow_id=workflow.id)
                continue
            await self.lifecycle.reattach(workflow.id)
            reattached.append(workflow.id)

        logger.info("running_workflows_reattached", count=len(reattached))
        return reattached
