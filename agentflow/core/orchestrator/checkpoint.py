"""
检查点服务

在工作流初始化、完成（可选：每个步骤后）时记录完整快照。
检查点只在显式恢复时读取，执行过程中从不自动回滚。
"""
from typing import Optional

import structlog

from agentflow.db.repositories.base import CheckpointRepository
from agentflow.models.constants import CheckpointLabel
from agentflow.models.domain import Checkpoint, Workflow

logger = structlog.get_logger()


class CheckpointService:

    def __init__(self, repository: CheckpointRepository, enabled: bool = True):
        self.repository = repository
        self.enabled = enabled

    async def record(
        self,
        workflow: Workflow,
        label: CheckpointLabel,
        description: str = "",
    ) -> Optional[Checkpoint]:
        """记录检查点（全局或工作流关闭检查点时跳过）"""
        if not (self.enabled and workflow.checkpoint_enabled):
            return None

        checkpoint = Checkpoint(
            workflow_id=workflow.id,
            label=label.value,
            description=description,
            step_index=workflow.current_step_index,
            status=workflow.status,
            snapshot=workflow.model_dump(mode="json"),
        )
        await self.repository.add_checkpoint(checkpoint)
        logger.info(
            "checkpoint_recorded",
            workflow_id=workflow.id,
            label=checkpoint.label,
            step_index=checkpoint.step_index,
        )
        return checkpoint

    async def latest(self, workflow_id: str) -> Optional[Checkpoint]:
        return await self.repository.latest_checkpoint(workflow_id)

    async def list_all(self, workflow_id: str) -> list[Checkpoint]:
        return await self.repository.list_checkpoints(workflow_id)
