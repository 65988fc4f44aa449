"""
进程内 Repository 实现

保存与读取都做深拷贝，调用方持有的对象与"存储"中的对象互不影响，
行为与真实数据库一致。
"""
from datetime import datetime
from typing import Optional

import structlog

from agentflow.db.repositories.base import matches
from agentflow.models.constants import WorkflowStatus
from agentflow.models.domain import Checkpoint, Workflow

logger = structlog.get_logger(__name__)


class InMemoryWorkflowRepository:
    """进程内工作流仓储"""

    def __init__(self):
        self._workflows: dict[str, Workflow] = {}

    async def load_workflow(self, workflow_id: str) -> Optional[Workflow]:
        workflow = self._workflows.get(workflow_id)
        return workflow.model_copy(deep=True) if workflow else None

    async def save_workflow(self, workflow: Workflow) -> None:
        self._workflows[workflow.id] = workflow.model_copy(deep=True)
        logger.debug(
            "workflow_saved",
            workflow_id=workflow.id,
            status=workflow.status.value,
            step_index=workflow.current_step_index,
        )

    async def list_workflows(
        self,
        status: Optional[WorkflowStatus] = None,
        updated_before: Optional[datetime] = None,
    ) -> list[Workflow]:
        return [
            w.model_copy(deep=True)
            for w in self._workflows.values()
            if matches(w, status, updated_before)
        ]


class InMemoryCheckpointRepository:
    """进程内检查点仓储（只追加）"""

    def __init__(self):
        self._checkpoints: dict[str, list[Checkpoint]] = {}

    async def add_checkpoint(self, checkpoint: Checkpoint) -> None:
        self._checkpoints.setdefault(checkpoint.workflow_id, []).append(
            checkpoint.model_copy(deep=True)
        )

    async def latest_checkpoint(self, workflow_id: str) -> Optional[Checkpoint]:
        checkpoints = self._checkpoints.get(workflow_id)
        return checkpoints[-1].model_copy(deep=True) if checkpoints else None

    async def list_checkpoints(self, workflow_id: str) -> list[Checkpoint]:
        return [c.model_copy(deep=True) for c in self._checkpoints.get(workflow_id, [])]
