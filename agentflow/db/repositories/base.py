"""
持久化 Repository 协议

引擎只依赖以下协议：
- WorkflowRepository: 工作流的加载 / 保存 / 按状态列出
- CheckpointRepository: 检查点的追加 / 查询

实现：
- memory.py: 进程内实现（测试 / 本地开发）
- sql.py: SQLModel + AsyncSession 实现
"""
from datetime import datetime
from typing import Optional, Protocol

from agentflow.models.constants import WorkflowStatus
from agentflow.models.domain import Checkpoint, Workflow


class WorkflowRepository(Protocol):

    async def load_workflow(self, workflow_id: str) -> Optional[Workflow]:
        ...

    async def save_workflow(self, workflow: Workflow) -> None:
        ...

    async def list_workflows(
        self,
        status: Optional[WorkflowStatus] = None,
        updated_before: Optional[datetime] = None,
    ) -> list[Workflow]:
        ...


class CheckpointRepository(Protocol):

    async def add_checkpoint(self, checkpoint: Checkpoint) -> None:
        ...

    async def latest_checkpoint(self, workflow_id: str) -> Optional[Checkpoint]:
        ...

    async def list_checkpoints(self, workflow_id: str) -> list[Checkpoint]:
        ...


def matches(
    workflow: Workflow,
    status: Optional[WorkflowStatus],
    updated_before: Optional[datetime],
) -> bool:
    """list_workflows 的过滤条件"""
    if status is not None and workflow.status != status:
        return False
    if updated_before is not None and workflow.updated_at >= updated_before:
        return False
    return True
