"""
SQL Repository 实现（SQLModel + AsyncSession）

每次操作使用独立会话并立即提交，保存即持久化。
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
import structlog

from agentflow.core.exceptions import PersistenceError
from agentflow.db.repositories.base import matches
from agentflow.models.constants import WorkflowStatus
from agentflow.models.database import CheckpointRecord, WorkflowRecord
from agentflow.models.domain import Checkpoint, Workflow

logger = structlog.get_logger(__name__)


class SqlWorkflowRepository:
    """工作流仓储（workflows 表）"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def load_workflow(self, workflow_id: str) -> Optional[Workflow]:
        async with self.session_factory() as session:
            record = await session.get(WorkflowRecord, workflow_id)
            return Workflow.model_validate(record.data) if record else None

    async def save_workflow(self, workflow: Workflow) -> None:
        data = workflow.model_dump(mode="json")
        try:
            async with self.session_factory() as session:
                record = await session.get(WorkflowRecord, workflow.id)
                if record is None:
                    record = WorkflowRecord(
                        id=workflow.id,
                        tenant_id=workflow.tenant_id,
                        status=workflow.status.value,
                        data=data,
                        started_at=workflow.started_at,
                    )
                    session.add(record)
                record.name = workflow.name
                record.status = workflow.status.value
                record.current_step_index = workflow.current_step_index
                record.data = data
                record.updated_at = workflow.updated_at
                record.ended_at = workflow.ended_at
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("workflow_save_failed", workflow_id=workflow.id, error=str(e))
            raise PersistenceError(f"Failed to save workflow {workflow.id}: {e}") from e

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
        query = select(WorkflowRecord)
        if status is not None:
            query = query.where(WorkflowRecord.status == status.value)

        async with self.session_factory() as session:
            result = await session.execute(query)
            records = result.scalars().all()

        # 更新时间以 JSON 快照中的带时区值为准
        workflows = [Workflow.model_validate(r.data) for r in records]
        return [w for w in workflows if matches(w, status, updated_before)]


class SqlCheckpointRepository:
    """检查点仓储（workflow_checkpoints 表）"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    @staticmethod
    def _to_domain(record: CheckpointRecord) -> Checkpoint:
        return Checkpoint(
            id=record.id,
            workflow_id=record.workflow_id,
            label=record.label,
            description=record.description,
            step_index=record.step_index,
            status=WorkflowStatus(record.status),
            snapshot=record.snapshot,
            created_at=record.created_at,
        )

    async def add_checkpoint(self, checkpoint: Checkpoint) -> None:
        try:
            async with self.session_factory() as session:
                session.add(
                    CheckpointRecord(
                        id=checkpoint.id,
                        workflow_id=checkpoint.workflow_id,
                        label=checkpoint.label,
                        description=checkpoint.description,
                        step_index=checkpoint.step_index,
                        status=checkpoint.status.value,
                        snapshot=checkpoint.snapshot,
                        created_at=checkpoint.created_at,
                    )
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("checkpoint_save_failed", workflow_id=checkpoint.workflow_id, error=str(e))
            raise PersistenceError(f"Failed to save checkpoint for {checkpoint.workflow_id}: {e}") from e

    async def latest_checkpoint(self, workflow_id: str) -> Optional[Checkpoint]:
        checkpoints = await self.list_checkpoints(workflow_id)
        return checkpoints[-1] if checkpoints else None

    async def list_checkpoints(self, workflow_id: str) -> list[Checkpoint]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(CheckpointRecord)
                .where(CheckpointRecord.workflow_id == workflow_id)
                .order_by(CheckpointRecord.created_at, CheckpointRecord.id)
            )
            return [self._to_domain(r) for r in result.scalars().all()]
