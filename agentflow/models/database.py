"""
数据库模型（SQLModel）

工作流整体以 JSON 快照存储（data 列），常用查询字段（状态、租户、更新时间）单独建列。
时间字段统一使用带时区的 UTC 时间。
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime
from sqlmodel import SQLModel, Field, Column, JSON

from agentflow.models.domain import utc_now


class WorkflowRecord(SQLModel, table=True):
    """工作流表"""
    __tablename__ = "workflows"

    id: str = Field(primary_key=True)
    name: str = Field(default="")
    tenant_id: str = Field(index=True)

    # 状态跟踪
    status: str = Field(index=True)
    current_step_index: int = Field(default=0)

    # 完整工作流数据（JSON 格式）
    data: dict = Field(sa_column=Column(JSON))

    started_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True)),
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), index=True),
    )
    ended_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )


class CheckpointRecord(SQLModel, table=True):
    """检查点表（只追加）"""
    __tablename__ = "workflow_checkpoints"

    id: str = Field(primary_key=True)
    workflow_id: str = Field(index=True)
    label: str
    description: str = Field(default="")
    step_index: int
    status: str

    # 工作流快照（JSON 格式）
    snapshot: dict = Field(sa_column=Column(JSON))

    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), index=True),
    )
