"""
业务领域模型（Pydantic）

包含：
- 定义模型：AgentDefinition / Template（模板与任务共用）
- 工作流模型：Step / Workflow / Artifact / Checkpoint
- 引导会话：ElicitationSession
- 执行模型：ExecutionContext / AgentResult / StepOutcome
- 入参出参：WorkflowStartConfig / WorkflowStatusResult
"""
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional, Union
import uuid

from pydantic import BaseModel, ConfigDict, Field

from agentflow.models.constants import (
    ArtifactType,
    DEFAULT_TENANT_ID,
    DefinitionKind,
    TERMINAL_STATUSES,
    WorkflowStatus,
)


def utc_now() -> datetime:
    """当前 UTC 时间（带时区）"""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


# ============================================================
# 1. 定义模型（只读）
# ============================================================

class Persona(BaseModel):
    """Agent 人设"""
    role: str = ""
    style: str = ""
    identity: str = ""
    focus: str = ""
    core_principles: list[str] = Field(default_factory=list)


class AgentCommand(BaseModel):
    """Agent 声明的命令，如 create-prd: use task create-doc with prd-tmpl.yaml"""
    name: str
    description: str = ""


class AgentDependencies(BaseModel):
    """Agent 依赖的模板与任务"""
    templates: list[str] = Field(default_factory=list)
    tasks: list[str] = Field(default_factory=list)


class AgentDefinition(BaseModel):
    """Agent 定义"""
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    title: str = ""
    icon: str = ""
    persona: Persona = Field(default_factory=Persona)
    commands: list[AgentCommand] = Field(default_factory=list)
    dependencies: AgentDependencies = Field(default_factory=AgentDependencies)


class TemplateSection(BaseModel):
    """模板章节"""
    id: str
    title: str = ""
    instruction: str = ""
    owner: Optional[str] = None
    requires: list[str] = Field(default_factory=list)
    elicit: bool = False
    questions: list[str] = Field(
        default_factory=list,
        description="结构化的引导问题（优先于文本启发式提取）",
    )


class Template(BaseModel):
    """
    模板 / 任务定义

    - kind=template: YAML 文档模板，按 sections 组织
    - kind=task: Markdown 任务说明，content 为原始文本
    """
    name: str
    kind: DefinitionKind = DefinitionKind.TEMPLATE
    title: str = ""
    content: str = ""
    sections: list[TemplateSection] = Field(default_factory=list)
    elicit: bool = False
    mode: str = "interactive"

    @property
    def is_task(self) -> bool:
        return self.kind == DefinitionKind.TASK

    @property
    def wants_elicitation(self) -> bool:
        """模板是否期望引导提问（任务默认期望）"""
        if self.is_task:
            return True
        return self.elicit or any(section.elicit for section in self.sections)


# ============================================================
# 2. 工作流模型
# ============================================================

class Step(BaseModel):
    """工作流步骤"""
    agent_id: str
    action: str
    creates: Optional[str] = None
    requires: list[str] = Field(default_factory=list)
    notes: Optional[str] = None
    uses: Optional[str] = Field(None, description="显式指定的模板/任务名称")
    command: Optional[str] = Field(None, description="显式指定的 Agent 命令")


class Artifact(BaseModel):
    """产物（创建后不可变，替换时在历史中追加新版本）"""
    model_config = ConfigDict(frozen=True)

    id: str
    type: ArtifactType = ArtifactType.DOCUMENT
    content: str
    created_by: str
    step_index: Optional[int] = None
    created_at: datetime = Field(default_factory=utc_now)


class WorkflowMessage(BaseModel):
    """工作流消息（追加写）"""
    role: Literal["user", "agent", "system"] = "agent"
    agent_id: Optional[str] = None
    step_index: Optional[int] = None
    content: str
    timestamp: datetime = Field(default_factory=utc_now)


class WorkflowError(BaseModel):
    """错误日志条目（追加写）"""
    step_index: Optional[int] = None
    agent_id: Optional[str] = None
    code: str
    message: str
    error_type: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)


class ElicitationQuestion(BaseModel):
    question: str
    answer: Optional[str] = None

    @property
    def answered(self) -> bool:
        return bool(self.answer and self.answer.strip())


class ElicitationSession(BaseModel):
    """引导会话（挂在工作流上，随工作流一起持久化）"""
    step_index: int
    template_name: Optional[str] = None
    questions: list[ElicitationQuestion] = Field(default_factory=list)
    force_satisfied: bool = False
    created_at: datetime = Field(default_factory=utc_now)

    def answers(self) -> dict[str, str]:
        return {q.question: q.answer for q in self.questions if q.answered}


class Workflow(BaseModel):
    """工作流实例"""
    id: str = Field(default_factory=new_id)
    name: str = ""
    description: str = ""
    sequence: list[Step] = Field(default_factory=list)
    current_step_index: int = 0
    status: WorkflowStatus = WorkflowStatus.INITIALIZING
    user_prompt: str = ""
    context: dict[str, Any] = Field(default_factory=dict)
    artifacts: dict[str, Artifact] = Field(default_factory=dict)
    artifact_history: list[Artifact] = Field(default_factory=list)
    messages: list[WorkflowMessage] = Field(default_factory=list)
    errors: list[WorkflowError] = Field(default_factory=list)
    elicitation: Optional[ElicitationSession] = None
    checkpoint_enabled: bool = True
    metadata: dict[str, Any] = Field(default_factory=dict)
    started_at: datetime = Field(default_factory=utc_now)
    ended_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def tenant_id(self) -> str:
        return self.context.get("initiated_by") or DEFAULT_TENANT_ID

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def current_step(self) -> Optional[Step]:
        if self.current_step_index < len(self.sequence):
            return self.sequence[self.current_step_index]
        return None

    def add_artifact(self, artifact: Artifact) -> None:
        """写入产物（同 id 的新版本覆盖映射，历史保留全部版本）"""
        self.artifacts[artifact.id] = artifact
        self.artifact_history.append(artifact)

    def add_message(self, content: str, **kwargs: Any) -> None:
        self.messages.append(WorkflowMessage(content=content, **kwargs))

    def add_error(self, code: str, message: str, **kwargs: Any) -> WorkflowError:
        entry = WorkflowError(code=code, message=message[:500], **kwargs)
        self.errors.append(entry)
        return entry

    def touch(self) -> None:
        self.updated_at = utc_now()


class Checkpoint(BaseModel):
    """检查点（追加写快照）"""
    id: str = Field(default_factory=new_id)
    workflow_id: str
    label: str
    description: str = ""
    step_index: int
    status: WorkflowStatus
    snapshot: dict[str, Any]
    created_at: datetime = Field(default_factory=utc_now)

    def restore(self) -> Workflow:
        return Workflow.model_validate(self.snapshot)


# ============================================================
# 3. 执行模型
# ============================================================

class AIResponse(BaseModel):
    """AI Provider 的响应"""
    content: str
    usage: dict[str, int] = Field(default_factory=dict)
    model: str = ""


class ExecutionContext(BaseModel):
    """单个步骤的执行上下文"""
    workflow_id: str
    step_index: int
    step: Step
    tenant_id: str = DEFAULT_TENANT_ID
    user_prompt: str = ""
    artifacts: dict[str, str] = Field(default_factory=dict, description="已有产物 id -> 内容")
    context: dict[str, Any] = Field(default_factory=dict)
    elicitation: Optional[ElicitationSession] = None

    @property
    def is_conversational(self) -> bool:
        return bool(self.context.get("conversational"))

    @property
    def template_name(self) -> Optional[str]:
        return self.context.get("template_name")


class DocumentResult(BaseModel):
    type: Literal["document"] = "document"
    artifact: Artifact


class ElicitationResult(BaseModel):
    type: Literal["elicitation"] = "elicitation"
    questions: list[str]
    complete: Literal[False] = False
    template_name: Optional[str] = None
    prompt: str = ""


class ResponseResult(BaseModel):
    type: Literal["response"] = "response"
    content: str
    provider_error: Optional[str] = Field(
        None, description="非空表示这是 Provider 失败后的致歉回复"
    )


class ErrorResult(BaseModel):
    type: Literal["error"] = "error"
    message: str


AgentResult = Annotated[
    Union[DocumentResult, ElicitationResult, ResponseResult, ErrorResult],
    Field(discriminator="type"),
]


class StepOutcome(BaseModel):
    """StepExecutor 单步执行结果"""
    step_index: int
    result: AgentResult
    status: WorkflowStatus
    applied: bool = True


# ============================================================
# 4. 入参出参
# ============================================================

class WorkflowStartConfig(BaseModel):
    """
    启动工作流的配置

    序列来源三选一：sequence（显式步骤）、sequence_name（内置序列）、
    template_name（模板章节转换为步骤）。
    """
    workflow_id: Optional[str] = None
    name: str = ""
    description: str = ""
    sequence: Optional[list[Step]] = None
    sequence_name: Optional[str] = None
    template_name: Optional[str] = None
    user_prompt: str = ""
    context: dict[str, Any] = Field(default_factory=dict)
    checkpoint_enabled: Optional[bool] = None


class WorkflowStatusResult(BaseModel):
    workflow_id: str
    status: WorkflowStatus
