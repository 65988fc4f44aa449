"""
常量定义模块

定义工作流状态、产物类型、结果类型以及内置的工作流序列。
"""
from enum import Enum


class WorkflowStatus(str, Enum):
    """
    工作流状态枚举

    状态机：
    INITIALIZING → RUNNING → {PAUSED_FOR_ELICITATION ⇄ RUNNING} → COMPLETED
    任意非终态都可以进入 ERROR（步骤失败）或 CANCELLED（显式取消）。
    """
    INITIALIZING = "initializing"                          # 初始化
    RUNNING = "running"                                    # 运行中
    PAUSED_FOR_ELICITATION = "paused_for_elicitation"      # 等待用户回答
    COMPLETED = "completed"                                # 已完成
    ERROR = "error"                                        # 失败
    CANCELLED = "cancelled"                                # 已取消


TERMINAL_STATUSES = frozenset(
    {WorkflowStatus.COMPLETED, WorkflowStatus.ERROR, WorkflowStatus.CANCELLED}
)


class ArtifactType(str, Enum):
    """产物类型"""
    DOCUMENT = "document"
    RESPONSE = "response"
    DATA = "data"


class DefinitionKind(str, Enum):
    """定义文件类型"""
    TEMPLATE = "template"
    TASK = "task"


class CacheNamespace(str, Enum):
    """
    缓存命名空间

    静态命名空间（模板、任务、Agent 定义）永不过期；
    工作命名空间（工作流状态、执行器、锁）按最后访问时间回收。
    """
    TEMPLATE = "template"
    TASK = "task"
    AGENT = "agent"
    WORKFLOW_STATE = "workflow_state"
    EXECUTOR = "executor"
    LOCK = "lock"


STATIC_NAMESPACES = frozenset(
    {CacheNamespace.TEMPLATE, CacheNamespace.TASK, CacheNamespace.AGENT}
)


class CheckpointLabel(str, Enum):
    """检查点标签"""
    WORKFLOW_INITIALIZED = "workflow_initialized"
    STEP_COMPLETED = "step_completed"
    WORKFLOW_COMPLETED = "workflow_completed"


DEFAULT_TENANT_ID = "system"
DEFAULT_SECTION_OWNER = "pm"


# ============================================================
# 内置工作流序列
# ============================================================

WORKFLOW_SEQUENCES: dict[str, list[dict]] = {
    "full-stack": [
        {"agent_id": "analyst", "action": "Create project brief", "creates": "project-brief.md"},
        {"agent_id": "pm", "action": "Create PRD", "creates": "prd.md",
         "requires": ["project-brief.md"]},
        {"agent_id": "ux-expert", "action": "Create front-end spec", "creates": "front-end-spec.md",
         "requires": ["prd.md"]},
        {"agent_id": "architect", "action": "Create architecture", "creates": "architecture.md",
         "requires": ["prd.md", "front-end-spec.md"]},
        {"agent_id": "dev", "action": "Implement stories", "creates": "implementation.md",
         "requires": ["architecture.md"]},
        {"agent_id": "qa", "action": "Review implementation", "creates": "qa-report.md",
         "requires": ["implementation.md"]},
    ],
    "backend-service": [
        {"agent_id": "analyst", "action": "Create project brief", "creates": "project-brief.md"},
        {"agent_id": "pm", "action": "Create PRD", "creates": "prd.md",
         "requires": ["project-brief.md"]},
        {"agent_id": "architect", "action": "Create architecture", "creates": "architecture.md",
         "requires": ["prd.md"]},
        {"agent_id": "dev", "action": "Implement stories", "creates": "implementation.md",
         "requires": ["architecture.md"]},
        {"agent_id": "qa", "action": "Review implementation", "creates": "qa-report.md",
         "requires": ["implementation.md"]},
    ],
    "frontend-application": [
        {"agent_id": "analyst", "action": "Create project brief", "creates": "project-brief.md"},
        {"agent_id": "pm", "action": "Create PRD", "creates": "prd.md",
         "requires": ["project-brief.md"]},
        {"agent_id": "ux-expert", "action": "Create front-end spec", "creates": "front-end-spec.md",
         "requires": ["prd.md"]},
        {"agent_id": "dev", "action": "Implement stories", "creates": "implementation.md",
         "requires": ["front-end-spec.md"]},
        {"agent_id": "qa", "action": "Review implementation", "creates": "qa-report.md",
         "requires": ["implementation.md"]},
    ],
}
