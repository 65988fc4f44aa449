"""
异常体系与错误码枚举

所有引擎异常继承 AgentFlowError，携带 ErrorCode 与业务详情，
便于外层服务映射为统一的错误响应。
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, Field
import re


class ErrorCode(str, Enum):
    """
    错误码枚举

    写入工作流错误日志，也用于外层服务的差异化处理。
    """
    # 校验错误（同步返回给调用方，工作流不会持久化）
    INVALID_SEQUENCE = "INVALID_SEQUENCE"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    ELICITATION_STATE_ERROR = "ELICITATION_STATE_ERROR"

    # 资源不存在
    WORKFLOW_NOT_FOUND = "WORKFLOW_NOT_FOUND"
    CHECKPOINT_NOT_FOUND = "CHECKPOINT_NOT_FOUND"
    AGENT_NOT_FOUND = "AGENT_NOT_FOUND"
    TEMPLATE_NOT_FOUND = "TEMPLATE_NOT_FOUND"

    # 执行错误
    MISSING_ARTIFACT = "MISSING_ARTIFACT"
    STEP_FAILED = "STEP_FAILED"
    PERSISTENCE_ERROR = "PERSISTENCE_ERROR"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    THROTTLE_TIMEOUT = "THROTTLE_TIMEOUT"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ErrorDetail(BaseModel):
    """
    错误详情

    统一的错误描述格式。
    """
    code: ErrorCode = Field(..., description="错误码")
    message: str = Field(..., description="错误描述")
    details: Optional[dict[str, Any]] = Field(None, description="业务相关详情（可选）")
    timestamp: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat(),
        description="错误发生时间（UTC）",
    )


class AgentFlowError(Exception):
    """引擎异常基类"""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_detail(self) -> ErrorDetail:
        return ErrorDetail(
            code=self.code,
            message=sanitize_error_message(self.message),
            details=self.details or None,
        )


class InvalidSequenceError(AgentFlowError):
    """步骤序列非法（为空、依赖前向引用、未知 Agent）"""
    code = ErrorCode.INVALID_SEQUENCE


class InvalidTransitionError(AgentFlowError):
    """非法的状态迁移"""
    code = ErrorCode.INVALID_TRANSITION

    def __init__(self, workflow_id: str, current: str, target: str):
        super().__init__(
            f"Cannot transition workflow {workflow_id} from {current} to {target}",
            workflow_id=workflow_id,
            current=current,
            target=target,
        )


class ElicitationStateError(AgentFlowError):
    """引导回答与当前工作流状态不匹配"""
    code = ErrorCode.ELICITATION_STATE_ERROR


class WorkflowNotFoundError(AgentFlowError):
    code = ErrorCode.WORKFLOW_NOT_FOUND

    def __init__(self, workflow_id: str):
        super().__init__(f"Workflow not found: {workflow_id}", workflow_id=workflow_id)


class CheckpointNotFoundError(AgentFlowError):
    code = ErrorCode.CHECKPOINT_NOT_FOUND

    def __init__(self, workflow_id: str):
        super().__init__(f"No checkpoint recorded for workflow {workflow_id}", workflow_id=workflow_id)


class AgentNotFoundError(AgentFlowError):
    code = ErrorCode.AGENT_NOT_FOUND

    def __init__(self, agent_id: str):
        super().__init__(f"Agent not found: {agent_id}", agent_id=agent_id)


class TemplateNotFoundError(AgentFlowError):
    code = ErrorCode.TEMPLATE_NOT_FOUND

    def __init__(self, name: str):
        super().__init__(f"Template not found: {name}", template_name=name)


class MissingArtifactError(AgentFlowError):
    """步骤依赖的产物尚不存在"""
    code = ErrorCode.MISSING_ARTIFACT

    def __init__(self, step_index: int, missing: list[str]):
        super().__init__(
            f"Step {step_index} requires missing artifacts: {', '.join(missing)}",
            step_index=step_index,
            missing=missing,
        )


class PersistenceError(AgentFlowError):
    code = ErrorCode.PERSISTENCE_ERROR


class ProviderError(AgentFlowError):
    code = ErrorCode.PROVIDER_ERROR


class ThrottleTimeoutError(AgentFlowError):
    """等待租户租约超时"""
    code = ErrorCode.THROTTLE_TIMEOUT


class StepFailedError(AgentFlowError):
    """步骤执行失败（包装原始异常）"""
    code = ErrorCode.STEP_FAILED

    def __init__(self, workflow_id: str, step_index: int, agent_id: Optional[str], cause: BaseException):
        super().__init__(
            f"Step {step_index} ({agent_id}) failed: {cause}",
            workflow_id=workflow_id,
            step_index=step_index,
            agent_id=agent_id,
        )
        self.cause = cause


def error_code_for(exc: BaseException) -> ErrorCode:
    """推断异常对应的错误码"""
    if isinstance(exc, AgentFlowError):
        return exc.code
    return ErrorCode.INTERNAL_ERROR


# 敏感信息：key=value / key: value 形式的凭据，以及带密码的连接串
_SENSITIVE_PATTERNS = [
    re.compile(r"(?i)(password|api_key|apikey|secret|token)\s*[=:]\s*\S+"),
    re.compile(r"(\w+://)[^:/\s]+:[^@/\s]+@"),
]


def sanitize_error_message(message: str) -> str:
    """
    清理错误消息，移除敏感信息

    移除可能包含的数据库连接字符串、API 密钥等敏感信息。
    """
    sanitized = _SENSITIVE_PATTERNS[0].sub(lambda m: f"{m.group(1)}=***", message)
    sanitized = _SENSITIVE_PATTERNS[1].sub(lambda m: f"{m.group(1)}***@", sanitized)
    return sanitized
