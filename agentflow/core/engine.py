"""
工作流引擎门面

对外暴露的进程内接口，由外层服务映射到具体传输协议（HTTP / WebSocket / 队列）：
- start_workflow / pause_workflow / resume_workflow / cancel_workflow
- get_workflow_state
- submit_elicitation_answer
- 恢复与管理：recover_workflow / reset_step_index / recover_stale_workflows / list_checkpoints
"""
from typing import Any, Optional, Union

from agentflow.core.elicitation import Answers
from agentflow.core.orchestrator.checkpoint import CheckpointService
from agentflow.core.orchestrator.lifecycle import WorkflowLifecycleManager
from agentflow.core.orchestrator.state_manager import WorkflowStateManager
from agentflow.core.template_resolver import TemplateResolver
from agentflow.models.domain import (
    AgentResult,
    Checkpoint,
    Workflow,
    WorkflowStartConfig,
    WorkflowStatusResult,
)
from agentflow.services.recovery_service import WorkflowRecoveryService


class WorkflowEngine:
    """工作流引擎"""

    def __init__(
        self,
        lifecycle: WorkflowLifecycleManager,
        state: WorkflowStateManager,
        checkpoints: CheckpointService,
        resolver: TemplateResolver,
        recovery: WorkflowRecoveryService,
    ):
        self.lifecycle = lifecycle
        self.state = state
        self.checkpoints = checkpoints
        self.resolver = resolver
        self.recovery = recovery

    async def start_workflow(
        self,
        config: Union[WorkflowStartConfig, dict[str, Any]],
    ) -> WorkflowStatusResult:
        if not isinstance(config, WorkflowStartConfig):
            config = WorkflowStartConfig.model_validate(config)
        return await self.lifecycle.start(config)

    async def pause_workflow(self, workflow_id: str) -> WorkflowStatusResult:
        return await self.lifecycle.pause(workflow_id)

    async def resume_workflow(self, workflow_id: str) -> WorkflowStatusResult:
        return await self.lifecycle.resume(workflow_id)

    async def cancel_workflow(self, workflow_id: str) -> WorkflowStatusResult:
        return await self.lifecycle.cancel(workflow_id)

    async def get_workflow_state(self, workflow_id: str) -> Optional[Workflow]:
        return await self.state.get(workflow_id)

    async def submit_elicitation_answer(
        self,
        workflow_id: str,
        step_index: int,
        answers: Answers,
        force: bool = False,
    ) -> AgentResult:
        return await self.lifecycle.submit_elicitation_answer(
            workflow_id, step_index, answers, force=force
        )

    async def recover_workflow(self, workflow_id: str) -> WorkflowStatusResult:
        return await self.lifecycle.recover_from_checkpoint(workflow_id)

    async def reset_step_index(self, workflow_id: str, step_index: int) -> WorkflowStatusResult:
        return await self.lifecycle.reset_step_index(workflow_id, step_index)

    async def recover_stale_workflows(self) -> dict[str, Any]:
        return await self.recovery.recover_stale_workflows()

    async def list_checkpoints(self, workflow_id: str) -> list[Checkpoint]:
        return await self.checkpoints.list_all(workflow_id)

    def reload_definitions(self) -> int:
        return self.resolver.reload()
