"""
步骤执行器

从 current_step_index 开始顺序执行步骤，直到：
(a) 步骤需要用户输入 → PAUSED_FOR_ELICITATION，索引不变，停止
(b) 步骤失败 → ERROR，错误日志记录步骤索引、Agent 与消息，停止
(c) 序列执行完毕 → 交给 LifecycleManager.complete

Provider 失败（致歉回复）只写入一条错误日志：
步骤声明了 creates 时停在当前步骤并暂停（resume 重试该步骤），否则推进索引继续执行。

每个步骤成功后先持久化再开始下一步（崩溃恢复边界）。
驱动进程持有执行租约时，每个步骤开始前续期租约。
步骤结果在状态锁内应用，应用前重新读取持久化状态：
工作流已被暂停 / 取消时，进行中的结果被丢弃。
"""
from typing import TYPE_CHECKING, Optional

import structlog

from agentflow.agents.refs import SummaryAgentRef
from agentflow.core.elicitation import ElicitationManager
from agentflow.core.error_handler import StepErrorHandler
from agentflow.core.exceptions import (
    ErrorCode,
    MissingArtifactError,
    ProviderError,
    StepFailedError,
)
from agentflow.core.orchestrator.agent_executor import AgentExecutor
from agentflow.core.orchestrator.base import EngineConfig, ExecutionOptions
from agentflow.core.orchestrator.checkpoint import CheckpointService
from agentflow.core.orchestrator.execution_lease import WorkflowExecutionLease
from agentflow.core.orchestrator.state_manager import WorkflowStateManager
from agentflow.models.constants import CheckpointLabel, WorkflowStatus
from agentflow.models.domain import (
    AgentResult,
    DocumentResult,
    ElicitationResult,
    ErrorResult,
    ExecutionContext,
    ResponseResult,
    StepOutcome,
    Workflow,
)
from agentflow.services.notification_service import (
    NotificationPort,
    WorkflowEvent,
    safe_publish,
)

if TYPE_CHECKING:
    from agentflow.core.orchestrator.lifecycle import WorkflowLifecycleManager

logger = structlog.get_logger()


class StepExecutor:
    """步骤执行器"""

    def __init__(
        self,
        state: WorkflowStateManager,
        agent_executor: AgentExecutor,
        elicitation: ElicitationManager,
        checkpoints: CheckpointService,
        error_handler: StepErrorHandler,
        notifier: Optional[NotificationPort] = None,
        config: Optional[EngineConfig] = None,
        lease: Optional[WorkflowExecutionLease] = None,
    ):
        self.state = state
        self.agent_executor = agent_executor
        self.elicitation = elicitation
        self.checkpoints = checkpoints
        self.error_handler = error_handler
        self.notifier = notifier
        self.config = config or EngineConfig()
        self.lease = lease
        self.lifecycle: Optional["WorkflowLifecycleManager"] = None

    def bind_lifecycle(self, lifecycle: "WorkflowLifecycleManager") -> None:
        self.lifecycle = lifecycle

    async def run(self, workflow_id: str) -> WorkflowStatus:
        """
        执行工作流直到暂停、失败、完成或不再处于 RUNNING

        Returns:
            停止时的工作流状态
        """
        while True:
            workflow = await self.state.load(workflow_id)
            if workflow.status != WorkflowStatus.RUNNING:
                logger.info(
                    "workflow_run_stopped",
                    workflow_id=workflow_id,
                    status=workflow.status.value,
                    step_index=workflow.current_step_index,
                )
                return workflow.status

            if workflow.current_step_index >= len(workflow.sequence):
                completed = await self.lifecycle.complete(workflow_id)
                return completed.status

            # 步骤边界续期；租约已被其他进程接管时停止驱动
            if self.lease is not None and not await self.lease.refresh(workflow_id):
                return workflow.status

            outcome = await self.execute_step(workflow)
            if outcome.status != WorkflowStatus.RUNNING:
                return outcome.status

    async def execute_step(
        self,
        workflow: Workflow,
        options: Optional[ExecutionOptions] = None,
    ) -> StepOutcome:
        """
        执行当前步骤并应用结果

        失败时工作流已被标记为 ERROR，返回 ErrorResult。
        """
        index = workflow.current_step_index
        step = workflow.sequence[index]

        try:
            async with self.error_handler.handle_step_execution(workflow.id, index, step.agent_id) as ctx:
                missing = [r for r in step.requires if r not in workflow.artifacts]
                if missing:
                    raise MissingArtifactError(index, missing)

                self.state.set_live_step(workflow)
                await safe_publish(
                    self.notifier,
                    workflow.id,
                    WorkflowEvent.STEP_STARTED,
                    {"step_index": index, "agent_id": step.agent_id, "action": step.action},
                )

                result = await self.agent_executor.execute_agent(
                    SummaryAgentRef(id=step.agent_id),
                    self._build_context(workflow, index),
                    options,
                )
                if isinstance(result, ErrorResult):
                    raise ProviderError(result.message)

                ctx["outcome"] = await self._apply(workflow.id, index, result)

        except StepFailedError as e:
            return StepOutcome(
                step_index=index,
                result=ErrorResult(message=str(e.cause)),
                status=WorkflowStatus.ERROR,
            )

        outcome: StepOutcome = ctx["outcome"]
        await self._publish_outcome(workflow.id, step.agent_id, outcome)
        return outcome

    def _build_context(self, workflow: Workflow, index: int) -> ExecutionContext:
        session = workflow.elicitation
        return ExecutionContext(
            workflow_id=workflow.id,
            step_index=index,
            step=workflow.sequence[index],
            tenant_id=workflow.tenant_id,
            user_prompt=workflow.user_prompt,
            artifacts={aid: a.content for aid, a in workflow.artifacts.items()},
            context=workflow.context,
            elicitation=session if session and session.step_index == index else None,
        )

    async def _apply(self, workflow_id: str, index: int, result: AgentResult) -> StepOutcome:
        """在状态锁内把步骤结果写入工作流并持久化"""
        async with self.state.lock(workflow_id):
            workflow = await self.state.load(workflow_id)
            if workflow.status != WorkflowStatus.RUNNING or workflow.current_step_index != index:
                logger.info(
                    "step_result_discarded",
                    workflow_id=workflow_id,
                    step_index=index,
                    status=workflow.status.value,
                    current_step_index=workflow.current_step_index,
                )
                return StepOutcome(step_index=index, result=result, status=workflow.status, applied=False)

            step = workflow.sequence[index]
            advanced = True

            if isinstance(result, DocumentResult):
                workflow.add_artifact(result.artifact)
                workflow.add_message(
                    f"Created {result.artifact.id}",
                    agent_id=step.agent_id,
                    step_index=index,
                )
            elif isinstance(result, ResponseResult):
                workflow.add_message(result.content, agent_id=step.agent_id, step_index=index)
                if result.provider_error:
                    workflow.add_error(
                        code=ErrorCode.PROVIDER_ERROR.value,
                        message=result.provider_error,
                        step_index=index,
                        agent_id=step.agent_id,
                        error_type="ProviderError",
                    )
                    if step.creates:
                        # 产物未生成：停在当前步骤，resume 时重试
                        advanced = False
                        workflow.status = WorkflowStatus.PAUSED_FOR_ELICITATION
            elif isinstance(result, ElicitationResult):
                advanced = False
                session = workflow.elicitation
                if session is None or session.step_index != index:
                    workflow.elicitation = self.elicitation.open_session(
                        index, result.template_name, result.questions
                    )
                workflow.status = WorkflowStatus.PAUSED_FOR_ELICITATION
                workflow.add_message(result.prompt, agent_id=step.agent_id, step_index=index)

            if advanced:
                workflow.current_step_index = index + 1
                workflow.elicitation = None

            await self.state.save(workflow)

            if advanced and self.config.checkpoint_every_step:
                await self.checkpoints.record(
                    workflow,
                    CheckpointLabel.STEP_COMPLETED,
                    f"Step {index} ({step.agent_id}) completed",
                )

            logger.info(
                "step_result_applied",
                workflow_id=workflow_id,
                step_index=index,
                agent_id=step.agent_id,
                result_type=result.type,
                status=workflow.status.value,
            )
            return StepOutcome(step_index=index, result=result, status=workflow.status)

    async def _publish_outcome(self, workflow_id: str, agent_id: str, outcome: StepOutcome) -> None:
        if not outcome.applied:
            return
        result = outcome.result
        payload = {"step_index": outcome.step_index, "agent_id": agent_id}

        if isinstance(result, ElicitationResult):
            await safe_publish(
                self.notifier,
                workflow_id,
                WorkflowEvent.ELICITATION_REQUIRED,
                {**payload, "questions": result.questions},
            )
            return

        if isinstance(result, ResponseResult) and result.provider_error:
            await safe_publish(
                self.notifier,
                workflow_id,
                WorkflowEvent.PROVIDER_ERROR,
                {**payload, "error": result.provider_error},
            )
            if outcome.status == WorkflowStatus.PAUSED_FOR_ELICITATION:
                await safe_publish(
                    self.notifier,
                    workflow_id,
                    WorkflowEvent.PAUSED,
                    {**payload, "reason": "provider_error"},
                )
                return

        artifact_id = result.artifact.id if isinstance(result, DocumentResult) else None
        await safe_publish(
            self.notifier,
            workflow_id,
            WorkflowEvent.STEP_COMPLETED,
            {**payload, "artifact_id": artifact_id},
        )
