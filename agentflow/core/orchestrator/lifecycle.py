"""
工作流生命周期管理

状态机：
    INITIALIZING → RUNNING → {PAUSED_FOR_ELICITATION ⇄ RUNNING} → COMPLETED
    任意非终态 → ERROR（步骤失败）/ CANCELLED（显式取消）

职责：
- start: 构建并校验步骤序列，持久化为 INITIALIZING，后台调度执行（不阻塞调用方）
- pause / resume / cancel: 受状态机约束的显式迁移
- complete: 序列执行完毕后收尾（检查点、通知、执行历史、释放节流状态）
- recover_from_checkpoint / reattach / reset_step_index: 显式恢复操作
- submit_elicitation_answer: 记录回答并重新执行挂起的步骤
"""
import asyncio
from collections import deque
from typing import Any, Optional

import structlog

from agentflow.core.elicitation import Answers, ElicitationManager
from agentflow.core.error_handler import StepErrorHandler
from agentflow.core.exceptions import (
    CheckpointNotFoundError,
    ElicitationStateError,
    InvalidSequenceError,
    InvalidTransitionError,
)
from agentflow.core.orchestrator.base import EngineConfig
from agentflow.core.orchestrator.checkpoint import CheckpointService
from agentflow.core.orchestrator.execution_lease import WorkflowExecutionLease
from agentflow.core.orchestrator.state_manager import WorkflowStateManager
from agentflow.core.orchestrator.step_executor import StepExecutor
from agentflow.core.template_resolver import TemplateResolver
from agentflow.models.constants import (
    CheckpointLabel,
    DEFAULT_SECTION_OWNER,
    WORKFLOW_SEQUENCES,
    WorkflowStatus,
)
from agentflow.models.domain import (
    AgentResult,
    Step,
    Workflow,
    WorkflowStartConfig,
    WorkflowStatusResult,
    utc_now,
)
from agentflow.services.notification_service import (
    NotificationPort,
    WorkflowEvent,
    safe_publish,
)
from agentflow.utils.rate_limiter import AIRequestThrottler

logger = structlog.get_logger()


class WorkflowLifecycleManager:
    """工作流生命周期管理器"""

    def __init__(
        self,
        state: WorkflowStateManager,
        step_executor: StepExecutor,
        resolver: TemplateResolver,
        elicitation: ElicitationManager,
        checkpoints: CheckpointService,
        throttler: AIRequestThrottler,
        error_handler: StepErrorHandler,
        notifier: Optional[NotificationPort] = None,
        config: Optional[EngineConfig] = None,
        lease: Optional[WorkflowExecutionLease] = None,
    ):
        self.state = state
        self.step_executor = step_executor
        self.resolver = resolver
        self.elicitation = elicitation
        self.checkpoints = checkpoints
        self.throttler = throttler
        self.error_handler = error_handler
        self.notifier = notifier
        self.config = config or EngineConfig()
        self.lease = lease
        self.execution_history: deque[dict[str, Any]] = deque(maxlen=self.config.execution_history_size)
        self._tasks: dict[str, asyncio.Task] = {}

        step_executor.bind_lifecycle(self)

    # ============================================================
    # 启动
    # ============================================================

    async def start(self, config: WorkflowStartConfig) -> WorkflowStatusResult:
        """
        启动工作流

        校验失败同步抛出 InvalidSequenceError，工作流不会被持久化。
        返回后执行在后台进行，失败只通过持久化状态与通知可见。
        """
        sequence, name = await self._build_sequence(config)
        await self.validate_sequence(sequence)

        workflow = Workflow(
            name=config.name or name,
            description=config.description,
            sequence=sequence,
            user_prompt=config.user_prompt,
            context=dict(config.context),
            checkpoint_enabled=(
                self.config.checkpoint_enabled
                if config.checkpoint_enabled is None
                else config.checkpoint_enabled
            ),
        )
        if config.workflow_id:
            existing = await self.state.get(config.workflow_id)
            if existing is not None:
                raise InvalidTransitionError(
                    config.workflow_id, existing.status.value, WorkflowStatus.INITIALIZING.value
                )
            workflow.id = config.workflow_id

        await self.state.save(workflow)
        await self.checkpoints.record(workflow, CheckpointLabel.WORKFLOW_INITIALIZED, "Workflow initialized")

        logger.info(
            "workflow_started",
            workflow_id=workflow.id,
            name=workflow.name,
            steps=len(sequence),
            tenant_id=workflow.tenant_id,
        )
        await safe_publish(
            self.notifier,
            workflow.id,
            WorkflowEvent.STARTED,
            {"name": workflow.name, "steps": len(sequence)},
        )

        self.schedule(workflow.id)
        return WorkflowStatusResult(workflow_id=workflow.id, status=workflow.status)

    async def _build_sequence(self, config: WorkflowStartConfig) -> tuple[list[Step], str]:
        """按 显式序列 → 内置序列 → 模板章节 的顺序确定步骤序列"""
        if config.sequence is not None:
            return list(config.sequence), config.name

        if config.sequence_name:
            raw = WORKFLOW_SEQUENCES.get(config.sequence_name)
            if raw is None:
                raise InvalidSequenceError(
                    f"Unknown workflow sequence: {config.sequence_name}",
                    sequence_name=config.sequence_name,
                )
            return [Step.model_validate(s) for s in raw], config.sequence_name

        if config.template_name:
            template = await self.resolver.load(config.template_name)
            if template is None:
                raise InvalidSequenceError(
                    f"Template not found: {config.template_name}",
                    template_name=config.template_name,
                )
            steps = [
                Step(
                    agent_id=section.owner or DEFAULT_SECTION_OWNER,
                    action=f"Process section: {section.title or section.id}",
                    creates=section.id,
                    requires=list(section.requires),
                    notes=section.instruction or None,
                )
                for section in template.sections
            ]
            return steps, template.title or template.name

        raise InvalidSequenceError("A sequence, sequence_name or template_name is required")

    async def validate_sequence(self, sequence: list[Step]) -> None:
        """
        校验步骤序列

        Raises:
            InvalidSequenceError: 序列为空、依赖未被更早的步骤产出、或 Agent 不存在
        """
        if not sequence:
            raise InvalidSequenceError("Workflow sequence is empty")

        produced: set[str] = set()
        for index, step in enumerate(sequence):
            missing = [r for r in step.requires if r not in produced]
            if missing:
                raise InvalidSequenceError(
                    f"Step {index} ({step.agent_id}) requires {', '.join(missing)} "
                    "which no earlier step creates",
                    step_index=index,
                    missing=missing,
                )
            if step.creates:
                produced.add(step.creates)

        unknown = []
        for agent_id in dict.fromkeys(step.agent_id for step in sequence):
            if await self.resolver.load_agent(agent_id) is None:
                unknown.append(agent_id)
        if unknown:
            raise InvalidSequenceError(
                f"Unknown agents in sequence: {', '.join(unknown)}",
                agents=unknown,
            )

    # ============================================================
    # 后台执行
    # ============================================================

    def schedule(self, workflow_id: str) -> asyncio.Task:
        """后台调度执行（同一工作流的执行任务串行衔接）"""
        previous = self._tasks.get(workflow_id)
        task = asyncio.create_task(self._drive(workflow_id, previous))
        self._tasks[workflow_id] = task
        return task

    async def _drive(self, workflow_id: str, previous: Optional[asyncio.Task]) -> None:
        if previous is not None and not previous.done():
            await asyncio.wait([previous])

        leased = False
        try:
            if self.lease is not None:
                leased = await self.lease.acquire(workflow_id)
                if not leased:
                    logger.info("workflow_execution_lease_held", workflow_id=workflow_id)
                    return

            async with self.state.lock(workflow_id):
                workflow = await self.state.load(workflow_id)
                if workflow.status == WorkflowStatus.INITIALIZING:
                    workflow.status = WorkflowStatus.RUNNING
                    await self.state.save(workflow)
                    await safe_publish(self.notifier, workflow_id, WorkflowEvent.RUNNING, {})

            status = await self.step_executor.run(workflow_id)
            logger.info("workflow_execution_stopped", workflow_id=workflow_id, status=status.value)

        except Exception as e:
            logger.error(
                "workflow_execution_failed",
                workflow_id=workflow_id,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            await self.error_handler.mark_failed(workflow_id, e)
        finally:
            if leased:
                await self.lease.release(workflow_id)
            if self._tasks.get(workflow_id) is asyncio.current_task():
                del self._tasks[workflow_id]

    async def drain(self) -> None:
        """等待所有后台执行结束（包括执行过程中新调度的任务）"""
        while self._tasks:
            tasks = list(self._tasks.items())
            await asyncio.gather(*(task for _, task in tasks), return_exceptions=True)
            for workflow_id, task in tasks:
                if self._tasks.get(workflow_id) is task:
                    del self._tasks[workflow_id]

    def is_running(self, workflow_id: str) -> bool:
        task = self._tasks.get(workflow_id)
        return task is not None and not task.done()

    async def is_driven_elsewhere(self, workflow_id: str) -> bool:
        """执行租约是否由其他进程持有"""
        if self.lease is None or self.lease.holds(workflow_id):
            return False
        return await self.lease.is_held(workflow_id)

    # ============================================================
    # 状态迁移
    # ============================================================

    async def pause(self, workflow_id: str) -> WorkflowStatusResult:
        """RUNNING → PAUSED_FOR_ELICITATION（在下一个步骤边界生效）"""
        async with self.state.lock(workflow_id):
            workflow = await self.state.load(workflow_id)
            self._require(workflow, {WorkflowStatus.RUNNING}, WorkflowStatus.PAUSED_FOR_ELICITATION)
            workflow.status = WorkflowStatus.PAUSED_FOR_ELICITATION
            await self.state.save(workflow)

        logger.info("workflow_paused", workflow_id=workflow_id, step_index=workflow.current_step_index)
        await safe_publish(
            self.notifier, workflow_id, WorkflowEvent.PAUSED,
            {"step_index": workflow.current_step_index},
        )
        return WorkflowStatusResult(workflow_id=workflow_id, status=workflow.status)

    async def resume(self, workflow_id: str) -> WorkflowStatusResult:
        """PAUSED_FOR_ELICITATION → RUNNING，并重新调度执行"""
        async with self.state.lock(workflow_id):
            workflow = await self.state.load(workflow_id)
            self._require(workflow, {WorkflowStatus.PAUSED_FOR_ELICITATION}, WorkflowStatus.RUNNING)
            workflow.status = WorkflowStatus.RUNNING
            await self.state.save(workflow)

        logger.info("workflow_resumed", workflow_id=workflow_id, step_index=workflow.current_step_index)
        await safe_publish(
            self.notifier, workflow_id, WorkflowEvent.RESUMED,
            {"step_index": workflow.current_step_index},
        )
        self.schedule(workflow_id)
        return WorkflowStatusResult(workflow_id=workflow_id, status=workflow.status)

    async def cancel(self, workflow_id: str) -> WorkflowStatusResult:
        """
        任意非终态 → CANCELLED

        进行中的 AI 调用允许完成，结果在应用时被丢弃；已产出的产物保留。
        """
        async with self.state.lock(workflow_id):
            workflow = await self.state.load(workflow_id)
            if workflow.is_terminal:
                raise InvalidTransitionError(
                    workflow_id, workflow.status.value, WorkflowStatus.CANCELLED.value
                )
            workflow.status = WorkflowStatus.CANCELLED
            workflow.ended_at = utc_now()
            workflow.add_message("Workflow cancelled", role="system")
            await self.state.save(workflow)

        self.state.clear_live_step(workflow_id)
        logger.info(
            "workflow_cancelled",
            workflow_id=workflow_id,
            step_index=workflow.current_step_index,
            artifacts=list(workflow.artifacts),
        )
        await safe_publish(
            self.notifier, workflow_id, WorkflowEvent.CANCELLED,
            {"step_index": workflow.current_step_index},
        )
        return WorkflowStatusResult(workflow_id=workflow_id, status=workflow.status)

    async def complete(self, workflow_id: str) -> Workflow:
        """
        序列执行完毕后收尾

        持久化最终状态、记录完成检查点、发布完成通知、
        写入执行历史、释放该租户的节流状态。
        """
        async with self.state.lock(workflow_id):
            workflow = await self.state.load(workflow_id)
            if workflow.status != WorkflowStatus.RUNNING:
                logger.info(
                    "workflow_completion_skipped",
                    workflow_id=workflow_id,
                    status=workflow.status.value,
                )
                return workflow
            workflow.status = WorkflowStatus.COMPLETED
            workflow.ended_at = utc_now()
            workflow.elicitation = None
            workflow.add_message("Workflow completed", role="system")
            await self.state.save(workflow)

        await self.checkpoints.record(workflow, CheckpointLabel.WORKFLOW_COMPLETED, "Workflow completed")

        self.execution_history.append(
            {
                "workflow_id": workflow.id,
                "name": workflow.name,
                "tenant_id": workflow.tenant_id,
                "status": workflow.status.value,
                "artifacts": list(workflow.artifacts),
                "started_at": workflow.started_at,
                "ended_at": workflow.ended_at,
            }
        )
        self.state.clear_live_step(workflow_id)
        await self.throttler.release_tenant(workflow.tenant_id)

        logger.info(
            "workflow_completed",
            workflow_id=workflow_id,
            artifacts=list(workflow.artifacts),
            errors=len(workflow.errors),
        )
        await safe_publish(
            self.notifier, workflow_id, WorkflowEvent.COMPLETED,
            {"artifacts": list(workflow.artifacts)},
        )
        return workflow

    @staticmethod
    def _require(workflow: Workflow, allowed: set[WorkflowStatus], target: WorkflowStatus) -> None:
        if workflow.status not in allowed:
            raise InvalidTransitionError(workflow.id, workflow.status.value, target.value)

    # ============================================================
    # 引导回答
    # ============================================================

    async def submit_elicitation_answer(
        self,
        workflow_id: str,
        step_index: int,
        answers: Answers,
        force: bool = False,
    ) -> AgentResult:
        """
        记录回答并重新执行挂起的步骤

        Args:
            force: 人工确认回答已足够（跳过 is_satisfied 判断）

        Returns:
            步骤执行结果；步骤完成后在后台继续执行后续步骤
        """
        async with self.state.lock(workflow_id):
            workflow = await self.state.load(workflow_id)
            if workflow.status != WorkflowStatus.PAUSED_FOR_ELICITATION:
                raise ElicitationStateError(
                    f"Workflow {workflow_id} is not waiting for input (status: {workflow.status.value})",
                    workflow_id=workflow_id,
                )
            if workflow.current_step_index != step_index:
                raise ElicitationStateError(
                    f"Workflow {workflow_id} is paused at step {workflow.current_step_index}, not {step_index}",
                    workflow_id=workflow_id,
                )
            if step_index >= len(workflow.sequence):
                raise ElicitationStateError(
                    f"Workflow {workflow_id} has no pending step; resume it to complete",
                    workflow_id=workflow_id,
                )

            session = workflow.elicitation
            if session is not None and session.step_index == step_index:
                self.elicitation.record_answers(session, answers)
                if force:
                    session.force_satisfied = True
            elif not force and answers:
                raise ElicitationStateError(
                    f"No open elicitation session for step {step_index}",
                    workflow_id=workflow_id,
                )

            workflow.add_message(self._answers_text(answers), role="user", step_index=step_index)
            workflow.status = WorkflowStatus.RUNNING
            await self.state.save(workflow)

        logger.info(
            "elicitation_answer_submitted",
            workflow_id=workflow_id,
            step_index=step_index,
            forced=force,
        )

        outcome = await self.step_executor.execute_step(workflow)
        if outcome.status == WorkflowStatus.RUNNING:
            self.schedule(workflow_id)
        return outcome.result

    @staticmethod
    def _answers_text(answers: Answers) -> str:
        if isinstance(answers, dict):
            return "\n".join(f"{key}: {value}" for key, value in answers.items())
        return "\n".join(str(a) for a in answers)

    # ============================================================
    # 恢复
    # ============================================================

    async def recover_from_checkpoint(self, workflow_id: str) -> WorkflowStatusResult:
        """
        从最近的检查点恢复（RUNNING 卡住或 ERROR 的工作流）

        产物与索引恢复为快照中的值；消息与错误日志只追加，不回退。
        """
        async with self.state.lock(workflow_id):
            workflow = await self.state.load(workflow_id)
            self._require(
                workflow,
                {WorkflowStatus.RUNNING, WorkflowStatus.ERROR},
                WorkflowStatus.RUNNING,
            )
            checkpoint = await self.checkpoints.latest(workflow_id)
            if checkpoint is None:
                raise CheckpointNotFoundError(workflow_id)

            restored = checkpoint.restore()
            restored.status = WorkflowStatus.RUNNING
            restored.ended_at = None
            restored.errors = workflow.errors
            restored.artifact_history = workflow.artifact_history
            restored.messages = workflow.messages
            restored.add_message(
                f"Recovered from checkpoint '{checkpoint.label}' at step {checkpoint.step_index}",
                role="system",
            )
            await self.state.save(restored)

        logger.info(
            "workflow_recovered",
            workflow_id=workflow_id,
            checkpoint_id=checkpoint.id,
            label=checkpoint.label,
            step_index=restored.current_step_index,
        )
        await safe_publish(
            self.notifier, workflow_id, WorkflowEvent.RECOVERED,
            {"checkpoint_id": checkpoint.id, "step_index": restored.current_step_index},
        )
        self.schedule(workflow_id)
        return WorkflowStatusResult(workflow_id=workflow_id, status=restored.status)

    async def reattach(self, workflow_id: str) -> WorkflowStatusResult:
        """重新调度持久化为 RUNNING 的工作流（进程重启后），从已持久化的索引继续"""
        workflow = await self.state.load(workflow_id)
        self._require(workflow, {WorkflowStatus.RUNNING}, WorkflowStatus.RUNNING)
        if not self.is_running(workflow_id):
            self.schedule(workflow_id)
            logger.info(
                "workflow_reattached",
                workflow_id=workflow_id,
                step_index=workflow.current_step_index,
            )
        return WorkflowStatusResult(workflow_id=workflow_id, status=workflow.status)

    async def reset_step_index(self, workflow_id: str, step_index: int) -> WorkflowStatusResult:
        """
        管理操作：回退到指定步骤并重新执行

        仅允许 PAUSED_FOR_ELICITATION / ERROR 状态；
        目标步骤及其后步骤产出的产物从产物映射中移除（历史保留）。
        """
        async with self.state.lock(workflow_id):
            workflow = await self.state.load(workflow_id)
            self._require(
                workflow,
                {WorkflowStatus.PAUSED_FOR_ELICITATION, WorkflowStatus.ERROR},
                WorkflowStatus.RUNNING,
            )
            if not 0 <= step_index <= len(workflow.sequence):
                raise InvalidSequenceError(
                    f"Step index {step_index} out of range for {len(workflow.sequence)} steps",
                    step_index=step_index,
                )

            for step in workflow.sequence[step_index:]:
                if step.creates:
                    workflow.artifacts.pop(step.creates, None)
            previous_index = workflow.current_step_index
            workflow.current_step_index = step_index
            workflow.elicitation = None
            workflow.ended_at = None
            workflow.status = WorkflowStatus.RUNNING
            workflow.add_message(
                f"Step index reset from {previous_index} to {step_index}",
                role="system",
            )
            await self.state.save(workflow)

        logger.warning(
            "workflow_step_index_reset",
            workflow_id=workflow_id,
            previous_index=previous_index,
            step_index=step_index,
        )
        self.schedule(workflow_id)
        return WorkflowStatusResult(workflow_id=workflow_id, status=workflow.status)
