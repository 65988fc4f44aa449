"""
统一错误处理器

提供步骤执行的统一错误处理逻辑：记录日志、写入错误日志、
把工作流标记为 ERROR、发布失败通知，然后以 StepFailedError 重新抛出。
"""
import time
import structlog
from contextlib import asynccontextmanager
from typing import AsyncIterator, Any, Dict, Optional

from agentflow.core.exceptions import (
    StepFailedError,
    error_code_for,
    sanitize_error_message,
)
from agentflow.core.orchestrator.state_manager import WorkflowStateManager
from agentflow.models.constants import WorkflowStatus
from agentflow.models.domain import utc_now
from agentflow.services.notification_service import (
    NotificationPort,
    WorkflowEvent,
    safe_publish,
)

logger = structlog.get_logger()


class StepErrorHandler:
    """
    步骤错误处理器

    使用方式：
        async with error_handler.handle_step_execution(workflow_id, index, agent_id) as ctx:
            result = await agent_executor.execute_agent(...)
            ctx["result"] = result

        return ctx["result"]
    """

    def __init__(self, state: WorkflowStateManager, notifier: Optional[NotificationPort] = None):
        self.state = state
        self.notifier = notifier

    @asynccontextmanager
    async def handle_step_execution(
        self,
        workflow_id: str,
        step_index: int,
        agent_id: Optional[str],
    ) -> AsyncIterator[Dict[str, Any]]:
        """
        处理步骤执行的错误

        Yields:
            context: 上下文字典，用于存储执行结果

        Raises:
            StepFailedError: 包装原始异常（在记录和通知后）
        """
        start_time = time.time()
        context: Dict[str, Any] = {}

        try:
            yield context

            logger.debug(
                "step_execution_succeeded",
                workflow_id=workflow_id,
                step_index=step_index,
                agent_id=agent_id,
                duration_ms=int((time.time() - start_time) * 1000),
            )

        except Exception as e:
            duration_ms = int((time.time() - start_time) * 1000)

            # 1. 记录错误日志
            logger.error(
                "workflow_step_failed",
                workflow_id=workflow_id,
                step_index=step_index,
                agent_id=agent_id,
                error=str(e),
                error_type=type(e).__name__,
                duration_ms=duration_ms,
            )

            # 2. 工作流标记为失败
            await self.mark_failed(workflow_id, e, step_index=step_index, agent_id=agent_id)

            # 3. 重新抛出（让调用方决定如何处理）
            raise StepFailedError(workflow_id, step_index, agent_id, e) from e

    async def mark_failed(
        self,
        workflow_id: str,
        error: BaseException,
        step_index: Optional[int] = None,
        agent_id: Optional[str] = None,
    ) -> None:
        """
        把工作流标记为 ERROR 并写入错误日志

        已处于终态（例如已被取消）的工作流不做修改。
        持久化失败只记录日志，不覆盖原始异常。
        """
        message = sanitize_error_message(str(error))
        try:
            async with self.state.lock(workflow_id):
                workflow = await self.state.load(workflow_id)
                if workflow.is_terminal:
                    logger.info(
                        "step_failure_ignored_terminal_workflow",
                        workflow_id=workflow_id,
                        status=workflow.status.value,
                    )
                    return
                workflow.status = WorkflowStatus.ERROR
                workflow.ended_at = utc_now()
                workflow.add_error(
                    code=error_code_for(error).value,
                    message=message,
                    step_index=step_index,
                    agent_id=agent_id,
                    error_type=type(error).__name__,
                )
                await self.state.save(workflow)
        except Exception as db_error:
            logger.error(
                "failed_to_mark_workflow_failed",
                workflow_id=workflow_id,
                step_index=step_index,
                error=str(db_error),
            )

        await safe_publish(
            self.notifier,
            workflow_id,
            WorkflowEvent.FAILED,
            {
                "step_index": step_index,
                "agent_id": agent_id,
                "error": message[:500],
                "error_type": type(error).__name__,
            },
        )
