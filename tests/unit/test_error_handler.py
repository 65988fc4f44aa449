"""
StepErrorHandler 单元测试
"""
import pytest
from unittest.mock import AsyncMock

from agentflow.core.error_handler import StepErrorHandler
from agentflow.core.exceptions import ErrorCode, StepFailedError, WorkflowNotFoundError
from agentflow.models.constants import WorkflowStatus
from agentflow.services.notification_service import WorkflowEvent


class TestHandleStepExecution:

    @pytest.mark.asyncio
    async def test_success_passes_context_through(self, registry, make_running_workflow, brief_and_arch_sequence):
        workflow = await make_running_workflow(brief_and_arch_sequence)

        async with registry.error_handler.handle_step_execution(workflow.id, 0, "pm") as ctx:
            ctx["result"] = "ok"

        assert ctx["result"] == "ok"
        stored = await registry.state.load(workflow.id)
        assert stored.status == WorkflowStatus.RUNNING

    @pytest.mark.asyncio
    async def test_exception_marks_workflow_failed(
        self, registry, notifier, make_running_workflow, brief_and_arch_sequence
    ):
        workflow = await make_running_workflow(brief_and_arch_sequence)

        with pytest.raises(StepFailedError) as exc_info:
            async with registry.error_handler.handle_step_execution(workflow.id, 1, "architect"):
                raise ValueError("database password=hunter2 rejected")

        assert isinstance(exc_info.value.cause, ValueError)
        stored = await registry.state.load(workflow.id)
        assert stored.status == WorkflowStatus.ERROR
        assert stored.ended_at is not None
        error = stored.errors[0]
        assert error.step_index == 1
        assert error.agent_id == "architect"
        assert error.code == ErrorCode.INTERNAL_ERROR.value
        assert error.error_type == "ValueError"
        assert "hunter2" not in error.message
        assert WorkflowEvent.FAILED in notifier.names(workflow.id)


class TestMarkFailed:

    @pytest.mark.asyncio
    async def test_terminal_workflow_not_modified(self, registry, make_running_workflow, brief_and_arch_sequence):
        workflow = await make_running_workflow(brief_and_arch_sequence)
        await registry.lifecycle.cancel(workflow.id)

        await registry.error_handler.mark_failed(workflow.id, RuntimeError("late failure"))

        stored = await registry.state.load(workflow.id)
        assert stored.status == WorkflowStatus.CANCELLED
        assert stored.errors == []

    @pytest.mark.asyncio
    async def test_persistence_failure_is_logged_not_raised(self):
        state = AsyncMock()
        state.lock = lambda workflow_id: _NullLock()
        state.load.side_effect = WorkflowNotFoundError("wf-x")
        notifier = AsyncMock()

        handler = StepErrorHandler(state, notifier)
        await handler.mark_failed("wf-x", RuntimeError("boom"), step_index=0, agent_id="pm")

        notifier.publish.assert_awaited_once()
        channel, event, payload = notifier.publish.await_args.args
        assert channel == "wf-x"
        assert event == WorkflowEvent.FAILED
        assert payload["error_type"] == "RuntimeError"


class _NullLock:
    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False
