"""
端到端工作流场景（WorkflowEngine 门面 + 进程内仓储 + 假 Provider）

- 两步序列依次产出 brief 与 arch
- 任务提出三个问题，全部回答后在同一步骤产出产物
- Provider 失败返回致歉回复：产物步骤停在原索引等待重试，对话步骤继续
- 取消后保留已有产物，resume 失败
- 暂停 / 恢复不改变索引与产物
- 检查点恢复
"""
import asyncio

import pytest

from agentflow.core.exceptions import InvalidSequenceError, InvalidTransitionError
from agentflow.models.constants import WorkflowStatus
from agentflow.models.domain import DocumentResult, ElicitationResult
from agentflow.services.notification_service import WorkflowEvent


@pytest.fixture
def engine(registry):
    return registry.engine


class TestSequentialArtifacts:

    @pytest.mark.asyncio
    async def test_pm_then_architect(self, registry, engine, provider, notifier):
        result = await engine.start_workflow(
            {
                "workflow_id": "wf-e2e",
                "sequence": [
                    {"agent_id": "pm", "action": "draft", "creates": "brief"},
                    {"agent_id": "architect", "action": "design", "requires": ["brief"], "creates": "arch"},
                ],
            }
        )
        assert result.status == WorkflowStatus.INITIALIZING

        await registry.lifecycle.drain()

        workflow = await engine.get_workflow_state("wf-e2e")
        assert workflow.status == WorkflowStatus.COMPLETED
        assert list(workflow.artifacts) == ["brief", "arch"]
        assert [a.id for a in workflow.artifact_history] == ["brief", "arch"]
        assert workflow.current_step_index == 2
        assert workflow.errors == []

        # architect 的提示词包含 pm 产出的 brief
        assert "Content from pm" in provider.calls[1]["prompt"]

        events = notifier.names("wf-e2e")
        assert events[0] == WorkflowEvent.STARTED
        assert events[1] == WorkflowEvent.RUNNING
        assert events[-1] == WorkflowEvent.COMPLETED
        assert events.count(WorkflowEvent.STEP_COMPLETED) == 2

        checkpoints = await engine.list_checkpoints("wf-e2e")
        assert [c.label for c in checkpoints] == ["workflow_initialized", "workflow_completed"]

    @pytest.mark.asyncio
    async def test_template_start(self, registry, engine):
        result = await engine.start_workflow({"template_name": "brief-tmpl.yaml"})
        await registry.lifecycle.drain()

        workflow = await engine.get_workflow_state(result.workflow_id)
        assert workflow.status == WorkflowStatus.COMPLETED
        assert workflow.name == "Project Brief"
        assert list(workflow.artifacts) == ["summary", "scope"]
        assert workflow.artifacts["summary"].created_by == "analyst"

    @pytest.mark.asyncio
    async def test_forward_reference_rejected_synchronously(self, engine):
        with pytest.raises(InvalidSequenceError):
            await engine.start_workflow(
                {
                    "workflow_id": "wf-bad",
                    "sequence": [
                        {"agent_id": "architect", "action": "design", "requires": ["brief"], "creates": "arch"},
                        {"agent_id": "pm", "action": "draft", "creates": "brief"},
                    ],
                }
            )

        assert await engine.get_workflow_state("wf-bad") is None


class TestElicitationScenario:

    @pytest.mark.asyncio
    async def test_three_questions_then_artifact(self, registry, engine, provider, notifier, elicitation_sequence):
        result = await engine.start_workflow({"workflow_id": "wf-elicit", "sequence": elicitation_sequence})
        await registry.lifecycle.drain()

        workflow = await engine.get_workflow_state("wf-elicit")
        assert workflow.status == WorkflowStatus.PAUSED_FOR_ELICITATION
        assert workflow.current_step_index == 0
        assert len(workflow.elicitation.questions) == 3
        assert WorkflowEvent.ELICITATION_REQUIRED in notifier.names("wf-elicit")
        assert provider.calls == []

        # 部分回答：仍需引导
        partial = await engine.submit_elicitation_answer(result.workflow_id, 0, {1: "Developers"})
        assert isinstance(partial, ElicitationResult)
        assert partial.complete is False
        assert partial.questions == [
            "What problem does the product solve?",
            "What are the key constraints?",
        ]
        workflow = await engine.get_workflow_state("wf-elicit")
        assert workflow.status == WorkflowStatus.PAUSED_FOR_ELICITATION

        # 回答剩余问题：同一步骤产出产物
        final = await engine.submit_elicitation_answer(
            result.workflow_id, 0, {2: "Slow release cycles", 3: "Two month budget"}
        )
        assert isinstance(final, DocumentResult)
        assert final.artifact.id == "requirements"
        assert final.artifact.step_index == 0

        await registry.lifecycle.drain()
        workflow = await engine.get_workflow_state("wf-elicit")
        assert workflow.status == WorkflowStatus.COMPLETED
        assert workflow.elicitation is None
        assert len(provider.calls) == 1
        prompt = provider.calls[0]["prompt"]
        assert "A: Developers" in prompt
        assert "A: Slow release cycles" in prompt
        assert "A: Two month budget" in prompt

    @pytest.mark.asyncio
    async def test_pause_resume_is_noop_on_progress(self, registry, engine, elicitation_sequence):
        result = await engine.start_workflow({"sequence": elicitation_sequence})
        await registry.lifecycle.drain()
        before = await engine.get_workflow_state(result.workflow_id)

        # 没有新回答时恢复执行会在同一步骤再次挂起
        resumed = await engine.resume_workflow(result.workflow_id)
        assert resumed.status == WorkflowStatus.RUNNING
        await registry.lifecycle.drain()

        after = await engine.get_workflow_state(result.workflow_id)
        assert after.status == WorkflowStatus.PAUSED_FOR_ELICITATION
        assert after.current_step_index == before.current_step_index
        assert after.artifacts == before.artifacts
        assert [q.question for q in after.elicitation.questions] == [
            q.question for q in before.elicitation.questions
        ]


class TestProviderFailureScenario:

    @pytest.mark.asyncio
    async def test_apology_keeps_chained_sequence_resumable(
        self, registry, engine, provider, brief_and_arch_sequence
    ):
        provider.error = TimeoutError("provider timed out")

        result = await engine.start_workflow({"sequence": [s.model_dump() for s in brief_and_arch_sequence]})
        await registry.lifecycle.drain()

        workflow = await engine.get_workflow_state(result.workflow_id)
        assert workflow.status == WorkflowStatus.PAUSED_FOR_ELICITATION
        assert workflow.current_step_index == 0
        assert workflow.artifacts == {}
        assert [(e.step_index, e.code) for e in workflow.errors] == [(0, "PROVIDER_ERROR")]
        # 致歉回复作为消息保留
        assert any("I'm sorry" in m.content for m in workflow.messages)

        # Provider 恢复后 resume 重试同一步骤
        provider.error = None
        await engine.resume_workflow(result.workflow_id)
        await registry.lifecycle.drain()

        workflow = await engine.get_workflow_state(result.workflow_id)
        assert workflow.status == WorkflowStatus.COMPLETED
        assert list(workflow.artifacts) == ["brief", "arch"]
        assert workflow.current_step_index == 2
        assert len(workflow.errors) == 1

    @pytest.mark.asyncio
    async def test_apology_on_response_step_continues(self, registry, engine, provider):
        provider.error = TimeoutError("provider timed out")

        result = await engine.start_workflow(
            {"sequence": [{"agent_id": "pm", "action": "discuss the idea"}, {"agent_id": "architect", "action": "review"}]}
        )
        await registry.lifecycle.drain()

        workflow = await engine.get_workflow_state(result.workflow_id)
        assert workflow.status == WorkflowStatus.COMPLETED
        assert [(e.step_index, e.code) for e in workflow.errors] == [
            (0, "PROVIDER_ERROR"),
            (1, "PROVIDER_ERROR"),
        ]


class TestCancellationScenario:

    @pytest.mark.asyncio
    async def test_cancel_mid_sequence_preserves_artifacts(
        self, registry, engine, provider, brief_and_arch_sequence
    ):
        release = asyncio.Event()
        original_complete = provider.complete

        async def blocking_complete(prompt, persona_context):
            if persona_context["agent_id"] == "architect":
                await release.wait()
            return await original_complete(prompt, persona_context)

        provider.complete = blocking_complete

        result = await engine.start_workflow({"sequence": [s.model_dump() for s in brief_and_arch_sequence]})
        workflow_id = result.workflow_id

        # 等待第一个步骤完成
        for _ in range(200):
            workflow = await engine.get_workflow_state(workflow_id)
            if "brief" in workflow.artifacts:
                break
            await asyncio.sleep(0.01)

        cancelled = await engine.cancel_workflow(workflow_id)
        assert cancelled.status == WorkflowStatus.CANCELLED

        release.set()
        await registry.lifecycle.drain()

        workflow = await engine.get_workflow_state(workflow_id)
        assert workflow.status == WorkflowStatus.CANCELLED
        assert list(workflow.artifacts) == ["brief"]
        assert workflow.ended_at is not None

        with pytest.raises(InvalidTransitionError):
            await engine.resume_workflow(workflow_id)


class TestPauseScenario:

    @pytest.fixture
    def gated_provider(self, provider):
        """architect 调用在 gates["architect"] 上等待；started 在调用进入 Provider 时置位"""
        gates = {"architect": asyncio.Event()}
        started = {"architect": asyncio.Event()}
        original_complete = provider.complete

        async def gated_complete(prompt, persona_context):
            agent_id = persona_context["agent_id"]
            if agent_id in gates:
                started[agent_id].set()
                await gates[agent_id].wait()
            return await original_complete(prompt, persona_context)

        provider.complete = gated_complete
        return gates, started

    @staticmethod
    async def wait_for(event: asyncio.Event) -> None:
        await asyncio.wait_for(event.wait(), timeout=2.0)

    @pytest.mark.asyncio
    async def test_pause_discards_in_flight_result(
        self, registry, engine, provider, gated_provider, brief_and_arch_sequence
    ):
        gates, started = gated_provider

        result = await engine.start_workflow({"sequence": [s.model_dump() for s in brief_and_arch_sequence]})
        workflow_id = result.workflow_id
        await self.wait_for(started["architect"])

        paused = await engine.pause_workflow(workflow_id)
        assert paused.status == WorkflowStatus.PAUSED_FOR_ELICITATION
        workflow = await engine.get_workflow_state(workflow_id)
        assert workflow.current_step_index == 1
        assert list(workflow.artifacts) == ["brief"]

        # 进行中的 architect 调用完成，但结果被丢弃
        gates["architect"].set()
        await registry.lifecycle.drain()

        workflow = await engine.get_workflow_state(workflow_id)
        assert workflow.status == WorkflowStatus.PAUSED_FOR_ELICITATION
        assert workflow.current_step_index == 1
        assert list(workflow.artifacts) == ["brief"]
        assert [a.id for a in workflow.artifact_history] == ["brief"]
        assert [c["persona_context"]["agent_id"] for c in provider.calls] == ["pm", "architect"]

        await engine.resume_workflow(workflow_id)
        await registry.lifecycle.drain()

        workflow = await engine.get_workflow_state(workflow_id)
        assert workflow.status == WorkflowStatus.COMPLETED
        assert list(workflow.artifacts) == ["brief", "arch"]
        assert workflow.current_step_index == 2

    @pytest.mark.asyncio
    async def test_pause_then_resume_keeps_index_and_artifacts(
        self, registry, engine, provider, gated_provider, brief_and_arch_sequence
    ):
        gates, started = gated_provider

        result = await engine.start_workflow({"sequence": [s.model_dump() for s in brief_and_arch_sequence]})
        workflow_id = result.workflow_id
        await self.wait_for(started["architect"])

        await engine.pause_workflow(workflow_id)
        gates["architect"].set()
        await registry.lifecycle.drain()

        # 重新拦住 architect，检查 resume 后、步骤结果应用前的状态
        gates["architect"] = asyncio.Event()
        started["architect"] = asyncio.Event()

        resumed = await engine.resume_workflow(workflow_id)
        assert resumed.status == WorkflowStatus.RUNNING
        await self.wait_for(started["architect"])

        workflow = await engine.get_workflow_state(workflow_id)
        assert workflow.status == WorkflowStatus.RUNNING
        assert workflow.current_step_index == 1
        assert list(workflow.artifacts) == ["brief"]

        gates["architect"].set()
        await registry.lifecycle.drain()

        workflow = await engine.get_workflow_state(workflow_id)
        assert workflow.status == WorkflowStatus.COMPLETED
        assert list(workflow.artifacts) == ["brief", "arch"]
        assert [c["persona_context"]["agent_id"] for c in provider.calls] == ["pm", "architect", "architect"]


class TestRecoveryScenario:

    @pytest.mark.asyncio
    async def test_recover_errored_workflow(self, registry, engine, provider, brief_and_arch_sequence):
        provider.responses = ["brief v1", ""]

        result = await engine.start_workflow({"sequence": [s.model_dump() for s in brief_and_arch_sequence]})
        await registry.lifecycle.drain()

        workflow = await engine.get_workflow_state(result.workflow_id)
        assert workflow.status == WorkflowStatus.ERROR
        assert workflow.errors[0].step_index == 1

        recovered = await engine.recover_workflow(result.workflow_id)
        assert recovered.status == WorkflowStatus.RUNNING
        await registry.lifecycle.drain()

        workflow = await engine.get_workflow_state(result.workflow_id)
        assert workflow.status == WorkflowStatus.COMPLETED
        assert list(workflow.artifacts) == ["brief", "arch"]
        assert [a.id for a in workflow.artifact_history] == ["brief", "brief", "arch"]
        assert len(workflow.errors) == 1

    @pytest.mark.asyncio
    async def test_reload_definitions(self, registry, engine, brief_and_arch_sequence):
        await engine.start_workflow({"sequence": [s.model_dump() for s in brief_and_arch_sequence]})
        await registry.lifecycle.drain()

        assert engine.reload_definitions() >= 2
