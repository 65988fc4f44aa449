"""
测试共享 Fixtures

提供定义文件目录、假的 AI Provider、记录事件的通知端口，
以及基于进程内仓储装配的 EngineRegistry。
"""
from pathlib import Path
from typing import Any, Optional

import pytest

from agentflow.agents.loader import FileDefinitionLoader
from agentflow.core.cache_manager import ResourceCacheManager
from agentflow.core.orchestrator.base import EngineConfig
from agentflow.core.registry import EngineRegistry
from agentflow.core.template_resolver import TemplateResolver
from agentflow.models.constants import WorkflowStatus
from agentflow.models.domain import AIResponse, Step, Workflow


# ============================================================
# 定义文件
# ============================================================

PM_YAML = """
agent:
  id: pm
  name: John
  title: Product Manager
persona:
  role: Investigative Product Strategist
  style: Analytical, inquisitive, data-driven
  focus: Creating PRDs and other product documentation
commands:
  - create-prd: use task create-doc with prd-tmpl.yaml
  - help: Show numbered list of commands
dependencies:
  templates: [prd-tmpl.yaml]
"""

ARCHITECT_YAML = """
agent:
  id: architect
  name: Winston
  title: Architect
persona:
  role: Holistic System Architect
  style: Comprehensive, pragmatic
  core_principles:
    - Holistic system thinking
    - Pragmatic technology selection
"""

ANALYST_YAML = """
agent:
  id: analyst
  name: Mary
  title: Business Analyst
persona:
  role: Insightful Analyst
"""

GATHER_REQUIREMENTS_MD = """# Gather Requirements

Work with the user to capture the essentials before drafting.

Question: Who are the target users?
Question: What problem does the product solve?
Question: What are the key constraints?
"""

BRIEF_TMPL_YAML = """
template:
  id: brief
  name: Project Brief
sections:
  - id: summary
    title: Executive Summary
    instruction: Summarize the project.
    owner: analyst
  - id: scope
    title: Scope
    instruction: Describe the scope.
    requires: summary
"""

PRD_TMPL_YAML = """
template:
  id: prd
  name: Product Requirements Document
workflow:
  mode: interactive
  elicitation: true
sections:
  - id: goals
    title: Goals
    instruction: Capture the goals.
    elicit: true
    questions:
      - What is the primary goal?
      - How will success be measured?
  - id: requirements
    title: Requirements
    instruction: List functional requirements.
"""

NOTES_TMPL_YAML = """
template:
  id: notes
  name: Meeting Notes
elicit: true
sections:
  - id: notes
    title: Notes
    instruction: Summarize the meeting.
"""


@pytest.fixture
def definitions_dir(tmp_path: Path) -> Path:
    """临时定义目录（agents / templates / tasks）"""
    (tmp_path / "agents").mkdir()
    (tmp_path / "templates").mkdir()
    (tmp_path / "tasks").mkdir()

    (tmp_path / "agents" / "pm.yaml").write_text(PM_YAML, encoding="utf-8")
    (tmp_path / "agents" / "architect.yaml").write_text(ARCHITECT_YAML, encoding="utf-8")
    (tmp_path / "agents" / "analyst.yaml").write_text(ANALYST_YAML, encoding="utf-8")
    (tmp_path / "tasks" / "gather-requirements.md").write_text(GATHER_REQUIREMENTS_MD, encoding="utf-8")
    (tmp_path / "templates" / "brief-tmpl.yaml").write_text(BRIEF_TMPL_YAML, encoding="utf-8")
    (tmp_path / "templates" / "prd-tmpl.yaml").write_text(PRD_TMPL_YAML, encoding="utf-8")
    (tmp_path / "templates" / "notes-tmpl.yaml").write_text(NOTES_TMPL_YAML, encoding="utf-8")
    return tmp_path


@pytest.fixture
def loader(definitions_dir: Path) -> FileDefinitionLoader:
    return FileDefinitionLoader(definitions_dir)


@pytest.fixture
def resolver(loader) -> TemplateResolver:
    return TemplateResolver(loader, ResourceCacheManager())


# ============================================================
# 假的外部依赖
# ============================================================

class FakeProvider:
    """
    假的 AI Provider

    按顺序返回预设内容；没有预设时返回 "Content from <agent_id>"。
    设置 error 后每次调用都抛出该异常。
    """

    def __init__(self, responses: Optional[list[str]] = None, error: Optional[Exception] = None):
        self.responses = list(responses or [])
        self.error = error
        self.calls: list[dict[str, Any]] = []

    async def complete(self, prompt: str, persona_context: dict[str, Any]) -> AIResponse:
        self.calls.append({"prompt": prompt, "persona_context": persona_context})
        if self.error is not None:
            raise self.error
        if self.responses:
            content = self.responses.pop(0)
        else:
            content = f"Content from {persona_context['agent_id']}"
        return AIResponse(content=content, model="fake-model")


class RecordingNotifier:
    """记录所有发布的事件"""

    def __init__(self):
        self.events: list[tuple[str, str, dict[str, Any]]] = []

    async def publish(self, channel_id: str, event_name: str, payload: dict[str, Any]) -> None:
        self.events.append((channel_id, event_name, payload))

    def names(self, workflow_id: Optional[str] = None) -> list[str]:
        return [
            name for channel, name, _ in self.events
            if workflow_id is None or channel == workflow_id
        ]


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def make_provider() -> type[FakeProvider]:
    """额外的假 Provider（多个引擎进程共享存储的测试）"""
    return FakeProvider


@pytest.fixture
def engine_config() -> EngineConfig:
    """测试配置：关闭调用间隔，缩短等待"""
    return EngineConfig(
        throttle_min_interval_seconds=0.0,
        throttle_max_wait_seconds=5.0,
    )


@pytest.fixture
def registry(loader, provider, notifier, engine_config) -> EngineRegistry:
    return EngineRegistry.in_memory(loader, provider, notifier=notifier, config=engine_config)


# ============================================================
# 示例数据
# ============================================================

@pytest.fixture
def brief_and_arch_sequence() -> list[Step]:
    """pm 产出 brief，architect 依赖 brief 产出 arch"""
    return [
        Step(agent_id="pm", action="draft", creates="brief"),
        Step(agent_id="architect", action="design", creates="arch", requires=["brief"]),
    ]


@pytest.fixture
def elicitation_sequence() -> list[Step]:
    """单步骤：执行带三个问题的任务"""
    return [
        Step(
            agent_id="analyst",
            action="Gather requirements",
            creates="requirements",
            uses="gather-requirements.md",
        ),
    ]


@pytest.fixture
def make_running_workflow(registry):
    """直接写入一个 RUNNING 状态的工作流（绕过 start 的后台调度）"""

    async def _make(sequence: list[Step], **kwargs: Any) -> Workflow:
        workflow = Workflow(
            name="test",
            sequence=sequence,
            status=WorkflowStatus.RUNNING,
            **kwargs,
        )
        await registry.state.save(workflow)
        return workflow

    return _make
