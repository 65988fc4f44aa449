"""
模板解析器

为步骤解析应使用的模板（.yaml）或任务（.md），按以下顺序尝试：
1. 显式指定：执行上下文中的 template_name，或步骤的 uses
2. 命令映射：Agent 声明的命令引用了模板（如 "use task create-doc with prd-tmpl.yaml"）
3. 备注引用：步骤 notes 中嵌入的模板名（"using x"、"with x"、"x-tmpl"）
4. 启发式推断：根据步骤 action / creates 文本推断
都不命中时返回 None，由调用方退回到对话式或通用人设提示词。

加载结果按解析后的名称缓存在静态命名空间，永不过期，reload() 显式失效。
"""
import re
from typing import Iterator, Optional

import structlog

from agentflow.agents.protocol import AgentLoader
from agentflow.core.cache_manager import ResourceCacheManager
from agentflow.models.constants import CacheNamespace
from agentflow.models.domain import AgentDefinition, ExecutionContext, Step, Template

logger = structlog.get_logger()


# 常见动作到模板的映射
ACTION_MAPPINGS: dict[str, str] = {
    "check existing documentation": "check-documentation.md",
    "classify enhancement scope": "enhancement-classification-tmpl.yaml",
    "create prd": "prd-tmpl.yaml",
    "create architecture": "architecture-tmpl.yaml",
    "create brownfield prd": "brownfield-prd-tmpl.yaml",
    "create front-end spec": "front-end-spec-tmpl.yaml",
    "create project brief": "project-brief-tmpl.yaml",
}

# 动作 / 备注中的模式
ACTION_PATTERNS: list[tuple[re.Pattern, str]] = [
    (re.compile(r"check.*documentation.*status", re.I), "check-documentation.md"),
    (re.compile(r"classify.*enhancement", re.I), "enhancement-classification-tmpl.yaml"),
    (re.compile(r"brownfield.*prd", re.I), "brownfield-prd-tmpl.yaml"),
    (re.compile(r"create.*prd", re.I), "prd-tmpl.yaml"),
    (re.compile(r"architecture.*document", re.I), "architecture-tmpl.yaml"),
    (re.compile(r"front.*end.*spec", re.I), "front-end-spec-tmpl.yaml"),
    (re.compile(r"project.*brief", re.I), "project-brief-tmpl.yaml"),
    (re.compile(r"competitor.*analysis", re.I), "competitor-analysis-tmpl.yaml"),
    (re.compile(r"market.*research", re.I), "market-research-tmpl.yaml"),
]

# 产物文件名到模板的映射
CREATES_MAPPINGS: dict[str, str] = {
    "prd.md": "prd-tmpl.yaml",
    "architecture.md": "architecture-tmpl.yaml",
    "brownfield-prd.md": "brownfield-prd-tmpl.yaml",
    "front-end-spec.md": "front-end-spec-tmpl.yaml",
    "project-brief.md": "project-brief-tmpl.yaml",
    "competitor-analysis.md": "competitor-analysis-tmpl.yaml",
    "market-research.md": "market-research-tmpl.yaml",
    "fullstack-architecture.md": "fullstack-architecture-tmpl.yaml",
}

_NAME = r"[a-zA-Z0-9\-_]+"
_COMMAND_TEMPLATE = re.compile(
    rf"(?:create-doc(?:\.md)?\s+with\s+(?:template\s+)?|using\s+|with\s+(?:template\s+)?)({_NAME}(?:-tmpl)?(?:\.ya?ml)?)",
    re.I,
)
_COMMAND_TASK = re.compile(rf"(?:execute|run|use)\s+task\s+({_NAME}(?:\.md)?)", re.I)
_NOTES_PATTERNS = [
    re.compile(rf"using\s+({_NAME}(?:\.ya?ml|\.md)?)", re.I),
    re.compile(rf"with\s+({_NAME}(?:\.ya?ml|\.md)?)", re.I),
    re.compile(rf"({_NAME}-tmpl(?:\.ya?ml)?)"),
]


def normalize_template_name(name: str) -> str:
    """
    规范化模板名称

    - x.md / x.yaml / x.yml 保持不变
    - x-tmpl → x-tmpl.yaml
    - x → x-tmpl.yaml
    """
    name = name.strip()
    if name.endswith((".md", ".yaml", ".yml")):
        return name
    if not name.endswith("-tmpl"):
        name += "-tmpl"
    return f"{name}.yaml"


def _namespace_for(name: str) -> CacheNamespace:
    return CacheNamespace.TASK if name.endswith(".md") else CacheNamespace.TEMPLATE


class TemplateResolver:
    """模板解析器（带缓存的定义访问入口）"""

    def __init__(self, loader: AgentLoader, cache: ResourceCacheManager):
        self.loader = loader
        self.cache = cache

    # ============================================================
    # 定义加载（带缓存）
    # ============================================================

    async def load(self, name: str) -> Optional[Template]:
        """按名称加载模板 / 任务（规范化后缓存）"""
        resolved = normalize_template_name(name)
        return await self.cache.get_or_load(
            resolved,
            lambda: self.loader.load_template(resolved),
            namespace=_namespace_for(resolved),
        )

    async def load_agent(self, agent_id: str) -> Optional[AgentDefinition]:
        return await self.cache.get_or_load(
            agent_id,
            lambda: self.loader.load_agent(agent_id),
            namespace=CacheNamespace.AGENT,
        )

    def reload(self) -> int:
        """清除所有已缓存的定义（定义文件在运行时变更后调用）"""
        removed = sum(
            self.cache.invalidate_namespace(ns)
            for ns in (CacheNamespace.TEMPLATE, CacheNamespace.TASK, CacheNamespace.AGENT)
        )
        logger.info("definitions_reloaded", invalidated=removed)
        return removed

    # ============================================================
    # 解析
    # ============================================================

    async def resolve(
        self,
        step: Step,
        agent: AgentDefinition,
        context: Optional[ExecutionContext] = None,
    ) -> Optional[Template]:
        """
        解析步骤对应的模板 / 任务

        Returns:
            Template（kind=template 或 task），无法解析时返回 None
        """
        tried: list[str] = []
        for strategy, candidate in self._candidates(step, agent, context):
            name = normalize_template_name(candidate)
            if name in tried:
                continue
            tried.append(name)

            template = await self.load(name)
            if template is not None:
                logger.debug(
                    "template_resolved",
                    strategy=strategy,
                    template=name,
                    agent_id=agent.id,
                    action=step.action,
                )
                return template

        if tried:
            logger.info(
                "template_candidates_not_loadable",
                agent_id=agent.id,
                action=step.action,
                candidates=tried,
            )
        return None

    def _candidates(
        self,
        step: Step,
        agent: AgentDefinition,
        context: Optional[ExecutionContext],
    ) -> Iterator[tuple[str, str]]:
        # 1. 显式指定
        if context is not None and context.template_name:
            yield "explicit", context.template_name
        if step.uses:
            yield "explicit", step.uses

        # 2. 命令映射
        for name in self._from_commands(step, agent):
            yield "command", name

        # 3. 备注引用
        if step.notes:
            for pattern in _NOTES_PATTERNS:
                match = pattern.search(step.notes)
                if match:
                    yield "notes", match.group(1)

        # 4. 启发式推断
        action = step.action.lower().strip()
        for phrase, name in ACTION_MAPPINGS.items():
            if phrase in action:
                yield "heuristic", name
        for pattern, name in ACTION_PATTERNS:
            if pattern.search(step.action):
                yield "heuristic", name
        if step.creates and step.creates in CREATES_MAPPINGS:
            yield "heuristic", CREATES_MAPPINGS[step.creates]

    def _from_commands(self, step: Step, agent: AgentDefinition) -> list[str]:
        """从 Agent 命令中提取模板引用（显式命令优先，其次是提到产物的命令）"""
        commands = []
        if step.command:
            commands.extend(c for c in agent.commands if c.name == step.command)
        if step.creates:
            stem = step.creates.rsplit(".", 1)[0]
            commands.extend(
                c for c in agent.commands
                if c not in commands and (step.creates in c.description or f"{stem}-tmpl" in c.description)
            )

        names: list[str] = []
        for command in commands:
            template = _COMMAND_TEMPLATE.search(command.description)
            if template:
                names.append(template.group(1))
                continue
            task = _COMMAND_TASK.search(command.description)
            if task:
                task_name = task.group(1)
                names.append(task_name if task_name.endswith(".md") else f"{task_name}.md")
        return names
