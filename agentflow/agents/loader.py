"""
定义文件加载器（YAML / Markdown）

目录结构：
    <DEFINITIONS_DIR>/
        agents/<agent_id>.yaml
        templates/<name>-tmpl.yaml
        tasks/<name>.md

Agent YAML 示例：
    agent: {id: pm, name: John, title: Product Manager}
    persona: {role: ..., style: ..., focus: ...}
    commands:
      - create-prd: use task create-doc with prd-tmpl.yaml
    dependencies: {templates: [prd-tmpl.yaml], tasks: [create-doc.md]}
"""
import asyncio
from pathlib import Path
from typing import Any, Optional

import structlog
import yaml

from agentflow.models.constants import DefinitionKind
from agentflow.models.domain import (
    AgentCommand,
    AgentDefinition,
    AgentDependencies,
    Persona,
    Template,
    TemplateSection,
)

logger = structlog.get_logger()


def _parse_commands(raw: Any) -> list[AgentCommand]:
    """命令既可以是 {name: description} 映射，也可以是 'name: description' 字符串"""
    commands: list[AgentCommand] = []
    for item in raw or []:
        if isinstance(item, dict):
            for name, description in item.items():
                commands.append(AgentCommand(name=str(name), description=str(description or "")))
        elif isinstance(item, str):
            name, _, description = item.partition(":")
            commands.append(AgentCommand(name=name.strip(), description=description.strip()))
    return commands


def _as_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value]


def _parse_sections(raw: Any, parent_owner: Optional[str] = None) -> list[TemplateSection]:
    """解析章节（嵌套章节按深度优先展开）"""
    sections: list[TemplateSection] = []
    for item in raw or []:
        owner = item.get("owner") or parent_owner
        sections.append(
            TemplateSection(
                id=str(item.get("id") or item.get("title", "section")),
                title=item.get("title", ""),
                instruction=item.get("instruction", "") or "",
                owner=owner,
                requires=_as_list(item.get("requires")),
                elicit=bool(item.get("elicit", False)),
                questions=_as_list(item.get("questions")),
            )
        )
        sections.extend(_parse_sections(item.get("sections"), owner))
    return sections


def parse_agent(data: dict[str, Any], agent_id: str) -> AgentDefinition:
    meta = data.get("agent") or {}
    persona = data.get("persona") or {}
    dependencies = data.get("dependencies") or {}
    return AgentDefinition(
        id=meta.get("id", agent_id),
        name=meta.get("name", agent_id),
        title=meta.get("title", ""),
        icon=meta.get("icon", ""),
        persona=Persona(
            role=persona.get("role", ""),
            style=persona.get("style", ""),
            identity=persona.get("identity", ""),
            focus=persona.get("focus", ""),
            core_principles=_as_list(persona.get("core_principles")),
        ),
        commands=_parse_commands(data.get("commands")),
        dependencies=AgentDependencies(
            templates=_as_list(dependencies.get("templates")),
            tasks=_as_list(dependencies.get("tasks")),
        ),
    )


def parse_template(data: dict[str, Any], name: str) -> Template:
    meta = data.get("template") or {}
    workflow = data.get("workflow") or {}
    return Template(
        name=name,
        kind=DefinitionKind.TEMPLATE,
        title=meta.get("name") or meta.get("title", ""),
        content=yaml.safe_dump(data, sort_keys=False, allow_unicode=True),
        sections=_parse_sections(data.get("sections")),
        elicit=bool(workflow.get("elicitation") or data.get("elicit", False)),
        mode=workflow.get("mode", "interactive"),
    )


def parse_task(content: str, name: str) -> Template:
    title = ""
    for line in content.splitlines():
        if line.startswith("# "):
            title = line[2:].strip()
            break
    return Template(name=name, kind=DefinitionKind.TASK, title=title or name, content=content)


class FileDefinitionLoader:
    """从目录加载 Agent / 模板 / 任务定义"""

    def __init__(self, root_dir: str | Path):
        self.root_dir = Path(root_dir)

    def _read(self, path: Path) -> Optional[str]:
        if not path.is_file():
            return None
        return path.read_text(encoding="utf-8")

    async def load_agent(self, agent_id: str) -> Optional[AgentDefinition]:
        path = self.root_dir / "agents" / f"{agent_id}.yaml"
        text = await asyncio.to_thread(self._read, path)
        if text is None:
            logger.debug("agent_definition_missing", agent_id=agent_id, path=str(path))
            return None
        return parse_agent(yaml.safe_load(text) or {}, agent_id)

    async def load_template(self, name: str) -> Optional[Template]:
        if name.endswith(".md"):
            path = self.root_dir / "tasks" / name
            text = await asyncio.to_thread(self._read, path)
            return parse_task(text, name) if text is not None else None

        path = self.root_dir / "templates" / name
        text = await asyncio.to_thread(self._read, path)
        if text is None:
            logger.debug("template_definition_missing", name=name, path=str(path))
            return None
        return parse_template(yaml.safe_load(text) or {}, name)

