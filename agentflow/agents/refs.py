"""
Agent 引用

执行前 Agent 可能只有摘要（id + name，来自缓存列表），
也可能是完整定义。AgentRef 显式区分两种形态，
hydrate() 在执行前把摘要升级为完整定义。
"""
from typing import Annotated, Awaitable, Callable, Literal, Optional, Union

from pydantic import BaseModel, Field

from agentflow.core.exceptions import AgentNotFoundError
from agentflow.models.domain import AgentDefinition


class FullAgentRef(BaseModel):
    kind: Literal["full"] = "full"
    definition: AgentDefinition

    @property
    def id(self) -> str:
        return self.definition.id


class SummaryAgentRef(BaseModel):
    kind: Literal["summary"] = "summary"
    id: str
    name: str = ""


AgentRef = Annotated[Union[FullAgentRef, SummaryAgentRef], Field(discriminator="kind")]

AgentLookup = Callable[[str], Awaitable[Optional[AgentDefinition]]]


def summarize(definition: AgentDefinition) -> SummaryAgentRef:
    return SummaryAgentRef(id=definition.id, name=definition.name)


async def hydrate(
    ref: Union[FullAgentRef, SummaryAgentRef, AgentDefinition],
    load_agent: AgentLookup,
) -> AgentDefinition:
    """
    把 AgentRef 升级为完整定义

    Raises:
        AgentNotFoundError: 摘要对应的 Agent 无法加载
    """
    if isinstance(ref, AgentDefinition):
        return ref
    if isinstance(ref, FullAgentRef):
        return ref.definition

    definition = await load_agent(ref.id)
    if definition is None:
        raise AgentNotFoundError(ref.id)
    return definition
