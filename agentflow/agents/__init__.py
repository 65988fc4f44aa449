"""Agent 定义加载与模型调用层"""

from agentflow.agents.loader import FileDefinitionLoader
from agentflow.agents.provider import LiteLLMProvider
from agentflow.agents.refs import AgentRef, FullAgentRef, SummaryAgentRef

__all__ = [
    "FileDefinitionLoader",
    "LiteLLMProvider",
    "AgentRef",
    "FullAgentRef",
    "SummaryAgentRef",
]
