"""
外部依赖 Protocol 接口定义

引擎只依赖以下协议，具体实现通过 EngineRegistry 注入：
- AgentLoader: 加载 Agent / 模板 / 任务定义
- AIProvider: 调用大模型

设计原则：
- 使用 typing.Protocol 定义接口（鸭子类型）
- 测试中可直接替换为 AsyncMock 或简单的假实现
"""
from typing import Any, Optional, Protocol

from agentflow.models.domain import AgentDefinition, AIResponse, Template


class AgentLoader(Protocol):
    """
    定义加载器协议

    使用示例：
    ```python
    agent = await loader.load_agent("pm")
    template = await loader.load_template("prd-tmpl.yaml")
    task = await loader.load_template("create-doc.md")
    ```
    """

    async def load_agent(self, agent_id: str) -> Optional[AgentDefinition]:
        """加载 Agent 定义，不存在返回 None"""
        ...

    async def load_template(self, name: str) -> Optional[Template]:
        """加载模板（.yaml）或任务（.md），不存在返回 None"""
        ...


class AIProvider(Protocol):
    """AI Provider 协议"""

    async def complete(self, prompt: str, persona_context: dict[str, Any]) -> AIResponse:
        """
        生成回复

        Raises:
            Exception: 任何 Provider 侧错误（由 AgentExecutor 转换为致歉回复）
        """
        ...
