"""
AI Provider 实现（封装 LiteLLM 调用）
"""
from typing import Any, Dict, List

import litellm
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)
import structlog

from agentflow.config.settings import Settings, settings as default_settings
from agentflow.models.domain import AIResponse

logger = structlog.get_logger()


class LiteLLMProvider:
    """
    基于 LiteLLM 的 AI Provider

    配置项从 Settings 读取：
    - AI_PROVIDER: 模型提供商（如 'openai', 'anthropic'）
    - AI_MODEL: 模型名称
    - AI_BASE_URL: 自定义 API 端点（可选，用于本地部署或代理）
    - AI_API_KEY: API 密钥
    """

    def __init__(
        self,
        model_provider: str,
        model_name: str,
        base_url: str | None = None,
        api_key: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 4096,
    ):
        self.model_provider = model_provider
        self.model_name = model_name
        self.base_url = base_url
        self.api_key = api_key
        self.temperature = temperature
        self.max_tokens = max_tokens

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "LiteLLMProvider":
        s = settings or default_settings
        return cls(
            model_provider=s.AI_PROVIDER,
            model_name=s.AI_MODEL,
            base_url=s.AI_BASE_URL,
            api_key=s.AI_API_KEY or None,
            temperature=s.AI_TEMPERATURE,
            max_tokens=s.AI_MAX_TOKENS,
        )

    async def complete(self, prompt: str, persona_context: dict[str, Any]) -> AIResponse:
        """
        生成回复

        Args:
            prompt: 用户侧提示词
            persona_context: 人设上下文（system_prompt、agent_id 等）
        """
        messages: List[Dict[str, str]] = []
        system_prompt = persona_context.get("system_prompt")
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        response = await self._call_llm(messages, agent_id=persona_context.get("agent_id"))

        content = response.choices[0].message.content or ""
        usage = {}
        if getattr(response, "usage", None):
            usage = {
                "prompt_tokens": getattr(response.usage, "prompt_tokens", 0) or 0,
                "completion_tokens": getattr(response.usage, "completion_tokens", 0) or 0,
            }
        return AIResponse(
            content=content,
            usage=usage,
            model=getattr(response, "model", None) or self.model_name,
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type(litellm.RateLimitError),
        reraise=True,
    )
    async def _call_llm(self, messages: List[Dict[str, str]], agent_id: str | None = None) -> Any:
        """
        调用 LLM（通过 LiteLLM），限流错误自动重试 3 次
        """
        try:
            call_params = {
                "model": f"{self.model_provider}/{self.model_name}",
                "messages": messages,
                "temperature": self.temperature,
                "max_tokens": self.max_tokens,
            }
            if self.base_url:
                call_params["api_base"] = self.base_url
                # 让 litellm 将请求转发到 base_url，而不是匹配内置模型配置
                call_params["custom_llm_provider"] = "openai"
            if self.api_key:
                call_params["api_key"] = self.api_key

            response = await litellm.acompletion(**call_params)

            logger.info(
                "llm_call_success",
                agent_id=agent_id,
                model=self.model_name,
                prompt_tokens=getattr(getattr(response, "usage", None), "prompt_tokens", 0),
                completion_tokens=getattr(getattr(response, "usage", None), "completion_tokens", 0),
            )
            return response

        except litellm.RateLimitError as e:
            logger.warning("llm_rate_limit", agent_id=agent_id, error=str(e))
            raise
        except Exception as e:
            logger.error("llm_call_failed", agent_id=agent_id, error=str(e))
            raise
