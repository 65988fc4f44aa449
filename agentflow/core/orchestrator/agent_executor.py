"""
Agent 执行器

执行流程：
1. 已处于引导会话中（上下文携带模板名与已有回答）→ 继续该会话，不重新解析意图
2. 否则解析模板 / 任务；解析不到时，对话式上下文使用对话提示词，
   其余情况使用基于人设（角色、风格、关注点）的通用提示词
3. 模板期望引导时提取问题；存在未回答的问题则返回引导结果，步骤保持挂起
4. 通过 AIRequestThrottler 调用 AI Provider，步骤声明 creates 时生成产物，
   否则生成对话回复

失败语义：Provider / 节流失败转换为致歉回复（不让单次调用失败中断工作流）；
解析与持久化失败向上抛出，由 StepExecutor 标记步骤失败。
"""
from typing import Optional, Union

import structlog

from agentflow.agents.protocol import AIProvider
from agentflow.agents.refs import FullAgentRef, SummaryAgentRef, hydrate
from agentflow.core.elicitation import ElicitationManager
from agentflow.core.exceptions import TemplateNotFoundError, sanitize_error_message
from agentflow.core.orchestrator.base import ExecutionOptions
from agentflow.core.template_resolver import TemplateResolver
from agentflow.models.constants import ArtifactType
from agentflow.models.domain import (
    AgentDefinition,
    AgentResult,
    AIResponse,
    Artifact,
    DocumentResult,
    ElicitationResult,
    ErrorResult,
    ExecutionContext,
    ResponseResult,
    Template,
)
from agentflow.utils.prompt_loader import PromptLoader
from agentflow.utils.rate_limiter import AIRequestThrottler

logger = structlog.get_logger()

APOLOGY_MESSAGE = (
    "I'm sorry, I ran into a problem while working on this step and could not "
    "produce a response. The issue has been logged; you can continue the workflow "
    "or retry this step later."
)


class AgentExecutor:
    """Agent 执行器"""

    def __init__(
        self,
        resolver: TemplateResolver,
        elicitation: ElicitationManager,
        throttler: AIRequestThrottler,
        provider: AIProvider,
        prompt_loader: Optional[PromptLoader] = None,
    ):
        self.resolver = resolver
        self.elicitation = elicitation
        self.throttler = throttler
        self.provider = provider
        self.prompt_loader = prompt_loader or PromptLoader()

    async def execute_agent(
        self,
        agent: Union[FullAgentRef, SummaryAgentRef, AgentDefinition],
        context: ExecutionContext,
        options: Optional[ExecutionOptions] = None,
    ) -> AgentResult:
        """
        执行 Agent

        Returns:
            DocumentResult / ElicitationResult / ResponseResult / ErrorResult

        Raises:
            AgentNotFoundError / TemplateNotFoundError: 定义无法解析
        """
        options = options or ExecutionOptions()
        definition = await hydrate(agent, self.resolver.load_agent)

        logger.info(
            "agent_execution_starting",
            workflow_id=context.workflow_id,
            step_index=context.step_index,
            agent_id=definition.id,
            action=context.step.action,
        )

        session = context.elicitation
        if session is not None and session.step_index == context.step_index:
            # 1. 继续已有的引导会话
            template = await self._load_session_template(session.template_name)
            if not self.elicitation.is_satisfied(session):
                pending = self.elicitation.pending_questions(session)
                return self._elicitation_result(pending, template, session.template_name)
            prompt = self._template_prompt(definition, template, context, session.answers())
        else:
            # 2. 解析模板 / 任务
            template = await self.resolver.resolve(context.step, definition, context)
            if template is not None:
                open_ended = False
                if template.wants_elicitation and not options.skip_elicitation:
                    # 3. 提取问题
                    questions = self.elicitation.questions_for(template)
                    if questions:
                        return self._elicitation_result(questions, template, template.name)
                    logger.warning(
                        "elicitation_questions_not_found",
                        workflow_id=context.workflow_id,
                        step_index=context.step_index,
                        template=template.name,
                    )
                    open_ended = True
                prompt = self._template_prompt(definition, template, context, {}, open_ended=open_ended)
            elif context.is_conversational:
                prompt = self.prompt_loader.render(
                    "conversational.j2",
                    step=context.step,
                    user_prompt=context.user_prompt,
                    artifacts=context.artifacts,
                )
            else:
                prompt = self.prompt_loader.render(
                    "generic.j2",
                    agent=definition,
                    step=context.step,
                    user_prompt=context.user_prompt,
                    artifacts=context.artifacts,
                )

        # 4. 调用 AI Provider
        return await self._complete(definition, context, prompt)

    async def _load_session_template(self, template_name: Optional[str]) -> Optional[Template]:
        if not template_name:
            return None
        template = await self.resolver.load(template_name)
        if template is None:
            raise TemplateNotFoundError(template_name)
        return template

    def _elicitation_result(
        self,
        questions: list[str],
        template: Optional[Template],
        template_name: Optional[str],
    ) -> ElicitationResult:
        title = (template.title or template.name) if template else ""
        return ElicitationResult(
            questions=questions,
            template_name=template_name,
            prompt=self.elicitation.format_questions(questions, title),
        )

    def _template_prompt(
        self,
        agent: AgentDefinition,
        template: Optional[Template],
        context: ExecutionContext,
        answers: dict[str, str],
        open_ended: bool = False,
    ) -> str:
        if template is None:
            return self.prompt_loader.render(
                "generic.j2",
                agent=agent,
                step=context.step,
                user_prompt=context.user_prompt,
                artifacts=context.artifacts,
            )
        return self.prompt_loader.render(
            "template_prompt.j2",
            template=template,
            step=context.step,
            user_prompt=context.user_prompt,
            answers=answers,
            open_ended=open_ended,
            artifacts=context.artifacts,
        )

    async def _complete(
        self,
        agent: AgentDefinition,
        context: ExecutionContext,
        prompt: str,
    ) -> AgentResult:
        persona_context = {
            "agent_id": agent.id,
            "agent_name": agent.name,
            "workflow_id": context.workflow_id,
            "step_index": context.step_index,
            "system_prompt": self.prompt_loader.render("system.j2", agent=agent),
        }

        async def request() -> AIResponse:
            return await self.provider.complete(prompt, persona_context)

        try:
            response = await self.throttler.enqueue(context.tenant_id, request)
        except Exception as e:
            logger.error(
                "ai_provider_failed",
                workflow_id=context.workflow_id,
                step_index=context.step_index,
                agent_id=agent.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return ResponseResult(
                content=APOLOGY_MESSAGE,
                provider_error=sanitize_error_message(f"{type(e).__name__}: {e}")[:500],
            )

        logger.info(
            "agent_execution_completed",
            workflow_id=context.workflow_id,
            step_index=context.step_index,
            agent_id=agent.id,
            model=response.model,
            content_length=len(response.content),
        )

        if context.step.creates:
            if not response.content.strip():
                return ErrorResult(message=f"AI provider returned empty content for {context.step.creates}")
            return DocumentResult(
                artifact=Artifact(
                    id=context.step.creates,
                    type=ArtifactType.DOCUMENT,
                    content=response.content,
                    created_by=agent.id,
                    step_index=context.step_index,
                )
            )
        return ResponseResult(content=response.content)
