"""
引导提问管理

- QuestionExtractor: 问题提取策略接口
  - StructuredQuestionExtractor: 读取模板章节中显式声明的 questions
  - RegexQuestionExtractor: 文本启发式（Question:/Ask:/Elicit: 标记、以 ? 结尾的列表项，
    找不到时退回到祈使句）
  - ChainedQuestionExtractor: 依次尝试，取第一个非空结果
- ElicitationManager: 生成问题列表、管理引导会话、判断是否已回答完毕

注意：文本启发式只是尽力而为，is_satisfied 的结果仅供参考，
调用方可通过 force（人工确认）跳过。
"""
import re
from typing import Mapping, Optional, Protocol, Sequence, Union

import structlog

from agentflow.core.exceptions import ElicitationStateError
from agentflow.models.domain import (
    ElicitationQuestion,
    ElicitationSession,
    Template,
)
from agentflow.utils.prompt_loader import PromptLoader

logger = structlog.get_logger()

Answers = Union[Mapping[Union[str, int], str], Sequence[str]]


class QuestionExtractor(Protocol):
    """问题提取策略"""

    def extract(self, template: Template) -> list[str]:
        ...


class StructuredQuestionExtractor:
    """读取章节中结构化声明的问题"""

    def extract(self, template: Template) -> list[str]:
        return [q.strip() for section in template.sections for q in section.questions if q.strip()]


_MARKER = re.compile(r"(?:Question|Ask|Elicit):\s*(.+\?)")
_LIST_ITEM = re.compile(r"^\s*(?:[-*]|\d+\.)\s*(.+\?)\s*$")
_IMPERATIVE = re.compile(r"\b(?:Define|Describe|Explain|Identify|Specify|List|Detail)\s+[^.!?\n]+")


class RegexQuestionExtractor:
    """基于文本模式的问题提取"""

    @staticmethod
    def source_text(template: Template) -> str:
        """任务取全文；模板取需要引导的章节说明（没有标记时取全部章节）"""
        if template.is_task:
            return template.content
        sections = [s for s in template.sections if s.elicit] or template.sections
        return "\n".join(s.instruction for s in sections if s.instruction)

    def extract(self, template: Template) -> list[str]:
        return self.extract_text(self.source_text(template))

    def extract_text(self, text: str) -> list[str]:
        questions: list[str] = []
        for line in text.splitlines():
            marker = _MARKER.search(line)
            if marker:
                questions.append(marker.group(1).strip())
                continue
            item = _LIST_ITEM.match(line)
            if item:
                questions.append(item.group(1).strip())

        if not questions:
            questions = [f"{m.group(0).strip()}?" for m in _IMPERATIVE.finditer(text)]
        return questions


class ChainedQuestionExtractor:
    """依次尝试多个提取器，返回第一个非空结果"""

    def __init__(self, *extractors: QuestionExtractor):
        self.extractors = extractors

    def extract(self, template: Template) -> list[str]:
        for extractor in self.extractors:
            questions = extractor.extract(template)
            if questions:
                return questions
        return []


def default_extractor() -> QuestionExtractor:
    return ChainedQuestionExtractor(StructuredQuestionExtractor(), RegexQuestionExtractor())


class ElicitationManager:
    """引导提问管理器"""

    def __init__(
        self,
        extractor: Optional[QuestionExtractor] = None,
        max_questions: int = 5,
        prompt_loader: Optional[PromptLoader] = None,
    ):
        self.extractor = extractor or default_extractor()
        self.max_questions = max_questions
        self.prompt_loader = prompt_loader or PromptLoader()

    def questions_for(self, template: Template) -> list[str]:
        """提取有序、去重、截断后的问题列表"""
        seen: set[str] = set()
        questions: list[str] = []
        for question in self.extractor.extract(template):
            if question not in seen:
                seen.add(question)
                questions.append(question)

        logger.debug(
            "elicitation_questions_extracted",
            template=template.name,
            extracted=len(questions),
            max_questions=self.max_questions,
        )
        return questions[: self.max_questions]

    def open_session(
        self,
        step_index: int,
        template_name: Optional[str],
        questions: list[str],
    ) -> ElicitationSession:
        return ElicitationSession(
            step_index=step_index,
            template_name=template_name,
            questions=[ElicitationQuestion(question=q) for q in questions],
        )

    def record_answers(self, session: ElicitationSession, answers: Answers) -> ElicitationSession:
        """
        记录回答

        Args:
            session: 引导会话（原地更新）
            answers: 按问题文本或从 1 开始的序号索引的映射，或按顺序排列的列表

        Raises:
            ElicitationStateError: 回答无法对应到任何问题
        """
        if isinstance(answers, Mapping):
            for key, answer in answers.items():
                self._question_for_key(session, key).answer = str(answer)
        else:
            if len(answers) > len(session.questions):
                raise ElicitationStateError(
                    f"Got {len(answers)} answers for {len(session.questions)} questions"
                )
            for question, answer in zip(session.questions, answers):
                if answer is not None:
                    question.answer = str(answer)

        logger.debug(
            "elicitation_answers_recorded",
            template=session.template_name,
            answered=sum(1 for q in session.questions if q.answered),
            total=len(session.questions),
        )
        return session

    @staticmethod
    def _question_for_key(session: ElicitationSession, key: Union[str, int]) -> ElicitationQuestion:
        if isinstance(key, str) and not key.isdigit():
            for question in session.questions:
                if question.question == key:
                    return question
            raise ElicitationStateError(f"Unknown question: {key}")

        index = int(key)
        if not 1 <= index <= len(session.questions):
            raise ElicitationStateError(f"Question number {index} out of range")
        return session.questions[index - 1]

    def is_satisfied(self, session: ElicitationSession) -> bool:
        """每个问题都有非空回答（或人工确认跳过）"""
        if session.force_satisfied:
            return True
        return all(q.answered for q in session.questions)

    def pending_questions(self, session: ElicitationSession) -> list[str]:
        return [q.question for q in session.questions if not q.answered]

    def format_questions(self, questions: list[str], template_title: str = "") -> str:
        return self.prompt_loader.render(
            "elicitation.j2",
            questions=questions,
            template_title=template_title,
        )
