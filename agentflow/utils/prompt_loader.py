"""
Prompt 模板加载器（Jinja2）
"""
from pathlib import Path
from typing import Any
from jinja2 import Environment, FileSystemLoader, StrictUndefined
import structlog

logger = structlog.get_logger()


class PromptLoader:
    """Prompt 模板加载器"""

    def __init__(self, template_dir: str | None = None):
        """
        初始化 Prompt 加载器

        Args:
            template_dir: 模板目录路径，默认为包内的 prompts/
        """
        if template_dir is None:
            template_dir = str(Path(__file__).resolve().parent.parent / "prompts")

        self.template_dir = template_dir
        self.env = Environment(
            loader=FileSystemLoader(template_dir),
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=False,
        )
        logger.debug("prompt_loader_initialized", template_dir=template_dir)

    def render(self, template_name: str, **kwargs: Any) -> str:
        """
        渲染模板

        Args:
            template_name: 模板文件名（如 'template_prompt.j2'）
            **kwargs: 模板变量

        Returns:
            渲染后的字符串
        """
        try:
            template = self.env.get_template(template_name)
            return template.render(**kwargs).strip()
        except Exception as e:
            logger.error(
                "prompt_render_failed",
                template_name=template_name,
                error=str(e),
            )
            raise
