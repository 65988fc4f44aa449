"""
structlog 配置
"""
import logging
import sys
import structlog
from structlog.types import EventDict

from agentflow.config.settings import settings


def add_app_context(logger, method_name: str, event_dict: EventDict) -> EventDict:
    """添加应用全局上下文"""
    event_dict["environment"] = settings.ENVIRONMENT
    event_dict["service"] = settings.PROJECT_NAME
    return event_dict


def setup_logging():
    """初始化日志系统"""

    # 配置标准库 logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=logging.INFO if not settings.DEBUG else logging.DEBUG,
    )

    # 屏蔽第三方库的调试日志
    for noisy in ("sqlalchemy.engine", "sqlalchemy.pool", "httpx", "httpcore", "LiteLLM"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            add_app_context,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(ensure_ascii=False)
            if settings.ENVIRONMENT == "production"
            else structlog.dev.ConsoleRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
