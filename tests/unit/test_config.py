"""
配置与日志单元测试
"""
import structlog

from agentflow.config.logging_config import add_app_context, setup_logging
from agentflow.config.settings import Settings
from agentflow.core.orchestrator.base import EngineConfig


class TestSettings:

    def test_redis_url_from_parts(self):
        settings = Settings(REDIS_HOST="cache", REDIS_PORT=6380, REDIS_PASSWORD="pw", REDIS_DB=2, REDIS_URL="")

        assert settings.get_redis_url == "redis://:pw@cache:6380/2"

    def test_explicit_redis_url_wins(self):
        settings = Settings(REDIS_URL="rediss://example:6379/0")

        assert settings.get_redis_url == "rediss://example:6379/0"

    def test_engine_config_from_settings(self):
        settings = Settings(
            THROTTLE_MIN_INTERVAL_SECONDS=0.5,
            ELICITATION_MAX_QUESTIONS=3,
            CHECKPOINT_EVERY_STEP=True,
        )

        config = EngineConfig.from_settings(settings)

        assert config.throttle_min_interval_seconds == 0.5
        assert config.max_questions == 3
        assert config.checkpoint_every_step is True


class TestLogging:

    def test_app_context_processor(self):
        event = add_app_context(None, "info", {"event": "x"})

        assert event["service"] == "agentflow"
        assert "environment" in event

    def test_setup_logging_configures_structlog(self):
        setup_logging()

        assert structlog.is_configured()
