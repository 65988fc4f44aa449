"""
引擎注册表（依赖注入根）

由进程入口创建一次，持有缓存管理器、节流器、执行租约、解析器、执行器与生命周期管理器，
替代隐式的进程级全局单例。shutdown() 显式释放租约、清空缓存、关闭连接。

使用方式：
    registry = EngineRegistry.from_settings()
    await registry.startup()
    result = await registry.engine.start_workflow({...})
    ...
    await registry.shutdown()
"""
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine

from agentflow.agents.loader import FileDefinitionLoader
from agentflow.agents.protocol import AgentLoader, AIProvider
from agentflow.agents.provider import LiteLLMProvider
from agentflow.config.logging_config import setup_logging
from agentflow.config.settings import Settings
from agentflow.core.cache_manager import ResourceCacheManager
from agentflow.core.elicitation import ElicitationManager, QuestionExtractor
from agentflow.core.engine import WorkflowEngine
from agentflow.core.error_handler import StepErrorHandler
from agentflow.core.orchestrator.agent_executor import AgentExecutor
from agentflow.core.orchestrator.base import EngineConfig
from agentflow.core.orchestrator.checkpoint import CheckpointService
from agentflow.core.orchestrator.execution_lease import WorkflowExecutionLease
from agentflow.core.orchestrator.lifecycle import WorkflowLifecycleManager
from agentflow.core.orchestrator.state_manager import WorkflowStateManager
from agentflow.core.orchestrator.step_executor import StepExecutor
from agentflow.core.template_resolver import TemplateResolver
from agentflow.db.kv_store import InMemoryKeyValueStore, KeyValueStore, RedisKeyValueStore
from agentflow.db.redis_client import RedisClient
from agentflow.db.repositories.base import CheckpointRepository, WorkflowRepository
from agentflow.db.repositories.memory import InMemoryCheckpointRepository, InMemoryWorkflowRepository
from agentflow.db.repositories.sql import SqlCheckpointRepository, SqlWorkflowRepository
from agentflow.db.session import create_engine, make_session_factory
from agentflow.services.notification_service import NotificationPort, RedisNotificationService
from agentflow.services.recovery_service import WorkflowRecoveryService
from agentflow.utils.prompt_loader import PromptLoader
from agentflow.utils.rate_limiter import AIRequestThrottler

logger = structlog.get_logger()


class EngineRegistry:
    """引擎注册表"""

    def __init__(
        self,
        *,
        loader: AgentLoader,
        provider: AIProvider,
        workflow_repository: WorkflowRepository,
        checkpoint_repository: CheckpointRepository,
        kv_store: KeyValueStore,
        notifier: Optional[NotificationPort] = None,
        config: Optional[EngineConfig] = None,
        question_extractor: Optional[QuestionExtractor] = None,
        cache: Optional[ResourceCacheManager] = None,
        redis: Optional[RedisClient] = None,
        db_engine: Optional[AsyncEngine] = None,
    ):
        self.config = config or EngineConfig()
        self.redis = redis
        self.db_engine = db_engine

        self.cache = cache or ResourceCacheManager(max_age_seconds=self.config.cache_max_age_seconds)
        self.prompt_loader = PromptLoader()
        self.throttler = AIRequestThrottler(
            kv_store,
            min_interval_seconds=self.config.throttle_min_interval_seconds,
            lease_ttl_seconds=self.config.throttle_lease_ttl_seconds,
            max_wait_seconds=self.config.throttle_max_wait_seconds,
            key_prefix=self.config.throttle_key_prefix,
        )
        self.execution_lease = WorkflowExecutionLease(
            kv_store,
            ttl_seconds=self.config.execution_lease_ttl_seconds,
            key_prefix=self.config.execution_lease_key_prefix,
        )
        self.resolver = TemplateResolver(loader, self.cache)
        self.elicitation = ElicitationManager(
            extractor=question_extractor,
            max_questions=self.config.max_questions,
            prompt_loader=self.prompt_loader,
        )
        self.state = WorkflowStateManager(workflow_repository, self.cache)
        self.checkpoints = CheckpointService(checkpoint_repository, enabled=self.config.checkpoint_enabled)
        self.error_handler = StepErrorHandler(self.state, notifier)
        self.agent_executor = AgentExecutor(
            self.resolver,
            self.elicitation,
            self.throttler,
            provider,
            prompt_loader=self.prompt_loader,
        )
        self.step_executor = StepExecutor(
            self.state,
            self.agent_executor,
            self.elicitation,
            self.checkpoints,
            self.error_handler,
            notifier=notifier,
            config=self.config,
            lease=self.execution_lease,
        )
        self.lifecycle = WorkflowLifecycleManager(
            self.state,
            self.step_executor,
            self.resolver,
            self.elicitation,
            self.checkpoints,
            self.throttler,
            self.error_handler,
            notifier=notifier,
            config=self.config,
            lease=self.execution_lease,
        )
        self.recovery = WorkflowRecoveryService(
            workflow_repository,
            self.lifecycle,
            stale_after_seconds=self.config.stale_after_seconds,
            max_concurrent=self.config.recovery_max_concurrent,
        )
        self.engine = WorkflowEngine(
            self.lifecycle,
            self.state,
            self.checkpoints,
            self.resolver,
            self.recovery,
        )

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "EngineRegistry":
        """按配置装配生产依赖（Redis、PostgreSQL、LiteLLM、定义目录）"""
        if settings is None:
            from agentflow.config.settings import settings

        setup_logging()
        redis = RedisClient(settings.get_redis_url)
        db_engine = create_engine(settings.DATABASE_URL)
        session_factory = make_session_factory(db_engine)

        return cls(
            loader=FileDefinitionLoader(settings.DEFINITIONS_DIR),
            provider=LiteLLMProvider.from_settings(settings),
            workflow_repository=SqlWorkflowRepository(session_factory),
            checkpoint_repository=SqlCheckpointRepository(session_factory),
            kv_store=RedisKeyValueStore(redis),
            notifier=RedisNotificationService(redis),
            config=EngineConfig.from_settings(settings),
            redis=redis,
            db_engine=db_engine,
        )

    @classmethod
    def in_memory(
        cls,
        loader: AgentLoader,
        provider: AIProvider,
        notifier: Optional[NotificationPort] = None,
        config: Optional[EngineConfig] = None,
    ) -> "EngineRegistry":
        """单进程装配（本地开发 / 测试）"""
        return cls(
            loader=loader,
            provider=provider,
            workflow_repository=InMemoryWorkflowRepository(),
            checkpoint_repository=InMemoryCheckpointRepository(),
            kv_store=InMemoryKeyValueStore(),
            notifier=notifier,
            config=config,
        )

    async def startup(self, reattach: bool = True) -> None:
        """启动后台缓存清理，并重新调度未卡住的 RUNNING 工作流"""
        self.cache.start_sweeper(self.config.cache_sweep_interval_seconds)
        if reattach:
            await self.recovery.reattach_running()
        logger.info("engine_registry_started")

    async def shutdown(self) -> None:
        """等待后台执行结束，释放租约，清空缓存，关闭连接"""
        await self.lifecycle.drain()
        await self.cache.stop_sweeper()
        await self.throttler.shutdown()
        await self.execution_lease.shutdown()
        self.cache.clear()

        if self.redis is not None:
            try:
                await self.redis.close()
            except Exception as e:
                logger.error("redis_close_failed", error=str(e))
        if self.db_engine is not None:
            await self.db_engine.dispose()

        logger.info("engine_registry_shutdown")
