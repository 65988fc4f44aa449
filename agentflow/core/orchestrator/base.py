"""
编排器基础定义

包含：
- EngineConfig: 引擎配置（Pydantic 模型，从全局 settings 生成快照）
- ExecutionOptions: 单次 Agent 执行选项
"""
from typing import Optional

from pydantic import BaseModel

from agentflow.config.settings import Settings


class EngineConfig(BaseModel):
    """
    引擎配置

    - checkpoint_enabled: 工作流默认是否记录检查点（可被启动参数覆盖）
    - checkpoint_every_step: 是否在每个步骤成功后记录检查点
    - max_questions: 单次引导最多提出的问题数
    - stale_after_seconds: RUNNING 状态多久未更新视为卡住
    - execution_lease_ttl_seconds: 工作流执行租约的 TTL，每个步骤边界续期
    - execution_history_size: 进程内保留的已完成工作流摘要数
    """
    checkpoint_enabled: bool = True
    checkpoint_every_step: bool = False
    max_questions: int = 5
    stale_after_seconds: float = 1800.0
    recovery_max_concurrent: int = 3
    cache_max_age_seconds: float = 86400.0
    cache_sweep_interval_seconds: float = 3600.0
    throttle_min_interval_seconds: float = 2.0
    throttle_lease_ttl_seconds: float = 30.0
    throttle_max_wait_seconds: Optional[float] = 120.0
    throttle_key_prefix: str = "ai:queue"
    execution_lease_ttl_seconds: float = 600.0
    execution_lease_key_prefix: str = "agentflow:workflow-lease"
    execution_history_size: int = 100

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "EngineConfig":
        """从全局 settings 创建配置"""
        if settings is None:
            from agentflow.config.settings import settings

        return cls(
            checkpoint_enabled=settings.CHECKPOINT_ENABLED,
            checkpoint_every_step=settings.CHECKPOINT_EVERY_STEP,
            max_questions=settings.ELICITATION_MAX_QUESTIONS,
            stale_after_seconds=settings.RECOVERY_STALE_AFTER_SECONDS,
            recovery_max_concurrent=settings.RECOVERY_MAX_CONCURRENT,
            cache_max_age_seconds=settings.CACHE_MAX_AGE_SECONDS,
            cache_sweep_interval_seconds=settings.CACHE_SWEEP_INTERVAL_SECONDS,
            throttle_min_interval_seconds=settings.THROTTLE_MIN_INTERVAL_SECONDS,
            throttle_lease_ttl_seconds=settings.THROTTLE_LEASE_TTL_SECONDS,
            throttle_max_wait_seconds=settings.THROTTLE_MAX_WAIT_SECONDS,
            throttle_key_prefix=settings.THROTTLE_KEY_PREFIX,
            execution_lease_ttl_seconds=settings.EXECUTION_LEASE_TTL_SECONDS,
            execution_lease_key_prefix=settings.EXECUTION_LEASE_KEY_PREFIX,
        )


class ExecutionOptions(BaseModel):
    """
    Agent 执行选项

    - skip_elicitation: 不进入引导流程，直接生成
    """
    skip_elicitation: bool = False
