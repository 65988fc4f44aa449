"""
工作流编排器模块

- base.py: 引擎配置与执行选项
- state_manager.py: 状态读写、工作流锁、live_step 缓存
- checkpoint.py: 检查点记录
- agent_executor.py: 单个 Agent 的执行（模板解析、征询、模型调用）
- step_executor.py: 步骤顺序执行与结果应用
- lifecycle.py: 启动 / 暂停 / 恢复 / 取消 / 完成 与检查点恢复

使用方式：
    from agentflow.core.registry import EngineRegistry

    registry = EngineRegistry.from_settings()
    result = await registry.engine.start_workflow({...})
"""
from .base import EngineConfig, ExecutionOptions
from .state_manager import WorkflowStateManager
from .step_executor import StepExecutor
from .lifecycle import WorkflowLifecycleManager

__all__ = [
    "EngineConfig",
    "ExecutionOptions",
    "WorkflowStateManager",
    "StepExecutor",
    "WorkflowLifecycleManager",
]
