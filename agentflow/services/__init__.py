"""服务层：事件通知与工作流恢复"""

from agentflow.services.notification_service import RedisNotificationService, WorkflowEvent

__all__ = ["RedisNotificationService", "WorkflowEvent"]
