"""
通知服务（基于 Redis Pub/Sub）

工作流在关键节点发布事件，外层服务（WebSocket / SSE 等）订阅后推送给客户端。
通知只是观察通道：发布失败只记录日志，不影响步骤执行。

事件类型见 WorkflowEvent。
"""
from typing import Any, AsyncIterator, Optional, Protocol
import json
import structlog

from agentflow.db.redis_client import RedisClient
from agentflow.models.domain import utc_now

logger = structlog.get_logger()


# Redis 频道前缀
CHANNEL_PREFIX = "agentflow:workflow:"


class WorkflowEvent:
    """工作流事件类型常量"""
    # 生命周期事件
    STARTED = "workflow_started"
    RUNNING = "workflow_running"
    PAUSED = "workflow_paused"
    RESUMED = "workflow_resumed"
    CANCELLED = "workflow_cancelled"
    FAILED = "workflow_failed"
    COMPLETED = "workflow_completed"
    RECOVERED = "workflow_recovered"

    # 步骤级别事件
    STEP_STARTED = "step_started"
    STEP_COMPLETED = "step_completed"
    ELICITATION_REQUIRED = "elicitation_required"
    PROVIDER_ERROR = "provider_error"


class NotificationPort(Protocol):
    """通知端口"""

    async def publish(self, channel_id: str, event_name: str, payload: dict[str, Any]) -> None:
        ...


async def safe_publish(
    port: Optional[NotificationPort],
    channel_id: str,
    event_name: str,
    payload: dict[str, Any],
) -> None:
    """发布事件，失败只记录日志"""
    if port is None:
        return
    try:
        await port.publish(channel_id, event_name, payload)
    except Exception as e:
        logger.warning(
            "notification_publish_failed",
            channel_id=channel_id,
            event=event_name,
            error=str(e),
        )


class RedisNotificationService:
    """
    通知服务

    发布端：引擎在关键节点调用 publish
    订阅端：外层服务调用 subscribe 获取事件流
    """

    def __init__(self, redis: RedisClient):
        self._redis = redis

    @staticmethod
    def channel(workflow_id: str) -> str:
        """获取工作流对应的 Redis 频道名"""
        return f"{CHANNEL_PREFIX}{workflow_id}"

    async def publish(self, channel_id: str, event_name: str, payload: dict[str, Any]) -> None:
        event = {
            "type": event_name,
            "workflow_id": channel_id,
            "timestamp": utc_now().isoformat(),
            **payload,
        }
        channel = self.channel(channel_id)
        await self._redis.publish(channel, json.dumps(event, ensure_ascii=False, default=str))
        logger.debug("notification_published", channel=channel, event=event_name)

    async def subscribe(self, workflow_id: str) -> AsyncIterator[dict[str, Any]]:
        """
        订阅工作流事件

        Yields:
            事件字典；收到 completed / failed / cancelled 后结束
        """
        client = await self._redis.connect()
        pubsub = client.pubsub()
        channel = self.channel(workflow_id)
        await pubsub.subscribe(channel)
        logger.info("notification_subscribed", channel=channel)

        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                event = json.loads(message["data"])
                yield event
                if event.get("type") in (
                    WorkflowEvent.COMPLETED,
                    WorkflowEvent.FAILED,
                    WorkflowEvent.CANCELLED,
                ):
                    break
        finally:
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()
            logger.info("notification_unsubscribed", channel=channel)
