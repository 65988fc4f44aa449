"""
通知服务单元测试
"""
import json

import pytest
from unittest.mock import AsyncMock, MagicMock

from agentflow.services.notification_service import (
    CHANNEL_PREFIX,
    RedisNotificationService,
    WorkflowEvent,
    safe_publish,
)


class TestSafePublish:

    @pytest.mark.asyncio
    async def test_none_port_is_noop(self):
        await safe_publish(None, "wf-1", WorkflowEvent.STARTED, {})

    @pytest.mark.asyncio
    async def test_publish_failure_is_swallowed(self):
        port = MagicMock()
        port.publish = AsyncMock(side_effect=ConnectionError("redis down"))

        await safe_publish(port, "wf-1", WorkflowEvent.STARTED, {"steps": 2})

        port.publish.assert_awaited_once_with("wf-1", WorkflowEvent.STARTED, {"steps": 2})


class TestRedisNotificationService:

    @pytest.mark.asyncio
    async def test_publish_serializes_event(self):
        redis = MagicMock()
        redis.publish = AsyncMock(return_value=1)
        service = RedisNotificationService(redis)

        await service.publish("wf-1", WorkflowEvent.STEP_COMPLETED, {"step_index": 0, "artifact_id": "brief"})

        channel, message = redis.publish.await_args.args
        assert channel == f"{CHANNEL_PREFIX}wf-1"
        event = json.loads(message)
        assert event["type"] == WorkflowEvent.STEP_COMPLETED
        assert event["workflow_id"] == "wf-1"
        assert event["artifact_id"] == "brief"
        assert "timestamp" in event

    @pytest.mark.asyncio
    async def test_subscribe_stops_on_terminal_event(self):
        messages = [
            {"type": "subscribe", "data": 1},
            {"type": "message", "data": json.dumps({"type": WorkflowEvent.STEP_STARTED})},
            {"type": "message", "data": json.dumps({"type": WorkflowEvent.COMPLETED})},
            {"type": "message", "data": json.dumps({"type": WorkflowEvent.STEP_STARTED})},
        ]

        async def listen():
            for message in messages:
                yield message

        pubsub = MagicMock()
        pubsub.subscribe = AsyncMock()
        pubsub.unsubscribe = AsyncMock()
        pubsub.aclose = AsyncMock()
        pubsub.listen = listen
        client = MagicMock()
        client.pubsub.return_value = pubsub
        redis = MagicMock()
        redis.connect = AsyncMock(return_value=client)

        service = RedisNotificationService(redis)
        events = [event async for event in service.subscribe("wf-1")]

        assert [e["type"] for e in events] == [WorkflowEvent.STEP_STARTED, WorkflowEvent.COMPLETED]
        pubsub.unsubscribe.assert_awaited_once_with(f"{CHANNEL_PREFIX}wf-1")
        pubsub.aclose.assert_awaited_once()
