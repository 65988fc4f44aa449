"""
Redis 客户端封装
"""
import redis.asyncio as aioredis
import structlog

from agentflow.config.settings import settings

logger = structlog.get_logger()


class RedisClient:
    """Redis 异步客户端封装"""

    def __init__(self, url: str | None = None):
        self._url = url
        self._client: aioredis.Redis | None = None

    @property
    def client(self) -> aioredis.Redis:
        if self._client is None:
            raise RuntimeError("Redis client is not connected")
        return self._client

    async def connect(self) -> aioredis.Redis:
        """
        建立连接

        支持标准 Redis 和 TLS（rediss:// 协议）
        """
        if self._client is None:
            redis_url = self._url or settings.get_redis_url
            use_ssl = redis_url.startswith("rediss://")

            connection_kwargs = {
                "encoding": "utf-8",
                "decode_responses": True,
                "socket_timeout": 5,
                "socket_connect_timeout": 5,
                "socket_keepalive": True,
                "max_connections": 50,
                "retry_on_timeout": True,
            }
            if use_ssl:
                connection_kwargs["ssl_cert_reqs"] = "required"

            self._client = aioredis.from_url(redis_url, **connection_kwargs)
            logger.info(
                "redis_client_initialized",
                redis_url=redis_url.split("@")[-1],
                ssl_enabled=use_ssl,
            )
        return self._client

    async def close(self):
        """关闭连接"""
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.info("redis_client_closed")

    async def ping(self) -> bool:
        """健康检查"""
        client = await self.connect()
        return await client.ping()

    async def publish(self, channel: str, message: str) -> int:
        client = await self.connect()
        return await client.publish(channel, message)

