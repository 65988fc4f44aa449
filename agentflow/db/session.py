"""
数据库会话管理（SQLModel + AsyncPG）

- create_engine: 按 URL 创建异步引擎（PostgreSQL 启用连接池参数）
- make_session_factory: 创建 async_sessionmaker
- init_db: 建表（开发 / 测试环境使用）
"""
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel
import structlog

from agentflow.config.settings import settings

logger = structlog.get_logger()


def create_engine(database_url: str | None = None) -> AsyncEngine:
    url = database_url or settings.DATABASE_URL
    kwargs: dict = {"echo": False, "pool_pre_ping": True}
    if not url.startswith("sqlite"):
        kwargs.update(
            pool_size=settings.DATABASE_POOL_SIZE,
            max_overflow=settings.DATABASE_MAX_OVERFLOW,
            pool_recycle=1800,
        )
    engine = create_async_engine(url, **kwargs)
    logger.info("database_engine_created", dialect=engine.dialect.name)
    return engine


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_db(engine: AsyncEngine) -> None:
    """创建所有表"""
    # 注册表模型
    from agentflow.models import database  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    logger.info("database_tables_created")
