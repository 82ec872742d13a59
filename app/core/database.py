"""
数据库连接管理

内部数据库（元数据、同步数据、物化表）的异步引擎与会话工厂
"""

from collections.abc import AsyncGenerator

from loguru import logger
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.core.config import settings

engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
    pool_pre_ping=True,
    pool_size=settings.DATABASE_POOL_SIZE,
    max_overflow=settings.DATABASE_MAX_OVERFLOW,
)

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    获取数据库会话（FastAPI 依赖）

    请求正常结束时提交，出现异常时回滚
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """检查数据库连通性"""
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))
    logger.debug(f"数据库连接正常: {engine.url.render_as_string(hide_password=True)}")


async def close_db() -> None:
    """关闭数据库连接池"""
    await engine.dispose()


async def ensure_schema(schema: str) -> None:
    """创建物化表所在的 schema（已存在时忽略）"""
    quoted = '"' + schema.replace('"', '""') + '"'
    async with engine.begin() as conn:
        await conn.execute(text(f"CREATE SCHEMA IF NOT EXISTS {quoted}"))
    logger.debug(f"schema 已就绪: {schema}")
