"""
应用生命周期管理

启动时确认内部数据库可用、物化表所在 schema 已存在；关闭时释放连接池
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from app.core.config import settings
from app.core.database import close_db, ensure_schema, init_db


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    应用生命周期管理器

    启动时:
    - 检查内部数据库连接
    - 创建 DATA_MODEL_SCHEMA（如不存在）

    关闭时:
    - 关闭数据库连接池
    """
    logger.info(f"🚀 {settings.APP_NAME} 启动中 ({settings.ENVIRONMENT})...")

    try:
        await init_db()
        await ensure_schema(settings.DATA_MODEL_SCHEMA)
        logger.info(f"✅ 内部数据库就绪，物化 schema: {settings.DATA_MODEL_SCHEMA}")
    except Exception as e:
        logger.error(f"❌ 内部数据库初始化失败: {e}")
        raise

    yield

    logger.info("🛑 应用关闭中...")
    try:
        await close_db()
        logger.info("✅ 数据库连接池已释放")
    except Exception as e:
        logger.error(f"❌ 数据库关闭失败: {e}")
