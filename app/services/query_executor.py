"""
查询执行器

执行路由只依赖 QueryExecutor 抽象，每种引擎各有一个实现：
- InternalStoreExecutor: 内部数据库（同步副本、文件 / API 数据、物化表）
- ExternalSQLExecutor: 外部 PostgreSQL / MySQL / MariaDB
- MongoAggregationExecutor: MongoDB 原生聚合管道

外部连接按操作创建，不做池化与复用。
"""

import asyncio
import json
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any, ClassVar, TypeVar

from loguru import logger
from pymongo import MongoClient
from pymongo.errors import ConnectionFailure, PyMongoError, ServerSelectionTimeoutError
from sqlalchemy import create_engine, text
from sqlalchemy.engine import URL, Connection, Engine
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.pool import NullPool

from app.core.config import settings
from app.core.encryption import decrypt_connection_details, mask_connection_details
from app.core.exceptions import ConnectionFailedException, QueryExecutionException
from app.models.data_source import DataSource, DataSourceType
from app.schemas.query import MongoQuery

T = TypeVar("T")

Row = dict[str, Any]


class QueryExecutor(ABC):
    """查询执行器抽象"""

    dialect: str = "postgresql"

    @abstractmethod
    async def execute_query(self, sql: str, params: dict[str, Any] | None = None) -> list[Row]:
        """执行语句，返回结果行（无结果集的语句返回空列表）"""

    @abstractmethod
    async def with_transaction(self, fn: Callable[["QueryExecutor"], Awaitable[T]]) -> T:
        """在事务中执行 fn，异常时回滚"""


class InternalStoreExecutor(QueryExecutor):
    """内部数据库执行器"""

    dialect = "postgresql"

    def __init__(self, db: AsyncSession):
        self.db = db

    async def execute_query(self, sql: str, params: dict[str, Any] | None = None) -> list[Row]:
        try:
            result = await self.db.execute(text(sql), params or {})
        except SQLAlchemyError as e:
            logger.error(f"❌ 内部数据库执行失败: {e}\nSQL: {sql}")
            raise QueryExecutionException(msg=f"查询执行失败: {str(e)}") from e
        if not result.returns_rows:
            return []
        return [dict(row._mapping) for row in result]

    async def with_transaction(self, fn: Callable[[QueryExecutor], Awaitable[T]]) -> T:
        # 会话已处于事务中时使用 SAVEPOINT，失败只回滚本段
        async with self.db.begin_nested():
            return await fn(self)


class ExternalSQLExecutor(QueryExecutor):
    """外部关系型数据库执行器（每次操作新建连接）"""

    # 数据库驱动映射
    DRIVER_MAP: ClassVar[dict[DataSourceType, str]] = {
        DataSourceType.MYSQL: "mysql+pymysql",
        DataSourceType.MARIADB: "mysql+pymysql",
        DataSourceType.POSTGRESQL: "postgresql+psycopg2",
    }

    def __init__(self, data_source: DataSource):
        self.data_source = data_source
        self.source_type = data_source.source_type
        self.dialect = self.source_type.value
        self._connection: Connection | None = None

    def _build_connection_url(self) -> URL:
        """
        构建数据库连接 URL

        Returns:
            连接 URL
        """
        driver = self.DRIVER_MAP.get(self.source_type)
        if not driver:
            raise ConnectionFailedException(msg="不支持的数据库类型", provider=self.source_type.value)

        details = decrypt_connection_details(self.data_source.connection_details)
        logger.debug(f"🔌 连接外部数据库: {mask_connection_details(self.data_source.connection_details)}")
        return URL.create(
            driver,
            username=details.get("username") or details.get("user"),
            password=details.get("password"),
            host=details.get("host"),
            port=int(details["port"]) if details.get("port") else None,
            database=details.get("database"),
            query={k: str(v) for k, v in (details.get("extra_params") or {}).items()},
        )

    def _create_engine(self) -> Engine:
        return create_engine(
            self._build_connection_url(),
            poolclass=NullPool,
            connect_args={"connect_timeout": settings.EXTERNAL_CONNECT_TIMEOUT},
        )

    def _connect(self, engine: Engine) -> Connection:
        try:
            return engine.connect()
        except (OperationalError, InterfaceError) as e:
            logger.error(f"❌ 外部数据库连接失败 ({self.source_type.value}, {self.data_source.name}): {e}")
            raise ConnectionFailedException(msg=f"连接失败: {str(e)}", provider=self.source_type.value) from e

    def _execute_on(self, conn: Connection, sql: str, params: dict[str, Any] | None) -> list[Row]:
        try:
            result = conn.execute(text(sql), params or {})
        except DBAPIError as e:
            logger.error(f"❌ 外部数据库执行失败 ({self.source_type.value}): {e}\nSQL: {sql}")
            raise QueryExecutionException(msg=f"查询执行失败: {str(e)}") from e
        if not result.returns_rows:
            return []
        columns = list(result.keys())
        return [dict(zip(columns, row, strict=False)) for row in result.fetchall()]

    def _run(self, sql: str, params: dict[str, Any] | None) -> list[Row]:
        engine = self._create_engine()
        try:
            with self._connect(engine) as conn:
                return self._execute_on(conn, sql, params)
        finally:
            engine.dispose()

    async def execute_query(self, sql: str, params: dict[str, Any] | None = None) -> list[Row]:
        if self._connection is not None:
            return await asyncio.to_thread(self._execute_on, self._connection, sql, params)
        return await asyncio.to_thread(self._run, sql, params)

    async def with_transaction(self, fn: Callable[[QueryExecutor], Awaitable[T]]) -> T:
        engine = self._create_engine()
        conn = await asyncio.to_thread(self._connect, engine)
        transaction = conn.begin()
        self._connection = conn
        try:
            result = await fn(self)
            await asyncio.to_thread(transaction.commit)
            return result
        except Exception:
            await asyncio.to_thread(transaction.rollback)
            raise
        finally:
            self._connection = None
            conn.close()
            engine.dispose()


class MongoAggregationExecutor(QueryExecutor):
    """
    MongoDB 原生聚合执行器

    execute_query 接收 JSON 形式的 {"collection": ..., "pipeline": [...]}
    """

    dialect = "mongodb"

    def __init__(self, data_source: DataSource):
        self.data_source = data_source

    def _client(self) -> MongoClient:
        details = decrypt_connection_details(self.data_source.connection_details)
        uri = details.get("connection_string") or details.get("uri")
        kwargs: dict[str, Any] = {"serverSelectionTimeoutMS": settings.MONGO_SERVER_SELECTION_TIMEOUT_MS}
        if uri:
            return MongoClient(uri, **kwargs)
        return MongoClient(
            host=details.get("host", "localhost"),
            port=int(details.get("port") or 27017),
            username=details.get("username"),
            password=details.get("password"),
            **kwargs,
        )

    def _database_name(self) -> str:
        details = self.data_source.connection_details or {}
        return details.get("database") or "admin"

    def aggregate(self, collection: str, pipeline: list[dict[str, Any]]) -> list[Row]:
        client = self._client()
        try:
            cursor = client[self._database_name()][collection].aggregate(pipeline)
            rows = []
            for document in cursor:
                if "_id" in document:
                    document["_id"] = str(document["_id"])
                rows.append(document)
            return rows
        except (ConnectionFailure, ServerSelectionTimeoutError) as e:
            logger.error(f"❌ MongoDB 连接失败 ({self.data_source.name}): {e}")
            raise ConnectionFailedException(msg=f"连接失败: {str(e)}", provider=DataSourceType.MONGODB.value) from e
        except PyMongoError as e:
            logger.error(f"❌ MongoDB 聚合失败: {e}\nPipeline: {pipeline}")
            raise QueryExecutionException(msg=f"聚合执行失败: {str(e)}") from e
        finally:
            client.close()

    async def execute_query(self, sql: str, params: dict[str, Any] | None = None) -> list[Row]:
        query = MongoQuery.model_validate(json.loads(sql))
        return await asyncio.to_thread(self.aggregate, query.collection, query.pipeline)

    async def with_transaction(self, fn: Callable[[QueryExecutor], Awaitable[T]]) -> T:
        # 只读聚合不需要事务
        return await fn(self)
