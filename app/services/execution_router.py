"""
执行路由

根据数据源类型决定 SQL 在哪个引擎上执行：

| 条件                                 | 目标引擎                       |
|--------------------------------------|--------------------------------|
| 文件 / API 类数据源                  | 内部数据库                     |
| MongoDB 且已同步                     | 内部数据库（失败时回退原生一次） |
| MongoDB 未同步                       | MongoDB 原生聚合               |
| 外部 PostgreSQL / MySQL / MariaDB    | 直连外部数据库                 |
| 跨数据源且包含 JOIN                  | 内部数据库，使用改写后的 SQL   |

在内部数据库上执行的查询都先经过定位服务，把逻辑表引用改写为物理表。
连接 / 执行失败以异常形式抛出；不支持的数据源或查询形态返回 success=False 的结果。
"""

import json
import uuid
from collections.abc import Callable

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import QueryEngineException, ResolutionException
from app.models.data_source import DataSource, DataSourceType
from app.schemas.data_model import QueryResult
from app.schemas.query import MongoQuery, QueryDescriptor
from app.services.mongo_translator import MongoPipelineTranslator, synced_table_name
from app.services.query_executor import (
    ExternalSQLExecutor,
    InternalStoreExecutor,
    MongoAggregationExecutor,
    QueryExecutor,
)
from app.services.source_locator import SourceLocator
from app.services.table_rewriter import rewrite


def _source_type(data_source: DataSource) -> DataSourceType | None:
    try:
        return data_source.source_type
    except ValueError:
        return None


class ExecutionRouter:
    """执行路由"""

    def __init__(
        self,
        db: AsyncSession | None = None,
        *,
        locator: SourceLocator | None = None,
        internal_executor: QueryExecutor | None = None,
        external_factory: Callable[[DataSource], QueryExecutor] = ExternalSQLExecutor,
        mongo_factory: Callable[[DataSource], QueryExecutor] = MongoAggregationExecutor,
        translator: MongoPipelineTranslator | None = None,
    ):
        self.locator = locator or SourceLocator(db)
        self.internal_executor = internal_executor or InternalStoreExecutor(db)  # type: ignore[arg-type]
        self.external_factory = external_factory
        self.mongo_factory = mongo_factory
        self.translator = translator or MongoPipelineTranslator()

    # ==================== 目标引擎 ====================

    def executor_for(self, data_source: DataSource) -> QueryExecutor | None:
        """
        选择数据源对应的执行器

        Returns:
            执行器，不支持的数据源返回 None
        """
        source_type = _source_type(data_source)
        if source_type is None:
            return None
        if self.uses_internal_store(data_source):
            return self.internal_executor
        if source_type.is_mongodb:
            return self.mongo_factory(data_source)
        if source_type.is_external_relational:
            return self.external_factory(data_source)
        return None

    @staticmethod
    def uses_internal_store(data_source: DataSource) -> bool:
        """数据是否位于内部数据库：文件 / API 类数据源与已同步的 MongoDB"""
        source_type = _source_type(data_source)
        if source_type is None:
            return False
        return source_type.is_internal_synced or (source_type.is_mongodb and data_source.is_synced)

    def target_dialect(self, descriptor: QueryDescriptor, data_sources: dict[uuid.UUID, DataSource]) -> str:
        """查询最终执行的 SQL 方言：只有单个外部 MySQL / MariaDB 数据源时不是 PostgreSQL"""
        if descriptor.is_cross_source and descriptor.has_joins:
            return DataSourceType.POSTGRESQL.value
        ids = descriptor.data_source_ids
        data_source = data_sources.get(ids[0]) if ids else None
        if data_source is not None and _source_type(data_source) in (DataSourceType.MYSQL, DataSourceType.MARIADB):
            return data_source.source_type.value
        return DataSourceType.POSTGRESQL.value

    # ==================== 执行 ====================

    async def execute_for_source(
        self,
        data_source: DataSource,
        sql: str | None,
        *,
        mongo_query: MongoQuery | None = None,
    ) -> QueryResult:
        """
        在单个数据源对应的引擎上执行

        Args:
            data_source: 数据源
            sql: SQL（MongoDB 原生路径可为空）
            mongo_query: MongoDB 原生聚合查询

        Returns:
            查询结果

        Raises:
            ConnectionFailedException: 外部数据源不可达
            QueryExecutionException: SQL 执行失败
        """
        source_type = _source_type(data_source)
        if source_type is None:
            logger.warning(f"⚠️ 不支持的数据源类型: {data_source.data_type}")
            return QueryResult.failure(f"数据源类型 {data_source.data_type} not supported")

        if source_type.is_mongodb:
            return await self._execute_mongo(data_source, sql, mongo_query)

        executor = self.executor_for(data_source)
        if executor is None or not sql:
            return QueryResult.failure(f"数据源类型 {source_type.value} 的查询形态 not supported")

        logger.info(f"🚀 执行查询: {data_source.name} ({source_type.value})")
        rows = await executor.execute_query(sql)
        return QueryResult.of(rows)

    async def _execute_mongo(
        self,
        data_source: DataSource,
        sql: str | None,
        mongo_query: MongoQuery | None,
    ) -> QueryResult:
        if data_source.is_synced:
            synced_sql = sql
            if mongo_query is not None:
                synced_sql = self.translator.translate(
                    synced_table_name(mongo_query.collection, data_source.id), mongo_query.pipeline
                )
            if synced_sql:
                try:
                    logger.info(f"🚀 在同步副本上执行 MongoDB 查询: {data_source.name}")
                    return QueryResult.of(await self.internal_executor.execute_query(synced_sql))
                except QueryEngineException as e:
                    if mongo_query is None:
                        raise
                    logger.warning(f"⚠️ 同步副本查询失败，回退到原生聚合: {e.msg}")

        if mongo_query is None:
            return QueryResult.failure("MongoDB 数据源未同步，原生查询需要提供聚合管道，SQL 形态 not supported")

        logger.info(f"🍃 执行 MongoDB 原生聚合: {data_source.name}.{mongo_query.collection}")
        executor = self.mongo_factory(data_source)
        rows = await executor.execute_query(json.dumps(mongo_query.model_dump()))
        return QueryResult.of(rows)

    async def execute(
        self,
        descriptor: QueryDescriptor,
        sql: str,
        data_sources: dict[uuid.UUID, DataSource],
        *,
        mongo_query: MongoQuery | None = None,
    ) -> QueryResult:
        """
        按查询描述路由执行

        Args:
            descriptor: 查询描述
            sql: 待执行的 SQL（跨源 JOIN 时会先改写表引用）
            data_sources: 描述引用的数据源，按 ID 索引
            mongo_query: MongoDB 原生聚合查询

        Returns:
            查询结果

        Raises:
            ResolutionException: 跨源查询存在无法定位的表
        """
        ids = descriptor.data_source_ids
        if not ids:
            raise ResolutionException(msg="查询描述未关联任何数据源")

        missing = [str(ds_id) for ds_id in ids if ds_id not in data_sources]
        if missing:
            raise ResolutionException(msg=f"数据源不存在或无权访问: {', '.join(missing)}")

        if descriptor.is_cross_source and descriptor.has_joins:
            return await self._execute_cross_source(descriptor, sql, data_sources)

        if descriptor.is_cross_source:
            logger.warning("⚠️ 跨数据源查询缺少 JOIN 条件，在首列所属数据源上执行")

        data_source = data_sources[ids[0]]
        if mongo_query is None and self.uses_internal_store(data_source):
            sql = await self._resolve_internal_tables(descriptor, sql, data_sources)
        return await self.execute_for_source(data_source, sql, mongo_query=mongo_query)

    async def _resolve_internal_tables(
        self,
        descriptor: QueryDescriptor,
        sql: str,
        data_sources: dict[uuid.UUID, DataSource],
    ) -> str:
        """将内部数据库上执行的 SQL 中的逻辑表引用改写为物理表"""
        resolution = await self.locator.build_table_map(descriptor, data_sources)
        if not resolution.resolved:
            logger.warning("⚠️ 表映射为空，退化为使用原始表引用执行")
            return sql

        table_map = {ref: table for ref, table in resolution.resolved.items() if table.qualified_name != ref}
        return rewrite(sql, table_map) if table_map else sql

    async def _execute_cross_source(
        self,
        descriptor: QueryDescriptor,
        sql: str,
        data_sources: dict[uuid.UUID, DataSource],
    ) -> QueryResult:
        ids = descriptor.data_source_ids
        resolution = await self.locator.build_table_map(descriptor, data_sources)

        if not resolution.resolved:
            raise ResolutionException(msg="跨数据源查询的表均无法定位到同步副本，拒绝执行")

        if not resolution.is_complete:
            raise ResolutionException(
                msg=f"跨数据源查询存在无法定位的表: {', '.join(resolution.unresolved)}，拒绝执行"
            )

        rewritten = rewrite(sql, resolution.resolved)
        logger.info(f"🔀 跨数据源查询在内部数据库执行，涉及 {len(ids)} 个数据源")
        rows = await self.internal_executor.execute_query(rewritten)
        return QueryResult.of(rows)
