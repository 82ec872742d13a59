"""
数据模型服务

查询引擎的组合入口：校验 → 定位 → 重建 SQL →（跨源改写）→ 执行 → 列映射 → 建表 → 插入 → 持久化。
各环节失败抛出携带失败阶段的异常，单行插入失败只计数不中断。
"""

import time
import uuid
from datetime import datetime, timezone

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import (
    MaterializationException,
    NotFoundException,
    QueryEngineException,
    QueryExecutionException,
)
from app.models.data_model import DataModel, RefreshStatus
from app.models.data_source import DataSource, DataSourceType
from app.repositories.data_model import DataModelRepository
from app.repositories.data_source import DataSourceRepository
from app.repositories.table_metadata import TableMetadataRepository
from app.schemas.data_model import (
    DataModelBuildRequest,
    DataModelBuildResult,
    InsertBatchResult,
    MaterializedColumnInfo,
    QueryPreviewRequest,
    QueryResult,
    RefreshResult,
)
from app.schemas.query import MongoQuery, QueryColumn, QueryDescriptor
from app.services.column_mapper import ColumnMapper, MaterializedColumn
from app.services.execution_router import ExecutionRouter
from app.services.materializer import Materializer, quote_identifier
from app.services.query_executor import InternalStoreExecutor, QueryExecutor
from app.services.source_locator import SourceLocator
from app.services.sql_reconstructor import SQLReconstructor


class DataModelService:
    """数据模型服务类"""

    def __init__(
        self,
        db: AsyncSession | None,
        *,
        data_source_repo: DataSourceRepository | None = None,
        data_model_repo: DataModelRepository | None = None,
        metadata_repo: TableMetadataRepository | None = None,
        internal_executor: QueryExecutor | None = None,
        locator: SourceLocator | None = None,
        router: ExecutionRouter | None = None,
        column_mapper: ColumnMapper | None = None,
        materializer: Materializer | None = None,
    ):
        self.db = db
        self.data_source_repo = data_source_repo or DataSourceRepository(db)  # type: ignore[arg-type]
        self.data_model_repo = data_model_repo or DataModelRepository(db)  # type: ignore[arg-type]
        self.metadata_repo = metadata_repo or TableMetadataRepository(db)  # type: ignore[arg-type]
        self.internal_executor = internal_executor or InternalStoreExecutor(db)  # type: ignore[arg-type]
        self.locator = locator or SourceLocator(
            db, metadata_repo=self.metadata_repo, data_source_repo=self.data_source_repo
        )
        self.router = router or ExecutionRouter(db, locator=self.locator, internal_executor=self.internal_executor)
        self.column_mapper = column_mapper or ColumnMapper()
        self.reconstructor = SQLReconstructor(self.column_mapper)
        self.materializer = materializer or Materializer(
            db,
            self.internal_executor,
            data_model_repo=self.data_model_repo,
            metadata_repo=self.metadata_repo,
        )

    # ==================== 公共步骤 ====================

    async def _load_data_sources(self, descriptor: QueryDescriptor, user_id: uuid.UUID) -> dict[uuid.UUID, DataSource]:
        data_sources = await self.data_source_repo.get_by_ids(descriptor.data_source_ids, user_id)
        return {data_source.id: data_source for data_source in data_sources}

    @staticmethod
    def _provider_for(data_sources: dict[uuid.UUID, DataSource]):
        def provider_for(column: QueryColumn) -> DataSourceType | None:
            data_source = data_sources.get(column.data_source_id) if column.data_source_id else None
            if data_source is None:
                return None
            try:
                return data_source.source_type
            except ValueError:
                return None

        return provider_for

    async def _plan(
        self,
        descriptor: QueryDescriptor,
        user_id: uuid.UUID,
        caller_sql: str | None,
    ) -> tuple[dict[uuid.UUID, DataSource], list[MaterializedColumn], str]:
        """校验并生成物化列与 SQL"""
        self.reconstructor.validate_group_by(descriptor)
        data_sources = await self._load_data_sources(descriptor, user_id)
        columns = self.column_mapper.map_descriptor(descriptor, self._provider_for(data_sources))
        dialect = self.router.target_dialect(descriptor, data_sources)
        sql = self.reconstructor.reconstruct(descriptor, caller_sql=caller_sql, dialect=dialect, columns=columns)
        return data_sources, columns, sql

    async def _execute(
        self,
        descriptor: QueryDescriptor,
        sql: str,
        data_sources: dict[uuid.UUID, DataSource],
        mongo_query: MongoQuery | None = None,
    ) -> list[dict]:
        result = await self.router.execute(descriptor, sql, data_sources, mongo_query=mongo_query)
        if not result.success:
            raise QueryExecutionException(msg=result.error or "查询执行失败")
        return result.data

    # ==================== 预览 ====================

    async def preview_query(self, user_id: uuid.UUID, request: QueryPreviewRequest) -> QueryResult:
        """
        预览查询结果（不物化）

        跨源 JOIN 且提供了调用方 SQL 时，执行改写后的调用方 SQL 以保留其 JOIN 结构；
        其余情况执行重建的 SQL

        Returns:
            查询结果，失败时 success=False 并携带失败阶段
        """
        descriptor = request.query
        try:
            data_sources, _, sql = await self._plan(descriptor, user_id, request.sql)
            if request.sql and descriptor.is_cross_source and descriptor.has_joins:
                sql = request.sql
            return await self.router.execute(descriptor, sql, data_sources, mongo_query=request.mongo_query)
        except QueryEngineException as e:
            logger.warning(f"⚠️ 查询预览失败 [{e.stage.value}]: {e.msg}")
            return QueryResult.failure(e.msg, stage=e.stage.value)

    # ==================== 构建 ====================

    async def build_data_model(self, user_id: uuid.UUID, request: DataModelBuildRequest) -> DataModelBuildResult:
        """
        构建数据模型

        Args:
            user_id: 用户 ID
            request: 构建请求

        Returns:
            构建结果

        Raises:
            QueryValidationException: GROUP BY 结构不一致
            ResolutionException: 跨源表无法定位
            ConnectionFailedException: 外部数据源不可达
            QueryExecutionException: 查询执行失败
            MaterializationException: 建表失败
        """
        descriptor = request.query
        logger.info(f"🏗️ 开始构建数据模型: {request.name} (用户: {user_id})")

        data_sources, columns, sql = await self._plan(descriptor, user_id, request.sql)
        rows = await self._execute(descriptor, sql, data_sources, request.mongo_query)
        logger.info(f"📥 查询返回 {len(rows)} 行")

        table_name = await self.materializer.generate_table_name(request.name)
        await self.materializer.create_table(table_name, columns)
        batch = await self.materializer.insert_rows(table_name, columns, rows)
        if rows and batch.succeeded == 0:
            logger.warning(f"⚠️ 数据模型 {request.name} 全部 {batch.failed} 行插入失败，仍按完成处理")

        data_model = await self.materializer.persist(
            table_name=table_name,
            display_name=request.name,
            sql=sql,
            descriptor=descriptor,
            user_id=user_id,
            row_count=batch.succeeded,
            column_count=len(columns),
        )
        logger.info(f"✅ 数据模型构建完成: {data_model.id} ({batch.succeeded} 行, {len(columns)} 列)")

        return DataModelBuildResult(
            data_model_id=data_model.id,
            schema_name=data_model.schema_name,
            table_name=table_name,
            sql=sql,
            row_count=batch.succeeded,
            failed_rows=batch.failed,
            column_count=len(columns),
            columns=[MaterializedColumnInfo(name=column.name, sql_type=column.sql_type) for column in columns],
        )

    # ==================== 刷新 ====================

    async def _get_model(self, model_id: uuid.UUID, user_id: uuid.UUID) -> DataModel:
        data_model = await self.data_model_repo.get_by_user(model_id, user_id)
        if not data_model:
            raise NotFoundException(msg="数据模型不存在")
        return data_model

    async def refresh_data_model(self, model_id: uuid.UUID, user_id: uuid.UUID) -> RefreshResult:
        """
        刷新数据模型

        使用保存的查询描述重新执行，在同一事务中写入临时表、校验行数、删除旧表并重命名；
        任一步骤失败则回滚，旧表保持不变

        Returns:
            刷新结果（失败不抛异常，状态写入数据模型记录）
        """
        data_model = await self._get_model(model_id, user_id)
        descriptor = QueryDescriptor.model_validate(data_model.query)
        rows_before = data_model.row_count
        temp_name = f"{data_model.name[:40]}_tmp_{uuid.uuid4().hex[:12]}"
        started = time.perf_counter()

        await self.data_model_repo.update(data_model, {"refresh_status": RefreshStatus.REFRESHING.value})
        logger.info(f"🔄 开始刷新数据模型: {data_model.id} ({data_model.schema_name}.{data_model.name})")

        async def swap(executor: QueryExecutor) -> tuple[str, list[MaterializedColumn], InsertBatchResult]:
            data_sources, columns, sql = await self._plan(descriptor, user_id, data_model.sql_query)
            rows = await self._execute(descriptor, sql, data_sources)
            await self.materializer.create_table(temp_name, columns)
            batch = await self.materializer.insert_rows(temp_name, columns, rows)
            if batch.succeeded == 0:
                raise MaterializationException(msg="刷新结果为空，保留原表")
            await executor.execute_query(f"DROP TABLE IF EXISTS {data_model.qualified_name} CASCADE")
            await executor.execute_query(
                f"ALTER TABLE {self.materializer.qualified(temp_name)} RENAME TO {quote_identifier(data_model.name)}"
            )
            return sql, columns, batch

        try:
            sql, columns, batch = await self.internal_executor.with_transaction(swap)
        except QueryEngineException as e:
            duration_ms = int((time.perf_counter() - started) * 1000)
            logger.error(f"❌ 数据模型刷新失败 [{e.stage.value}]: {e.msg}")
            await self._drop_quietly(temp_name)
            await self.data_model_repo.update(
                data_model,
                {"refresh_status": RefreshStatus.FAILED.value, "refresh_error": e.msg},
            )
            return RefreshResult(
                data_model_id=data_model.id,
                success=False,
                rows_before=rows_before,
                rows_after=rows_before,
                duration_ms=duration_ms,
                error=e.msg,
            )

        duration_ms = int((time.perf_counter() - started) * 1000)
        await self.data_model_repo.update(
            data_model,
            {
                "sql_query": sql,
                "row_count": batch.succeeded,
                "column_count": len(columns),
                "refresh_status": RefreshStatus.COMPLETED.value,
                "refresh_error": None,
                "last_refreshed_at": datetime.now(timezone.utc),
                "update_by": str(user_id),
            },
        )
        logger.info(f"✅ 数据模型刷新完成: {data_model.id} ({rows_before} -> {batch.succeeded} 行, {duration_ms}ms)")
        return RefreshResult(
            data_model_id=data_model.id,
            success=True,
            rows_before=rows_before,
            rows_after=batch.succeeded,
            duration_ms=duration_ms,
        )

    async def _drop_quietly(self, table_name: str) -> None:
        try:
            await self.internal_executor.execute_query(
                f"DROP TABLE IF EXISTS {self.materializer.qualified(table_name)}"
            )
        except QueryEngineException as e:
            logger.warning(f"⚠️ 临时表清理失败: {table_name} - {e.msg}")

    # ==================== 删除 / 依赖 ====================

    async def delete_data_model(self, model_id: uuid.UUID, user_id: uuid.UUID) -> None:
        """删除数据模型：在同一事务中删除物理表并软删除记录"""
        data_model = await self._get_model(model_id, user_id)

        async def drop(executor: QueryExecutor) -> None:
            await executor.execute_query(f"DROP TABLE IF EXISTS {data_model.qualified_name}")
            await self.metadata_repo.soft_delete_physical(data_model.schema_name, data_model.name)
            await self.data_model_repo.delete(data_model.id)

        await self.internal_executor.with_transaction(drop)
        logger.info(f"🗑️ 数据模型已删除: {data_model.id} ({data_model.schema_name}.{data_model.name})")

    async def get_dependent_models(self, data_source_id: uuid.UUID, user_id: uuid.UUID | None = None) -> list[DataModel]:
        """获取依赖某数据源的数据模型（直接引用或跨源关联）"""
        models = await self.data_model_repo.get_dependents(data_source_id)
        if user_id is not None:
            models = [model for model in models if model.user_id == user_id]
        return models
