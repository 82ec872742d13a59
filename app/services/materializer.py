"""
物化服务

将查询结果写入新的物理表，并持久化数据模型记录：
1. 生成不冲突的物理表名
2. 按物化列创建表（描述列、计算列、聚合函数列、聚合表达式列）
3. 逐行插入，单行失败不影响整体，返回成功 / 失败计数
4. 写入数据模型、跨源关联与表元数据记录
"""

import re
import uuid
from typing import Any

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import MaterializationException, QueryEngineException
from app.models.data_model import DataModel, RefreshStatus
from app.models.table_metadata import TableMetadata, TableType
from app.repositories.data_model import DataModelRepository, DataModelSourceRepository
from app.repositories.table_metadata import TableMetadataRepository
from app.schemas.data_model import InsertBatchResult
from app.schemas.query import QueryDescriptor
from app.services.column_mapper import MAX_IDENTIFIER_LENGTH, MaterializedColumn
from app.services.query_executor import QueryExecutor
from app.services.value_formatter import ValueFormatError, coerce_value

_UNIQUE_SUFFIX_LENGTH = len("_dra_") + 32


def quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def generate_table_name(name: str) -> str:
    """
    生成物理表名

    小写、空白替换为下划线，再追加 _dra_ 与 uuid4，唯一性最终由数据模型表的唯一索引保证
    """
    base = re.sub(r"\s+", "_", name.strip().lower())
    base = re.sub(r"[^a-z0-9_]", "", base) or "data_model"
    base = base[: MAX_IDENTIFIER_LENGTH - _UNIQUE_SUFFIX_LENGTH]
    return f"{base}_dra_{uuid.uuid4().hex}"


class Materializer:
    """物化表创建与写入"""

    def __init__(
        self,
        db: AsyncSession | None,
        executor: QueryExecutor,
        *,
        schema: str | None = None,
        data_model_repo: DataModelRepository | None = None,
        data_model_source_repo: DataModelSourceRepository | None = None,
        metadata_repo: TableMetadataRepository | None = None,
    ):
        self.executor = executor
        self.schema = schema or settings.DATA_MODEL_SCHEMA
        self.data_model_repo = data_model_repo or DataModelRepository(db)  # type: ignore[arg-type]
        self.data_model_source_repo = data_model_source_repo or DataModelSourceRepository(db)  # type: ignore[arg-type]
        self.metadata_repo = metadata_repo or TableMetadataRepository(db)  # type: ignore[arg-type]

    def qualified(self, table_name: str) -> str:
        return f"{quote_identifier(self.schema)}.{quote_identifier(table_name)}"

    async def generate_table_name(self, name: str) -> str:
        """生成当前 schema 下未被占用的物理表名"""
        while True:
            candidate = generate_table_name(name)
            if not await self.data_model_repo.name_exists(self.schema, candidate):
                return candidate
            logger.warning(f"⚠️ 物理表名冲突，重新生成: {candidate}")

    async def create_table(self, table_name: str, columns: list[MaterializedColumn]) -> None:
        """
        创建物化表

        Raises:
            MaterializationException: 建表失败
        """
        if not columns:
            raise MaterializationException(msg="没有可物化的列")

        definitions = ", ".join(f"{quote_identifier(column.name)} {column.sql_type}" for column in columns)
        ddl = f"CREATE TABLE {self.qualified(table_name)} ({definitions})"
        try:
            await self.executor.execute_query(ddl)
        except QueryEngineException as e:
            logger.error(f"❌ 物化表创建失败: {self.schema}.{table_name}\nDDL: {ddl}")
            raise MaterializationException(msg=f"物化表创建失败: {e.msg}") from e
        logger.info(f"✅ 物化表已创建: {self.schema}.{table_name} ({len(columns)} 列)")

    async def insert_rows(
        self,
        table_name: str,
        columns: list[MaterializedColumn],
        rows: list[dict[str, Any]],
    ) -> InsertBatchResult:
        """
        逐行插入

        每行在独立的 SAVEPOINT 中执行，单行失败只回滚该行；
        值按列类型格式化并以参数绑定。

        Args:
            table_name: 物理表名
            columns: 物化列（取值键与列名一致）
            rows: 结果行

        Returns:
            成功 / 失败计数与失败样例
        """
        result = InsertBatchResult()
        if not rows:
            return result

        column_list = ", ".join(quote_identifier(column.name) for column in columns)
        placeholders = ", ".join(f":p{index}" for index in range(len(columns)))
        statement = f"INSERT INTO {self.qualified(table_name)} ({column_list}) VALUES ({placeholders})"
        sample_size = settings.INSERT_ERROR_SAMPLE_SIZE

        for row_number, row in enumerate(rows, start=1):
            try:
                params = {
                    f"p{index}": coerce_value(row.get(column.row_key), column.sql_type)
                    for index, column in enumerate(columns)
                }

                async def insert(executor: QueryExecutor, params: dict[str, Any] = params) -> None:
                    await executor.execute_query(statement, params)

                await self.executor.with_transaction(insert)
                result.succeeded += 1
            except (ValueFormatError, QueryEngineException) as e:
                result.failed += 1
                message = f"第 {row_number} 行: {getattr(e, 'msg', None) or str(e)}"
                if len(result.errors) < sample_size:
                    result.errors.append(message)
                    logger.warning(f"⚠️ 行插入失败 {message}")

        if result.failed:
            logger.warning(
                f"⚠️ {self.schema}.{table_name} 插入完成: 成功 {result.succeeded}，失败 {result.failed}"
            )
        else:
            logger.info(f"✅ {self.schema}.{table_name} 插入完成: {result.succeeded} 行")
        return result

    async def persist(
        self,
        *,
        table_name: str,
        display_name: str,
        sql: str,
        descriptor: QueryDescriptor,
        user_id: uuid.UUID,
        row_count: int,
        column_count: int,
    ) -> DataModel:
        """
        写入数据模型记录

        跨源模型的 data_source_id 为空，并为每个参与的数据源写入一条关联记录；
        同时为新表写入表元数据，使其可以被后续查询定位

        Returns:
            数据模型
        """
        ids = descriptor.data_source_ids
        is_cross_source = descriptor.is_cross_source
        data_model = await self.data_model_repo.create(
            {
                "schema_name": self.schema,
                "name": table_name,
                "display_name": display_name,
                "sql_query": sql,
                "query": descriptor.to_storage(),
                "user_id": user_id,
                "data_source_id": None if is_cross_source or not ids else ids[0],
                "is_cross_source": is_cross_source,
                "row_count": row_count,
                "column_count": column_count,
                "refresh_status": RefreshStatus.IDLE.value,
                "create_by": str(user_id),
            }
        )

        if is_cross_source:
            await self.data_model_source_repo.link_sources(data_model.id, ids)

        metadata: TableMetadata = await self.metadata_repo.create(
            {
                "data_source_id": None if is_cross_source or not ids else ids[0],
                "user_id": user_id,
                "schema_name": self.schema,
                "physical_table_name": table_name,
                "logical_table_name": display_name,
                "table_type": TableType.DATA_MODEL.value,
                "create_by": str(user_id),
            }
        )
        logger.info(f"💾 数据模型已保存: {data_model.id} -> {metadata.schema_name}.{metadata.physical_table_name}")
        return data_model
