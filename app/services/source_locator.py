"""
数据源定位服务

根据数据源 ID 与查询描述中的表引用，确定数据当前所在的物理 schema 与物理表名：
外部数据库中的原表，或内部数据库中按提供方划分 schema 的同步副本。

定位按有序策略链执行，返回第一个成功的结果：
1. ExactMetadataMatch: 表元数据精确匹配（物理名或逻辑名）
2. InternalStorePassthrough: 文件 / API 类数据源原样使用
3. MongoSyncedTable: 已同步的 MongoDB 集合
4. UnsyncedExternalOriginal: 单数据源查询中没有任何元数据的外部数据库，直接查询原表
5. FuzzyMetadataMatch: 已迁移的外部数据库，按 LIKE 模式模糊匹配
6. SameSourceFallback: 单数据源查询退回原始引用
"""

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.data_source import DataSource, DataSourceType
from app.repositories.data_source import DataSourceRepository
from app.repositories.table_metadata import TableMetadataRepository
from app.schemas.query import QueryDescriptor
from app.services.mongo_translator import MONGO_SCHEMA, synced_table_name


@dataclass(frozen=True)
class ResolvedTable:
    """定位结果"""

    schema: str
    table_name: str
    data_source_id: uuid.UUID | None = None
    strategy: str = ""

    @property
    def qualified_name(self) -> str:
        return f"{self.schema}.{self.table_name}"


@dataclass(frozen=True)
class ResolutionRequest:
    """一次表定位请求"""

    data_source_id: uuid.UUID
    schema: str
    table_name: str
    data_source: DataSource | None = None
    same_source: bool = True

    @property
    def source_type(self) -> DataSourceType | None:
        if self.data_source is None:
            return None
        try:
            return self.data_source.source_type
        except ValueError:
            return None

    def original(self, strategy: str) -> ResolvedTable:
        return ResolvedTable(self.schema, self.table_name, self.data_source_id, strategy)


@dataclass
class TableResolution:
    """描述中所有表引用的定位结果"""

    resolved: dict[str, ResolvedTable] = field(default_factory=dict)
    unresolved: list[str] = field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        return not self.unresolved


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


# ==================== 定位策略 ====================


class ResolutionStrategy(ABC):
    """定位策略基类"""

    name: str = "strategy"

    @abstractmethod
    async def resolve(self, request: ResolutionRequest, metadata: TableMetadataRepository) -> ResolvedTable | None:
        """返回定位结果，无法处理时返回 None"""


class ExactMetadataMatch(ResolutionStrategy):
    """表元数据中物理表名或逻辑表名完全相同"""

    name = "exact_metadata"

    async def resolve(self, request: ResolutionRequest, metadata: TableMetadataRepository) -> ResolvedTable | None:
        record = await metadata.find_exact(request.data_source_id, request.table_name)
        if record is None:
            return None
        return ResolvedTable(record.schema_name, record.physical_table_name, request.data_source_id, self.name)


class InternalStorePassthrough(ResolutionStrategy):
    """文件 / API 类数据源的数据总在内部数据库中，原样使用"""

    name = "internal_passthrough"

    async def resolve(self, request: ResolutionRequest, metadata: TableMetadataRepository) -> ResolvedTable | None:
        source_type = request.source_type
        if source_type is not None and source_type.is_internal_synced:
            return request.original(self.name)
        return None


class MongoSyncedTable(ResolutionStrategy):
    """已同步的 MongoDB 集合位于 dra_mongodb.<集合名>_data_source_<ID>"""

    name = "mongo_synced"

    async def resolve(self, request: ResolutionRequest, metadata: TableMetadataRepository) -> ResolvedTable | None:
        data_source = request.data_source
        if request.source_type is not DataSourceType.MONGODB or not data_source.is_synced:
            return None
        return ResolvedTable(
            MONGO_SCHEMA,
            synced_table_name(request.table_name, request.data_source_id),
            request.data_source_id,
            self.name,
        )


class UnsyncedExternalOriginal(ResolutionStrategy):
    """
    外部关系型数据库没有任何元数据：未同步，直接查询原表

    仅适用于单数据源查询；跨数据源 JOIN 在内部数据库执行，原表名没有意义
    """

    name = "unsynced_original"

    async def resolve(self, request: ResolutionRequest, metadata: TableMetadataRepository) -> ResolvedTable | None:
        source_type = request.source_type
        if not request.same_source:
            return None
        if source_type is None or not source_type.is_external_relational:
            return None
        if await metadata.count_by_data_source(request.data_source_id) > 0:
            return None
        return request.original(self.name)


class FuzzyMetadataMatch(ResolutionStrategy):
    """
    已迁移的外部数据库：按模式模糊匹配物理表名

    依次尝试 `t`、`t_%`、`%_t_%`，存在多个候选时取最新写入的一条，
    结果可能不唯一，仅用于兼容未规范命名的历史表
    """

    name = "fuzzy_metadata"

    async def resolve(self, request: ResolutionRequest, metadata: TableMetadataRepository) -> ResolvedTable | None:
        source_type = request.source_type
        if source_type is None or not source_type.is_external_relational:
            return None
        escaped = _escape_like(request.table_name)
        for pattern in (escaped, f"{escaped}\\_%", f"%\\_{escaped}\\_%"):
            record = await metadata.find_like(request.data_source_id, pattern)
            if record is not None:
                logger.debug(f"模糊匹配 {request.table_name} -> {record.physical_table_name} (模式: {pattern})")
                return ResolvedTable(record.schema_name, record.physical_table_name, request.data_source_id, self.name)
        return None


class SameSourceFallback(ResolutionStrategy):
    """单数据源查询：无法定位时退回原始引用"""

    name = "same_source_fallback"

    async def resolve(self, request: ResolutionRequest, metadata: TableMetadataRepository) -> ResolvedTable | None:
        if request.same_source:
            return request.original(self.name)
        return None


DEFAULT_STRATEGIES: tuple[ResolutionStrategy, ...] = (
    ExactMetadataMatch(),
    InternalStorePassthrough(),
    MongoSyncedTable(),
    UnsyncedExternalOriginal(),
    FuzzyMetadataMatch(),
    SameSourceFallback(),
)


# ==================== 定位服务 ====================


class SourceLocator:
    """数据源定位服务（只读）"""

    def __init__(
        self,
        db: AsyncSession | None = None,
        *,
        metadata_repo: TableMetadataRepository | None = None,
        data_source_repo: DataSourceRepository | None = None,
        strategies: tuple[ResolutionStrategy, ...] = DEFAULT_STRATEGIES,
    ):
        self.db = db
        self.metadata_repo = metadata_repo or TableMetadataRepository(db)  # type: ignore[arg-type]
        self.data_source_repo = data_source_repo or DataSourceRepository(db)  # type: ignore[arg-type]
        self.strategies = strategies

    async def resolve(
        self,
        data_source_id: uuid.UUID,
        schema: str,
        table_name: str,
        *,
        same_source: bool = True,
        data_source: DataSource | None = None,
    ) -> ResolvedTable | None:
        """
        定位单个表引用

        Args:
            data_source_id: 数据源 ID
            schema: 原始 schema
            table_name: 原始表名或逻辑表名
            same_source: 是否为单数据源查询
            data_source: 已加载的数据源（为空时自动查询）

        Returns:
            定位结果，无法定位时返回 None
        """
        if data_source is None:
            data_source = await self.data_source_repo.get_by_id(data_source_id)

        request = ResolutionRequest(
            data_source_id=data_source_id,
            schema=schema,
            table_name=table_name,
            data_source=data_source,
            same_source=same_source,
        )
        for strategy in self.strategies:
            resolved = await strategy.resolve(request, self.metadata_repo)
            if resolved is not None:
                logger.debug(f"📍 {schema}.{table_name} -> {resolved.qualified_name} ({strategy.name})")
                return resolved

        logger.warning(f"⚠️ 无法定位表: {schema}.{table_name} (数据源: {data_source_id})")
        return None

    async def build_table_map(
        self,
        descriptor: QueryDescriptor,
        data_sources: dict[uuid.UUID, DataSource] | None = None,
    ) -> TableResolution:
        """
        定位描述中引用的所有表

        Args:
            descriptor: 查询描述
            data_sources: 已加载的数据源，按 ID 索引

        Returns:
            TableResolution，键为原始 schema.table
        """
        data_sources = data_sources or {}
        same_source = not descriptor.is_cross_source
        resolution = TableResolution()

        references: dict[str, tuple[uuid.UUID, str, str]] = {}
        for column in descriptor.columns:
            if column.data_source_id is None:
                continue
            references.setdefault(column.table_ref, (column.data_source_id, column.schema_name, column.table_name))

        for key, (data_source_id, schema, table_name) in references.items():
            resolved = await self.resolve(
                data_source_id,
                schema,
                table_name,
                same_source=same_source,
                data_source=data_sources.get(data_source_id),
            )
            if resolved is None:
                resolution.unresolved.append(key)
            else:
                resolution.resolved[key] = resolved

        logger.info(f"📍 表定位完成: 成功 {len(resolution.resolved)}，失败 {len(resolution.unresolved)}")
        return resolution
