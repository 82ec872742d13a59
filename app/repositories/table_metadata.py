"""
表元数据 Repository
"""

import uuid

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.table_metadata import TableMetadata
from app.repositories.base import BaseRepository


class TableMetadataRepository(BaseRepository[TableMetadata]):
    """表元数据数据访问层"""

    def __init__(self, db: AsyncSession):
        super().__init__(TableMetadata, db)

    async def find_exact(self, data_source_id: uuid.UUID, table_name: str) -> TableMetadata | None:
        """按物理表名或逻辑表名精确匹配，多条时取最新写入的记录"""
        query = (
            select(TableMetadata)
            .where(
                TableMetadata.data_source_id == data_source_id,
                TableMetadata.deleted == 0,
                or_(
                    TableMetadata.physical_table_name == table_name,
                    TableMetadata.logical_table_name == table_name,
                ),
            )
            .order_by(TableMetadata.create_time.desc())
            .limit(1)
        )
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def find_like(self, data_source_id: uuid.UUID, pattern: str) -> TableMetadata | None:
        """按物理表名 LIKE 模式匹配"""
        query = (
            select(TableMetadata)
            .where(
                TableMetadata.data_source_id == data_source_id,
                TableMetadata.deleted == 0,
                TableMetadata.physical_table_name.like(pattern, escape="\\"),
            )
            .order_by(TableMetadata.create_time.desc())
            .limit(1)
        )
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def count_by_data_source(self, data_source_id: uuid.UUID) -> int:
        """数据源下的元数据记录数"""
        query = (
            select(func.count())
            .select_from(TableMetadata)
            .where(TableMetadata.data_source_id == data_source_id, TableMetadata.deleted == 0)
        )
        result = await self.db.execute(query)
        return result.scalar() or 0

    async def soft_delete_physical(self, schema_name: str, physical_table_name: str) -> int:
        """软删除某物理表的全部元数据记录"""
        query = (
            update(TableMetadata)
            .where(
                TableMetadata.schema_name == schema_name,
                TableMetadata.physical_table_name == physical_table_name,
                TableMetadata.deleted == 0,
            )
            .values(deleted=1)
        )
        result = await self.db.execute(query)
        return result.rowcount or 0
