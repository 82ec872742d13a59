"""
数据模型 Repository

封装数据模型及其数据源关联的数据库操作
"""

import uuid

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.data_model import DataModel, DataModelSource
from app.repositories.base import BaseRepository


class DataModelRepository(BaseRepository[DataModel]):
    """数据模型数据访问层"""

    def __init__(self, db: AsyncSession):
        super().__init__(DataModel, db)

    async def get_by_user(self, id: uuid.UUID, user_id: uuid.UUID) -> DataModel | None:
        """获取属于指定用户的数据模型"""
        query = select(DataModel).where(
            DataModel.id == id,
            DataModel.user_id == user_id,
            DataModel.deleted == 0,
        )
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def name_exists(self, schema_name: str, name: str) -> bool:
        """检查物化表名是否已被占用"""
        query = select(DataModel.id).where(
            DataModel.schema_name == schema_name,
            DataModel.name == name,
            DataModel.deleted == 0,
        )
        result = await self.db.execute(query)
        return result.first() is not None

    async def get_dependents(self, data_source_id: uuid.UUID) -> list[DataModel]:
        """
        获取依赖某数据源的数据模型

        包含直接引用（单数据源模型）与通过关联表引用（跨数据源模型）两种情况
        """
        linked = select(DataModelSource.data_model_id).where(
            DataModelSource.data_source_id == data_source_id,
            DataModelSource.deleted == 0,
        )
        query = select(DataModel).where(
            DataModel.deleted == 0,
            or_(DataModel.data_source_id == data_source_id, DataModel.id.in_(linked)),
        )
        result = await self.db.execute(query)
        return list(result.scalars().all())


class DataModelSourceRepository(BaseRepository[DataModelSource]):
    """数据模型-数据源关联数据访问层"""

    def __init__(self, db: AsyncSession):
        super().__init__(DataModelSource, db)

    async def link_sources(self, data_model_id: uuid.UUID, data_source_ids: list[uuid.UUID]) -> list[DataModelSource]:
        """为每个不同的数据源写入一条关联记录"""
        links = [
            DataModelSource(data_model_id=data_model_id, data_source_id=ds_id)
            for ds_id in dict.fromkeys(data_source_ids)
        ]
        self.db.add_all(links)
        await self.db.flush()
        return links

    async def get_source_ids(self, data_model_id: uuid.UUID) -> list[uuid.UUID]:
        query = select(DataModelSource.data_source_id).where(
            DataModelSource.data_model_id == data_model_id,
            DataModelSource.deleted == 0,
        )
        result = await self.db.execute(query)
        return list(result.scalars().all())
