"""
数据源 Repository

数据源由连接服务维护，这里只提供只读查询
"""

import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.data_source import DataSource
from app.repositories.base import BaseRepository


class DataSourceRepository(BaseRepository[DataSource]):
    """数据源数据访问层"""

    def __init__(self, db: AsyncSession):
        super().__init__(DataSource, db)

    async def get_by_ids(self, ids: list[uuid.UUID], user_id: uuid.UUID | None = None) -> list[DataSource]:
        """
        根据 ID 列表获取数据源

        Args:
            ids: ID 列表
            user_id: 用户 ID（为空时不限制归属）

        Returns:
            数据源列表
        """
        if not ids:
            return []
        query = select(DataSource).where(DataSource.id.in_(ids), DataSource.deleted == 0)
        if user_id is not None:
            query = query.where(DataSource.user_id == user_id)
        result = await self.db.execute(query)
        return list(result.scalars().all())
