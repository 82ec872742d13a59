"""
通用 Repository 基类

封装单表的常用 CRUD 操作，默认过滤已软删除的记录
"""

import uuid
from typing import Any, Generic, TypeVar

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.base import Base

ModelType = TypeVar("ModelType", bound=Base)


class BaseRepository(Generic[ModelType]):
    """通用数据访问层"""

    def __init__(self, model: type[ModelType], db: AsyncSession):
        self.model = model
        self.db = db

    def _apply_filters(self, query, filters: dict[str, Any] | None):
        query = query.where(self.model.deleted == 0)  # type: ignore[attr-defined]
        for key, value in (filters or {}).items():
            if value is not None and hasattr(self.model, key):
                query = query.where(getattr(self.model, key) == value)
        return query

    async def get_by_id(self, id: uuid.UUID) -> ModelType | None:
        """根据 ID 获取记录"""
        query = select(self.model).where(self.model.id == id)  # type: ignore[attr-defined]
        query = self._apply_filters(query, None)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def get_all(
        self,
        *,
        skip: int = 0,
        limit: int = 100,
        filters: dict[str, Any] | None = None,
    ) -> list[ModelType]:
        """获取记录列表"""
        query = self._apply_filters(select(self.model), filters).offset(skip).limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def count(self, filters: dict[str, Any] | None = None) -> int:
        """统计记录数"""
        query = self._apply_filters(select(func.count()).select_from(self.model), filters)
        result = await self.db.execute(query)
        return result.scalar() or 0

    async def create(self, obj_in: dict[str, Any]) -> ModelType:
        """创建记录"""
        db_obj = self.model(**obj_in)
        self.db.add(db_obj)
        await self.db.flush()
        await self.db.refresh(db_obj)
        return db_obj

    async def update(self, db_obj: ModelType, obj_in: dict[str, Any]) -> ModelType:
        """更新记录"""
        for field, value in obj_in.items():
            if hasattr(db_obj, field):
                setattr(db_obj, field, value)
        await self.db.flush()
        await self.db.refresh(db_obj)
        return db_obj

    async def delete(self, id: uuid.UUID, *, soft_delete: bool = True) -> bool:
        """删除记录（默认软删除）"""
        db_obj = await self.get_by_id(id)
        if not db_obj:
            return False
        if soft_delete:
            db_obj.deleted = 1  # type: ignore[attr-defined]
        else:
            await self.db.delete(db_obj)
        await self.db.flush()
        return True
