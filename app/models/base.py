"""
模型基类

提供 ORM 声明基类、通用字段 Mixin 以及统一响应格式
"""

import uuid
from datetime import datetime
from typing import Generic, TypeVar

from pydantic import BaseModel, Field
from sqlalchemy import DateTime, Integer, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

T = TypeVar("T")


class Base(DeclarativeBase):
    """ORM 声明基类"""

    pass


class BaseTableMixin:
    """通用字段：主键、时间戳、软删除、操作人"""

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4, comment="主键ID"
    )
    create_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False, comment="创建时间"
    )
    update_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False, comment="更新时间"
    )
    deleted: Mapped[int] = mapped_column(Integer, default=0, nullable=False, comment="逻辑删除: 0-未删除 1-已删除")
    create_by: Mapped[str | None] = mapped_column(nullable=True, comment="创建人")
    update_by: Mapped[str | None] = mapped_column(nullable=True, comment="更新人")


class BaseResponse(BaseModel, Generic[T]):
    """统一响应格式"""

    success: bool = Field(default=True, description="是否成功")
    code: int = Field(default=200, description="状态码")
    msg: str = Field(default="操作成功", description="提示信息")
    data: T | None = Field(default=None, description="响应数据")


class PageResponse(BaseModel, Generic[T]):
    """分页响应"""

    page_num: int = Field(..., description="页码")
    page_size: int = Field(..., description="每页数量")
    total: int = Field(..., description="总数")
    items: list[T] = Field(default_factory=list, description="数据列表")


class BasePageQuery(BaseModel):
    """分页查询参数"""

    page_num: int = Field(default=1, ge=1, description="页码")
    page_size: int = Field(default=10, ge=1, le=100, description="每页数量")
