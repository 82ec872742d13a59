"""
数据模型（物化结果）

一次查询描述执行后的持久化产物：新建的物理表 + 生成该表的 SQL 与原始查询描述。
跨数据源模型通过 DataModelSource 关联所有参与的数据源。
"""

import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base, BaseTableMixin


class RefreshStatus(str, Enum):
    """刷新状态"""

    IDLE = "idle"
    QUEUED = "queued"
    REFRESHING = "refreshing"
    COMPLETED = "completed"
    FAILED = "failed"


class DataModel(Base, BaseTableMixin):
    """数据模型表"""

    __tablename__ = "data_models"
    __table_args__ = (
        # 物化表名的唯一性在存储层保证，避免并发构建生成相同表名
        Index(
            "uq_data_models_schema_name",
            "schema_name",
            "name",
            unique=True,
            postgresql_where=text("deleted = 0"),
        ),
    )

    schema_name: Mapped[str] = mapped_column(String(100), nullable=False, default="public", comment="物理 schema")
    name: Mapped[str] = mapped_column(String(255), nullable=False, comment="物理表名")
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True, comment="用户填写的模型名称")

    sql_query: Mapped[str] = mapped_column(Text, nullable=False, comment="生成物化表的 SQL")
    query: Mapped[dict] = mapped_column(JSONB, nullable=False, comment="原始查询描述(JSON)")

    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True, comment="所属用户ID")
    data_source_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("data_sources.id"),
        nullable=True,
        index=True,
        comment="单数据源模型的数据源ID（跨源为空）",
    )
    is_cross_source: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False, comment="是否跨数据源")

    row_count: Mapped[int | None] = mapped_column(Integer, nullable=True, comment="物化行数")
    column_count: Mapped[int | None] = mapped_column(Integer, nullable=True, comment="物化列数")

    # 刷新状态
    refresh_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RefreshStatus.IDLE.value, comment="刷新状态"
    )
    last_refreshed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, comment="最后刷新时间"
    )
    refresh_error: Mapped[str | None] = mapped_column(Text, nullable=True, comment="最近一次刷新错误")

    # 关系
    sources: Mapped[list["DataModelSource"]] = relationship(
        "DataModelSource", back_populates="data_model", cascade="all, delete-orphan"
    )

    @property
    def qualified_name(self) -> str:
        return f'"{self.schema_name}"."{self.name}"'

    def __repr__(self) -> str:
        return f"<DataModel(id={self.id}, table={self.schema_name}.{self.name})>"


class DataModelSource(Base, BaseTableMixin):
    """
    数据模型与数据源关联表

    仅跨数据源模型写入，每个参与的数据源一行
    """

    __tablename__ = "data_model_sources"

    data_model_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("data_models.id"), nullable=False, index=True, comment="数据模型ID"
    )
    data_source_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("data_sources.id"), nullable=False, index=True, comment="数据源ID"
    )

    data_model: Mapped["DataModel"] = relationship("DataModel", back_populates="sources")

    def __repr__(self) -> str:
        return f"<DataModelSource(model_id={self.data_model_id}, ds_id={self.data_source_id})>"
