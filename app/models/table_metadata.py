"""
表元数据模型

记录逻辑表名（用户可读，如 "Traffic Overview"）到物理表名的映射。
物理表名由数据源 ID 与逻辑名派生，稳定且不易冲突。
"""

import hashlib
import uuid
from enum import Enum

from sqlalchemy import Index, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, BaseTableMixin


class TableType(str, Enum):
    """物理表来源"""

    SYNCED = "synced"  # API / MongoDB 同步
    FILE = "file"  # Excel / CSV / PDF 导入
    DATA_MODEL = "data_model"  # 数据模型物化


class TableMetadata(Base, BaseTableMixin):
    """
    表元数据

    只追加不原地更新：表重建时写入新的记录
    """

    __tablename__ = "table_metadata"
    __table_args__ = (
        Index("ix_table_metadata_ds_physical", "data_source_id", "physical_table_name"),
        Index("ix_table_metadata_ds_logical", "data_source_id", "logical_table_name"),
    )

    data_source_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), nullable=True, index=True, comment="数据源ID（数据模型表为空）"
    )
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, comment="所属用户ID")

    schema_name: Mapped[str] = mapped_column(String(100), nullable=False, comment="物理 schema")
    physical_table_name: Mapped[str] = mapped_column(String(255), nullable=False, comment="物理表名")
    logical_table_name: Mapped[str] = mapped_column(String(255), nullable=False, comment="逻辑表名")
    original_sheet_name: Mapped[str | None] = mapped_column(String(255), nullable=True, comment="原始工作表名")
    file_id: Mapped[str | None] = mapped_column(String(255), nullable=True, comment="来源文件ID")
    table_type: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TableType.SYNCED.value, comment="表来源: synced/file/data_model"
    )

    def __repr__(self) -> str:
        return f"<TableMetadata({self.schema_name}.{self.physical_table_name} <- {self.logical_table_name})>"


def generate_physical_table_name(
    data_source_id: uuid.UUID,
    logical_name: str,
    file_id: str | None = None,
) -> str:
    """
    生成物理表名

    格式为 ds{数据源ID前8位}_{哈希前8位}，哈希输入包含文件 ID（如有）与逻辑表名

    Args:
        data_source_id: 数据源 ID
        logical_name: 逻辑表名
        file_id: 来源文件 ID（同一数据源多文件时用于区分）

    Returns:
        物理表名
    """
    key = f"{data_source_id}_{file_id}_{logical_name}" if file_id else f"{data_source_id}_{logical_name}"
    digest = hashlib.md5(key.encode("utf-8")).hexdigest()[:8]  # noqa: S324
    return f"ds{data_source_id.hex[:8]}_{digest}"
