"""
数据源模型

数据源是外部数据的来源：外部关系型数据库、文件、营销/分析类 API 或 MongoDB。
非 SQL 可直接查询的来源需要先同步到内部数据库的专属 schema 中才能被查询。
"""

import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime, String
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, BaseTableMixin


class DataSourceType(str, Enum):
    """数据源提供方类型"""

    POSTGRESQL = "postgresql"
    MYSQL = "mysql"
    MARIADB = "mariadb"
    MONGODB = "mongodb"
    EXCEL = "excel"
    CSV = "csv"
    PDF = "pdf"
    GOOGLE_ANALYTICS = "google_analytics"
    GOOGLE_ADS = "google_ads"
    GOOGLE_AD_MANAGER = "google_ad_manager"
    META_ADS = "meta_ads"
    HUBSPOT = "hubspot"
    KLAVIYO = "klaviyo"

    @property
    def is_external_relational(self) -> bool:
        """外部关系型数据库，可直接在原库执行 SQL"""
        return self in (DataSourceType.POSTGRESQL, DataSourceType.MYSQL, DataSourceType.MARIADB)

    @property
    def is_internal_synced(self) -> bool:
        """文件 / API 类数据源，数据总是落在内部数据库"""
        return self in _INTERNAL_SYNCED_TYPES

    @property
    def is_mongodb(self) -> bool:
        return self is DataSourceType.MONGODB

    @property
    def provider_schema(self) -> str | None:
        """内部数据库中存放该类数据的 schema"""
        return _PROVIDER_SCHEMAS.get(self)


_INTERNAL_SYNCED_TYPES = frozenset(
    {
        DataSourceType.EXCEL,
        DataSourceType.CSV,
        DataSourceType.PDF,
        DataSourceType.GOOGLE_ANALYTICS,
        DataSourceType.GOOGLE_ADS,
        DataSourceType.GOOGLE_AD_MANAGER,
        DataSourceType.META_ADS,
        DataSourceType.HUBSPOT,
        DataSourceType.KLAVIYO,
    }
)

_PROVIDER_SCHEMAS = {
    DataSourceType.EXCEL: "dra_excel",
    DataSourceType.CSV: "dra_excel",
    DataSourceType.PDF: "dra_pdf",
    DataSourceType.GOOGLE_ANALYTICS: "dra_google_analytics",
    DataSourceType.GOOGLE_ADS: "dra_google_ads",
    DataSourceType.GOOGLE_AD_MANAGER: "dra_google_ad_manager",
    DataSourceType.META_ADS: "dra_meta_ads",
    DataSourceType.HUBSPOT: "dra_hubspot",
    DataSourceType.KLAVIYO: "dra_klaviyo",
    DataSourceType.MONGODB: "dra_mongodb",
}

# 物理表名由平台分配的 schema（列名从表名派生）
SYNCED_SCHEMAS = frozenset(_PROVIDER_SCHEMAS.values())


class SyncStatus(str, Enum):
    """同步状态"""

    PENDING = "pending"
    SYNCING = "syncing"
    COMPLETED = "completed"
    FAILED = "failed"


class DataSource(Base, BaseTableMixin):
    """
    数据源表

    连接信息由连接 / OAuth 服务维护，本模块只读取
    """

    __tablename__ = "data_sources"

    # 基本信息
    name: Mapped[str] = mapped_column(String(100), nullable=False, comment="数据源名称")
    data_type: Mapped[str] = mapped_column(String(30), nullable=False, comment="数据源类型")

    # 所属用户 / 项目
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True, comment="所属用户ID")
    project_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), nullable=True, index=True, comment="所属项目ID"
    )

    # 连接信息（密码加密存储）
    # 格式: {host, port, database, schema, username, password, extra_params}
    connection_details: Mapped[dict | None] = mapped_column(JSONB, nullable=True, comment="连接信息(JSON)")

    # 同步状态（API / MongoDB 数据源同步到内部数据库后设置）
    sync_status: Mapped[str | None] = mapped_column(
        String(20), nullable=True, comment="同步状态: pending/syncing/completed/failed"
    )
    last_sync_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, comment="最后同步时间"
    )

    @property
    def source_type(self) -> DataSourceType:
        return DataSourceType(self.data_type)

    @property
    def is_synced(self) -> bool:
        """是否已完成同步"""
        return self.sync_status == SyncStatus.COMPLETED.value and self.last_sync_at is not None

    def __repr__(self) -> str:
        return f"<DataSource(id={self.id}, name={self.name}, type={self.data_type})>"
