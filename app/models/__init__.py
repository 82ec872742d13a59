"""
SQLAlchemy数据模型模块

包含所有数据库表模型的定义
"""

from app.models.base import Base, BasePageQuery, BaseResponse, BaseTableMixin, PageResponse
from app.models.data_model import DataModel, DataModelSource, RefreshStatus
from app.models.data_source import SYNCED_SCHEMAS, DataSource, DataSourceType, SyncStatus
from app.models.table_metadata import TableMetadata, TableType, generate_physical_table_name

__all__ = [
    # Base
    "Base",
    "BaseTableMixin",
    "BaseResponse",
    "BasePageQuery",
    "PageResponse",
    # DataSource
    "DataSource",
    "DataSourceType",
    "SyncStatus",
    "SYNCED_SCHEMAS",
    # TableMetadata
    "TableMetadata",
    "TableType",
    "generate_physical_table_name",
    # DataModel
    "DataModel",
    "DataModelSource",
    "RefreshStatus",
]
