"""
数据模型相关的 Pydantic Schema
"""

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from app.schemas.query import MongoQuery, QueryDescriptor


class QueryPreviewRequest(BaseModel):
    """查询预览请求（不物化）"""

    query: QueryDescriptor = Field(..., description="查询描述")
    sql: str | None = Field(default=None, description="调用方构建的 SQL（跨源 JOIN 时保留其结构）")
    mongo_query: MongoQuery | None = Field(default=None, description="MongoDB 原生聚合查询")
    project_id: uuid.UUID | None = Field(default=None, description="所属项目ID")


class DataModelBuildRequest(BaseModel):
    """构建数据模型请求"""

    name: str = Field(..., min_length=1, max_length=200, description="模型名称")
    query: QueryDescriptor = Field(..., description="查询描述")
    sql: str | None = Field(default=None, description="调用方 SQL，仅用于提取 LIMIT/OFFSET")
    mongo_query: MongoQuery | None = Field(default=None, description="MongoDB 原生聚合查询")
    project_id: uuid.UUID | None = Field(default=None, description="所属项目ID")


class QueryResult(BaseModel):
    """查询结果"""

    success: bool = Field(default=True, description="是否成功")
    data: list[dict[str, Any]] = Field(default_factory=list, description="结果行")
    row_count: int = Field(default=0, description="行数")
    error: str | None = Field(default=None, description="错误信息")
    stage: str | None = Field(default=None, description="失败阶段: resolution/validation/connection/execution")

    @classmethod
    def of(cls, rows: list[dict[str, Any]]) -> "QueryResult":
        return cls(success=True, data=rows, row_count=len(rows))

    @classmethod
    def failure(cls, error: str, stage: str | None = None) -> "QueryResult":
        return cls(success=False, error=error, stage=stage)


class InsertBatchResult(BaseModel):
    """逐行插入结果"""

    succeeded: int = Field(default=0, description="成功行数")
    failed: int = Field(default=0, description="失败行数")
    errors: list[str] = Field(default_factory=list, description="失败样例")

    @property
    def total(self) -> int:
        return self.succeeded + self.failed


class MaterializedColumnInfo(BaseModel):
    """物化列信息"""

    name: str = Field(..., description="列名")
    sql_type: str = Field(..., description="列类型")


class DataModelBuildResult(BaseModel):
    """构建结果"""

    data_model_id: uuid.UUID = Field(..., description="数据模型ID")
    schema_name: str = Field(..., description="物理 schema")
    table_name: str = Field(..., description="物理表名")
    sql: str = Field(..., description="执行的 SQL")
    row_count: int = Field(..., description="成功插入的行数")
    failed_rows: int = Field(default=0, description="插入失败的行数")
    column_count: int = Field(..., description="列数")
    columns: list[MaterializedColumnInfo] = Field(default_factory=list, description="物化列")


class RefreshResult(BaseModel):
    """刷新结果"""

    data_model_id: uuid.UUID = Field(..., description="数据模型ID")
    success: bool = Field(..., description="是否成功")
    rows_before: int | None = Field(default=None, description="刷新前行数")
    rows_after: int | None = Field(default=None, description="刷新后行数")
    duration_ms: int = Field(default=0, description="耗时（毫秒）")
    error: str | None = Field(default=None, description="错误信息")


class DataModelResponse(BaseModel):
    """数据模型响应"""

    id: uuid.UUID = Field(..., description="数据模型ID")
    schema_name: str = Field(..., description="物理 schema")
    name: str = Field(..., description="物理表名")
    display_name: str | None = Field(default=None, description="模型名称")
    sql_query: str = Field(..., description="SQL")
    user_id: uuid.UUID = Field(..., description="所属用户ID")
    data_source_id: uuid.UUID | None = Field(default=None, description="数据源ID（跨源为空）")
    is_cross_source: bool = Field(default=False, description="是否跨数据源")
    row_count: int | None = Field(default=None, description="行数")
    column_count: int | None = Field(default=None, description="列数")
    refresh_status: str = Field(..., description="刷新状态")
    last_refreshed_at: datetime | None = Field(default=None, description="最后刷新时间")
    create_time: datetime | None = Field(default=None, description="创建时间")

    model_config = {"from_attributes": True}
