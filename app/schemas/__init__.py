"""
Pydantic Schema 模块

用于 API 请求和响应的数据验证和序列化
"""

from app.schemas.data_model import (
    DataModelBuildRequest,
    DataModelBuildResult,
    DataModelResponse,
    InsertBatchResult,
    MaterializedColumnInfo,
    QueryPreviewRequest,
    QueryResult,
    RefreshResult,
)
from app.schemas.query import (
    AggregateExpressionSpec,
    AggregateFunctionSpec,
    CalculatedColumn,
    FilterCondition,
    GroupBySpec,
    HiddenReferencedColumn,
    JoinCondition,
    MongoQuery,
    OrderBySpec,
    QueryColumn,
    QueryDescriptor,
    QueryOptions,
    TransformFunction,
)

__all__ = [
    # Query descriptor
    "QueryColumn",
    "HiddenReferencedColumn",
    "CalculatedColumn",
    "AggregateFunctionSpec",
    "AggregateExpressionSpec",
    "FilterCondition",
    "OrderBySpec",
    "GroupBySpec",
    "QueryOptions",
    "JoinCondition",
    "QueryDescriptor",
    "TransformFunction",
    "MongoQuery",
    # DataModel
    "QueryPreviewRequest",
    "DataModelBuildRequest",
    "QueryResult",
    "InsertBatchResult",
    "MaterializedColumnInfo",
    "DataModelBuildResult",
    "RefreshResult",
    "DataModelResponse",
]
