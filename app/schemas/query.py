"""
查询描述（Query Descriptor）相关的 Pydantic Schema

查询描述是与具体 SQL 方言无关的结构化查询：列、JOIN、聚合、计算列、
GROUP BY 与转换函数。数据模型构建时原样持久化，供后续刷新使用。
"""

import uuid
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

AGGREGATE_FUNCTIONS = ["SUM", "AVG", "COUNT", "MIN", "MAX"]
COMPARISON_OPERATORS = ["=", ">", "<", ">=", "<=", "!=", "IN", "NOT IN"]
LOGICAL_CONNECTORS = ["AND", "OR"]
ORDER_DIRECTIONS = ["ASC", "DESC"]


def _pick(options: list[str], value: int | str | None, default: str) -> str:
    """按下标或名称从候选列表中取值，无法识别时返回默认值"""
    if value is None or value == "":
        return default
    if isinstance(value, int):
        return options[value] if 0 <= value < len(options) else default
    normalized = str(value).strip().upper()
    if normalized.isdigit():
        return _pick(options, int(normalized), default)
    return normalized if normalized in options else default


class TransformFunction(str, Enum):
    """列转换函数"""

    DATE = "DATE"
    YEAR = "YEAR"
    MONTH = "MONTH"
    DAY = "DAY"
    UPPER = "UPPER"
    LOWER = "LOWER"
    TRIM = "TRIM"
    ROUND = "ROUND"


class _DescriptorModel(BaseModel):
    """描述结构基类：保留未知字段以便原样持久化"""

    model_config = ConfigDict(extra="allow", populate_by_name=True)


class QueryColumn(_DescriptorModel):
    """查询列"""

    schema_name: str = Field(..., alias="schema", description="源 schema")
    table_name: str = Field(..., description="源表名（物理或逻辑）")
    table_alias: str | None = Field(default=None, description="表别名")
    column_name: str = Field(..., description="列名")
    data_type: str = Field(default="text", description="源列类型")
    character_maximum_length: int | None = Field(default=None, description="长度 / 精度")
    alias_name: str | None = Field(default=None, description="列别名")
    is_selected_column: bool = Field(default=True, description="是否显示")
    data_source_id: uuid.UUID | None = Field(default=None, description="所属数据源ID")
    transform_function: TransformFunction | None = Field(default=None, description="转换函数")

    @field_validator("transform_function", mode="before")
    @classmethod
    def _normalize_transform(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.strip().upper()
            return v or None
        return v

    @property
    def full_path(self) -> str:
        """schema.table.column"""
        return f"{self.schema_name}.{self.table_name}.{self.column_name}"

    @property
    def table_ref(self) -> str:
        """schema.table"""
        return f"{self.schema_name}.{self.table_name}"

    def matches(self, schema: str, table_name: str, column_name: str) -> bool:
        return (self.schema_name, self.table_name, self.column_name) == (schema, table_name, column_name)


class HiddenReferencedColumn(_DescriptorModel):
    """未显示但被 WHERE / ORDER BY / GROUP BY 引用的列"""

    schema_name: str = Field(..., alias="schema")
    table_name: str
    column_name: str


class CalculatedColumn(_DescriptorModel):
    """计算列（结果总是数值型）"""

    column_name: str = Field(..., description="计算列名")
    expression: str | None = Field(default=None, description="计算表达式")
    column_expression: str | None = Field(default=None, description="计算表达式（旧字段名）")

    @property
    def sql_expression(self) -> str | None:
        return self.expression or self.column_expression


class AggregateFunctionSpec(_DescriptorModel):
    """聚合函数"""

    aggregate_function: int | str = Field(default="", description="函数：0-4 下标或 SUM/AVG/COUNT/MIN/MAX")
    column: str = Field(default="", description="目标列 schema.table.column")
    column_alias_name: str | None = Field(default=None, description="别名")
    use_distinct: bool = Field(default=False, description="是否 DISTINCT")

    @property
    def function_name(self) -> str:
        """规范化的函数名，无效时为空字符串"""
        return _pick(AGGREGATE_FUNCTIONS, self.aggregate_function, "")

    @property
    def is_valid(self) -> bool:
        return bool(self.function_name) and bool(self.column)

    @property
    def sql_expression(self) -> str:
        distinct = "DISTINCT " if self.use_distinct else ""
        return f"{self.function_name}({distinct}{self.column})"


class AggregateExpressionSpec(_DescriptorModel):
    """自由格式聚合表达式"""

    expression: str = Field(default="", description="表达式，可包含 [[列]] 标记")
    column_alias_name: str | None = Field(default=None, description="别名")
    column_data_type: str | None = Field(default=None, description="推断的结果类型")

    @property
    def clean_expression(self) -> str:
        """去除 [[ ]] / [ ] 列标记后的表达式"""
        return self.expression.replace("[[", "").replace("]]", "").replace("[", "").replace("]", "")

    @property
    def is_valid(self) -> bool:
        return bool(self.expression.strip())


class FilterCondition(_DescriptorModel):
    """WHERE / HAVING 条件"""

    column: str = Field(default="", description="列引用或聚合别名")
    equality: int | str | None = Field(default=None, description="比较运算符下标或符号")
    value: Any = Field(default=None, description="比较值")
    column_data_type: str | None = Field(default=None, description="列类型")
    condition: int | str | None = Field(default=None, description="与前一条件的连接：AND/OR")

    @property
    def operator(self) -> str:
        return _pick(COMPARISON_OPERATORS, self.equality, "=")

    @property
    def connector(self) -> str:
        return _pick(LOGICAL_CONNECTORS, self.condition, "AND")

    @property
    def is_valid(self) -> bool:
        return bool(self.column) and self.equality not in (None, "") and self.value not in (None, "")


class OrderBySpec(_DescriptorModel):
    """排序"""

    column: str = Field(default="")
    direction: int | str | None = Field(default="ASC")

    @property
    def sql_direction(self) -> str:
        return _pick(ORDER_DIRECTIONS, self.direction, "ASC")


class GroupBySpec(_DescriptorModel):
    """分组与聚合"""

    name: str | None = None
    aggregate_functions: list[AggregateFunctionSpec] = Field(default_factory=list)
    aggregate_expressions: list[AggregateExpressionSpec] = Field(default_factory=list)
    having_conditions: list[FilterCondition] = Field(default_factory=list)
    group_by_columns: list[str] = Field(default_factory=list)

    @property
    def valid_functions(self) -> list[AggregateFunctionSpec]:
        return [agg for agg in self.aggregate_functions if agg.is_valid]

    @property
    def valid_expressions(self) -> list[AggregateExpressionSpec]:
        return [expr for expr in self.aggregate_expressions if expr.is_valid]


class QueryOptions(_DescriptorModel):
    """查询选项"""

    where: list[FilterCondition] = Field(default_factory=list)
    group_by: GroupBySpec = Field(default_factory=GroupBySpec)
    order_by: list[OrderBySpec] = Field(default_factory=list)
    limit: int | None = None
    offset: int | None = None


class AdditionalJoinCondition(_DescriptorModel):
    """JOIN 附加条件"""

    logic: str = Field(default="AND")
    left_column: str = Field(default="")
    operator: str = Field(default="=")
    right_column: str = Field(default="")

    @property
    def is_valid(self) -> bool:
        return bool(self.left_column and self.right_column and self.operator)


class JoinCondition(_DescriptorModel):
    """JOIN 条件"""

    left_table_schema: str
    left_table_name: str
    left_table_alias: str | None = None
    left_column_name: str
    right_table_schema: str
    right_table_name: str
    right_table_alias: str | None = None
    right_column_name: str
    join_type: str = Field(default="INNER")
    primary_operator: str = Field(default="=")
    additional_conditions: list[AdditionalJoinCondition] = Field(default_factory=list)


class QueryDescriptor(_DescriptorModel):
    """查询描述"""

    columns: list[QueryColumn] = Field(default_factory=list)
    calculated_columns: list[CalculatedColumn] = Field(default_factory=list)
    hidden_referenced_columns: list[HiddenReferencedColumn] = Field(default_factory=list)
    join_conditions: list[JoinCondition] = Field(default_factory=list)
    query_options: QueryOptions = Field(default_factory=QueryOptions)

    @property
    def data_source_ids(self) -> list[uuid.UUID]:
        """按出现顺序去重的数据源 ID"""
        ids: list[uuid.UUID] = []
        for column in self.columns:
            if column.data_source_id is not None and column.data_source_id not in ids:
                ids.append(column.data_source_id)
        return ids

    @property
    def is_cross_source(self) -> bool:
        return len(self.data_source_ids) > 1

    @property
    def has_joins(self) -> bool:
        return len(self.join_conditions) > 0

    @property
    def has_aggregates(self) -> bool:
        group_by = self.query_options.group_by
        return bool(group_by.valid_functions or group_by.valid_expressions)

    @property
    def aggregated_paths(self) -> set[str]:
        """被聚合函数引用的列路径"""
        return {agg.column for agg in self.query_options.group_by.valid_functions}

    def is_hidden_referenced(self, column: QueryColumn) -> bool:
        return any(
            column.matches(hidden.schema_name, hidden.table_name, hidden.column_name)
            for hidden in self.hidden_referenced_columns
        )

    @property
    def materialized_columns(self) -> list[QueryColumn]:
        """
        参与物化的列：显示列或被隐藏引用的列

        仅作为聚合目标的列不单独输出
        """
        aggregated = self.aggregated_paths
        return [
            column
            for column in self.columns
            if (column.is_selected_column or self.is_hidden_referenced(column)) and column.full_path not in aggregated
        ]

    def find_column(self, path: str) -> QueryColumn | None:
        """按 schema.table.column 查找列"""
        for column in self.columns:
            if column.full_path == path:
                return column
        return None

    def to_storage(self) -> dict[str, Any]:
        """持久化用的原样 JSON"""
        return self.model_dump(mode="json", by_alias=True, exclude_unset=True)


class MongoQuery(BaseModel):
    """MongoDB 原生聚合查询：{"collection": ..., "pipeline": [...]}"""

    collection: str = Field(..., description="集合名")
    pipeline: list[dict[str, Any]] = Field(..., min_length=1, description="聚合管道")

    @field_validator("collection")
    @classmethod
    def _validate_collection(cls, v: str) -> str:
        name = v.strip()
        if not name:
            raise ValueError("集合名不能为空")
        if "\0" in name or "$" in name:
            raise ValueError("集合名包含非法字符")
        if name.startswith("system."):
            raise ValueError("不能直接查询系统集合")
        if len(name) > 200:
            raise ValueError("集合名过长（最多 200 个字符）")
        return name

    @field_validator("pipeline")
    @classmethod
    def _validate_pipeline(cls, v: list[dict[str, Any]]) -> list[dict[str, Any]]:
        for index, stage in enumerate(v):
            if len(stage) != 1:
                raise ValueError(f"第 {index} 个阶段必须只包含一个操作符")
            operator = next(iter(stage))
            if not operator.startswith("$"):
                raise ValueError(f"第 {index} 个阶段的操作符 '{operator}' 必须以 $ 开头")
            if operator in ("$out", "$merge"):
                raise ValueError(f"不允许使用写入类阶段: {operator}")
        return v
