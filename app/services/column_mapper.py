"""
列与类型映射服务

为查询描述中的每一个结果列推导目标物理列名和目标列类型。

结果列分为四类（封闭联合类型）：
- SelectedColumn: 描述中选中 / 被隐藏引用的源列
- CalculatedColumn: 计算列
- AggregateFunctionColumn: SUM/AVG/COUNT/MIN/MAX 聚合
- AggregateExpressionColumn: 自由格式聚合表达式

每一类只有一个命名函数，SELECT 别名、CREATE TABLE 列名与插入时的行取值键
都取自同一个 name 字段。
"""

import re
from collections.abc import Callable
from dataclasses import dataclass

from app.core.config import settings
from app.models.data_source import SYNCED_SCHEMAS, DataSourceType
from app.schemas.query import (
    AggregateExpressionSpec,
    AggregateFunctionSpec,
    QueryColumn,
    QueryDescriptor,
    TransformFunction,
)

# PostgreSQL 标识符最大长度
MAX_IDENTIFIER_LENGTH = 63

NUMERIC_TYPE = "NUMERIC"

# 已包含长度 / 精度的类型，如 VARCHAR(50)、NUMERIC(10,2)
_SIZED_TYPE_RE = re.compile(r"\(\s*\d+\s*(,\s*\d+\s*)?\)")

_STRING_TYPES = {"varchar", "character varying", "char", "character", "bpchar", "nvarchar", "nchar"}
_PRECISION_TYPES = {"numeric", "decimal"}

TRANSFORM_TYPE_OVERRIDES: dict[TransformFunction, str] = {
    TransformFunction.DATE: "DATE",
    TransformFunction.YEAR: "INTEGER",
    TransformFunction.MONTH: "INTEGER",
    TransformFunction.DAY: "INTEGER",
    TransformFunction.UPPER: "TEXT",
    TransformFunction.LOWER: "TEXT",
    TransformFunction.TRIM: "TEXT",
    TransformFunction.ROUND: "NUMERIC",
}

SQL_RESERVED_WORDS = frozenset(
    {
        "all", "and", "any", "as", "asc", "between", "by", "case", "check", "column", "constraint",
        "create", "cross", "default", "delete", "desc", "distinct", "drop", "else", "end", "exists",
        "false", "for", "foreign", "from", "full", "group", "having", "in", "index", "inner", "insert",
        "into", "is", "join", "key", "left", "like", "limit", "not", "null", "offset", "on", "or",
        "order", "outer", "primary", "references", "right", "select", "table", "then", "to", "true",
        "union", "unique", "update", "user", "using", "values", "when", "where", "with",
    }
)  # fmt: skip


# ==================== 列变体 ====================


@dataclass(frozen=True)
class _MappedColumn:
    name: str
    sql_type: str

    @property
    def row_key(self) -> str:
        """结果行中取值使用的键，与 CREATE TABLE 列名一致"""
        return self.name


@dataclass(frozen=True)
class SelectedColumn(_MappedColumn):
    source: QueryColumn


@dataclass(frozen=True)
class CalculatedColumn(_MappedColumn):
    expression: str


@dataclass(frozen=True)
class AggregateFunctionColumn(_MappedColumn):
    aggregate: AggregateFunctionSpec


@dataclass(frozen=True)
class AggregateExpressionColumn(_MappedColumn):
    aggregate: AggregateExpressionSpec


MaterializedColumn = SelectedColumn | CalculatedColumn | AggregateFunctionColumn | AggregateExpressionColumn


# ==================== 命名 ====================


def _truncate_identifier(name: str) -> str:
    return name[:MAX_IDENTIFIER_LENGTH]


def selected_column_name(column: QueryColumn) -> str:
    """
    源列的目标列名

    优先级：
    1. 非空 alias_name
    2. 平台分配物理表名的 schema（同步 / 文件 / API）：表名（超长取末尾）+ 列名
    3. schema_table_column

    2、3 派生的列名经过规范化并转为小写，逻辑表名中的空格与大写不会进入列名
    """
    if column.alias_name:
        return _truncate_identifier(column.alias_name)
    if column.schema_name in SYNCED_SCHEMAS:
        max_len = settings.SYNCED_TABLE_NAME_MAX_LENGTH
        table_part = column.table_name[-max_len:] if len(column.table_name) > max_len else column.table_name
        return sanitize_column_name(f"{table_part}_{column.column_name}").lower()
    return sanitize_column_name(f"{column.schema_name}_{column.table_name}_{column.column_name}").lower()


def aggregate_function_name(aggregate: AggregateFunctionSpec) -> str:
    """聚合列名：别名优先，否则为小写函数名（与目标库默认列名一致）"""
    if aggregate.column_alias_name:
        return _truncate_identifier(aggregate.column_alias_name)
    return aggregate.function_name.lower()


def aggregate_expression_name(aggregate: AggregateExpressionSpec) -> str:
    return _truncate_identifier(aggregate.column_alias_name or "agg_expr")


def sanitize_column_name(name: str) -> str:
    """
    规范化列名

    非单词字符替换为下划线，合并连续下划线，数字开头加 col_ 前缀，
    保留字追加 _col 后缀
    """
    cleaned = re.sub(r"\W", "_", name.strip())
    cleaned = re.sub(r"_+", "_", cleaned).strip("_")
    if not cleaned:
        cleaned = "column"
    if cleaned[0].isdigit():
        cleaned = f"col_{cleaned}"
    if cleaned.lower() in SQL_RESERVED_WORDS:
        cleaned = f"{cleaned}_col"
    return _truncate_identifier(cleaned)


def sanitize_table_name(name: str) -> str:
    """规范化表名（小写）"""
    cleaned = re.sub(r"\W", "_", name.strip().lower())
    cleaned = re.sub(r"_+", "_", cleaned).strip("_")
    if not cleaned:
        cleaned = "table"
    if cleaned[0].isdigit():
        cleaned = f"tbl_{cleaned}"
    if cleaned in SQL_RESERVED_WORDS:
        cleaned = f"{cleaned}_tbl"
    return _truncate_identifier(cleaned)


# ==================== 类型转换 ====================


class TypeConverter:
    """源列类型到 PostgreSQL 列类型的转换"""

    def __init__(self, precision_cap: int | None = None):
        self.precision_cap = precision_cap if precision_cap is not None else settings.NUMERIC_PRECISION_CAP

    def convert(
        self,
        data_type: str,
        *,
        provider: DataSourceType | None = None,
        length: int | None = None,
    ) -> str:
        """
        推导目标列类型

        Args:
            data_type: 源引擎报告的列类型
            provider: 数据源类型，MySQL/MariaDB 需要经过类型映射表
            length: character_maximum_length

        Returns:
            目标列类型
        """
        raw = (data_type or "text").strip()
        if provider in (DataSourceType.MYSQL, DataSourceType.MARIADB):
            raw = self.mysql_to_postgres(raw, length)

        # 已带长度的类型原样使用
        if _SIZED_TYPE_RE.search(raw):
            return raw

        base = raw.lower()
        normalized = raw.upper()
        if length is not None and length > 0:
            if base in _PRECISION_TYPES:
                # 超过精度上限时不输出长度，目标库会拒绝
                if length <= self.precision_cap:
                    return f"{normalized}({length})"
                return normalized
            if base in _STRING_TYPES:
                return f"{normalized}({length})"
        return normalized

    @staticmethod
    def mysql_to_postgres(data_type: str, length: int | None = None) -> str:
        """MySQL / MariaDB 列类型转换为 PostgreSQL 列类型"""
        lowered = data_type.strip().lower()
        unsigned = "unsigned" in lowered
        base = re.sub(r"\(.*?\)|unsigned|zerofill", "", lowered).strip()
        size_match = re.search(r"\((\d+)(?:\s*,\s*(\d+))?\)", lowered)
        size = int(size_match.group(1)) if size_match else length

        if base == "tinyint":
            return "SMALLINT"
        if base == "smallint":
            return "INTEGER" if unsigned else "SMALLINT"
        if base == "mediumint":
            return "BIGINT" if unsigned else "INTEGER"
        if base in ("int", "integer"):
            return "BIGINT" if unsigned else "INTEGER"
        if base == "bigint":
            return "NUMERIC(20,0)" if unsigned else "BIGINT"
        if base in ("decimal", "numeric", "dec", "fixed"):
            if size_match and size_match.group(2) is not None:
                return f"DECIMAL({size_match.group(1)},{size_match.group(2)})"
            if size_match:
                return f"DECIMAL({size_match.group(1)})"
            return "DECIMAL"
        if base == "float":
            return "REAL"
        if base in ("double", "double precision", "real"):
            return "DOUBLE PRECISION"
        if base == "char":
            return f"CHAR({size or 1})"
        if base == "varchar":
            if size and size > 65535:
                return "TEXT"
            return f"VARCHAR({size or 255})"
        if base in ("tinytext", "text", "mediumtext", "longtext"):
            return "TEXT"
        if base in ("tinyblob", "blob", "mediumblob", "longblob", "binary", "varbinary"):
            return "BYTEA"
        if base == "datetime":
            return "TIMESTAMP"
        if base == "timestamp":
            return "TIMESTAMP WITH TIME ZONE"
        if base == "date":
            return "DATE"
        if base == "time":
            return "TIME"
        if base == "year":
            return "SMALLINT"
        if base in ("bool", "boolean"):
            return "BOOLEAN"
        if base == "json":
            return "JSON"
        if base.startswith("enum"):
            return f"VARCHAR({max(size or 0, 50)})"
        if base.startswith("set"):
            return "TEXT"
        return data_type.upper()

    @staticmethod
    def expression_type(column_data_type: str | None) -> str:
        """聚合表达式的结果类型"""
        if not column_data_type:
            return NUMERIC_TYPE
        lowered = column_data_type.strip().lower()
        if lowered in ("text", "char", "varchar", "character varying", "string"):
            return "TEXT"
        if lowered in ("numeric", "decimal") or lowered.startswith("int") or lowered in ("bigint", "smallint"):
            return NUMERIC_TYPE
        if lowered in ("boolean", "bool"):
            return "BOOLEAN"
        # timestamp / date 及其它类型原样大写
        return column_data_type.strip().upper()


# ==================== 映射 ====================


class ColumnMapper:
    """根据查询描述生成有序的物化列列表"""

    def __init__(self, type_converter: TypeConverter | None = None):
        self.type_converter = type_converter or TypeConverter()

    def map_selected(self, column: QueryColumn, provider: DataSourceType | None = None) -> SelectedColumn:
        if column.transform_function is not None:
            sql_type = TRANSFORM_TYPE_OVERRIDES[column.transform_function]
        else:
            sql_type = self.type_converter.convert(
                column.data_type, provider=provider, length=column.character_maximum_length
            )
        return SelectedColumn(name=selected_column_name(column), sql_type=sql_type, source=column)

    def map_descriptor(
        self,
        descriptor: QueryDescriptor,
        provider_for: Callable[[QueryColumn], DataSourceType | None] | None = None,
    ) -> list[MaterializedColumn]:
        """
        推导物化列

        顺序：描述中的列、计算列、聚合函数列、聚合表达式列。
        同名列追加 _2、_3 后缀，保证 SELECT 别名与行取值键唯一。

        Args:
            descriptor: 查询描述
            provider_for: 返回列所属数据源类型的函数，用于源类型映射

        Returns:
            物化列列表
        """
        mapped: list[MaterializedColumn] = []
        used: set[str] = set()

        def unique(name: str) -> str:
            candidate, suffix = name, 2
            while candidate in used:
                candidate = _truncate_identifier(f"{name}_{suffix}")
                suffix += 1
            used.add(candidate)
            return candidate

        for column in descriptor.materialized_columns:
            provider = provider_for(column) if provider_for else None
            selected = self.map_selected(column, provider)
            mapped.append(SelectedColumn(name=unique(selected.name), sql_type=selected.sql_type, source=column))

        for calculated in descriptor.calculated_columns:
            expression = calculated.sql_expression
            if expression and calculated.column_name:
                mapped.append(
                    CalculatedColumn(
                        name=unique(_truncate_identifier(calculated.column_name)),
                        sql_type=NUMERIC_TYPE,
                        expression=expression,
                    )
                )

        group_by = descriptor.query_options.group_by
        for aggregate in group_by.valid_functions:
            mapped.append(
                AggregateFunctionColumn(
                    name=unique(aggregate_function_name(aggregate)),
                    sql_type=NUMERIC_TYPE,
                    aggregate=aggregate,
                )
            )

        for expression in group_by.valid_expressions:
            mapped.append(
                AggregateExpressionColumn(
                    name=unique(aggregate_expression_name(expression)),
                    sql_type=self.type_converter.expression_type(expression.column_data_type),
                    aggregate=expression,
                )
            )

        return mapped
