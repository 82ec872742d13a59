"""
SQL 重建服务

根据查询描述确定性地重建一条 SELECT 语句。调用方提供的 SQL 不参与结构生成，
仅在描述未设置 LIMIT/OFFSET 时从中提取这两个值。
"""

import re
from typing import Any

from loguru import logger

from app.core.exceptions import QueryValidationException
from app.models.data_source import DataSourceType
from app.schemas.query import FilterCondition, QueryColumn, QueryDescriptor, TransformFunction
from app.services.column_mapper import (
    AggregateExpressionColumn,
    AggregateFunctionColumn,
    CalculatedColumn,
    ColumnMapper,
    MaterializedColumn,
    SelectedColumn,
)

_LIMIT_RE = re.compile(r"LIMIT\s+(\d+)", re.IGNORECASE)
_OFFSET_RE = re.compile(r"OFFSET\s+(\d+)", re.IGNORECASE)
_SIMPLE_IDENTIFIER_RE = re.compile(r"^[a-z_][a-z0-9_]*$")

_NUMERIC_DATA_TYPES = {
    "numeric",
    "integer",
    "int",
    "bigint",
    "smallint",
    "real",
    "double precision",
    "decimal",
    "float",
    "money",
}

_TRANSFORM_TEMPLATES: dict[TransformFunction, str] = {
    TransformFunction.DATE: "DATE({ref})",
    TransformFunction.YEAR: "EXTRACT(YEAR FROM {ref})",
    TransformFunction.MONTH: "EXTRACT(MONTH FROM {ref})",
    TransformFunction.DAY: "EXTRACT(DAY FROM {ref})",
    TransformFunction.UPPER: "UPPER({ref})",
    TransformFunction.LOWER: "LOWER({ref})",
    TransformFunction.TRIM: "TRIM({ref})",
    TransformFunction.ROUND: "ROUND({ref})",
}


def quote_alias(name: str, dialect: str = "postgresql") -> str:
    """简单小写标识符原样输出，其余按方言加引号"""
    if _SIMPLE_IDENTIFIER_RE.match(name):
        return name
    if dialect in (DataSourceType.MYSQL.value, DataSourceType.MARIADB.value):
        return "`" + name.replace("`", "``") + "`"
    return '"' + name.replace('"', '""') + '"'


def quote_literal(value: Any) -> str:
    return "'" + str(value).replace("'", "''") + "'"


def column_reference(column: QueryColumn) -> str:
    """列引用：有表别名时为 alias.column，否则为 schema.table.column"""
    if column.table_alias:
        return f"{column.table_alias}.{column.column_name}"
    return column.full_path


def scavenge_limit_offset(sql: str | None) -> tuple[int | None, int | None]:
    """从调用方 SQL 中提取 LIMIT / OFFSET"""
    if not sql:
        return None, None
    limit_match = _LIMIT_RE.search(sql)
    offset_match = _OFFSET_RE.search(sql)
    return (
        int(limit_match.group(1)) if limit_match else None,
        int(offset_match.group(1)) if offset_match else None,
    )


class SQLReconstructor:
    """查询描述到 SQL 的重建器"""

    def __init__(self, column_mapper: ColumnMapper | None = None):
        self.column_mapper = column_mapper or ColumnMapper()

    # ==================== 校验 ====================

    def validate_group_by(self, descriptor: QueryDescriptor) -> None:
        """
        校验聚合查询的 GROUP BY 完整性

        显式给出 group_by_columns 时，所有非聚合的输出列都必须出现在其中；
        未给出时按全部非聚合列自动分组，无需校验

        Raises:
            QueryValidationException: 存在未分组的非聚合列
        """
        if not descriptor.has_aggregates:
            return

        group_by_columns = set(descriptor.query_options.group_by.group_by_columns)
        if not group_by_columns:
            return

        missing = [
            column.full_path
            for column in descriptor.materialized_columns
            if column.full_path not in group_by_columns
        ]
        if missing:
            raise QueryValidationException(
                msg=f"非聚合列必须出现在 GROUP BY 中，缺失列: {', '.join(missing)}"
            )

    # ==================== 重建 ====================

    def reconstruct(
        self,
        descriptor: QueryDescriptor,
        *,
        caller_sql: str | None = None,
        dialect: str = "postgresql",
        columns: list[MaterializedColumn] | None = None,
    ) -> str:
        """
        重建 SELECT 语句

        Args:
            descriptor: 查询描述
            caller_sql: 调用方 SQL，仅用于提取 LIMIT/OFFSET
            dialect: 目标方言，决定别名引号
            columns: 已推导的物化列（为空时由 ColumnMapper 推导）

        Returns:
            SQL 字符串
        """
        if columns is None:
            columns = self.column_mapper.map_descriptor(descriptor)
        if not columns:
            raise QueryValidationException(msg="查询未选择任何列")

        parts = [f"SELECT {', '.join(self._select_item(col, dialect) for col in columns)}"]
        parts.append(self._from_clause(descriptor))

        where = self._where_clause(descriptor)
        if where:
            parts.append(where)

        group_by = self._group_by_clause(descriptor)
        if group_by:
            parts.append(group_by)

        having = self._having_clause(descriptor, columns)
        if having:
            parts.append(having)

        order_by = self._order_by_clause(descriptor)
        if order_by:
            parts.append(order_by)

        parts.extend(self._limit_offset(descriptor, caller_sql))

        sql = " ".join(parts)
        logger.debug(f"🔧 重建 SQL: {sql}")
        return sql

    def _select_item(self, column: MaterializedColumn, dialect: str) -> str:
        alias = quote_alias(column.name, dialect)
        if isinstance(column, SelectedColumn):
            ref = column_reference(column.source)
            transform = column.source.transform_function
            if transform is not None:
                ref = _TRANSFORM_TEMPLATES[transform].format(ref=ref)
            return f"{ref} AS {alias}"
        if isinstance(column, CalculatedColumn):
            return f"{column.expression} AS {alias}"
        if isinstance(column, AggregateFunctionColumn):
            return f"{column.aggregate.sql_expression} AS {alias}"
        if isinstance(column, AggregateExpressionColumn):
            return f"{column.aggregate.clean_expression} AS {alias}"
        raise TypeError(f"未知的列类型: {type(column).__name__}")

    def _table_alias(self, descriptor: QueryDescriptor, schema: str, table: str) -> str | None:
        for column in descriptor.columns:
            if column.schema_name == schema and column.table_name == table and column.table_alias:
                return column.table_alias
        return None

    def _from_clause(self, descriptor: QueryDescriptor) -> str:
        if not descriptor.has_joins:
            tables = list(dict.fromkeys(column.table_ref for column in descriptor.materialized_columns))
            if not tables:
                tables = list(dict.fromkeys(column.table_ref for column in descriptor.columns))
            if not tables:
                raise QueryValidationException(msg="无法确定查询的来源表")
            if len(tables) > 1:
                logger.warning(f"⚠️ 多表查询缺少 JOIN 条件，仅使用首个表: {', '.join(tables)}")
            first = next(c for c in descriptor.columns if c.table_ref == tables[0])
            return f"FROM {tables[0]}" + (f" AS {first.table_alias}" if first.table_alias else "")

        clauses: list[str] = []
        added: set[str] = set()

        for index, join in enumerate(descriptor.join_conditions):
            left_full = f"{join.left_table_schema}.{join.left_table_name}"
            right_full = f"{join.right_table_schema}.{join.right_table_name}"
            left_alias = join.left_table_alias or self._table_alias(
                descriptor, join.left_table_schema, join.left_table_name
            )
            right_alias = join.right_table_alias or self._table_alias(
                descriptor, join.right_table_schema, join.right_table_name
            )
            left_sql = f"{left_full} AS {left_alias}" if left_alias else left_full
            right_sql = f"{right_full} AS {right_alias}" if right_alias else right_full
            left_ref = left_alias or left_full
            right_ref = right_alias or right_full
            join_type = (join.join_type or "INNER").upper()

            condition = (
                f"{left_ref}.{join.left_column_name} {join.primary_operator or '='} "
                f"{right_ref}.{join.right_column_name}"
            )
            for extra in join.additional_conditions:
                if extra.is_valid:
                    condition += (
                        f" {extra.logic.upper()} {left_ref}.{extra.left_column} "
                        f"{extra.operator} {right_ref}.{extra.right_column}"
                    )

            if index == 0:
                clauses.append(f"FROM {left_sql} {join_type} JOIN {right_sql} ON {condition}")
                added.update({left_full, right_full})
            elif right_full not in added:
                clauses.append(f"{join_type} JOIN {right_sql} ON {condition}")
                added.add(right_full)
            elif left_full not in added:
                clauses.append(f"{join_type} JOIN {left_sql} ON {condition}")
                added.add(left_full)
            else:
                logger.debug(f"JOIN 两侧的表均已加入，跳过: {left_full} - {right_full}")

        return " ".join(clauses)

    def _format_value(self, condition: FilterCondition, data_type: str) -> str:
        operator = condition.operator
        value = condition.value
        if operator in ("IN", "NOT IN"):
            if isinstance(value, list | tuple):
                if data_type in _NUMERIC_DATA_TYPES:
                    return "(" + ", ".join(str(v) for v in value) + ")"
                return "(" + ", ".join(quote_literal(v) for v in value) + ")"
            return f"({value})"
        if data_type in _NUMERIC_DATA_TYPES:
            return str(value)
        return quote_literal(value)

    def _where_clause(self, descriptor: QueryDescriptor) -> str | None:
        fragments: list[str] = []
        for condition in descriptor.query_options.where:
            if not condition.is_valid:
                continue
            data_type = (condition.column_data_type or "").lower()
            if not data_type:
                column = descriptor.find_column(condition.column)
                data_type = column.data_type.lower() if column else ""
            clause = f"{condition.column} {condition.operator} {self._format_value(condition, data_type)}"
            fragments.append(clause if not fragments else f"{condition.connector} {clause}")
        return f"WHERE {' '.join(fragments)}" if fragments else None

    def _group_by_clause(self, descriptor: QueryDescriptor) -> str | None:
        group_by = descriptor.query_options.group_by
        if not (group_by.name or group_by.group_by_columns or descriptor.has_aggregates):
            return None

        if group_by.group_by_columns:
            refs = []
            for path in group_by.group_by_columns:
                column = descriptor.find_column(path)
                refs.append(column_reference(column) if column else path)
        else:
            refs = [column_reference(column) for column in descriptor.materialized_columns]

        if not refs:
            logger.warning("⚠️ 存在聚合但 GROUP BY 为空")
            return None
        return f"GROUP BY {', '.join(refs)}"

    def _having_clause(self, descriptor: QueryDescriptor, columns: list[MaterializedColumn]) -> str | None:
        expressions: dict[str, str] = {}
        for column in columns:
            if isinstance(column, AggregateFunctionColumn):
                expressions[column.name] = column.aggregate.sql_expression
            elif isinstance(column, AggregateExpressionColumn):
                expressions[column.name] = column.aggregate.clean_expression

        fragments: list[str] = []
        for condition in descriptor.query_options.group_by.having_conditions:
            if not condition.is_valid:
                continue
            target = expressions.get(condition.column, condition.column)
            if condition.operator in ("IN", "NOT IN"):
                value = self._format_value(condition, "numeric")
            else:
                value = str(condition.value)
            clause = f"{target} {condition.operator} {value}"
            fragments.append(clause if not fragments else f"{condition.connector} {clause}")
        return f"HAVING {' '.join(fragments)}" if fragments else None

    def _order_by_clause(self, descriptor: QueryDescriptor) -> str | None:
        items = [
            f"{order.column} {order.sql_direction}" for order in descriptor.query_options.order_by if order.column
        ]
        return f"ORDER BY {', '.join(items)}" if items else None

    def _limit_offset(self, descriptor: QueryDescriptor, caller_sql: str | None) -> list[str]:
        limit = descriptor.query_options.limit
        offset = descriptor.query_options.offset
        if limit is None and offset is None:
            limit, offset = scavenge_limit_offset(caller_sql)

        parts: list[str] = []
        if limit is not None and limit != -1:
            parts.append(f"LIMIT {max(1, int(limit))}")
        if offset is not None and offset > 0:
            parts.append(f"OFFSET {int(offset)}")
        return parts
