"""
列与类型映射单元测试
"""

import uuid

import pytest

from app.models.data_source import DataSourceType
from app.schemas.query import QueryColumn, QueryDescriptor
from app.services.column_mapper import (
    AggregateExpressionColumn,
    AggregateFunctionColumn,
    CalculatedColumn,
    ColumnMapper,
    SelectedColumn,
    TypeConverter,
    sanitize_column_name,
    sanitize_table_name,
    selected_column_name,
)


def _column(**overrides) -> QueryColumn:
    data = {
        "schema": "public",
        "table_name": "orders",
        "column_name": "id",
        "data_type": "integer",
        "data_source_id": str(uuid.uuid4()),
    }
    data.update(overrides)
    return QueryColumn.model_validate(data)


class TestColumnNaming:
    """列命名优先级测试类"""

    @pytest.mark.unit
    def test_alias_wins(self):
        """别名优先"""
        assert selected_column_name(_column(alias_name="order_id")) == "order_id"

    @pytest.mark.unit
    def test_alias_wins_over_synced_schema(self):
        """同步 schema 下别名依然优先"""
        column = _column(schema="dra_google_analytics", table_name="traffic_overview", alias_name="sessions")
        assert selected_column_name(column) == "sessions"

    @pytest.mark.unit
    def test_regular_schema_uses_schema_table_column(self):
        """普通 schema 使用 schema_table_column"""
        assert selected_column_name(_column()) == "public_orders_id"

    @pytest.mark.unit
    def test_synced_schema_uses_table_and_column(self):
        """同步 schema 使用表名 + 列名"""
        column = _column(schema="dra_excel", table_name="ds1a2b3c4d_9f8e7d6c", column_name="revenue")
        assert selected_column_name(column) == "ds1a2b3c4d_9f8e7d6c_revenue"

    @pytest.mark.unit
    @pytest.mark.parametrize("data_type", [DataSourceType.HUBSPOT, DataSourceType.KLAVIYO, DataSourceType.CSV])
    def test_every_provider_schema_uses_table_and_column(self, data_type):
        """所有提供方 schema 均按表名 + 列名命名"""
        column = _column(schema=data_type.provider_schema, table_name="contacts_15", column_name="email")
        assert selected_column_name(column) == "contacts_15_email"

    @pytest.mark.unit
    def test_logical_table_name_is_sanitized(self):
        """逻辑表名中的空格与大写不进入列名"""
        column = _column(schema="dra_google_analytics", table_name="Traffic Overview", column_name="sessions")
        assert selected_column_name(column) == "traffic_overview_sessions"

        column = _column(schema="Sales", table_name="Order Lines", column_name="Qty")
        assert selected_column_name(column) == "sales_order_lines_qty"

    @pytest.mark.unit
    def test_synced_schema_truncates_long_table_name(self):
        """表名超过 20 个字符时取末尾 20 个字符"""
        table_name = "traffic_overview_by_channel_2024"
        column = _column(schema="dra_google_analytics", table_name=table_name, column_name="sessions")
        assert selected_column_name(column) == f"{table_name[-20:]}_sessions"

    @pytest.mark.unit
    def test_name_truncated_to_identifier_limit(self):
        """列名不超过 63 个字符"""
        column = _column(schema="s" * 30, table_name="t" * 30, column_name="c" * 30)
        assert len(selected_column_name(column)) == 63

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "overrides",
        [
            {},
            {"alias_name": "order_id"},
            {"schema": "dra_pdf", "table_name": "invoice_lines_extracted_2024"},
            {"schema": "dra_mongodb", "table_name": "events", "alias_name": ""},
            {"transform_function": "YEAR", "data_type": "date"},
        ],
    )
    def test_create_name_equals_row_key(self, overrides):
        """建表列名与行取值键一致"""
        descriptor = QueryDescriptor(columns=[_column(**overrides)])
        for column in ColumnMapper().map_descriptor(descriptor):
            assert column.name == column.row_key

    @pytest.mark.unit
    def test_duplicate_names_are_suffixed(self):
        """同名列追加序号"""
        descriptor = QueryDescriptor(
            columns=[_column(alias_name="value"), _column(column_name="amount", alias_name="value")]
        )
        names = [column.name for column in ColumnMapper().map_descriptor(descriptor)]
        assert names == ["value", "value_2"]


class TestTypeConverter:
    """类型转换测试类"""

    @pytest.mark.unit
    @pytest.mark.parametrize("data_type", ["VARCHAR(50)", "varchar(50)", "NUMERIC(10,2)", "CHAR(3)"])
    def test_sized_type_not_resized(self, data_type):
        """已带长度的类型不重复追加长度"""
        result = TypeConverter().convert(data_type, length=50)
        assert result == data_type
        assert result.count("(") == 1

    @pytest.mark.unit
    def test_sized_mysql_type_not_resized(self):
        """MySQL 映射后的类型同样不重复追加"""
        result = TypeConverter().convert("varchar(50)", provider=DataSourceType.MYSQL, length=50)
        assert result == "VARCHAR(50)"

    @pytest.mark.unit
    def test_numeric_above_cap_has_no_size(self):
        """精度超过上限时不输出长度"""
        assert TypeConverter(precision_cap=1000).convert("numeric", length=2000) == "NUMERIC"

    @pytest.mark.unit
    def test_numeric_within_cap_keeps_size(self):
        """精度在上限内时保留长度"""
        assert TypeConverter(precision_cap=1000).convert("numeric", length=500) == "NUMERIC(500)"

    @pytest.mark.unit
    def test_string_type_carries_length(self):
        """字符串类型携带 character_maximum_length"""
        assert TypeConverter().convert("character varying", length=120) == "CHARACTER VARYING(120)"

    @pytest.mark.unit
    def test_text_ignores_length(self):
        assert TypeConverter().convert("text", length=120) == "TEXT"

    @pytest.mark.unit
    @pytest.mark.parametrize(
        ("mysql_type", "expected"),
        [
            ("tinyint", "SMALLINT"),
            ("int unsigned", "BIGINT"),
            ("bigint unsigned", "NUMERIC(20,0)"),
            ("decimal(12,4)", "DECIMAL(12,4)"),
            ("float", "REAL"),
            ("double", "DOUBLE PRECISION"),
            ("datetime", "TIMESTAMP"),
            ("timestamp", "TIMESTAMP WITH TIME ZONE"),
            ("longtext", "TEXT"),
            ("blob", "BYTEA"),
            ("year", "SMALLINT"),
            ("json", "JSON"),
        ],
    )
    def test_mysql_mapping(self, mysql_type, expected):
        """MySQL 类型映射"""
        assert TypeConverter.mysql_to_postgres(mysql_type) == expected

    @pytest.mark.unit
    def test_mysql_varchar_defaults(self):
        assert TypeConverter.mysql_to_postgres("varchar") == "VARCHAR(255)"
        assert TypeConverter.mysql_to_postgres("varchar", 70000) == "TEXT"
        assert TypeConverter.mysql_to_postgres("char") == "CHAR(1)"

    @pytest.mark.unit
    def test_postgres_source_passes_through(self):
        """非 MySQL 数据源原样大写"""
        assert TypeConverter().convert("timestamp with time zone", provider=DataSourceType.POSTGRESQL) == (
            "TIMESTAMP WITH TIME ZONE"
        )

    @pytest.mark.unit
    @pytest.mark.parametrize(
        ("inferred", "expected"),
        [
            (None, "NUMERIC"),
            ("varchar", "TEXT"),
            ("integer", "NUMERIC"),
            ("decimal", "NUMERIC"),
            ("boolean", "BOOLEAN"),
            ("timestamp", "TIMESTAMP"),
            ("date", "DATE"),
        ],
    )
    def test_expression_type(self, inferred, expected):
        """聚合表达式类型推断"""
        assert TypeConverter.expression_type(inferred) == expected


class TestColumnMapper:
    """物化列映射测试类"""

    @pytest.mark.unit
    def test_transform_overrides_type(self):
        """转换函数覆盖列类型"""
        mapper = ColumnMapper()
        assert mapper.map_selected(_column(data_type="timestamp", transform_function="date")).sql_type == "DATE"
        assert mapper.map_selected(_column(data_type="timestamp", transform_function="YEAR")).sql_type == "INTEGER"
        assert mapper.map_selected(_column(data_type="integer", transform_function="UPPER")).sql_type == "TEXT"
        assert mapper.map_selected(_column(data_type="text", transform_function="ROUND")).sql_type == "NUMERIC"

    @pytest.mark.unit
    def test_order_and_variants(self):
        """列顺序：描述列、计算列、聚合函数、聚合表达式"""
        descriptor = QueryDescriptor.model_validate(
            {
                "columns": [
                    {"schema": "public", "table_name": "orders", "column_name": "region", "data_type": "text"},
                    {"schema": "public", "table_name": "orders", "column_name": "amount", "data_type": "numeric"},
                ],
                "calculated_columns": [{"column_name": "double_amount", "expression": "amount * 2"}],
                "query_options": {
                    "group_by": {
                        "aggregate_functions": [{"aggregate_function": 0, "column": "public.orders.amount"}],
                        "aggregate_expressions": [
                            {"expression": "[[public.orders.amount]] / 100", "column_alias_name": "hundreds"}
                        ],
                        "group_by_columns": ["public.orders.region"],
                    }
                },
            }
        )
        columns = ColumnMapper().map_descriptor(descriptor)

        assert [type(c) for c in columns] == [
            SelectedColumn,
            CalculatedColumn,
            AggregateFunctionColumn,
            AggregateExpressionColumn,
        ]
        # 仅作为聚合目标的列不单独物化
        assert [c.name for c in columns] == ["public_orders_region", "double_amount", "sum", "hundreds"]
        assert all(c.sql_type == "NUMERIC" for c in columns[1:])

    @pytest.mark.unit
    def test_hidden_referenced_columns_materialized(self):
        """未显示但被引用的列参与物化，其它未显示列不物化"""
        descriptor = QueryDescriptor.model_validate(
            {
                "columns": [
                    {"schema": "public", "table_name": "orders", "column_name": "id"},
                    {"schema": "public", "table_name": "orders", "column_name": "status", "is_selected_column": False},
                    {"schema": "public", "table_name": "orders", "column_name": "note", "is_selected_column": False},
                ],
                "hidden_referenced_columns": [{"schema": "public", "table_name": "orders", "column_name": "status"}],
            }
        )
        names = [c.name for c in ColumnMapper().map_descriptor(descriptor)]
        assert names == ["public_orders_id", "public_orders_status"]

    @pytest.mark.unit
    def test_provider_specific_mapping(self):
        """按列所属数据源类型映射"""
        descriptor = QueryDescriptor(columns=[_column(data_type="tinyint")])
        columns = ColumnMapper().map_descriptor(descriptor, lambda column: DataSourceType.MARIADB)
        assert columns[0].sql_type == "SMALLINT"


class TestSanitizers:
    """名称规范化测试类"""

    @pytest.mark.unit
    def test_sanitize_column_name(self):
        assert sanitize_column_name("Order Total ($)") == "Order_Total"
        assert sanitize_column_name("2024 revenue") == "col_2024_revenue"
        assert sanitize_column_name("select") == "select_col"
        assert sanitize_column_name("***") == "column"

    @pytest.mark.unit
    def test_sanitize_table_name(self):
        assert sanitize_table_name("Traffic Overview") == "traffic_overview"
        assert sanitize_table_name("1st sheet") == "tbl_1st_sheet"
        assert sanitize_table_name("order") == "order_tbl"
