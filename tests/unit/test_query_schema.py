"""
查询描述 Schema 单元测试
"""

import uuid

import pytest

from app.schemas.query import (
    AGGREGATE_FUNCTIONS,
    ORDER_DIRECTIONS,
    QueryColumn,
    QueryDescriptor,
    TransformFunction,
    _pick,
)


class TestPick:
    """下标 / 名称取值测试类"""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        ("value", "expected"),
        [(0, "SUM"), (4, "MAX"), ("avg", "AVG"), ("3", "MIN"), (9, ""), ("median", ""), (None, ""), ("", "")],
    )
    def test_aggregate(self, value, expected):
        assert _pick(AGGREGATE_FUNCTIONS, value, "") == expected

    @pytest.mark.unit
    def test_direction(self):
        assert _pick(ORDER_DIRECTIONS, 1, "ASC") == "DESC"
        assert _pick(ORDER_DIRECTIONS, None, "ASC") == "ASC"


class TestQueryDescriptor:
    """查询描述测试类"""

    @pytest.mark.unit
    def test_to_storage_keeps_unknown_fields(self):
        """未知字段原样持久化，schema 使用原字段名"""
        descriptor = QueryDescriptor.model_validate(
            {
                "columns": [{"schema": "public", "table_name": "orders", "column_name": "id", "display_order": 3}],
                "ui_state": {"collapsed": True},
            }
        )
        stored = descriptor.to_storage()

        assert stored["ui_state"] == {"collapsed": True}
        assert stored["columns"][0]["display_order"] == 3
        assert stored["columns"][0]["schema"] == "public"
        assert QueryDescriptor.model_validate(stored).columns[0].schema_name == "public"

    @pytest.mark.unit
    def test_data_source_ids_ordered_and_deduplicated(self):
        first, second = uuid.uuid4(), uuid.uuid4()
        descriptor = QueryDescriptor.model_validate(
            {
                "columns": [
                    {"schema": "a", "table_name": "t", "column_name": "x", "data_source_id": str(first)},
                    {"schema": "b", "table_name": "t", "column_name": "y", "data_source_id": str(second)},
                    {"schema": "a", "table_name": "t", "column_name": "z", "data_source_id": str(first)},
                ]
            }
        )
        assert descriptor.data_source_ids == [first, second]
        assert descriptor.is_cross_source
        assert not descriptor.has_joins

    @pytest.mark.unit
    def test_transform_normalized(self):
        column = QueryColumn.model_validate(
            {"schema": "s", "table_name": "t", "column_name": "c", "transform_function": " year "}
        )
        assert column.transform_function is TransformFunction.YEAR
        blank = QueryColumn.model_validate({"schema": "s", "table_name": "t", "column_name": "c", "transform_function": ""})
        assert blank.transform_function is None
