"""
跨数据源表名改写单元测试
"""

import pytest

from app.services.source_locator import ResolvedTable
from app.services.table_rewriter import rewrite


class TestRewrite:
    """表名改写测试类"""

    @pytest.mark.unit
    def test_word_boundary(self):
        """只替换完整引用，orders_archive 保持不变"""
        sql = (
            "SELECT * FROM mysql_db.orders o "
            "JOIN mysql_db.orders_archive a ON o.id = a.order_id"
        )
        result = rewrite(sql, {"mysql_db.orders": ResolvedTable("dra_mysql_7", "orders_abc")})
        assert result == (
            "SELECT * FROM dra_mysql_7.orders_abc o "
            "JOIN mysql_db.orders_archive a ON o.id = a.order_id"
        )

    @pytest.mark.unit
    def test_longest_reference_first(self):
        """两个引用都需要改写时互不干扰"""
        sql = "SELECT * FROM s.orders JOIN s.orders_archive USING (id)"
        table_map = {
            "s.orders": ResolvedTable("dra_a", "t1"),
            "s.orders_archive": ResolvedTable("dra_b", "t2"),
        }
        assert rewrite(sql, table_map) == "SELECT * FROM dra_a.t1 JOIN dra_b.t2 USING (id)"

    @pytest.mark.unit
    def test_rewritten_output_not_rewritten_again(self):
        """替换结果不会被其它映射再次匹配"""
        table_map = {
            "public.a": ResolvedTable("public", "b"),
            "public.b": ResolvedTable("public", "c"),
        }
        assert rewrite("SELECT * FROM public.a, public.b", table_map) == "SELECT * FROM public.b, public.c"

    @pytest.mark.unit
    def test_column_references_rewritten(self):
        """schema.table.column 形式的列引用同样改写表部分"""
        sql = "SELECT public.orders.id FROM public.orders"
        result = rewrite(sql, {"public.orders": ResolvedTable("dra_excel", "ds1_abc")})
        assert result == "SELECT dra_excel.ds1_abc.id FROM dra_excel.ds1_abc"

    @pytest.mark.unit
    def test_empty_map_returns_sql_unchanged(self):
        sql = "SELECT 1"
        assert rewrite(sql, {}) is sql
