"""
跨数据源表名改写

将 SQL 中的原始 schema.table 引用替换为定位后的物理引用。
按引用长度降序处理，并使用单词边界匹配，避免 orders 误改 orders_archive。
"""

import re
from collections.abc import Mapping

from loguru import logger

from app.services.source_locator import ResolvedTable


def rewrite(sql: str, table_map: Mapping[str, ResolvedTable]) -> str:
    """
    改写 SQL 中的表引用

    Args:
        sql: 原始 SQL
        table_map: 原始 schema.table 到定位结果的映射

    Returns:
        改写后的 SQL，映射为空时原样返回
    """
    if not table_map:
        return sql

    # 长引用优先；单次替换，已改写的内容不会被再次匹配
    originals = sorted(table_map, key=len, reverse=True)
    pattern = re.compile(r"\b(?:" + "|".join(re.escape(original) for original in originals) + r")\b")
    rewritten = pattern.sub(lambda match: table_map[match.group(0)].qualified_name, sql)

    if rewritten == sql:
        logger.warning("⚠️ SQL 未发生改写，表映射可能未命中")
    else:
        logger.debug(f"🔁 改写后的 SQL: {rewritten}")
    return rewritten
