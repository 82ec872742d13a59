"""
MongoDB 聚合管道到 SQL 的转换

已同步到内部数据库的 MongoDB 集合位于 dra_mongodb schema，
表名为 <规范化集合名>_data_source_<数据源ID>。
支持的阶段：$match、$project、$sort、$limit、$skip，其余阶段记录警告后忽略。
"""

import json
import re
import uuid
from datetime import date, datetime
from typing import Any

from loguru import logger

MONGO_SCHEMA = "dra_mongodb"

_COMPARISON_OPERATORS = {
    "$gt": ">",
    "$gte": ">=",
    "$lt": "<",
    "$lte": "<=",
    "$eq": "=",
    "$ne": "!=",
}


def sanitize_identifier(name: str) -> str:
    """小写，非法字符替换为下划线，数字开头加下划线，截断到 63 个字符"""
    cleaned = re.sub(r"[^a-z0-9_]", "_", name.lower())
    if cleaned[:1].isdigit():
        cleaned = f"_{cleaned}"
    return cleaned[:63]


def synced_table_name(collection: str, data_source_id: uuid.UUID) -> str:
    """同步后的表名"""
    return f"{sanitize_identifier(collection)}_data_source_{data_source_id.hex}"


def format_value(value: Any) -> str:
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, int | float):
        return str(value)
    if isinstance(value, datetime | date):
        return f"'{value.isoformat()}'"
    if isinstance(value, dict | list):
        return "'" + json.dumps(value).replace("'", "''") + "'"
    return "'" + str(value).replace("'", "''") + "'"


class MongoPipelineTranslator:
    """聚合管道转换器"""

    def translate(self, table_name: str, pipeline: list[dict[str, Any]]) -> str:
        """
        将聚合管道转换为针对同步表的 SELECT 语句

        Args:
            table_name: 同步表名（不含 schema）
            pipeline: 聚合管道

        Returns:
            SQL 字符串
        """
        table = f"{MONGO_SCHEMA}.{sanitize_identifier(table_name)}"
        where: list[str] = []
        order_by: list[str] = []
        fields: list[str] = []
        limit: int | None = None
        skip: int | None = None

        for stage in pipeline:
            stage_type, stage_value = next(iter(stage.items()))
            if stage_type == "$match":
                condition = self._translate_match(stage_value)
                if condition:
                    where.append(condition)
            elif stage_type == "$project":
                fields = self._translate_project(stage_value)
            elif stage_type == "$sort":
                order_by.extend(self._translate_sort(stage_value))
            elif stage_type == "$limit":
                limit = int(stage_value)
            elif stage_type == "$skip":
                skip = int(stage_value)
            else:
                logger.warning(f"⚠️ 不支持的聚合阶段，已忽略: {stage_type}")

        sql = f"SELECT {', '.join(fields) if fields else '*'} FROM {table}"
        if where:
            sql += f" WHERE {' AND '.join(where)}"
        if order_by:
            sql += f" ORDER BY {', '.join(order_by)}"
        if limit is not None:
            sql += f" LIMIT {limit}"
        if skip is not None:
            sql += f" OFFSET {skip}"
        return sql

    def _translate_match(self, match: dict[str, Any]) -> str:
        conditions: list[str] = []
        for field, condition in match.items():
            column = sanitize_identifier(field)
            if not isinstance(condition, dict):
                conditions.append(f"{column} = {format_value(condition)}")
                continue
            for op, value in condition.items():
                if op in _COMPARISON_OPERATORS:
                    conditions.append(f"{column} {_COMPARISON_OPERATORS[op]} {format_value(value)}")
                elif op in ("$in", "$nin"):
                    values = ", ".join(format_value(v) for v in value)
                    keyword = "IN" if op == "$in" else "NOT IN"
                    conditions.append(f"{column} {keyword} ({values})")
                elif op == "$exists":
                    conditions.append(f"{column} IS NOT NULL" if value else f"{column} IS NULL")
                elif op == "$regex":
                    pattern = str(value).replace("\\", "").replace("'", "''")
                    conditions.append(f"{column} ILIKE '%{pattern}%'")
                else:
                    logger.warning(f"⚠️ 不支持的匹配操作符，已忽略: {op}")
        return " AND ".join(conditions)

    def _translate_project(self, project: dict[str, Any]) -> list[str]:
        fields: list[str] = []
        for field, value in project.items():
            if value is True or value == 1:
                fields.append(sanitize_identifier(field))
            elif isinstance(value, dict):
                logger.warning(f"⚠️ 暂不支持计算字段投影，按原字段输出: {field}")
                fields.append(sanitize_identifier(field))
        return fields

    def _translate_sort(self, sort: dict[str, int]) -> list[str]:
        return [f"{sanitize_identifier(field)} {'ASC' if direction == 1 else 'DESC'}" for field, direction in sort.items()]
