"""
插入值格式化

按目标列类型把结果行中的值转换为可直接绑定的参数值（asyncpg 按列类型校验参数）。
转换失败抛出 ValueFormatError，由物化流程计入失败行。
"""

import json
from datetime import date, datetime, time, timezone
from decimal import Decimal, InvalidOperation
from email.utils import parsedate_to_datetime
from typing import Any

from loguru import logger

_EMPTY_DATES = {"", "0000-00-00", "0000-00-00 00:00:00"}
_UTC_MARKERS = ("GMT", "UTC", "Coordinated Universal Time")

_TRUTHY = {"true", "1", "yes", "y", "on", "active", "enabled", "t"}
_FALSY = {"false", "0", "no", "n", "off", "inactive", "disabled", "f"}

_INTEGER_TYPES = frozenset(
    {"SMALLINT", "INTEGER", "BIGINT", "INT", "INT2", "INT4", "INT8", "SMALLSERIAL", "SERIAL", "BIGSERIAL"}
)
_FLOAT_TYPES = frozenset({"REAL", "DOUBLE PRECISION", "DOUBLE", "FLOAT", "FLOAT4", "FLOAT8"})


class ValueFormatError(ValueError):
    """值无法转换为目标列类型"""


def _base_type(sql_type: str) -> str:
    """去掉长度后的大写类型名，如 NUMERIC(10,2) -> NUMERIC"""
    return sql_type.split("(", 1)[0].strip().upper()


def _is_temporal(base: str) -> bool:
    return "DATE" in base or "TIME" in base


def parse_datetime(value: Any) -> datetime | None:
    """
    解析日期时间

    支持 datetime / date、时间戳（毫秒）、ISO 8601 以及带 GMT / UTC 的 RFC 2822 风格字符串。
    空字符串与 0000-00-00 视为空值。

    Raises:
        ValueFormatError: 无法解析
    """
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, int | float) and not isinstance(value, bool):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if not isinstance(value, str):
        raise ValueFormatError(f"无法解析为日期: {value!r}")

    text = value.strip()
    if text in _EMPTY_DATES:
        return None

    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        pass

    if any(marker in text for marker in _UTC_MARKERS):
        # JS Date.toString(): "Mon Jan 15 2024 10:00:00 GMT+0000 (Coordinated Universal Time)"
        candidate = text.split(" (", 1)[0]
        for fmt in ("%a %b %d %Y %H:%M:%S GMT%z", "%a %b %d %Y %H:%M:%S UTC%z"):
            try:
                return datetime.strptime(candidate, fmt)
            except ValueError:
                continue
        try:
            return parsedate_to_datetime(candidate)
        except (TypeError, ValueError):
            pass
        date_part = candidate.split(" GMT", 1)[0].split(" UTC", 1)[0]
        try:
            return datetime.fromisoformat(date_part)
        except ValueError:
            pass

    raise ValueFormatError(f"无法解析为日期: {value!r}")


def _coerce_temporal(value: Any, base: str) -> Any:
    parsed = parse_datetime(value)
    if parsed is None:
        return None
    if base == "DATE":
        return parsed.date()
    if base.startswith("TIME") and not base.startswith("TIMESTAMP"):
        return parsed.timetz() if "WITH TIME ZONE" in base else parsed.time().replace(tzinfo=None)
    if "WITH TIME ZONE" in base or base == "TIMESTAMPTZ":
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    # TIMESTAMP 不带时区：统一换算为 UTC 后去掉时区
    if parsed.tzinfo:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _coerce_numeric(value: Any, base: str) -> Any:
    if isinstance(value, bool):
        value = int(value)
    try:
        number = Decimal(str(value).strip())
    except InvalidOperation as e:
        raise ValueFormatError(f"非数值: {value!r}") from e
    if not number.is_finite():
        raise ValueFormatError(f"非有限数值: {value!r}")

    if base in _INTEGER_TYPES:
        if number != number.to_integral_value():
            raise ValueFormatError(f"非整数: {value!r}")
        return int(number)
    if base in _FLOAT_TYPES:
        return float(number)
    return number


def _coerce_boolean(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    normalized = str(value).strip().lower()
    if normalized in _TRUTHY:
        return True
    if normalized in _FALSY:
        return False
    logger.warning(f"⚠️ 无法识别的布尔值，按 NULL 处理: {value!r}")
    return None


def coerce_value(value: Any, sql_type: str) -> Any:
    """
    按目标列类型转换值

    Args:
        value: 结果行中的原始值
        sql_type: 目标列类型（CREATE TABLE 中使用的类型）

    Returns:
        可绑定的参数值

    Raises:
        ValueFormatError: 日期或数值无法转换
    """
    if value is None:
        return None

    base = _base_type(sql_type)

    if base in ("JSON", "JSONB"):
        if isinstance(value, str):
            stripped = value.strip()
            if stripped.startswith(("{", "[")):
                try:
                    json.loads(stripped)
                    return stripped
                except ValueError:
                    pass
        return json.dumps(value, ensure_ascii=False, default=str)

    if _is_temporal(base):
        return _coerce_temporal(value, base)

    if isinstance(value, str) and any(marker in value for marker in _UTC_MARKERS):
        try:
            parsed = parse_datetime(value)
        except ValueFormatError:
            parsed = None
        if parsed is not None:
            logger.warning(f"⚠️ 自动识别为日期字符串 (声明类型 {sql_type}): {value[:60]}")
            if base in ("TEXT", "VARCHAR", "CHAR", "CHARACTER VARYING"):
                return parsed.isoformat()
            return _coerce_temporal(parsed, "TIMESTAMP")

    if base in ("NUMERIC", "DECIMAL", "MONEY") or base in _INTEGER_TYPES or base in _FLOAT_TYPES:
        return _coerce_numeric(value, base)

    if base in ("BOOLEAN", "BOOL"):
        return _coerce_boolean(value)

    if base == "BYTEA":
        return value if isinstance(value, bytes) else str(value).encode("utf-8")

    if isinstance(value, datetime | date | time):
        return value.isoformat()
    if isinstance(value, dict | list):
        return json.dumps(value, ensure_ascii=False, default=str)
    return str(value)
