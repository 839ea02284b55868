"""Check string values against SQL column types.

Used for mapping default values and preview rows before an import starts.
Types are matched on their base name (``varchar(255)`` -> ``varchar``);
unknown types are accepted.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime

logger = logging.getLogger(__name__)

SPECIAL_DEFAULTS = {"NULL", "CURRENT_TIMESTAMP", "NOW()", "[CURRENT DATA]", "[AUTO INCREMENT]"}
SPECIAL_DATE_VALUES = {
    "CURRENT_TIMESTAMP",
    "CURRENT_TIMESTAMP()",
    "NOW()",
    "NOW",
    "CURRENT_DATE()",
    "CURRENT_DATE",
    "NULL",
}
BOOLEAN_WORDS = {"0", "1", "true", "false", "yes", "no"}

INTEGER_TYPES = {"smallint", "mediumint", "int", "integer", "bigint", "serial", "bigserial"}
NUMERIC_TYPES = {"decimal", "numeric", "float", "double", "real"}
TEXT_TYPES = {"text", "tinytext", "mediumtext", "longtext", "clob"}
BINARY_TYPES = {"blob", "tinyblob", "mediumblob", "longblob", "binary", "varbinary", "bytea"}

DATE_FORMATS = [
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d",
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y",
    "%m-%d-%Y %H:%M:%S",
    "%m-%d-%Y",
    "%d/%m/%Y %H:%M:%S",
    "%d/%m/%Y",
    "%d-%m-%Y %H:%M:%S",
    "%d-%m-%Y",
    "%Y/%m/%d %H:%M:%S",
    "%Y/%m/%d",
    "%Y.%m.%d",
    "%d.%m.%Y %H:%M:%S",
    "%d.%m.%Y",
    "%d/%m/%y",
    "%m/%d/%y",
    "%y-%m-%d",
    "%y/%m/%d",
]

_TYPE_RE = re.compile(r"^\s*([a-z]+)(?:\s*\(([^)]*)\))?", re.IGNORECASE)
_TIME_RE = re.compile(r"^([0-1][0-9]|2[0-3]):[0-5][0-9](:[0-5][0-9])?$")
_NUMBER_RE = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")


def parse_type(sql_type: str) -> tuple[str, str]:
    """Split ``varchar(255)`` into (``varchar``, ``255``)."""
    match = _TYPE_RE.match(sql_type or "")
    if not match:
        return "", ""
    name = match.group(1).lower()
    if name == "character" and "varying" in sql_type.lower():
        name = "varchar"
    return name, (match.group(2) or "").strip()


def is_numeric(value: str) -> bool:
    return bool(_NUMBER_RE.match(value.strip()))


def is_integer(value: str) -> bool:
    return is_numeric(value) and "." not in value and "e" not in value.lower()


def is_date(value: str) -> bool:
    value = value.replace("\\", "-")
    for fmt in DATE_FORMATS:
        try:
            datetime.strptime(value, fmt)
            return True
        except ValueError:
            continue
    try:
        datetime.fromisoformat(value)
        return True
    except ValueError:
        return False


def _enum_values(constraint: str) -> list[str]:
    return [v.strip().strip("'\"") for v in constraint.split(",")]


def value_matches_type(value: str | None, sql_type: str) -> bool:
    """True when ``value`` can be stored in a column of ``sql_type``."""
    if value is None or value == "" or value == "[CURRENT DATA]":
        return True
    value = str(value)
    name, constraint = parse_type(sql_type)

    if name in ("tinyint", "boolean", "bool"):
        if name != "tinyint" or constraint == "1":
            return value.strip().lower() in BOOLEAN_WORDS or is_numeric(value)
        return is_integer(value)
    if name in INTEGER_TYPES:
        return is_integer(value)
    if name in NUMERIC_TYPES:
        return is_numeric(value)
    if name in ("date", "datetime", "timestamp"):
        return value.upper() in SPECIAL_DATE_VALUES or is_date(value)
    if name == "time":
        return bool(_TIME_RE.match(value))
    if name == "year":
        return is_integer(value) and len(value) == 4
    if name in ("char", "varchar"):
        if constraint.isdigit():
            return len(value) <= int(constraint)
        return True
    if name in TEXT_TYPES or name in BINARY_TYPES:
        return True
    if name == "enum":
        return not constraint or value in _enum_values(constraint)
    if name == "set":
        if not constraint:
            return True
        allowed = _enum_values(constraint)
        return all(item.strip() in allowed for item in value.split(","))
    if name in ("json", "jsonb"):
        try:
            json.loads(value)
            return True
        except ValueError:
            return False

    logger.debug(f"Unknown column type '{sql_type}', skipping validation")
    return True


def default_value_matches_type(value: str, sql_type: str) -> bool:
    """Like :func:`value_matches_type`, letting SQL keywords through."""
    if value.upper() in SPECIAL_DEFAULTS:
        return True
    return value_matches_type(value, sql_type)
