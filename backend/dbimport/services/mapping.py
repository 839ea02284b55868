"""Column mapping: rules, row conversion, preview and validation."""

from __future__ import annotations

import logging
import re
from datetime import date
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator
from rapidfuzz.distance import Levenshtein

from dbimport.core.errors import MappingValidationError
from dbimport.services.column_types import default_value_matches_type, value_matches_type
from dbimport.services.row_source import RowSource
from dbimport.services.table_inspector import ColumnInfo

logger = logging.getLogger(__name__)

KEEP_CURRENT = "__keep_current__"
CURRENT_DATA_PLACEHOLDER = "[CURRENT DATA]"
PREVIEW_ROWS = 10
SUGGESTION_THRESHOLD = 0.6

_BACKSLASH_DATE_RE = re.compile(r"^(\d{4})\\(\d{1,2})\\(\d{1,2})$")
_WHITESPACE = " \t\r\n\f\v"
_TRIM_CHARS = " \t\n\r\0\x0b"
_ASCII_UPPER = str.maketrans("abcdefghijklmnopqrstuvwxyz", "ABCDEFGHIJKLMNOPQRSTUVWXYZ")
_ASCII_LOWER = str.maketrans("ABCDEFGHIJKLMNOPQRSTUVWXYZ", "abcdefghijklmnopqrstuvwxyz")


class Transform(str, Enum):
    NONE = "none"
    TRIM = "trim"
    UPPERCASE = "uppercase"
    LOWERCASE = "lowercase"
    CAPITALIZE = "capitalize"


class MappingRule(BaseModel):
    """How one target column gets its value."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    skip: bool = False
    source_field: str = Field(
        default="", validation_alias=AliasChoices("source_field", "csv_field")
    )
    default_value: str = ""
    transform: Transform = Transform.NONE
    allow_null: bool = False

    @field_validator("transform", mode="before")
    @classmethod
    def empty_transform_is_none(cls, v: Any) -> Any:
        if v is None or v == "":
            return Transform.NONE
        return v

    @field_validator("source_field", "default_value", mode="before")
    @classmethod
    def none_is_empty(cls, v: Any) -> Any:
        return "" if v is None else v


ColumnMapping = dict[str, MappingRule]


def parse_mapping(data: dict[str, Any]) -> ColumnMapping:
    """Validate raw mapping data into rules; errors name the offending column."""
    if not isinstance(data, dict) or not data:
        raise MappingValidationError("Invalid mapping data")
    mapping: ColumnMapping = {}
    errors = []
    for column, raw_rule in data.items():
        if isinstance(raw_rule, MappingRule):
            mapping[column] = raw_rule
            continue
        try:
            mapping[column] = MappingRule.model_validate(raw_rule)
        except ValidationError as e:
            details = ", ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'rule'}: {err['msg']}"
                for err in e.errors()
            )
            errors.append(f'Invalid property "{column}": {details}')
    if errors:
        raise MappingValidationError(errors)
    return mapping


def dump_mapping(mapping: ColumnMapping) -> dict[str, dict[str, Any]]:
    return {column: rule.model_dump(mode="json") for column, rule in mapping.items()}


# -- transforms ------------------------------------------------------------


def _capitalize_words(value: str) -> str:
    chars = list(value.translate(_ASCII_LOWER))
    at_word_start = True
    for i, char in enumerate(chars):
        if at_word_start:
            chars[i] = char.translate(_ASCII_UPPER)
        at_word_start = char in _WHITESPACE
    return "".join(chars)


def reformat_backslash_date(value: str) -> str:
    """``2005\\12\\22`` -> ``2005-12-22``; anything else is returned as is."""
    match = _BACKSLASH_DATE_RE.match(value)
    if not match:
        return value
    try:
        return date(*(int(part) for part in match.groups())).isoformat()
    except ValueError:
        return value


def apply_transform(value: str, transform: Transform) -> str:
    if transform is Transform.TRIM:
        return value.strip(_TRIM_CHARS)
    if transform is Transform.UPPERCASE:
        return value.translate(_ASCII_UPPER)
    if transform is Transform.LOWERCASE:
        return value.translate(_ASCII_LOWER)
    if transform is Transform.CAPITALIZE:
        return _capitalize_words(value)
    return reformat_backslash_date(value)


# -- row conversion --------------------------------------------------------

_OMIT = object()


def build_raw_row(headers: list[str], fields: list[str]) -> dict[str, str]:
    return dict(zip(headers, fields))


def _resolve_source(raw_row: dict[str, str], source_field: str) -> str | None:
    if source_field in raw_row:
        return raw_row[source_field]
    if source_field.isdigit():
        values = list(raw_row.values())
        index = int(source_field)
        if index < len(values):
            return values[index]
    return None


def apply_rule(raw_row: dict[str, str], rule: MappingRule, allow_null: bool = False) -> Any:
    """Resolve one target column.

    Returns the value, ``None`` for SQL NULL, or the module sentinel
    ``_OMIT`` when the column must not appear in the record at all.
    """
    if rule.skip:
        return _OMIT
    if rule.source_field == KEEP_CURRENT:
        return _OMIT

    value = None
    if rule.source_field:
        value = _resolve_source(raw_row, rule.source_field)
    if value is None:
        value = rule.default_value or ""

    value = apply_transform(value, rule.transform)

    if value == "" and rule.allow_null and allow_null:
        return None
    return value


def map_row(raw_row: dict[str, str], mapping: ColumnMapping, allow_null: bool = False) -> dict[str, Any]:
    """Convert one source row into a column -> value record."""
    record = {}
    for column, rule in mapping.items():
        value = apply_rule(raw_row, rule, allow_null)
        if value is _OMIT:
            continue
        record[column] = value
    return record


# -- preview, suggestions, validation ---------------------------------------


def generate_preview(
    source: RowSource, mapping: ColumnMapping, allow_null: bool = True, limit: int = PREVIEW_ROWS
) -> list[dict[str, Any]]:
    """Map the first ``limit`` rows of an opened source for display."""
    preview = []
    while len(preview) < limit:
        fields = source.next_row()
        if fields is None:
            break
        raw_row = build_raw_row(source.headers, fields)
        row = map_row(raw_row, mapping, allow_null)
        for column, rule in mapping.items():
            if not rule.skip and rule.source_field == KEEP_CURRENT:
                row[column] = CURRENT_DATA_PLACEHOLDER
        preview.append(row)
    return preview


def _normalize_name(name: str) -> str:
    return re.sub(r"[^a-z0-9]", "", name.lower())


def similarity(a: str, b: str) -> float:
    """1 - edit distance / longer length, over lowercased alphanumerics."""
    a, b = _normalize_name(a), _normalize_name(b)
    if not a and not b:
        return 0.0
    return Levenshtein.normalized_similarity(a, b)


def suggest_mapping(headers: list[str], columns: list[str]) -> dict[str, str | None]:
    """Best-matching header for each column, or None below the threshold."""
    suggestions: dict[str, str | None] = {}
    for column in columns:
        best_match, best_score = None, 0.0
        for header in headers:
            score = similarity(column, header)
            if score > best_score and score > SUGGESTION_THRESHOLD:
                best_match, best_score = header, score
        suggestions[column] = best_match
    return suggestions


def validate_mapping(mapping: ColumnMapping, columns: list[ColumnInfo]) -> None:
    """Reject unknown target columns and defaults that don't fit the column type."""
    by_name = {column.name: column for column in columns}
    errors = []
    for name, rule in mapping.items():
        column = by_name.get(name)
        if column is None:
            errors.append(f'Unknown column "{name}"')
            continue
        if rule.default_value and not default_value_matches_type(rule.default_value, column.sql_type):
            errors.append(
                f'Invalid default value "{rule.default_value}" for field "{name}" '
                f"(type: {column.sql_type})"
            )
    if errors:
        logger.debug(f"Mapping rejected: {errors}")
        raise MappingValidationError(errors)


def validate_import_data(
    mapping: ColumnMapping, columns: list[ColumnInfo], preview: list[dict[str, Any]]
) -> dict[str, list[str]]:
    """Check required-column coverage and preview values against column types."""
    results: dict[str, list[str]] = {"errors": [], "warnings": []}
    for column in columns:
        rule = mapping.get(column.name)
        mapped = rule is not None and not rule.skip and (rule.source_field or rule.default_value)
        if column.is_required and not mapped:
            results["errors"].append(f'Required field "{column.name}" is not mapped')
            continue
        if rule is None or rule.skip:
            continue
        if rule.source_field == KEEP_CURRENT:
            if not column.nullable and not column.has_default:
                results["warnings"].append(
                    f'Field "{column.name}" keeps current data; new rows will have no value'
                )
            continue
        for index, row in enumerate(preview, start=1):
            value = row.get(column.name)
            if value and not value_matches_type(value, column.sql_type):
                results["errors"].append(
                    f'Invalid data type for field "{column.name}" in row {index}'
                )
    return results
