"""Sample-based column type inference and value coercion."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import pandas as pd
from sqlalchemy import Boolean, Date, DateTime, Integer, Numeric

from config import settings
from services.errors import FileParseError


class ColumnType(str, Enum):
    TEXT = "text"
    INTEGER = "integer"
    DECIMAL = "decimal"
    DATE = "date"
    BOOLEAN = "boolean"


@dataclass(frozen=True)
class ColumnSchema:
    name: str
    type: ColumnType = ColumnType.TEXT
    nullable: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "type": self.type.value, "nullable": self.nullable}


_BOOLEAN_PATTERN = re.compile(r"^(true|false|yes|no|1|0)$", re.IGNORECASE)
_INTEGER_PATTERN = re.compile(r"^-?\d+$")
_DECIMAL_PATTERN = re.compile(r"^-?\d+\.?\d*$")
_DATE_PATTERNS = (
    re.compile(r"^\d{4}-\d{2}-\d{2}"),
    re.compile(r"^\d{1,2}/\d{1,2}/\d{2,4}"),
    re.compile(r"^\d{1,2}-\d{1,2}-\d{2,4}"),
)

_TRUE_TOKENS = {"true", "yes", "1"}

# BIGINT bounds
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    return str(value).strip() == ""


def _parse_date(value: str) -> Optional[date]:
    if not any(pattern.match(value) for pattern in _DATE_PATTERNS):
        return None
    parsed = pd.to_datetime(value, errors="coerce", format="mixed")
    if parsed is None or pd.isna(parsed):
        return None
    return parsed.date()


def _all_match(values: Sequence[str], pattern: re.Pattern) -> bool:
    return all(pattern.match(value) for value in values)


def _fits_int64(value: str) -> bool:
    if len(value.lstrip("-")) > 19:
        return False
    return _INT64_MIN <= int(value) <= _INT64_MAX


def infer_column_type(values: Iterable[Any]) -> ColumnSchema:
    """Infer the narrowest type for one column from its sampled values.

    Returns a nameless schema; callers attach the column name. Empty values are
    ignored for the decision and only make the column nullable.
    """
    non_empty: List[str] = []
    nullable = False
    for value in values:
        if _is_empty(value):
            nullable = True
            continue
        non_empty.append(str(value).strip())

    if not non_empty:
        return ColumnSchema(name="", type=ColumnType.TEXT, nullable=True)

    if _all_match(non_empty, _BOOLEAN_PATTERN):
        column_type = ColumnType.BOOLEAN
    elif _all_match(non_empty, _INTEGER_PATTERN) and all(_fits_int64(value) for value in non_empty):
        column_type = ColumnType.INTEGER
    elif _all_match(non_empty, _DECIMAL_PATTERN):
        column_type = ColumnType.DECIMAL
    elif all(_parse_date(value) is not None for value in non_empty):
        column_type = ColumnType.DATE
    else:
        column_type = ColumnType.TEXT
    return ColumnSchema(name="", type=column_type, nullable=nullable)


def infer_columns(
    columns: Sequence[str],
    sample_rows: Sequence[Mapping[str, Any]],
    sample_size: Optional[int] = None,
) -> List[ColumnSchema]:
    """Derive an ordered column schema from the first rows of a file.

    A header-only file still yields one nullable text column per header.
    """
    limit = sample_size or settings.TYPE_SAMPLE_SIZE
    sample = list(sample_rows[:limit])
    schema: List[ColumnSchema] = []
    for name in columns:
        inferred = infer_column_type(row.get(name) for row in sample)
        schema.append(ColumnSchema(name=name, type=inferred.type, nullable=inferred.nullable))
    return schema


def coerce_value(raw: Any, column: ColumnSchema, row_number: Optional[int] = None) -> Any:
    """Convert a raw field to the Python value bound for ``column``."""
    if _is_empty(raw):
        return None
    value = str(raw).strip()
    column_type = column.type

    def _reject() -> FileParseError:
        where = f" at row {row_number}" if row_number is not None else ""
        return FileParseError(
            f"Value {value!r}{where} in column '{column.name}' is not a valid {column_type.value}.",
            details={"row": row_number, "column": column.name, "expected": column_type.value},
        )

    if column_type == ColumnType.TEXT:
        return value
    if column_type == ColumnType.BOOLEAN:
        if not _BOOLEAN_PATTERN.match(value):
            raise _reject()
        return value.lower() in _TRUE_TOKENS
    if column_type == ColumnType.INTEGER:
        if not _INTEGER_PATTERN.match(value):
            raise _reject()
        if not _fits_int64(value):
            where = f" at row {row_number}" if row_number is not None else ""
            raise FileParseError(
                f"Value {value!r}{where} in column '{column.name}' is outside the integer range.",
                details={"row": row_number, "column": column.name, "expected": column_type.value},
            )
        return int(value)
    if column_type == ColumnType.DECIMAL:
        if not _DECIMAL_PATTERN.match(value):
            raise _reject()
        return Decimal(value)
    if column_type == ColumnType.DATE:
        parsed = _parse_date(value)
        if parsed is None:
            raise _reject()
        return parsed
    return value


def coerce_row(
    row: Mapping[str, Any],
    columns: Sequence[ColumnSchema],
    row_number: Optional[int] = None,
) -> Dict[str, Any]:
    return {column.name: coerce_value(row.get(column.name), column, row_number) for column in columns}


def column_type_from_sql(sql_type: Any) -> ColumnType:
    """Map a reflected SQLAlchemy column type back onto a ColumnType."""
    if isinstance(sql_type, Boolean):
        return ColumnType.BOOLEAN
    if isinstance(sql_type, Integer):
        return ColumnType.INTEGER
    if isinstance(sql_type, Numeric):
        return ColumnType.DECIMAL
    if isinstance(sql_type, (Date, DateTime)):
        return ColumnType.DATE
    return ColumnType.TEXT

