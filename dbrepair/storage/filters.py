"""
Compile filter expressions into SQLAlchemy clauses against a reflected table.
"""
from datetime import date, datetime, time
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy import Column, Table, and_, or_
from sqlalchemy.sql.elements import ColumnElement

from dbrepair.domain.models import And, Contains, Eq, Filter, In, Or
from dbrepair.exceptions import QueryError, ValidationError

_TRUE_STRINGS = ("true", "t", "1", "yes", "y", "on")
_FALSE_STRINGS = ("false", "f", "0", "no", "n", "off")


def column_for(table: Table, name: str) -> Column:
    try:
        return table.c[name]
    except KeyError:
        raise QueryError(f"Unknown field {name!r} on table {table.fullname!r}") from None


def _python_type(column: Column):
    try:
        return column.type.python_type
    except NotImplementedError:
        return None


def coerce_value(column: Column, value: Any) -> Any:
    """
    Convert string input to the column's Python type.

    Booleans, numbers and ISO 8601 dates, times and timestamps are converted;
    everything else is bound as given and left to the driver.
    """
    if not isinstance(value, str):
        return value
    py_type = _python_type(column)
    if py_type is bool:
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
        raise ValidationError(f"Expected a boolean for {column.name!r}, got {value!r}")
    if py_type is int:
        # MySQL booleans are TINYINT(1)
        lowered = value.strip().lower()
        if lowered in ("true", "false"):
            return int(lowered == "true")
        try:
            return int(value)
        except ValueError:
            raise ValidationError(f"Expected an integer for {column.name!r}, got {value!r}") from None
    if py_type is float:
        try:
            return float(value)
        except ValueError:
            raise ValidationError(f"Expected a number for {column.name!r}, got {value!r}") from None
    if py_type is Decimal:
        try:
            return Decimal(value.strip())
        except InvalidOperation:
            raise ValidationError(f"Expected a decimal for {column.name!r}, got {value!r}") from None
    for temporal in (datetime, date, time):
        if py_type is temporal:
            try:
                return temporal.fromisoformat(value.strip())
            except ValueError:
                raise ValidationError(
                    f"Expected an ISO 8601 {temporal.__name__} for {column.name!r}, got {value!r}"
                ) from None
    return value


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def compile_filter(table: Table, expr: Filter) -> ColumnElement:
    """Build a WHERE clause for *expr*."""
    if isinstance(expr, Eq):
        column = column_for(table, expr.field)
        if expr.value is None:
            return column.is_(None)
        return column == coerce_value(column, expr.value)
    if isinstance(expr, Contains):
        column = column_for(table, expr.field)
        return column.like(f"%{_escape_like(expr.text)}%", escape="\\")
    if isinstance(expr, In):
        column = column_for(table, expr.field)
        return column.in_([coerce_value(column, v) for v in expr.values])
    if isinstance(expr, And):
        return and_(*(compile_filter(table, c) for c in expr.clauses))
    if isinstance(expr, Or):
        return or_(*(compile_filter(table, c) for c in expr.clauses))
    raise ValidationError(f"Unsupported filter: {expr!r}")


def coerce_values(table: Table, values: dict) -> dict:
    """Coerce a write payload to the table's column types."""
    return {name: coerce_value(column_for(table, name), value) for name, value in values.items()}
