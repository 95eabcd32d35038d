"""
Request, filter and result models.

Requests are a tagged variant (ReadRequest | WriteRequest | RawQuery) so the
operation kind is explicit and validated at construction time. All models are
frozen: a request is built once per invocation and never mutated.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from dbrepair.exceptions import ValidationError

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_$]*$")

# Leading keywords accepted for read-only raw queries
READ_ONLY_KEYWORDS = ("select", "with", "show", "describe", "desc", "explain", "pragma")

# SQLite pragmas whose parenthesized argument names an object instead of setting a value
QUERY_PRAGMAS = (
    "table_info",
    "table_xinfo",
    "table_list",
    "index_list",
    "index_info",
    "index_xinfo",
    "foreign_key_list",
    "foreign_key_check",
    "integrity_check",
    "quick_check",
)

_PRAGMA = re.compile(r"^pragma\s+(?:\w+\.)?(\w+)\s*(\(|=)?", re.IGNORECASE)


class OperationKind(str, Enum):
    READ = "read"
    WRITE = "write"
    RAW = "raw"


def check_identifier(name: str, what: str = "field") -> str:
    """Validate a column name. Raises ValidationError on anything but a plain identifier."""
    if not isinstance(name, str) or not _IDENTIFIER.match(name):
        raise ValidationError(f"Invalid {what} name: {name!r}")
    return name


def check_table_name(name: str) -> str:
    """Validate a table name, optionally schema-qualified (``schema.table``)."""
    if not isinstance(name, str) or not name:
        raise ValidationError(f"Invalid table name: {name!r}")
    parts = name.split(".")
    if len(parts) > 2:
        raise ValidationError(f"Invalid table name: {name!r}")
    for part in parts:
        check_identifier(part, "table")
    return name


# ============ FILTER EXPRESSIONS ============

@dataclass(frozen=True)
class Eq:
    """``field = value``; a value of None means ``field IS NULL``."""
    field: str
    value: Any

    def __post_init__(self):
        check_identifier(self.field)


@dataclass(frozen=True)
class Contains:
    """Substring match on a text column."""
    field: str
    text: str

    def __post_init__(self):
        check_identifier(self.field)
        if not isinstance(self.text, str) or self.text == "":
            raise ValidationError(f"Contains filter on {self.field!r} needs a non-empty string")


@dataclass(frozen=True)
class In:
    """Set membership."""
    field: str
    values: Tuple[Any, ...]

    def __post_init__(self):
        check_identifier(self.field)
        values = tuple(self.values)
        if not values:
            raise ValidationError(f"In filter on {self.field!r} needs at least one value")
        object.__setattr__(self, "values", values)


@dataclass(frozen=True, init=False)
class And:
    clauses: Tuple["Filter", ...]

    def __init__(self, *clauses: "Filter"):
        if not clauses:
            raise ValidationError("And() needs at least one clause")
        object.__setattr__(self, "clauses", tuple(clauses))


@dataclass(frozen=True, init=False)
class Or:
    clauses: Tuple["Filter", ...]

    def __init__(self, *clauses: "Filter"):
        if not clauses:
            raise ValidationError("Or() needs at least one clause")
        object.__setattr__(self, "clauses", tuple(clauses))


Filter = Union[Eq, Contains, In, And, Or]
FILTER_TYPES = (Eq, Contains, In, And, Or)


def as_filter(obj: Union[Filter, Mapping[str, Any], None]) -> Optional[Filter]:
    """
    Normalize filter input.

    Accepts a filter expression, a mapping (AND of equalities; list, tuple
    and set values become ``In``), or None.
    """
    if obj is None:
        return None
    if isinstance(obj, FILTER_TYPES):
        return obj
    if isinstance(obj, Mapping):
        if not obj:
            return None
        clauses = []
        for name, value in obj.items():
            if isinstance(value, (list, tuple, set, frozenset)):
                clauses.append(In(name, tuple(value)))
            else:
                clauses.append(Eq(name, value))
        return clauses[0] if len(clauses) == 1 else And(*clauses)
    raise ValidationError(f"Unsupported filter: {obj!r}")


def filter_fields(expr: Optional[Filter]) -> List[str]:
    """Field names referenced by a filter, in first-seen order."""
    if expr is None:
        return []
    if isinstance(expr, (And, Or)):
        seen: List[str] = []
        for clause in expr.clauses:
            for name in filter_fields(clause):
                if name not in seen:
                    seen.append(name)
        return seen
    return [expr.field]


# ============ REQUESTS ============

@dataclass(frozen=True)
class ReadRequest:
    """Filtered lookup against one table."""
    table: str
    filter: Optional[Filter] = None
    fields: Tuple[str, ...] = ()
    limit: Optional[int] = None
    order_by: Optional[str] = None
    descending: bool = False
    required: bool = False

    kind = OperationKind.READ

    def __post_init__(self):
        check_table_name(self.table)
        object.__setattr__(self, "filter", as_filter(self.filter))
        object.__setattr__(self, "fields", tuple(check_identifier(f) for f in self.fields))
        if self.order_by is not None:
            check_identifier(self.order_by)
        if self.limit is not None and (not isinstance(self.limit, int) or self.limit < 1):
            raise ValidationError(f"limit must be a positive integer, got {self.limit!r}")


@dataclass(frozen=True)
class WriteRequest:
    """
    Filtered update against exactly one table.

    An explicit, non-empty filter is mandatory: unfiltered bulk mutation is
    rejected here, before any connection is touched.
    """
    table: str
    filter: Filter
    values: Mapping[str, Any] = field(default_factory=dict)

    kind = OperationKind.WRITE

    def __post_init__(self):
        check_table_name(self.table)
        normalized = as_filter(self.filter)
        if normalized is None:
            raise ValidationError(
                f"Refusing unfiltered write to {self.table!r}: a filter or key is required"
            )
        object.__setattr__(self, "filter", normalized)
        if not self.values:
            raise ValidationError(f"Write to {self.table!r} has no values to set")
        for name in self.values:
            check_identifier(name)
        object.__setattr__(self, "values", dict(self.values))


@dataclass(frozen=True)
class RawQuery:
    """Literal SQL passed through to the store."""
    sql: str
    params: Optional[Mapping[str, Any]] = None
    read_only: bool = True

    kind = OperationKind.RAW

    def __post_init__(self):
        if not isinstance(self.sql, str) or not self.sql.strip():
            raise ValidationError("Raw query is empty")
        if self.read_only and self.leading_keyword() not in READ_ONLY_KEYWORDS:
            raise ValidationError(
                f"Only read statements are allowed without --write (got {self.leading_keyword().upper()!r})"
            )
        if self.read_only and self.leading_keyword() == "pragma" and self.pragma_sets_value():
            raise ValidationError("PRAGMA assignments are not allowed without --write")
        object.__setattr__(self, "params", dict(self.params or {}))

    def pragma_sets_value(self) -> bool:
        match = _PRAGMA.match(self.sql.strip())
        if not match:
            return True
        name, argument = match.group(1).lower(), match.group(2)
        if argument == "=":
            return True
        return argument == "(" and name not in QUERY_PRAGMAS

    def leading_keyword(self) -> str:
        stripped = self.sql.lstrip(" \t\r\n(")
        match = re.match(r"[A-Za-z]+", stripped)
        return match.group(0).lower() if match else ""


OperationRequest = Union[ReadRequest, WriteRequest, RawQuery]


# ============ RESULTS ============

@dataclass
class OperationResult:
    """Outcome of one executed request. Consumed once by the formatter."""
    kind: OperationKind
    rows: List[Dict[str, Any]] = field(default_factory=list)
    columns: List[str] = field(default_factory=list)
    affected_count: Optional[int] = None
    error: Optional[str] = None
    table: Optional[str] = None

    @property
    def row_count(self) -> int:
        return len(self.rows)

    @property
    def ok(self) -> bool:
        return self.error is None


def ordered_columns(rows: Iterable[Mapping[str, Any]], preferred: Iterable[str] = ()) -> List[str]:
    """Preferred columns first, then any other keys in first-seen order."""
    columns = list(preferred)
    for row in rows:
        for key in row:
            if key not in columns:
                columns.append(key)
    return columns


def describe_filter(expr: Optional[Filter]) -> str:
    """Human-readable rendering of a filter, for messages and logs."""
    if expr is None:
        return "(all rows)"
    if isinstance(expr, Eq):
        return f"{expr.field} IS NULL" if expr.value is None else f"{expr.field} = {expr.value!r}"
    if isinstance(expr, Contains):
        return f"{expr.field} CONTAINS {expr.text!r}"
    if isinstance(expr, In):
        return f"{expr.field} IN ({', '.join(repr(v) for v in expr.values)})"
    joiner = " AND " if isinstance(expr, And) else " OR "
    parts = [describe_filter(c) for c in expr.clauses]
    return parts[0] if len(parts) == 1 else "(" + joiner.join(parts) + ")"
