"""
Schema repairs.

EnsureColumnRepair brings a table to a known column layout:

    target present                 -> DONE, count 0
    legacy present, target missing -> RENAME COLUMN legacy TO target
    neither present                -> ADD COLUMN target

Column existence is always read fresh from the store, never from a cached
reflection.
"""
import re
from typing import List, Optional

from dbrepair.domain.models import RawQuery, check_identifier, check_table_name
from dbrepair.exceptions import ValidationError, VerificationMismatch
from dbrepair.monitoring.logger import get_logger
from dbrepair.repair.operation import RepairOperation
from dbrepair.storage.db import ConnectionHandle
from dbrepair.storage.executor import execute
from dbrepair.storage.introspection import column_names

logger = get_logger(__name__)

# e.g. TEXT, INTEGER, VARCHAR(191), NUMERIC(10, 2), DOUBLE PRECISION
_COLUMN_TYPE = re.compile(r"^[A-Za-z]+( [A-Za-z]+)?\s*(\(\s*\d+(\s*,\s*\d+)?\s*\))?$")


class EnsureColumnRepair(RepairOperation):
    """Make sure *column* exists on *table*, renaming *legacy_name* when present."""

    name = "ensure-column"
    require_existence = False

    def __init__(
        self,
        table: str,
        column: str,
        legacy_name: Optional[str] = None,
        column_type: str = "VARCHAR(191)",
        nullable: bool = True,
    ):
        super().__init__()
        self.table = check_table_name(table)
        self.column = check_identifier(column, "column")
        self.legacy_name = check_identifier(legacy_name, "column") if legacy_name else None
        if self.legacy_name == self.column:
            raise ValidationError("ensure-column legacy name and column name are identical")
        column_type = (column_type or "").strip()
        if not _COLUMN_TYPE.match(column_type):
            raise ValidationError(f"Unsupported column type: {column_type!r}")
        self.column_type = column_type.upper()
        self.nullable = nullable
        self.action: Optional[str] = None

    def describe_target(self) -> str:
        return f"{self.table}.{self.column}"

    def check(self, handle: ConnectionHandle) -> int:
        columns = column_names(handle, self.table)
        if self.column in columns:
            self.action = None
            self.report.before = "present"
            self.report.after = "present"
        elif self.legacy_name and self.legacy_name in columns:
            self.action = "rename"
            self.report.before = f"legacy:{self.legacy_name}"
            self.report.after = "present"
        else:
            self.action = "add"
            self.report.before = "missing"
            self.report.after = "present"
        logger.info(
            "REPAIR_CHECKED",
            repair=self.name,
            table=self.table,
            column=self.column,
            action=self.action,
        )
        return 1 if self.action else 0

    def _quote(self, handle: ConnectionHandle, name: str) -> str:
        return handle.connection.dialect.identifier_preparer.quote(name)

    def _quote_table(self, handle: ConnectionHandle) -> str:
        return ".".join(self._quote(handle, part) for part in self.table.split("."))

    def statement(self, handle: ConnectionHandle) -> str:
        table = self._quote_table(handle)
        column = self._quote(handle, self.column)
        if self.action == "rename":
            return f"ALTER TABLE {table} RENAME COLUMN {self._quote(handle, self.legacy_name)} TO {column}"
        ddl = f"ALTER TABLE {table} ADD COLUMN {column} {self.column_type}"
        if not self.nullable:
            ddl += " NOT NULL"
        return ddl

    def apply(self, handle: ConnectionHandle) -> int:
        ddl = self.statement(handle)
        execute(handle, RawQuery(ddl, read_only=False))
        handle.forget_table(self.table)
        logger.info("SCHEMA_CHANGED", repair=self.name, table=self.table, statement=ddl)
        return 1

    def verify(self, handle: ConnectionHandle, applied: int) -> None:
        columns = column_names(handle, self.table)
        mismatches: List[dict] = []
        if self.column not in columns:
            mismatches.append({"column": self.column, "reason": "column missing after apply"})
        if self.action == "rename" and self.legacy_name in columns:
            mismatches.append({"column": self.legacy_name, "reason": "legacy column still present"})
        if mismatches:
            raise VerificationMismatch(
                f"{self.name}: {self.table} columns do not match after {self.action}",
                mismatches=mismatches,
            )
