"""
Repair Operation state machine.

A repair is a checked, verified mutation:

    CHECKING → APPLYING   (targets found)
    CHECKING → DONE       (nothing to do, existence not required)
    APPLYING → VERIFYING  (mutation committed)
    VERIFYING → DONE      (re-read matches intent)
    any → FAILED          (NotFoundError, QueryError, VerificationMismatch, ...)

Terminal States: DONE, FAILED

Verification re-reads the affected rows by key and compares them with the
pre-check snapshot. It is advisory across concurrent invocations: it catches
a concurrent writer, it does not prevent one.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from dbrepair.domain.models import (
    And,
    Contains,
    Eq,
    Filter,
    In,
    Or,
    ReadRequest,
    WriteRequest,
    as_filter,
    check_identifier,
    check_table_name,
    describe_filter,
)
from dbrepair.exceptions import (
    DbRepairError,
    InvariantError,
    NotFoundError,
    ValidationError,
    VerificationMismatch,
)
from dbrepair.monitoring.logger import get_logger
from dbrepair.monitoring.redaction import REDACTED, is_sensitive_key
from dbrepair.storage.db import ConnectionHandle
from dbrepair.storage.executor import execute
from dbrepair.storage.filters import coerce_value, column_for

logger = get_logger(__name__)


class RepairState(str, Enum):
    CHECKING = "checking"
    APPLYING = "applying"
    VERIFYING = "verifying"
    DONE = "done"
    FAILED = "failed"


ALLOWED_TRANSITIONS = {
    RepairState.CHECKING: {RepairState.APPLYING, RepairState.DONE, RepairState.FAILED},
    RepairState.APPLYING: {RepairState.VERIFYING, RepairState.FAILED},
    RepairState.VERIFYING: {RepairState.DONE, RepairState.FAILED},
    RepairState.DONE: set(),
    RepairState.FAILED: set(),
}


@dataclass
class RepairReport:
    """Final state of a repair: old value, new value, count."""
    name: str
    state: RepairState = RepairState.CHECKING
    before: Any = None
    after: Any = None
    count: int = 0
    error: Optional[str] = None
    history: List[RepairState] = field(default_factory=lambda: [RepairState.CHECKING])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "before": self.before,
            "after": self.after,
            "count": self.count,
            "error": self.error,
            "history": [s.value for s in self.history],
        }


def collapse(values: Sequence[Any]) -> Any:
    """A single value when all entries agree, otherwise the full list."""
    values = list(values)
    if not values:
        return None
    first = values[0]
    if all(v == first for v in values[1:]):
        return first
    return values


class RepairOperation:
    """
    Base class for checked, verified mutations.

    Subclasses implement:
        check(handle) -> int        number of targets found
        apply(handle) -> int        number of targets the mutation matched
        verify(handle, applied)     raise VerificationMismatch on any drift

    and set ``report.before`` / ``report.after`` as they go.
    """

    name = "repair"
    require_existence = True

    def __init__(self):
        self.report = RepairReport(name=self.name)

    @property
    def state(self) -> RepairState:
        return self.report.state

    def transition(self, new_state: RepairState) -> None:
        current = self.report.state
        if new_state not in ALLOWED_TRANSITIONS[current]:
            raise InvariantError(f"Illegal repair transition {current.value} -> {new_state.value}")
        logger.info(
            "REPAIR_TRANSITION",
            repair=self.name,
            from_state=current.value,
            to_state=new_state.value,
        )
        self.report.state = new_state
        self.report.history.append(new_state)

    def run(self, handle: ConnectionHandle) -> RepairReport:
        """
        Drive the state machine to DONE.

        Raises the failing error after moving to FAILED; ``self.report``
        then holds the failed state and message.
        """
        if self.report.history != [RepairState.CHECKING]:
            raise InvariantError(f"Repair {self.name!r} has already run")

        try:
            found = self.check(handle)
            if not found:
                if self.require_existence:
                    raise NotFoundError(f"{self.name}: {self.describe_target()} matched nothing")
                self.report.count = 0
                self.transition(RepairState.DONE)
                return self.report

            self.transition(RepairState.APPLYING)
            applied = self.apply(handle)
            self.report.count = applied

            self.transition(RepairState.VERIFYING)
            self.verify(handle, applied)

            self.transition(RepairState.DONE)
            logger.info("REPAIR_DONE", **self.logged_report())
            return self.report
        except DbRepairError as e:
            if isinstance(e, InvariantError):
                raise
            self.report.error = e.describe()
            self.transition(RepairState.FAILED)
            logger.error("REPAIR_FAILED", repair=self.name, error=e.describe(), error_type=type(e).__name__)
            raise

    def describe_target(self) -> str:
        return self.name

    def masks_values(self) -> bool:
        """True when before/after values must not reach logs or stderr."""
        return False

    def logged_report(self) -> Dict[str, Any]:
        data = self.report.to_dict()
        if self.masks_values():
            data["before"] = data["after"] = REDACTED
        return data

    def check(self, handle: ConnectionHandle) -> int:
        raise NotImplementedError

    def apply(self, handle: ConnectionHandle) -> int:
        raise NotImplementedError

    def verify(self, handle: ConnectionHandle, applied: int) -> None:
        raise NotImplementedError


class RowRepair(RepairOperation):
    """Shared snapshot and re-read logic for row-level repairs."""

    # The column the repair writes
    field = ""

    def __init__(self, table: str, filter: Optional[Filter], *, ignore_fields: Sequence[str] = ()):
        super().__init__()
        self.table = check_table_name(table)
        self.filter = as_filter(filter)
        # Columns the store rewrites on its own (e.g. ON UPDATE timestamps)
        self.ignore_fields = tuple(check_identifier(f) for f in ignore_fields)
        self.snapshot: List[Dict[str, Any]] = []
        self.key_columns: Tuple[str, ...] = ()

    def describe_target(self) -> str:
        return f"{self.table} where {describe_filter(self.filter)}"

    def masks_values(self) -> bool:
        return is_sensitive_key(self.field)

    def take_snapshot(self, handle: ConnectionHandle, exclude: Sequence[str] = ()) -> int:
        result = execute(handle, ReadRequest(self.table, filter=self.filter))
        self.snapshot = result.rows
        table = handle.reflect_table(self.table)
        pk = tuple(c.name for c in table.primary_key.columns)
        # Without a primary key, identify rows by every column the repair leaves alone
        self.key_columns = pk or tuple(c.name for c in table.columns if c.name not in exclude)
        return len(self.snapshot)

    def key_of(self, row: Dict[str, Any]) -> Tuple[Any, ...]:
        return tuple(row[k] for k in self.key_columns)

    def key_filter(self, rows: Sequence[Dict[str, Any]]) -> Filter:
        if len(self.key_columns) == 1:
            name = self.key_columns[0]
            return In(name, tuple(row[name] for row in rows))
        clauses = [And(*(Eq(k, row[k]) for k in self.key_columns)) for row in rows]
        return clauses[0] if len(clauses) == 1 else Or(*clauses)

    def reread(self, handle: ConnectionHandle) -> Dict[Tuple[Any, ...], Dict[str, Any]]:
        result = execute(handle, ReadRequest(self.table, filter=self.key_filter(self.snapshot)))
        return {self.key_of(row): row for row in result.rows}

    def compare(self, handle: ConnectionHandle, applied: int, expected: Dict[Tuple[Any, ...], Dict[str, Any]]) -> None:
        """
        Re-read the snapshot rows and compare.

        ``expected`` maps each row key to the field values the repair set;
        every other column must equal the pre-check snapshot.
        """
        mismatches = []
        if applied != len(self.snapshot):
            mismatches.append({
                "reason": "match count changed between check and apply",
                "checked": len(self.snapshot),
                "applied": applied,
            })

        current = self.reread(handle)
        for row in self.snapshot:
            key = self.key_of(row)
            now = current.get(key)
            if now is None:
                mismatches.append({"key": list(key), "reason": "row disappeared"})
                continue
            changes = expected.get(key, {})
            for name, before in row.items():
                if name in self.ignore_fields:
                    continue
                want = changes.get(name, before)
                actual = now.get(name)
                if actual != want:
                    if is_sensitive_key(name):
                        want = actual = REDACTED
                    mismatches.append({
                        "key": list(key),
                        "field": name,
                        "expected": want,
                        "actual": actual,
                    })

        if mismatches:
            raise VerificationMismatch(
                f"{self.name}: {len(mismatches)} mismatch(es) after write to {self.table}",
                mismatches=mismatches,
            )


class SetFieldRepair(RowRepair):
    """Set one field on every row matching a filter."""

    name = "set-field"

    def __init__(
        self,
        table: str,
        filter: Filter,
        field: str,
        value: Any,
        *,
        require_existence: bool = True,
        name: Optional[str] = None,
        ignore_fields: Sequence[str] = (),
    ):
        super().__init__(table, filter, ignore_fields=ignore_fields)
        if self.filter is None:
            raise ValidationError(f"Refusing unfiltered repair on {table!r}: a filter or key is required")
        self.field = check_identifier(field)
        self.value = value
        self.target = value
        self.require_existence = require_existence
        if name:
            self.name = name
            self.report.name = name

    def check(self, handle: ConnectionHandle) -> int:
        table = handle.reflect_table(self.table)
        self.target = coerce_value(column_for(table, self.field), self.value)
        found = self.take_snapshot(handle, exclude=(self.field,))
        self.report.before = collapse([row[self.field] for row in self.snapshot])
        self.report.after = self.target
        logger.info(
            "REPAIR_CHECKED",
            repair=self.name,
            table=self.table,
            filter=describe_filter(self.filter),
            matched=found,
        )
        return found

    def apply(self, handle: ConnectionHandle) -> int:
        result = execute(handle, WriteRequest(self.table, self.filter, {self.field: self.target}))
        return result.affected_count or 0

    def verify(self, handle: ConnectionHandle, applied: int) -> None:
        expected = {self.key_of(row): {self.field: self.target} for row in self.snapshot}
        self.compare(handle, applied, expected)


def set_active(
    table: str,
    filter: Filter,
    active: bool,
    *,
    field: str = "isActive",
    ignore_fields: Sequence[str] = (),
) -> SetFieldRepair:
    """Enable or disable records (e.g. revoke a leaked API key)."""
    return SetFieldRepair(
        table,
        filter,
        field,
        bool(active),
        name="enable" if active else "disable",
        ignore_fields=ignore_fields,
    )


def migrate_enum_value(
    table: str,
    field: str,
    old: Any,
    new: Any,
    *,
    filter: Optional[Filter] = None,
    ignore_fields: Sequence[str] = (),
) -> SetFieldRepair:
    """
    Move rows holding an obsolete enum value to its replacement.

    Finding no rows is a successful no-op, so re-running is safe.
    """
    match = Eq(field, old)
    scoped = And(as_filter(filter), match) if filter else match
    return SetFieldRepair(
        table,
        scoped,
        field,
        new,
        require_existence=False,
        name="migrate-enum",
        ignore_fields=ignore_fields,
    )


class ReplaceTextRepair(RowRepair):
    """Replace a substring in a text field, row by row, keyed by primary key."""

    name = "replace-text"
    require_existence = False

    def __init__(
        self,
        table: str,
        field: str,
        old: str,
        new: str,
        *,
        filter: Optional[Filter] = None,
        ignore_fields: Sequence[str] = (),
    ):
        self.field = check_identifier(field)
        if not old:
            raise ValidationError("replace-text needs a non-empty text to replace")
        if old == new:
            raise ValidationError("replace-text old and new text are identical")
        match = Contains(field, old)
        user_filter = as_filter(filter)
        super().__init__(table, And(user_filter, match) if user_filter else match, ignore_fields=ignore_fields)
        self.old = old
        self.new = new
        self.replacements: Dict[Tuple[Any, ...], str] = {}

    def check(self, handle: ConnectionHandle) -> int:
        self.take_snapshot(handle, exclude=(self.field,))
        # LIKE is case-insensitive on some stores; keep exact matches only
        self.snapshot = [
            row for row in self.snapshot
            if isinstance(row[self.field], str) and self.old in row[self.field]
        ]
        found = len(self.snapshot)
        self.replacements = {
            self.key_of(row): row[self.field].replace(self.old, self.new)
            for row in self.snapshot
        }
        self.report.before = collapse([row[self.field] for row in self.snapshot])
        self.report.after = collapse(list(self.replacements.values()))
        return found

    def apply(self, handle: ConnectionHandle) -> int:
        applied = 0
        with handle.transaction():
            for row in self.snapshot:
                key = self.key_of(row)
                result = execute(
                    handle,
                    WriteRequest(self.table, self.key_filter([row]), {self.field: self.replacements[key]}),
                )
                applied += 1 if result.affected_count else 0
        return applied

    def verify(self, handle: ConnectionHandle, applied: int) -> None:
        expected = {key: {self.field: value} for key, value in self.replacements.items()}
        self.compare(handle, applied, expected)
