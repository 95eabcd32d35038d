"""
Query executor.

Runs exactly one request against a live handle and returns an
OperationResult. Fire-once: nothing here retries.
"""
import time
from typing import Any, Dict, List

from sqlalchemy import func, select, text, update

from dbrepair.domain.models import (
    OperationKind,
    OperationRequest,
    OperationResult,
    RawQuery,
    ReadRequest,
    WriteRequest,
    describe_filter,
)
from dbrepair.exceptions import NotFoundError, ValidationError
from dbrepair.monitoring.logger import get_logger
from dbrepair.storage.db import ConnectionHandle
from dbrepair.storage.filters import coerce_values, column_for, compile_filter

logger = get_logger(__name__)


def execute(handle: ConnectionHandle, request: OperationRequest) -> OperationResult:
    """
    Execute one read, write or raw request.

    Raises:
        NotFoundError: a required read matched nothing
        QueryError: unknown table/field, malformed SQL, constraint violation
        ValidationError: the request is not safe to run
    """
    start = time.monotonic()
    if isinstance(request, ReadRequest):
        result = _execute_read(handle, request)
    elif isinstance(request, WriteRequest):
        result = _execute_write(handle, request)
    elif isinstance(request, RawQuery):
        result = _execute_raw(handle, request)
    else:
        raise ValidationError(f"Unsupported request type: {type(request).__name__}")

    logger.info(
        "QUERY_EXECUTED",
        kind=result.kind.value,
        table=result.table,
        rows=result.row_count,
        affected=result.affected_count,
        elapsed_ms=round((time.monotonic() - start) * 1000, 1),
    )
    return result


def _rows(result) -> List[Dict[str, Any]]:
    return [dict(row._mapping) for row in result]


def _execute_read(handle: ConnectionHandle, request: ReadRequest) -> OperationResult:
    table = handle.reflect_table(request.table)

    if request.fields:
        columns = [column_for(table, name) for name in request.fields]
    else:
        columns = list(table.columns)

    stmt = select(*columns)
    if request.filter is not None:
        stmt = stmt.where(compile_filter(table, request.filter))

    if request.order_by:
        order_col = column_for(table, request.order_by)
        stmt = stmt.order_by(order_col.desc() if request.descending else order_col.asc())
    elif table.primary_key.columns:
        # Deterministic output when no ordering was requested
        stmt = stmt.order_by(*table.primary_key.columns)

    if request.limit:
        stmt = stmt.limit(request.limit)

    rows = _rows(handle.execute(stmt))

    if request.required and not rows:
        raise NotFoundError(
            f"No row in {request.table!r} matches {describe_filter(request.filter)}"
        )

    return OperationResult(
        kind=OperationKind.READ,
        rows=rows,
        columns=[c.name for c in columns],
        table=request.table,
    )


def _execute_write(handle: ConnectionHandle, request: WriteRequest) -> OperationResult:
    if request.filter is None:
        # Unreachable through the constructor; checked again before touching the store
        raise ValidationError(f"Refusing unfiltered write to {request.table!r}")

    table = handle.reflect_table(request.table)
    where = compile_filter(table, request.filter)
    values = coerce_values(table, request.values)

    with handle.transaction():
        matched = handle.execute(
            select(func.count()).select_from(table).where(where)
        ).scalar_one()
        if matched:
            handle.execute(update(table).where(where).values(values))

    logger.info(
        "WRITE_APPLIED",
        table=request.table,
        filter=describe_filter(request.filter),
        fields=sorted(values),
        matched=matched,
    )
    return OperationResult(
        kind=OperationKind.WRITE,
        affected_count=matched,
        table=request.table,
    )


def _execute_raw(handle: ConnectionHandle, request: RawQuery) -> OperationResult:
    # Read-only statements never commit, whatever they turn out to do
    scope = handle.read_only_transaction() if request.read_only else handle.transaction()
    with scope:
        result = handle.execute(text(request.sql), request.params)
        if result.returns_rows:
            columns = list(result.keys())
            rows = _rows(result)
            return OperationResult(kind=OperationKind.RAW, rows=rows, columns=columns)
        affected = result.rowcount

    return OperationResult(
        kind=OperationKind.RAW,
        affected_count=affected if affected is not None and affected >= 0 else None,
    )
