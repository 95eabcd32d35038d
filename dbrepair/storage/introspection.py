"""
Schema introspection and health checks.

Introspection goes through RawQuery so the rows come back exactly as the
store reports them. Each dialect gets its own catalog query.
"""
import time
from typing import Any, Dict, Iterable, Optional

from sqlalchemy import func, select

from dbrepair.domain.models import OperationKind, OperationResult, RawQuery, check_table_name
from dbrepair.exceptions import QueryError, ValidationError
from dbrepair.monitoring.logger import get_logger
from dbrepair.storage.db import ConnectionHandle
from dbrepair.storage.executor import execute

logger = get_logger(__name__)

LIST_TABLES = {
    "postgresql": (
        "SELECT table_schema, table_name, table_type "
        "FROM information_schema.tables "
        "WHERE table_schema NOT IN ('pg_catalog', 'information_schema') "
        "ORDER BY table_schema, table_name"
    ),
    "mysql": (
        "SELECT TABLE_NAME AS table_name, TABLE_TYPE AS table_type, TABLE_ROWS AS approx_rows "
        "FROM information_schema.TABLES "
        "WHERE TABLE_SCHEMA = DATABASE() "
        "ORDER BY TABLE_NAME"
    ),
    "sqlite": (
        "SELECT name AS table_name, type AS table_type "
        "FROM sqlite_master "
        "WHERE type IN ('table', 'view') AND name NOT LIKE 'sqlite_%' "
        "ORDER BY name"
    ),
}

LIST_COLUMNS = {
    "postgresql": (
        "SELECT column_name, data_type, is_nullable, column_default "
        "FROM information_schema.columns "
        "WHERE table_schema = COALESCE(:schema, current_schema()) AND table_name = :table "
        "ORDER BY ordinal_position"
    ),
    "mysql": (
        "SELECT COLUMN_NAME AS column_name, COLUMN_TYPE AS data_type, "
        "IS_NULLABLE AS is_nullable, COLUMN_DEFAULT AS column_default "
        "FROM information_schema.COLUMNS "
        "WHERE TABLE_SCHEMA = COALESCE(:schema, DATABASE()) AND TABLE_NAME = :table "
        "ORDER BY ORDINAL_POSITION"
    ),
    "sqlite": (
        "SELECT name AS column_name, type AS data_type, "
        "CASE WHEN \"notnull\" = 1 THEN 'NO' ELSE 'YES' END AS is_nullable, "
        "dflt_value AS column_default "
        "FROM pragma_table_info(:table) "
        "ORDER BY cid"
    ),
}

SERVER_VERSION = {
    "postgresql": "SELECT version() AS version",
    "mysql": "SELECT VERSION() AS version",
    "sqlite": "SELECT sqlite_version() AS version",
}


def _dialect_query(catalog: Dict[str, str], handle: ConnectionHandle, what: str) -> str:
    try:
        return catalog[handle.dialect]
    except KeyError:
        raise QueryError(f"Listing {what} is not supported for dialect {handle.dialect!r}") from None


def list_tables(handle: ConnectionHandle) -> OperationResult:
    sql = _dialect_query(LIST_TABLES, handle, "tables")
    return execute(handle, RawQuery(sql))


def list_columns(handle: ConnectionHandle, table: str) -> OperationResult:
    check_table_name(table)
    sql = _dialect_query(LIST_COLUMNS, handle, "columns")
    schema, _, name = table.rpartition(".")
    result = execute(handle, RawQuery(sql, params={"schema": schema or None, "table": name}))
    if not result.rows:
        raise QueryError(f"Table not found: {table}")
    return result


def server_version(handle: ConnectionHandle) -> OperationResult:
    sql = _dialect_query(SERVER_VERSION, handle, "the server version")
    return execute(handle, RawQuery(sql))


def count_rows(handle: ConnectionHandle, table: str) -> int:
    check_table_name(table)
    reflected = handle.reflect_table(table)
    return handle.execute(select(func.count()).select_from(reflected)).scalar_one()


def column_names(handle: ConnectionHandle, table: str) -> list:
    """Current column names of *table*, read fresh from the store."""
    check_table_name(table)
    schema, _, name = table.rpartition(".")
    inspector = handle.inspector()
    if not inspector.has_table(name, schema=schema or None):
        raise QueryError(f"Table not found: {table}")
    return [col["name"] for col in inspector.get_columns(name, schema=schema or None)]


def health_check(handle: ConnectionHandle, tables: Iterable[str] = ()) -> OperationResult:
    """
    Connection latency, server version, table count and row counts.

    Each check is reported as a row; a failing row count is reported in the
    row instead of aborting the whole check.
    """
    rows = []

    start = time.monotonic()
    handle.execute("SELECT 1").scalar()
    rows.append({"check": "latency_ms", "value": round((time.monotonic() - start) * 1000, 2)})

    version = server_version(handle)
    rows.append({"check": "server_version", "value": _first_value(version)})
    rows.append({"check": "dialect", "value": handle.dialect})

    table_list = list_tables(handle)
    rows.append({"check": "table_count", "value": table_list.row_count})

    for table in tables:
        try:
            rows.append({"check": f"rows:{table}", "value": count_rows(handle, table)})
        except (QueryError, ValidationError) as e:
            # A failed statement poisons the open transaction on PostgreSQL
            handle.connection.rollback()
            logger.warning("HEALTH_COUNT_FAILED", table=table, error=e.describe())
            rows.append({"check": f"rows:{table}", "value": f"error: {e.describe()}"})

    return OperationResult(kind=OperationKind.RAW, rows=rows, columns=["check", "value"])


def _first_value(result: OperationResult) -> Optional[Any]:
    if not result.rows:
        return None
    return next(iter(result.rows[0].values()))
