"""
CLI entrypoint for dbrepair.

Provides read, update and raw query commands, schema introspection, a health
check, and checked repairs (disable, enable, set-field, migrate-enum,
replace-text, ensure-column). Every command opens one connection, runs one
operation, prints the rendered result and releases the connection.
"""
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TypeVar

import typer

from dbrepair import __version__
from dbrepair.cli_output import print_critical_error, print_error
from dbrepair.config.config import Config, load_config, logging_from_env
from dbrepair.config.dotenv_loader import load_dotenv_files
from dbrepair.domain.models import (
    And,
    Contains,
    Eq,
    Filter,
    In,
    Or,
    RawQuery,
    ReadRequest,
    WriteRequest,
)
from dbrepair.exceptions import ConfigError, DbRepairError
from dbrepair.monitoring.logger import get_logger, setup_logging
from dbrepair.repair import (
    EnsureColumnRepair,
    RepairOperation,
    ReplaceTextRepair,
    SetFieldRepair,
    migrate_enum_value,
    set_active,
)
from dbrepair.reporting.formatter import render, render_repair
from dbrepair.storage.db import ConnectionHandle, run_with_connection
from dbrepair.storage.executor import execute
from dbrepair.storage.introspection import health_check, list_columns, list_tables, server_version

app = typer.Typer(
    name="dbrepair",
    help="Inspect and repair records in a relational store",
    add_completion=False,
)

logger = get_logger(__name__)

T = TypeVar("T")

NULL_LITERAL = "null"


class OutputMode(str, Enum):
    table = "table"
    json = "json"
    summary = "summary"


class LogFormat(str, Enum):
    json = "json"
    text = "text"


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


@dataclass
class CliState:
    config_path: Optional[Path] = None
    log_level: Optional[str] = None
    log_format: Optional[str] = None
    config: Optional[Config] = None


# ============ OPTION PARSING ============

def parse_value(raw: str) -> Any:
    """CLI values are strings; the literal ``null`` means NULL."""
    return None if raw == NULL_LITERAL else raw


def split_pair(raw: str, option: str) -> tuple:
    name, sep, value = raw.partition("=")
    if not sep or not name.strip():
        raise typer.BadParameter(f"expected FIELD=VALUE, got {raw!r}", param_hint=option)
    return name.strip(), value


def parse_assignments(pairs: List[str], option: str) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for raw in pairs:
        name, value = split_pair(raw, option)
        values[name] = parse_value(value)
    return values


def build_filter(
    where: List[str],
    contains: List[str],
    in_: List[str],
    any_: bool = False,
) -> Optional[Filter]:
    """Combine --where/--contains/--in options; AND by default, OR with --any."""
    clauses: List[Filter] = []
    for raw in where:
        name, value = split_pair(raw, "--where")
        clauses.append(Eq(name, parse_value(value)))
    for raw in contains:
        name, value = split_pair(raw, "--contains")
        clauses.append(Contains(name, value))
    for raw in in_:
        name, value = split_pair(raw, "--in")
        clauses.append(In(name, tuple(parse_value(v.strip()) for v in value.split(","))))

    if not clauses:
        return None
    if len(clauses) == 1:
        return clauses[0]
    return Or(*clauses) if any_ else And(*clauses)


# Shared option declarations
WHERE = typer.Option([], "--where", "-w", help="Equality filter FIELD=VALUE (repeatable; 'null' for NULL)")
CONTAINS = typer.Option([], "--contains", help="Substring filter FIELD=TEXT (repeatable)")
IN = typer.Option([], "--in", help="Membership filter FIELD=A,B,C (repeatable)")
ANY = typer.Option(False, "--any", help="Combine filters with OR instead of AND")
MODE = typer.Option(OutputMode.table, "--mode", "-m", help="Output mode")
IGNORE = typer.Option([], "--ignore-field", help="Column the store rewrites itself; skipped during verification")


# ============ INVOCATION PLUMBING ============

@contextmanager
def cli_errors(command: str):
    """Print one line for any dbrepair error and exit 1."""
    try:
        yield
    except DbRepairError as e:
        logger.error("COMMAND_FAILED", command=command, error=e.describe(), error_type=type(e).__name__)
        print_error(e)
        raise typer.Exit(1)


def _state(ctx: typer.Context) -> CliState:
    if not isinstance(ctx.obj, CliState):
        ctx.obj = CliState()
    return ctx.obj


def _load(ctx: typer.Context) -> Config:
    """Load configuration once per invocation; YAML logging applies unless overridden."""
    state = _state(ctx)
    if state.config is None:
        state.config = load_config(state.config_path)
        if state.config_path is not None:
            _configure_logging(
                state.log_level or state.config.logging.level,
                state.log_format or state.config.logging.format,
                state.config.logging.file,
            )
        logger.debug("CONFIG_LOADED", **state.config.connection.describe())
    return state.config


def _run(ctx: typer.Context, fn: Callable[[ConnectionHandle], T]) -> T:
    config = _load(ctx)
    return run_with_connection(config.connection, fn)


def _run_repair(ctx: typer.Context, repair: RepairOperation, mode: OutputMode) -> None:
    report = _run(ctx, repair.run)
    typer.echo(render_repair(report, mode.value))


def _configure_logging(level: str, log_format: str, log_file: Optional[str]) -> None:
    try:
        setup_logging(level, log_format, log_file=log_file)
    except OSError as e:
        print_critical_error("Failed to setup logging", e)
        raise typer.Exit(1)


# ============ QUERY COMMANDS ============

@app.command()
def read(
    ctx: typer.Context,
    table: str = typer.Argument(..., help="Table to read"),
    where: List[str] = WHERE,
    contains: List[str] = CONTAINS,
    in_: List[str] = IN,
    any_: bool = ANY,
    field: List[str] = typer.Option([], "--field", "-f", help="Column to return (repeatable; default all)"),
    limit: Optional[int] = typer.Option(None, "--limit", "-n", min=1, help="Maximum rows"),
    order_by: Optional[str] = typer.Option(None, "--order-by", help="Sort column (default primary key)"),
    desc: bool = typer.Option(False, "--desc", help="Sort descending"),
    required: bool = typer.Option(False, "--required", help="Fail when nothing matches"),
    mode: OutputMode = MODE,
):
    """
    Read rows from TABLE.

    Example:
        dbrepair read companies --where name=Acme --field id --field name
    """
    with cli_errors("read"):
        request = ReadRequest(
            table,
            filter=build_filter(where, contains, in_, any_),
            fields=tuple(field),
            limit=limit,
            order_by=order_by,
            descending=desc,
            required=required,
        )
        result = _run(ctx, lambda handle: execute(handle, request))
        typer.echo(render(result, mode.value))


@app.command()
def update(
    ctx: typer.Context,
    table: str = typer.Argument(..., help="Table to update"),
    set_: List[str] = typer.Option(..., "--set", "-s", help="Assignment FIELD=VALUE (repeatable)"),
    where: List[str] = WHERE,
    contains: List[str] = CONTAINS,
    in_: List[str] = IN,
    any_: bool = ANY,
    yes: bool = typer.Option(False, "--yes", "-y", help="Apply the change (default is a dry run)"),
    mode: OutputMode = MODE,
):
    """
    Update rows matching the filters. Dry run unless --yes is given.

    Example:
        dbrepair update users --where email=a@b.c --set role=admin --yes
    """
    with cli_errors("update"):
        request = WriteRequest(
            table,
            build_filter(where, contains, in_, any_),
            parse_assignments(set_, "--set"),
        )
        if not yes:
            preview = _run(ctx, lambda handle: execute(handle, ReadRequest(table, filter=request.filter)))
            typer.echo(render(preview, mode.value))
            typer.echo(
                f"Dry run: {preview.row_count} row(s) would be updated. Re-run with --yes to apply.",
                err=True,
            )
            return
        result = _run(ctx, lambda handle: execute(handle, request))
        typer.echo(render(result, mode.value))


@app.command()
def raw(
    ctx: typer.Context,
    sql: str = typer.Argument(..., help="SQL statement (use :name placeholders with --param)"),
    param: List[str] = typer.Option([], "--param", "-p", help="Bound parameter NAME=VALUE (repeatable)"),
    write: bool = typer.Option(False, "--write", help="Allow statements that modify data or schema"),
    mode: OutputMode = MODE,
):
    """
    Run literal SQL. Only read statements are accepted without --write.

    Example:
        dbrepair raw "SELECT id, name FROM companies WHERE id = :id" --param id=7
    """
    with cli_errors("raw"):
        request = RawQuery(sql, params=parse_assignments(param, "--param"), read_only=not write)
        result = _run(ctx, lambda handle: execute(handle, request))
        typer.echo(render(result, mode.value))


# ============ INTROSPECTION ============

@app.command()
def tables(ctx: typer.Context, mode: OutputMode = MODE):
    """List tables in the configured database."""
    with cli_errors("tables"):
        result = _run(ctx, list_tables)
        typer.echo(render(result, mode.value))


@app.command()
def columns(
    ctx: typer.Context,
    table: str = typer.Argument(..., help="Table to describe"),
    mode: OutputMode = MODE,
):
    """List columns of TABLE with type, nullability and default."""
    with cli_errors("columns"):
        result = _run(ctx, lambda handle: list_columns(handle, table))
        typer.echo(render(result, mode.value))


@app.command()
def version(ctx: typer.Context, mode: OutputMode = MODE):
    """Show the server version."""
    with cli_errors("version"):
        result = _run(ctx, server_version)
        typer.echo(render(result, mode.value))


@app.command()
def health(
    ctx: typer.Context,
    table: List[str] = typer.Option([], "--table", "-t", help="Table to count rows in (repeatable)"),
    mode: OutputMode = MODE,
):
    """
    Connection latency, server version, table count and row counts.

    Example:
        dbrepair health --table users --table orders
    """
    with cli_errors("health"):
        result = _run(ctx, lambda handle: health_check(handle, table))
        typer.echo(render(result, mode.value))


# ============ REPAIRS ============

@app.command()
def disable(
    ctx: typer.Context,
    table: str = typer.Argument(..., help="Table holding the records"),
    where: List[str] = WHERE,
    contains: List[str] = CONTAINS,
    in_: List[str] = IN,
    any_: bool = ANY,
    field: str = typer.Option("isActive", "--field", help="Boolean flag column"),
    ignore_field: List[str] = IGNORE,
    mode: OutputMode = MODE,
):
    """
    Disable matching records (set FIELD to false) and verify.

    Example:
        dbrepair disable api_keys --where id=k1
    """
    with cli_errors("disable"):
        repair = set_active(
            table,
            build_filter(where, contains, in_, any_),
            False,
            field=field,
            ignore_fields=ignore_field,
        )
        _run_repair(ctx, repair, mode)


@app.command()
def enable(
    ctx: typer.Context,
    table: str = typer.Argument(..., help="Table holding the records"),
    where: List[str] = WHERE,
    contains: List[str] = CONTAINS,
    in_: List[str] = IN,
    any_: bool = ANY,
    field: str = typer.Option("isActive", "--field", help="Boolean flag column"),
    ignore_field: List[str] = IGNORE,
    mode: OutputMode = MODE,
):
    """Enable matching records (set FIELD to true) and verify."""
    with cli_errors("enable"):
        repair = set_active(
            table,
            build_filter(where, contains, in_, any_),
            True,
            field=field,
            ignore_fields=ignore_field,
        )
        _run_repair(ctx, repair, mode)


@app.command(name="set-field")
def set_field(
    ctx: typer.Context,
    table: str = typer.Argument(..., help="Table holding the records"),
    field: str = typer.Option(..., "--field", help="Column to set"),
    value: str = typer.Option(..., "--value", help="New value ('null' for NULL)"),
    where: List[str] = WHERE,
    contains: List[str] = CONTAINS,
    in_: List[str] = IN,
    any_: bool = ANY,
    ignore_field: List[str] = IGNORE,
    mode: OutputMode = MODE,
):
    """
    Set one field on every matching record and verify.

    Example:
        dbrepair set-field whatsapp_sessions --field status --value disconnected --where companyId=3
    """
    with cli_errors("set-field"):
        repair = SetFieldRepair(
            table,
            build_filter(where, contains, in_, any_),
            field,
            parse_value(value),
            ignore_fields=ignore_field,
        )
        _run_repair(ctx, repair, mode)


@app.command(name="migrate-enum")
def migrate_enum(
    ctx: typer.Context,
    table: str = typer.Argument(..., help="Table holding the enum column"),
    field: str = typer.Option(..., "--field", help="Enum column"),
    old: str = typer.Option(..., "--from", help="Obsolete value"),
    new: str = typer.Option(..., "--to", help="Replacement value"),
    where: List[str] = WHERE,
    contains: List[str] = CONTAINS,
    in_: List[str] = IN,
    any_: bool = ANY,
    ignore_field: List[str] = IGNORE,
    mode: OutputMode = MODE,
):
    """
    Move every row holding an obsolete enum value to its replacement.

    Example:
        dbrepair migrate-enum ai_providers --field type --from openai_legacy --to openai
    """
    with cli_errors("migrate-enum"):
        repair = migrate_enum_value(
            table,
            field,
            old,
            new,
            filter=build_filter(where, contains, in_, any_),
            ignore_fields=ignore_field,
        )
        _run_repair(ctx, repair, mode)


@app.command(name="replace-text")
def replace_text(
    ctx: typer.Context,
    table: str = typer.Argument(..., help="Table holding the text column"),
    field: str = typer.Option(..., "--field", help="Text column"),
    old: str = typer.Option(..., "--old", help="Text to replace"),
    new: str = typer.Option(..., "--new", help="Replacement text"),
    where: List[str] = WHERE,
    contains: List[str] = CONTAINS,
    in_: List[str] = IN,
    any_: bool = ANY,
    ignore_field: List[str] = IGNORE,
    mode: OutputMode = MODE,
):
    """Replace a substring in a text column, row by row."""
    with cli_errors("replace-text"):
        repair = ReplaceTextRepair(
            table,
            field,
            old,
            new,
            filter=build_filter(where, contains, in_, any_),
            ignore_fields=ignore_field,
        )
        _run_repair(ctx, repair, mode)


@app.command(name="ensure-column")
def ensure_column(
    ctx: typer.Context,
    table: str = typer.Argument(..., help="Table to repair"),
    column: str = typer.Option(..., "--column", help="Column that must exist"),
    legacy_name: Optional[str] = typer.Option(None, "--legacy-name", help="Old column name to rename from"),
    column_type: str = typer.Option("VARCHAR(191)", "--type", help="SQL type when the column is added"),
    nullable: bool = typer.Option(True, "--nullable/--not-null", help="Nullability when the column is added"),
    mode: OutputMode = MODE,
):
    """
    Make sure COLUMN exists on TABLE, renaming LEGACY_NAME when present.

    Example:
        dbrepair ensure-column hr_leave_requests --column userId --legacy-name employeeId
    """
    with cli_errors("ensure-column"):
        repair = EnsureColumnRepair(
            table,
            column,
            legacy_name=legacy_name,
            column_type=column_type,
            nullable=nullable,
        )
        _run_repair(ctx, repair, mode)


def _version_callback(value: bool):
    if value:
        typer.echo(f"dbrepair v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML config file (connection and logging sections)"),
    log_level: Optional[LogLevel] = typer.Option(None, "--log-level", case_sensitive=False, help="Log level on stderr"),
    log_format: Optional[LogFormat] = typer.Option(None, "--log-format", help="Log format on stderr"),
    version: bool = typer.Option(False, "--version", callback=_version_callback, is_eager=True, help="Show version and exit"),
):
    """
    dbrepair: inspect and repair a relational store.

    Connection settings come from --config, DATABASE_URL, or DB_* variables.
    """
    load_dotenv_files()

    level = log_level.value if log_level else None
    fmt = log_format.value if log_format else None
    ctx.obj = CliState(config_path=config_path, log_level=level, log_format=fmt)

    try:
        env_logging = logging_from_env()
    except ConfigError as e:
        print_error(e)
        raise typer.Exit(1)
    _configure_logging(level or env_logging.level, fmt or env_logging.format, env_logging.file)


if __name__ == "__main__":
    app()
