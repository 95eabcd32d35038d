"""
Report formatter.

Pure functions from results to text. Rendering never touches the store and
never prints; the CLI decides where the text goes.
"""
import io
import json
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Sequence
from uuid import UUID

from rich.console import Console
from rich.table import Table
from rich.text import Text

from dbrepair.domain.models import OperationKind, OperationResult, ordered_columns
from dbrepair.exceptions import ValidationError

NO_ROWS = "(no rows)"
MODES = ("table", "json", "summary")
DEFAULT_WIDTH = 160

_MISSING = object()


def _check_mode(mode: str) -> None:
    if mode not in MODES:
        raise ValidationError(f"Unknown output mode {mode!r} (expected one of: {', '.join(MODES)})")


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    if isinstance(value, UUID):
        return str(value)
    return str(value)


def _cell(value: Any) -> Text:
    if value is _MISSING:
        return Text("")
    if value is None:
        return Text("NULL", style="dim")
    if isinstance(value, bool):
        return Text("true" if value else "false")
    if isinstance(value, (dict, list)):
        return Text(json.dumps(value, default=_json_default, ensure_ascii=False))
    if isinstance(value, (datetime, date, time, Decimal, bytes, bytearray, memoryview, UUID)):
        return Text(str(_json_default(value)))
    return Text(str(value))


def _table_text(columns: Sequence[str], rows: Sequence[Mapping[str, Any]], width: int, title: Optional[str] = None) -> str:
    table = Table(title=title, header_style="bold", title_justify="left")
    for name in columns:
        table.add_column(name, overflow="fold")
    for row in rows:
        table.add_row(*(_cell(row.get(name, _MISSING)) for name in columns))

    console = Console(file=io.StringIO(), width=width, color_system=None, force_terminal=False)
    console.print(table)
    return console.file.getvalue().rstrip("\n")


def summarize(result: OperationResult) -> str:
    """Single status line for a result."""
    if result.error:
        return f"FAILED: {result.error}"
    where = f" in {result.table}" if result.table else ""
    if result.kind == OperationKind.WRITE:
        return f"{result.affected_count or 0} row(s) matched{where}"
    if not result.rows and result.affected_count is not None:
        return f"{result.affected_count} row(s) affected"
    if result.kind == OperationKind.RAW and not result.columns:
        return "OK"
    return f"{result.row_count} row(s) returned{where}"


def render(result: OperationResult, mode: str = "table", *, width: int = DEFAULT_WIDTH) -> str:
    """
    Render a result as text.

    Args:
        result: Executed operation result
        mode: "table", "json" or "summary"
        width: Table width in characters

    Empty row sets render as NO_ROWS in table and json modes, so an empty
    answer is never confused with a failed query.
    """
    _check_mode(mode)

    if mode == "summary" or result.error:
        return summarize(result)

    if not result.rows:
        if result.kind == OperationKind.WRITE or result.affected_count is not None:
            return summarize(result)
        return NO_ROWS

    columns = ordered_columns(result.rows, result.columns)

    if mode == "json":
        ordered: List[Dict[str, Any]] = [
            {name: row[name] for name in columns if name in row}
            for row in result.rows
        ]
        return json.dumps(ordered, indent=2, ensure_ascii=False, default=_json_default)

    return _table_text(columns, result.rows, width)


def render_repair(report, mode: str = "table", *, width: int = DEFAULT_WIDTH) -> str:
    """Render a repair report (name, state, before, after, count)."""
    _check_mode(mode)
    data = report.to_dict()

    if mode == "summary":
        line = (
            f"{data['name']}: {data['state']} "
            f"(count={data['count']}, before={data['before']!r}, after={data['after']!r})"
        )
        if data.get("error"):
            line += f" error={data['error']}"
        return line

    if mode == "json":
        return json.dumps(data, indent=2, ensure_ascii=False, default=_json_default)

    rows = [{"field": key, "value": value} for key, value in data.items() if key != "history"]
    rows.append({"field": "history", "value": " -> ".join(data.get("history", []))})
    return _table_text(["field", "value"], rows, width, title=f"Repair: {data['name']}")
