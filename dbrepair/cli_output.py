"""
Shared CLI output helpers for error reporting.
"""
from __future__ import annotations

import sys
import traceback

from dbrepair.exceptions import DbRepairError, VerificationMismatch


def print_error(error: DbRepairError) -> None:
    """One line per failure on stderr; mismatching rows follow, indented."""
    print(f"Error: {error.describe()}", file=sys.stderr)
    if isinstance(error, VerificationMismatch):
        for mismatch in error.mismatches:
            details = ", ".join(f"{k}={v!r}" for k, v in mismatch.items())
            print(f"  {details}", file=sys.stderr)


def print_critical_error(title: str, error: Exception, *, include_type: bool = True) -> None:
    print("=" * 80, file=sys.stderr)
    print(f"CRITICAL ERROR - {title}", file=sys.stderr)
    print("=" * 80, file=sys.stderr)
    print(f"Error: {error}", file=sys.stderr)
    if include_type:
        print(f"Type: {type(error).__name__}", file=sys.stderr)
    traceback.print_exc(file=sys.stderr)
    print("=" * 80, file=sys.stderr)
