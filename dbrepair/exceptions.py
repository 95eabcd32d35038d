"""
Exception hierarchy for the database inspection/repair utility.

Hierarchy:

    DbRepairError (base)
    ├── DatabaseConnectionError : store unreachable, auth failure, missing database
    ├── QueryError              : malformed query, unknown table/field, constraint violation
    ├── NotFoundError           : a required record is absent
    ├── ValidationError         : request rejected before touching the store
    ├── VerificationMismatch    : post-write state differs from intent
    ├── InvariantError          : illegal repair state transition
    └── ConfigError             : configuration missing or invalid

Rules:
    - Nothing is retried. Re-invocation is the retry mechanism.
    - Every error surfaces to the CLI, which prints one line and exits 1.
    - Connections are released regardless of where the failure happened.
"""
from typing import Any, Dict, List, Optional


class DbRepairError(Exception):
    """Base exception for all dbrepair errors."""

    def __init__(self, message: str, *, store_message: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.store_message = store_message

    def describe(self) -> str:
        """One-line description, with the store's own error text when present."""
        if self.store_message and self.store_message not in self.message:
            return f"{self.message}: {self.store_message}"
        return self.message


class DatabaseConnectionError(DbRepairError, ConnectionError):
    """Store unreachable, authentication failed, or database does not exist.

    Treatment: fatal, abort the invocation immediately.
    """
    pass


class QueryError(DbRepairError):
    """Malformed query or constraint violation, wrapping the store's message."""
    pass


class NotFoundError(DbRepairError):
    """A lookup declared as required matched no records."""
    pass


class ValidationError(DbRepairError):
    """Request rejected before reaching the store (e.g. unfiltered write)."""
    pass


class VerificationMismatch(DbRepairError):
    """Post-write state differs from intent.

    Indicates either a concurrent writer or a logic defect. Never swallowed.
    """

    def __init__(self, message: str, *, mismatches: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.mismatches = mismatches or []


class InvariantError(DbRepairError):
    """A repair operation attempted an illegal state transition."""
    pass


class ConfigError(DbRepairError):
    """Connection configuration is missing or invalid."""
    pass
