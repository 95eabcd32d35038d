"""
Connection provider.

Each invocation gets one short-lived engine (NullPool, no pooling) and one
connection. `acquire` guarantees the connection is closed and the engine
disposed on every exit path: success, query error, or interruption.
"""
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Generator, Mapping, Optional, TypeVar
import time

from sqlalchemy import MetaData, Table, create_engine, event, inspect, text
from sqlalchemy.engine import Connection, CursorResult, Engine
from sqlalchemy.exc import ArgumentError, DBAPIError, NoSuchModuleError, NoSuchTableError, SQLAlchemyError
from sqlalchemy.pool import NullPool, Pool

from dbrepair.config.config import ConnectionConfig
from dbrepair.exceptions import ConfigError, DatabaseConnectionError, QueryError
from dbrepair.monitoring.logger import get_logger

logger = get_logger(__name__)
_pool_logger = get_logger("db.pool")

T = TypeVar("T")


def store_message(error: BaseException) -> str:
    """The underlying driver's error text, without SQLAlchemy's boilerplate."""
    orig = getattr(error, "orig", None)
    msg = str(orig if orig is not None else error).strip()
    return msg.splitlines()[0] if msg else type(error).__name__


def translate_error(error: SQLAlchemyError, context: str) -> Exception:
    """Map a SQLAlchemy error onto the dbrepair taxonomy."""
    if isinstance(error, DBAPIError) and error.connection_invalidated:
        return DatabaseConnectionError(f"Connection lost during {context}", store_message=store_message(error))
    return QueryError(f"{context} failed", store_message=store_message(error))


class ConnectionHandle:
    """A live connection to the store. Only valid inside `acquire`."""

    def __init__(self, connection: Connection, config: ConnectionConfig):
        self.connection = connection
        self.config = config
        self._tables: Dict[str, Table] = {}
        self._in_transaction = False

    @property
    def dialect(self) -> str:
        return self.connection.dialect.name

    @property
    def server_version(self) -> Optional[str]:
        info = self.connection.dialect.server_version_info
        if not info:
            return None
        return ".".join(str(part) for part in info)

    def execute(self, statement: Any, params: Optional[Mapping[str, Any]] = None) -> CursorResult:
        """Execute a statement, translating store errors into QueryError."""
        if isinstance(statement, str):
            statement = text(statement)
        try:
            if params:
                return self.connection.execute(statement, dict(params))
            return self.connection.execute(statement)
        except SQLAlchemyError as e:
            raise translate_error(e, "Query") from e

    @contextmanager
    def transaction(self) -> Generator["ConnectionHandle", None, None]:
        """
        Run a block in one transaction: commit on success, rollback on error.

        Any implicit read transaction left open by earlier statements is
        ended first.
        """
        if self._in_transaction:
            # Nested use joins the enclosing transaction
            yield self
            return
        if self.connection.in_transaction():
            self.connection.commit()
        self._in_transaction = True
        try:
            with self.connection.begin():
                yield self
        finally:
            self._in_transaction = False

    @contextmanager
    def read_only_transaction(self) -> Generator["ConnectionHandle", None, None]:
        """
        Run a block in a transaction that is always rolled back.

        The store is also told the session is read only (SET TRANSACTION
        READ ONLY, or PRAGMA query_only on SQLite), so a write fails
        outright instead of being discarded.
        """
        if self._in_transaction:
            # Nested use joins the enclosing transaction
            yield self
            return
        if self.connection.in_transaction():
            self.connection.commit()
        transaction = self.connection.begin()
        self._in_transaction = True
        try:
            self._set_read_only(True)
            try:
                yield self
            finally:
                self._set_read_only(False)
        finally:
            transaction.rollback()
            self._in_transaction = False

    def _set_read_only(self, enabled: bool) -> None:
        if self.dialect == "sqlite":
            # Connection-level, not transactional: switched off again on exit
            self.execute(f"PRAGMA query_only = {'ON' if enabled else 'OFF'}")
        elif enabled and self.dialect in ("postgresql", "mysql"):
            self.execute("SET TRANSACTION READ ONLY")

    def reflect_table(self, name: str) -> Table:
        """Reflect a table definition from the store (cached per handle)."""
        if name in self._tables:
            return self._tables[name]
        schema, _, table_name = name.rpartition(".")
        try:
            table = Table(table_name, MetaData(), autoload_with=self.connection, schema=schema or None)
        except NoSuchTableError as e:
            raise QueryError(f"Table not found: {name}") from e
        except SQLAlchemyError as e:
            raise translate_error(e, f"Reflecting table {name}") from e
        self._tables[name] = table
        return table

    def forget_table(self, name: str) -> None:
        """Drop a cached reflection (after a schema change)."""
        self._tables.pop(name, None)

    def inspector(self):
        return inspect(self.connection)

    def apply_statement_timeout(self) -> None:
        """Apply the configured per-operation timeout to this session."""
        seconds = self.config.statement_timeout
        if not seconds:
            return
        ms = int(seconds * 1000)
        if self.dialect == "postgresql":
            stmt = f"SET statement_timeout = {ms}"
        elif self.dialect == "mysql":
            stmt = f"SET SESSION max_execution_time = {ms}"
        else:
            logger.debug("Statement timeout not supported by dialect", dialect=self.dialect)
            return
        self.execute(stmt)
        # SET is transactional on PostgreSQL
        self.connection.commit()
        logger.debug("STATEMENT_TIMEOUT_SET", dialect=self.dialect, timeout_ms=ms)


def _sqlite_target_exists(database: Optional[str]) -> bool:
    if not database or database == ":memory:" or database.startswith("file:"):
        return True
    return Path(database).expanduser().exists()


def create_store_engine(config: ConnectionConfig) -> Engine:
    """Build an unpooled engine for one invocation."""
    try:
        engine = create_engine(
            config.url(),
            echo=False,
            poolclass=NullPool,
            connect_args=config.connect_args(),
        )
    except (ArgumentError, NoSuchModuleError, ImportError) as e:
        raise ConfigError(
            f"Cannot create engine for {config.drivername!r}: {e}. "
            "Is the database driver installed?"
        ) from e
    _register_pool_events(engine.pool)
    return engine


@contextmanager
def acquire(config: ConnectionConfig) -> Generator[ConnectionHandle, None, None]:
    """
    Open a scoped connection to the store.

    Yields:
        ConnectionHandle

    Raises:
        DatabaseConnectionError: store unreachable, auth failure, missing database

    Example:
        with acquire(config) as handle:
            result = execute(handle, ReadRequest("companies"))
    """
    engine = create_store_engine(config)
    try:
        if config.protocol == "sqlite" and not _sqlite_target_exists(config.database):
            raise DatabaseConnectionError(f"SQLite database file not found: {config.database}")

        try:
            connection = engine.connect()
        except SQLAlchemyError as e:
            logger.error("DB_CONNECT_FAILED", **config.describe(), error=store_message(e))
            raise DatabaseConnectionError(
                f"Could not connect to {config.masked()}",
                store_message=store_message(e),
            ) from e

        try:
            handle = ConnectionHandle(connection, config)
            handle.apply_statement_timeout()
            yield handle
        finally:
            connection.close()
    finally:
        engine.dispose()


def run_with_connection(config: ConnectionConfig, fn: Callable[[ConnectionHandle], T]) -> T:
    """Run ``fn(handle)`` inside a scoped connection; release is unconditional."""
    with acquire(config) as handle:
        return fn(handle)


# ---------------------------------------------------------------------------
# Connection observability
# ---------------------------------------------------------------------------

def _register_pool_events(pool: Pool) -> None:
    """
    Attach SQLAlchemy pool event listeners for observability.

    Logs:
      - ``DB_CONNECT``: the invocation's connection was checked out.
      - ``DB_RELEASE``: the connection was returned, with time held.
      - ``DB_INVALIDATE``: the connection was invalidated (e.g. dropped).
    """

    @event.listens_for(pool, "checkout")
    def _on_checkout(dbapi_connection, connection_record, connection_proxy):
        connection_record.info["checkout_time"] = time.monotonic()
        _pool_logger.debug("DB_CONNECT")

    @event.listens_for(pool, "checkin")
    def _on_checkin(dbapi_connection, connection_record):
        checkout_time = connection_record.info.pop("checkout_time", None)
        held_ms = (
            round((time.monotonic() - checkout_time) * 1000, 1)
            if checkout_time is not None
            else None
        )
        _pool_logger.debug("DB_RELEASE", held_ms=held_ms)

    @event.listens_for(pool, "invalidate")
    def _on_invalidate(dbapi_connection, connection_record, exception):
        _pool_logger.warning(
            "DB_INVALIDATE",
            error=str(exception) if exception else None,
        )
