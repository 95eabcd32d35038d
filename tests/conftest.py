"""
Pytest configuration and shared fixtures.

Store-backed tests run against a real SQLite file seeded per test.
"""
import os

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.pool import NullPool

from dbrepair.config.config import ConnectionConfig
from dbrepair.monitoring.logger import setup_logging
from dbrepair.storage.db import acquire

# Variables the configuration layer reads; cleared so the host environment never leaks in.
CONFIG_ENV_VARS = (
    "DATABASE_URL",
    "DB_PROTOCOL",
    "DB_HOST",
    "DB_PORT",
    "DB_DATABASE",
    "DB_USER",
    "DB_PASSWORD",
    "DB_DRIVER",
    "DB_CONNECT_TIMEOUT",
    "DB_STATEMENT_TIMEOUT",
    "DBREPAIR_LOG_LEVEL",
    "DBREPAIR_LOG_FORMAT",
    "DBREPAIR_LOG_FILE",
    "ENVIRONMENT",
)

SCHEMA = (
    """
    CREATE TABLE api_keys (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        provider TEXT,
        "isActive" BOOLEAN NOT NULL DEFAULT 1,
        note TEXT
    )
    """,
    """
    CREATE TABLE companies (
        id INTEGER PRIMARY KEY,
        name TEXT NOT NULL,
        plan TEXT,
        relation TEXT
    )
    """,
    """
    CREATE TABLE hr_leave_requests (
        id INTEGER PRIMARY KEY,
        "employeeId" TEXT,
        days INTEGER
    )
    """,
    """
    CREATE TABLE events (
        kind TEXT,
        payload TEXT
    )
    """,
)

SEED = (
    "INSERT INTO api_keys (id, name, provider, \"isActive\", note) VALUES "
    "('k1', 'OpenAI prod', 'openai', 1, 'leaked'), "
    "('k2', 'OpenAI staging', 'openai', 1, NULL), "
    "('k3', 'Gemini', 'gemini', 0, NULL)",
    "INSERT INTO companies (id, name, plan, relation) VALUES "
    "(1, 'Acme', 'basic_legacy', 'users[]'), "
    "(2, 'Globex', 'basic_legacy', 'orders'), "
    "(3, 'Initech', 'pro', 'users[] orders[]')",
    "INSERT INTO hr_leave_requests (id, \"employeeId\", days) VALUES (1, 'u-1', 3), (2, 'u-2', 5)",
    "INSERT INTO events (kind, payload) VALUES ('login', 'a'), ('login', 'b'), ('logout', 'a')",
)


@pytest.fixture(autouse=True)
def _clean_config_env(monkeypatch):
    for name in CONFIG_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture(autouse=True)
def _stderr_logging():
    """Rebind logging to the current stderr (CliRunner swaps streams)."""
    setup_logging("WARNING", "text")


@pytest.fixture()
def db_path(tmp_path):
    """A seeded SQLite database file."""
    path = tmp_path / "store.db"
    engine = create_engine(f"sqlite:///{path}", poolclass=NullPool)
    with engine.begin() as conn:
        for ddl in SCHEMA:
            conn.execute(text(ddl))
        for stmt in SEED:
            conn.execute(text(stmt))
    engine.dispose()
    return path


@pytest.fixture()
def config(db_path):
    return ConnectionConfig(protocol="sqlite", database=str(db_path))


@pytest.fixture()
def handle(config):
    with acquire(config) as h:
        yield h


@pytest.fixture()
def restore_environ():
    """Undo direct os.environ writes (dotenv loading)."""
    saved = dict(os.environ)
    yield
    os.environ.clear()
    os.environ.update(saved)
