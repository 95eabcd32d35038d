"""
Configuration models for dbrepair.

Uses Pydantic for validation and type safety. A single loading boundary
(`load_config`) produces an immutable `ConnectionConfig` that is passed
explicitly to every operation.
"""
from typing import Literal, Optional
from pydantic import Field, ValidationError as PydanticValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.engine import URL, make_url
from sqlalchemy.exc import ArgumentError
import math
import os
import re
import yaml
from pathlib import Path

from dbrepair.exceptions import ConfigError

Protocol = Literal["postgresql", "mysql", "sqlite"]

_PROTOCOL_ALIASES = {
    "postgres": "postgresql",
    "pgsql": "postgresql",
    "mariadb": "mysql",
}

DEFAULT_PORTS = {
    "postgresql": 5432,
    "mysql": 3306,
}


class ConnectionConfig(BaseSettings):
    """Connection details for the target store.

    Read from ``DB_*`` environment variables when not given explicitly.
    Frozen: one instance per invocation, never mutated.
    """
    model_config = SettingsConfigDict(env_prefix="DB_", extra="ignore", frozen=True)

    protocol: Protocol = "postgresql"
    host: Optional[str] = "localhost"
    port: Optional[int] = Field(default=None, ge=1, le=65535)
    database: Optional[str] = None
    user: Optional[str] = None
    password: Optional[str] = None

    # SQLAlchemy driver suffix, e.g. "psycopg2" or "pymysql"
    driver: Optional[str] = None

    connect_timeout: float = Field(default=10.0, gt=0, le=300)
    # Per-operation query timeout; None leaves the store default in place
    statement_timeout: Optional[float] = Field(default=None, gt=0)

    @field_validator("protocol", mode="before")
    @classmethod
    def normalize_protocol(cls, v):
        if isinstance(v, str):
            v = v.strip().lower()
            return _PROTOCOL_ALIASES.get(v, v)
        return v

    @model_validator(mode="after")
    def require_database(self):
        if not self.database:
            if self.protocol == "sqlite":
                raise ValueError("sqlite connections need 'database' set to a file path")
            raise ValueError("'database' is required")
        return self

    @classmethod
    def from_url(cls, url: str, **overrides) -> "ConnectionConfig":
        """Build a config from a DATABASE_URL style connection string."""
        try:
            parsed = make_url(url.strip())
        except ArgumentError as e:
            raise ConfigError(f"Invalid database URL: {e}") from e

        backend, _, driver = parsed.drivername.partition("+")
        fields = {
            "protocol": backend,
            "driver": driver or None,
            "host": parsed.host,
            "port": parsed.port,
            "database": parsed.database,
            "user": parsed.username,
            "password": parsed.password,
        }
        fields.update(overrides)
        try:
            return cls(**fields)
        except PydanticValidationError as e:
            raise ConfigError(f"Invalid database URL: {_first_error(e)}") from e

    @property
    def drivername(self) -> str:
        return f"{self.protocol}+{self.driver}" if self.driver else self.protocol

    @property
    def effective_port(self) -> Optional[int]:
        if self.protocol == "sqlite":
            return None
        return self.port or DEFAULT_PORTS.get(self.protocol)

    def url(self) -> URL:
        """SQLAlchemy URL for this configuration."""
        if self.protocol == "sqlite":
            return URL.create("sqlite", database=self.database)
        return URL.create(
            self.drivername,
            username=self.user,
            password=self.password,
            host=self.host,
            port=self.port,
            database=self.database,
        )

    def masked(self) -> str:
        """Printable URL with the password hidden."""
        return self.url().render_as_string(hide_password=True)

    def describe(self) -> dict:
        """Connection target for logs: never includes the password."""
        return {
            "protocol": self.protocol,
            "host": None if self.protocol == "sqlite" else self.host,
            "port": self.effective_port,
            "database": self.database,
            "user": self.user,
            "has_password": bool(self.password),
        }

    def connect_args(self) -> dict:
        """Driver-level connect timeout arguments."""
        if self.protocol == "sqlite":
            return {"timeout": self.connect_timeout}
        return {"connect_timeout": int(math.ceil(self.connect_timeout))}


class LoggingConfig(BaseSettings):
    """Logging configuration (``DBREPAIR_LOG_*`` environment variables)."""
    model_config = SettingsConfigDict(env_prefix="DBREPAIR_LOG_", extra="ignore")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "WARNING"
    format: Literal["json", "text"] = "text"
    file: Optional[str] = None

    @field_validator("level", mode="before")
    @classmethod
    def upper_level(cls, v):
        return v.upper() if isinstance(v, str) else v


class Config(BaseSettings):
    """Main configuration class."""
    model_config = SettingsConfigDict(extra="ignore")

    connection: ConnectionConfig
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> "Config":
        """Load configuration from YAML file."""
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise ConfigError(f"Configuration file not found: {yaml_path}")

        with open(yaml_path, "r") as f:
            raw_content = f.read()

        # Regex to find ${VAR} or $VAR
        pattern = re.compile(r'\$\{([^}]+)\}|\$([a-zA-Z_][a-zA-Z0-9_]*)')

        def replace_match(match):
            var_name = match.group(1) or match.group(2)
            return os.environ.get(var_name, match.group(0))  # Return original if not found

        expanded_content = pattern.sub(replace_match, raw_content)
        try:
            config_dict = yaml.safe_load(expanded_content) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {yaml_path}: {e}") from e
        if not isinstance(config_dict, dict):
            raise ConfigError(f"Expected a mapping at the top of {yaml_path}")

        connection = config_dict.get("connection")
        if connection is None:
            connection_config = connection_from_env()
        elif isinstance(connection, str):
            connection_config = ConnectionConfig.from_url(connection)
        else:
            try:
                connection_config = ConnectionConfig(**connection)
            except PydanticValidationError as e:
                raise ConfigError(f"Invalid connection section in {yaml_path}: {_first_error(e)}") from e

        try:
            logging_config = LoggingConfig(**(config_dict.get("logging") or {}))
        except PydanticValidationError as e:
            raise ConfigError(f"Invalid logging section in {yaml_path}: {_first_error(e)}") from e

        return cls(connection=connection_config, logging=logging_config)


def _first_error(e: PydanticValidationError) -> str:
    err = e.errors()[0]
    loc = ".".join(str(p) for p in err.get("loc", ()) if p != "__root__")
    msg = err.get("msg", str(e))
    return f"{loc}: {msg}" if loc else msg


def connection_from_env() -> ConnectionConfig:
    """
    Build the connection config from the environment.

    ``DATABASE_URL`` wins; otherwise ``DB_*`` variables are read.

    Raises:
        ConfigError: if neither source yields a usable configuration
    """
    db_url = os.getenv("DATABASE_URL", "").strip()
    if db_url:
        return ConnectionConfig.from_url(db_url)

    try:
        return ConnectionConfig()
    except PydanticValidationError as e:
        raise ConfigError(
            "No database configured. Set DATABASE_URL, the DB_* variables "
            f"(DB_PROTOCOL, DB_HOST, DB_PORT, DB_DATABASE, DB_USER, DB_PASSWORD) "
            f"or pass --config ({_first_error(e)})"
        ) from e


def logging_from_env() -> LoggingConfig:
    """Logging settings from ``DBREPAIR_LOG_*`` variables."""
    try:
        return LoggingConfig()
    except PydanticValidationError as e:
        raise ConfigError(f"Invalid logging environment: {_first_error(e)}") from e


def load_config(config_path: str | Path | None = None) -> Config:
    """
    Load and validate configuration.

    Args:
        config_path: Optional YAML file with ``connection`` and ``logging`` sections.

    Returns:
        Validated Config object

    Raises:
        ConfigError: If the file is missing or the configuration is invalid
    """
    if config_path is not None:
        return Config.from_yaml(config_path)

    return Config(connection=connection_from_env(), logging=logging_from_env())
