"""
Configuration loading and validation.

Verifies precedence (YAML file > DATABASE_URL > DB_* variables), URL parsing,
${VAR} expansion and that passwords never leak into printable forms.
"""
import pytest
from pydantic import ValidationError as PydanticValidationError

from dbrepair.config.config import ConnectionConfig, connection_from_env, load_config
from dbrepair.exceptions import ConfigError


class TestFromUrl:
    def test_postgres_url_with_driver(self):
        config = ConnectionConfig.from_url("postgresql+psycopg2://app:pw@db.internal:6543/crm")

        assert config.protocol == "postgresql"
        assert config.driver == "psycopg2"
        assert config.host == "db.internal"
        assert config.port == 6543
        assert config.database == "crm"
        assert config.user == "app"
        assert config.password == "pw"

    @pytest.mark.parametrize(
        "url, protocol",
        [
            ("postgres://u@h/db", "postgresql"),
            ("mariadb+pymysql://u@h/db", "mysql"),
            ("mysql://u@h/db", "mysql"),
        ],
    )
    def test_protocol_aliases(self, url, protocol):
        assert ConnectionConfig.from_url(url).protocol == protocol

    def test_sqlite_url(self, tmp_path):
        config = ConnectionConfig.from_url(f"sqlite:///{tmp_path}/app.db")

        assert config.protocol == "sqlite"
        assert config.database == f"{tmp_path}/app.db"
        assert config.effective_port is None

    def test_missing_database_is_config_error(self):
        with pytest.raises(ConfigError):
            ConnectionConfig.from_url("postgresql://u@h")

    def test_unsupported_protocol_is_config_error(self):
        with pytest.raises(ConfigError):
            ConnectionConfig.from_url("oracle://u@h/db")

    def test_garbage_is_config_error(self):
        with pytest.raises(ConfigError):
            ConnectionConfig.from_url("not a url")


class TestConnectionConfig:
    def test_masked_and_describe_hide_password(self):
        config = ConnectionConfig.from_url("postgresql://app:hunter2@db/crm")

        assert "hunter2" not in config.masked()
        described = config.describe()
        assert "password" not in described
        assert described["has_password"] is True
        assert described["port"] == 5432

    def test_default_ports(self):
        assert ConnectionConfig(protocol="mysql", database="crm").effective_port == 3306
        assert ConnectionConfig(protocol="postgresql", database="crm").effective_port == 5432

    def test_connect_args_per_protocol(self, tmp_path):
        assert ConnectionConfig(protocol="postgresql", database="crm", connect_timeout=2.5).connect_args() == {
            "connect_timeout": 3
        }
        assert ConnectionConfig(protocol="sqlite", database=str(tmp_path / "a.db")).connect_args() == {"timeout": 10.0}

    def test_frozen(self):
        config = ConnectionConfig(protocol="postgresql", database="crm")
        with pytest.raises(PydanticValidationError):
            config.host = "elsewhere"


class TestPrecedence:
    def test_db_variables(self, monkeypatch):
        monkeypatch.setenv("DB_PROTOCOL", "mysql")
        monkeypatch.setenv("DB_HOST", "mysql.internal")
        monkeypatch.setenv("DB_DATABASE", "crm")
        monkeypatch.setenv("DB_USER", "ops")
        monkeypatch.setenv("DB_PASSWORD", "pw")

        config = connection_from_env()

        assert config.protocol == "mysql"
        assert config.host == "mysql.internal"
        assert config.user == "ops"

    def test_database_url_wins_over_db_variables(self, monkeypatch):
        monkeypatch.setenv("DB_PROTOCOL", "mysql")
        monkeypatch.setenv("DB_DATABASE", "from_vars")
        monkeypatch.setenv("DATABASE_URL", "postgresql://u@h/from_url")

        config = connection_from_env()

        assert config.protocol == "postgresql"
        assert config.database == "from_url"

    def test_nothing_configured_is_config_error(self):
        with pytest.raises(ConfigError, match="No database configured"):
            load_config()

    def test_yaml_wins_over_environment(self, monkeypatch, tmp_path):
        monkeypatch.setenv("DATABASE_URL", "postgresql://u@h/from_url")
        monkeypatch.setenv("STORE_FILE", str(tmp_path / "store.db"))
        path = tmp_path / "dbrepair.yaml"
        path.write_text(
            "connection:\n"
            "  protocol: sqlite\n"
            "  database: ${STORE_FILE}\n"
            "logging:\n"
            "  level: debug\n"
            "  format: json\n"
        )

        config = load_config(path)

        assert config.connection.protocol == "sqlite"
        assert config.connection.database == str(tmp_path / "store.db")
        assert config.logging.level == "DEBUG"
        assert config.logging.format == "json"

    def test_yaml_connection_may_be_a_url(self, tmp_path):
        path = tmp_path / "dbrepair.yaml"
        path.write_text("connection: mysql+pymysql://ops@db/crm\n")

        config = load_config(path)

        assert config.connection.protocol == "mysql"
        assert config.connection.driver == "pymysql"
        assert config.logging.level == "WARNING"

    def test_yaml_without_connection_falls_back_to_environment(self, monkeypatch, tmp_path):
        monkeypatch.setenv("DATABASE_URL", "postgresql://u@h/from_url")
        path = tmp_path / "dbrepair.yaml"
        path.write_text("logging:\n  level: INFO\n")

        config = load_config(path)

        assert config.connection.database == "from_url"
        assert config.logging.level == "INFO"

    def test_missing_yaml_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "nope.yaml")

    def test_invalid_yaml_connection_section(self, tmp_path):
        path = tmp_path / "dbrepair.yaml"
        path.write_text("connection:\n  protocol: sqlite\n")

        with pytest.raises(ConfigError, match="connection"):
            load_config(path)
