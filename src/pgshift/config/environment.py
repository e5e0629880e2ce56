"""
Environment Configuration Management Module

Resolves everything pgshift needs from the process environment so that the
migration engine itself only ever receives an already-built connection pool
and explicit options. Sources, in order of precedence:

- Environment variables
- `.env` files in the current working directory
- Default values

Connection settings follow the usual PostgreSQL conventions:

- `DATABASE_URL` / `POSTGRESQL_URL` / `POSTGRES_URL` (connection string)
- `POSTGRESQL_HOST`, `POSTGRESQL_PORT`, `POSTGRESQL_DATABASE`, ... (individual fields)
- `PG_HOST`, `PG_PORT`, `PG_DATABASE`, ... (alternative names)
"""

import os
from pathlib import Path
from typing import Any, Optional

from psycopg.conninfo import make_conninfo

DEFAULT_ENV = {
    "ENV": "development",
    "PGSHIFT_MIGRATIONS_DIR": "migrations",
    "PGSHIFT_TABLE": "schema_migrations",
    "PGSHIFT_LOCK_ID": "741953",
    "PGSHIFT_USE_LOCK": "1",
    "PGSHIFT_LOG_LEVEL": "INFO",
}

_FALSY = ("0", "false", "no", "off", "")


def load_dotenv_files(directory: Optional[Path] = None):
    """Load environment variables from .env files based on current environment."""
    from dotenv import load_dotenv

    root = directory or Path.cwd()
    env_name = os.environ.get("ENV", "development")

    # Later files do not override earlier ones; the process environment wins.
    env_files = [
        root / ".env",
        root / f".env.{env_name}",
        root / f".env.{env_name}.local",
    ]

    for env_file in env_files:
        if env_file.exists():
            load_dotenv(env_file, override=False)


class Environment(object):
    """
    Central access point for environment-derived settings.

    Only the connection factory and the command line use this class. The
    migration runner receives explicit configuration and never reads
    process state.
    """

    _loaded: bool = False

    @classmethod
    def load_settings(cls, directory: Optional[Path] = None):
        load_dotenv_files(directory)
        cls._loaded = True

    @classmethod
    def get(cls, key: str, default: Any = None):
        if not cls._loaded:
            cls.load_settings()
        value = os.environ.get(key)
        if value is not None:
            return value
        if default is not None:
            return default
        return DEFAULT_ENV.get(key)

    @classmethod
    def _first(cls, *keys: str, default: Any = None):
        if not cls._loaded:
            cls.load_settings()
        for key in keys:
            value = os.environ.get(key)
            if value:
                return value
        return default

    @classmethod
    def get_env(cls):
        """
        The environment is either "development" or "production".
        """
        return cls._first("ENV", "NODE_ENV", default=DEFAULT_ENV["ENV"])

    @classmethod
    def is_production(cls):
        return cls.get_env() == "production"

    @classmethod
    def get_log_level(cls):
        """Return desired log level string.

        Priority:
        1) PGSHIFT_LOG_LEVEL
        2) If DEBUG env is truthy, return "DEBUG"
        3) "INFO"
        """
        level = os.getenv("PGSHIFT_LOG_LEVEL")
        if level:
            return level.upper()
        debug_env = os.getenv("DEBUG")
        if debug_env and debug_env.lower() not in _FALSY:
            return "DEBUG"
        return "INFO"

    @classmethod
    def get_database_url(cls) -> str | None:
        """
        The database url is the connection string of the target database.
        """
        return cls._first("DATABASE_URL", "POSTGRESQL_URL", "POSTGRES_URL")

    @classmethod
    def get_postgres_params(cls) -> dict[str, Any]:
        """
        Individual connection fields, used when no connection string is set.
        """
        return {
            "host": cls._first("POSTGRESQL_HOST", "PG_HOST", default="localhost"),
            "port": int(cls._first("POSTGRESQL_PORT", "PG_PORT", default=5432)),
            "dbname": cls._first("POSTGRESQL_DATABASE", "PG_DATABASE"),
            "user": cls._first("POSTGRESQL_USER", "PG_USER"),
            "password": cls._first("POSTGRESQL_PASSWORD", "PG_PASSWORD"),
        }

    @classmethod
    def get_sslmode(cls, host: str | None = None) -> str | None:
        """
        SSL mode for the connection.

        An explicit PGSHIFT_SSLMODE always wins. Otherwise SSL is required in
        production, except when talking to a Docker service named "postgres".
        """
        explicit = cls.get("PGSHIFT_SSLMODE")
        if explicit:
            return explicit
        if host is None:
            host = cls.get_postgres_params()["host"]
        if cls.is_production() and host != "postgres":
            return "require"
        return None

    @classmethod
    def build_conninfo(cls, database_url: str | None = None) -> str:
        """
        Build a libpq connection string from a url or the individual fields.
        """
        url = database_url or cls.get_database_url()
        params = cls.get_postgres_params()
        sslmode = cls.get_sslmode(params["host"])
        extra = {"sslmode": sslmode} if sslmode else {}

        if url:
            return make_conninfo(url, **extra)

        fields = {k: v for k, v in params.items() if v is not None}
        return make_conninfo("", **fields, **extra)

    @classmethod
    def get_migrations_dir(cls) -> Path:
        return Path(cls.get("PGSHIFT_MIGRATIONS_DIR")).expanduser()

    @classmethod
    def get_table_name(cls) -> str:
        return cls.get("PGSHIFT_TABLE")

    @classmethod
    def get_lock_id(cls) -> int:
        return int(cls.get("PGSHIFT_LOCK_ID"))

    @classmethod
    def get_use_lock(cls) -> bool:
        return str(cls.get("PGSHIFT_USE_LOCK")).lower() not in _FALSY
