"""Store configuration using Pydantic Settings.

Configuration is loaded from environment variables prefixed with
``LOCKERSTORE_``. Optionally, point ``ENV_FILE`` at a local env file
(for development); when unset no env file is read.
"""

import os

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from lockerstore.core.errors import ConfigurationError

_POSTGRES_SCHEMES = ("postgres", "postgresql")
_SQLITE_SCHEMES = ("sqlite3", "sqlite")


def scheme_from_url(url: str) -> str:
    """
    Return the scheme part of a database URL.

    Args:
        url: Database URL, e.g. ``postgres://user@host/db``

    Returns:
        The scheme, e.g. ``postgres`` (driver suffixes such as
        ``+psycopg`` are preserved)

    Raises:
        ConfigurationError: If the URL is empty or has no scheme
    """
    if not url:
        raise ConfigurationError("URL cannot be empty")

    i = url.find(":")
    # No ':' or ':' is the first character
    if i < 1:
        raise ConfigurationError("no scheme", details={"url": url})

    return url[:i]


def to_async_url(url: str) -> str:
    """
    Convert a host-supplied database URL into a SQLAlchemy async URL.

    Supported inputs:
    - ``postgres://`` / ``postgresql://`` -> ``postgresql+psycopg://``
    - ``sqlite3://path`` / ``sqlite://path`` -> ``sqlite+aiosqlite:///path``
    - URLs that already name an async driver are returned unchanged

    Raises:
        ConfigurationError: If the scheme is not supported
    """
    scheme = scheme_from_url(url)
    base, _, driver = scheme.partition("+")

    if driver:
        if (base == "postgresql" and driver in ("psycopg", "asyncpg")) or (
            base == "sqlite" and driver == "aiosqlite"
        ):
            return url
        raise ConfigurationError(
            f"unsupported database driver: {scheme}", details={"scheme": scheme}
        )

    rest = url[len(scheme) + 1 :]
    if base in _POSTGRES_SCHEMES:
        return f"postgresql+psycopg:{rest}"
    if base in _SQLITE_SCHEMES:
        path = rest.removeprefix("//")
        if path.startswith("file:"):
            path = path.removeprefix("file:")
        # Drop query parameters the Go-style sqlite3 URLs carry (e.g. cache=shared)
        path = path.split("?", 1)[0]
        if not path or path == ":memory:":
            return "sqlite+aiosqlite:///:memory:"
        return f"sqlite+aiosqlite:///{path}"

    raise ConfigurationError(f"unsupported database schema: {base}", details={"scheme": base})


class Settings(BaseSettings):
    """
    Store settings with type validation.

    Configuration is loaded from environment variables, with support
    for an explicit env file in development.
    """

    model_config = SettingsConfigDict(
        env_file=os.getenv("ENV_FILE") or None, env_prefix="LOCKERSTORE_", extra="ignore"
    )

    # Database
    database_url: str = "sqlite3://lockerstore.db"
    sync_schema: bool = False
    migrations_path: str | None = None

    # Connection pool (ignored for SQLite, which uses a single static connection
    # for in-memory databases and the default pool otherwise)
    db_pool_size: int = 20
    db_max_overflow: int = 10
    db_pool_timeout: int = 30
    db_pool_recycle: int = 3600
    db_connect_timeout: int = 5

    # Observability
    log_level: str = "INFO"
    structured_logs: bool = True
    debug_sql: bool = False
    metrics_enabled: bool = True

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        """Reject URLs without a scheme early, before any engine is built."""
        v = v.strip()
        try:
            scheme_from_url(v)
        except ConfigurationError as e:
            raise ValueError(f"database_url is invalid: {e.message}") from e
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"log_level must be a standard logging level, got '{v}'")
        return level

    @property
    def async_url(self) -> str:
        """SQLAlchemy async URL derived from ``database_url``."""
        return to_async_url(self.database_url)

    @property
    def is_sqlite(self) -> bool:
        return self.async_url.startswith("sqlite")


def get_settings() -> Settings:
    """Load settings from the current environment."""
    return Settings()
