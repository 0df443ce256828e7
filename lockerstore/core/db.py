"""
Database engine construction.

Builds SQLAlchemy async engines for the supported backends:
- PostgreSQL through psycopg (async mode), pooled
- SQLite through aiosqlite, with foreign keys enforced on every connection

In-memory SQLite databases use a StaticPool so every checkout sees the
same database.
"""

import logging
from typing import Any

from sqlalchemy import event
from sqlalchemy.engine.url import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

from lockerstore.core.config import Settings, to_async_url

logger = logging.getLogger(__name__)


def _is_memory_sqlite(url: str) -> bool:
    database = make_url(url).database
    return not database or database == ":memory:"


def _enable_sqlite_foreign_keys(engine: AsyncEngine) -> None:
    """Turn on FK enforcement; SQLite ignores ON DELETE SET NULL without it."""

    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragma(dbapi_connection: Any, _connection_record: Any) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys = ON")
        cursor.close()


def create_store_engine(
    url: str,
    *,
    pool_size: int = 20,
    max_overflow: int = 10,
    pool_timeout: int = 30,
    pool_recycle: int = 3600,
    connect_timeout: int = 5,
    one_connection: bool = False,
    echo: bool = False,
) -> AsyncEngine:
    """
    Create and configure an async engine for the store.

    Args:
        url: Host database URL (``postgres://``, ``sqlite3://``) or an
            async SQLAlchemy URL
        pool_size: Number of pooled connections (PostgreSQL)
        max_overflow: Connections allowed beyond pool_size (PostgreSQL)
        pool_timeout: Seconds to wait for a connection
        pool_recycle: Recycle connections after this many seconds
        connect_timeout: Connection timeout in seconds (PostgreSQL)
        one_connection: Cap the pool to a single connection
        echo: Let SQLAlchemy log every statement

    Returns:
        Configured async engine
    """
    async_url = to_async_url(url)

    if async_url.startswith("sqlite"):
        kwargs: dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if _is_memory_sqlite(async_url):
            kwargs["poolclass"] = StaticPool
        elif one_connection:
            kwargs["pool_size"] = 1
            kwargs["max_overflow"] = 0
        engine = create_async_engine(async_url, echo=echo, **kwargs)
        _enable_sqlite_foreign_keys(engine)
    else:
        if one_connection:
            pool_size, max_overflow = 1, 0
        engine = create_async_engine(
            async_url,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_timeout=pool_timeout,
            pool_recycle=pool_recycle,
            pool_pre_ping=True,  # Verify connections before use
            connect_args={"connect_timeout": connect_timeout},
            echo=echo,
        )

    logger.debug(
        "Created store engine",
        extra={"dialect": engine.dialect.name, "one_connection": one_connection},
    )
    return engine


def create_engine_from_settings(settings: Settings, *, one_connection: bool = False) -> AsyncEngine:
    """Create the store engine described by ``settings``."""
    return create_store_engine(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
        pool_recycle=settings.db_pool_recycle,
        connect_timeout=settings.db_connect_timeout,
        one_connection=one_connection,
    )
