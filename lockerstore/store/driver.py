"""
Drivers: how builders reach the database.

Builders never hold connections themselves. They ask the driver for one
with ``async with driver.connection() as conn`` and issue every statement
of an operation through it.

- ``EngineDriver`` opens a short transaction per operation
  (``engine.begin()``), so a failed or cancelled operation rolls back.
- ``TxDriver`` hands out the single connection of an explicit transaction,
  one operation at a time.
- ``DebugDriver`` wraps another driver and logs each statement.
"""

import asyncio
import logging
from collections import defaultdict
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Protocol

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, AsyncTransaction

from lockerstore.core.errors import NotInTransactionError
from lockerstore.store.hooks import Hook, Interceptor

logger = logging.getLogger(__name__)


class Driver(Protocol):
    dialect: str

    def connection(self) -> Any:
        """Async context manager yielding a connection for one operation."""
        ...


class EngineDriver:
    """Runs every operation in its own transaction on a pooled connection."""

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine
        self.dialect = engine.dialect.name

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[AsyncConnection]:
        async with self.engine.begin() as conn:
            yield conn


class TxDriver:
    """
    Driver bound to one open transaction.

    Operations are serialised with a lock. Once the transaction is
    committed or rolled back every further use raises
    ``NotInTransactionError``.
    """

    def __init__(self, conn: AsyncConnection, transaction: AsyncTransaction, dialect: str) -> None:
        self.dialect = dialect
        self._conn = conn
        self._transaction = transaction
        self._lock = asyncio.Lock()
        self._done = False

    @property
    def active(self) -> bool:
        return not self._done

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[AsyncConnection]:
        if self._done:
            raise NotInTransactionError()
        async with self._lock:
            if self._done:
                raise NotInTransactionError()
            yield self._conn

    async def commit(self) -> None:
        await self._finish(self._transaction.commit)

    async def rollback(self) -> None:
        await self._finish(self._transaction.rollback)

    async def _finish(self, action: Callable[[], Any]) -> None:
        if self._done:
            raise NotInTransactionError()
        async with self._lock:
            if self._done:
                raise NotInTransactionError()
            self._done = True
            try:
                await action()
            finally:
                await self._conn.close()


class _DebugConnection:
    """Connection proxy logging statements before executing them."""

    def __init__(self, conn: AsyncConnection, log: Callable[[str], Any]) -> None:
        self._conn = conn
        self._log = log

    def __getattr__(self, name: str) -> Any:
        return getattr(self._conn, name)

    async def execute(self, statement: Any, parameters: Any = None, **kwargs: Any) -> Any:
        if hasattr(statement, "compile"):
            compiled = statement.compile(dialect=self._conn.dialect)
            args = parameters if parameters is not None else compiled.params
            self._log(f"driver.Exec: query={compiled} args={args}")
        else:
            self._log(f"driver.Exec: query={statement} args={parameters}")
        return await self._conn.execute(statement, parameters, **kwargs)


class DebugDriver:
    """Driver wrapper that logs every statement with its arguments."""

    def __init__(self, driver: Driver, log: Callable[[str], Any] | None = None) -> None:
        self.driver = driver
        self.dialect = driver.dialect
        self.log = log or logger.debug

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[Any]:
        async with self.driver.connection() as conn:
            yield _DebugConnection(conn, self.log)


# ============================================================================
# Shared configuration
# ============================================================================


@dataclass
class StoreConfig:
    """Driver plus the hooks and interceptors registered per entity label."""

    driver: Driver
    hooks: dict[str, list[Hook]] = field(default_factory=lambda: defaultdict(list))
    interceptors: dict[str, list[Interceptor]] = field(default_factory=lambda: defaultdict(list))

    def with_driver(self, driver: Driver) -> "StoreConfig":
        """Copy of this configuration bound to another driver."""
        hooks: dict[str, list[Hook]] = defaultdict(list)
        interceptors: dict[str, list[Interceptor]] = defaultdict(list)
        for label, items in self.hooks.items():
            hooks[label] = list(items)
        for label, items in self.interceptors.items():
            interceptors[label] = list(items)
        return StoreConfig(driver=driver, hooks=hooks, interceptors=interceptors)
