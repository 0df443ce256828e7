"""
Client and transactions: the root handles of the store.

Usage:
    client = Client.from_url("sqlite3://:memory:")
    await create_schema(client.engine)

    account = await client.account.create().set_did("did:example:a").set_state("active").set_body({}).save()

    async with client.tx() as tx:
        await tx.identity.create().set_account(account)...save()

Repositories obtained from a transaction share its connection. After
``commit()`` or ``rollback()`` every one of them raises
``NotInTransactionError``.
"""

import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.pool import StaticPool

from lockerstore.core.config import Settings
from lockerstore.core.db import create_engine_from_settings, create_store_engine
from lockerstore.core.observability import metrics
from lockerstore.store.driver import DebugDriver, EngineDriver, StoreConfig, TxDriver
from lockerstore.store.entities import (
    AccessKeyRepository,
    AccountRepository,
    DIDRepository,
    IdentityRepository,
    LockerRepository,
    PropertyRepository,
    RecoveryCodeRepository,
)
from lockerstore.store.hooks import Hook, Interceptor

logger = logging.getLogger(__name__)

_LABELS = ("Account", "RecoveryCode", "AccessKey", "Identity", "Locker", "Property", "DID")


class _Repositories:
    """Repository attributes shared by clients and transactions."""

    def _init_repositories(self, config: StoreConfig) -> None:
        self._config = config
        self.account = AccountRepository(config)
        self.recovery_code = RecoveryCodeRepository(config)
        self.access_key = AccessKeyRepository(config)
        self.identity = IdentityRepository(config)
        self.locker = LockerRepository(config)
        self.property = PropertyRepository(config)
        self.did = DIDRepository(config)

    def use(self, *hooks: Hook) -> None:
        """Register hooks on every repository."""
        for label in _LABELS:
            self._config.hooks[label].extend(hooks)

    def intercept(self, *interceptors: Interceptor) -> None:
        """Register interceptors on every repository."""
        for label in _LABELS:
            self._config.interceptors[label].extend(interceptors)


class Client(_Repositories):
    """
    Root handle of the store.

    Args:
        engine: Async engine the client runs on
        config: Internal; store configuration to share
    """

    def __init__(self, engine: AsyncEngine, config: StoreConfig | None = None) -> None:
        self.engine = engine
        self._init_repositories(config or StoreConfig(driver=EngineDriver(engine)))

    @classmethod
    def from_url(cls, url: str, **engine_options: Any) -> "Client":
        """Client on a new engine for ``url`` (see ``create_store_engine``)."""
        return cls(create_store_engine(url, **engine_options))

    @classmethod
    def from_settings(cls, settings: Settings) -> "Client":
        metrics.enabled = settings.metrics_enabled
        client = cls(create_engine_from_settings(settings))
        if settings.debug_sql:
            client = client.with_debug()
        return client

    def __repr__(self) -> str:
        return f"<Client dialect={self._config.driver.dialect}>"

    @property
    def dialect(self) -> str:
        return self._config.driver.dialect

    def with_debug(self, log: Callable[[str], Any] | None = None) -> "Client":
        """
        New client on the same engine whose driver logs every statement.

        Args:
            log: Callable receiving each log line; defaults to DEBUG logging
        """
        if isinstance(self._config.driver, DebugDriver):
            return self
        config = self._config.with_driver(DebugDriver(self._config.driver, log))
        return Client(self.engine, config)

    async def set_one_open_connection(self) -> None:
        """
        Cap the connection pool to a single connection.

        Meant for tests against single-writer backends. In-memory SQLite
        already runs on one static connection and is left alone.
        """
        if isinstance(self.engine.pool, StaticPool):
            return

        url = self.engine.url.render_as_string(hide_password=False)
        old_engine = self.engine
        self.engine = create_store_engine(url, one_connection=True)

        driver: Any = EngineDriver(self.engine)
        if isinstance(self._config.driver, DebugDriver):
            driver = DebugDriver(driver, self._config.driver.log)
        self._config.driver = driver
        await old_engine.dispose()
        logger.info("Connection pool capped to one connection")

    async def begin(self) -> "Transaction":
        """Open a transaction; repositories on it share one connection."""
        conn = await self.engine.connect()
        try:
            transaction = await conn.begin()
        except BaseException:
            await conn.close()
            raise

        tx_driver = TxDriver(conn, transaction, self.engine.dialect.name)
        driver: Any = tx_driver
        if isinstance(self._config.driver, DebugDriver):
            driver = DebugDriver(tx_driver, self._config.driver.log)
        return Transaction(self, tx_driver, self._config.with_driver(driver))

    @asynccontextmanager
    async def tx(self) -> AsyncIterator["Transaction"]:
        """
        Transaction scope: commit on success, roll back on any error or
        cancellation.
        """
        tx = await self.begin()
        try:
            yield tx
        except BaseException:
            if tx.active:
                await tx.rollback()
            raise
        else:
            if tx.active:
                await tx.commit()

    async def close(self) -> None:
        """Dispose of the engine and its pool."""
        await self.engine.dispose()


class Transaction(_Repositories):
    """
    Client variant bound to one database transaction.

    State machine: OPEN -> COMMITTED | ROLLED_BACK.
    """

    def __init__(self, client: Client, driver: TxDriver, config: StoreConfig) -> None:
        self._client = client
        self._driver = driver
        self._init_repositories(config)

    def __repr__(self) -> str:
        return f"<Transaction active={self.active}>"

    @property
    def active(self) -> bool:
        return self._driver.active

    @property
    def client(self) -> Client:
        """Client whose repositories run inside this transaction."""
        return Client(self._client.engine, self._config)

    async def commit(self) -> None:
        await self._driver.commit()
        logger.debug("Transaction committed")

    async def rollback(self) -> None:
        await self._driver.rollback()
        logger.debug("Transaction rolled back")
