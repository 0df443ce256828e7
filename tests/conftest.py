"""
Pytest configuration and shared fixtures.

Provides:
- anyio backend selection (asyncio only)
- client: a Client on a fresh in-memory SQLite database with the schema created
- make_account / make_identity: factories for the most used entities

Every test gets its own database; nothing is shared between tests.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Any

import pytest

from lockerstore.client import Client
from lockerstore.core.observability import metrics
from lockerstore.db.migration import create_schema

MEMORY_URL = "sqlite3://:memory:"


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def _metrics_enabled():
    """Tests that toggle metrics must not leak the setting."""
    metrics.enabled = True
    yield
    metrics.enabled = True


@pytest.fixture
async def client() -> AsyncGenerator[Client, None]:
    """Client on an empty in-memory database."""
    c = Client.from_url(MEMORY_URL)
    await create_schema(c.engine)
    try:
        yield c
    finally:
        await c.close()


async def acreate_account(
    client: Any,
    did: str = "did:example:a",
    *,
    state: str = "active",
    email: str | None = None,
    parent_account: str | None = None,
    body: Any = None,
):
    """Create an account through ``client`` (a Client or a Transaction)."""
    return await (
        client.account.create()
        .set_did(did)
        .set_state(state)
        .set_email(email)
        .set_parent_account(parent_account)
        .set_body(body if body is not None else {})
        .save()
    )


async def acreate_identity(
    client: Any,
    account: Any = None,
    hash: str = "h1",
    *,
    level: int = 0,
    encrypted_id: str = "E1",
    encrypted_body: str = "B1",
):
    builder = (
        client.identity.create()
        .set_hash(hash)
        .set_level(level)
        .set_encrypted_id(encrypted_id)
        .set_encrypted_body(encrypted_body)
    )
    if account is not None:
        builder.set_account(account)
    return await builder.save()


@pytest.fixture
def make_account(client: Client):
    async def factory(did: str = "did:example:a", **kwargs: Any):
        return await acreate_account(client, did, **kwargs)

    return factory


@pytest.fixture
def make_identity(client: Client):
    async def factory(account: Any = None, hash: str = "h1", **kwargs: Any):
        return await acreate_identity(client, account, hash, **kwargs)

    return factory
