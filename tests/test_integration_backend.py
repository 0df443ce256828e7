"""
End-to-end tests of the identity backend over an in-memory database.
"""

import logging
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from lockerstore.backend import MAX_ACCOUNT_DEPTH, RelationalBackend, open_backend
from lockerstore.core.config import Settings
from lockerstore.core.errors import (
    AccessKeyNotFoundError,
    AccountExistsError,
    AccountNotFoundError,
    ConstraintError,
    DIDExistsError,
    DIDNotFoundError,
    IdentityNotFoundError,
    LockerNotFoundError,
    PropertyNotFoundError,
    RecoveryCodeNotFoundError,
    StoreError,
)
from lockerstore.domain import models

pytestmark = pytest.mark.smoke

ALICE = "did:example:alice"
BOB = "did:example:bob"


@pytest.fixture
def backend(client):
    return RelationalBackend(client)


@pytest.fixture
async def alice(backend):
    acct = models.Account(id=ALICE, email="alice@example.com", name="Alice")
    await backend.create_account(acct)
    return acct


def envelope(hash: str, level: int = 0) -> models.DataEnvelope:
    return models.DataEnvelope(
        hash=hash, access_level=level, encrypted_id=f"id-{hash}", encrypted_body=f"data-{hash}"
    )


def did_document(did: str, signature: str) -> models.DIDDocument:
    return models.DIDDocument(
        id=did,
        public_key=[{"id": f"{did}#key-1", "type": "Ed25519VerificationKey2018"}],
        proof=models.Proof(type="Ed25519Signature2018", creator=f"{did}#key-1", value=signature),
    )


# ============================================================================
# Accounts
# ============================================================================


class TestAccounts:
    @pytest.mark.anyio
    async def test_get_by_did_and_email(self, backend, alice):
        by_did = await backend.get_account(ALICE)
        by_email = await backend.get_account("alice@example.com")

        assert by_did.id == ALICE
        assert by_did.name == "Alice"
        assert by_email.id == ALICE

    @pytest.mark.anyio
    async def test_duplicate_did(self, backend, alice):
        with pytest.raises(AccountExistsError):
            await backend.create_account(models.Account(id=ALICE))

    @pytest.mark.anyio
    async def test_duplicate_email(self, backend, alice):
        with pytest.raises(AccountExistsError):
            await backend.create_account(models.Account(id=BOB, email="alice@example.com"))

    @pytest.mark.anyio
    async def test_empty_emails_do_not_collide(self, backend):
        await backend.create_account(models.Account(id=ALICE))
        await backend.create_account(models.Account(id=BOB))

        assert len(await backend.list_accounts()) == 2

    @pytest.mark.anyio
    async def test_unknown_account(self, backend):
        with pytest.raises(AccountNotFoundError):
            await backend.get_account(BOB)
        with pytest.raises(AccountNotFoundError):
            await backend.get_account("nobody@example.com")

    @pytest.mark.anyio
    async def test_update(self, backend, alice):
        updated = alice.model_copy(update={"state": "suspended", "email": "a@example.org"})
        await backend.update_account(updated)

        stored = await backend.get_account("a@example.org")
        assert stored.state == "suspended"
        with pytest.raises(AccountNotFoundError):
            await backend.get_account("alice@example.com")

    @pytest.mark.anyio
    async def test_update_unknown(self, backend):
        with pytest.raises(AccountNotFoundError):
            await backend.update_account(models.Account(id=BOB))

    @pytest.mark.anyio
    async def test_list_filters(self, backend, alice):
        await backend.create_account(models.Account(id=BOB, parent_account=ALICE))
        await backend.create_account(
            models.Account(id="did:example:carol", parent_account=ALICE, state="suspended")
        )

        children = await backend.list_accounts(parent_account_id=ALICE)
        suspended_children = await backend.list_accounts(
            parent_account_id=ALICE, state_filter="suspended"
        )
        active = await backend.list_accounts(state_filter="active")

        assert sorted(a.id for a in children) == [BOB, "did:example:carol"]
        assert [a.id for a in suspended_children] == ["did:example:carol"]
        assert sorted(a.id for a in active) == [ALICE, BOB]

    @pytest.mark.anyio
    async def test_delete(self, backend, alice):
        await backend.delete_account(ALICE)

        with pytest.raises(AccountNotFoundError):
            await backend.get_account(ALICE)
        with pytest.raises(AccountNotFoundError):
            await backend.delete_account(ALICE)


class TestAccountAccess:
    @pytest.mark.anyio
    async def test_ancestor_chain(self, backend, alice):
        await backend.create_account(models.Account(id=BOB, parent_account=ALICE))
        await backend.create_account(models.Account(id="did:example:carol", parent_account=BOB))

        assert await backend.has_account_access(ALICE, ALICE) is True
        assert await backend.has_account_access(ALICE, "did:example:carol") is True
        assert await backend.has_account_access(BOB, "did:example:carol") is True

    @pytest.mark.anyio
    async def test_no_access_upwards(self, backend, alice):
        await backend.create_account(models.Account(id=BOB, parent_account=ALICE))

        assert await backend.has_account_access(BOB, ALICE) is False

    @pytest.mark.anyio
    async def test_missing_account_on_chain(self, backend, alice):
        await backend.create_account(models.Account(id=BOB, parent_account="did:example:gone"))

        with pytest.raises(AccountNotFoundError):
            await backend.has_account_access(ALICE, BOB)

    @pytest.mark.anyio
    async def test_parent_loop_hits_depth_limit(self, backend):
        await backend.create_account(models.Account(id=ALICE, parent_account=BOB))
        await backend.create_account(models.Account(id=BOB, parent_account=ALICE))

        with pytest.raises(StoreError, match="max account depth exceeded") as exc_info:
            await backend.has_account_access("did:example:outsider", ALICE)
        assert exc_info.value.details == {"max_depth": MAX_ACCOUNT_DEPTH}


# ============================================================================
# DID documents and access keys
# ============================================================================


class TestDIDDocuments:
    @pytest.mark.anyio
    async def test_store_is_idempotent(self, backend):
        doc = did_document(ALICE, "sig-1")
        await backend.create_did_document(doc)
        await backend.create_did_document(doc)

        stored = await backend.get_did_document(ALICE)
        assert stored.equals(doc)
        assert stored.public_key == doc.public_key
        assert len(await backend.list_did_documents()) == 1

    @pytest.mark.anyio
    async def test_conflicting_document(self, backend):
        await backend.create_did_document(did_document(ALICE, "sig-1"))

        with pytest.raises(DIDExistsError):
            await backend.create_did_document(did_document(ALICE, "sig-2"))

    @pytest.mark.anyio
    async def test_unknown_did(self, backend):
        with pytest.raises(DIDNotFoundError):
            await backend.get_did_document(ALICE)


class TestAccessKeys:
    @pytest.mark.anyio
    async def test_lifecycle(self, backend, alice):
        key = models.AccessKey(
            id="did:key:1", account_id=ALICE, access_level=2, management_key="mk"
        )
        await backend.store_access_key(key)

        listed = await backend.list_access_keys(ALICE)
        assert [k.id for k in listed] == ["did:key:1"]

        stored = await backend.get_access_key("did:key:1")
        assert stored.account_id == ALICE
        assert stored.access_level == 2
        assert stored.management_key == "mk"

        await backend.delete_access_key("did:key:1")
        assert await backend.list_access_keys(ALICE) == []
        with pytest.raises(AccessKeyNotFoundError):
            await backend.get_access_key("did:key:1")
        with pytest.raises(AccessKeyNotFoundError):
            await backend.delete_access_key("did:key:1")

    @pytest.mark.anyio
    async def test_unknown_owner(self, backend):
        with pytest.raises(AccountNotFoundError):
            await backend.store_access_key(models.AccessKey(id="did:key:1", account_id=BOB))


# ============================================================================
# Envelopes
# ============================================================================


class TestEnvelopes:
    @pytest.mark.anyio
    async def test_identities_by_level(self, backend, alice):
        await backend.store_identity(ALICE, envelope("h1", level=1))
        await backend.store_identity(ALICE, envelope("h2", level=1))
        await backend.store_identity(ALICE, envelope("h3", level=3))

        assert await backend.get_identity(ALICE, "h1") == envelope("h1", level=1)
        level_one = await backend.list_identities(ALICE, 1)
        assert sorted(e.hash for e in level_one) == ["h1", "h2"]
        assert await backend.list_identities(ALICE, 5) == []

    @pytest.mark.anyio
    async def test_identity_scoped_to_account(self, backend, alice):
        await backend.create_account(models.Account(id=BOB))
        await backend.store_identity(ALICE, envelope("h1"))

        with pytest.raises(IdentityNotFoundError):
            await backend.get_identity(BOB, "h1")

    @pytest.mark.anyio
    async def test_lockers(self, backend, alice):
        await backend.store_locker(ALICE, envelope("l1", level=2))

        assert await backend.get_locker(ALICE, "l1") == envelope("l1", level=2)
        assert await backend.list_lockers(ALICE, 2) == [envelope("l1", level=2)]
        with pytest.raises(LockerNotFoundError):
            await backend.get_locker(ALICE, "missing")

    @pytest.mark.anyio
    async def test_duplicate_hash(self, backend, alice):
        await backend.store_locker(ALICE, envelope("l1"))

        with pytest.raises(ConstraintError):
            await backend.store_locker(ALICE, envelope("l1"))

    @pytest.mark.anyio
    async def test_properties(self, backend, alice):
        await backend.store_property(ALICE, envelope("p1"))
        assert await backend.list_properties(ALICE, 0) == [envelope("p1")]

        await backend.delete_property(ALICE, "p1")

        with pytest.raises(PropertyNotFoundError):
            await backend.get_property(ALICE, "p1")
        with pytest.raises(PropertyNotFoundError):
            await backend.delete_property(ALICE, "p1")

    @pytest.mark.anyio
    async def test_store_for_unknown_account(self, backend):
        with pytest.raises(AccountNotFoundError):
            await backend.store_identity(BOB, envelope("h1"))


# ============================================================================
# Recovery codes
# ============================================================================


class TestRecoveryCodes:
    @pytest.mark.anyio
    async def test_lifecycle(self, backend, alice):
        expires = datetime(2030, 1, 2, 3, 4, 5, tzinfo=UTC)
        await backend.create_recovery_code(
            models.RecoveryCode(code="RC-1", user_id=ALICE, expires_at=expires)
        )

        rc = await backend.get_recovery_code("RC-1")
        assert rc.user_id == ALICE
        assert rc.expires_at == expires

        await backend.delete_recovery_code("RC-1")
        with pytest.raises(RecoveryCodeNotFoundError):
            await backend.get_recovery_code("RC-1")
        with pytest.raises(RecoveryCodeNotFoundError):
            await backend.delete_recovery_code("RC-1")

    @pytest.mark.anyio
    async def test_orphaned_by_account_deletion(self, backend, client, alice):
        await backend.create_recovery_code(
            models.RecoveryCode(
                code="RC-1", user_id=ALICE, expires_at=datetime.now(UTC) + timedelta(hours=1)
            )
        )
        await backend.delete_account(ALICE)

        with pytest.raises(RecoveryCodeNotFoundError):
            await backend.get_recovery_code("RC-1")
        # The row itself is retained
        assert await client.recovery_code.query().count() == 1

    @pytest.mark.anyio
    async def test_unknown_user(self, backend):
        with pytest.raises(AccountNotFoundError):
            await backend.create_recovery_code(models.RecoveryCode(code="RC-1", user_id=BOB))


# ============================================================================
# Startup
# ============================================================================


@pytest.fixture
def _restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


class TestOpenBackend:
    @pytest.mark.anyio
    async def test_sync_schema_migrates(self, tmp_path: Path, _restore_root_logger):
        settings = Settings(
            database_url=f"sqlite3://{tmp_path / 'node.db'}",
            sync_schema=True,
            structured_logs=False,
        )
        backend = await open_backend(settings)
        try:
            await backend.create_account(models.Account(id=ALICE))
            assert (await backend.get_account(ALICE)).id == ALICE
        finally:
            await backend.close()

    @pytest.mark.anyio
    async def test_missing_migrations_path(self, tmp_path: Path, _restore_root_logger):
        settings = Settings(
            database_url=f"sqlite3://{tmp_path / 'node.db'}",
            sync_schema=True,
            migrations_path=str(tmp_path / "missing"),
            structured_logs=False,
        )
        with pytest.raises(StoreError, match="migrations directory not found"):
            await open_backend(settings)
