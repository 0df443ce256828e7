"""
Identity backend: domain-level storage operations on top of the store.

``RelationalBackend`` is what the host node talks to. It speaks in account
and key DIDs, envelope hashes and recovery codes; integer ids never leave
this module. Documents are stored in ``body`` columns as JSON produced by
the pydantic models in ``lockerstore.domain.models``.

Usage:
    backend = await open_backend(get_settings())
    await backend.create_account(models.Account(id="did:example:a", email="a@example.com"))
"""

import logging

from lockerstore.client import Client
from lockerstore.core.config import Settings
from lockerstore.core.errors import (
    AccessKeyNotFoundError,
    AccountExistsError,
    AccountNotFoundError,
    DIDExistsError,
    DIDNotFoundError,
    IdentityNotFoundError,
    LockerNotFoundError,
    NotFoundError,
    PropertyNotFoundError,
    RecoveryCodeNotFoundError,
    StoreError,
)
from lockerstore.core.observability import configure_structured_logging
from lockerstore.db.migration import check_schema_compatibility, migrate_schema_with_scripts
from lockerstore.domain import models
from lockerstore.domain.entities import Entity
from lockerstore.store import field, has, where

logger = logging.getLogger(__name__)

# Maximum number of parent_account hops when checking account access
MAX_ACCOUNT_DEPTH = 10


def _envelope(row: Entity) -> models.DataEnvelope:
    return models.DataEnvelope(
        hash=row.hash,  # type: ignore[attr-defined]
        access_level=row.level,  # type: ignore[attr-defined]
        encrypted_id=row.encrypted_id,  # type: ignore[attr-defined]
        encrypted_body=row.encrypted_body,  # type: ignore[attr-defined]
    )


class RelationalBackend:
    """Identity storage over a relational ``Client``."""

    def __init__(self, client: Client) -> None:
        self.client = client

    async def close(self) -> None:
        await self.client.close()

    async def _account_id(self, did: str) -> int:
        try:
            return await self.client.account.query().where(where.account.did.eq(did)).only_id()
        except NotFoundError:
            raise AccountNotFoundError() from None

    # ========================================================================
    # Accounts
    # ========================================================================

    async def create_account(self, acct: models.Account) -> None:
        """
        Store a new account.

        Raises:
            AccountExistsError: If the DID, or a non-empty e-mail, is taken
        """
        logger.debug("Creating account", extra={"uid": acct.id})

        conditions = [where.account.did.eq(acct.id)]
        if acct.email:
            conditions.append(where.account.email.eq(acct.email))
        existing = await (
            self.client.account.query().where(where.or_(*conditions)).limit(1).all()
        )
        if existing:
            if existing[0].did == acct.id:
                raise AccountExistsError()
            logger.error(
                "Email in use by another account", extra={"uid": acct.id, "email": acct.email}
            )
            raise AccountExistsError()

        await (
            self.client.account.create()
            .set_did(acct.id)
            .set_email(acct.email or None)
            .set_state(acct.state)
            .set_parent_account(acct.parent_account or None)
            .set_body(acct.to_body())
            .save()
        )

    async def update_account(self, acct: models.Account) -> None:
        try:
            row = await self.client.account.query().where(where.account.did.eq(acct.id)).first()
        except NotFoundError:
            raise AccountNotFoundError() from None

        await (
            self.client.account.update_one(row)
            .set_state(acct.state)
            .set_email(acct.email or None)
            .set_parent_account(acct.parent_account or None)
            .set_body(acct.to_body())
            .save()
        )

    async def get_account(self, id: str) -> models.Account:
        """Account by DID, or by e-mail when ``id`` contains ``@``."""
        if "@" in id:
            predicate = where.account.email.eq(id)
        else:
            predicate = where.account.did.eq(id)
        try:
            row = await self.client.account.query().where(predicate).first()
        except NotFoundError:
            raise AccountNotFoundError() from None
        return models.Account.from_body(row.body)

    async def delete_account(self, id: str) -> None:
        deleted = await self.client.account.delete().where(where.account.did.eq(id)).exec()
        if deleted == 0:
            raise AccountNotFoundError()

    async def list_accounts(
        self, parent_account_id: str = "", state_filter: str = ""
    ) -> list[models.Account]:
        query = self.client.account.query()
        if parent_account_id:
            query.where(where.account.parent_account.eq(parent_account_id))
        if state_filter:
            query.where(where.account.state.eq(state_filter))
        return [models.Account.from_body(row.body) for row in await query.all()]

    async def has_account_access(self, account_id: str, target_account_id: str) -> bool:
        """
        True when ``account_id`` is ``target_account_id`` or one of its
        ancestors through ``parent_account``.

        Raises:
            AccountNotFoundError: If an account on the chain does not exist
            StoreError: If the chain is deeper than MAX_ACCOUNT_DEPTH
        """
        for _ in range(MAX_ACCOUNT_DEPTH):
            if target_account_id == account_id:
                return True

            try:
                acct = await (
                    self.client.account.query()
                    .where(where.account.did.eq(target_account_id))
                    .first()
                )
            except NotFoundError:
                logger.error(
                    "Account not found while looking for master account",
                    extra={"id": target_account_id},
                )
                raise AccountNotFoundError() from None

            if not acct.parent_account:
                logger.warning("Account has no parent", extra={"id": target_account_id})
                return False

            target_account_id = acct.parent_account

        raise StoreError("max account depth exceeded", details={"max_depth": MAX_ACCOUNT_DEPTH})

    # ========================================================================
    # DID documents
    # ========================================================================

    async def create_did_document(self, doc: models.DIDDocument) -> None:
        """
        Store a DID document; storing an identical document again is a no-op.

        Raises:
            DIDExistsError: If a different document is stored under the DID
        """
        try:
            row = await self.client.did.query().where(where.did.did.eq(doc.id)).first()
        except NotFoundError:
            await self.client.did.create().set_did(doc.id).set_body(doc.to_body()).save()
            return

        if not models.DIDDocument.from_body(row.body).equals(doc):
            raise DIDExistsError()

    async def get_did_document(self, did: str) -> models.DIDDocument:
        try:
            row = await self.client.did.query().where(where.did.did.eq(did)).first()
        except NotFoundError:
            raise DIDNotFoundError() from None
        return models.DIDDocument.from_body(row.body)

    async def list_did_documents(self) -> list[models.DIDDocument]:
        return [models.DIDDocument.from_body(row.body) for row in await self.client.did.query().all()]

    # ========================================================================
    # Access keys
    # ========================================================================

    async def list_access_keys(self, account_id: str) -> list[models.AccessKey]:
        rows = await (
            self.client.access_key.query()
            .where(where.access_key.has_account(where.account.did.eq(account_id)))
            .all()
        )
        return [models.AccessKey.from_body(row.body) for row in rows]

    async def store_access_key(self, key: models.AccessKey) -> None:
        account_id = await self._account_id(key.account_id)
        await (
            self.client.access_key.create()
            .set_account_id(account_id)
            .set_did(key.id)
            .set_body(key.to_body())
            .save()
        )

    async def get_access_key(self, key_id: str) -> models.AccessKey:
        try:
            row = await self.client.access_key.query().where(where.access_key.did.eq(key_id)).first()
        except NotFoundError:
            raise AccessKeyNotFoundError() from None
        return models.AccessKey.from_body(row.body)

    async def delete_access_key(self, key_id: str) -> None:
        deleted = await self.client.access_key.delete().where(where.access_key.did.eq(key_id)).exec()
        if deleted == 0:
            raise AccessKeyNotFoundError()

    # ========================================================================
    # Identities, lockers and properties
    # ========================================================================

    async def _store_envelope(self, repo, account_id: str, envelope: models.DataEnvelope) -> None:
        owner = await self._account_id(account_id)
        await (
            repo.create()
            .set_account_id(owner)
            .set_hash(envelope.hash)
            .set_level(envelope.access_level)
            .set_encrypted_id(envelope.encrypted_id)
            .set_encrypted_body(envelope.encrypted_body)
            .save()
        )

    async def _get_envelope(
        self, repo, account_id: str, hash: str, not_found: type[NotFoundError]
    ) -> models.DataEnvelope:
        try:
            row = await (
                repo.query()
                .where(
                    has("account", where.account.did.eq(account_id)),
                    field("hash").eq(hash),
                )
                .first()
            )
        except NotFoundError:
            raise not_found() from None
        return _envelope(row)

    async def _list_envelopes(self, repo, account_id: str, level: int) -> list[models.DataEnvelope]:
        rows = await (
            repo.query()
            .where(
                has("account", where.account.did.eq(account_id)),
                field("level").eq(level),
            )
            .all()
        )
        return [_envelope(row) for row in rows]

    async def store_identity(self, account_id: str, identity: models.DataEnvelope) -> None:
        await self._store_envelope(self.client.identity, account_id, identity)

    async def get_identity(self, account_id: str, hash: str) -> models.DataEnvelope:
        return await self._get_envelope(self.client.identity, account_id, hash, IdentityNotFoundError)

    async def list_identities(self, account_id: str, level: int) -> list[models.DataEnvelope]:
        return await self._list_envelopes(self.client.identity, account_id, level)

    async def store_locker(self, account_id: str, locker: models.DataEnvelope) -> None:
        await self._store_envelope(self.client.locker, account_id, locker)

    async def get_locker(self, account_id: str, hash: str) -> models.DataEnvelope:
        return await self._get_envelope(self.client.locker, account_id, hash, LockerNotFoundError)

    async def list_lockers(self, account_id: str, level: int) -> list[models.DataEnvelope]:
        return await self._list_envelopes(self.client.locker, account_id, level)

    async def store_property(self, account_id: str, prop: models.DataEnvelope) -> None:
        await self._store_envelope(self.client.property, account_id, prop)

    async def get_property(self, account_id: str, hash: str) -> models.DataEnvelope:
        return await self._get_envelope(self.client.property, account_id, hash, PropertyNotFoundError)

    async def list_properties(self, account_id: str, level: int) -> list[models.DataEnvelope]:
        return await self._list_envelopes(self.client.property, account_id, level)

    async def delete_property(self, account_id: str, hash: str) -> None:
        deleted = await (
            self.client.property.delete()
            .where(
                where.property.has_account(where.account.did.eq(account_id)),
                where.property.hash.eq(hash),
            )
            .exec()
        )
        if deleted == 0:
            raise PropertyNotFoundError()

    # ========================================================================
    # Recovery codes
    # ========================================================================

    async def create_recovery_code(self, rc: models.RecoveryCode) -> None:
        account_id = await self._account_id(rc.user_id)
        await (
            self.client.recovery_code.create()
            .set_code(rc.code)
            .set_account_id(account_id)
            .set_expires_at(rc.expires_at)
            .save()
        )

    async def get_recovery_code(self, code: str) -> models.RecoveryCode:
        try:
            row = await (
                self.client.recovery_code.query()
                .where(where.recovery_code.code.eq(code))
                .with_account()
                .only()
            )
        except NotFoundError:
            raise RecoveryCodeNotFoundError() from None

        owner = row.edges.account
        if owner is None:
            # Orphaned by account deletion
            raise RecoveryCodeNotFoundError()
        return models.RecoveryCode(code=code, user_id=owner.did, expires_at=row.expires_at)

    async def delete_recovery_code(self, code: str) -> None:
        deleted = await (
            self.client.recovery_code.delete().where(where.recovery_code.code.eq(code)).exec()
        )
        if deleted == 0:
            raise RecoveryCodeNotFoundError()


async def open_backend(settings: Settings) -> RelationalBackend:
    """
    Build a client and backend from settings.

    When ``sync_schema`` is set, pending migration scripts are applied and
    the schema is verified before the backend is returned.
    """
    configure_structured_logging(settings.log_level, settings.structured_logs)
    client = Client.from_settings(settings)

    if settings.sync_schema:
        try:
            await migrate_schema_with_scripts(client.engine, settings.migrations_path)
            await check_schema_compatibility(client.engine)
        except BaseException:
            await client.close()
            raise

    logger.info("Identity backend ready", extra={"dialect": client.dialect})
    return RelationalBackend(client)
