"""
Typed queries, builders and repositories for the seven entity kinds.

Everything here is a thin, named layer over the generic implementation in
``query``, ``builders`` and ``repository``: typed setters such as
``set_did`` or ``add_level``, eager-load helpers such as
``with_identities`` and traversal helpers such as ``query_account``.
"""

from collections.abc import Callable
from datetime import datetime
from typing import Any

from lockerstore.domain.entities import (
    DID,
    AccessKey,
    Account,
    Identity,
    Locker,
    Property,
    RecoveryCode,
)
from lockerstore.store.builders import CreateBuilder, UpdateBuilder, UpdateOneBuilder
from lockerstore.store.query import Query
from lockerstore.store.repository import Repository

Configure = Callable[[Any], Any] | None


# ============================================================================
# Account
# ============================================================================


class AccountQuery(Query[Account], label="Account"):
    def with_recovery_codes(self, configure: Configure = None) -> "AccountQuery":
        return self.with_edge("recovery_codes", configure)

    def with_access_keys(self, configure: Configure = None) -> "AccountQuery":
        return self.with_edge("access_keys", configure)

    def with_identities(self, configure: Configure = None) -> "AccountQuery":
        return self.with_edge("identities", configure)

    def with_lockers(self, configure: Configure = None) -> "AccountQuery":
        return self.with_edge("lockers", configure)

    def with_properties(self, configure: Configure = None) -> "AccountQuery":
        return self.with_edge("properties", configure)

    def query_recovery_codes(self) -> "RecoveryCodeQuery":
        return self.traverse("recovery_codes")  # type: ignore[return-value]

    def query_access_keys(self) -> "AccessKeyQuery":
        return self.traverse("access_keys")  # type: ignore[return-value]

    def query_identities(self) -> "IdentityQuery":
        return self.traverse("identities")  # type: ignore[return-value]

    def query_lockers(self) -> "LockerQuery":
        return self.traverse("lockers")  # type: ignore[return-value]

    def query_properties(self) -> "PropertyQuery":
        return self.traverse("properties")  # type: ignore[return-value]


class _AccountSetters:
    def set_did(self, did: str):
        return self._set("did", did)

    def set_state(self, state: str):
        return self._set("state", state)

    def set_email(self, email: str | None):
        return self._set("email", email)

    def set_parent_account(self, parent_account: str | None):
        return self._set("parent_account", parent_account)

    def set_body(self, body: Any):
        return self._set("body", body)

    def add_recovery_code_ids(self, *ids: int):
        return self._add_edge_ids("recovery_codes", ids)

    def add_recovery_codes(self, *codes: RecoveryCode):
        return self.add_recovery_code_ids(*(c.id for c in codes))

    def add_access_key_ids(self, *ids: int):
        return self._add_edge_ids("access_keys", ids)

    def add_access_keys(self, *keys: AccessKey):
        return self.add_access_key_ids(*(k.id for k in keys))

    def add_identity_ids(self, *ids: int):
        return self._add_edge_ids("identities", ids)

    def add_identities(self, *identities: Identity):
        return self.add_identity_ids(*(i.id for i in identities))

    def add_locker_ids(self, *ids: int):
        return self._add_edge_ids("lockers", ids)

    def add_lockers(self, *lockers: Locker):
        return self.add_locker_ids(*(lk.id for lk in lockers))

    def add_property_ids(self, *ids: int):
        return self._add_edge_ids("properties", ids)

    def add_properties(self, *properties: Property):
        return self.add_property_ids(*(p.id for p in properties))


class _AccountUpdaters(_AccountSetters):
    def clear_email(self):
        return self._clear("email")

    def clear_parent_account(self):
        return self._clear("parent_account")

    def remove_recovery_code_ids(self, *ids: int):
        return self._remove_edge_ids("recovery_codes", ids)

    def remove_recovery_codes(self, *codes: RecoveryCode):
        return self.remove_recovery_code_ids(*(c.id for c in codes))

    def clear_recovery_codes(self):
        return self._clear_edge("recovery_codes")

    def remove_access_key_ids(self, *ids: int):
        return self._remove_edge_ids("access_keys", ids)

    def remove_access_keys(self, *keys: AccessKey):
        return self.remove_access_key_ids(*(k.id for k in keys))

    def clear_access_keys(self):
        return self._clear_edge("access_keys")

    def remove_identity_ids(self, *ids: int):
        return self._remove_edge_ids("identities", ids)

    def remove_identities(self, *identities: Identity):
        return self.remove_identity_ids(*(i.id for i in identities))

    def clear_identities(self):
        return self._clear_edge("identities")

    def remove_locker_ids(self, *ids: int):
        return self._remove_edge_ids("lockers", ids)

    def remove_lockers(self, *lockers: Locker):
        return self.remove_locker_ids(*(lk.id for lk in lockers))

    def clear_lockers(self):
        return self._clear_edge("lockers")

    def remove_property_ids(self, *ids: int):
        return self._remove_edge_ids("properties", ids)

    def remove_properties(self, *properties: Property):
        return self.remove_property_ids(*(p.id for p in properties))

    def clear_properties(self):
        return self._clear_edge("properties")


class AccountCreate(_AccountSetters, CreateBuilder[Account]):
    pass


class AccountUpdate(_AccountUpdaters, UpdateBuilder[Account]):
    pass


class AccountUpdateOne(_AccountUpdaters, UpdateOneBuilder[Account]):
    pass


class AccountRepository(Repository[Account]):
    label = "Account"
    query_class = AccountQuery
    create_class = AccountCreate
    update_class = AccountUpdate
    update_one_class = AccountUpdateOne

    def query_recovery_codes(self, account: Account) -> "RecoveryCodeQuery":
        return self.query_edge(account, "recovery_codes")

    def query_access_keys(self, account: Account) -> "AccessKeyQuery":
        return self.query_edge(account, "access_keys")

    def query_identities(self, account: Account) -> "IdentityQuery":
        return self.query_edge(account, "identities")

    def query_lockers(self, account: Account) -> "LockerQuery":
        return self.query_edge(account, "lockers")

    def query_properties(self, account: Account) -> "PropertyQuery":
        return self.query_edge(account, "properties")


# ============================================================================
# Account children
# ============================================================================


class _ChildQuery:
    def with_account(self, configure: Configure = None):
        return self.with_edge("account", configure)

    def query_account(self) -> AccountQuery:
        return self.traverse("account")


class _AccountEdgeSetters:
    def set_account_id(self, id: int | None):
        return self._set_edge_id("account", id)

    def set_account(self, account: Account | None):
        return self.set_account_id(account.id if account is not None else None)


class _AccountEdgeUpdaters(_AccountEdgeSetters):
    def clear_account(self):
        return self._clear_edge("account")


class _ChildRepository:
    def query_account(self, entity: Any) -> AccountQuery:
        return self.query_edge(entity, "account")


# RecoveryCode


class RecoveryCodeQuery(_ChildQuery, Query[RecoveryCode], label="RecoveryCode"):
    pass


class _RecoveryCodeSetters(_AccountEdgeSetters):
    def set_code(self, code: str):
        return self._set("code", code)

    def set_expires_at(self, expires_at: datetime | None):
        return self._set("expires_at", expires_at)


class _RecoveryCodeUpdaters(_RecoveryCodeSetters, _AccountEdgeUpdaters):
    def clear_expires_at(self):
        return self._clear("expires_at")


class RecoveryCodeCreate(_RecoveryCodeSetters, CreateBuilder[RecoveryCode]):
    pass


class RecoveryCodeUpdate(_RecoveryCodeUpdaters, UpdateBuilder[RecoveryCode]):
    pass


class RecoveryCodeUpdateOne(_RecoveryCodeUpdaters, UpdateOneBuilder[RecoveryCode]):
    pass


class RecoveryCodeRepository(_ChildRepository, Repository[RecoveryCode]):
    label = "RecoveryCode"
    query_class = RecoveryCodeQuery
    create_class = RecoveryCodeCreate
    update_class = RecoveryCodeUpdate
    update_one_class = RecoveryCodeUpdateOne


# AccessKey


class AccessKeyQuery(_ChildQuery, Query[AccessKey], label="AccessKey"):
    pass


class _AccessKeySetters(_AccountEdgeSetters):
    def set_did(self, did: str):
        return self._set("did", did)

    def set_body(self, body: Any):
        return self._set("body", body)


class AccessKeyCreate(_AccessKeySetters, CreateBuilder[AccessKey]):
    pass


class AccessKeyUpdate(_AccessKeySetters, _AccountEdgeUpdaters, UpdateBuilder[AccessKey]):
    pass


class AccessKeyUpdateOne(_AccessKeySetters, _AccountEdgeUpdaters, UpdateOneBuilder[AccessKey]):
    pass


class AccessKeyRepository(_ChildRepository, Repository[AccessKey]):
    label = "AccessKey"
    query_class = AccessKeyQuery
    create_class = AccessKeyCreate
    update_class = AccessKeyUpdate
    update_one_class = AccessKeyUpdateOne


# Identity, Locker and Property share the envelope shape


class _EnvelopeSetters(_AccountEdgeSetters):
    def set_hash(self, hash: str):
        return self._set("hash", hash)

    def set_level(self, level: int):
        return self._set("level", level)

    def set_encrypted_id(self, encrypted_id: str):
        return self._set("encrypted_id", encrypted_id)

    def set_encrypted_body(self, encrypted_body: str):
        return self._set("encrypted_body", encrypted_body)


class _EnvelopeUpdaters(_EnvelopeSetters, _AccountEdgeUpdaters):
    def add_level(self, delta: int):
        """Atomically add ``delta`` to ``level``."""
        return self._add("level", delta)


class IdentityQuery(_ChildQuery, Query[Identity], label="Identity"):
    pass


class IdentityCreate(_EnvelopeSetters, CreateBuilder[Identity]):
    pass


class IdentityUpdate(_EnvelopeUpdaters, UpdateBuilder[Identity]):
    pass


class IdentityUpdateOne(_EnvelopeUpdaters, UpdateOneBuilder[Identity]):
    pass


class IdentityRepository(_ChildRepository, Repository[Identity]):
    label = "Identity"
    query_class = IdentityQuery
    create_class = IdentityCreate
    update_class = IdentityUpdate
    update_one_class = IdentityUpdateOne


class LockerQuery(_ChildQuery, Query[Locker], label="Locker"):
    pass


class LockerCreate(_EnvelopeSetters, CreateBuilder[Locker]):
    pass


class LockerUpdate(_EnvelopeUpdaters, UpdateBuilder[Locker]):
    pass


class LockerUpdateOne(_EnvelopeUpdaters, UpdateOneBuilder[Locker]):
    pass


class LockerRepository(_ChildRepository, Repository[Locker]):
    label = "Locker"
    query_class = LockerQuery
    create_class = LockerCreate
    update_class = LockerUpdate
    update_one_class = LockerUpdateOne


class PropertyQuery(_ChildQuery, Query[Property], label="Property"):
    pass


class PropertyCreate(_EnvelopeSetters, CreateBuilder[Property]):
    pass


class PropertyUpdate(_EnvelopeUpdaters, UpdateBuilder[Property]):
    pass


class PropertyUpdateOne(_EnvelopeUpdaters, UpdateOneBuilder[Property]):
    pass


class PropertyRepository(_ChildRepository, Repository[Property]):
    label = "Property"
    query_class = PropertyQuery
    create_class = PropertyCreate
    update_class = PropertyUpdate
    update_one_class = PropertyUpdateOne


# ============================================================================
# DID documents
# ============================================================================


class DIDQuery(Query[DID], label="DID"):
    pass


class _DIDSetters:
    def set_did(self, did: str):
        return self._set("did", did)

    def set_body(self, body: Any):
        return self._set("body", body)


class DIDCreate(_DIDSetters, CreateBuilder[DID]):
    pass


class DIDUpdate(_DIDSetters, UpdateBuilder[DID]):
    pass


class DIDUpdateOne(_DIDSetters, UpdateOneBuilder[DID]):
    pass


class DIDRepository(Repository[DID]):
    label = "DID"
    query_class = DIDQuery
    create_class = DIDCreate
    update_class = DIDUpdate
    update_one_class = DIDUpdateOne
