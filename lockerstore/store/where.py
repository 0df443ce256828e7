"""
Per-entity predicate namespaces.

Every entity gets a namespace exposing one ``Field`` per declared column and
a ``has_<edge>`` helper per edge:

    from lockerstore.store import where

    client.account.query().where(where.account.did.eq("did:example:a"))
    client.identity.query().where(where.identity.has_account(where.account.state.eq("active")))

Attribute lookups are checked against the schema, so a typo fails at the
call site instead of at compile time.
"""

from collections.abc import Callable

from lockerstore.db.schema import (
    ACCESS_KEY,
    ACCOUNT,
    DID,
    IDENTITY,
    LOCKER,
    PROPERTY,
    RECOVERY_CODE,
    EntitySchema,
)
from lockerstore.store.predicates import Field, Predicate, and_, has, not_, or_

__all__ = [
    "access_key",
    "account",
    "and_",
    "did",
    "identity",
    "locker",
    "not_",
    "or_",
    "property",
    "recovery_code",
]


class EntityWhere:
    """Field and edge predicate factories for one entity."""

    def __init__(self, schema: EntitySchema) -> None:
        self._schema = schema
        for column in schema.columns:
            setattr(self, column, Field(column))

    def __repr__(self) -> str:
        return f"<where {self._schema.label}>"

    def has(self, edge: str, *predicates: Predicate) -> Predicate:
        self._schema.edge(edge)
        return has(edge, *predicates)

    def __getattr__(self, name: str) -> Callable[..., Predicate]:
        if name.startswith("_"):
            raise AttributeError(name)
        # has_account(), has_identities(...)
        if name.startswith("has_"):
            edge = name.removeprefix("has_")
            if any(e.name == edge for e in self._schema.edges):
                return lambda *predicates: has(edge, *predicates)
        raise AttributeError(f"{self._schema.label} has no field or edge {name!r}")


account = EntityWhere(ACCOUNT)
recovery_code = EntityWhere(RECOVERY_CODE)
access_key = EntityWhere(ACCESS_KEY)
identity = EntityWhere(IDENTITY)
locker = EntityWhere(LOCKER)
property = EntityWhere(PROPERTY)
did = EntityWhere(DID)
