"""
Table declarations and entity descriptors for the locker store.

The SQLAlchemy ``metadata`` below is the single source of truth for the
physical schema: it drives DDL generation, the schema compatibility check
and the runtime column validation done by the query and mutation builders.

Tables:
- accounts          root of ownership
- recovery_codes    single-use recovery tokens
- access_keys       API-style credentials
- identities        encrypted identity records
- lockers           encrypted sharing contexts
- properties        encrypted account-scoped attributes
- did_documents     DID Document registry (outside the account aggregate)

Every child table carries a nullable ``account`` column pointing at
``accounts.id`` with ``ON DELETE SET NULL``.
"""

from dataclasses import dataclass
from enum import Enum

from sqlalchemy import Column, ForeignKey, Index, Integer, MetaData, String, Table

from lockerstore.core.errors import ValidationError
from lockerstore.db.types import IdType, JSONDocument, UTCDateTime

INT32_MIN = -(2**31)
INT32_MAX = 2**31 - 1

# Foreign-key column carried by every child table
ACCOUNT_FK_COLUMN = "account"

metadata = MetaData()


def _account_fk(table_name: str, edge: str) -> Column:
    return Column(
        ACCOUNT_FK_COLUMN,
        IdType,
        ForeignKey("accounts.id", ondelete="SET NULL", name=f"{table_name}_accounts_{edge}"),
        nullable=True,
    )


def _envelope_table(name: str, edge: str, index_name: str) -> Table:
    """Identity, Locker and Property share the same encrypted-envelope shape."""
    return Table(
        name,
        metadata,
        Column("id", IdType, primary_key=True, autoincrement=True),
        Column("hash", String, nullable=False),
        Column("level", Integer, nullable=False),
        Column("encrypted_id", String, nullable=False),
        Column("encrypted_body", String, nullable=False),
        _account_fk(name, edge),
        Index(index_name, "hash", unique=True),
    )


accounts = Table(
    "accounts",
    metadata,
    Column("id", IdType, primary_key=True, autoincrement=True),
    Column("did", String, nullable=False, unique=True),
    Column("state", String, nullable=False),
    Column("email", String, nullable=True),
    Column("parent_account", String, nullable=True),
    Column("body", JSONDocument, nullable=False),
    Index("account_did", "did"),
    Index("account_state", "state"),
    Index("account_email", "email"),
    Index("account_parent_account", "parent_account"),
)

access_keys = Table(
    "access_keys",
    metadata,
    Column("id", IdType, primary_key=True, autoincrement=True),
    Column("did", String, nullable=False),
    Column("body", JSONDocument, nullable=False),
    _account_fk("access_keys", "access_keys"),
    Index("accesskey_did", "did", unique=True),
)

did_documents = Table(
    "did_documents",
    metadata,
    Column("id", IdType, primary_key=True, autoincrement=True),
    Column("did", String, nullable=False),
    Column("body", JSONDocument, nullable=False),
    Index("did_did", "did", unique=True),
)

identities = _envelope_table("identities", "identities", "identity_hash")
lockers = _envelope_table("lockers", "lockers", "locker_hash")
properties = _envelope_table("properties", "properties", "property_hash")

recovery_codes = Table(
    "recovery_codes",
    metadata,
    Column("id", IdType, primary_key=True, autoincrement=True),
    Column("code", String, nullable=False),
    Column("expires_at", UTCDateTime, nullable=True),
    _account_fk("recovery_codes", "recovery_codes"),
    Index("recoverycode_code", "code", unique=True),
)


# ============================================================================
# Entity descriptors
# ============================================================================


class FieldType(str, Enum):
    """Logical field types understood by the builders."""

    STRING = "string"
    INT32 = "int32"
    JSON = "json"
    TIME = "time"


class EdgeKind(str, Enum):
    """Edge cardinality, seen from the entity declaring the edge."""

    O2M = "o2m"  # parent side, FK lives on the target table
    M2O = "m2o"  # child side, FK lives on this table


@dataclass(frozen=True)
class FieldSpec:
    name: str
    type: FieldType
    optional: bool = False  # may be omitted on create
    nullable: bool = False  # may be cleared to NULL
    unique: bool = False

    @property
    def numeric(self) -> bool:
        return self.type is FieldType.INT32


@dataclass(frozen=True)
class EdgeSpec:
    name: str
    target: str  # entity label on the other side
    kind: EdgeKind
    inverse: str
    column: str = ACCOUNT_FK_COLUMN

    @property
    def unique(self) -> bool:
        """True when the edge holds at most one entity."""
        return self.kind is EdgeKind.M2O


@dataclass(frozen=True)
class EntitySchema:
    label: str
    table: Table
    fields: tuple[FieldSpec, ...]
    edges: tuple[EdgeSpec, ...] = ()

    @property
    def fk_columns(self) -> tuple[str, ...]:
        return tuple(e.column for e in self.edges if e.kind is EdgeKind.M2O)

    @property
    def columns(self) -> tuple[str, ...]:
        """All declared columns, primary key first."""
        return ("id", *(f.name for f in self.fields), *self.fk_columns)

    def valid_column(self, name: str) -> bool:
        return name in self.columns

    def check_column(self, name: str) -> None:
        if not self.valid_column(name):
            raise ValidationError(name, f"invalid field {name!r} for {self.label}")

    def field(self, name: str) -> FieldSpec:
        for f in self.fields:
            if f.name == name:
                return f
        raise ValidationError(name, f"unknown field {name!r} for {self.label}")

    def edge(self, name: str) -> EdgeSpec:
        for e in self.edges:
            if e.name == name:
                return e
        raise ValidationError(name, f"unknown edge {name!r} for {self.label}")


def _envelope_fields() -> tuple[FieldSpec, ...]:
    return (
        FieldSpec("hash", FieldType.STRING, unique=True),
        FieldSpec("level", FieldType.INT32),
        FieldSpec("encrypted_id", FieldType.STRING),
        FieldSpec("encrypted_body", FieldType.STRING),
    )


def _account_edge(inverse: str) -> EdgeSpec:
    return EdgeSpec("account", "Account", EdgeKind.M2O, inverse=inverse)


ACCOUNT = EntitySchema(
    label="Account",
    table=accounts,
    fields=(
        FieldSpec("did", FieldType.STRING, unique=True),
        FieldSpec("state", FieldType.STRING),
        FieldSpec("email", FieldType.STRING, optional=True, nullable=True),
        FieldSpec("parent_account", FieldType.STRING, optional=True, nullable=True),
        FieldSpec("body", FieldType.JSON),
    ),
    edges=(
        EdgeSpec("recovery_codes", "RecoveryCode", EdgeKind.O2M, inverse="account"),
        EdgeSpec("access_keys", "AccessKey", EdgeKind.O2M, inverse="account"),
        EdgeSpec("identities", "Identity", EdgeKind.O2M, inverse="account"),
        EdgeSpec("lockers", "Locker", EdgeKind.O2M, inverse="account"),
        EdgeSpec("properties", "Property", EdgeKind.O2M, inverse="account"),
    ),
)

RECOVERY_CODE = EntitySchema(
    label="RecoveryCode",
    table=recovery_codes,
    fields=(
        FieldSpec("code", FieldType.STRING, unique=True),
        FieldSpec("expires_at", FieldType.TIME, optional=True, nullable=True),
    ),
    edges=(_account_edge("recovery_codes"),),
)

ACCESS_KEY = EntitySchema(
    label="AccessKey",
    table=access_keys,
    fields=(
        FieldSpec("did", FieldType.STRING, unique=True),
        FieldSpec("body", FieldType.JSON),
    ),
    edges=(_account_edge("access_keys"),),
)

IDENTITY = EntitySchema(
    label="Identity",
    table=identities,
    fields=_envelope_fields(),
    edges=(_account_edge("identities"),),
)

LOCKER = EntitySchema(
    label="Locker",
    table=lockers,
    fields=_envelope_fields(),
    edges=(_account_edge("lockers"),),
)

PROPERTY = EntitySchema(
    label="Property",
    table=properties,
    fields=_envelope_fields(),
    edges=(_account_edge("properties"),),
)

DID = EntitySchema(
    label="DID",
    table=did_documents,
    fields=(
        FieldSpec("did", FieldType.STRING, unique=True),
        FieldSpec("body", FieldType.JSON),
    ),
)

SCHEMAS: dict[str, EntitySchema] = {
    s.label: s for s in (ACCOUNT, RECOVERY_CODE, ACCESS_KEY, IDENTITY, LOCKER, PROPERTY, DID)
}


def schema_for(label: str) -> EntitySchema:
    try:
        return SCHEMAS[label]
    except KeyError:
        raise ValidationError("label", f"unknown entity {label!r}") from None
