"""
In-memory entity records returned by the store.

Entities are plain dataclasses built from result rows. Relations live in
``entity.edges``: an edge requested through ``with_<edge>()`` holds a list
(one-to-many) or an entity or None (many-to-one); reading an edge that was
not requested raises ``NotLoadedError``.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Any, ClassVar

from lockerstore.core.errors import NotLoadedError


class Edges:
    """Per-entity edge slots filled by eager loading."""

    __slots__ = ("_names", "_values")

    def __init__(self, names: Iterable[str]) -> None:
        self._names = frozenset(names)
        self._values: dict[str, Any] = {}

    def __getattr__(self, name: str) -> Any:
        if not name.startswith("_") and name in self._names:
            return self.get(name)
        raise AttributeError(name)

    def get(self, name: str) -> Any:
        if name not in self._names:
            raise AttributeError(name)
        try:
            return self._values[name]
        except KeyError:
            raise NotLoadedError(name) from None

    def set(self, name: str, value: Any) -> None:
        if name not in self._names:
            raise AttributeError(name)
        self._values[name] = value

    def loaded(self, name: str) -> bool:
        return name in self._values

    def __repr__(self) -> str:
        return f"Edges(loaded={sorted(self._values)})"


@dataclass(kw_only=True)
class Entity:
    label: ClassVar[str] = ""
    edge_names: ClassVar[tuple[str, ...]] = ()
    # Column name -> attribute name, where they differ
    column_attrs: ClassVar[dict[str, str]] = {}

    id: int
    edges: Edges = field(default=None, compare=False, repr=False)  # type: ignore[assignment]

    def __post_init__(self) -> None:
        if self.edges is None:
            self.edges = Edges(self.edge_names)

    @classmethod
    def attr_for(cls, column: str) -> str:
        return cls.column_attrs.get(column, column)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]):
        """Build an entity from a result row keyed by column name."""
        names = {f.name for f in fields(cls)}
        kwargs = {}
        for column, value in row.items():
            attr = cls.attr_for(column)
            if attr in names:
                kwargs[attr] = value
        return cls(**kwargs)

    def value(self, column: str) -> Any:
        """Current value of a column on this entity."""
        return getattr(self, self.attr_for(column))


@dataclass(kw_only=True)
class Account(Entity):
    label: ClassVar[str] = "Account"
    edge_names: ClassVar[tuple[str, ...]] = (
        "recovery_codes",
        "access_keys",
        "identities",
        "lockers",
        "properties",
    )

    did: str
    state: str
    email: str | None = None
    parent_account: str | None = None
    body: Any = None


@dataclass(kw_only=True)
class _AccountChild(Entity):
    edge_names: ClassVar[tuple[str, ...]] = ("account",)
    column_attrs: ClassVar[dict[str, str]] = {"account": "account_id"}

    # FK to accounts.id; None once the owner is deleted
    account_id: int | None = None


@dataclass(kw_only=True)
class RecoveryCode(_AccountChild):
    label: ClassVar[str] = "RecoveryCode"

    code: str
    expires_at: datetime | None = None


@dataclass(kw_only=True)
class AccessKey(_AccountChild):
    label: ClassVar[str] = "AccessKey"

    did: str
    body: Any = None


@dataclass(kw_only=True)
class _Envelope(_AccountChild):
    hash: str
    level: int
    encrypted_id: str
    encrypted_body: str


@dataclass(kw_only=True)
class Identity(_Envelope):
    label: ClassVar[str] = "Identity"


@dataclass(kw_only=True)
class Locker(_Envelope):
    label: ClassVar[str] = "Locker"


@dataclass(kw_only=True)
class Property(_Envelope):
    label: ClassVar[str] = "Property"


@dataclass(kw_only=True)
class DID(Entity):
    label: ClassVar[str] = "DID"

    did: str
    body: Any = None


ENTITY_TYPES: dict[str, type[Entity]] = {
    cls.label: cls for cls in (Account, RecoveryCode, AccessKey, Identity, Locker, Property, DID)
}
