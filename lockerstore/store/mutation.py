"""
Mutation state: the staged intent of one create, update or delete.

A ``Mutation`` records what a builder was asked to do without touching the
database:

- fields explicitly set, and fields explicitly cleared to NULL
- numeric deltas (atomic increments) per field
- per edge: ids to add, ids to remove and a "cleared" flag
- predicates, for bulk update and delete

Hooks receive the mutation and may read or rewrite it before it is
executed. Once executed (or aborted) the mutation is sealed.

State machine: FRESH -> STAGED -> EXECUTED | ABORTED
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, Flag, auto
from typing import Any

from sqlalchemy import Table, func

from lockerstore.core.errors import MutationStateError, ValidationError
from lockerstore.db.schema import INT32_MAX, INT32_MIN, EdgeKind, EntitySchema, FieldType
from lockerstore.store.predicates import Predicate

logger = logging.getLogger(__name__)


class Op(Flag):
    """Mutation operation kinds; combine with ``|`` to match several."""

    CREATE = auto()
    UPDATE = auto()
    UPDATE_ONE = auto()
    DELETE = auto()
    DELETE_ONE = auto()


ALL_OPS = Op.CREATE | Op.UPDATE | Op.UPDATE_ONE | Op.DELETE | Op.DELETE_ONE


class MutationState(str, Enum):
    FRESH = "fresh"
    STAGED = "staged"
    EXECUTED = "executed"
    ABORTED = "aborted"


@dataclass
class EdgeChange:
    added: set[int] = field(default_factory=set)
    removed: set[int] = field(default_factory=set)
    cleared: bool = False


def check_int32(name: str, value: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(name, f"expected int, got {type(value).__name__}")
    if not INT32_MIN <= value <= INT32_MAX:
        raise ValidationError(name, f"value {value} out of int32 range")


def _check_value(schema: EntitySchema, name: str, value: Any) -> None:
    spec = schema.field(name)
    if spec.type is FieldType.INT32:
        check_int32(name, value)
    elif spec.type is FieldType.STRING and not isinstance(value, str):
        raise ValidationError(name, f"expected str, got {type(value).__name__}")
    elif spec.type is FieldType.TIME and not isinstance(value, datetime):
        raise ValidationError(name, f"expected datetime, got {type(value).__name__}")


class Mutation:
    """
    Staged field and edge changes for one entity kind.

    Args:
        schema: Entity schema the mutation applies to
        op: Operation kind
        id: Target id (UpdateOne / DeleteOne)
        old_loader: Coroutine function returning the stored entity, used
            by ``old_field`` on UpdateOne
    """

    def __init__(
        self,
        schema: EntitySchema,
        op: Op,
        *,
        id: int | None = None,
        old_loader: Callable[[int], Awaitable[Any]] | None = None,
    ) -> None:
        self.schema = schema
        self.op = op
        self.state = MutationState.FRESH
        self.predicates: list[Predicate] = []
        self._id = id
        self._fields: dict[str, Any] = {}
        self._cleared: set[str] = set()
        self._deltas: dict[str, int] = {}
        self._edges: dict[str, EdgeChange] = {}
        self._old_loader = old_loader
        self._old: Any = None

    def __repr__(self) -> str:
        return (
            f"<Mutation {self.type} op={self.op.name} state={self.state.value} "
            f"fields={sorted(self._fields)} cleared={sorted(self._cleared)}>"
        )

    @property
    def type(self) -> str:
        """Entity label, e.g. ``Account``."""
        return self.schema.label

    @property
    def id(self) -> int | None:
        return self._id

    @property
    def sealed(self) -> bool:
        return self.state in (MutationState.EXECUTED, MutationState.ABORTED)

    def _touch(self) -> None:
        if self.sealed:
            raise MutationStateError(
                f"{self.type} mutation is {self.state.value}",
                details={"type": self.type, "state": self.state.value},
            )
        self.state = MutationState.STAGED

    # ========================================================================
    # Fields
    # ========================================================================

    def set_field(self, name: str, value: Any) -> None:
        """Set a field; a later set replaces both the value and any delta."""
        spec = self.schema.field(name)
        if value is None:
            if not spec.nullable:
                raise ValidationError(name, "value cannot be None")
            self.clear_field(name)
            return
        _check_value(self.schema, name, value)
        self._touch()
        self._fields[name] = value
        self._deltas.pop(name, None)

    def add_field(self, name: str, delta: int) -> None:
        """Accumulate a numeric delta on a field."""
        spec = self.schema.field(name)
        if not spec.numeric:
            raise ValidationError(name, "field is not numeric")
        check_int32(name, delta)
        total = self._deltas.get(name, 0) + delta
        check_int32(name, total)
        self._touch()
        self._deltas[name] = total

    def clear_field(self, name: str) -> None:
        """Mark a nullable field for NULL; a set of the same field wins."""
        spec = self.schema.field(name)
        if not spec.nullable:
            raise ValidationError(name, "field is not nullable")
        self._touch()
        self._cleared.add(name)

    def reset_field(self, name: str) -> None:
        """Forget every change staged on a field."""
        self.schema.field(name)
        self._touch()
        self._fields.pop(name, None)
        self._deltas.pop(name, None)
        self._cleared.discard(name)

    def field(self, name: str) -> tuple[Any, bool]:
        """Return (value, ok); ok is False when the field was not set."""
        if name in self._fields:
            return self._fields[name], True
        return None, False

    def added_field(self, name: str) -> tuple[int | None, bool]:
        if name in self._deltas:
            return self._deltas[name], True
        return None, False

    def field_cleared(self, name: str) -> bool:
        return name in self._cleared and name not in self._fields

    def fields(self) -> list[str]:
        """Names of fields that were set."""
        return list(self._fields)

    def added_fields(self) -> list[str]:
        return list(self._deltas)

    def cleared_fields(self) -> list[str]:
        return [name for name in self._cleared if name not in self._fields]

    async def old_field(self, name: str) -> Any:
        """
        Value of a field before this mutation (UpdateOne only).

        Raises:
            MutationStateError: On other operations, or once the mutation
                was executed or aborted
        """
        self.schema.field(name)
        if self.op is not Op.UPDATE_ONE:
            raise MutationStateError(
                f"old_field is only allowed on UpdateOne operations, not {self.op.name}"
            )
        if self.sealed:
            raise MutationStateError(
                f"old_field is not available on a {self.state.value} mutation"
            )
        if self._id is None or self._old_loader is None:
            raise MutationStateError("old_field requires an id field in the mutation")
        if self._old is None:
            self._old = await self._old_loader(self._id)
        return self._old.value(name)

    # ========================================================================
    # Edges
    # ========================================================================

    def _edge(self, name: str) -> EdgeChange:
        self.schema.edge(name)
        return self._edges.setdefault(name, EdgeChange())

    def add_edge_ids(self, name: str, *ids: int) -> None:
        if self.schema.edge(name).unique:
            raise ValidationError(name, "use set_edge_id on a unique edge")
        self._touch()
        self._edge(name).added.update(ids)

    def remove_edge_ids(self, name: str, *ids: int) -> None:
        if self.schema.edge(name).unique:
            raise ValidationError(name, "use clear_edge on a unique edge")
        self._touch()
        self._edge(name).removed.update(ids)

    def set_edge_id(self, name: str, id: int) -> None:
        """Point a many-to-one edge at ``id``."""
        if not self.schema.edge(name).unique:
            raise ValidationError(name, "use add_edge_ids on a non-unique edge")
        self._touch()
        change = self._edge(name)
        change.added = {id}

    def clear_edge(self, name: str) -> None:
        self._touch()
        self._edge(name).cleared = True

    def edge_ids(self, name: str) -> list[int]:
        change = self._edges.get(name)
        return sorted(change.added) if change else []

    def removed_edge_ids(self, name: str) -> list[int]:
        change = self._edges.get(name)
        return sorted(change.removed) if change else []

    def edge_cleared(self, name: str) -> bool:
        change = self._edges.get(name)
        return bool(change and change.cleared)

    def added_edges(self) -> list[str]:
        return [name for name, c in self._edges.items() if c.added]

    def removed_edges(self) -> list[str]:
        return [name for name, c in self._edges.items() if c.removed]

    def cleared_edges(self) -> list[str]:
        return [name for name, c in self._edges.items() if c.cleared]

    def resolved_edges(self) -> dict[str, EdgeChange]:
        """
        Edge changes ready for execution.

        Ids both added and removed on one edge are dropped from the added
        set: the remove wins.
        """
        resolved: dict[str, EdgeChange] = {}
        for name, change in self._edges.items():
            overlap = change.added & change.removed
            if overlap:
                logger.warning(
                    "Edge ids both added and removed; removal wins",
                    extra={"type": self.type, "edge": name, "ids": sorted(overlap)},
                )
            resolved[name] = EdgeChange(
                added=change.added - overlap, removed=set(change.removed), cleared=change.cleared
            )
        return resolved

    # ========================================================================
    # Predicates
    # ========================================================================

    def where(self, *predicates: Predicate) -> None:
        if not self.op & (Op.UPDATE | Op.DELETE):
            raise MutationStateError(f"where is not supported on {self.op.name} mutations")
        self._touch()
        self.predicates.extend(predicates)

    # ========================================================================
    # SQL values
    # ========================================================================

    def check_required(self) -> None:
        """Every non-optional field must be set on create."""
        for spec in self.schema.fields:
            if not spec.optional and spec.name not in self._fields:
                raise ValidationError(
                    spec.name, f'missing required field "{self.type}.{spec.name}"'
                )

    def _foreign_keys(self, edges: dict[str, EdgeChange]) -> dict[str, Any]:
        values: dict[str, Any] = {}
        for spec in self.schema.edges:
            if spec.kind is not EdgeKind.M2O or spec.name not in edges:
                continue
            change = edges[spec.name]
            if change.added:
                values[spec.column] = next(iter(change.added))
            elif change.cleared:
                values[spec.column] = None
        return values

    def create_values(self, edges: dict[str, EdgeChange]) -> dict[str, Any]:
        """Column values for INSERT."""
        values: dict[str, Any] = {}
        for name, value in self._fields.items():
            delta = self._deltas.get(name)
            values[name] = self._apply_delta(name, value, delta)
        for name, delta in self._deltas.items():
            if name not in values:
                values[name] = delta
        values.update(self._foreign_keys(edges))
        return values

    def update_values(self, table: Table, edges: dict[str, EdgeChange]) -> dict[str, Any]:
        """Column values (or SQL expressions) for UPDATE."""
        values: dict[str, Any] = {}
        for name in self._cleared:
            values[name] = None
        for name, value in self._fields.items():
            values[name] = self._apply_delta(name, value, self._deltas.get(name))
        for name, delta in self._deltas.items():
            if name not in self._fields:
                values[name] = func.coalesce(table.c[name], 0) + delta
        values.update(self._foreign_keys(edges))
        return values

    @staticmethod
    def _apply_delta(name: str, value: Any, delta: int | None) -> Any:
        if delta is None:
            return value
        total = value + delta
        check_int32(name, total)
        return total

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def begin(self) -> None:
        """Called by the terminal before hooks run."""
        self._touch()

    def mark_executed(self) -> None:
        self.state = MutationState.EXECUTED
        self._old = None

    def mark_aborted(self) -> None:
        self.state = MutationState.ABORTED
        self._old = None
