"""
Predicate algebra for queries and bulk mutations.

Predicates are small immutable trees:

- ``FieldPredicate``: one column compared with a value
- ``And`` / ``Or`` / ``Not``: combinators (also ``&``, ``|``, ``~``)
- ``HasEdge``: existence of related rows, optionally filtered

Trees carry column and edge names only. They are compiled against an
``EntitySchema`` right before SQL generation, which is where unknown
columns are rejected with ``ValidationError``.

Usage:
    from lockerstore.store.predicates import and_, field, has

    pred = and_(field("did").has_prefix("did:example:"), field("state").eq("active"))
    pred = field("hash").eq("h1") & has("account")
"""

from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from sqlalchemy import ColumnElement, and_ as sql_and, false, func, not_ as sql_not, or_ as sql_or
from sqlalchemy import select, true

from lockerstore.db.schema import EdgeKind, EntitySchema, schema_for


class Op(str, Enum):
    """Comparison operators supported on a single column."""

    EQ = "eq"
    NEQ = "neq"
    IN = "in"
    NOT_IN = "not_in"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    CONTAINS = "contains"
    HAS_PREFIX = "has_prefix"
    HAS_SUFFIX = "has_suffix"
    EQUAL_FOLD = "equal_fold"
    CONTAINS_FOLD = "contains_fold"
    IS_NULL = "is_null"
    NOT_NULL = "not_null"


class Predicate:
    """Base class for all predicates."""

    def compile(self, schema: EntitySchema) -> ColumnElement[bool]:
        raise NotImplementedError

    def __and__(self, other: "Predicate") -> "Predicate":
        return And((self, other))

    def __or__(self, other: "Predicate") -> "Predicate":
        return Or((self, other))

    def __invert__(self) -> "Predicate":
        return Not(self)


@dataclass(frozen=True)
class FieldPredicate(Predicate):
    column: str
    op: Op
    value: Any = None

    def compile(self, schema: EntitySchema) -> ColumnElement[bool]:
        schema.check_column(self.column)
        col = schema.table.c[self.column]
        v = self.value

        match self.op:
            case Op.EQ:
                return col == v
            case Op.NEQ:
                return col != v
            case Op.IN:
                return col.in_(v)
            case Op.NOT_IN:
                return col.not_in(v)
            case Op.GT:
                return col > v
            case Op.GTE:
                return col >= v
            case Op.LT:
                return col < v
            case Op.LTE:
                return col <= v
            case Op.CONTAINS:
                return col.contains(v, autoescape=True)
            case Op.HAS_PREFIX:
                return col.startswith(v, autoescape=True)
            case Op.HAS_SUFFIX:
                return col.endswith(v, autoescape=True)
            case Op.EQUAL_FOLD:
                return func.lower(col) == func.lower(v)
            case Op.CONTAINS_FOLD:
                return col.icontains(v, autoescape=True)
            case Op.IS_NULL:
                return col.is_(None)
            case Op.NOT_NULL:
                return col.is_not(None)
        raise ValueError(f"unsupported operator {self.op!r}")


@dataclass(frozen=True)
class And(Predicate):
    predicates: tuple[Predicate, ...]

    def compile(self, schema: EntitySchema) -> ColumnElement[bool]:
        if not self.predicates:
            return true()
        return sql_and(*(p.compile(schema) for p in self.predicates))


@dataclass(frozen=True)
class Or(Predicate):
    predicates: tuple[Predicate, ...]

    def compile(self, schema: EntitySchema) -> ColumnElement[bool]:
        if not self.predicates:
            return false()
        return sql_or(*(p.compile(schema) for p in self.predicates))


@dataclass(frozen=True)
class Not(Predicate):
    predicate: Predicate

    def compile(self, schema: EntitySchema) -> ColumnElement[bool]:
        return sql_not(self.predicate.compile(schema))


@dataclass(frozen=True)
class HasEdge(Predicate):
    """
    Related rows exist on ``edge``, optionally matching ``predicates``.

    One-to-many edges compile to ``EXISTS (SELECT ... FROM child WHERE
    child.account = parent.id AND ...)``. Many-to-one edges compile to
    ``fk IS NOT NULL`` when unfiltered and to ``fk IN (SELECT id FROM
    parent WHERE ...)`` otherwise.
    """

    edge: str
    predicates: tuple[Predicate, ...] = ()

    def compile(self, schema: EntitySchema) -> ColumnElement[bool]:
        edge = schema.edge(self.edge)
        target = schema_for(edge.target)
        conditions = [p.compile(target) for p in self.predicates]

        if edge.kind is EdgeKind.O2M:
            child = target.table
            return (
                select(child.c.id)
                .where(child.c[edge.column] == schema.table.c.id, *conditions)
                .exists()
            )

        fk = schema.table.c[edge.column]
        if not conditions:
            return fk.is_not(None)
        return fk.in_(select(target.table.c.id).where(*conditions))


# ============================================================================
# Constructors
# ============================================================================


class Field:
    """Predicate factory for one column."""

    __slots__ = ("name",)

    def __init__(self, name: str) -> None:
        self.name = name

    def __repr__(self) -> str:
        return f"Field({self.name!r})"

    def eq(self, value: Any) -> Predicate:
        return FieldPredicate(self.name, Op.EQ, value)

    def neq(self, value: Any) -> Predicate:
        return FieldPredicate(self.name, Op.NEQ, value)

    def in_(self, *values: Any) -> Predicate:
        return FieldPredicate(self.name, Op.IN, _flatten(values))

    def not_in(self, *values: Any) -> Predicate:
        return FieldPredicate(self.name, Op.NOT_IN, _flatten(values))

    def gt(self, value: Any) -> Predicate:
        return FieldPredicate(self.name, Op.GT, value)

    def gte(self, value: Any) -> Predicate:
        return FieldPredicate(self.name, Op.GTE, value)

    def lt(self, value: Any) -> Predicate:
        return FieldPredicate(self.name, Op.LT, value)

    def lte(self, value: Any) -> Predicate:
        return FieldPredicate(self.name, Op.LTE, value)

    def contains(self, value: str) -> Predicate:
        return FieldPredicate(self.name, Op.CONTAINS, value)

    def has_prefix(self, value: str) -> Predicate:
        return FieldPredicate(self.name, Op.HAS_PREFIX, value)

    def has_suffix(self, value: str) -> Predicate:
        return FieldPredicate(self.name, Op.HAS_SUFFIX, value)

    def equal_fold(self, value: str) -> Predicate:
        return FieldPredicate(self.name, Op.EQUAL_FOLD, value)

    def contains_fold(self, value: str) -> Predicate:
        return FieldPredicate(self.name, Op.CONTAINS_FOLD, value)

    def is_null(self) -> Predicate:
        return FieldPredicate(self.name, Op.IS_NULL)

    def not_null(self) -> Predicate:
        return FieldPredicate(self.name, Op.NOT_NULL)


def _flatten(values: tuple[Any, ...]) -> tuple[Any, ...]:
    # in_([1, 2]) and in_(1, 2) are equivalent
    if len(values) == 1 and isinstance(values[0], Iterable) and not isinstance(values[0], str):
        return tuple(values[0])
    return values


def field(name: str) -> Field:
    return Field(name)


def and_(*predicates: Predicate) -> Predicate:
    return And(tuple(predicates))


def or_(*predicates: Predicate) -> Predicate:
    return Or(tuple(predicates))


def not_(predicate: Predicate) -> Predicate:
    return Not(predicate)


def has(edge: str, *predicates: Predicate) -> Predicate:
    return HasEdge(edge, tuple(predicates))


def compile_where(schema: EntitySchema, predicates: Iterable[Predicate]) -> list[ColumnElement[bool]]:
    """Compile a predicate list into WHERE clauses, validating every column."""
    return [p.compile(schema) for p in predicates]
