"""
Fluent SELECT builder.

A ``Query`` accumulates predicates, ordering, limit/offset, a DISTINCT flag
and eager-load requests. Nothing runs until a terminal is awaited:

    accounts = await client.account.query().where(...).order(desc("id")).limit(10).all()
    account = await client.account.query().where(...).with_identities().only()
    n = await client.identity.query().where(...).count()

Terminals: ``all``, ``first``, ``first_id``, ``only``, ``only_id``,
``ids``, ``count``, ``exist``. Projections: ``select(...)``,
``group_by(...).aggregate(...)`` and ``aggregate(...)``.

Eager loading issues one extra SELECT per requested edge, after the
primary SELECT and on the same connection. Interceptors registered for
the entity wrap every terminal.
"""

import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any, ClassVar, Generic, TypeVar

from sqlalchemy import ColumnElement, Select, func, select
from sqlalchemy.ext.asyncio import AsyncConnection

from lockerstore.core.errors import NotFoundError, NotSingularError, StoreError
from lockerstore.core.observability import metrics
from lockerstore.db.schema import EdgeKind, EntitySchema, schema_for
from lockerstore.domain.entities import ENTITY_TYPES, Entity
from lockerstore.store.driver import StoreConfig
from lockerstore.store.hooks import chain_interceptors
from lockerstore.store.predicates import FieldPredicate, Op, Predicate, compile_where, has

logger = logging.getLogger(__name__)

# Sentinel LIMIT for OFFSET-only queries; some dialects reject OFFSET alone
MAX_LIMIT = 2147483647

E = TypeVar("E", bound=Entity)
Q = TypeVar("Q", bound="Query")

_QUERY_TYPES: dict[str, type["Query"]] = {}


# ============================================================================
# Ordering and aggregation
# ============================================================================


@dataclass(frozen=True)
class OrderTerm:
    column: str
    descending: bool = False

    def compile(self, schema: EntitySchema) -> ColumnElement[Any]:
        schema.check_column(self.column)
        col = schema.table.c[self.column]
        return col.desc() if self.descending else col.asc()


def asc(*fields: str) -> list[OrderTerm]:
    return [OrderTerm(f) for f in fields]


def desc(*fields: str) -> list[OrderTerm]:
    return [OrderTerm(f, descending=True) for f in fields]


_AGGREGATES: dict[str, Callable[..., Any]] = {
    "count": func.count,
    "max": func.max,
    "min": func.min,
    "sum": func.sum,
    "mean": func.avg,
}


@dataclass(frozen=True)
class AggregateFunc:
    """One aggregate column; the result key defaults to the function name."""

    fn: str
    column: str | None = None
    label: str | None = None

    @property
    def name(self) -> str:
        return self.label or self.fn

    def compile(self, schema: EntitySchema) -> ColumnElement[Any]:
        sql_fn = _AGGREGATES[self.fn]
        if self.column is None:
            return sql_fn().label(self.name)
        schema.check_column(self.column)
        return sql_fn(schema.table.c[self.column]).label(self.name)


def count(field: str | None = None, *, label: str | None = None) -> AggregateFunc:
    return AggregateFunc("count", field, label)


def max_(field: str, *, label: str | None = None) -> AggregateFunc:
    return AggregateFunc("max", field, label)


def min_(field: str, *, label: str | None = None) -> AggregateFunc:
    return AggregateFunc("min", field, label)


def sum_(field: str, *, label: str | None = None) -> AggregateFunc:
    return AggregateFunc("sum", field, label)


def mean(field: str, *, label: str | None = None) -> AggregateFunc:
    return AggregateFunc("mean", field, label)


# ============================================================================
# Query
# ============================================================================


def query_for(label: str, config: StoreConfig) -> "Query":
    """New query for the entity ``label``, typed when a subclass exists."""
    cls = _QUERY_TYPES.get(label, Query)
    return cls(config, schema_for(label))


class Query(Generic[E]):
    """Query builder for one entity kind."""

    label: ClassVar[str | None] = None

    def __init_subclass__(cls, label: str | None = None, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        if label is not None:
            cls.label = label
            _QUERY_TYPES[label] = cls

    def __init__(self, config: StoreConfig, schema: EntitySchema | None = None) -> None:
        self._config = config
        self.schema = schema or schema_for(self.label or "")
        self.entity_type: type[E] = ENTITY_TYPES[self.schema.label]  # type: ignore[assignment]
        self.predicates: list[Predicate] = []
        self.orders: list[OrderTerm] = []
        self._limit: int | None = None
        self._offset: int | None = None
        self._unique: bool | None = None
        self._eager: dict[str, Callable[[Any], Any] | None] = {}
        # Name of the terminal being executed; visible to interceptors
        self.terminal: str | None = None

    def __repr__(self) -> str:
        return (
            f"<{type(self).__name__} {self.schema.label} predicates={len(self.predicates)} "
            f"limit={self._limit} offset={self._offset}>"
        )

    # ========================================================================
    # Builder methods
    # ========================================================================

    def where(self: Q, *predicates: Predicate) -> Q:
        self.predicates.extend(predicates)
        return self

    def limit(self: Q, limit: int) -> Q:
        self._limit = limit
        return self

    def offset(self: Q, offset: int) -> Q:
        self._offset = offset
        return self

    def order(self: Q, *terms: OrderTerm | str | Sequence[OrderTerm]) -> Q:
        """Append order terms; plain strings sort ascending."""
        for term in terms:
            if isinstance(term, str):
                self.orders.append(OrderTerm(term))
            elif isinstance(term, OrderTerm):
                self.orders.append(term)
            else:
                self.orders.extend(term)
        return self

    def unique(self: Q, unique: bool = True) -> Q:
        """Toggle SELECT DISTINCT."""
        self._unique = unique
        return self

    def with_edge(self: Q, edge: str, configure: Callable[[Any], Any] | None = None) -> Q:
        """Eager-load ``edge``; ``configure`` receives the nested query."""
        self.schema.edge(edge)
        self._eager[edge] = configure
        return self

    def clone(self: Q) -> Q:
        q = type(self)(self._config, self.schema)
        q.predicates = list(self.predicates)
        q.orders = list(self.orders)
        q._limit = self._limit
        q._offset = self._offset
        q._unique = self._unique
        q._eager = dict(self._eager)
        return q

    def traverse(self, edge: str) -> "Query":
        """Query the entities on ``edge`` of every entity this query matches."""
        spec = self.schema.edge(edge)
        target = query_for(spec.target, self._config)
        return target.where(has(spec.inverse, *self.predicates))

    # ========================================================================
    # SQL
    # ========================================================================

    def _statement(self, columns: Sequence[Any]) -> Select[Any]:
        stmt = select(*columns).where(*compile_where(self.schema, self.predicates))
        if self._unique:
            stmt = stmt.distinct()
        if self.orders:
            stmt = stmt.order_by(*(o.compile(self.schema) for o in self.orders))
        if self._limit is not None:
            stmt = stmt.limit(self._limit)
        if self._offset is not None:
            stmt = stmt.offset(self._offset)
            if self._limit is None:
                stmt = stmt.limit(MAX_LIMIT)
        return stmt

    async def _run(self, terminal: str, fn: Callable[["Query"], Awaitable[Any]]) -> Any:
        self.terminal = terminal
        querier = chain_interceptors(self._config.interceptors[self.schema.label], fn)
        async with metrics.track(self.schema.label, terminal):
            return await querier(self)

    async def _fetch(self, conn: AsyncConnection) -> list[E]:
        stmt = self._statement(list(self.schema.table.c))
        rows = (await conn.execute(stmt)).mappings().all()
        entities = [self.entity_type.from_row(row) for row in rows]
        for edge, configure in self._eager.items():
            await self._load_edge(conn, entities, edge, configure)
        return entities

    async def _load_edge(
        self,
        conn: AsyncConnection,
        entities: list[E],
        name: str,
        configure: Callable[[Any], Any] | None,
    ) -> None:
        if not entities:
            return

        edge = self.schema.edge(name)
        nested = query_for(edge.target, self._config)
        if configure is not None:
            configure(nested)

        if edge.kind is EdgeKind.O2M:
            by_id: dict[int, Entity] = {}
            for entity in entities:
                entity.edges.set(name, [])
                by_id[entity.id] = entity
            nested.where(FieldPredicate(edge.column, Op.IN, tuple(by_id)))
            for child in await nested._fetch(conn):
                fk = child.value(edge.column)
                parent = by_id.get(fk)
                if parent is None:
                    raise StoreError(
                        f'unexpected foreign-key "{edge.column}" returned {fk!r} '
                        f"for {self.schema.label} edge {name}",
                        details={"edge": name, "fk": fk},
                    )
                parent.edges.get(name).append(child)
            return

        for entity in entities:
            entity.edges.set(name, None)
        by_fk: dict[int, list[Entity]] = {}
        for entity in entities:
            fk = entity.value(edge.column)
            if fk is not None:
                by_fk.setdefault(fk, []).append(entity)
        if not by_fk:
            return
        nested.where(FieldPredicate("id", Op.IN, tuple(sorted(by_fk))))
        # Parents filtered out by the nested query leave the edge at None
        for parent in await nested._fetch(conn):
            children = by_fk.get(parent.id)
            if children is None:
                raise StoreError(
                    f'unexpected foreign-key "{edge.column}" returned {parent.id!r} '
                    f"for {self.schema.label} edge {name}",
                    details={"edge": name, "fk": parent.id},
                )
            for child in children:
                child.edges.set(name, parent)

    async def _sql_all(self) -> list[E]:
        async with self._config.driver.connection() as conn:
            return await self._fetch(conn)

    async def _sql_ids(self) -> list[int]:
        stmt = self._statement([self.schema.table.c.id])
        async with self._config.driver.connection() as conn:
            return list((await conn.execute(stmt)).scalars().all())

    async def _sql_first(self) -> E:
        entities = await self.clone().limit(1)._sql_all()
        if not entities:
            raise NotFoundError(self.schema.label)
        return entities[0]

    async def _sql_first_id(self) -> int:
        ids = await self.clone().limit(1)._sql_ids()
        if not ids:
            raise NotFoundError(self.schema.label)
        return ids[0]

    async def _sql_only(self) -> E:
        entities = await self.clone().limit(2)._sql_all()
        if not entities:
            raise NotFoundError(self.schema.label)
        if len(entities) > 1:
            raise NotSingularError(self.schema.label)
        return entities[0]

    async def _sql_only_id(self) -> int:
        ids = await self.clone().limit(2)._sql_ids()
        if not ids:
            raise NotFoundError(self.schema.label)
        if len(ids) > 1:
            raise NotSingularError(self.schema.label)
        return ids[0]

    async def _sql_count(self) -> int:
        inner = self._statement([self.schema.table.c.id]).subquery()
        stmt = select(func.count()).select_from(inner)
        async with self._config.driver.connection() as conn:
            return int((await conn.execute(stmt)).scalar_one())

    async def _sql_exist(self) -> bool:
        ids = await self.clone().limit(1)._sql_ids()
        return bool(ids)

    # ========================================================================
    # Terminals
    # ========================================================================

    async def all(self) -> list[E]:
        return await self._run("all", Query._sql_all)

    async def first(self) -> E:
        """First matching entity; ``NotFoundError`` when there is none."""
        return await self._run("first", Query._sql_first)

    async def first_id(self) -> int:
        return await self._run("first_id", Query._sql_first_id)

    async def only(self) -> E:
        """
        The single matching entity.

        Raises:
            NotFoundError: If nothing matched
            NotSingularError: If more than one entity matched
        """
        return await self._run("only", Query._sql_only)

    async def only_id(self) -> int:
        return await self._run("only_id", Query._sql_only_id)

    async def ids(self) -> list[int]:
        return await self._run("ids", Query._sql_ids)

    async def count(self) -> int:
        return await self._run("count", Query._sql_count)

    async def exist(self) -> bool:
        return await self._run("exist", Query._sql_exist)

    # ========================================================================
    # Projections
    # ========================================================================

    def select(self, *fields: str) -> "Selector":
        for f in fields:
            self.schema.check_column(f)
        return Selector(self, list(fields))

    def group_by(self, *fields: str) -> "GroupBy":
        for f in fields:
            self.schema.check_column(f)
        return GroupBy(self, list(fields))

    def aggregate(self, *fns: AggregateFunc) -> "Selector":
        return Selector(self, [], list(fns))


class _Projection:
    """Shared scanning helpers for selections and groupings."""

    terminal = "select"

    def __init__(self, query: Query, fields: list[str], aggregates: list[AggregateFunc] | None = None):
        self._query = query
        self._fields = fields
        self._aggregates = aggregates or []

    def aggregate(self, *fns: AggregateFunc):
        self._aggregates.extend(fns)
        return self

    def _statement(self, query: Query) -> Select[Any]:
        raise NotImplementedError

    async def _sql_scan(self, query: Query) -> list[dict[str, Any]]:
        stmt = self._statement(query)
        async with query._config.driver.connection() as conn:
            rows = (await conn.execute(stmt)).mappings().all()
        return [dict(row) for row in rows]

    async def scan(self) -> list[dict[str, Any]]:
        """Every result row as a dict keyed by column or aggregate name."""
        return await self._query._run(self.terminal, self._sql_scan)

    async def _values(self, kind: str) -> list[Any]:
        width = len(self._fields) + len(self._aggregates)
        if width != 1:
            raise StoreError(f"{kind} is not achievable when selecting {width} fields")
        return [next(iter(row.values())) for row in await self.scan()]

    async def _value(self, kind: str) -> Any:
        values = await self._values(kind)
        if not values:
            raise NotFoundError(self._query.schema.label)
        if len(values) > 1:
            raise NotSingularError(self._query.schema.label)
        return values[0]

    async def strings(self) -> list[str]:
        return await self._values("strings")

    async def string(self) -> str:
        return await self._value("string")

    async def ints(self) -> list[int]:
        return [int(v) for v in await self._values("ints")]

    async def int(self) -> int:
        return int(await self._value("int"))

    async def floats(self) -> list[float]:
        return [float(v) for v in await self._values("floats")]

    async def float(self) -> float:
        return float(await self._value("float"))


class Selector(_Projection):
    """``SELECT field, ...`` or ``SELECT aggregate, ...`` over the query."""

    def _statement(self, query: Query) -> Select[Any]:
        schema = query.schema
        columns: list[Any] = [schema.table.c[f] for f in self._fields]
        if self._aggregates:
            # Aggregates apply to the whole filtered set
            columns += [a.compile(schema) for a in self._aggregates]
            return select(*columns).where(*compile_where(schema, query.predicates))
        return query._statement(columns)


class GroupBy(_Projection):
    """``SELECT fields, aggregates ... GROUP BY fields``."""

    terminal = "group_by"

    def _statement(self, query: Query) -> Select[Any]:
        schema = query.schema
        group_columns = [schema.table.c[f] for f in self._fields]
        columns = group_columns + [a.compile(schema) for a in self._aggregates]
        stmt = select(*columns).where(*compile_where(schema, query.predicates))
        stmt = stmt.group_by(*group_columns)
        if query.orders:
            stmt = stmt.order_by(*(o.compile(schema) for o in query.orders))
        return stmt
