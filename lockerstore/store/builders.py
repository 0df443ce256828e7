"""
Mutation builders: INSERT, UPDATE and DELETE.

Every builder owns a ``Mutation``. Setters stage changes on it; the
terminal (``save``/``exec``) runs the entity's hook chain and finally the
SQL, all statements of one operation sharing one driver connection.

Integrity violations reported by the database are raised as
``ConstraintError`` with the driver exception chained.
"""

import logging
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from typing import Any, ClassVar, Generic, TypeVar

from sqlalchemy import delete, insert, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncConnection

from lockerstore.core.errors import ConstraintError, NotFoundError, ValidationError
from lockerstore.core.observability import metrics
from lockerstore.db.schema import EdgeKind, EntitySchema, schema_for
from lockerstore.domain.entities import ENTITY_TYPES, Entity
from lockerstore.store.driver import StoreConfig
from lockerstore.store.hooks import Mutator, chain_hooks
from lockerstore.store.mutation import EdgeChange, Mutation, Op
from lockerstore.store.predicates import Predicate, compile_where, field
from lockerstore.store.query import query_for

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Entity)
B = TypeVar("B", bound="MutationBuilder")


@asynccontextmanager
async def _connection(config: StoreConfig) -> AsyncIterator[AsyncConnection]:
    """Driver connection with integrity errors mapped to ConstraintError."""
    try:
        async with config.driver.connection() as conn:
            yield conn
    except IntegrityError as e:
        raise ConstraintError(str(e.orig)) from e


# ============================================================================
# One-to-many edge maintenance (FK lives on the child table)
# ============================================================================


async def _link_children(
    conn: AsyncConnection, schema: EntitySchema, edge: str, parent_id: int, ids: set[int]
) -> None:
    spec = schema.edge(edge)
    child = schema_for(spec.target).table
    fk = child.c[spec.column]
    result = await conn.execute(
        update(child)
        .where(child.c.id.in_(sorted(ids)), or_(fk.is_(None), fk == parent_id))
        .values({spec.column: parent_id})
    )
    if result.rowcount < len(ids):
        raise ConstraintError(
            f"one of {sorted(ids)} is already connected to a different {spec.inverse}"
        )


async def _unlink_children(
    conn: AsyncConnection,
    schema: EntitySchema,
    edge: str,
    parent_ids: Sequence[int],
    ids: set[int] | None = None,
) -> None:
    spec = schema.edge(edge)
    child = schema_for(spec.target).table
    stmt = update(child).where(child.c[spec.column].in_(parent_ids))
    if ids is not None:
        stmt = stmt.where(child.c.id.in_(sorted(ids)))
    await conn.execute(stmt.values({spec.column: None}))


async def _apply_o2m_edges(
    conn: AsyncConnection,
    schema: EntitySchema,
    parent_ids: Sequence[int],
    edges: dict[str, EdgeChange],
) -> None:
    for spec in schema.edges:
        if spec.kind is not EdgeKind.O2M or spec.name not in edges:
            continue
        change = edges[spec.name]
        if parent_ids and change.cleared:
            await _unlink_children(conn, schema, spec.name, parent_ids)
        if parent_ids and change.removed:
            await _unlink_children(conn, schema, spec.name, parent_ids, change.removed)
        if change.added:
            if len(parent_ids) > 1:
                raise ConstraintError(
                    f'unique edge "{spec.name}" cannot be attached to multiple {schema.label} rows'
                )
            if parent_ids:
                await _link_children(conn, schema, spec.name, parent_ids[0], change.added)


def _has_o2m_changes(schema: EntitySchema, edges: dict[str, EdgeChange]) -> bool:
    return any(spec.kind is EdgeKind.O2M and spec.name in edges for spec in schema.edges)


# ============================================================================
# Builders
# ============================================================================


class MutationBuilder(Generic[E]):
    """Base for all builders: owns the mutation and runs the hook chain."""

    op: ClassVar[Op]
    operation: ClassVar[str]

    def __init__(self, config: StoreConfig, schema: EntitySchema, mutation: Mutation | None = None):
        self._config = config
        self.schema = schema
        self.entity_type: type[E] = ENTITY_TYPES[schema.label]  # type: ignore[assignment]
        self.mutation = mutation or Mutation(schema, self.op)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.mutation!r}>"

    # Generic staging helpers used by the typed setters

    def _set(self: B, name: str, value: Any) -> B:
        self.mutation.set_field(name, value)
        return self

    def _add(self: B, name: str, delta: int) -> B:
        self.mutation.add_field(name, delta)
        return self

    def _clear(self: B, name: str) -> B:
        self.mutation.clear_field(name)
        return self

    def _add_edge_ids(self: B, edge: str, ids: Sequence[int]) -> B:
        self.mutation.add_edge_ids(edge, *ids)
        return self

    def _remove_edge_ids(self: B, edge: str, ids: Sequence[int]) -> B:
        self.mutation.remove_edge_ids(edge, *ids)
        return self

    def _set_edge_id(self: B, edge: str, id: int | None) -> B:
        if id is None:
            self.mutation.clear_edge(edge)
        else:
            self.mutation.set_edge_id(edge, id)
        return self

    def _clear_edge(self: B, edge: str) -> B:
        self.mutation.clear_edge(edge)
        return self

    async def _execute(self, mutator: Mutator) -> Any:
        m = self.mutation
        m.begin()
        chained = chain_hooks(self._config.hooks[self.schema.label], mutator)
        async with metrics.track(self.schema.label, self.operation):
            try:
                result = await chained(m)
            except BaseException:
                # A hook may fail after the statement ran
                if not m.sealed:
                    m.mark_aborted()
                raise
        m.mark_executed()
        return result


class CreateBuilder(MutationBuilder[E]):
    op = Op.CREATE
    operation = "create"

    async def save(self) -> E:
        """Insert the entity and return it with its new id."""
        return await self._execute(self._sql_save)

    async def exec(self) -> None:
        await self.save()

    async def _sql_save(self, m: Mutation) -> E:
        m.check_required()
        edges = m.resolved_edges()
        values = m.create_values(edges)
        table = self.schema.table

        async with _connection(self._config) as conn:
            result = await conn.execute(insert(table).values(values))
            new_id = result.inserted_primary_key[0]
            await _apply_o2m_edges(conn, self.schema, [new_id], edges)
            row = (await conn.execute(select(table).where(table.c.id == new_id))).mappings().one()
        m.mark_executed()

        logger.debug("Entity created", extra={"type": self.schema.label, "id": new_id})
        return self.entity_type.from_row(row)


class CreateBulk(Generic[E]):
    """
    Batch INSERT of several create builders.

    Each builder's hooks wrap the builders after it; the innermost call
    performs one multi-row INSERT ... RETURNING, so either every row is
    written or none is.
    """

    operation = "create_bulk"

    def __init__(self, config: StoreConfig, schema: EntitySchema, builders: Sequence[CreateBuilder[E]]):
        self._config = config
        self.schema = schema
        self.builders = list(builders)
        for builder in self.builders:
            if builder.schema is not schema:
                raise ValidationError(
                    "builders", f"expected {schema.label} builders, got {builder.schema.label}"
                )

    async def save(self) -> list[E]:
        builders = self.builders
        if not builders:
            return []

        for builder in builders:
            builder.mutation.begin()

        hooks = self._config.hooks[self.schema.label]
        entities: list[E] = []

        async def run(i: int) -> E:
            async def execute(m: Mutation) -> E:
                m.check_required()
                if i + 1 < len(builders):
                    await run(i + 1)
                else:
                    entities.extend(await self._insert_all())
                return entities[i]

            return await chain_hooks(hooks, execute)(builders[i].mutation)

        async with metrics.track(self.schema.label, self.operation):
            try:
                await run(0)
            except BaseException:
                for builder in builders:
                    if not builder.mutation.sealed:
                        builder.mutation.mark_aborted()
                raise

        for builder in builders:
            builder.mutation.mark_executed()
        return entities

    async def exec(self) -> None:
        await self.save()

    async def _insert_all(self) -> list[E]:
        table = self.schema.table
        prepared = []
        for builder in self.builders:
            edges = builder.mutation.resolved_edges()
            prepared.append((edges, builder.mutation.create_values(edges)))

        # executemany needs every row to name the same columns
        columns = sorted(set().union(*(values for _, values in prepared)))
        rows = [{c: values.get(c) for c in columns} for _, values in prepared]

        async with _connection(self._config) as conn:
            result = await conn.execute(
                insert(table).returning(table.c.id, sort_by_parameter_order=True), rows
            )
            ids = list(result.scalars().all())
            for new_id, (edges, _) in zip(ids, prepared, strict=True):
                await _apply_o2m_edges(conn, self.schema, [new_id], edges)
            stored = {
                row["id"]: row
                for row in (await conn.execute(select(table).where(table.c.id.in_(ids)))).mappings()
            }

        for builder in self.builders:
            builder.mutation.mark_executed()
        logger.debug("Entities created", extra={"type": self.schema.label, "count": len(ids)})
        entity_type = ENTITY_TYPES[self.schema.label]
        return [entity_type.from_row(stored[new_id]) for new_id in ids]  # type: ignore[misc]


class UpdateBuilder(MutationBuilder[E]):
    """UPDATE of every row matching the predicates; returns the row count."""

    op = Op.UPDATE
    operation = "update"

    def where(self: B, *predicates: Predicate) -> B:
        self.mutation.where(*predicates)
        return self

    async def save(self) -> int:
        return await self._execute(self._sql_save)

    async def exec(self) -> None:
        await self.save()

    async def _sql_save(self, m: Mutation) -> int:
        table = self.schema.table
        edges = m.resolved_edges()
        values = m.update_values(table, edges)
        conditions = compile_where(self.schema, m.predicates)

        async with _connection(self._config) as conn:
            if values and not _has_o2m_changes(self.schema, edges):
                result = await conn.execute(update(table).where(*conditions).values(values))
                affected = result.rowcount
            else:
                ids = list((await conn.execute(select(table.c.id).where(*conditions))).scalars().all())
                if values and ids:
                    await conn.execute(update(table).where(table.c.id.in_(ids)).values(values))
                await _apply_o2m_edges(conn, self.schema, ids, edges)
                affected = len(ids)
        m.mark_executed()
        return affected


class UpdateOneBuilder(MutationBuilder[E]):
    """UPDATE of one row by id; returns the re-read entity."""

    op = Op.UPDATE_ONE
    operation = "update_one"

    def __init__(self, config: StoreConfig, schema: EntitySchema, id: int | None):
        mutation = Mutation(schema, Op.UPDATE_ONE, id=id, old_loader=self._load_old)
        super().__init__(config, schema, mutation)

    async def _load_old(self, id: int) -> Entity:
        return await query_for(self.schema.label, self._config).where(field("id").eq(id)).only()

    async def save(self) -> E:
        return await self._execute(self._sql_save)

    async def exec(self) -> None:
        await self.save()

    async def _sql_save(self, m: Mutation) -> E:
        if m.id is None:
            raise ValidationError("id", f'missing "{self.schema.label}.id" for update')

        table = self.schema.table
        edges = m.resolved_edges()
        values = m.update_values(table, edges)

        async with _connection(self._config) as conn:
            found = (await conn.execute(select(table.c.id).where(table.c.id == m.id))).first()
            if found is None:
                raise NotFoundError(self.schema.label)
            if values:
                await conn.execute(update(table).where(table.c.id == m.id).values(values))
            await _apply_o2m_edges(conn, self.schema, [m.id], edges)
            row = (await conn.execute(select(table).where(table.c.id == m.id))).mappings().one()
        m.mark_executed()

        return self.entity_type.from_row(row)


class DeleteBuilder(MutationBuilder[E]):
    """DELETE of every row matching the predicates; returns the row count."""

    op = Op.DELETE
    operation = "delete"

    def where(self: B, *predicates: Predicate) -> B:
        self.mutation.where(*predicates)
        return self

    async def exec(self) -> int:
        return await self._execute(self._sql_exec)

    async def _sql_exec(self, m: Mutation) -> int:
        conditions = compile_where(self.schema, m.predicates)
        async with _connection(self._config) as conn:
            result = await conn.execute(delete(self.schema.table).where(*conditions))
            deleted = result.rowcount
        m.mark_executed()
        return deleted


class DeleteOneBuilder(MutationBuilder[E]):
    """DELETE of one row by id; ``NotFoundError`` when nothing was deleted."""

    op = Op.DELETE_ONE
    operation = "delete_one"

    def __init__(self, config: StoreConfig, schema: EntitySchema, id: int | None):
        super().__init__(config, schema, Mutation(schema, Op.DELETE_ONE, id=id))

    async def exec(self) -> None:
        await self._execute(self._sql_exec)

    async def _sql_exec(self, m: Mutation) -> None:
        if m.id is None:
            raise ValidationError("id", f'missing "{self.schema.label}.id" for delete')
        table = self.schema.table
        async with _connection(self._config) as conn:
            result = await conn.execute(delete(table).where(table.c.id == m.id))
            deleted = result.rowcount
        if deleted == 0:
            raise NotFoundError(self.schema.label)
        m.mark_executed()
