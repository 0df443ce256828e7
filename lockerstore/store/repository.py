"""
Generic repository shared by every entity kind.

A repository is a thin factory: it binds the store configuration (driver,
hooks, interceptors) and the entity schema to new query and mutation
builders. Typed subclasses only swap in the typed builder classes.
"""

from collections.abc import Callable, Iterable
from typing import Any, ClassVar, Generic, TypeVar

from lockerstore.db.schema import EdgeKind, EntitySchema, schema_for
from lockerstore.domain.entities import Entity
from lockerstore.store.builders import (
    CreateBuilder,
    CreateBulk,
    DeleteBuilder,
    DeleteOneBuilder,
    UpdateBuilder,
    UpdateOneBuilder,
)
from lockerstore.store.driver import StoreConfig
from lockerstore.store.hooks import Hook, Interceptor
from lockerstore.store.predicates import field
from lockerstore.store.query import Query, query_for

E = TypeVar("E", bound=Entity)
T = TypeVar("T")


class Repository(Generic[E]):
    """Entry point for queries and mutations on one entity kind."""

    label: ClassVar[str]
    query_class: ClassVar[type[Query]] = Query
    create_class: ClassVar[type[CreateBuilder]] = CreateBuilder
    update_class: ClassVar[type[UpdateBuilder]] = UpdateBuilder
    update_one_class: ClassVar[type[UpdateOneBuilder]] = UpdateOneBuilder

    def __init__(self, config: StoreConfig) -> None:
        self._config = config
        self.schema: EntitySchema = schema_for(self.label)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} driver={self._config.driver.dialect}>"

    # Hooks and interceptors

    def use(self, *hooks: Hook) -> None:
        """Register mutation hooks; the first one registered runs outermost."""
        self._config.hooks[self.label].extend(hooks)

    def intercept(self, *interceptors: Interceptor) -> None:
        self._config.interceptors[self.label].extend(interceptors)

    @property
    def hooks(self) -> list[Hook]:
        return list(self._config.hooks[self.label])

    @property
    def interceptors(self) -> list[Interceptor]:
        return list(self._config.interceptors[self.label])

    # Builders

    def query(self) -> Any:
        return self.query_class(self._config, self.schema)

    def create(self) -> Any:
        return self.create_class(self._config, self.schema)

    def create_bulk(self, *builders: CreateBuilder[E]) -> CreateBulk[E]:
        return CreateBulk(self._config, self.schema, builders)

    def map_create_bulk(self, items: Iterable[T], fn: Callable[[Any, T], Any]) -> CreateBulk[E]:
        """One create builder per item, populated by ``fn(builder, item)``."""
        builders = []
        for item in items:
            builder = self.create()
            fn(builder, item)
            builders.append(builder)
        return CreateBulk(self._config, self.schema, builders)

    def update(self) -> Any:
        return self.update_class(self._config, self.schema)

    def update_one(self, entity: E) -> Any:
        return self.update_one_by_id(entity.id)

    def update_one_by_id(self, id: int | None) -> Any:
        return self.update_one_class(self._config, self.schema, id)

    def delete(self) -> DeleteBuilder[E]:
        return DeleteBuilder(self._config, self.schema)

    def delete_one(self, entity: E) -> DeleteOneBuilder[E]:
        return self.delete_one_by_id(entity.id)

    def delete_one_by_id(self, id: int | None) -> DeleteOneBuilder[E]:
        return DeleteOneBuilder(self._config, self.schema, id)

    async def get(self, id: int) -> E:
        """Entity by id; ``NotFoundError`` when absent."""
        return await self.query().where(field("id").eq(id)).only()

    # Edge traversal

    def query_edge(self, entity: E, edge: str) -> Any:
        """Query the entities on ``edge`` of ``entity``."""
        spec = self.schema.edge(edge)
        target = query_for(spec.target, self._config)
        if spec.kind is EdgeKind.O2M:
            return target.where(field(spec.column).eq(entity.id))
        return target.where(field("id").eq(entity.value(spec.column)))
