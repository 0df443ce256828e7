"""
Hooks (around mutations) and interceptors (around query terminals).

A hook takes the next ``Mutator`` and returns a new one:

    def audit(next_: Mutator) -> Mutator:
        async def mutate(m: Mutation) -> Any:
            logger.info("mutating", extra={"type": m.type, "op": m.op.name})
            return await next_(m)
        return mutate

    client.account.use(audit)

Hooks registered as ``[h1, h2]`` run outside-in: h1 sees the mutation
first and the result last. Raising from a hook aborts the operation
before any SQL is emitted. Interceptors follow the same shape over
``Querier`` callables and receive the query builder, which they may
rewrite (add predicates, limits) before calling the next querier.
"""

import inspect
from collections.abc import Awaitable, Callable, Sequence
from typing import TYPE_CHECKING, Any

from lockerstore.core.errors import StoreError
from lockerstore.store.mutation import Mutation, Op

if TYPE_CHECKING:
    from lockerstore.store.query import Query

Mutator = Callable[[Mutation], Awaitable[Any]]
Hook = Callable[[Mutator], Mutator]

Querier = Callable[["Query"], Awaitable[Any]]
Interceptor = Callable[[Querier], Querier]


def chain_hooks(hooks: Sequence[Hook], mutator: Mutator) -> Mutator:
    """Wrap ``mutator`` so that ``hooks[0]`` is the outermost layer."""
    for hook in reversed(hooks):
        mutator = hook(mutator)
    return mutator


def chain_interceptors(interceptors: Sequence[Interceptor], querier: Querier) -> Querier:
    """Wrap ``querier`` so that ``interceptors[0]`` is the outermost layer."""
    for interceptor in reversed(interceptors):
        querier = interceptor(querier)
    return querier


# ============================================================================
# Hook helpers
# ============================================================================


def on(hook: Hook, op: Op) -> Hook:
    """Apply ``hook`` only to mutations whose operation matches ``op``."""

    def wrapper(next_: Mutator) -> Mutator:
        hooked = hook(next_)

        async def mutate(m: Mutation) -> Any:
            if m.op & op:
                return await hooked(m)
            return await next_(m)

        return mutate

    return wrapper


def unless(hook: Hook, op: Op) -> Hook:
    """Skip ``hook`` for mutations whose operation matches ``op``."""
    return on(hook, ~op)


def reject(op: Op) -> Hook:
    """Refuse every mutation matching ``op``."""

    def wrapper(next_: Mutator) -> Mutator:
        async def mutate(m: Mutation) -> Any:
            if m.op & op:
                raise StoreError(
                    f"{m.op.name} operation is not allowed on {m.type}",
                    details={"type": m.type, "op": m.op.name},
                )
            return await next_(m)

        return mutate

    return wrapper


# ============================================================================
# Interceptor helpers
# ============================================================================


def traverse(fn: Callable[["Query"], Any]) -> Interceptor:
    """
    Interceptor that lets ``fn`` rewrite the query before it runs.

    ``fn`` may be a plain function or a coroutine function.
    """

    def interceptor(next_: Querier) -> Querier:
        async def query(q: "Query") -> Any:
            result = fn(q)
            if inspect.isawaitable(result):
                await result
            return await next_(q)

        return query

    return interceptor
