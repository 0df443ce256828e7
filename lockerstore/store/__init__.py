"""
Query and mutation machinery.

This package is split into focused modules:

- predicates.py / where.py: predicate algebra and per-entity namespaces
- query.py: SELECT builder, ordering and aggregates
- mutation.py / builders.py: staged changes and write builders
- hooks.py: mutation hooks and query interceptors
- driver.py: connection drivers and store configuration
- entities.py / repository.py: typed per-entity API
"""

from lockerstore.store.hooks import on, reject, traverse, unless
from lockerstore.store.mutation import Mutation, Op
from lockerstore.store.predicates import and_, field, has, not_, or_
from lockerstore.store.query import asc, count, desc, max_, mean, min_, sum_

__all__ = [
    "Mutation",
    "Op",
    "and_",
    "asc",
    "count",
    "desc",
    "field",
    "has",
    "max_",
    "mean",
    "min_",
    "not_",
    "on",
    "or_",
    "reject",
    "sum_",
    "traverse",
    "unless",
]
