"""
Unit tests for the predicate algebra and the per-entity namespaces.

Predicates are compiled inside a SELECT so correlated subqueries render
the way they do at runtime.
"""

import pytest
from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite

from lockerstore.core.errors import ValidationError
from lockerstore.db.schema import ACCOUNT, IDENTITY
from lockerstore.store import where
from lockerstore.store.predicates import (
    And,
    FieldPredicate,
    Not,
    Op,
    Or,
    and_,
    compile_where,
    field,
    has,
    not_,
    or_,
)

pytestmark = pytest.mark.unit


def _sql(schema, *predicates, dialect=None) -> str:
    stmt = select(schema.table.c.id).where(*compile_where(schema, predicates))
    return str(stmt.compile(dialect=dialect or sqlite.dialect()))


class TestFieldPredicates:
    def test_constructors_build_leaves(self) -> None:
        assert field("did").eq("x") == FieldPredicate("did", Op.EQ, "x")
        assert field("level").gte(3) == FieldPredicate("level", Op.GTE, 3)
        assert field("email").is_null() == FieldPredicate("email", Op.IS_NULL)

    def test_in_accepts_varargs_and_iterables(self) -> None:
        assert field("id").in_(1, 2) == field("id").in_([1, 2])
        assert field("id").not_in((3,)).value == (3,)

    @pytest.mark.parametrize(
        ("predicate", "expected"),
        [
            (field("did").eq("x"), "accounts.did = ?"),
            (field("did").neq("x"), "accounts.did != ?"),
            (field("state").in_("a", "b"), "accounts.state IN (__[POSTCOMPILE_state_1])"),
            (field("email").is_null(), "accounts.email IS NULL"),
            (field("email").not_null(), "accounts.email IS NOT NULL"),
            (field("id").lt(5), "accounts.id < ?"),
            (field("did").has_prefix("did:"), "accounts.did LIKE "),
            (field("email").equal_fold("A@X"), "lower(accounts.email) = lower(?)"),
        ],
    )
    def test_compiles_to_sql(self, predicate, expected: str) -> None:
        assert expected in _sql(ACCOUNT, predicate)

    def test_contains_fold_lowers_column(self) -> None:
        assert "lower(accounts.email)" in _sql(ACCOUNT, field("email").contains_fold("example"))

    def test_like_patterns_are_escaped(self) -> None:
        assert "ESCAPE" in _sql(ACCOUNT, field("did").contains("50%_off"))

    def test_unknown_column_rejected(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            _sql(ACCOUNT, field("hash").eq("h1"))
        assert exc_info.value.name == "hash"

    def test_foreign_key_column_is_valid(self) -> None:
        assert "identities.account IS NULL" in _sql(IDENTITY, field("account").is_null())


class TestCombinators:
    def test_operators_build_trees(self) -> None:
        a, b = field("did").eq("x"), field("state").eq("active")
        assert (a & b) == And((a, b))
        assert (a | b) == Or((a, b))
        assert ~a == Not(a)

    def test_and_or_not(self) -> None:
        pred = and_(
            field("state").eq("active"),
            or_(field("email").is_null(), not_(field("did").has_suffix(":test"))),
        )
        sql = _sql(ACCOUNT, pred)
        assert "accounts.state = ?" in sql
        assert " OR " in sql
        assert "NOT LIKE" in sql

    def test_empty_or_matches_nothing(self) -> None:
        assert "WHERE false" in _sql(ACCOUNT, or_(), dialect=postgresql.dialect())


class TestEdgePredicates:
    def test_one_to_many_uses_correlated_exists(self) -> None:
        sql = _sql(ACCOUNT, has("identities", field("level").gt(2)))
        assert "EXISTS (SELECT identities.id" in sql
        assert "identities.account = accounts.id" in sql
        assert "identities.level > ?" in sql

    def test_many_to_one_without_filter_checks_fk(self) -> None:
        assert "identities.account IS NOT NULL" in _sql(IDENTITY, has("account"))

    def test_many_to_one_with_filter_uses_subquery(self) -> None:
        sql = _sql(IDENTITY, has("account", field("did").eq("did:example:a")))
        assert "identities.account IN (SELECT accounts.id" in sql

    def test_nested_predicates_validate_target_columns(self) -> None:
        with pytest.raises(ValidationError):
            _sql(IDENTITY, has("account", field("level").eq(1)))

    def test_unknown_edge_rejected(self) -> None:
        with pytest.raises(ValidationError):
            _sql(IDENTITY, has("lockers"))


class TestWhereNamespaces:
    def test_fields_per_column(self) -> None:
        assert where.account.did.eq("x") == field("did").eq("x")
        assert where.identity.account.is_null() == field("account").is_null()

    def test_edge_helpers(self) -> None:
        assert where.identity.has_account() == has("account")
        assert where.account.has_lockers(where.locker.hash.eq("h")) == has(
            "lockers", field("hash").eq("h")
        )

    def test_unknown_attribute(self) -> None:
        with pytest.raises(AttributeError, match="Account has no field or edge 'hash'"):
            where.account.hash  # noqa: B018
        with pytest.raises(AttributeError):
            where.did.has_account  # noqa: B018

    def test_has_checks_edge(self) -> None:
        with pytest.raises(ValidationError):
            where.did.has("account")
