"""
Integration tests for the query builder.

Tests cover:
- Terminals (all, first, only, ids, count, exist) and their errors
- Ordering, limit and offset
- Eager loading of one-to-many and many-to-one edges
- Edge traversal
- Projections and aggregates
- Interceptors
"""

import pytest

from lockerstore.core.errors import NotFoundError, NotLoadedError, NotSingularError, StoreError
from lockerstore.core.errors import ValidationError
from lockerstore.store import asc, count, desc, field, max_, mean, sum_, traverse, where

pytestmark = pytest.mark.integration


@pytest.fixture
async def populated(client, make_account, make_identity):
    """Two accounts: a owns h1 (level 1) and h2 (level 3), b owns h3 (level 5)."""
    a = await make_account("did:example:a", email="a@example.com")
    b = await make_account("did:example:b", state="suspended")
    await make_identity(a, "h1", level=1)
    await make_identity(a, "h2", level=3)
    await make_identity(b, "h3", level=5)
    return a, b


class TestTerminals:
    @pytest.mark.anyio
    async def test_all_and_count(self, client, populated):
        assert len(await client.identity.query().all()) == 3
        assert await client.identity.query().count() == 3
        assert await client.identity.query().where(where.identity.level.gt(1)).count() == 2

    @pytest.mark.anyio
    async def test_first_on_empty_result(self, client):
        with pytest.raises(NotFoundError) as exc_info:
            await client.account.query().first()
        assert exc_info.value.label == "Account"

        with pytest.raises(NotFoundError):
            await client.account.query().first_id()

    @pytest.mark.anyio
    async def test_only_requires_exactly_one(self, client, populated):
        with pytest.raises(NotSingularError):
            await client.identity.query().only()
        with pytest.raises(NotSingularError):
            await client.identity.query().only_id()
        with pytest.raises(NotFoundError):
            await client.identity.query().where(where.identity.hash.eq("missing")).only()

        identity = await client.identity.query().where(where.identity.hash.eq("h3")).only()
        assert identity.level == 5

    @pytest.mark.anyio
    async def test_ids_and_exist(self, client, populated):
        ids = await client.identity.query().order(asc("id")).ids()
        assert ids == [1, 2, 3]
        assert await client.identity.query().where(where.identity.hash.eq("h2")).exist()
        assert not await client.identity.query().where(where.identity.hash.eq("h9")).exist()

    @pytest.mark.anyio
    async def test_get_by_id(self, client, populated):
        a, _ = populated
        assert (await client.account.get(a.id)).did == "did:example:a"
        with pytest.raises(NotFoundError):
            await client.account.get(999)

    @pytest.mark.anyio
    async def test_unique_ids(self, client, populated):
        ids = await (
            client.account.query()
            .where(where.account.has_identities(where.identity.level.gte(0)))
            .unique()
            .order("id")
            .ids()
        )
        assert ids == [1, 2]

    @pytest.mark.anyio
    async def test_string_predicates(self, client, populated):
        matches = await client.account.query().where(where.account.email.equal_fold("A@EXAMPLE.COM")).all()
        assert [a.did for a in matches] == ["did:example:a"]

        prefixed = await client.account.query().where(where.account.did.has_prefix("did:example:")).count()
        assert prefixed == 2

        assert await client.account.query().where(where.account.email.is_null()).count() == 1


class TestOrderingAndPaging:
    @pytest.mark.anyio
    async def test_order_desc(self, client, populated):
        identities = await client.identity.query().order(desc("level")).all()
        assert [i.hash for i in identities] == ["h3", "h2", "h1"]

    @pytest.mark.anyio
    async def test_limit_and_offset(self, client, populated):
        page = await client.identity.query().order(asc("level")).limit(1).offset(1).all()
        assert [i.hash for i in page] == ["h2"]

    @pytest.mark.anyio
    async def test_offset_without_limit(self, client, populated):
        rest = await client.identity.query().order("level").offset(1).all()
        assert [i.hash for i in rest] == ["h2", "h3"]

    @pytest.mark.anyio
    async def test_unknown_order_column(self, client, populated):
        with pytest.raises(ValidationError):
            await client.identity.query().order("nope").all()

    @pytest.mark.anyio
    async def test_unknown_predicate_column(self, client):
        with pytest.raises(ValidationError):
            await client.identity.query().where(field("did").eq("x")).all()


class TestEagerLoading:
    @pytest.mark.anyio
    async def test_one_to_many(self, client, populated):
        accounts = await client.account.query().order("id").with_identities().all()

        assert [i.hash for i in accounts[0].edges.identities] == ["h1", "h2"]
        assert [i.hash for i in accounts[1].edges.identities] == ["h3"]

    @pytest.mark.anyio
    async def test_one_to_many_with_configure(self, client, populated):
        account = await (
            client.account.query()
            .where(where.account.did.eq("did:example:a"))
            .with_identities(lambda q: q.where(where.identity.level.gt(1)))
            .only()
        )
        assert [i.hash for i in account.edges.identities] == ["h2"]

    @pytest.mark.anyio
    async def test_empty_edge_is_empty_list(self, client, populated):
        account = await client.account.query().where(where.account.did.eq("did:example:b")).with_lockers().only()
        assert account.edges.lockers == []

    @pytest.mark.anyio
    async def test_not_requested_edge_raises(self, client, populated):
        account = await client.account.query().where(where.account.did.eq("did:example:a")).with_identities().only()
        assert account.edges.loaded("identities")
        assert not account.edges.loaded("lockers")
        with pytest.raises(NotLoadedError) as exc_info:
            account.edges.lockers  # noqa: B018
        assert exc_info.value.edge == "lockers"

    @pytest.mark.anyio
    async def test_many_to_one(self, client, populated, make_identity):
        await make_identity(None, "orphan")

        identities = await client.identity.query().order("id").with_account().all()

        owners = [i.edges.account.did if i.edges.account else None for i in identities]
        assert owners == ["did:example:a", "did:example:a", "did:example:b", None]

    @pytest.mark.anyio
    async def test_many_to_one_with_filtering_configure(self, client, populated):
        identities = await (
            client.identity.query()
            .order("id")
            .with_account(lambda q: q.where(where.account.state.eq("suspended")))
            .all()
        )

        owners = [i.edges.account.did if i.edges.account else None for i in identities]
        assert owners == [None, None, "did:example:b"]

    @pytest.mark.anyio
    async def test_zero_parents_skip_edge_query(self, client, populated):
        lines: list[str] = []
        debug = client.with_debug(lines.append)

        accounts = await (
            debug.account.query().where(where.account.did.eq("did:example:nobody")).with_identities().all()
        )

        assert accounts == []
        assert len(lines) == 1
        assert "FROM accounts" in lines[0]

    @pytest.mark.anyio
    async def test_nested_eager_loading(self, client, populated):
        identities = await (
            client.identity.query()
            .where(where.identity.hash.eq("h1"))
            .with_account(lambda q: q.with_identities())
            .all()
        )
        siblings = identities[0].edges.account.edges.identities
        assert sorted(i.hash for i in siblings) == ["h1", "h2"]


class TestTraversal:
    @pytest.mark.anyio
    async def test_query_edge_from_builder(self, client, populated):
        identities = await (
            client.account.query()
            .where(where.account.state.eq("active"))
            .query_identities()
            .order("hash")
            .all()
        )
        assert [i.hash for i in identities] == ["h1", "h2"]

    @pytest.mark.anyio
    async def test_query_edge_from_entity(self, client, populated):
        a, b = populated
        assert await client.account.query_identities(b).count() == 1

        identity = await client.identity.query().where(where.identity.hash.eq("h1")).only()
        owner = await client.identity.query_account(identity).only()
        assert owner.id == a.id

    @pytest.mark.anyio
    async def test_traverse_back_to_account(self, client, populated):
        owners = await (
            client.identity.query().where(where.identity.level.gte(3)).query_account().order("did").all()
        )
        assert [o.did for o in owners] == ["did:example:a", "did:example:b"]


class TestProjections:
    @pytest.mark.anyio
    async def test_select_single_field(self, client, populated):
        hashes = await client.identity.query().order(desc("hash")).select("hash").strings()
        assert hashes == ["h3", "h2", "h1"]

        level = await client.identity.query().where(where.identity.hash.eq("h2")).select("level").int()
        assert level == 3

    @pytest.mark.anyio
    async def test_select_several_fields(self, client, populated):
        rows = await client.account.query().order("id").select("did", "state").scan()
        assert rows == [
            {"did": "did:example:a", "state": "active"},
            {"did": "did:example:b", "state": "suspended"},
        ]

    @pytest.mark.anyio
    async def test_scalar_helpers_need_one_column(self, client, populated):
        with pytest.raises(StoreError, match="not achievable when selecting 2 fields"):
            await client.account.query().select("did", "state").strings()

    @pytest.mark.anyio
    async def test_unknown_select_column(self, client):
        with pytest.raises(ValidationError):
            client.account.query().select("hash")

    @pytest.mark.anyio
    async def test_aggregates(self, client, populated):
        assert await client.identity.query().aggregate(sum_("level")).int() == 9
        assert await client.identity.query().aggregate(max_("level")).int() == 5
        assert await client.identity.query().aggregate(mean("level")).float() == pytest.approx(3.0)

        filtered = client.identity.query().where(where.identity.level.lt(5))
        assert await filtered.aggregate(count()).int() == 2

    @pytest.mark.anyio
    async def test_group_by(self, client, populated):
        rows = await (
            client.identity.query()
            .order("account")
            .group_by("account")
            .aggregate(count(label="n"), sum_("level", label="total"))
            .scan()
        )
        assert rows == [{"account": 1, "n": 2, "total": 4}, {"account": 2, "n": 1, "total": 5}]


class TestInterceptors:
    @pytest.mark.anyio
    async def test_interceptor_rewrites_query(self, client, populated):
        client.identity.intercept(traverse(lambda q: q.where(where.identity.level.gt(1))))

        assert await client.identity.query().count() == 2
        assert {i.hash for i in await client.identity.query().all()} == {"h2", "h3"}

    @pytest.mark.anyio
    async def test_interceptor_sees_terminal(self, client, populated):
        seen = []

        def record(next_):
            async def query(q):
                seen.append(q.terminal)
                return await next_(q)

            return query

        client.account.intercept(record)
        await client.account.query().all()
        await client.account.query().where(where.account.did.eq("did:example:a")).only()
        await client.account.query().count()

        assert seen == ["all", "only", "count"]
        assert client.account.interceptors == [record]

    @pytest.mark.anyio
    async def test_interceptors_are_per_entity(self, client, populated):
        client.account.intercept(traverse(lambda q: q.where(where.account.did.eq("nobody"))))

        assert await client.account.query().count() == 0
        assert await client.identity.query().count() == 3
