"""
Integration tests for schema creation, script migrations and the
compatibility check, run against SQLite files.
"""

from pathlib import Path

import pytest
from sqlalchemy import text

from lockerstore.client import Client
from lockerstore.core.errors import SchemaMigrationRequiredError, StoreError
from lockerstore.db.migration import (
    MIGRATIONS_TABLE,
    MigrationScript,
    check_schema_compatibility,
    create_schema,
    load_migration_scripts,
    migrate_schema_with_scripts,
    schema_differences,
)

pytestmark = pytest.mark.integration

BUNDLED_SQLITE = (
    Path(__file__).resolve().parents[1] / "lockerstore" / "db" / "migrations" / "sqlite"
)


@pytest.fixture
async def file_client(tmp_path: Path):
    c = Client.from_url(f"sqlite3://{tmp_path / 'lockers.db'}")
    try:
        yield c
    finally:
        await c.close()


class TestScriptMigrations:
    @pytest.mark.anyio
    async def test_bundled_scripts_create_compatible_schema(self, file_client):
        assert await migrate_schema_with_scripts(file_client.engine) == (0, 1)
        assert await schema_differences(file_client.engine) == []
        await check_schema_compatibility(file_client.engine)

    @pytest.mark.anyio
    async def test_rerun_is_noop(self, file_client):
        await migrate_schema_with_scripts(file_client.engine)
        assert await migrate_schema_with_scripts(file_client.engine) == (1, 1)

    @pytest.mark.anyio
    async def test_migrated_schema_is_usable(self, file_client):
        await migrate_schema_with_scripts(file_client.engine)

        account = await (
            file_client.account.create().set_did("did:example:a").set_state("active").set_body({}).save()
        )
        await (
            file_client.identity.create()
            .set_hash("h1")
            .set_level(0)
            .set_encrypted_id("E")
            .set_encrypted_body("B")
            .set_account(account)
            .save()
        )
        await file_client.account.delete_one(account).exec()

        identity = await file_client.identity.query().only()
        assert identity.account_id is None

    @pytest.mark.anyio
    async def test_custom_directory_with_later_script(self, file_client, tmp_path: Path):
        scripts = tmp_path / "migrations"
        scripts.mkdir()
        (scripts / "0001_initial.up.sql").write_text(
            (BUNDLED_SQLITE / "0001_initial.up.sql").read_text(encoding="utf-8"), encoding="utf-8"
        )
        (scripts / "0002_audit.up.sql").write_text(
            "-- extra table owned by the host\nCREATE TABLE audit_log (id INTEGER PRIMARY KEY, note VARCHAR);\n",
            encoding="utf-8",
        )
        (scripts / "README.md").write_text("not a migration", encoding="utf-8")

        assert await migrate_schema_with_scripts(file_client.engine, scripts) == (0, 2)
        assert await schema_differences(file_client.engine) == []

    @pytest.mark.anyio
    async def test_failed_script_leaves_database_dirty(self, file_client, tmp_path: Path):
        scripts = tmp_path / "broken"
        scripts.mkdir()
        (scripts / "0001_broken.up.sql").write_text("CREATE TABLE broken (;", encoding="utf-8")

        with pytest.raises(Exception):  # noqa: B017
            await migrate_schema_with_scripts(file_client.engine, scripts)

        with pytest.raises(StoreError, match="database is dirty at version 1"):
            await migrate_schema_with_scripts(file_client.engine, scripts)

    @pytest.mark.anyio
    async def test_dirty_database_refused(self, file_client):
        await migrate_schema_with_scripts(file_client.engine)
        async with file_client.engine.begin() as conn:
            await conn.execute(text(f"UPDATE {MIGRATIONS_TABLE} SET dirty = 1"))

        with pytest.raises(StoreError, match="dirty"):
            await migrate_schema_with_scripts(file_client.engine)


class TestLoadScripts:
    def test_missing_directory(self, tmp_path: Path):
        with pytest.raises(StoreError, match="migrations directory not found"):
            load_migration_scripts(tmp_path / "nope")

    def test_duplicate_versions(self, tmp_path: Path):
        (tmp_path / "0001_a.up.sql").write_text("SELECT 1;", encoding="utf-8")
        (tmp_path / "1_b.up.sql").write_text("SELECT 1;", encoding="utf-8")
        with pytest.raises(StoreError, match="duplicate migration version 1"):
            load_migration_scripts(tmp_path)

    def test_ordered_by_version(self, tmp_path: Path):
        for name in ("0010_late.up.sql", "0002_early.up.sql", "0002_early.down.sql"):
            (tmp_path / name).write_text("SELECT 1;", encoding="utf-8")
        scripts = load_migration_scripts(tmp_path)
        assert [(s.version, s.name) for s in scripts] == [(2, "early"), (10, "late")]

    def test_statements_drop_comments(self, tmp_path: Path):
        path = tmp_path / "0001_x.up.sql"
        path.write_text(
            "-- header\nCREATE TABLE a (id INTEGER);\n\n  -- note\nCREATE INDEX a_id ON a (id);\n",
            encoding="utf-8",
        )
        statements = MigrationScript(1, "x", path).statements()
        assert statements == ["CREATE TABLE a (id INTEGER)", "CREATE INDEX a_id ON a (id)"]


class TestCompatibilityCheck:
    @pytest.mark.anyio
    async def test_create_schema_is_compatible(self, client):
        assert await schema_differences(client.engine) == []

    @pytest.mark.anyio
    async def test_empty_database(self, file_client):
        with pytest.raises(SchemaMigrationRequiredError) as exc_info:
            await check_schema_compatibility(file_client.engine)
        assert 'missing table "accounts"' in exc_info.value.differences
        assert len(exc_info.value.differences) == 7

    @pytest.mark.anyio
    async def test_missing_index(self, file_client):
        await create_schema(file_client.engine)
        async with file_client.engine.begin() as conn:
            await conn.execute(text("DROP INDEX locker_hash"))

        differences = await schema_differences(file_client.engine)
        assert differences == ['missing index "locker_hash" on "lockers"']

    @pytest.mark.anyio
    async def test_missing_column(self, file_client):
        await create_schema(file_client.engine)
        async with file_client.engine.begin() as conn:
            await conn.execute(text("DROP TABLE did_documents"))
            await conn.execute(
                text("CREATE TABLE did_documents (id INTEGER PRIMARY KEY, did VARCHAR NOT NULL)")
            )
            await conn.execute(text("CREATE UNIQUE INDEX did_did ON did_documents (did)"))

        differences = await schema_differences(file_client.engine)
        assert differences == ['missing column "did_documents.body"']
