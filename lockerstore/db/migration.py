"""
Schema creation, script migrations and schema compatibility checks.

Two ways of producing the physical schema are supported:

- ``create_schema``: DDL generated from the declared metadata. Used by tests
  and embedded deployments.
- ``migrate_schema_with_scripts``: ordered ``NNNN_name.up.sql`` scripts
  applied one by one, with the current version tracked in the
  ``schema_migrations`` table (``version``, ``dirty``). Scripts are bundled
  per dialect under ``lockerstore/db/migrations/`` and can be overridden
  with a directory of the same layout.

``check_schema_compatibility`` compares the live database with the declared
metadata and refuses to run against a database that needs migrating.
"""

import logging
import re
from dataclasses import dataclass
from pathlib import Path

from sqlalchemy import inspect, text
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from lockerstore.core.errors import SchemaMigrationRequiredError, StoreError
from lockerstore.db.schema import metadata

logger = logging.getLogger(__name__)

MIGRATIONS_TABLE = "schema_migrations"

_BUNDLED_MIGRATIONS = Path(__file__).parent / "migrations"
_SCRIPT_NAME = re.compile(r"^(\d+)_(.+)\.up\.sql$")


async def create_schema(engine: AsyncEngine) -> None:
    """Create every declared table and index that does not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    logger.info("Database schema created", extra={"dialect": engine.dialect.name})


# ============================================================================
# Script migrations
# ============================================================================


@dataclass(frozen=True)
class MigrationScript:
    version: int
    name: str
    path: Path

    def statements(self) -> list[str]:
        """Split the script into individual statements, dropping comments."""
        lines = [
            line
            for line in self.path.read_text(encoding="utf-8").splitlines()
            if not line.lstrip().startswith("--")
        ]
        return [s.strip() for s in "\n".join(lines).split(";") if s.strip()]


def _dialect_dir(engine: AsyncEngine) -> str:
    if engine.dialect.name == "postgresql":
        return "postgres"
    if engine.dialect.name == "sqlite":
        return "sqlite"
    raise StoreError(
        f"no bundled migrations for dialect {engine.dialect.name}",
        details={"dialect": engine.dialect.name},
    )


def load_migration_scripts(directory: Path) -> list[MigrationScript]:
    """
    Collect ``*.up.sql`` scripts from a directory, ordered by version.

    Raises:
        StoreError: If the directory does not exist or two scripts share
            a version number
    """
    if not directory.is_dir():
        raise StoreError(
            f"migrations directory not found: {directory}", details={"path": str(directory)}
        )

    scripts: dict[int, MigrationScript] = {}
    for path in directory.iterdir():
        match = _SCRIPT_NAME.match(path.name)
        if not match:
            continue
        version = int(match.group(1))
        if version in scripts:
            raise StoreError(
                f"duplicate migration version {version}",
                details={"version": version, "path": str(path)},
            )
        scripts[version] = MigrationScript(version=version, name=match.group(2), path=path)

    return [scripts[v] for v in sorted(scripts)]


async def _ensure_migrations_table(conn: AsyncConnection) -> None:
    await conn.execute(
        text(
            f"CREATE TABLE IF NOT EXISTS {MIGRATIONS_TABLE} "
            "(version BIGINT NOT NULL PRIMARY KEY, dirty BOOLEAN NOT NULL)"
        )
    )


async def _current_version(conn: AsyncConnection) -> tuple[int, bool]:
    row = (
        await conn.execute(text(f"SELECT version, dirty FROM {MIGRATIONS_TABLE} LIMIT 1"))
    ).first()
    if row is None:
        return 0, False
    return int(row.version), bool(row.dirty)


async def _set_version(conn: AsyncConnection, version: int, dirty: bool) -> None:
    await conn.execute(text(f"DELETE FROM {MIGRATIONS_TABLE}"))
    await conn.execute(
        text(f"INSERT INTO {MIGRATIONS_TABLE} (version, dirty) VALUES (:version, :dirty)"),
        {"version": version, "dirty": dirty},
    )


async def migrate_schema_with_scripts(
    engine: AsyncEngine, migrations_path: str | Path | None = None
) -> tuple[int, int]:
    """
    Apply pending migration scripts.

    Each script is first recorded as a dirty version, then executed together
    with the clean version marker in one transaction. A failed script leaves
    the dirty marker behind and further runs refuse to continue until the
    database is repaired by hand.

    Args:
        engine: Target engine
        migrations_path: Directory of ``NNNN_name.up.sql`` scripts; the
            bundled scripts for the engine's dialect when omitted

    Returns:
        Tuple of (previous_version, new_version); 0 means no version

    Raises:
        StoreError: If the database is dirty or the scripts cannot be read
    """
    directory = (
        Path(migrations_path) if migrations_path else _BUNDLED_MIGRATIONS / _dialect_dir(engine)
    )
    scripts = load_migration_scripts(directory)

    async with engine.begin() as conn:
        await _ensure_migrations_table(conn)
        previous_version, dirty = await _current_version(conn)

    if dirty:
        raise StoreError(
            f"database is dirty at version {previous_version}",
            details={"version": previous_version},
        )

    new_version = previous_version
    for script in scripts:
        if script.version <= previous_version:
            continue

        logger.info(
            "Applying migration",
            extra={"version": script.version, "migration": script.name},
        )
        async with engine.begin() as conn:
            await _set_version(conn, script.version, dirty=True)

        async with engine.begin() as conn:
            for statement in script.statements():
                await conn.execute(text(statement))
            await _set_version(conn, script.version, dirty=False)

        new_version = script.version

    if new_version != previous_version:
        logger.info(
            "Database schema updated",
            extra={"before": previous_version, "after": new_version},
        )

    return previous_version, new_version


# ============================================================================
# Compatibility check
# ============================================================================


def _schema_differences(sync_conn: Connection) -> list[str]:
    inspector = inspect(sync_conn)
    existing_tables = set(inspector.get_table_names())
    differences: list[str] = []

    for table in metadata.sorted_tables:
        if table.name not in existing_tables:
            differences.append(f'missing table "{table.name}"')
            continue

        live_columns = {c["name"]: c for c in inspector.get_columns(table.name)}
        for column in table.columns:
            live = live_columns.get(column.name)
            if live is None:
                differences.append(f'missing column "{table.name}.{column.name}"')
                continue
            # SQLite reports INTEGER PRIMARY KEY columns as nullable
            if not column.primary_key and bool(live["nullable"]) != bool(column.nullable):
                differences.append(
                    f'column "{table.name}.{column.name}" nullable={live["nullable"]}, '
                    f"expected nullable={column.nullable}"
                )

        live_indexes = {i["name"]: i for i in inspector.get_indexes(table.name)}
        for index in table.indexes:
            live_index = live_indexes.get(index.name)
            if live_index is None:
                differences.append(f'missing index "{index.name}" on "{table.name}"')
            elif bool(live_index["unique"]) != bool(index.unique):
                differences.append(
                    f'index "{index.name}" unique={bool(live_index["unique"])}, '
                    f"expected unique={bool(index.unique)}"
                )

        live_fks = inspector.get_foreign_keys(table.name)
        for fk in table.foreign_key_constraints:
            columns = [c.name for c in fk.columns]
            match = next(
                (
                    live
                    for live in live_fks
                    if live["constrained_columns"] == columns
                    and live["referred_table"] == fk.referred_table.name
                ),
                None,
            )
            if match is None:
                differences.append(f'missing foreign key "{fk.name}" on "{table.name}"')
                continue
            ondelete = (match.get("options") or {}).get("ondelete")
            if (ondelete or "").upper() != (fk.ondelete or "").upper():
                differences.append(
                    f'foreign key "{fk.name}" ondelete={ondelete}, expected ondelete={fk.ondelete}'
                )

    return differences


async def schema_differences(engine: AsyncEngine) -> list[str]:
    """Describe how the live database differs from the declared schema."""
    async with engine.connect() as conn:
        return await conn.run_sync(_schema_differences)


async def check_schema_compatibility(engine: AsyncEngine) -> None:
    """
    Verify the live database matches the declared schema.

    Tables, columns, nullability, index names and uniqueness, and foreign
    keys are compared. Column types are not.

    Raises:
        SchemaMigrationRequiredError: If any difference is found
    """
    differences = await schema_differences(engine)
    if differences:
        logger.error(
            "Schema migration required",
            extra={"differences": differences},
        )
        raise SchemaMigrationRequiredError(differences)
