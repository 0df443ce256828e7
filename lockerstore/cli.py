"""
Schema management commands.

Usage:
    lockerstore-migrate                       # Apply bundled migration scripts
    lockerstore-migrate --url postgres://...  # Against an explicit database
    lockerstore-check-schema                  # Exit 1 when a migration is required

The database URL defaults to LOCKERSTORE_DATABASE_URL.
"""

from __future__ import annotations

import argparse
import asyncio
import sys

from lockerstore.core.config import Settings
from lockerstore.core.db import create_engine_from_settings
from lockerstore.core.errors import SchemaMigrationRequiredError, StoreError
from lockerstore.core.observability import configure_structured_logging
from lockerstore.db.migration import check_schema_compatibility, migrate_schema_with_scripts


def _settings(args: argparse.Namespace) -> Settings:
    # Explicit flags take priority over the environment
    overrides = {}
    if args.url:
        overrides["database_url"] = args.url
    if getattr(args, "migrations_path", None):
        overrides["migrations_path"] = args.migrations_path
    settings = Settings(**overrides)
    configure_structured_logging(settings.log_level, structured=False)
    return settings


async def _migrate(args: argparse.Namespace) -> int:
    settings = _settings(args)
    engine = create_engine_from_settings(settings)
    try:
        before, after = await migrate_schema_with_scripts(engine, settings.migrations_path)
        await check_schema_compatibility(engine)
    finally:
        await engine.dispose()

    if before == after:
        print(f"Schema is up to date at version {after}")
    else:
        print(f"Migrated schema from version {before} to {after}")
    return 0


async def _check(args: argparse.Namespace) -> int:
    settings = _settings(args)
    engine = create_engine_from_settings(settings)
    try:
        await check_schema_compatibility(engine)
    except SchemaMigrationRequiredError as e:
        print("Schema migration required:")
        for difference in e.differences:
            print(f"  - {difference}")
        return 1
    finally:
        await engine.dispose()

    print("Schema is compatible")
    return 0


def migrate(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="lockerstore-migrate", description="Apply pending schema migrations."
    )
    parser.add_argument("--url", help="Database URL (defaults to LOCKERSTORE_DATABASE_URL)")
    parser.add_argument("--migrations-path", help="Directory of NNNN_name.up.sql scripts")
    args = parser.parse_args(argv)

    try:
        raise SystemExit(asyncio.run(_migrate(args)))
    except StoreError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        raise SystemExit(1) from e


def check_schema(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="lockerstore-check-schema",
        description="Compare the live database with the declared schema.",
    )
    parser.add_argument("--url", help="Database URL (defaults to LOCKERSTORE_DATABASE_URL)")
    args = parser.parse_args(argv)

    try:
        raise SystemExit(asyncio.run(_check(args)))
    except StoreError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        raise SystemExit(1) from e


if __name__ == "__main__":
    migrate()
