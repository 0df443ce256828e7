"""
Database schema, column types and migrations.
"""

from lockerstore.db.migration import (
    check_schema_compatibility,
    create_schema,
    migrate_schema_with_scripts,
    schema_differences,
)

__all__ = [
    "check_schema_compatibility",
    "create_schema",
    "migrate_schema_with_scripts",
    "schema_differences",
]
