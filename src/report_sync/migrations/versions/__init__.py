"""Shipped store migrations, keyed by the version they produce."""

from __future__ import annotations

from report_sync.migrations.base import Migration
from report_sync.migrations.versions.migration_v1 import MigrationV1
from report_sync.migrations.versions.migration_v2 import MigrationV2
from report_sync.migrations.versions.migration_v3 import MigrationV3
from report_sync.migrations.versions.migration_v4 import MigrationV4
from report_sync.migrations.versions.migration_v5 import MigrationV5


MIGRATIONS: dict[int, type[Migration]] = {
    migration.version: migration
    for migration in (
        MigrationV1,
        MigrationV2,
        MigrationV3,
        MigrationV4,
        MigrationV5,
    )
}

__all__ = ["MIGRATIONS"]
