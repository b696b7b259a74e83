"""Schema-versioned migrations of the local store."""

from report_sync.migrations.base import Migration
from report_sync.migrations.engine import (
    MigrationEngine,
    MigrationRecord,
    MigrationReport,
    MigrationState,
)

__all__ = [
    "Migration",
    "MigrationEngine",
    "MigrationRecord",
    "MigrationReport",
    "MigrationState",
]
