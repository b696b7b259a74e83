"""Users get the sync-on-startup flags."""

from __future__ import annotations

from report_sync.migrations.base import Migration
from report_sync.schema.models import Column, ColumnType


class MigrationV4(Migration):
    version = 4
    description = "Add sync-on-startup flags to users"

    def up(self) -> None:
        for name in ("isSyncOnStartupRequired", "shouldNotSyncOnStartupAfterUpdate"):
            self.add_column_if_missing("users", name, Column(type=ColumnType.BOOLEAN))
