"""Baseline: create every registry table that does not exist yet."""

from __future__ import annotations

from report_sync.migrations.base import Migration


class MigrationV1(Migration):
    version = 1
    description = "Create missing tables"

    def up(self) -> None:
        for model in self.registry.get_all_models().values():
            self.create_model_if_missing(model)
