"""
Store bootstrap.

``open_store`` is the only way the sync components get a DAO: migrations
run to completion before it returns, so no checkpoint or data work can
observe a store at an older schema version.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from pathlib import Path

from report_sync.config import Settings
from report_sync.connectors.sqlite import SQLiteConnector
from report_sync.migrations.base import Migration
from report_sync.migrations.engine import MigrationEngine, MigrationReport
from report_sync.schema.registry import REGISTRY, SchemaRegistry


logger = logging.getLogger(__name__)


def open_store(
    path: Path | str | None = None,
    settings: Settings | None = None,
    registry: SchemaRegistry = REGISTRY,
    migrations: Mapping[int, type[Migration]] | None = None,
) -> tuple[SQLiteConnector, MigrationReport]:
    """
    Open the store and migrate it to the supported schema version.

    Args:
        path: Store file (defaults to ``settings.database.path``)
        settings: Optional settings object
        registry: Schema registry to migrate to
        migrations: Migrations to use instead of the shipped ones

    Returns:
        (dao, migration report)
    """
    settings = settings or Settings()
    dao = SQLiteConnector(path or settings.database.path, settings=settings)

    try:
        report = MigrationEngine(dao, registry, migrations).migrate()
    except Exception:
        dao.close()
        raise

    logger.debug(
        "Store %s opened at version %d", dao.path, report.to_version
    )
    return dao, report
