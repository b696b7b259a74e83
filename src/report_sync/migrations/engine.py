"""
Migration Engine - brings the store to the supported schema version.

On open:
1. A brand-new empty store is created from the registry and stamped with
   the supported version; no migration runs.
2. Otherwise every version in (persisted, supported] runs in order.
3. A store newer than the supported version is refused.

Per migration the states are::

    pending -> before_hook -> sql_applied -> after_hook -> committed
                                     \\-> failed

The SQL batch runs in one transaction, ``after`` runs once ``before``
completed, and the version is committed last. The first failure aborts the
run, leaving the store at the last committed version.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum

from report_sync.connectors.sqlite import SQLiteConnector
from report_sync.errors import DbVersionError, MigrationError
from report_sync.migrations.base import Migration
from report_sync.schema import ddl
from report_sync.schema.registry import REGISTRY, SchemaRegistry


logger = logging.getLogger(__name__)


class MigrationState(str, Enum):
    """Lifecycle of a single migration."""

    PENDING = "pending"
    BEFORE_HOOK = "before_hook"
    SQL_APPLIED = "sql_applied"
    AFTER_HOOK = "after_hook"
    COMMITTED = "committed"
    FAILED = "failed"


@dataclass
class MigrationRecord:
    """Progress of one migration within a run."""

    version: int
    description: str = ""
    state: MigrationState = MigrationState.PENDING
    error: str | None = None


@dataclass
class MigrationReport:
    """Outcome of ``MigrationEngine.migrate``."""

    from_version: int
    to_version: int
    created: bool = False
    records: list[MigrationRecord] = field(default_factory=list)

    @property
    def applied_versions(self) -> list[int]:
        return [
            r.version for r in self.records
            if r.state == MigrationState.COMMITTED
        ]


class MigrationEngine:
    """
    Runs the store migrations.

    Example:
        engine = MigrationEngine(dao)
        report = engine.migrate()
        print(report.to_version)
    """

    def __init__(
        self,
        dao: SQLiteConnector,
        registry: SchemaRegistry = REGISTRY,
        migrations: Mapping[int, type[Migration]] | None = None,
        supported_version: int | None = None,
    ) -> None:
        if migrations is None:
            from report_sync.migrations.versions import MIGRATIONS

            migrations = MIGRATIONS

        self.dao = dao
        self.registry = registry
        self.migrations = dict(migrations)
        self.supported_version = (
            registry.version if supported_version is None else supported_version
        )

    def migrate(self) -> MigrationReport:
        """
        Bring the store to the supported version.

        Returns:
            MigrationReport with the state of every migration run

        Raises:
            DbVersionError: The store is newer than the supported version
            MigrationError: A migration is missing or failed
        """
        persisted = self.dao.get_version()
        supported = self.supported_version
        report = MigrationReport(from_version=persisted, to_version=persisted)

        if persisted > supported:
            raise DbVersionError(persisted, supported)

        if persisted == 0 and self.dao.is_empty():
            self._create_from_registry()
            report.created = True
            report.to_version = supported
            return report

        versions = list(range(persisted + 1, supported + 1))
        if not versions:
            logger.debug("Store is at the supported version %d", supported)
            return report

        missing = [v for v in versions if v not in self.migrations]
        if missing:
            raise MigrationError(
                f"Missing migrations for versions {missing}", version=missing[0]
            )

        logger.info(
            "Migrating store from version %d to %d", persisted, supported
        )
        try:
            for version in versions:
                migration_cls = self.migrations[version]
                record = MigrationRecord(
                    version=version, description=migration_cls.description
                )
                report.records.append(record)
                self._run(migration_cls(self.dao, self.registry), record)
                report.to_version = version
        finally:
            # Foreign keys are only ever disabled by migration hooks
            self.dao.enable_foreign_keys()

        return report

    def _create_from_registry(self) -> None:
        statements = [
            sql
            for model in self.registry.get_all_models().values()
            for sql in ddl.create_model(model)
        ]
        with self.dao.transaction():
            for sql in statements:
                self.dao.execute_sql(sql)
        self.dao.set_version(self.supported_version)

        logger.info(
            "Created store schema version %d",
            self.supported_version,
            extra={"tables": len(self.registry.get_all_models())},
        )

    def _transition(self, record: MigrationRecord, state: MigrationState) -> None:
        record.state = state
        logger.info(
            "Migration v%d: %s",
            record.version,
            state.value,
            extra={"migration_version": record.version},
        )

    def _run(self, migration: Migration, record: MigrationRecord) -> None:
        version = record.version

        try:
            if migration.version != version:
                raise MigrationError(
                    f"{migration!r} is registered for version {version}",
                    version=version,
                )

            self._transition(record, MigrationState.BEFORE_HOOK)
            migration.before()
            try:
                statements = migration.get_sql()
                with self.dao.transaction():
                    for sql in statements:
                        self.dao.execute_sql(sql)
                self._transition(record, MigrationState.SQL_APPLIED)
            finally:
                self._transition(record, MigrationState.AFTER_HOOK)
                migration.after()

            self.dao.set_version(version)
            self._transition(record, MigrationState.COMMITTED)
        except Exception as e:
            record.state = MigrationState.FAILED
            record.error = str(e)
            logger.error(
                "Migration v%d failed: %s",
                version,
                e,
                extra={"migration_version": version},
            )
            if isinstance(e, MigrationError):
                raise
            raise MigrationError(
                f"Migration v{version} failed: {e}", version=version
            ) from e
