"""
Process message vocabulary and its executor.

The host process talks to the sync worker with a small set of messages
(the transport itself is not part of this package). ``ProcessMessageManager``
executes each message against the store and reports states back through an
optional ``send_state`` callback.
"""

from __future__ import annotations

import logging
import re
import sqlite3
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from report_sync.config import Settings
from report_sync.connectors.sqlite import SQLiteConnector
from report_sync.errors import MigrationError
from report_sync.migrations.base import Migration
from report_sync.migrations.engine import MigrationEngine
from report_sync.schema.registry import REGISTRY, SchemaRegistry, TableNames
from report_sync.core.users import normalize_user_data


logger = logging.getLogger(__name__)

BACKUP_FILE_RE = re.compile(r"^backup_v(?P<version>\d+)_(?P<stamp>[0-9T\-.]+)\.db$")

# Tables kept by CLEAR_ALL_TABLES: accounts and what they configured
PRESERVED_TABLES = (
    TableNames.USERS,
    TableNames.SUB_ACCOUNTS,
    TableNames.PUBLIC_COLLS_CONF,
)


class ProcessMessage(str, Enum):
    """Messages exchanged with the host process."""

    CLEAR_ALL_TABLES = "clear-all-tables"
    REMOVE_ALL_TABLES = "remove-all-tables"
    RESTORE_DB = "restore-db"
    BACKUP_DB = "backup-db"
    PREPARE_DB = "prepare-db"

    RESPONSE_MIGRATION_HAS_FAILED_WHAT_SHOULD_BE_DONE = (
        "response:migration-has-failed:what-should-be-done"
    )

    REQUEST_GET_BACKUP_FILES_METADATA = "request:get-backup-files-metadata"

    REQUEST_UPDATE_USERS_SYNC_ON_STARTUP_REQUIRED_STATE = (
        "request:update-users-sync-on-startup-required-state"
    )


class MigrationFailureAction(str, Enum):
    """Answers to RESPONSE_MIGRATION_HAS_FAILED_WHAT_SHOULD_BE_DONE."""

    RESTORE_DB = "restore-db"
    REMOVE_ALL_TABLES = "remove-all-tables"


@dataclass
class ProcessResponse:
    """Result of handling one message."""

    state: ProcessMessage
    ok: bool = True
    data: dict[str, Any] = field(default_factory=dict)
    error: str | None = None


@dataclass(frozen=True)
class BackupFileMetadata:
    """A store backup on disk."""

    name: str
    path: Path
    version: int
    size: int
    created_at: datetime


StateSender = Callable[[ProcessMessage, Mapping[str, Any]], None]


class ProcessMessageManager:
    """
    Executes process messages against the store.

    Example:
        manager = ProcessMessageManager(dao, settings)
        response = manager.handle(ProcessMessage.BACKUP_DB)
        print(response.data["path"])
    """

    def __init__(
        self,
        dao: SQLiteConnector,
        settings: Settings | None = None,
        registry: SchemaRegistry = REGISTRY,
        migrations: Mapping[int, type[Migration]] | None = None,
        send_state: StateSender | None = None,
    ) -> None:
        self.dao = dao
        self.settings = settings or Settings()
        self.registry = registry
        self.migrations = migrations
        self._send_state = send_state

        self._handlers: dict[ProcessMessage, Callable[[Mapping[str, Any]], dict[str, Any]]] = {
            ProcessMessage.CLEAR_ALL_TABLES: self._clear_all_tables,
            ProcessMessage.REMOVE_ALL_TABLES: self._remove_all_tables,
            ProcessMessage.RESTORE_DB: self._restore_db,
            ProcessMessage.BACKUP_DB: self._backup_db,
            ProcessMessage.PREPARE_DB: self._prepare_db,
            ProcessMessage.RESPONSE_MIGRATION_HAS_FAILED_WHAT_SHOULD_BE_DONE: (
                self._on_migration_failure_answer
            ),
            ProcessMessage.REQUEST_GET_BACKUP_FILES_METADATA: self._get_backup_files_metadata,
            ProcessMessage.REQUEST_UPDATE_USERS_SYNC_ON_STARTUP_REQUIRED_STATE: (
                self._update_users_sync_on_startup_required_state
            ),
        }

    @property
    def backups_dir(self) -> Path:
        return Path(self.settings.database.backups_dir)

    def send_state(self, state: ProcessMessage, data: Mapping[str, Any] | None = None) -> None:
        if self._send_state is not None:
            self._send_state(state, dict(data or {}))

    def handle(
        self,
        message: ProcessMessage | str,
        payload: Mapping[str, Any] | None = None,
    ) -> ProcessResponse:
        """
        Execute one message.

        Args:
            message: ProcessMessage or its string value
            payload: Message arguments

        Returns:
            ProcessResponse; failures are reported, not raised
        """
        state = ProcessMessage(message)
        logger.info("Handling process message %s", state.value)

        try:
            data = self._handlers[state](payload or {})
        except MigrationError as e:
            logger.error("Migration failed while handling %s: %s", state.value, e)
            self.send_state(
                ProcessMessage.RESPONSE_MIGRATION_HAS_FAILED_WHAT_SHOULD_BE_DONE,
                {"version": e.version, "error": str(e)},
            )
            return ProcessResponse(state=state, ok=False, error=str(e))
        except (OSError, ValueError, sqlite3.Error) as e:
            logger.error("Process message %s failed: %s", state.value, e)
            return ProcessResponse(state=state, ok=False, error=str(e))

        self.send_state(state, data)
        return ProcessResponse(state=state, data=data)

    # =========================================================================
    # Handlers
    # =========================================================================

    def _migrate(self) -> dict[str, Any]:
        report = MigrationEngine(self.dao, self.registry, self.migrations).migrate()
        return {
            "fromVersion": report.from_version,
            "version": report.to_version,
            "created": report.created,
            "appliedVersions": report.applied_versions,
        }

    def _prepare_db(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        return self._migrate()

    def _clear_all_tables(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        exclude = payload.get("exclude", PRESERVED_TABLES)
        return {"tables": self.dao.clear_all_tables(exclude=exclude)}

    def _remove_all_tables(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        tables = self.dao.drop_all_tables()
        # The store is recreated empty at the supported version
        return {"tables": tables, **self._migrate()}

    def _backup_db(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        stamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S.%f")
        name = f"backup_v{self.dao.get_version()}_{stamp}.db"
        path = self.dao.backup_to(self.backups_dir / name)
        logger.info("Store backed up to %s", path)
        return {"name": name, "path": str(path)}

    def _restore_db(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        name = payload.get("name")
        backups = self.get_backup_files_metadata()
        if name:
            backup = next((b for b in backups if b.name == name), None)
        else:
            # Newest backup this version of the store can open
            backup = next(
                (b for b in backups if b.version <= self.registry.version), None
            )
        if backup is None:
            raise FileNotFoundError(f"No backup to restore{f': {name}' if name else ''}")

        self.dao.restore_from(backup.path)
        logger.info("Store restored from %s", backup.path)
        return {"name": backup.name, **self._migrate()}

    def _on_migration_failure_answer(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        action = MigrationFailureAction(payload.get("action"))
        if action == MigrationFailureAction.RESTORE_DB:
            return {"action": action.value, **self._restore_db(payload)}
        return {"action": action.value, **self._remove_all_tables(payload)}

    def get_backup_files_metadata(self) -> list[BackupFileMetadata]:
        """Backups on disk, newest first."""
        if not self.backups_dir.is_dir():
            return []

        backups: list[BackupFileMetadata] = []
        for path in self.backups_dir.iterdir():
            match = BACKUP_FILE_RE.match(path.name)
            if not match or not path.is_file():
                continue
            stat = path.stat()
            backups.append(
                BackupFileMetadata(
                    name=path.name,
                    path=path,
                    version=int(match["version"]),
                    size=stat.st_size,
                    created_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                )
            )

        # Names embed a sortable timestamp
        return sorted(
            backups,
            key=lambda b: BACKUP_FILE_RE.match(b.name)["stamp"],
            reverse=True,
        )

    def _get_backup_files_metadata(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        return {
            "backupFilesMetadata": [
                {
                    "name": b.name,
                    "version": b.version,
                    "size": b.size,
                    "createdAt": b.created_at.isoformat(),
                }
                for b in self.get_backup_files_metadata()
            ]
        }

    def _update_users_sync_on_startup_required_state(
        self, payload: Mapping[str, Any]
    ) -> dict[str, Any]:
        is_required = bool(payload.get("isSyncOnStartupRequired", True))

        # Users opted out after an update keep their flag
        updated = 0
        with self.dao.transaction():
            for opted_out in (None, 0):
                updated += self.dao.update_coll_by(
                    TableNames.USERS,
                    {"shouldNotSyncOnStartupAfterUpdate": opted_out},
                    {"isSyncOnStartupRequired": is_required},
                )

        users = normalize_user_data(
            self.dao.get_elems_in_coll_by(
                TableNames.USERS,
                projection=[
                    "_id",
                    "email",
                    "isSyncOnStartupRequired",
                    "shouldNotSyncOnStartupAfterUpdate",
                ],
                sort=[("_id", 1)],
            )
        )
        return {"updated": updated, "users": users}
