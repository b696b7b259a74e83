"""Tests for the process message executor."""

from pathlib import Path
from typing import Any

import pytest

from conftest import add_user
from report_sync.config import Settings
from report_sync.connectors.sqlite import SQLiteConnector
from report_sync.core.messages import (
    BACKUP_FILE_RE,
    ProcessMessage,
    ProcessMessageManager,
)
from report_sync.migrations.base import Migration
from report_sync.migrations.versions import MIGRATIONS
from report_sync.schema.registry import REGISTRY, TableNames


class BrokenV5(Migration):
    version = 5
    description = "Index a table that does not exist"

    def up(self) -> None:
        self.add_sql('CREATE INDEX "broken" ON "missing_table" ("a")')


class StateRecorder:
    def __init__(self) -> None:
        self.states: list[tuple[ProcessMessage, dict[str, Any]]] = []

    def __call__(self, state: ProcessMessage, data: dict[str, Any]) -> None:
        self.states.append((state, data))


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    settings = Settings()
    settings.database.backups_dir = tmp_path / "backups"
    return settings


@pytest.fixture
def recorder() -> StateRecorder:
    return StateRecorder()


@pytest.fixture
def manager(dao: SQLiteConnector, settings: Settings, recorder: StateRecorder) -> ProcessMessageManager:
    return ProcessMessageManager(dao, settings, send_state=recorder)


class TestBackups:
    """Tests for backup, listing and restore messages."""

    def test_backup(self, manager: ProcessMessageManager, recorder: StateRecorder) -> None:
        response = manager.handle(ProcessMessage.BACKUP_DB)

        assert response.ok
        match = BACKUP_FILE_RE.match(response.data["name"])
        assert match and match["version"] == str(REGISTRY.version)
        assert Path(response.data["path"]).is_file()
        assert recorder.states == [(ProcessMessage.BACKUP_DB, response.data)]

    def test_metadata_newest_first(
        self, manager: ProcessMessageManager, settings: Settings
    ) -> None:
        first = manager.handle(ProcessMessage.BACKUP_DB).data["name"]
        second = manager.handle("backup-db").data["name"]
        (settings.database.backups_dir / "notes.txt").write_text("not a backup")

        response = manager.handle(ProcessMessage.REQUEST_GET_BACKUP_FILES_METADATA)

        names = [b["name"] for b in response.data["backupFilesMetadata"]]
        assert names == [second, first]

    def test_no_backups_dir(self, manager: ProcessMessageManager) -> None:
        assert manager.get_backup_files_metadata() == []

    def test_restore_newest(self, manager: ProcessMessageManager, dao: SQLiteConnector) -> None:
        manager.handle(ProcessMessage.BACKUP_DB)
        add_user(dao, "late@example.com")

        response = manager.handle(ProcessMessage.RESTORE_DB)

        assert response.ok
        assert dao.get_row_count(TableNames.USERS) == 0
        assert response.data["version"] == REGISTRY.version

    def test_restore_by_name(self, manager: ProcessMessageManager, dao: SQLiteConnector) -> None:
        add_user(dao, "early@example.com")
        name = manager.handle(ProcessMessage.BACKUP_DB).data["name"]
        manager.handle(ProcessMessage.CLEAR_ALL_TABLES, {"exclude": []})

        response = manager.handle(ProcessMessage.RESTORE_DB, {"name": name})

        assert response.data["name"] == name
        assert dao.get_row_count(TableNames.USERS) == 1

    def test_restore_without_backup(self, manager: ProcessMessageManager) -> None:
        response = manager.handle(ProcessMessage.RESTORE_DB)

        assert not response.ok
        assert "No backup to restore" in response.error

    def test_restore_unreadable_backup(
        self, manager: ProcessMessageManager, settings: Settings, recorder: StateRecorder
    ) -> None:
        backups_dir = settings.database.backups_dir
        backups_dir.mkdir(parents=True)
        (backups_dir / "backup_v5_2026-01-01T00-00-00.000000.db").write_bytes(b"not sqlite" * 200)

        response = manager.handle(ProcessMessage.RESTORE_DB)

        assert not response.ok
        assert "not a database" in response.error
        assert recorder.states == []


class TestTables:
    """Tests for clearing and removing tables."""

    def test_clear_keeps_accounts(self, manager: ProcessMessageManager, dao: SQLiteConnector, user_id: int) -> None:
        dao.insert_elem_to_db(TableNames.LEDGERS, {"id": 1, "user_id": user_id, "mts": 1})

        response = manager.handle(ProcessMessage.CLEAR_ALL_TABLES)

        assert TableNames.LEDGERS in response.data["tables"]
        assert TableNames.USERS not in response.data["tables"]
        assert dao.get_row_count(TableNames.LEDGERS) == 0
        assert dao.get_row_count(TableNames.USERS) == 1

    def test_clear_everything_with_foreign_keys_enforced(
        self, manager: ProcessMessageManager, dao: SQLiteConnector, sub_account_ids
    ) -> None:
        master, sub_a, _ = sub_account_ids
        dao.insert_elem_to_db(
            TableNames.LEDGERS, {"id": 1, "user_id": master, "subUserId": sub_a, "mts": 1}
        )

        response = manager.handle(ProcessMessage.CLEAR_ALL_TABLES, {"exclude": []})

        assert response.ok
        assert dao.is_foreign_keys_enabled()
        for table in (TableNames.USERS, TableNames.SUB_ACCOUNTS, TableNames.LEDGERS):
            assert dao.get_row_count(table) == 0

    def test_remove_recreates_store(self, manager: ProcessMessageManager, dao: SQLiteConnector, user_id: int) -> None:
        response = manager.handle(ProcessMessage.REMOVE_ALL_TABLES)

        assert response.data["created"]
        assert dao.get_version() == REGISTRY.version
        assert dao.get_row_count(TableNames.USERS) == 0

    def test_unknown_message(self, manager: ProcessMessageManager) -> None:
        with pytest.raises(ValueError):
            manager.handle("drop-everything")


class TestMigrationFailure:
    """A failed migration asks the host what to do."""

    @pytest.fixture
    def broken_manager(
        self, dao: SQLiteConnector, settings: Settings, recorder: StateRecorder
    ) -> ProcessMessageManager:
        return ProcessMessageManager(
            dao, settings, migrations={**MIGRATIONS, 5: BrokenV5}, send_state=recorder
        )

    def test_prepare_reports_failure(
        self,
        broken_manager: ProcessMessageManager,
        dao: SQLiteConnector,
        recorder: StateRecorder,
    ) -> None:
        dao.set_version(4)

        response = broken_manager.handle(ProcessMessage.PREPARE_DB)

        assert not response.ok
        assert dao.get_version() == 4
        ((state, data),) = recorder.states
        assert state == ProcessMessage.RESPONSE_MIGRATION_HAS_FAILED_WHAT_SHOULD_BE_DONE
        assert data["version"] == 5

    def test_answer_remove_all_tables(
        self, broken_manager: ProcessMessageManager, dao: SQLiteConnector
    ) -> None:
        dao.set_version(4)

        response = broken_manager.handle(
            ProcessMessage.RESPONSE_MIGRATION_HAS_FAILED_WHAT_SHOULD_BE_DONE,
            {"action": "remove-all-tables"},
        )

        assert response.ok
        assert response.data["action"] == "remove-all-tables"
        assert dao.get_version() == REGISTRY.version

    def test_answer_restore(
        self, broken_manager: ProcessMessageManager, dao: SQLiteConnector, user_id: int
    ) -> None:
        broken_manager.handle(ProcessMessage.BACKUP_DB)
        dao.set_version(4)

        response = broken_manager.handle(
            ProcessMessage.RESPONSE_MIGRATION_HAS_FAILED_WHAT_SHOULD_BE_DONE,
            {"action": "restore-db"},
        )

        assert response.ok
        assert dao.get_version() == REGISTRY.version
        assert dao.get_row_count(TableNames.USERS) == 1


class TestSyncOnStartup:
    """Tests for the sync-on-startup flag update."""

    def test_opted_out_users_keep_flag(self, manager: ProcessMessageManager, dao: SQLiteConnector) -> None:
        add_user(dao, "a@example.com")
        add_user(dao, "b@example.com", shouldNotSyncOnStartupAfterUpdate=False)
        add_user(dao, "c@example.com", shouldNotSyncOnStartupAfterUpdate=True)

        response = manager.handle(
            ProcessMessage.REQUEST_UPDATE_USERS_SYNC_ON_STARTUP_REQUIRED_STATE,
            {"isSyncOnStartupRequired": True},
        )

        assert response.data["updated"] == 2
        assert [u["isSyncOnStartupRequired"] for u in response.data["users"]] == [
            True,
            True,
            False,
        ]
