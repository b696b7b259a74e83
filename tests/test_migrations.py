"""Tests for the migration engine and the shipped migrations."""

from collections.abc import Iterator
from pathlib import Path

import pytest

from report_sync.connectors.sqlite import SQLiteConnector
from report_sync.core.bootstrap import open_store
from report_sync.errors import DbVersionError, MigrationError
from report_sync.migrations.base import Migration
from report_sync.migrations.engine import MigrationEngine, MigrationState
from report_sync.schema.models import Column, ColumnType, Index, Model
from report_sync.schema.registry import REGISTRY, SUPPORTED_DB_VERSION, SchemaRegistry


ITEMS = Model(
    name="items",
    columns={
        "_id": Column(type=ColumnType.ID),
        "name": Column(type=ColumnType.VARCHAR),
    },
)
REGISTRY_V37 = SchemaRegistry(37, [ITEMS])

hook_calls: list[str] = []


class AddName(Migration):
    version = 36
    description = "Add name to items"

    def up(self) -> None:
        self.add_column_if_missing("items", "name", Column(type=ColumnType.VARCHAR))


class IndexName(Migration):
    version = 37
    description = "Index items by name"

    def up(self) -> None:
        self.create_indexes("items", [Index(fields=("name",))])


class BrokenWithHooks(Migration):
    version = 37
    description = "Fails between its hooks"

    def before(self) -> None:
        hook_calls.append("before")
        self.dao.disable_foreign_keys()

    def up(self) -> None:
        self.add_sql("CREATE INDEX broken ON missing_table(name)")

    def after(self) -> None:
        hook_calls.append("after")


class BrokenAddName(Migration):
    version = 36
    description = "Add name to a table that does not exist"

    def up(self) -> None:
        self.add_sql("ALTER TABLE missing_table ADD COLUMN name VARCHAR(255)")


class RecordingIndexName(IndexName):
    def up(self) -> None:
        hook_calls.append("up 37")
        super().up()


@pytest.fixture
def store_v35(tmp_path: Path) -> Iterator[SQLiteConnector]:
    """A store persisted at version 35."""
    dao = SQLiteConnector(tmp_path / "migrations.db")
    dao.execute_sql("CREATE TABLE items (_id INTEGER PRIMARY KEY AUTOINCREMENT)")
    dao.set_version(35)
    hook_calls.clear()
    yield dao
    dao.close()


class TestMigrationEngine:
    """Tests for MigrationEngine."""

    def test_runs_pending_versions_in_order(self, store_v35: SQLiteConnector) -> None:
        engine = MigrationEngine(store_v35, REGISTRY_V37, {36: AddName, 37: IndexName})
        report = engine.migrate()

        assert report.from_version == 35
        assert report.to_version == 37
        assert report.applied_versions == [36, 37]
        assert [r.description for r in report.records] == [
            "Add name to items",
            "Index items by name",
        ]
        assert store_v35.get_version() == 37
        assert store_v35.has_column("items", "name")
        assert "items_name" in store_v35.get_index_names("items")

    def test_rerun_is_a_noop(self, store_v35: SQLiteConnector) -> None:
        migrations = {36: AddName, 37: IndexName}
        MigrationEngine(store_v35, REGISTRY_V37, migrations).migrate()
        report = MigrationEngine(store_v35, REGISTRY_V37, migrations).migrate()

        assert report.records == []
        assert report.to_version == 37

    def test_failure_keeps_last_committed_version(self, store_v35: SQLiteConnector) -> None:
        """A failing migration leaves the store at the previous version."""
        engine = MigrationEngine(store_v35, REGISTRY_V37, {36: AddName, 37: BrokenWithHooks})

        with pytest.raises(MigrationError) as exc_info:
            engine.migrate()

        assert exc_info.value.version == 37
        assert store_v35.get_version() == 36
        assert hook_calls == ["before", "after"]
        assert store_v35.is_foreign_keys_enabled()

    def test_failure_stops_later_versions(self, store_v35: SQLiteConnector) -> None:
        """When 36 fails the store stays at 35 and 37 never runs."""
        engine = MigrationEngine(
            store_v35, REGISTRY_V37, {36: BrokenAddName, 37: RecordingIndexName}
        )

        with pytest.raises(MigrationError) as exc_info:
            engine.migrate()

        assert exc_info.value.version == 36
        assert store_v35.get_version() == 35
        assert hook_calls == []
        assert not store_v35.has_column("items", "name")

    def test_failed_record_state(self, store_v35: SQLiteConnector) -> None:
        store_v35.set_version(36)
        engine = MigrationEngine(store_v35, REGISTRY_V37, {37: BrokenWithHooks})
        record_holder = []

        original_run = engine._run

        def spy(migration, record):
            record_holder.append(record)
            return original_run(migration, record)

        engine._run = spy
        with pytest.raises(MigrationError):
            engine.migrate()

        assert record_holder[0].state == MigrationState.FAILED
        assert "missing_table" in record_holder[0].error

    def test_missing_migration_runs_nothing(self, store_v35: SQLiteConnector) -> None:
        engine = MigrationEngine(store_v35, REGISTRY_V37, {36: AddName})

        with pytest.raises(MigrationError):
            engine.migrate()

        assert store_v35.get_version() == 35
        assert not store_v35.has_column("items", "name")

    def test_newer_store_is_refused(self, store_v35: SQLiteConnector) -> None:
        store_v35.set_version(40)
        with pytest.raises(DbVersionError):
            MigrationEngine(store_v35, REGISTRY_V37, {}).migrate()

    def test_version_mismatch(self, store_v35: SQLiteConnector) -> None:
        """A migration registered under the wrong version fails."""
        engine = MigrationEngine(store_v35, REGISTRY_V37, {36: IndexName, 37: IndexName})
        with pytest.raises(MigrationError):
            engine.migrate()
        assert store_v35.get_version() == 35


class TestShippedMigrations:
    """Tests for the store bootstrap and the shipped migration chain."""

    def test_fresh_store_is_stamped(self, tmp_path: Path) -> None:
        """An empty store is created from the registry without migrating."""
        dao, report = open_store(tmp_path / "fresh.db")
        try:
            assert report.created
            assert report.records == []
            assert dao.get_version() == SUPPORTED_DB_VERSION
            assert set(REGISTRY.get_all_models()) <= set(dao.get_table_names())
        finally:
            dao.close()

    def test_fresh_store_has_triggers(self, tmp_path: Path) -> None:
        dao, _ = open_store(tmp_path / "fresh.db")
        try:
            for model in REGISTRY.get_all_models().values():
                expected = sorted(t.get_name(model.name) for t in model.triggers)
                assert dao.get_trigger_names(model.name) == expected
        finally:
            dao.close()

    def test_chain_is_idempotent_over_a_current_store(self, tmp_path: Path) -> None:
        """Migrations can run again over their own changes."""
        dao, _ = open_store(tmp_path / "rerun.db")
        try:
            dao.set_version(1)
            report = MigrationEngine(dao).migrate()

            assert report.applied_versions == list(range(2, SUPPORTED_DB_VERSION + 1))
            assert dao.get_version() == SUPPORTED_DB_VERSION
            assert dao.is_foreign_keys_enabled()
        finally:
            dao.close()

    def test_adds_columns_to_an_old_store(self, tmp_path: Path) -> None:
        """Columns introduced after version 1 are added to older tables."""
        dao, _ = open_store(tmp_path / "old.db")
        try:
            dao.disable_foreign_keys()
            dao.execute_sql("ALTER TABLE ledgers DROP COLUMN _isBalanceRecalced")
            dao.enable_foreign_keys()
            dao.set_version(2)

            MigrationEngine(dao).migrate()

            assert dao.has_column("ledgers", "_isBalanceRecalced")
            assert dao.get_version() == SUPPORTED_DB_VERSION
        finally:
            dao.close()

    def test_relinks_sub_account_ledgers(self, tmp_path: Path) -> None:
        """Ledger rows follow a re-created sub-user with the same email."""
        dao, _ = open_store(tmp_path / "relink.db")
        try:
            master = dao.insert_elem_to_db(
                "users", {"email": "m@example.com", "id": 7, "isSubAccount": 1}
            )
            old_sub = dao.insert_elem_to_db(
                "users", {"email": "s@example.com", "isSubUser": 1, "username": "old"}
            )
            dao.insert_elem_to_db("subAccounts", {"masterUserId": master, "subUserId": old_sub})
            dao.insert_elem_to_db(
                "ledgers",
                {"id": 1, "user_id": master, "subUserId": old_sub, "mts": 1, "currency": "BTC"},
            )
            new_sub = dao.insert_elem_to_db(
                "users",
                {"email": "s@example.com", "isSubUser": 1, "username": "s-sub-user-7"},
            )
            dao.set_version(4)

            MigrationEngine(dao).migrate()

            sub_account = dao.get_elem_in_coll_by("subAccounts", {"masterUserId": master})
            ledger = dao.get_elem_in_coll_by("ledgers", {"id": 1})
            assert sub_account["subUserId"] == new_sub
            assert ledger["subUserId"] == new_sub
        finally:
            dao.close()
