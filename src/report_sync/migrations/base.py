"""
Base class of store migrations.

A migration moves the store from ``version - 1`` to ``version``:

    class MigrationV7(Migration):
        version = 7

        def before(self) -> None:
            self.dao.disable_foreign_keys()

        def up(self) -> None:
            self.add_column_if_missing("ledgers", "note", Column(type=ColumnType.TEXT))

        def after(self) -> None:
            self.dao.enable_foreign_keys()

``up`` only queues SQL; the engine runs the queue in one transaction. Since
the version is committed after the SQL, a migration may run again over its
own changes and must stay idempotent (IF NOT EXISTS, column guards).
"""

from __future__ import annotations

from collections.abc import Iterable

from report_sync.connectors.sqlite import SQLiteConnector
from report_sync.schema import ddl
from report_sync.schema.models import Column, Index, Model
from report_sync.schema.registry import SchemaRegistry


class Migration:
    """One schema version step."""

    version: int = 0
    description: str = ""

    def __init__(self, dao: SQLiteConnector, registry: SchemaRegistry) -> None:
        self.dao = dao
        self.registry = registry
        self._sql: list[str] = []

    def before(self) -> None:
        """Runs outside the SQL transaction, before ``up``."""

    def up(self) -> None:
        raise NotImplementedError

    def after(self) -> None:
        """Runs once ``before`` completed, whether the SQL succeeded or not."""

    def add_sql(self, sql: str | Iterable[str]) -> None:
        if isinstance(sql, str):
            self._sql.append(sql)
        else:
            self._sql.extend(sql)

    def get_sql(self) -> list[str]:
        """Collect the statements queued by ``up``."""
        self._sql = []
        self.up()
        return list(self._sql)

    # =========================================================================
    # Guards for idempotent steps
    # =========================================================================

    def create_model_if_missing(self, model: Model) -> bool:
        if self.dao.has_table(model.name):
            return False
        self.add_sql(ddl.create_model(model))
        return True

    def add_column_if_missing(self, table: str, name: str, column: Column) -> bool:
        if self.dao.has_column(table, name):
            return False
        self.add_sql(ddl.add_column(table, name, column))
        return True

    def create_indexes(
        self, table: str, indexes: Iterable[Index], unique: bool = False
    ) -> None:
        self.add_sql(
            ddl.create_index(table, index, unique=unique) for index in indexes
        )

    def __repr__(self) -> str:
        return f"<{type(self).__name__} v{self.version}>"
