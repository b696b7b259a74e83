"""Ledgers track balance recalculation and get sub-account indexes."""

from __future__ import annotations

from report_sync.migrations.base import Migration
from report_sync.schema.models import Column, ColumnType, Index, NullCheck


TABLE = "ledgers"

SUB_USER_IS_SET = (NullCheck(column="subUserId"),)


class MigrationV3(Migration):
    version = 3
    description = "Add _isBalanceRecalced and sub-account indexes to ledgers"

    def up(self) -> None:
        self.add_column_if_missing(
            TABLE, "_isBalanceRecalced", Column(type=ColumnType.BOOLEAN)
        )
        self.create_indexes(
            TABLE,
            (
                Index(fields=("user_id", "subUserId", "mts"), where=SUB_USER_IS_SET),
                Index(fields=("subUserId", "mts", "_id"), where=SUB_USER_IS_SET),
            ),
        )
