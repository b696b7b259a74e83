"""Checkpoints of public collections are kept per symbol and timeframe."""

from __future__ import annotations

from report_sync.migrations.base import Migration
from report_sync.schema import ddl
from report_sync.schema.models import Column, ColumnType, Index, NullCheck


TABLE = "syncUserSteps"

UNIQUE_INDEXES = (
    Index(
        fields=("collName",),
        where=(
            NullCheck(column="user_id", is_null=True),
            NullCheck(column="symbol", is_null=True),
        ),
    ),
    Index(
        fields=("collName", "symbol"),
        where=(
            NullCheck(column="user_id", is_null=True),
            NullCheck(column="symbol"),
            NullCheck(column="timeframe", is_null=True),
        ),
    ),
    Index(
        fields=("collName", "symbol", "timeframe"),
        where=(
            NullCheck(column="user_id", is_null=True),
            NullCheck(column="symbol"),
            NullCheck(column="timeframe"),
        ),
    ),
    Index(
        fields=("user_id", "collName"),
        where=(
            NullCheck(column="user_id"),
            NullCheck(column="subUserId", is_null=True),
        ),
    ),
    Index(
        fields=("user_id", "subUserId", "collName"),
        where=(
            NullCheck(column="user_id"),
            NullCheck(column="subUserId"),
        ),
    ),
)


class MigrationV2(Migration):
    version = 2
    description = "Add symbol and timeframe to syncUserSteps"

    def up(self) -> None:
        self.add_column_if_missing(TABLE, "symbol", Column(type=ColumnType.VARCHAR))
        self.add_column_if_missing(TABLE, "timeframe", Column(type=ColumnType.VARCHAR))

        # Replace full unique indexes of the same name with partial ones
        self.add_sql(ddl.drop_index(index.get_name(TABLE)) for index in UNIQUE_INDEXES)
        self.create_indexes(TABLE, UNIQUE_INDEXES, unique=True)
