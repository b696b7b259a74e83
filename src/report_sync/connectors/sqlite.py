"""
SQLite Data Access Object.

Provides read/write access to the local report store with:
- Schema introspection (tables, columns, indexes)
- Filtered queries built from a small filter grammar
- Batch insert/update/remove operations
- Explicit transactions (nested via savepoints)
- Persisted schema version (PRAGMA user_version)
- Online backup and restore

Filter grammar accepted by the query methods:

    {"user_id": 1}                      plain equality
    {"currency": ["BTC", "ETH"]}        list -> IN
    {"subUserId": None}                 None -> IS NULL
    {"$gte": {"mts": 100}}              $eq $ne $gt $gte $lt $lte
    {"$in": {"_id": [1, 2]}}            $in $nin
    {"$not": {"currency": ["USD"]}}     NOT IN / != for scalars
    {"$isNotNull": ["subUserId"]}       $isNull $isNotNull

All terms are joined with AND. Values are always bound as parameters and
identifiers are validated before they are quoted.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Generator, Iterable, Mapping, Sequence

from report_sync.config import Settings
from report_sync.schema.ddl import drop_table, quote_ident


logger = logging.getLogger(__name__)

Filter = Mapping[str, Any]
Sort = Sequence[tuple[str, int]]

_COMPARISON_OPERATORS = {
    "$gt": ">",
    "$gte": ">=",
    "$lt": "<",
    "$lte": "<=",
}
_GROUP_FUNCTIONS = frozenset({"MIN", "MAX", "COUNT", "SUM", "AVG"})


@dataclass
class ColumnInfo:
    """Information about a table column."""

    name: str
    type: str
    notnull: bool
    default_value: Any
    is_primary_key: bool


class SQLiteConnector:
    """
    DAO over the local SQLite report store.

    A single connection is shared and guarded by a re-entrant lock, so the
    connector can be used from worker threads as well as the event loop.

    Example:
        with SQLiteConnector(Path("db/report-sync.db")) as dao:
            rows = dao.get_elems_in_coll_by(
                "ledgers",
                filter={"user_id": 1, "$gte": {"mts": start}},
                sort=[("mts", -1)],
                limit=100,
            )
    """

    def __init__(
        self,
        path: Path | str,
        readonly: bool = False,
        settings: Settings | None = None,
    ) -> None:
        """
        Initialize the connector.

        Args:
            path: Path to the store file (created on first connect unless readonly)
            readonly: Open in read-only mode
            settings: Optional settings object
        """
        self.path = Path(path)
        self.readonly = readonly
        self.settings = settings
        self._connection: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._tx_depth = 0

    @classmethod
    def from_settings(cls, settings: Settings) -> "SQLiteConnector":
        return cls(settings.database.path, settings=settings)

    @contextmanager
    def connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Get the shared connection, holding the connector lock."""
        with self._lock:
            if self._connection is None:
                self._connection = self._create_connection()
            yield self._connection

    def _create_connection(self) -> sqlite3.Connection:
        """Create a new database connection."""
        if self.readonly:
            if not self.path.exists():
                raise FileNotFoundError(f"Database not found: {self.path}")
            conn = sqlite3.connect(
                f"file:{self.path}?mode=ro",
                uri=True,
                check_same_thread=False,
                timeout=30.0,
                isolation_level=None,
            )
        else:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(
                self.path,
                check_same_thread=False,
                timeout=30.0,
                isolation_level=None,
            )

        conn.row_factory = sqlite3.Row
        if not self.readonly:
            conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA temp_store=MEMORY")
        conn.execute("PRAGMA foreign_keys=ON")

        return conn

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None

    def __enter__(self) -> "SQLiteConnector":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    # =========================================================================
    # Transactions and raw execution
    # =========================================================================

    @property
    def in_transaction(self) -> bool:
        return self._tx_depth > 0

    @contextmanager
    def transaction(
        self, immediate: bool = False
    ) -> Generator[sqlite3.Connection, None, None]:
        """
        Run a block inside a transaction.

        The outermost block issues BEGIN (BEGIN IMMEDIATE when ``immediate``
        to take the write lock up front); nested blocks use savepoints. Any
        exception rolls the block back and propagates.
        """
        self._ensure_writable()
        with self.connection() as conn:
            depth = self._tx_depth
            savepoint = f"sp_{depth}"
            if depth == 0:
                conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            else:
                conn.execute(f"SAVEPOINT {savepoint}")
            self._tx_depth += 1

            try:
                yield conn
            except BaseException:
                if depth == 0:
                    conn.execute("ROLLBACK")
                else:
                    conn.execute(f"ROLLBACK TO {savepoint}")
                    conn.execute(f"RELEASE {savepoint}")
                raise
            else:
                if depth == 0:
                    conn.execute("COMMIT")
                else:
                    conn.execute(f"RELEASE {savepoint}")
            finally:
                self._tx_depth = depth

    def _ensure_writable(self) -> None:
        if self.readonly:
            raise RuntimeError("Cannot execute write operations in read-only mode")

    def execute_sql(self, sql: str, params: Sequence[Any] = ()) -> int:
        """
        Execute a SQL statement and return affected row count.

        Outside a transaction the statement commits on its own.
        """
        self._ensure_writable()
        with self.connection() as conn:
            cursor = conn.execute(sql, params)
            return cursor.rowcount

    def execute_many(self, sql: str, params_list: Iterable[Sequence[Any]]) -> int:
        """Execute a statement for every parameter set in one transaction."""
        with self.transaction() as conn:
            cursor = conn.executemany(sql, params_list)
            return cursor.rowcount

    def query(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        """Run a read query and return rows as dicts."""
        with self.connection() as conn:
            return [dict(row) for row in conn.execute(sql, params)]

    # =========================================================================
    # Introspection
    # =========================================================================

    def get_table_names(self) -> list[str]:
        """Names of all user tables."""
        rows = self.query(
            """
            SELECT name FROM sqlite_master
            WHERE type = 'table' AND name NOT LIKE 'sqlite_%'
            ORDER BY name
            """
        )
        return [row["name"] for row in rows]

    def has_table(self, table: str) -> bool:
        rows = self.query(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?",
            (table,),
        )
        return bool(rows)

    def get_columns(self, table: str) -> list[ColumnInfo]:
        """Get column information for a table."""
        rows = self.query(f"PRAGMA table_info({quote_ident(table)})")
        return [
            ColumnInfo(
                name=row["name"],
                type=row["type"],
                notnull=bool(row["notnull"]),
                default_value=row["dflt_value"],
                is_primary_key=bool(row["pk"]),
            )
            for row in rows
        ]

    def has_column(self, table: str, column: str) -> bool:
        return any(col.name == column for col in self.get_columns(table))

    def get_index_names(self, table: str) -> list[str]:
        """Names of the explicitly created indexes of a table."""
        rows = self.query(
            """
            SELECT name FROM sqlite_master
            WHERE type = 'index' AND tbl_name = ? AND sql IS NOT NULL
            ORDER BY name
            """,
            (table,),
        )
        return [row["name"] for row in rows]

    def get_trigger_names(self, table: str) -> list[str]:
        rows = self.query(
            """
            SELECT name FROM sqlite_master
            WHERE type = 'trigger' AND tbl_name = ?
            ORDER BY name
            """,
            (table,),
        )
        return [row["name"] for row in rows]

    def get_row_count(self, table: str, filter: Filter | None = None) -> int:
        """Get the row count for a table, optionally filtered."""
        where, params = build_where(filter)
        rows = self.query(
            f"SELECT COUNT(*) AS count FROM {quote_ident(table)}{where}", params
        )
        return rows[0]["count"] if rows else 0

    # =========================================================================
    # Schema version and foreign keys
    # =========================================================================

    def get_version(self) -> int:
        """Persisted schema version (0 for a store never stamped)."""
        rows = self.query("PRAGMA user_version")
        return int(rows[0]["user_version"]) if rows else 0

    def set_version(self, version: int) -> None:
        if not isinstance(version, int) or isinstance(version, bool) or version < 0:
            raise ValueError(f"Invalid schema version: {version!r}")
        # PRAGMA does not accept bound parameters
        self.execute_sql(f"PRAGMA user_version = {version}")

    def disable_foreign_keys(self) -> None:
        """Turn foreign-key enforcement off; has no effect inside a transaction."""
        self.execute_sql("PRAGMA foreign_keys = OFF")

    def enable_foreign_keys(self) -> None:
        self.execute_sql("PRAGMA foreign_keys = ON")

    def is_foreign_keys_enabled(self) -> bool:
        rows = self.query("PRAGMA foreign_keys")
        return bool(rows and rows[0]["foreign_keys"])

    # =========================================================================
    # Collection access
    # =========================================================================

    def get_elems_in_coll_by(
        self,
        table: str,
        filter: Filter | None = None,
        sort: Sort | None = None,
        limit: int | None = None,
        projection: Sequence[str] | None = None,
        group_res_by: Sequence[str] | None = None,
        group_fns: Mapping[str, tuple[str, str]] | None = None,
        is_distinct: bool = False,
    ) -> list[dict[str, Any]]:
        """
        Query rows of a collection.

        Args:
            table: Table name
            filter: Filter in the grammar described in the module docstring
            sort: Sequence of (field, direction) with direction 1 or -1
            limit: Maximum rows to return
            projection: Fields to select (None = all)
            group_res_by: Fields to GROUP BY; selected alongside group_fns
            group_fns: Aggregates as {alias: (function, field)}, e.g.
                {"start": ("MIN", "start")}
            is_distinct: SELECT DISTINCT

        Returns:
            List of rows as dicts
        """
        columns = _build_projection(projection, group_res_by, group_fns)
        distinct = "DISTINCT " if is_distinct else ""
        where, params = build_where(filter)

        sql = f"SELECT {distinct}{columns} FROM {quote_ident(table)}{where}"
        if group_res_by:
            sql += " GROUP BY " + ", ".join(quote_ident(f) for f in group_res_by)
        sql += _build_order_by(sort)
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))

        return self.query(sql, params)

    def get_elem_in_coll_by(
        self,
        table: str,
        filter: Filter | None = None,
        sort: Sort | None = None,
    ) -> dict[str, Any] | None:
        """Get the first row matching a filter, or None."""
        rows = self.get_elems_in_coll_by(table, filter=filter, sort=sort, limit=1)
        return rows[0] if rows else None

    def insert_elems_to_db(
        self,
        table: str,
        rows: Sequence[Mapping[str, Any]],
        on_conflict: str | None = "IGNORE",
    ) -> int:
        """
        Insert rows into a table.

        Args:
            table: Target table name
            rows: Rows as dicts; the column list is the union of their keys
            on_conflict: "IGNORE", "REPLACE" or None for a plain INSERT

        Returns:
            Number of inserted rows
        """
        if not rows:
            return 0

        columns: list[str] = []
        for row in rows:
            for key in row:
                if key not in columns:
                    columns.append(key)

        verb = "INSERT"
        if on_conflict:
            if on_conflict.upper() not in ("IGNORE", "REPLACE"):
                raise ValueError(f"Unsupported conflict clause: {on_conflict}")
            verb = f"INSERT OR {on_conflict.upper()}"

        col_str = ", ".join(quote_ident(c) for c in columns)
        placeholders = ", ".join("?" for _ in columns)
        sql = f"{verb} INTO {quote_ident(table)} ({col_str}) VALUES ({placeholders})"

        # rowcount sums direct changes only; ignored rows and trigger writes add 0
        return self.execute_many(
            sql, [[row.get(c) for c in columns] for row in rows]
        )

    def insert_elem_to_db(self, table: str, row: Mapping[str, Any]) -> int:
        """Insert a single row and return its ``_id``."""
        if not row:
            raise ValueError("Cannot insert an empty row")
        col_str = ", ".join(quote_ident(c) for c in row)
        placeholders = ", ".join("?" for _ in row)
        with self.transaction() as conn:
            cursor = conn.execute(
                f"INSERT INTO {quote_ident(table)} ({col_str}) VALUES ({placeholders})",
                list(row.values()),
            )
            return int(cursor.lastrowid)

    def update_elems_in_coll_by(
        self,
        table: str,
        rows: Sequence[Mapping[str, Any]],
        match_fields: Sequence[str],
        update_fields: Sequence[str],
    ) -> int:
        """
        Update many rows, each matched by its own values of ``match_fields``.

        All updates run in one transaction.
        """
        if not rows:
            return 0
        if not match_fields or not update_fields:
            raise ValueError("match_fields and update_fields are required")

        set_sql = ", ".join(f"{quote_ident(f)} = ?" for f in update_fields)
        where_sql = " AND ".join(f"{quote_ident(f)} = ?" for f in match_fields)
        sql = f"UPDATE {quote_ident(table)} SET {set_sql} WHERE {where_sql}"
        params_list = [
            [row.get(f) for f in update_fields] + [row[f] for f in match_fields]
            for row in rows
        ]

        return self.execute_many(sql, params_list)

    def update_coll_by(
        self,
        table: str,
        filter: Filter,
        data: Mapping[str, Any],
    ) -> int:
        """Set ``data`` on every row matching ``filter``."""
        if not data:
            return 0
        set_sql = ", ".join(f"{quote_ident(f)} = ?" for f in data)
        where, params = build_where(filter)
        with self.transaction() as conn:
            cursor = conn.execute(
                f"UPDATE {quote_ident(table)} SET {set_sql}{where}",
                [*data.values(), *params],
            )
            return cursor.rowcount

    def remove_elems_from_db(self, table: str, filter: Filter | None = None) -> int:
        """Delete rows matching ``filter`` (all rows when it is empty)."""
        where, params = build_where(filter)
        with self.transaction() as conn:
            cursor = conn.execute(f"DELETE FROM {quote_ident(table)}{where}", params)
            return cursor.rowcount

    # =========================================================================
    # Whole-store operations
    # =========================================================================

    def is_empty(self) -> bool:
        return not self.get_table_names()

    def clear_all_tables(self, exclude: Iterable[str] = ()) -> list[str]:
        """
        Delete every row of every table except ``exclude``.

        Foreign keys stay enforced; every reference cascades on delete.
        """
        excluded = set(exclude)
        tables = [t for t in self.get_table_names() if t not in excluded]

        with self.transaction() as conn:
            for table in tables:
                conn.execute(f"DELETE FROM {quote_ident(table)}")

        logger.info("Cleared %d tables", len(tables))
        return tables

    def drop_all_tables(self) -> list[str]:
        """Drop every table (indexes and triggers go with them) and reset the version."""
        tables = self.get_table_names()

        with self.transaction() as conn:
            for table in tables:
                conn.execute(drop_table(table))
        self.set_version(0)

        logger.info("Dropped %d tables", len(tables))
        return tables

    def backup_to(self, dest: Path | str) -> Path:
        """Copy the store to ``dest`` with the online backup API."""
        dest = Path(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        with self.connection() as conn:
            target = sqlite3.connect(dest)
            try:
                conn.backup(target)
            finally:
                target.close()
        return dest

    def restore_from(self, src: Path | str) -> None:
        """Replace the store content with the content of ``src``."""
        self._ensure_writable()
        src = Path(src)
        if not src.exists():
            raise FileNotFoundError(f"Backup not found: {src}")
        with self.connection() as conn:
            source = sqlite3.connect(src)
            try:
                source.backup(conn)
            finally:
                source.close()


# =============================================================================
# SQL building
# =============================================================================

def _build_projection(
    projection: Sequence[str] | None,
    group_res_by: Sequence[str] | None,
    group_fns: Mapping[str, tuple[str, str]] | None,
) -> str:
    parts: list[str] = []
    if group_res_by or group_fns:
        parts.extend(quote_ident(f) for f in (group_res_by or ()))
        for alias, (fn, field) in (group_fns or {}).items():
            fn = fn.upper()
            if fn not in _GROUP_FUNCTIONS:
                raise ValueError(f"Unsupported group function: {fn}")
            target = "*" if field == "*" else quote_ident(field)
            parts.append(f"{fn}({target}) AS {quote_ident(alias)}")
        return ", ".join(parts)
    if projection:
        return ", ".join(quote_ident(f) for f in projection)
    return "*"


def _build_order_by(sort: Sort | None) -> str:
    if not sort:
        return ""
    terms = []
    for field, direction in sort:
        if direction not in (1, -1):
            raise ValueError(f"Sort direction must be 1 or -1, got {direction!r}")
        terms.append(f"{quote_ident(field)} {'ASC' if direction == 1 else 'DESC'}")
    return " ORDER BY " + ", ".join(terms)


def _equality(field: str, value: Any, params: list[Any]) -> str:
    col = quote_ident(field)
    if value is None:
        return f"{col} IS NULL"
    if isinstance(value, (list, tuple, set, frozenset)):
        return _membership(field, value, params, negate=False)
    params.append(value)
    return f"{col} = ?"


def _membership(
    field: str, values: Iterable[Any], params: list[Any], negate: bool
) -> str:
    values = list(values)
    if not values:
        # IN () matches nothing, NOT IN () matches everything
        return "1" if negate else "0"
    params.extend(values)
    placeholders = ", ".join("?" for _ in values)
    return f"{quote_ident(field)} {'NOT IN' if negate else 'IN'} ({placeholders})"


def _fields_of(value: Any) -> list[str]:
    if isinstance(value, str):
        return [value]
    return list(value)


def build_where(filter: Filter | None) -> tuple[str, list[Any]]:
    """Compile a filter into a WHERE clause and its parameters."""
    if not filter:
        return "", []

    terms: list[str] = []
    params: list[Any] = []

    for key, value in filter.items():
        if not key.startswith("$"):
            terms.append(_equality(key, value, params))
        elif key == "$eq":
            terms.extend(_equality(f, v, params) for f, v in value.items())
        elif key == "$ne":
            for field, v in value.items():
                if v is None:
                    terms.append(f"{quote_ident(field)} IS NOT NULL")
                else:
                    params.append(v)
                    terms.append(f"{quote_ident(field)} != ?")
        elif key in _COMPARISON_OPERATORS:
            op = _COMPARISON_OPERATORS[key]
            for field, v in value.items():
                params.append(v)
                terms.append(f"{quote_ident(field)} {op} ?")
        elif key == "$in":
            terms.extend(
                _membership(f, v, params, negate=False) for f, v in value.items()
            )
        elif key in ("$nin", "$not"):
            for field, v in value.items():
                if key == "$not" and not isinstance(v, (list, tuple, set, frozenset)):
                    params.append(v)
                    terms.append(f"{quote_ident(field)} != ?")
                else:
                    terms.append(_membership(field, v, params, negate=True))
        elif key == "$isNull":
            terms.extend(f"{quote_ident(f)} IS NULL" for f in _fields_of(value))
        elif key == "$isNotNull":
            terms.extend(f"{quote_ident(f)} IS NOT NULL" for f in _fields_of(value))
        else:
            raise ValueError(f"Unsupported filter operator: {key}")

    if not terms:
        return "", params
    return " WHERE " + " AND ".join(terms), params
