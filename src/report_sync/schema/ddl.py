"""
SQLite DDL builder.

Turns typed ``Model`` descriptors into SQL statements. Identifiers are
validated and quoted here; nothing outside this module assembles DDL.
"""

from __future__ import annotations

from report_sync.schema.models import (
    Column,
    ColumnType,
    Index,
    Model,
    NullCheck,
    Trigger,
    is_identifier,
)


SQL_TYPES: dict[ColumnType, str] = {
    ColumnType.ID: "INTEGER PRIMARY KEY AUTOINCREMENT",
    ColumnType.INTEGER: "INT",
    ColumnType.BIGINT: "BIGINT",
    ColumnType.DECIMAL: "DECIMAL(22,12)",
    ColumnType.VARCHAR: "VARCHAR(255)",
    ColumnType.TEXT: "TEXT",
    ColumnType.JSON: "TEXT",
    ColumnType.BOOLEAN: "INT",
    ColumnType.TIMESTAMP: "BIGINT",
}


def quote_ident(name: str) -> str:
    """Quote a SQL identifier, refusing anything that is not a plain name."""
    if not is_identifier(name):
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return f'"{name}"'


def column_definition(name: str, column: Column) -> str:
    sql = f"{quote_ident(name)} {SQL_TYPES[column.type]}"
    if column.not_null and column.type != ColumnType.ID:
        sql += " NOT NULL"
    return sql


def _where_clause(where: tuple[NullCheck, ...]) -> str:
    if not where:
        return ""
    terms = [
        f"{quote_ident(check.column)} IS {'NULL' if check.is_null else 'NOT NULL'}"
        for check in where
    ]
    return " WHERE " + " AND ".join(terms)


def create_table(model: Model, if_not_exists: bool = True) -> str:
    """Build the CREATE TABLE statement of a model, constraints included."""
    condition = " IF NOT EXISTS" if if_not_exists else ""
    parts = [
        column_definition(name, column)
        for name, column in model.columns.items()
    ]
    for fk in model.foreign_keys:
        parts.append(
            f"CONSTRAINT {quote_ident(fk.name)} "
            f"FOREIGN KEY ({quote_ident(fk.column)}) "
            f"REFERENCES {quote_ident(fk.ref_table)}({quote_ident(fk.ref_column)}) "
            f"ON UPDATE {fk.on_update} ON DELETE {fk.on_delete}"
        )

    body = ",\n  ".join(parts)
    return f"CREATE TABLE{condition} {quote_ident(model.name)} (\n  {body}\n)"


def create_index(
    table: str,
    index: Index,
    unique: bool = False,
    if_not_exists: bool = True,
) -> str:
    unique_sql = " UNIQUE" if unique else ""
    condition = " IF NOT EXISTS" if if_not_exists else ""
    fields = ", ".join(quote_ident(field) for field in index.fields)
    return (
        f"CREATE{unique_sql} INDEX{condition} {quote_ident(index.get_name(table))} "
        f"ON {quote_ident(table)}({fields}){_where_clause(index.where)}"
    )


def create_indexes(model: Model, if_not_exists: bool = True) -> list[str]:
    """Build unique indexes first, then secondary indexes."""
    return [
        *(
            create_index(model.name, index, unique=True, if_not_exists=if_not_exists)
            for index in model.unique_indexes
        ),
        *(
            create_index(model.name, index, if_not_exists=if_not_exists)
            for index in model.indexes
        ),
    ]


def create_trigger(table: str, trigger: Trigger, if_not_exists: bool = True) -> str:
    condition = " IF NOT EXISTS" if if_not_exists else ""
    return (
        f"CREATE TRIGGER{condition} {quote_ident(trigger.get_name(table))}\n"
        f"  {trigger.timing} {trigger.event} ON {quote_ident(table)}\n"
        f"  FOR EACH ROW\n"
        f"  BEGIN\n"
        f"    {trigger.get_statement(table)};\n"
        f"  END"
    )


def create_triggers(model: Model, if_not_exists: bool = True) -> list[str]:
    return [
        create_trigger(model.name, trigger, if_not_exists=if_not_exists)
        for trigger in model.triggers
    ]


def create_model(model: Model, if_not_exists: bool = True) -> list[str]:
    """All statements needed to create a model from scratch."""
    return [
        create_table(model, if_not_exists=if_not_exists),
        *create_indexes(model, if_not_exists=if_not_exists),
        *create_triggers(model, if_not_exists=if_not_exists),
    ]


def add_column(table: str, name: str, column: Column) -> str:
    """
    Build an ALTER TABLE ... ADD COLUMN statement.

    SQLite has no ``ADD COLUMN IF NOT EXISTS``; callers guard with
    ``SQLiteConnector.has_column``.
    """
    return f"ALTER TABLE {quote_ident(table)} ADD COLUMN {column_definition(name, column)}"


def drop_index(name: str, if_exists: bool = True) -> str:
    condition = " IF EXISTS" if if_exists else ""
    return f"DROP INDEX{condition} {quote_ident(name)}"


def drop_table(name: str, if_exists: bool = True) -> str:
    condition = " IF EXISTS" if if_exists else ""
    return f"DROP TABLE{condition} {quote_ident(name)}"
