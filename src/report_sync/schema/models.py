"""
Typed collection schema descriptors.

A ``Model`` describes one table of the local store: its columns, unique and
secondary indexes (optionally partial), foreign keys and row triggers. Models
are validated once when constructed, so DDL generation can rely on every
referenced column existing.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Literal, Self

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
ID_FIELD_NAME = "_id"


def is_identifier(name: str) -> bool:
    """Check that a name is safe to use as a SQL identifier."""
    return bool(IDENTIFIER_RE.match(name))


class ColumnType(str, Enum):
    """Semantic column types; the DDL builder maps them to a dialect."""

    ID = "id"
    INTEGER = "integer"
    BIGINT = "bigint"
    DECIMAL = "decimal"
    VARCHAR = "varchar"
    TEXT = "text"
    JSON = "json"
    BOOLEAN = "boolean"
    TIMESTAMP = "timestamp"


class _Descriptor(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class Column(_Descriptor):
    """A single table column."""

    type: ColumnType
    not_null: bool = False


class NullCheck(_Descriptor):
    """``column IS NULL`` / ``column IS NOT NULL`` term of a partial index."""

    column: str
    is_null: bool = False


class Index(_Descriptor):
    """Index over one or more fields, optionally restricted to matching rows."""

    fields: tuple[str, ...] = Field(min_length=1)
    where: tuple[NullCheck, ...] = ()
    name: str | None = None

    def get_name(self, table: str) -> str:
        return self.name or f"{table}_{'_'.join(self.fields)}"


class ForeignKey(_Descriptor):
    """Foreign-key style constraint."""

    name: str
    column: str
    ref_table: str
    ref_column: str = ID_FIELD_NAME
    on_update: Literal["CASCADE", "SET NULL", "RESTRICT", "NO ACTION"] = "CASCADE"
    on_delete: Literal["CASCADE", "SET NULL", "RESTRICT", "NO ACTION"] = "CASCADE"


class Trigger(_Descriptor):
    """
    Row-level trigger.

    ``name`` and ``statement`` are templates formatted with ``table``; the
    statement is the trigger body without the surrounding BEGIN/END.
    """

    name: str
    timing: Literal["BEFORE", "AFTER"] = "AFTER"
    event: Literal["INSERT", "UPDATE", "DELETE"]
    statement: str

    def get_name(self, table: str) -> str:
        return self.name.format(table=table)

    def get_statement(self, table: str) -> str:
        return self.statement.format(table=table)


class Model(_Descriptor):
    """
    Schema of one collection.

    Example:
        model = Model(
            name="symbols",
            columns={"_id": Column(type=ColumnType.ID), "pairs": Column(type=ColumnType.VARCHAR)},
            unique_indexes=(Index(fields=("pairs",)),),
        )
    """

    name: str
    columns: dict[str, Column]
    unique_indexes: tuple[Index, ...] = ()
    indexes: tuple[Index, ...] = ()
    foreign_keys: tuple[ForeignKey, ...] = ()
    triggers: tuple[Trigger, ...] = ()

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not is_identifier(v):
            raise ValueError(f"Invalid table name: {v!r}")
        return v

    @model_validator(mode="after")
    def validate_references(self) -> Self:
        """Every index, constraint and predicate must reference known columns."""
        for column_name in self.columns:
            if not is_identifier(column_name):
                raise ValueError(f"{self.name}: invalid column name {column_name!r}")

        id_columns = [
            name for name, col in self.columns.items()
            if col.type == ColumnType.ID
        ]
        if id_columns != [ID_FIELD_NAME]:
            raise ValueError(
                f"{self.name}: exactly one '{ID_FIELD_NAME}' primary key is required"
            )

        for index in (*self.unique_indexes, *self.indexes):
            referenced = [*index.fields, *(check.column for check in index.where)]
            self._check_columns(referenced, "index")
            if not is_identifier(index.get_name(self.name)):
                raise ValueError(f"{self.name}: invalid index name")

        for fk in self.foreign_keys:
            self._check_columns([fk.column], f"foreign key {fk.name}")
            if not (is_identifier(fk.ref_table) and is_identifier(fk.ref_column)):
                raise ValueError(f"{self.name}: invalid foreign key reference")

        for trigger in self.triggers:
            if not is_identifier(trigger.get_name(self.name)):
                raise ValueError(f"{self.name}: invalid trigger name")

        return self

    def _check_columns(self, names: list[str], where: str) -> None:
        unknown = [name for name in names if name not in self.columns]
        if unknown:
            raise ValueError(
                f"{self.name}: {where} references unknown columns {unknown}"
            )

    @property
    def column_names(self) -> list[str]:
        return list(self.columns)

    def has_column(self, name: str) -> bool:
        return name in self.columns
