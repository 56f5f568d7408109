# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Column definitions used by table managers to describe their schema."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

Integer = "INTEGER"
String = "TEXT"


@dataclass
class Column:
    """A single column of a table."""

    name: str
    type_: str
    primary_key: bool = False
    nullable: bool = True
    default: Any = None
    json_encoded: bool = False

    def to_sql(self, *, for_alter: bool = False) -> str:
        """Render the column definition for CREATE or ALTER TABLE.

        SQLite cannot add a NOT NULL column without a default to an existing
        table, so ``for_alter`` drops that constraint in that case.
        """
        parts = [f'"{self.name}"', self.type_]
        if self.primary_key:
            parts.append("PRIMARY KEY")
        if not self.nullable and not (for_alter and self.default is None):
            parts.append("NOT NULL")
        if self.default is not None:
            if isinstance(self.default, str):
                parts.append(f"DEFAULT '{self.default}'")
            else:
                parts.append(f"DEFAULT {self.default}")
        return " ".join(parts)


class Columns:
    """Ordered collection of :class:`Column` definitions."""

    def __init__(self) -> None:
        self._columns: dict[str, Column] = {}

    def column(self, name: str, type_: str, **kwargs: Any) -> Column:
        col = Column(name, type_, **kwargs)
        self._columns[name] = col
        return col

    def values(self) -> Iterator[Column]:
        return iter(self._columns.values())

    def json_columns(self) -> list[str]:
        return [c.name for c in self._columns.values() if c.json_encoded]


__all__ = ["Column", "Columns", "Integer", "String"]
