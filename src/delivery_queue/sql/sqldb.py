# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Database manager holding an adapter and a registry of table managers."""

from __future__ import annotations

from .base import DbAdapter
from .table import Table


def create_adapter(connection_string: str) -> DbAdapter:
    """Build the adapter matching a connection string.

    Formats:
        - "/path/to/db.sqlite" - SQLite file
        - "sqlite:/path/to/db" - SQLite explicit
    """
    from .sqlite import SqliteAdapter

    if connection_string.startswith("sqlite:"):
        return SqliteAdapter(connection_string[len("sqlite:"):])
    if "://" in connection_string:
        raise ValueError(f"Unsupported database connection string: {connection_string}")
    return SqliteAdapter(connection_string)


class SqlDb:
    """Async database manager with table registration.

    Tables are registered once with :meth:`add_table` and looked up by name.
    """

    def __init__(self, connection_string: str):
        self.connection_string = connection_string
        self.adapter = create_adapter(connection_string)
        self.tables: dict[str, Table] = {}

    def add_table(self, table_class: type[Table]) -> Table:
        table = table_class(self)
        self.tables[table.name] = table
        return table

    def table(self, name: str) -> Table:
        if name not in self.tables:
            raise KeyError(f"Table '{name}' not registered")
        return self.tables[name]

    async def connect(self) -> None:
        await self.adapter.connect()

    async def check_structure(self) -> None:
        """Create every registered table, then add columns missing from older files."""
        for table in self.tables.values():
            await table.create_schema()
        for table in self.tables.values():
            await table.sync_schema()


__all__ = ["SqlDb", "create_adapter"]
