# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Table base class with Columns-based schema (async version)."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from .column import Columns

if TYPE_CHECKING:
    from .sqldb import SqlDb


class Table:
    """Base class for async table managers.

    Subclasses define columns via configure() hook and implement
    domain-specific operations on top of the raw query helpers.

    Attributes:
        name: Table name in database.
        db: SqlDb instance reference.
        columns: Column definitions.
    """

    name: str
    indexes: tuple[tuple[str, str], ...] = ()

    def __init__(self, db: SqlDb) -> None:
        self.db = db
        if not hasattr(self, "name") or not self.name:
            raise ValueError(f"{type(self).__name__} must define 'name'")

        self.columns = Columns()
        self.configure()

    def configure(self) -> None:
        """Override to define columns. Called during __init__."""
        pass

    # -------------------------------------------------------------------------
    # Schema
    # -------------------------------------------------------------------------

    def create_table_sql(self) -> str:
        """Generate CREATE TABLE IF NOT EXISTS statement."""
        col_defs = []
        for col in self.columns.values():
            if col.primary_key and col.type_ == "INTEGER":
                col_defs.append(self.db.adapter.pk_column(col.name))
            else:
                col_defs.append(col.to_sql())
        return f"CREATE TABLE IF NOT EXISTS {self.name} (\n    " + ",\n    ".join(col_defs) + "\n)"

    def create_indexes_sql(self) -> list[str]:
        return [
            f"CREATE INDEX IF NOT EXISTS {index_name} ON {self.name} ({cols})"
            for index_name, cols in self.indexes
        ]

    async def create_schema(self) -> None:
        """Create table and its indexes if not exists."""
        await self.db.adapter.execute(self.create_table_sql())
        for statement in self.create_indexes_sql():
            await self.db.adapter.execute(statement)

    async def sync_schema(self) -> None:
        """Add any column defined in configure() that the stored table lacks.

        Safe to call on every startup: existing columns are left untouched.
        """
        existing = {
            row["name"]
            for row in await self.db.adapter.fetch_all(f"PRAGMA table_info({self.name})")
        }
        for col in self.columns.values():
            if col.primary_key or col.name in existing:
                continue
            await self.db.adapter.execute(
                f"ALTER TABLE {self.name} ADD COLUMN {col.to_sql(for_alter=True)}"
            )

    # -------------------------------------------------------------------------
    # JSON Encoding/Decoding
    # -------------------------------------------------------------------------

    def _encode_json_fields(self, data: dict[str, Any]) -> dict[str, Any]:
        """Encode JSON fields for storage."""
        result = dict(data)
        for col_name in self.columns.json_columns():
            if col_name in result and result[col_name] is not None:
                result[col_name] = json.dumps(result[col_name])
        return result

    def _decode_json_fields(self, row: dict[str, Any]) -> dict[str, Any]:
        """Decode JSON fields from storage."""
        result = dict(row)
        for col_name in self.columns.json_columns():
            if col_name in result and result[col_name] is not None:
                result[col_name] = json.loads(result[col_name])
        return result

    def _decode_rows(self, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Decode JSON fields in multiple rows."""
        return [self._decode_json_fields(row) for row in rows]

    # -------------------------------------------------------------------------
    # CRUD Operations
    # -------------------------------------------------------------------------

    async def insert(self, data: dict[str, Any]) -> int:
        """Insert a row, return its primary key."""
        encoded = self._encode_json_fields(data)
        cols = ", ".join(f'"{k}"' for k in encoded)
        placeholders = ", ".join(f":{k}" for k in encoded)
        query = f"INSERT INTO {self.name} ({cols}) VALUES ({placeholders})"
        return await self.db.adapter.insert(query, encoded)

    async def select_one(self, where: dict[str, Any]) -> dict[str, Any] | None:
        """Select single row matching all the equality conditions."""
        conditions = " AND ".join(f'"{k}" = :{k}' for k in where)
        row = await self.db.adapter.fetch_one(
            f"SELECT * FROM {self.name} WHERE {conditions}", where
        )
        return self._decode_json_fields(row) if row else None

    async def update(self, values: dict[str, Any], where: dict[str, Any]) -> int:
        """Update rows matching ``where``, return the affected row count."""
        encoded = self._encode_json_fields(values)
        assignments = ", ".join(f'"{k}" = :set_{k}' for k in encoded)
        conditions = " AND ".join(f'"{k}" = :where_{k}' for k in where)
        params = {f"set_{k}": v for k, v in encoded.items()}
        params.update({f"where_{k}": v for k, v in where.items()})
        return await self.db.adapter.execute(
            f"UPDATE {self.name} SET {assignments} WHERE {conditions}", params
        )

    async def delete(self, where: dict[str, Any]) -> int:
        """Delete rows matching ``where``, return the affected row count."""
        conditions = " AND ".join(f'"{k}" = :{k}' for k in where)
        return await self.db.adapter.execute(f"DELETE FROM {self.name} WHERE {conditions}", where)

    # -------------------------------------------------------------------------
    # Raw Query
    # -------------------------------------------------------------------------

    async def fetch_all(
        self, query: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """Execute raw query, return all rows."""
        rows = await self.db.adapter.fetch_all(query, params)
        return self._decode_rows(rows)

    async def execute(
        self, query: str, params: dict[str, Any] | None = None
    ) -> int:
        """Execute raw query, return affected row count."""
        return await self.db.adapter.execute(query, params)


__all__ = ["Table"]
