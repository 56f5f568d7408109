# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SQLite async adapter using aiosqlite."""

from __future__ import annotations

import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import aiosqlite

from ..errors import StoreUnavailableError
from .base import DbAdapter


class SqliteAdapter(DbAdapter):
    """SQLite async adapter. Opens connection per-operation for thread safety.

    Operational failures (missing directory, locked or corrupt file, I/O
    errors) surface as :class:`StoreUnavailableError`.
    """

    def __init__(self, db_path: str, timeout: float = 5.0):
        """Initialize SQLite adapter.

        Args:
            db_path: Path to the SQLite file.
            timeout: Seconds to wait on a locked database before giving up.
        """
        self.db_path = db_path
        self.timeout = timeout

    async def connect(self) -> None:
        """SQLite connections are opened per-operation, this is a no-op."""
        pass

    async def close(self) -> None:
        """SQLite connections are closed per-operation, this is a no-op."""
        pass

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[aiosqlite.Connection]:
        try:
            async with aiosqlite.connect(self.db_path, timeout=self.timeout) as db:
                yield db
        except (sqlite3.OperationalError, OSError) as exc:
            raise StoreUnavailableError(f"database {self.db_path} unavailable: {exc}") from exc

    async def execute(self, query: str, params: dict[str, Any] | None = None) -> int:
        """Execute query, return affected row count."""
        async with self._connection() as db:
            cursor = await db.execute(query, params or {})
            await db.commit()
            return cursor.rowcount

    async def insert(self, query: str, params: dict[str, Any] | None = None) -> int:
        """Execute an INSERT, return the rowid of the new row."""
        async with self._connection() as db:
            cursor = await db.execute(query, params or {})
            await db.commit()
            return int(cursor.lastrowid)

    async def fetch_one(
        self, query: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any] | None:
        """Execute query, return single row as dict or None."""
        async with self._connection() as db:
            async with db.execute(query, params or {}) as cursor:
                row = await cursor.fetchone()
                if row is None:
                    return None
                cols = [c[0] for c in cursor.description]
                return dict(zip(cols, row, strict=True))

    async def fetch_all(
        self, query: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """Execute query, return all rows as list of dicts."""
        async with self._connection() as db:
            async with db.execute(query, params or {}) as cursor:
                rows = await cursor.fetchall()
                cols = [c[0] for c in cursor.description]
                return [dict(zip(cols, row, strict=True)) for row in rows]
