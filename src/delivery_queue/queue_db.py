# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Delivery queue database manager with pre-registered tables.

Example:
    db = QueueDb("/data/delivery_queue.db")
    await db.init_db()

    entry_id = await db.entries.add({...})
    due = await db.entries.fetch_due(now_ts=int(time.time()), limit=50)
"""

from __future__ import annotations

from .sql import SqlDb
from .tables import (
    DeliveryLogTable,
    InstanceConfigTable,
    ProcessingLeaseTable,
    QueueEntriesTable,
    TemplatesTable,
)


class QueueDb(SqlDb):
    """Queue database with pre-registered tables."""

    def __init__(self, connection_string: str = "/data/delivery_queue.db"):
        """Initialize the queue database.

        Args:
            connection_string: Database connection string. Formats:
                - "/path/to/db.sqlite" - SQLite file
                - "sqlite:/path/to/db" - SQLite explicit
        """
        super().__init__(connection_string)
        self.add_table(QueueEntriesTable)
        self.add_table(DeliveryLogTable)
        self.add_table(TemplatesTable)
        self.add_table(InstanceConfigTable)
        self.add_table(ProcessingLeaseTable)

    @property
    def entries(self) -> QueueEntriesTable:
        return self.table("queue_entries")  # type: ignore[return-value]

    @property
    def delivery_log(self) -> DeliveryLogTable:
        return self.table("delivery_log")  # type: ignore[return-value]

    @property
    def templates(self) -> TemplatesTable:
        return self.table("email_templates")  # type: ignore[return-value]

    @property
    def config(self) -> InstanceConfigTable:
        return self.table("instance_config")  # type: ignore[return-value]

    @property
    def lease(self) -> ProcessingLeaseTable:
        return self.table("processing_lease")  # type: ignore[return-value]

    async def init_db(self) -> None:
        """Initialize database: connect, create tables and indexes, add missing columns."""
        await self.connect()
        await self.check_structure()


__all__ = ["QueueDb"]
