# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Queue entries table manager."""

from __future__ import annotations

from typing import Any

from ..models import QueueStatus, ensure_transition
from ..sql import Integer, String, Table

_ENTRY_ORDER = "priority ASC, created_ts ASC, id ASC"


class QueueEntriesTable(Table):
    """Queue entries table: one row per outbound message.

    Fields:
    - id: Autoincrement primary key, immutable
    - recipient, cc, bcc: Addresses (cc/bcc JSON-encoded lists)
    - priority: Rank 0=urgent, 1=high, 2=normal, 3=low
    - status: pending, sending, sent, failed, cancelled
    - scheduled_ts: Earliest delivery time (epoch seconds)
    - attempts / max_attempts: Attempt counter and its ceiling
    - created_ts, updated_ts, sent_ts: Epoch seconds

    Every status change is a conditional UPDATE guarded by the expected
    source status, so concurrent writers cannot both win.
    """

    name = "queue_entries"
    indexes = (
        ("idx_queue_entries_due", "status, scheduled_ts, priority, created_ts"),
        ("idx_queue_entries_created", "created_ts"),
    )

    def configure(self) -> None:
        c = self.columns
        c.column("id", Integer, primary_key=True)
        c.column("recipient", String, nullable=False)
        c.column("cc", String, json_encoded=True)
        c.column("bcc", String, json_encoded=True)
        c.column("subject", String, nullable=False)
        c.column("html_body", String)
        c.column("text_body", String)
        c.column("template_id", Integer)
        c.column("priority", Integer, nullable=False, default=2)
        c.column("status", String, nullable=False, default="pending")
        c.column("scheduled_ts", Integer, nullable=False)
        c.column("attempts", Integer, nullable=False, default=0)
        c.column("max_attempts", Integer, nullable=False, default=3)
        c.column("error_message", String)
        c.column("metadata", String, json_encoded=True)
        c.column("created_ts", Integer, nullable=False)
        c.column("updated_ts", Integer, nullable=False)
        c.column("sent_ts", Integer)

    async def add(self, record: dict[str, Any]) -> int:
        """Insert a new pending entry and return its id."""
        return await self.insert(record)

    async def get(self, entry_id: int) -> dict[str, Any] | None:
        return await self.select_one({"id": entry_id})

    async def fetch_due(self, *, now_ts: int, limit: int) -> list[dict[str, Any]]:
        """Pending entries eligible for delivery, highest priority and oldest first."""
        return await self.fetch_all(
            f"""
            SELECT * FROM queue_entries
            WHERE status = :pending
              AND attempts < max_attempts
              AND scheduled_ts <= :now_ts
            ORDER BY {_ENTRY_ORDER}
            LIMIT :limit
            """,
            {"pending": QueueStatus.PENDING.value, "now_ts": now_ts, "limit": limit},
        )

    async def _transition(
        self,
        entry_id: int,
        source: QueueStatus,
        target: QueueStatus,
        assignments: str,
        params: dict[str, Any],
        extra_condition: str = "",
    ) -> bool:
        """Move one entry from source to target; False if it was not in source."""
        ensure_transition(source, target)
        query = f"""
            UPDATE queue_entries
            SET status = :target, {assignments}
            WHERE id = :entry_id AND status = :source {extra_condition}
        """
        rowcount = await self.execute(
            query,
            {
                **params,
                "entry_id": entry_id,
                "source": source.value,
                "target": target.value,
            },
        )
        return rowcount == 1

    async def claim(self, entry_id: int, now_ts: int) -> bool:
        """pending -> sending, counting the attempt."""
        return await self._transition(
            entry_id,
            QueueStatus.PENDING,
            QueueStatus.SENDING,
            "attempts = attempts + 1, updated_ts = :now_ts",
            {"now_ts": now_ts},
            "AND attempts < max_attempts",
        )

    async def mark_sent(self, entry_id: int, now_ts: int) -> bool:
        return await self._transition(
            entry_id,
            QueueStatus.SENDING,
            QueueStatus.SENT,
            "sent_ts = :now_ts, error_message = NULL, updated_ts = :now_ts",
            {"now_ts": now_ts},
        )

    async def mark_failed(self, entry_id: int, error: str, now_ts: int) -> bool:
        return await self._transition(
            entry_id,
            QueueStatus.SENDING,
            QueueStatus.FAILED,
            "error_message = :error, updated_ts = :now_ts",
            {"error": error, "now_ts": now_ts},
        )

    async def reschedule(self, entry_id: int, error: str, retry_ts: int, now_ts: int) -> bool:
        """sending -> pending with the error recorded; scheduled_ts never moves back."""
        return await self._transition(
            entry_id,
            QueueStatus.SENDING,
            QueueStatus.PENDING,
            "error_message = :error, scheduled_ts = MAX(scheduled_ts, :retry_ts), "
            "updated_ts = :now_ts",
            {"error": error, "retry_ts": retry_ts, "now_ts": now_ts},
        )

    async def cancel(self, entry_id: int, now_ts: int) -> bool:
        return await self._transition(
            entry_id,
            QueueStatus.PENDING,
            QueueStatus.CANCELLED,
            "updated_ts = :now_ts",
            {"now_ts": now_ts},
        )

    async def reset_for_retry(self, entry_id: int, now_ts: int) -> bool:
        """failed -> pending with a fresh attempt budget, due immediately."""
        return await self._transition(
            entry_id,
            QueueStatus.FAILED,
            QueueStatus.PENDING,
            "attempts = 0, error_message = NULL, scheduled_ts = :now_ts, updated_ts = :now_ts",
            {"now_ts": now_ts},
        )

    async def fetch_stale(self, cutoff_ts: int) -> list[dict[str, Any]]:
        """Entries stuck in sending since before cutoff_ts."""
        return await self.fetch_all(
            "SELECT * FROM queue_entries WHERE status = :sending AND updated_ts <= :cutoff_ts "
            "ORDER BY id ASC",
            {"sending": QueueStatus.SENDING.value, "cutoff_ts": cutoff_ts},
        )

    async def count_by_status(self) -> dict[str, int]:
        """Counts per status in one aggregate query."""
        rows = await self.db.adapter.fetch_all(
            "SELECT status, COUNT(*) AS cnt FROM queue_entries GROUP BY status"
        )
        return {row["status"]: int(row["cnt"]) for row in rows}

    async def count_pending(self) -> int:
        row = await self.db.adapter.fetch_one(
            "SELECT COUNT(*) AS cnt FROM queue_entries WHERE status = :pending",
            {"pending": QueueStatus.PENDING.value},
        )
        return int(row["cnt"]) if row else 0

    async def list_page(
        self,
        *,
        status: str | None = None,
        priority: int | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        """Newest first, optionally filtered by status and priority rank."""
        conditions: list[str] = []
        params: dict[str, Any] = {"limit": limit, "offset": offset}
        if status is not None:
            conditions.append("status = :status")
            params["status"] = status
        if priority is not None:
            conditions.append("priority = :priority")
            params["priority"] = priority
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        return await self.fetch_all(
            f"""
            SELECT * FROM queue_entries
            {where}
            ORDER BY created_ts DESC, id DESC
            LIMIT :limit OFFSET :offset
            """,
            params,
        )


__all__ = ["QueueEntriesTable"]
