# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Delivery log table manager."""

from __future__ import annotations

from typing import Any

from ..sql import Integer, String, Table


class DeliveryLogTable(Table):
    """Delivery log: one row per terminal outcome (sent or failed).

    Rows are only ever inserted, and deleted by retention pruning.
    """

    name = "delivery_log"
    indexes = (
        ("idx_delivery_log_entry", "entry_id"),
        ("idx_delivery_log_created", "created_ts"),
    )

    def configure(self) -> None:
        c = self.columns
        c.column("id", Integer, primary_key=True)
        c.column("entry_id", Integer, nullable=False)
        c.column("outcome", String, nullable=False)
        c.column("recipient", String, nullable=False)
        c.column("subject", String)
        c.column("template_id", Integer)
        c.column("attempts", Integer, nullable=False, default=0)
        c.column("error_message", String)
        c.column("created_ts", Integer, nullable=False)

    async def append(
        self,
        *,
        entry_id: int,
        outcome: str,
        recipient: str,
        subject: str | None,
        template_id: int | None,
        attempts: int,
        error_message: str | None,
        created_ts: int,
    ) -> int:
        """Record a terminal outcome."""
        return await self.insert(
            {
                "entry_id": entry_id,
                "outcome": outcome,
                "recipient": recipient,
                "subject": subject,
                "template_id": template_id,
                "attempts": attempts,
                "error_message": error_message,
                "created_ts": created_ts,
            }
        )

    async def list_for_entry(self, entry_id: int) -> list[dict[str, Any]]:
        return await self.fetch_all(
            "SELECT * FROM delivery_log WHERE entry_id = :entry_id ORDER BY id ASC",
            {"entry_id": entry_id},
        )

    async def list_all(self) -> list[dict[str, Any]]:
        return await self.fetch_all("SELECT * FROM delivery_log ORDER BY id ASC")

    async def delete_before(self, cutoff_ts: int) -> int:
        """Delete records created before cutoff_ts. Returns deleted count."""
        return await self.execute(
            "DELETE FROM delivery_log WHERE created_ts < :cutoff_ts",
            {"cutoff_ts": cutoff_ts},
        )


__all__ = ["DeliveryLogTable"]
