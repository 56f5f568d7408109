# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Store-level processing lease.

One row per lease name. A holder owns the lease until it releases it or
until ``expires_ts`` passes, after which any other holder may take it over.
This keeps ticks mutually exclusive across processes sharing the database.
"""

from __future__ import annotations

from ..sql import Integer, String, Table


class ProcessingLeaseTable(Table):
    name = "processing_lease"

    def configure(self) -> None:
        c = self.columns
        c.column("name", String, primary_key=True)
        c.column("holder", String)
        c.column("expires_ts", Integer)

    async def acquire(self, name: str, holder: str, now_ts: int, ttl: int) -> bool:
        """Take the lease if free, expired, or already ours."""
        rowcount = await self.execute(
            """
            INSERT INTO processing_lease (name, holder, expires_ts)
            VALUES (:name, :holder, :expires_ts)
            ON CONFLICT(name) DO UPDATE SET
                holder = excluded.holder,
                expires_ts = excluded.expires_ts
            WHERE processing_lease.holder IS NULL
               OR processing_lease.expires_ts <= :now_ts
               OR processing_lease.holder = excluded.holder
            """,
            {"name": name, "holder": holder, "expires_ts": now_ts + ttl, "now_ts": now_ts},
        )
        return rowcount == 1

    async def renew(self, name: str, holder: str, now_ts: int, ttl: int) -> bool:
        rowcount = await self.execute(
            "UPDATE processing_lease SET expires_ts = :expires_ts "
            "WHERE name = :name AND holder = :holder",
            {"name": name, "holder": holder, "expires_ts": now_ts + ttl},
        )
        return rowcount == 1

    async def release(self, name: str, holder: str) -> None:
        await self.execute(
            "UPDATE processing_lease SET holder = NULL, expires_ts = NULL "
            "WHERE name = :name AND holder = :holder",
            {"name": name, "holder": holder},
        )

    async def current_holder(self, name: str) -> str | None:
        row = await self.select_one({"name": name})
        return row["holder"] if row else None


__all__ = ["ProcessingLeaseTable"]
