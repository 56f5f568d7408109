# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Key-value table for persisted instance settings (e.g. the paused flag)."""

from __future__ import annotations

from ..sql import String, Table


class InstanceConfigTable(Table):
    name = "instance_config"

    def configure(self) -> None:
        c = self.columns
        c.column("key", String, primary_key=True)
        c.column("value", String)

    async def get(self, key: str, default: str | None = None) -> str | None:
        row = await self.select_one({"key": key})
        if row is None:
            return default
        return row["value"]

    async def set(self, key: str, value: str) -> None:
        await self.execute(
            """
            INSERT INTO instance_config (key, value) VALUES (:key, :value)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """,
            {"key": key, "value": value},
        )


__all__ = ["InstanceConfigTable"]
