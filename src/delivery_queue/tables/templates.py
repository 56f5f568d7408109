# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Email templates table manager."""

from __future__ import annotations

from typing import Any

from ..sql import Integer, String, Table


class TemplatesTable(Table):
    """Stored email templates with ``{{name}}`` placeholders."""

    name = "email_templates"

    def configure(self) -> None:
        c = self.columns
        c.column("id", Integer, primary_key=True)
        c.column("name", String, nullable=False)
        c.column("subject", String, nullable=False)
        c.column("html", String)
        c.column("text", String)
        c.column("category", String)
        c.column("active", Integer, nullable=False, default=1)
        c.column("created_ts", Integer)

    async def add(self, template: dict[str, Any], created_ts: int) -> int:
        return await self.insert(
            {
                "name": template["name"],
                "subject": template["subject"],
                "html": template.get("html"),
                "text": template.get("text"),
                "category": template.get("category"),
                "active": 1 if template.get("active", True) else 0,
                "created_ts": created_ts,
            }
        )

    async def update_fields(self, template_id: int, fields: dict[str, Any]) -> bool:
        """Overwrite the given columns; False when the template does not exist."""
        values = dict(fields)
        if "active" in values:
            values["active"] = 1 if values["active"] else 0
        if not values:
            return await self.get(template_id) is not None
        return await self.update(values, {"id": template_id}) == 1

    async def remove(self, template_id: int) -> bool:
        return await self.delete({"id": template_id}) == 1

    async def get(self, template_id: int) -> dict[str, Any] | None:
        return await self.select_one({"id": template_id})

    async def list_all(self, active_only: bool = False) -> list[dict[str, Any]]:
        where = "WHERE active = 1" if active_only else ""
        return await self.fetch_all(f"SELECT * FROM email_templates {where} ORDER BY name ASC, id ASC")


__all__ = ["TemplatesTable"]
