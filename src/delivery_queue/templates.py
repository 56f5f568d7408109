# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Template resolution for enqueue requests.

Templates are stored in the ``email_templates`` table and use ``{{name}}``
placeholders, e.g.::

    Dear {{employee_name}}, your badge expires on {{expiry_date}}.

Dotted names (``{{park.name}}``) look up nested mappings. A placeholder with
no value is a render failure. Values substituted into the HTML body are
escaped.
"""

from __future__ import annotations

import html
import re
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any, Protocol

from .errors import TemplateResolutionError
from .models import ResolvedContent, TemplateValidation

if TYPE_CHECKING:
    from .queue_db import QueueDb

PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_.]*)\s*\}\}")


class TemplateResolver(Protocol):
    """Turns a template reference plus variables into concrete content."""

    async def resolve(
        self, template_id: int, variables: Mapping[str, Any]
    ) -> ResolvedContent: ...


def _lookup(variables: Mapping[str, Any], name: str) -> Any:
    value: Any = variables
    for part in name.split("."):
        if not isinstance(value, Mapping) or part not in value:
            raise KeyError(name)
        value = value[part]
    if value is None:
        raise KeyError(name)
    return value


def render(source: str, variables: Mapping[str, Any], *, escape: bool = False) -> str:
    """Substitute placeholders in ``source``.

    Raises:
        KeyError: A placeholder has no value.
    """

    def substitute(match: re.Match[str]) -> str:
        value = str(_lookup(variables, match.group(1)))
        return html.escape(value) if escape else value

    return PLACEHOLDER_RE.sub(substitute, source)


def placeholders(source: str) -> list[str]:
    """Placeholder names used in ``source``, in order of first use."""
    return list(dict.fromkeys(PLACEHOLDER_RE.findall(source)))


def check_sources(
    parts: Mapping[str, str | None], variables: Mapping[str, Any] | None = None
) -> TemplateValidation:
    """Check template sources for malformed placeholders.

    ``parts`` maps a label (subject, html, text) to its source. When
    ``variables`` is given, placeholders it cannot fill are reported as
    missing and make the sources invalid.
    """
    names: list[str] = []
    errors: list[str] = []
    for label, source in parts.items():
        if not source:
            continue
        names.extend(placeholders(source))
        leftover = PLACEHOLDER_RE.sub("", source)
        if "{{" in leftover or "}}" in leftover:
            errors.append(f"{label}: malformed placeholder")
    names = list(dict.fromkeys(names))

    missing: list[str] = []
    if variables is not None:
        for name in names:
            try:
                _lookup(variables, name)
            except KeyError:
                missing.append(name)
    return TemplateValidation(
        valid=not errors and not missing, placeholders=names, missing=missing, errors=errors
    )


class DbTemplateResolver:
    """Resolves templates stored in the queue database."""

    def __init__(self, db: QueueDb):
        self.db = db

    async def resolve(
        self, template_id: int, variables: Mapping[str, Any]
    ) -> ResolvedContent:
        row = await self.db.templates.get(template_id)
        if row is None or not row.get("active"):
            raise TemplateResolutionError(
                f"template {template_id} not found", template_id=template_id
            )
        try:
            return ResolvedContent(
                subject=render(row["subject"], variables),
                html=render(row["html"], variables, escape=True) if row.get("html") else None,
                text=render(row["text"], variables) if row.get("text") else None,
            )
        except KeyError as exc:
            raise TemplateResolutionError(
                f"template {template_id}: missing value for placeholder '{exc.args[0]}'",
                template_id=template_id,
            ) from exc


__all__ = [
    "DbTemplateResolver",
    "PLACEHOLDER_RE",
    "TemplateResolver",
    "check_sources",
    "placeholders",
    "render",
]
