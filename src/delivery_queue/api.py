# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""FastAPI application factory and HTTP schemas for the delivery queue.

Routes mirror the back-office ``/queue`` endpoints and delegate to
:meth:`DeliveryQueue.handle_command`. Domain errors map to HTTP status codes:

- validation and template errors: 400
- unknown entry or template: 404
- entry in the wrong state: 409
- store unavailable: 503

Example:
    Creating and running the API application::

        queue = DeliveryQueue.from_settings(settings)
        app = create_app(queue, api_token="secret-token")
        uvicorn.run(app, host="0.0.0.0", port=8000)
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Body, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from .core import DeliveryQueue
from .models import EmailTemplate, QueueEntry

logger = logging.getLogger(__name__)

API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)

ERROR_STATUS = {
    "validation_error": status.HTTP_400_BAD_REQUEST,
    "template_resolution_error": status.HTTP_400_BAD_REQUEST,
    "unknown_command": status.HTTP_400_BAD_REQUEST,
    "not_found": status.HTTP_404_NOT_FOUND,
    "invalid_state": status.HTTP_409_CONFLICT,
    "store_unavailable": status.HTTP_503_SERVICE_UNAVAILABLE,
}


async def require_token(request: Request, api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    When no token is configured the dependency is bypassed.
    """
    expected = getattr(request.app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")


auth_dependency = Depends(require_token)


class CommandStatus(BaseModel):
    """Base schema shared by most responses produced by the service."""

    ok: bool
    error: str | None = None


class EntryResponse(CommandStatus):
    entry: QueueEntry


class EntryDetailResponse(EntryResponse):
    log: list[dict[str, Any]] = Field(default_factory=list)


class EntriesResponse(CommandStatus):
    entries: list[QueueEntry]


class BulkResponse(EntriesResponse):
    queued: int


class StatsResponse(CommandStatus):
    pending: int
    sending: int
    sent: int
    failed: int
    cancelled: int
    total: int


class ProcessResponse(CommandStatus):
    attempted: int
    sent: int
    retried: int
    failed: int
    skipped: bool
    recovered: int


class PausedResponse(CommandStatus):
    paused: bool


class PruneResponse(CommandStatus):
    removed: int


class TemplateResponse(CommandStatus):
    template: EmailTemplate


class TemplatesResponse(CommandStatus):
    templates: list[EmailTemplate]


class PreviewResponse(CommandStatus):
    subject: str
    html: str | None = None
    text: str | None = None


class ValidationResponse(CommandStatus):
    valid: bool
    placeholders: list[str]
    missing: list[str]
    errors: list[str]


class BulkEnqueuePayload(BaseModel):
    """Payload of ``POST /queue/bulk``; each message is validated by the queue."""

    messages: list[dict[str, Any]]


class PrunePayload(BaseModel):
    older_than: datetime | None = None
    older_than_days: int | None = Field(default=None, ge=0)


class PreviewPayload(BaseModel):
    variables: dict[str, Any] = Field(default_factory=dict)


class ValidatePayload(BaseModel):
    """Payload of ``POST /templates/validate``."""

    subject: str | None = None
    html: str | None = None
    text: str | None = None
    variables: dict[str, Any] | None = None


def create_app(
    queue: DeliveryQueue,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AbstractAsyncContextManager] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    queue:
        The :class:`DeliveryQueue` serving every route.
    api_token:
        Optional secret. When provided, the ``X-API-Token`` header must match
        it on every route except ``/health``.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.
    """
    api = FastAPI(title="Parks Mail Queue", lifespan=lifespan)
    api.state.queue = queue
    api.state.api_token = api_token
    router = APIRouter(dependencies=[auth_dependency])

    async def run(cmd: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        result = await queue.handle_command(cmd, payload or {})
        if result.get("ok") is not True:
            code = result.get("code", "unknown")
            http_status = ERROR_STATUS.get(code, status.HTTP_500_INTERNAL_SERVER_ERROR)
            if http_status >= 500:
                logger.error("%s failed: %s", cmd, result.get("error"))
            raise HTTPException(http_status, detail={"error": result.get("error"), "code": code})
        return result

    @api.get("/health")
    async def health():
        """Health check endpoint for container monitoring (no authentication required)."""
        return {"status": "ok"}

    @router.get("/queue", response_model=EntriesResponse, response_model_exclude_none=True)
    async def list_entries(
        status_filter: str | None = Query(default=None, alias="status"),
        priority: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ):
        """List entries newest first; ``status`` and ``priority`` filter the page."""
        result = await run(
            "listEntries",
            {"status": status_filter, "priority": priority, "limit": limit, "offset": offset},
        )
        return EntriesResponse.model_validate(result)

    @router.post(
        "/queue",
        response_model=EntryResponse,
        response_model_exclude_none=True,
        status_code=status.HTTP_201_CREATED,
    )
    async def enqueue(payload: dict[str, Any] = Body(...)):
        """Queue one message. Templates are resolved before the entry is stored."""
        return EntryResponse.model_validate(await run("enqueue", payload))

    @router.post(
        "/queue/bulk",
        response_model=BulkResponse,
        response_model_exclude_none=True,
        status_code=status.HTTP_201_CREATED,
    )
    async def enqueue_bulk(payload: BulkEnqueuePayload):
        """Queue several messages; the first invalid one stops the batch."""
        return BulkResponse.model_validate(await run("enqueueMany", {"messages": payload.messages}))

    @router.get("/queue/stats", response_model=StatsResponse, response_model_exclude_none=True)
    async def stats():
        return StatsResponse.model_validate(await run("stats"))

    @router.post("/queue/process", response_model=ProcessResponse, response_model_exclude_none=True)
    async def process_now():
        """Run one processing tick now."""
        return ProcessResponse.model_validate(await run("processNow"))

    @router.post("/queue/pause", response_model=PausedResponse, response_model_exclude_none=True)
    async def pause():
        return PausedResponse.model_validate(await run("pause"))

    @router.post("/queue/resume", response_model=PausedResponse, response_model_exclude_none=True)
    async def resume():
        return PausedResponse.model_validate(await run("resume"))

    @router.get("/queue/{entry_id}", response_model=EntryDetailResponse, response_model_exclude_none=True)
    async def get_entry(entry_id: int):
        """Return one entry with its delivery log."""
        return EntryDetailResponse.model_validate(await run("getEntry", {"id": entry_id}))

    @router.delete("/queue/{entry_id}", response_model=EntryResponse, response_model_exclude_none=True)
    async def cancel(entry_id: int):
        """Cancel a pending entry."""
        return EntryResponse.model_validate(await run("cancel", {"id": entry_id}))

    @router.post("/queue/{entry_id}/retry", response_model=EntryResponse, response_model_exclude_none=True)
    async def retry(entry_id: int):
        """Put a failed entry back in the queue."""
        return EntryResponse.model_validate(await run("retry", {"id": entry_id}))

    @router.post("/logs/prune", response_model=PruneResponse, response_model_exclude_none=True)
    async def prune_logs(payload: PrunePayload | None = None):
        """Delete delivery log records older than the cutoff (default: retention)."""
        data = payload.model_dump(exclude_none=True) if payload else {}
        return PruneResponse.model_validate(await run("pruneLogs", data))

    @router.get("/templates", response_model=TemplatesResponse, response_model_exclude_none=True)
    async def list_templates(active_only: bool = False):
        return TemplatesResponse.model_validate(await run("listTemplates", {"active_only": active_only}))

    @router.post(
        "/templates",
        response_model=TemplateResponse,
        response_model_exclude_none=True,
        status_code=status.HTTP_201_CREATED,
    )
    async def add_template(payload: dict[str, Any] = Body(...)):
        return TemplateResponse.model_validate(await run("addTemplate", payload))

    @router.post("/templates/validate", response_model=ValidationResponse, response_model_exclude_none=True)
    async def validate_template(payload: ValidatePayload):
        """Check placeholders of unsaved template sources."""
        return ValidationResponse.model_validate(
            await run("validateTemplate", payload.model_dump(exclude_none=True))
        )

    @router.put("/templates/{template_id}", response_model=TemplateResponse, response_model_exclude_none=True)
    async def update_template(template_id: int, payload: dict[str, Any] = Body(...)):
        """Change the given fields of a template; queued entries are not affected."""
        return TemplateResponse.model_validate(await run("updateTemplate", {**payload, "id": template_id}))

    @router.delete("/templates/{template_id}", response_model=CommandStatus, response_model_exclude_none=True)
    async def delete_template(template_id: int):
        return CommandStatus.model_validate(await run("deleteTemplate", {"id": template_id}))

    @router.post(
        "/templates/{template_id}/preview",
        response_model=PreviewResponse,
        response_model_exclude_none=True,
    )
    async def preview_template(template_id: int, payload: PreviewPayload | None = None):
        """Render a template with sample variables, without queueing anything."""
        variables = payload.variables if payload else {}
        return PreviewResponse.model_validate(
            await run("previewTemplate", {"id": template_id, "variables": variables})
        )

    @router.get("/metrics")
    async def metrics():
        """Expose Prometheus metrics collected by the queue."""
        return Response(content=queue.metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    api.include_router(router)
    return api


__all__ = ["API_TOKEN_HEADER_NAME", "create_app"]
