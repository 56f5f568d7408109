# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Delivery queue core.

The :class:`DeliveryQueue` owns the lifecycle of every outbound message,
from enqueue to a terminal state (sent, failed or cancelled):

- enqueue resolves templates synchronously and stores a ``pending`` entry;
- :meth:`DeliveryQueue.process_tick` picks due entries by priority and age
  and hands them to the mail transport one at a time;
- failed attempts are retried after a fixed delay until ``max_attempts``;
- operators can cancel pending entries and retry failed ones;
- terminal outcomes are appended to the delivery log, pruned by retention.

The queue runs no background loop of its own. Ticks are driven from the
outside (see :mod:`delivery_queue.scheduler`), and at most one tick runs at
a time: an in-process lock guards re-entrant calls and a lease row in the
database guards against other processes sharing the same store.

Example:
    queue = DeliveryQueue.from_settings(load_settings())
    await queue.init()
    entry = await queue.enqueue({"recipient": "ranger@example.org", "template_id": 1,
                                 "template_variables": {"name": "Ada"}})
    summary = await queue.process_tick()
"""

from __future__ import annotations

import asyncio
import os
import socket
import uuid
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime, timezone
from typing import Any

import pydantic

from .config import QueueSettings
from .errors import (
    DeliveryQueueError,
    InvalidStateError,
    NotFoundError,
    StoreUnavailableError,
    TransportError,
    ValidationError,
)
from .logger import get_logger
from .models import (
    DeliveryLogRecord,
    DeliveryOutcome,
    EmailTemplate,
    MessageCreate,
    Priority,
    ProcessingSummary,
    QueueEntry,
    QueueStats,
    QueueStatus,
    ResolvedContent,
    TemplateCreate,
    TemplateUpdate,
    TemplateValidation,
    to_epoch,
)
from .prometheus import QueueMetrics
from .queue_db import QueueDb
from .templates import DbTemplateResolver, TemplateResolver, check_sources
from .transport import MailTransport, TransportResult, build_transport

DEFAULT_BATCH_SIZE = 50
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_DELAY = 300
DEFAULT_SEND_PAUSE = 0.2
DEFAULT_LEASE_SECONDS = 600
DEFAULT_STALE_SENDING_SECONDS = 900
DEFAULT_LOG_RETENTION_DAYS = 90
DEFAULT_MAX_ENQUEUE_BATCH = 1000
MAX_PAGE_SIZE = 500

LEASE_NAME = "delivery-tick"
PAUSED_KEY = "paused"
INTERRUPTED_REASON = "delivery interrupted while sending"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _default_holder_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


def _format_validation_error(exc: pydantic.ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ())) or "message"
        parts.append(f"{location}: {error.get('msg')}")
    return "; ".join(parts)


class DeliveryQueue:
    """Durable, priority-ordered email delivery queue.

    Attributes:
        db: Queue database (entries, delivery log, templates, lease).
        transport: Mail transport used for every delivery attempt.
        resolver: Template resolver used at enqueue time.
        metrics: Prometheus metrics collector.
        logger: Logger instance for diagnostic output.
        holder_id: Identity of this instance when taking the processing lease.
    """

    def __init__(
        self,
        db: QueueDb,
        *,
        transport: MailTransport,
        resolver: TemplateResolver | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_delay_seconds: int = DEFAULT_RETRY_DELAY,
        send_pause_seconds: float = DEFAULT_SEND_PAUSE,
        lease_seconds: int = DEFAULT_LEASE_SECONDS,
        stale_sending_seconds: int = DEFAULT_STALE_SENDING_SECONDS,
        log_retention_days: int = DEFAULT_LOG_RETENTION_DAYS,
        max_enqueue_batch: int = DEFAULT_MAX_ENQUEUE_BATCH,
        log_delivery_activity: bool = False,
        metrics: QueueMetrics | None = None,
        logger=None,
        clock: Callable[[], datetime] | None = None,
        holder_id: str | None = None,
    ):
        """Initialize the queue.

        Args:
            db: Queue database. Call :meth:`init` before first use.
            transport: Mail transport used for delivery attempts.
            resolver: Template resolver; defaults to templates stored in ``db``.
            batch_size: Maximum entries attempted per tick.
            max_attempts: Default attempt ceiling for new entries.
            retry_delay_seconds: Fixed delay before a failed attempt is retried.
            send_pause_seconds: Pause after every delivery attempt in a tick.
            lease_seconds: Validity of the processing lease, renewed per entry.
            stale_sending_seconds: Age after which a ``sending`` entry is
                considered abandoned by a crashed tick.
            log_retention_days: Default retention for :meth:`prune_logs`.
            max_enqueue_batch: Maximum messages accepted by :meth:`enqueue_many`.
            log_delivery_activity: Log every delivery attempt at info level.
            metrics: Prometheus metrics collector. If None, creates new instance.
            logger: Custom logger instance. If None, uses default logger.
            clock: Returns the current UTC time; injectable for tests.
            holder_id: Lease holder identity; defaults to host, pid and a random suffix.
        """
        self.db = db
        self.transport = transport
        self.resolver = resolver if resolver is not None else DbTemplateResolver(db)
        self.batch_size = max(1, int(batch_size))
        self.max_attempts = max(1, int(max_attempts))
        self.retry_delay_seconds = max(0, int(retry_delay_seconds))
        self.send_pause_seconds = max(0.0, float(send_pause_seconds))
        self.lease_seconds = max(1, int(lease_seconds))
        self.stale_sending_seconds = max(1, int(stale_sending_seconds))
        self.log_retention_days = max(0, int(log_retention_days))
        self.max_enqueue_batch = max(1, int(max_enqueue_batch))
        self.log_delivery_activity = bool(log_delivery_activity)
        self.metrics = metrics or QueueMetrics()
        self.logger = logger or get_logger("DeliveryQueue")
        self._clock = clock or _utc_now
        self.holder_id = holder_id or _default_holder_id()
        self._tick_lock = asyncio.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: QueueSettings,
        *,
        transport: MailTransport | None = None,
        metrics: QueueMetrics | None = None,
        logger=None,
    ) -> DeliveryQueue:
        """Build a queue, its database and its transport from settings."""
        db = QueueDb(settings.db_path)
        return cls(
            db,
            transport=transport or build_transport(settings),
            batch_size=settings.batch_size,
            max_attempts=settings.max_attempts,
            retry_delay_seconds=settings.retry_delay_seconds,
            send_pause_seconds=settings.send_pause_seconds,
            lease_seconds=settings.lease_seconds,
            stale_sending_seconds=settings.stale_sending_seconds,
            log_retention_days=settings.log_retention_days,
            max_enqueue_batch=settings.max_enqueue_batch,
            log_delivery_activity=settings.log_delivery_activity,
            metrics=metrics,
            logger=logger,
        )

    async def init(self) -> None:
        """Create the schema if needed and refresh the pending gauge."""
        await self.db.init_db()
        await self._refresh_pending_gauge()

    # --------------------------------------------------------------------- utils
    def _now(self) -> datetime:
        return self._clock()

    def _now_ts(self) -> int:
        return to_epoch(self._clock())

    async def _refresh_pending_gauge(self) -> None:
        self.metrics.set_pending(await self.db.entries.count_pending())

    @staticmethod
    def _parse_message(message: MessageCreate | Mapping[str, Any]) -> MessageCreate:
        if isinstance(message, MessageCreate):
            return message
        if not isinstance(message, Mapping):
            raise ValidationError("message must be an object")
        try:
            return MessageCreate.model_validate(dict(message))
        except pydantic.ValidationError as exc:
            raise ValidationError(_format_validation_error(exc)) from exc

    # ------------------------------------------------------------------- enqueue
    async def enqueue(self, message: MessageCreate | Mapping[str, Any]) -> QueueEntry:
        """Validate, resolve and store a message. No delivery is attempted.

        Raises:
            ValidationError: Malformed request, or no recipient, subject or body.
            TemplateResolutionError: Unknown template or missing variables.
        """
        request = self._parse_message(message)
        subject, html_body, text_body = request.subject, request.html, request.text

        if request.template_id is not None:
            content = await self.resolver.resolve(request.template_id, request.template_variables)
            subject = subject or content.subject
            html_body = html_body or content.html
            text_body = text_body or content.text

        if not request.recipient:
            raise ValidationError("recipient is required")
        if not subject or not subject.strip():
            raise ValidationError("subject is required")
        if not html_body and not text_body:
            raise ValidationError("message body is required (html or text)")

        now_ts = self._now_ts()
        record = {
            "recipient": request.recipient,
            "cc": request.cc,
            "bcc": request.bcc,
            "subject": subject,
            "html_body": html_body,
            "text_body": text_body,
            "template_id": request.template_id,
            "priority": request.priority.rank,
            "status": QueueStatus.PENDING.value,
            "scheduled_ts": (
                to_epoch(request.scheduled_for, round_up=True) if request.scheduled_for else now_ts
            ),
            "attempts": 0,
            "max_attempts": request.max_attempts or self.max_attempts,
            "error_message": None,
            "metadata": request.metadata,
            "created_ts": now_ts,
            "updated_ts": now_ts,
            "sent_ts": None,
        }
        entry_id = await self.db.entries.add(record)
        entry = QueueEntry.from_row({**record, "id": entry_id})
        self.logger.debug(
            "Queued entry %s for %s (priority=%s, scheduled_for=%s)",
            entry.id,
            entry.recipient,
            entry.priority.value,
            entry.scheduled_for.isoformat(),
        )
        await self._refresh_pending_gauge()
        return entry

    async def enqueue_many(
        self, messages: Iterable[MessageCreate | Mapping[str, Any]]
    ) -> list[QueueEntry]:
        """Enqueue several messages in order.

        A failing message raises and stops the batch; messages before it stay queued.
        """
        batch = list(messages)
        if len(batch) > self.max_enqueue_batch:
            raise ValidationError(
                f"cannot enqueue {len(batch)} messages at once (limit {self.max_enqueue_batch})"
            )
        return [await self.enqueue(message) for message in batch]

    # ---------------------------------------------------------------- processing
    async def process_tick(self) -> ProcessingSummary:
        """Attempt delivery of up to ``batch_size`` due entries.

        Returns a skipped summary when another tick is running (here or in
        another process sharing the store) or when the queue is paused.
        Per-entry failures never escape.

        Raises:
            StoreUnavailableError: The store could not be reached. The tick
                is aborted and the lease released.
        """
        if self._tick_lock.locked():
            self.logger.debug("Tick already running, skipping")
            self.metrics.inc_tick("skipped")
            return ProcessingSummary(skipped=True)

        async with self._tick_lock:
            try:
                summary = await self._run_tick()
            except StoreUnavailableError:
                self.metrics.inc_tick("error")
                raise
        self.metrics.inc_tick("skipped" if summary.skipped else "processed")
        return summary

    async def _run_tick(self) -> ProcessingSummary:
        if await self.is_paused():
            self.logger.debug("Queue paused, skipping tick")
            return ProcessingSummary(skipped=True)

        if not await self.db.lease.acquire(
            LEASE_NAME, self.holder_id, self._now_ts(), self.lease_seconds
        ):
            self.logger.debug("Processing lease held by another instance, skipping tick")
            return ProcessingSummary(skipped=True)

        try:
            summary = await self._process_batch()
        finally:
            try:
                await self.db.lease.release(LEASE_NAME, self.holder_id)
            except StoreUnavailableError as exc:
                self.logger.warning("Could not release processing lease, it will expire: %s", exc)

        await self._refresh_pending_gauge()
        if summary.attempted or summary.recovered:
            self.logger.info(
                "Tick done: attempted=%d sent=%d retried=%d failed=%d recovered=%d",
                summary.attempted,
                summary.sent,
                summary.retried,
                summary.failed,
                summary.recovered,
            )
        return summary

    async def _process_batch(self) -> ProcessingSummary:
        summary = ProcessingSummary(recovered=await self._recover_stale())
        due = await self.db.entries.fetch_due(now_ts=self._now_ts(), limit=self.batch_size)
        for row in due:
            await self.db.lease.renew(LEASE_NAME, self.holder_id, self._now_ts(), self.lease_seconds)
            outcome = await self._dispatch(QueueEntry.from_row(row))
            if outcome is None:
                continue
            summary.attempted += 1
            match outcome:
                case "sent":
                    summary.sent += 1
                case "retried":
                    summary.retried += 1
                case "failed":
                    summary.failed += 1
            # Also after the last send, so back-to-back ticks keep the pace.
            await self._pause()
        return summary

    async def _pause(self) -> None:
        if self.send_pause_seconds:
            await asyncio.sleep(self.send_pause_seconds)

    async def _recover_stale(self) -> int:
        """Return entries abandoned in ``sending`` by a crashed tick to the queue."""
        now_ts = self._now_ts()
        stale = await self.db.entries.fetch_stale(now_ts - self.stale_sending_seconds)
        recovered = 0
        for row in stale:
            entry = QueueEntry.from_row(row)
            if entry.attempts >= entry.max_attempts:
                if await self.db.entries.mark_failed(entry.id, INTERRUPTED_REASON, now_ts):
                    await self._append_log(
                        entry, DeliveryOutcome.FAILED, entry.attempts, INTERRUPTED_REASON, now_ts
                    )
                    self.metrics.inc_failed(entry.priority.value)
                    recovered += 1
            elif await self.db.entries.reschedule(entry.id, INTERRUPTED_REASON, now_ts, now_ts):
                recovered += 1
        if recovered:
            self.logger.warning("Recovered %d entries stuck in sending", recovered)
        return recovered

    async def _dispatch(self, entry: QueueEntry) -> str | None:
        """Claim, send and settle one entry; None when it was no longer pending."""
        if not await self.db.entries.claim(entry.id, self._now_ts()):
            self.logger.debug("Entry %s no longer pending, skipped", entry.id)
            return None
        attempts = entry.attempts + 1
        priority = entry.priority.value

        if self.log_delivery_activity:
            self.logger.info(
                "Sending entry %s to %s (attempt %d/%d)",
                entry.id,
                entry.recipient,
                attempts,
                entry.max_attempts,
            )

        try:
            result = await self.transport.send(entry)
        except TransportError as exc:
            result = TransportResult.failure(exc.message)
        except Exception as exc:
            self.logger.exception("Transport raised while sending entry %s", entry.id)
            result = TransportResult.failure(str(exc) or type(exc).__name__)

        now_ts = self._now_ts()
        if result.ok:
            await self.db.entries.mark_sent(entry.id, now_ts)
            await self._append_log(entry, DeliveryOutcome.SENT, attempts, None, now_ts)
            self.metrics.inc_sent(priority)
            self.logger.info("Entry %s delivered to %s", entry.id, entry.recipient)
            return "sent"

        reason = result.reason or "unknown transport error"
        if attempts >= entry.max_attempts:
            await self.db.entries.mark_failed(entry.id, reason, now_ts)
            await self._append_log(entry, DeliveryOutcome.FAILED, attempts, reason, now_ts)
            self.metrics.inc_failed(priority)
            self.logger.error(
                "Entry %s failed permanently after %d attempts: %s", entry.id, attempts, reason
            )
            return "failed"

        retry_ts = to_epoch(self._now(), round_up=True) + self.retry_delay_seconds
        await self.db.entries.reschedule(entry.id, reason, retry_ts, now_ts)
        self.metrics.inc_retried(priority)
        self.logger.warning(
            "Entry %s attempt %d/%d failed, retry at %s: %s",
            entry.id,
            attempts,
            entry.max_attempts,
            datetime.fromtimestamp(max(retry_ts, to_epoch(entry.scheduled_for)), timezone.utc).isoformat(),
            reason,
        )
        return "retried"

    async def _append_log(
        self,
        entry: QueueEntry,
        outcome: DeliveryOutcome,
        attempts: int,
        error: str | None,
        now_ts: int,
    ) -> None:
        await self.db.delivery_log.append(
            entry_id=entry.id,
            outcome=outcome.value,
            recipient=entry.recipient,
            subject=entry.subject,
            template_id=entry.template_id,
            attempts=attempts,
            error_message=error,
            created_ts=now_ts,
        )

    # ----------------------------------------------------------------- operators
    async def cancel(self, entry_id: int) -> QueueEntry:
        """Cancel a pending entry.

        Raises:
            NotFoundError: Unknown entry.
            InvalidStateError: The entry is not pending.
        """
        if await self.db.entries.cancel(entry_id, self._now_ts()):
            self.metrics.inc_cancelled()
            self.logger.info("Entry %s cancelled", entry_id)
            await self._refresh_pending_gauge()
            return await self.get_entry(entry_id)
        row = await self.db.entries.get(entry_id)
        if row is None:
            raise NotFoundError(entry_id)
        raise InvalidStateError(
            f"entry {entry_id} is {row['status']}; only pending entries can be cancelled",
            entry_id=entry_id,
            status=row["status"],
        )

    async def retry(self, entry_id: int) -> QueueEntry:
        """Put a failed entry back in the queue with a fresh attempt budget.

        Raises:
            NotFoundError: Unknown entry.
            InvalidStateError: The entry is not failed.
        """
        if await self.db.entries.reset_for_retry(entry_id, self._now_ts()):
            self.logger.info("Entry %s queued again by operator", entry_id)
            await self._refresh_pending_gauge()
            return await self.get_entry(entry_id)
        row = await self.db.entries.get(entry_id)
        if row is None:
            raise NotFoundError(entry_id)
        raise InvalidStateError(
            f"entry {entry_id} is {row['status']}; only failed entries can be retried",
            entry_id=entry_id,
            status=row["status"],
        )

    # ------------------------------------------------------------------- queries
    async def get_entry(self, entry_id: int) -> QueueEntry:
        row = await self.db.entries.get(entry_id)
        if row is None:
            raise NotFoundError(entry_id)
        return QueueEntry.from_row(row)

    async def get_entries(
        self,
        status: QueueStatus | str | None = None,
        priority: Priority | str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[QueueEntry]:
        """List entries newest first, optionally filtered by status and priority.

        ``limit`` is capped at ``MAX_PAGE_SIZE``.

        Raises:
            ValidationError: Unknown status or priority, ``limit`` below 1
                or negative ``offset``.
        """
        try:
            status_value = QueueStatus(status).value if status else None
            priority_rank = Priority(priority).rank if priority else None
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        if int(limit) < 1:
            raise ValidationError(f"limit must be at least 1, got {limit}")
        if int(offset) < 0:
            raise ValidationError(f"offset must not be negative, got {offset}")
        rows = await self.db.entries.list_page(
            status=status_value,
            priority=priority_rank,
            limit=min(int(limit), MAX_PAGE_SIZE),
            offset=int(offset),
        )
        return [QueueEntry.from_row(row) for row in rows]

    async def get_stats(self) -> QueueStats:
        return QueueStats.from_counts(await self.db.entries.count_by_status())

    async def get_delivery_log(self, entry_id: int | None = None) -> list[DeliveryLogRecord]:
        if entry_id is None:
            rows = await self.db.delivery_log.list_all()
        else:
            rows = await self.db.delivery_log.list_for_entry(entry_id)
        return [DeliveryLogRecord.from_row(row) for row in rows]

    # ----------------------------------------------------------------- retention
    async def prune_logs(self, older_than: datetime | None = None) -> int:
        """Delete delivery log records created before ``older_than``.

        Defaults to the configured retention. Queue entries are never touched.
        """
        if older_than is None:
            cutoff_ts = self._now_ts() - self.log_retention_days * 86400
        else:
            cutoff_ts = to_epoch(older_than)
        removed = await self.db.delivery_log.delete_before(cutoff_ts)
        if removed:
            self.logger.info("Pruned %d delivery log records", removed)
        return removed

    # --------------------------------------------------------------- pause state
    async def pause(self) -> None:
        await self.db.config.set(PAUSED_KEY, "1")
        self.logger.info("Queue processing paused")

    async def resume(self) -> None:
        await self.db.config.set(PAUSED_KEY, "0")
        self.logger.info("Queue processing resumed")

    async def is_paused(self) -> bool:
        return await self.db.config.get(PAUSED_KEY, "0") == "1"

    # ----------------------------------------------------------------- templates
    async def add_template(self, template: TemplateCreate | Mapping[str, Any]) -> EmailTemplate:
        if not isinstance(template, TemplateCreate):
            try:
                template = TemplateCreate.model_validate(dict(template))
            except pydantic.ValidationError as exc:
                raise ValidationError(_format_validation_error(exc)) from exc
        if not template.html and not template.text:
            raise ValidationError("template needs an html or text body")
        template_id = await self.db.templates.add(template.model_dump(), self._now_ts())
        row = await self.db.templates.get(template_id)
        return EmailTemplate.from_row(row)

    async def update_template(
        self, template_id: int, changes: TemplateUpdate | Mapping[str, Any]
    ) -> EmailTemplate:
        """Change a stored template. Entries already queued keep their content.

        Raises:
            NotFoundError: Unknown template.
            ValidationError: Malformed change, or the template would lose its body.
        """
        if not isinstance(changes, TemplateUpdate):
            try:
                changes = TemplateUpdate.model_validate(dict(changes))
            except pydantic.ValidationError as exc:
                raise ValidationError(_format_validation_error(exc)) from exc
        current = await self.db.templates.get(template_id)
        if current is None:
            raise NotFoundError(template_id, what="template")
        fields = changes.model_dump(exclude_unset=True)
        if fields.get("name") is None:
            fields.pop("name", None)
        if fields.get("subject") is None:
            fields.pop("subject", None)
        merged = {**current, **fields}
        if not merged.get("html") and not merged.get("text"):
            raise ValidationError("template needs an html or text body")
        if not await self.db.templates.update_fields(template_id, fields):
            raise NotFoundError(template_id, what="template")
        self.logger.info("Template %s updated", template_id)
        return EmailTemplate.from_row(await self.db.templates.get(template_id))

    async def delete_template(self, template_id: int) -> None:
        """Remove a stored template. Entries already queued keep their content.

        Raises:
            NotFoundError: Unknown template.
        """
        if not await self.db.templates.remove(template_id):
            raise NotFoundError(template_id, what="template")
        self.logger.info("Template %s deleted", template_id)

    @staticmethod
    def validate_template(
        subject: str | None = None,
        html: str | None = None,
        text: str | None = None,
        variables: Mapping[str, Any] | None = None,
    ) -> TemplateValidation:
        """Check template sources before storing them; nothing is persisted."""
        return check_sources({"subject": subject, "html": html, "text": text}, variables)

    async def list_templates(self, active_only: bool = False) -> list[EmailTemplate]:
        rows = await self.db.templates.list_all(active_only=active_only)
        return [EmailTemplate.from_row(row) for row in rows]

    async def preview_template(
        self, template_id: int, variables: Mapping[str, Any] | None = None
    ) -> ResolvedContent:
        """Render a template without queueing anything."""
        return await self.resolver.resolve(template_id, variables or {})

    # ------------------------------------------------------------------ commands
    async def handle_command(self, cmd: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        """Execute an external control command.

        Supported commands:
        - ``enqueue``, ``enqueueMany``: Queue one message or a list under ``messages``
        - ``cancel``, ``retry``, ``getEntry``: Act on the entry ``id``
        - ``listEntries``: Page through entries (``status``, ``priority``, ``limit``, ``offset``)
        - ``stats``: Per-status counts
        - ``processNow``: Run one processing tick
        - ``pruneLogs``: Delete log records older than ``older_than`` (ISO date) or ``older_than_days``
        - ``pause``, ``resume``: Stop or restart processing
        - ``addTemplate``, ``listTemplates``, ``previewTemplate``: Template management
        - ``updateTemplate``, ``deleteTemplate``: Change or remove the template ``id``
        - ``validateTemplate``: Check ``subject``/``html``/``text`` against optional ``variables``

        Returns:
            dict: ``ok`` plus command data, or ``ok=False`` with ``error`` and ``code``.
        """
        payload = payload or {}
        try:
            match cmd:
                case "enqueue":
                    entry = await self.enqueue(payload)
                    return {"ok": True, "entry": entry.model_dump(mode="json")}
                case "enqueueMany":
                    messages = payload.get("messages")
                    if not isinstance(messages, list):
                        raise ValidationError("messages must be a list")
                    entries = await self.enqueue_many(messages)
                    return {
                        "ok": True,
                        "queued": len(entries),
                        "entries": [e.model_dump(mode="json") for e in entries],
                    }
                case "cancel":
                    entry = await self.cancel(self._require_id(payload))
                    return {"ok": True, "entry": entry.model_dump(mode="json")}
                case "retry":
                    entry = await self.retry(self._require_id(payload))
                    return {"ok": True, "entry": entry.model_dump(mode="json")}
                case "getEntry":
                    entry_id = self._require_id(payload)
                    entry = await self.get_entry(entry_id)
                    log = await self.get_delivery_log(entry_id)
                    return {
                        "ok": True,
                        "entry": entry.model_dump(mode="json"),
                        "log": [r.model_dump(mode="json") for r in log],
                    }
                case "listEntries":
                    entries = await self.get_entries(
                        status=payload.get("status"),
                        priority=payload.get("priority"),
                        limit=self._int_option(payload, "limit", 50),
                        offset=self._int_option(payload, "offset", 0),
                    )
                    return {"ok": True, "entries": [e.model_dump(mode="json") for e in entries]}
                case "stats":
                    stats = await self.get_stats()
                    return {"ok": True, **stats.model_dump()}
                case "processNow":
                    summary = await self.process_tick()
                    return {"ok": True, **summary.model_dump()}
                case "pruneLogs":
                    removed = await self.prune_logs(self._prune_cutoff(payload))
                    return {"ok": True, "removed": removed}
                case "pause":
                    await self.pause()
                    return {"ok": True, "paused": True}
                case "resume":
                    await self.resume()
                    return {"ok": True, "paused": False}
                case "addTemplate":
                    template = await self.add_template(payload)
                    return {"ok": True, "template": template.model_dump(mode="json")}
                case "listTemplates":
                    templates = await self.list_templates(bool(payload.get("active_only", False)))
                    return {"ok": True, "templates": [t.model_dump(mode="json") for t in templates]}
                case "previewTemplate":
                    content = await self.preview_template(
                        self._require_id(payload), payload.get("variables") or {}
                    )
                    return {"ok": True, **content.model_dump()}
                case "updateTemplate":
                    changes = {k: v for k, v in payload.items() if k != "id"}
                    template = await self.update_template(self._require_id(payload), changes)
                    return {"ok": True, "template": template.model_dump(mode="json")}
                case "deleteTemplate":
                    await self.delete_template(self._require_id(payload))
                    return {"ok": True}
                case "validateTemplate":
                    variables = payload.get("variables")
                    if variables is not None and not isinstance(variables, Mapping):
                        raise ValidationError("variables must be an object")
                    result = self.validate_template(
                        payload.get("subject"), payload.get("html"), payload.get("text"), variables
                    )
                    return {"ok": True, **result.model_dump()}
                case _:
                    return {"ok": False, "error": "unknown command", "code": "unknown_command"}
        except DeliveryQueueError as exc:
            return exc.to_dict()

    @staticmethod
    def _require_id(payload: Mapping[str, Any]) -> int:
        value = payload.get("id")
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ValidationError("a numeric id is required") from None

    @staticmethod
    def _int_option(payload: Mapping[str, Any], name: str, default: int) -> int:
        value = payload.get(name)
        if value is None:
            return default
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ValidationError(f"{name} must be an integer") from None

    def _prune_cutoff(self, payload: Mapping[str, Any]) -> datetime | None:
        older_than = payload.get("older_than")
        if isinstance(older_than, datetime):
            return older_than
        if older_than:
            try:
                return datetime.fromisoformat(str(older_than).replace("Z", "+00:00"))
            except ValueError:
                raise ValidationError(f"invalid older_than date: {older_than!r}") from None
        days = payload.get("older_than_days")
        if days is not None:
            try:
                return datetime.fromtimestamp(self._now_ts() - int(days) * 86400, timezone.utc)
            except (TypeError, ValueError):
                raise ValidationError("older_than_days must be an integer") from None
        return None


__all__ = [
    "DEFAULT_BATCH_SIZE",
    "DEFAULT_MAX_ATTEMPTS",
    "DEFAULT_RETRY_DELAY",
    "DeliveryQueue",
]
