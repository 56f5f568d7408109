# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Pydantic models for the outbound email delivery queue.

This module defines the data models used throughout the application for
validation, serialization, and type safety.

Models:
    - MessageCreate: Enqueue request, validated before anything is stored
    - QueueEntry: A message owned by the queue, from enqueue to terminal state
    - DeliveryLogRecord: Append-only record of one terminal outcome
    - ProcessingSummary: Counters returned by a processing tick
    - QueueStats: Per-status snapshot of the queue
    - EmailTemplate / TemplateCreate / TemplateUpdate: Stored templates and their payloads
    - TemplateValidation: Placeholder check of template sources
    - ResolvedContent: Subject and bodies produced by a template
"""

from __future__ import annotations

import math
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from .errors import InvalidStateError

EMAIL_RE = re.compile(r"^[^@\s<>,;]+@[^@\s<>,;]+\.[^@\s<>,;]+$")


def to_epoch(value: datetime, *, round_up: bool = False) -> int:
    """Convert a datetime to integer UTC epoch seconds (naive means UTC).

    Fractions are truncated unless ``round_up`` is set, which is what
    "not before" instants such as a schedule need.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    timestamp = value.timestamp()
    return math.ceil(timestamp) if round_up else int(timestamp)


def from_epoch(value: int | float | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class Priority(str, Enum):
    """Delivery priority. URGENT is served first, LOW last.

    Stored as an integer rank so that ordering happens in SQL.
    """

    URGENT = "urgent"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        return PRIORITY_RANKS[self]

    @classmethod
    def from_rank(cls, rank: int) -> Priority:
        for priority, value in PRIORITY_RANKS.items():
            if value == rank:
                return priority
        raise ValueError(f"unknown priority rank {rank}")


PRIORITY_RANKS: dict[Priority, int] = {
    Priority.URGENT: 0,
    Priority.HIGH: 1,
    Priority.NORMAL: 2,
    Priority.LOW: 3,
}


class QueueStatus(str, Enum):
    """Lifecycle state of a queue entry."""

    PENDING = "pending"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (QueueStatus.SENT, QueueStatus.FAILED, QueueStatus.CANCELLED)


ALLOWED_TRANSITIONS: frozenset[tuple[QueueStatus, QueueStatus]] = frozenset(
    {
        (QueueStatus.PENDING, QueueStatus.SENDING),
        (QueueStatus.PENDING, QueueStatus.CANCELLED),
        (QueueStatus.SENDING, QueueStatus.SENT),
        (QueueStatus.SENDING, QueueStatus.PENDING),
        (QueueStatus.SENDING, QueueStatus.FAILED),
        (QueueStatus.FAILED, QueueStatus.PENDING),
    }
)


def ensure_transition(source: QueueStatus, target: QueueStatus) -> None:
    """Raise InvalidStateError unless source -> target is a legal transition."""
    if (QueueStatus(source), QueueStatus(target)) not in ALLOWED_TRANSITIONS:
        raise InvalidStateError(
            f"transition {QueueStatus(source).value} -> {QueueStatus(target).value} is not allowed",
            status=QueueStatus(source).value,
        )


class DeliveryOutcome(str, Enum):
    """Terminal outcome written to the delivery log."""

    SENT = "sent"
    FAILED = "failed"


def _split_addresses(value: Any) -> list[str] | None:
    if value is None:
        return None
    if isinstance(value, str):
        items = [part.strip() for part in value.split(",")]
    elif isinstance(value, (list, tuple)):
        items = [str(part).strip() for part in value]
    else:
        raise ValueError("addresses must be a string or a list of strings")
    items = [item for item in items if item]
    return items or None


def _check_address(address: str) -> str:
    if not EMAIL_RE.match(address):
        raise ValueError(f"invalid email address: {address!r}")
    return address


class MessageCreate(BaseModel):
    """Enqueue request.

    Either a ``template_id`` or explicit content must be given. Explicit
    ``subject``/``html``/``text`` override the parts produced by the template.

    Attributes:
        recipient: Destination address (also accepted as ``to``).
        cc: Carbon copy addresses (list or comma-separated string).
        bcc: Blind carbon copy addresses (list or comma-separated string).
        subject: Subject line.
        html: HTML body.
        text: Plain text body.
        template_id: Stored template used to build the content.
        template_variables: Values substituted into the template.
        priority: Delivery priority (default normal).
        scheduled_for: Earliest delivery time (default now).
        max_attempts: Attempt ceiling for this message.
        metadata: Free-form data kept for reporting.
    """

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    recipient: Annotated[
        str | None,
        Field(
            default=None,
            validation_alias=AliasChoices("recipient", "to"),
            description="Recipient email address",
        ),
    ]
    cc: Annotated[list[str] | None, Field(default=None, description="CC addresses")]
    bcc: Annotated[list[str] | None, Field(default=None, description="BCC addresses")]
    subject: Annotated[str | None, Field(default=None, description="Email subject")]
    html: Annotated[str | None, Field(default=None, description="HTML body")]
    text: Annotated[str | None, Field(default=None, description="Plain text body")]
    template_id: Annotated[
        int | None, Field(default=None, description="Template used to render the content")
    ]
    template_variables: Annotated[
        dict[str, Any],
        Field(default_factory=dict, description="Template placeholder values"),
    ]
    priority: Annotated[
        Priority, Field(default=Priority.NORMAL, description="Delivery priority")
    ]
    scheduled_for: Annotated[
        datetime | None, Field(default=None, description="Earliest delivery time")
    ]
    max_attempts: Annotated[
        int | None, Field(default=None, ge=1, le=20, description="Attempt ceiling")
    ]
    metadata: Annotated[
        dict[str, Any] | None, Field(default=None, description="Reporting metadata")
    ]

    @field_validator("recipient", mode="before")
    @classmethod
    def normalize_recipient(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip()
            return _check_address(value) if value else None
        return value

    @field_validator("cc", "bcc", mode="before")
    @classmethod
    def normalize_addresses(cls, value: Any) -> list[str] | None:
        addresses = _split_addresses(value)
        if addresses:
            for address in addresses:
                _check_address(address)
        return addresses

    @field_validator("scheduled_for")
    @classmethod
    def assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class QueueEntry(BaseModel):
    """A message owned by the queue."""

    id: int
    recipient: str
    cc: list[str] | None = None
    bcc: list[str] | None = None
    subject: str
    html_body: str | None = None
    text_body: str | None = None
    template_id: int | None = None
    priority: Priority = Priority.NORMAL
    status: QueueStatus = QueueStatus.PENDING
    scheduled_for: datetime
    attempts: int = 0
    max_attempts: int
    error_message: str | None = None
    metadata: dict[str, Any] | None = None
    created_at: datetime
    updated_at: datetime
    sent_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> QueueEntry:
        """Build an entry from a decoded ``queue_entries`` row."""
        return cls(
            id=row["id"],
            recipient=row["recipient"],
            cc=row.get("cc"),
            bcc=row.get("bcc"),
            subject=row["subject"],
            html_body=row.get("html_body"),
            text_body=row.get("text_body"),
            template_id=row.get("template_id"),
            priority=Priority.from_rank(row["priority"]),
            status=QueueStatus(row["status"]),
            scheduled_for=from_epoch(row["scheduled_ts"]),
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            error_message=row.get("error_message"),
            metadata=row.get("metadata"),
            created_at=from_epoch(row["created_ts"]),
            updated_at=from_epoch(row["updated_ts"]),
            sent_at=from_epoch(row.get("sent_ts")),
        )

    def all_recipients(self) -> list[str]:
        return [self.recipient, *(self.cc or []), *(self.bcc or [])]


class DeliveryLogRecord(BaseModel):
    """Append-only record of a terminal delivery outcome."""

    id: int
    entry_id: int
    outcome: DeliveryOutcome
    recipient: str
    subject: str | None = None
    template_id: int | None = None
    attempts: int
    error_message: str | None = None
    created_at: datetime

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> DeliveryLogRecord:
        return cls(
            id=row["id"],
            entry_id=row["entry_id"],
            outcome=DeliveryOutcome(row["outcome"]),
            recipient=row["recipient"],
            subject=row.get("subject"),
            template_id=row.get("template_id"),
            attempts=row["attempts"],
            error_message=row.get("error_message"),
            created_at=from_epoch(row["created_ts"]),
        )


class ProcessingSummary(BaseModel):
    """Outcome counters of one processing tick.

    Attributes:
        attempted: Entries claimed and handed to the transport.
        sent: Entries delivered.
        retried: Entries rescheduled after a failed attempt.
        failed: Entries that exhausted their attempts.
        skipped: True when the tick did nothing (already running, paused, lease held elsewhere).
        recovered: Entries found stuck in sending and put back.
    """

    attempted: int = 0
    sent: int = 0
    retried: int = 0
    failed: int = 0
    skipped: bool = False
    recovered: int = 0


class QueueStats(BaseModel):
    """Per-status counts taken from a single aggregate query."""

    pending: int = 0
    sending: int = 0
    sent: int = 0
    failed: int = 0
    cancelled: int = 0
    total: int = 0

    @classmethod
    def from_counts(cls, counts: dict[str, int]) -> QueueStats:
        values = {status.value: int(counts.get(status.value, 0)) for status in QueueStatus}
        return cls(**values, total=sum(values.values()))


class ResolvedContent(BaseModel):
    """Content produced by the template resolver."""

    subject: str
    html: str | None = None
    text: str | None = None


class TemplateCreate(BaseModel):
    """Payload for storing a new email template."""

    model_config = ConfigDict(extra="forbid")

    name: Annotated[str, Field(min_length=1, max_length=200, description="Template name")]
    subject: Annotated[str, Field(min_length=1, description="Subject with placeholders")]
    html: Annotated[str | None, Field(default=None, description="HTML body with placeholders")]
    text: Annotated[str | None, Field(default=None, description="Text body with placeholders")]
    category: Annotated[str | None, Field(default=None, description="Free grouping label")]
    active: Annotated[bool, Field(default=True, description="Inactive templates cannot be used")]


class TemplateUpdate(BaseModel):
    """Partial change to a stored template; omitted fields are kept."""

    model_config = ConfigDict(extra="forbid")

    name: Annotated[str | None, Field(default=None, min_length=1, max_length=200)]
    subject: Annotated[str | None, Field(default=None, min_length=1)]
    html: str | None = None
    text: str | None = None
    category: str | None = None
    active: bool | None = None


class TemplateValidation(BaseModel):
    """Outcome of checking template sources before they are stored."""

    valid: bool
    placeholders: list[str] = Field(default_factory=list)
    missing: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


class EmailTemplate(BaseModel):
    """A stored email template."""

    id: int
    name: str
    subject: str
    html: str | None = None
    text: str | None = None
    category: str | None = None
    active: bool = True
    created_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> EmailTemplate:
        return cls(
            id=row["id"],
            name=row["name"],
            subject=row["subject"],
            html=row.get("html"),
            text=row.get("text"),
            category=row.get("category"),
            active=bool(row.get("active", 1)),
            created_at=from_epoch(row.get("created_ts")),
        )


__all__ = [
    "ALLOWED_TRANSITIONS",
    "DeliveryLogRecord",
    "DeliveryOutcome",
    "EmailTemplate",
    "MessageCreate",
    "PRIORITY_RANKS",
    "Priority",
    "ProcessingSummary",
    "QueueEntry",
    "QueueStats",
    "QueueStatus",
    "ResolvedContent",
    "TemplateCreate",
    "TemplateUpdate",
    "TemplateValidation",
    "ensure_transition",
    "from_epoch",
    "to_epoch",
]
