# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Error taxonomy of the delivery queue.

Operator-facing calls (enqueue, cancel, retry) raise these directly so the
caller can react. Transport failures never escape a processing tick: they
are recorded on the entry and drive the retry/failed transition. Only
:class:`StoreUnavailableError` aborts a tick.
"""

from __future__ import annotations

from typing import Any


class DeliveryQueueError(RuntimeError):
    """Base class for every error raised by the delivery queue."""

    code = "delivery_queue_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        """Serialize the error for command responses."""
        return {"ok": False, "error": self.message, "code": self.code}


class ValidationError(DeliveryQueueError):
    """Malformed enqueue request; nothing was persisted."""

    code = "validation_error"


class TemplateResolutionError(DeliveryQueueError):
    """Unknown template or render failure; nothing was persisted."""

    code = "template_resolution_error"

    def __init__(self, message: str, template_id: int | None = None):
        super().__init__(message)
        self.template_id = template_id


class TransportError(DeliveryQueueError):
    """A delivery attempt failed."""

    code = "transport_error"


class NotFoundError(DeliveryQueueError):
    """Operator action targets an unknown queue entry or template."""

    code = "not_found"

    def __init__(self, entry_id: int, what: str = "queue entry"):
        super().__init__(f"{what} {entry_id} not found")
        self.entry_id = entry_id


class InvalidStateError(DeliveryQueueError):
    """Operator action targets an entry in the wrong state."""

    code = "invalid_state"

    def __init__(self, message: str, entry_id: int | None = None, status: str | None = None):
        super().__init__(message)
        self.entry_id = entry_id
        self.status = status


class StoreUnavailableError(DeliveryQueueError):
    """The durable store cannot be reached."""

    code = "store_unavailable"


__all__ = [
    "DeliveryQueueError",
    "InvalidStateError",
    "NotFoundError",
    "StoreUnavailableError",
    "TemplateResolutionError",
    "TransportError",
    "ValidationError",
]
