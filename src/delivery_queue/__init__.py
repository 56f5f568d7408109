# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Durable outbound email delivery queue for the parks back office."""

from .core import DeliveryQueue
from .errors import (
    DeliveryQueueError,
    InvalidStateError,
    NotFoundError,
    StoreUnavailableError,
    TemplateResolutionError,
    TransportError,
    ValidationError,
)
from .models import MessageCreate, Priority, ProcessingSummary, QueueEntry, QueueStats, QueueStatus

__version__ = "0.4.0"

__all__ = [
    "DeliveryQueue",
    "DeliveryQueueError",
    "InvalidStateError",
    "MessageCreate",
    "NotFoundError",
    "Priority",
    "ProcessingSummary",
    "QueueEntry",
    "QueueStats",
    "QueueStatus",
    "StoreUnavailableError",
    "TemplateResolutionError",
    "TransportError",
    "ValidationError",
]
