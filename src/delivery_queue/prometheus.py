# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics for monitoring the delivery queue.

All metrics use the ``dq_`` prefix and are labeled by priority where the
label is meaningful.

Metrics exposed:
    - ``dq_sent_total``: Entries delivered.
    - ``dq_failed_total``: Entries that exhausted their attempts.
    - ``dq_retried_total``: Failed attempts rescheduled for retry.
    - ``dq_cancelled_total``: Entries cancelled by an operator.
    - ``dq_ticks_total``: Processing ticks by result (processed, skipped, error).
    - ``dq_pending_entries``: Entries currently pending.

Example:
    Accessing metrics via the REST API::

        GET /metrics
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class QueueMetrics:
    """Prometheus metrics collector for the delivery queue.

    Attributes:
        registry: The Prometheus CollectorRegistry holding all metrics.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        self.registry = registry or CollectorRegistry()
        self.sent = Counter(
            "dq_sent_total", "Total delivered entries", ["priority"], registry=self.registry
        )
        self.failed = Counter(
            "dq_failed_total", "Total permanently failed entries", ["priority"], registry=self.registry
        )
        self.retried = Counter(
            "dq_retried_total", "Total attempts rescheduled for retry", ["priority"], registry=self.registry
        )
        self.cancelled = Counter(
            "dq_cancelled_total", "Total cancelled entries", registry=self.registry
        )
        self.ticks = Counter(
            "dq_ticks_total", "Processing ticks by result", ["result"], registry=self.registry
        )
        self.pending = Gauge(
            "dq_pending_entries", "Current pending entries", registry=self.registry
        )

    def inc_sent(self, priority: str) -> None:
        self.sent.labels(priority=priority or "normal").inc()

    def inc_failed(self, priority: str) -> None:
        self.failed.labels(priority=priority or "normal").inc()

    def inc_retried(self, priority: str) -> None:
        self.retried.labels(priority=priority or "normal").inc()

    def inc_cancelled(self) -> None:
        self.cancelled.inc()

    def inc_tick(self, result: str) -> None:
        """Count a tick; result is ``processed``, ``skipped`` or ``error``."""
        self.ticks.labels(result=result).inc()

    def set_pending(self, value: int) -> None:
        self.pending.set(value)

    def generate_latest(self) -> bytes:
        """Export all metrics in Prometheus text exposition format."""
        return generate_latest(self.registry)
