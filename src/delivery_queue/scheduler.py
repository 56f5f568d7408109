# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Periodic trigger for the delivery queue.

The queue never schedules itself. :class:`TickScheduler` runs two loops next
to it: one calls :meth:`DeliveryQueue.process_tick` every tick interval, the
other prunes the delivery log once per prune interval. A failing iteration
is logged and the loop carries on with the next one.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import TYPE_CHECKING

from .logger import get_logger

if TYPE_CHECKING:
    from .core import DeliveryQueue


class TickScheduler:
    """Drive ``process_tick`` and ``prune_logs`` on fixed intervals."""

    def __init__(
        self,
        queue: DeliveryQueue,
        *,
        tick_interval: float = 60.0,
        prune_interval: float = 86400.0,
        logger=None,
    ):
        self.queue = queue
        self.tick_interval = max(0.01, float(tick_interval))
        self.prune_interval = max(0.01, float(prune_interval))
        self.logger = logger or get_logger("TickScheduler")
        self._stop = asyncio.Event()
        self._wake = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def start(self) -> None:
        """Start the tick and prune loops."""
        if self.running:
            return
        self._stop.clear()
        self._tasks = [
            asyncio.create_task(self._tick_loop(), name="delivery-queue-tick"),
            asyncio.create_task(self._prune_loop(), name="delivery-queue-prune"),
        ]
        self.logger.info(
            "Scheduler started (tick every %gs, prune every %gs)",
            self.tick_interval,
            self.prune_interval,
        )

    async def stop(self) -> None:
        """Stop both loops, letting a running tick finish."""
        self._stop.set()
        self._wake.set()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks = []
        self.logger.info("Scheduler stopped")

    def trigger(self) -> None:
        """Run the next tick now instead of waiting for the interval."""
        self._wake.set()

    async def _sleep(self, timeout: float, wake: asyncio.Event | None = None) -> None:
        waiters = [asyncio.ensure_future(self._stop.wait())]
        if wake is not None:
            waiters.append(asyncio.ensure_future(wake.wait()))
        try:
            await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()
        if wake is not None:
            wake.clear()

    async def _tick_loop(self) -> None:
        while not self._stop.is_set():
            try:
                await self.queue.process_tick()
            except Exception:
                self.logger.exception("Processing tick failed, retrying at next interval")
            await self._sleep(self.tick_interval, self._wake)

    async def _prune_loop(self) -> None:
        while not self._stop.is_set():
            try:
                await self.queue.prune_logs()
            except Exception:
                self.logger.exception("Delivery log pruning failed")
            await self._sleep(self.prune_interval)


__all__ = ["TickScheduler"]
