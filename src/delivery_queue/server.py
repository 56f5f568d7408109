# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""ASGI application entry point for uvicorn.

Builds the queue from the settings file and environment, and runs the tick
scheduler for the lifetime of the application.

Usage:
    uvicorn delivery_queue.server:app --host 0.0.0.0 --port 8000

Environment variables:
    DQ_CONFIG: Path to the INI settings file (default: config.ini)
    DQ_DB_PATH: Path to SQLite database (default: /data/delivery_queue.db)
    DQ_DB_PATH_OVERRIDE: Database path taking precedence over the INI file
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api import create_app
from .config import load_settings
from .core import DeliveryQueue
from .logger import configure_logging, get_logger
from .scheduler import TickScheduler

_settings = load_settings()
configure_logging(_settings.log_level)
_logger = get_logger("DeliveryQueueServer")

_queue = DeliveryQueue.from_settings(_settings)
_scheduler = TickScheduler(
    _queue,
    tick_interval=_settings.tick_interval_seconds,
    prune_interval=_settings.prune_interval_seconds,
)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Initialize the database and run the scheduler while the app is up."""
    await _queue.init()
    if _settings.scheduler_active:
        await _scheduler.start()
    else:
        _logger.info("Scheduler disabled; ticks run only through POST /queue/process")
    yield
    await _scheduler.stop()


app = create_app(_queue, api_token=_settings.api_token, lifespan=lifespan)
