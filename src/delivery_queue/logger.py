# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Logging helpers for the delivery queue."""

from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def get_logger(name: str = "DeliveryQueue") -> logging.Logger:
    """Return a named logger; configuration is left to the entry point."""
    return logging.getLogger(name)


def configure_logging(level: str | int = "INFO") -> None:
    """Configure root logging once, for CLI and server entry points."""
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)
