# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Settings of the delivery queue and their loader."""

from __future__ import annotations

import configparser
import os
from dataclasses import dataclass
from pathlib import Path

TRANSPORT_CHOICES = ("smtp", "sendgrid", "fallback", "none", "auto")


@dataclass
class QueueSettings:
    """Runtime settings. Defaults match a single-node back-office deployment."""

    db_path: str = "/data/delivery_queue.db"

    # Queue behaviour
    batch_size: int = 50
    max_attempts: int = 3
    retry_delay_seconds: int = 300
    send_pause_seconds: float = 0.2
    lease_seconds: int = 600
    stale_sending_seconds: int = 900
    log_retention_days: int = 90
    tick_interval_seconds: float = 60.0
    prune_interval_seconds: float = 86400.0
    max_enqueue_batch: int = 1000

    # Transport
    transport: str = "auto"
    default_from: str = "noreply@example.com"
    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_user: str | None = None
    smtp_password: str | None = None
    smtp_use_tls: bool | None = None
    smtp_timeout: float = 30.0
    sendgrid_api_key: str | None = None

    # HTTP server
    api_token: str | None = None
    http_host: str = "0.0.0.0"
    http_port: int = 8000
    scheduler_active: bool = True

    # Logging
    log_level: str = "INFO"
    log_delivery_activity: bool = False


def load_settings(config_path: str | os.PathLike[str] | None = None) -> QueueSettings:
    """
    Load configuration from an INI file (default: config.ini) with environment variables as fallbacks.

    Environment variables (all prefixed with DQ_):
      DQ_CONFIG - Path to config.ini file (default: config.ini)
      DQ_DB_PATH - Database path (default: /data/delivery_queue.db)
      DQ_DB_PATH_OVERRIDE - Database path that wins over the file (set by ``serve --db``)
      DQ_BATCH_SIZE, DQ_MAX_ATTEMPTS, DQ_RETRY_DELAY, DQ_SEND_PAUSE,
      DQ_LEASE_SECONDS, DQ_STALE_SENDING_SECONDS, DQ_LOG_RETENTION_DAYS,
      DQ_TICK_INTERVAL, DQ_PRUNE_INTERVAL, DQ_MAX_ENQUEUE_BATCH - Queue tuning
      DQ_TRANSPORT - smtp, sendgrid, fallback, none or auto (default: auto)
      DQ_DEFAULT_FROM - Sender address
      DQ_SMTP_HOST, DQ_SMTP_PORT, DQ_SMTP_USER, DQ_SMTP_PASSWORD, DQ_SMTP_USE_TLS
      DQ_SENDGRID_API_KEY - SendGrid API key
      DQ_HOST, DQ_PORT, DQ_API_TOKEN, DQ_SCHEDULER_ACTIVE - HTTP server
      DQ_LOG_LEVEL - Logging level (default: INFO)
      DQ_LOG_DELIVERY_ACTIVITY - Log each delivery attempt (default: False)

    Config file sections/keys:
      [storage] db_path
      [queue] batch_size, max_attempts, retry_delay_seconds, send_pause_seconds,
              lease_seconds, stale_sending_seconds, log_retention_days,
              tick_interval_seconds, prune_interval_seconds, max_enqueue_batch
      [transport] kind, default_from, smtp_host, smtp_port, smtp_user,
                  smtp_password, smtp_use_tls, smtp_timeout, sendgrid_api_key
      [server] host, port, api_token, scheduler_active
      [logging] level, delivery_activity
    """
    path = Path(config_path or os.getenv("DQ_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    parser.read(path)
    defaults = QueueSettings()

    def get(section: str, option: str, fallback: str | None = None) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return fallback

    def get_int(section: str, option: str, fallback: str | None, default: int) -> int:
        value = get(section, option, fallback)
        if value is None or value == "":
            return default
        return int(value)

    def get_float(section: str, option: str, fallback: str | None, default: float) -> float:
        value = get(section, option, fallback)
        if value is None or value == "":
            return default
        return float(value)

    def get_bool(section: str, option: str, fallback: str | None, default: bool | None) -> bool | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        normalized = str(value).strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        return default

    transport = (get("transport", "kind", os.getenv("DQ_TRANSPORT")) or defaults.transport).strip().lower()
    if transport not in TRANSPORT_CHOICES:
        raise ValueError(f"unknown transport '{transport}', expected one of {', '.join(TRANSPORT_CHOICES)}")

    token = get("server", "api_token", os.getenv("DQ_API_TOKEN"))
    if isinstance(token, str):
        token = token.strip() or None

    return QueueSettings(
        db_path=os.path.expanduser(
            os.getenv("DQ_DB_PATH_OVERRIDE")
            or get("storage", "db_path", os.getenv("DQ_DB_PATH"))
            or defaults.db_path
        ),
        batch_size=get_int("queue", "batch_size", os.getenv("DQ_BATCH_SIZE"), defaults.batch_size),
        max_attempts=get_int("queue", "max_attempts", os.getenv("DQ_MAX_ATTEMPTS"), defaults.max_attempts),
        retry_delay_seconds=get_int(
            "queue", "retry_delay_seconds", os.getenv("DQ_RETRY_DELAY"), defaults.retry_delay_seconds
        ),
        send_pause_seconds=get_float(
            "queue", "send_pause_seconds", os.getenv("DQ_SEND_PAUSE"), defaults.send_pause_seconds
        ),
        lease_seconds=get_int("queue", "lease_seconds", os.getenv("DQ_LEASE_SECONDS"), defaults.lease_seconds),
        stale_sending_seconds=get_int(
            "queue", "stale_sending_seconds", os.getenv("DQ_STALE_SENDING_SECONDS"),
            defaults.stale_sending_seconds,
        ),
        log_retention_days=get_int(
            "queue", "log_retention_days", os.getenv("DQ_LOG_RETENTION_DAYS"), defaults.log_retention_days
        ),
        tick_interval_seconds=get_float(
            "queue", "tick_interval_seconds", os.getenv("DQ_TICK_INTERVAL"), defaults.tick_interval_seconds
        ),
        prune_interval_seconds=get_float(
            "queue", "prune_interval_seconds", os.getenv("DQ_PRUNE_INTERVAL"), defaults.prune_interval_seconds
        ),
        max_enqueue_batch=get_int(
            "queue", "max_enqueue_batch", os.getenv("DQ_MAX_ENQUEUE_BATCH"), defaults.max_enqueue_batch
        ),
        transport=transport,
        default_from=get("transport", "default_from", os.getenv("DQ_DEFAULT_FROM")) or defaults.default_from,
        smtp_host=get("transport", "smtp_host", os.getenv("DQ_SMTP_HOST")) or None,
        smtp_port=get_int("transport", "smtp_port", os.getenv("DQ_SMTP_PORT"), defaults.smtp_port),
        smtp_user=get("transport", "smtp_user", os.getenv("DQ_SMTP_USER")) or None,
        smtp_password=get("transport", "smtp_password", os.getenv("DQ_SMTP_PASSWORD")) or None,
        smtp_use_tls=get_bool("transport", "smtp_use_tls", os.getenv("DQ_SMTP_USE_TLS"), None),
        smtp_timeout=get_float("transport", "smtp_timeout", os.getenv("DQ_SMTP_TIMEOUT"), defaults.smtp_timeout),
        sendgrid_api_key=get("transport", "sendgrid_api_key", os.getenv("DQ_SENDGRID_API_KEY")) or None,
        api_token=token,
        http_host=get("server", "host", os.getenv("DQ_HOST")) or defaults.http_host,
        http_port=get_int("server", "port", os.getenv("DQ_PORT"), defaults.http_port),
        scheduler_active=bool(
            get_bool("server", "scheduler_active", os.getenv("DQ_SCHEDULER_ACTIVE"), defaults.scheduler_active)
        ),
        log_level=(get("logging", "level", os.getenv("DQ_LOG_LEVEL")) or defaults.log_level).upper(),
        log_delivery_activity=bool(
            get_bool("logging", "delivery_activity", os.getenv("DQ_LOG_DELIVERY_ACTIVITY"), False)
        ),
    )


__all__ = ["QueueSettings", "TRANSPORT_CHOICES", "load_settings"]
