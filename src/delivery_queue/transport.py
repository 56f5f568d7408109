# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Mail transports used by the delivery queue.

A transport takes a :class:`~delivery_queue.models.QueueEntry` and reports a
:class:`TransportResult`. Delivery problems go into the result, or are raised
as :class:`~delivery_queue.errors.TransportError`; either way the queue
records the reason and decides between retry and permanent failure.

Available transports:
    - SmtpTransport: aiosmtplib, one connection per send
    - SendGridTransport: SendGrid v3 HTTP API through aiohttp
    - FallbackTransport: tries a list of transports in order
    - UnconfiguredTransport: always raises, used when nothing is configured
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formatdate, make_msgid
from typing import TYPE_CHECKING, Any, Protocol

import aiohttp
import aiosmtplib

from .errors import TransportError
from .logger import get_logger

if TYPE_CHECKING:
    from .config import QueueSettings
    from .models import QueueEntry

SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"


@dataclass(frozen=True)
class TransportResult:
    ok: bool
    reason: str | None = None

    @classmethod
    def success(cls) -> TransportResult:
        return cls(True)

    @classmethod
    def failure(cls, reason: str) -> TransportResult:
        return cls(False, reason or "unknown transport error")


class MailTransport(Protocol):
    """Delivers one queue entry."""

    async def send(self, entry: QueueEntry) -> TransportResult: ...


def build_email(entry: QueueEntry, sender: str) -> EmailMessage:
    """Build the MIME message for an entry (plain text with an HTML alternative)."""
    msg = EmailMessage()
    msg["From"] = sender
    msg["To"] = entry.recipient
    if entry.cc:
        msg["Cc"] = ", ".join(entry.cc)
    msg["Subject"] = entry.subject
    msg["Date"] = formatdate(localtime=False)
    msg["Message-ID"] = make_msgid()
    msg["X-Queue-Entry-ID"] = str(entry.id)
    msg.set_content(entry.text_body or "")
    if entry.html_body:
        msg.add_alternative(entry.html_body, subtype="html")
    return msg


def _smtp_reason(exc: BaseException) -> str:
    code = getattr(exc, "code", None)
    message = getattr(exc, "message", None) or str(exc) or type(exc).__name__
    return f"{code} {message}" if code else message


class SmtpTransport:
    """Send through an SMTP server with aiosmtplib.

    TLS behavior based on port and use_tls flag:
    - Port 465 with use_tls=True: Direct TLS (implicit TLS)
    - Other ports with use_tls=True: STARTTLS
    - use_tls=False: Plain SMTP (no encryption)
    When ``use_tls`` is None it defaults to True on port 465 only.
    """

    def __init__(
        self,
        host: str,
        port: int = 587,
        *,
        user: str | None = None,
        password: str | None = None,
        use_tls: bool | None = None,
        sender: str = "noreply@example.com",
        timeout: float = 30.0,
        client_factory: Callable[..., Any] | None = None,
    ):
        self.host = host
        self.port = int(port)
        self.user = user
        self.password = password
        self.use_tls = self.port == 465 if use_tls is None else bool(use_tls)
        self.sender = sender
        self.timeout = timeout
        self._client_factory = client_factory or aiosmtplib.SMTP
        self.logger = get_logger("SmtpTransport")

    def _client(self) -> Any:
        if self.use_tls and self.port == 465:
            return self._client_factory(
                hostname=self.host, port=self.port, start_tls=False, use_tls=True, timeout=self.timeout
            )
        if self.use_tls:
            return self._client_factory(
                hostname=self.host, port=self.port, start_tls=True, use_tls=False, timeout=self.timeout
            )
        return self._client_factory(
            hostname=self.host, port=self.port, start_tls=False, use_tls=False, timeout=self.timeout
        )

    async def _deliver(self, msg: EmailMessage, recipients: list[str]) -> None:
        smtp = self._client()
        await smtp.connect()
        try:
            if self.user and self.password:
                await smtp.login(self.user, self.password)
            await smtp.send_message(msg, sender=self.sender, recipients=recipients)
        finally:
            try:
                await smtp.quit()
            except (aiosmtplib.SMTPException, OSError):
                pass  # Connection already gone

    async def send(self, entry: QueueEntry) -> TransportResult:
        msg = build_email(entry, self.sender)
        try:
            await asyncio.wait_for(self._deliver(msg, entry.all_recipients()), timeout=self.timeout)
        except asyncio.TimeoutError:
            return TransportResult.failure(f"SMTP timeout after {self.timeout:g}s")
        except (aiosmtplib.SMTPException, OSError) as exc:
            return TransportResult.failure(_smtp_reason(exc))
        return TransportResult.success()


class SendGridTransport:
    """Send through the SendGrid v3 mail API."""

    def __init__(
        self,
        api_key: str,
        *,
        sender: str = "noreply@example.com",
        url: str = SENDGRID_URL,
        timeout: float = 30.0,
        session_factory: Callable[[], aiohttp.ClientSession] | None = None,
    ):
        self.api_key = api_key
        self.sender = sender
        self.url = url
        self.timeout = timeout
        self._session_factory = session_factory or (
            lambda: aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
        )

    def payload(self, entry: QueueEntry) -> dict[str, Any]:
        personalization: dict[str, Any] = {"to": [{"email": entry.recipient}]}
        if entry.cc:
            personalization["cc"] = [{"email": addr} for addr in entry.cc]
        if entry.bcc:
            personalization["bcc"] = [{"email": addr} for addr in entry.bcc]
        # SendGrid requires text/plain before text/html
        content = []
        if entry.text_body:
            content.append({"type": "text/plain", "value": entry.text_body})
        if entry.html_body:
            content.append({"type": "text/html", "value": entry.html_body})
        return {
            "personalizations": [personalization],
            "from": {"email": self.sender},
            "subject": entry.subject,
            "content": content,
            "custom_args": {"queue_entry_id": str(entry.id)},
        }

    async def send(self, entry: QueueEntry) -> TransportResult:
        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            async with self._session_factory() as session:
                async with session.post(self.url, json=self.payload(entry), headers=headers) as resp:
                    if resp.status in (200, 202):
                        return TransportResult.success()
                    body = await resp.text()
                    return TransportResult.failure(f"SendGrid HTTP {resp.status}: {body[:200]}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            return TransportResult.failure(f"SendGrid request failed: {exc or type(exc).__name__}")


class FallbackTransport:
    """Try each transport in order; the first success wins."""

    def __init__(self, transports: Sequence[MailTransport]):
        if not transports:
            raise ValueError("FallbackTransport needs at least one transport")
        self.transports = list(transports)
        self.logger = get_logger("FallbackTransport")

    async def send(self, entry: QueueEntry) -> TransportResult:
        reasons: list[str] = []
        for transport in self.transports:
            try:
                result = await transport.send(entry)
            except TransportError as exc:
                result = TransportResult.failure(exc.message)
            if result.ok:
                return result
            self.logger.warning(
                "%s failed for entry %s: %s", type(transport).__name__, entry.id, result.reason
            )
            reasons.append(f"{type(transport).__name__}: {result.reason}")
        return TransportResult.failure("; ".join(reasons))


class UnconfiguredTransport:
    """Placeholder used when neither SMTP nor SendGrid is configured."""

    async def send(self, entry: QueueEntry) -> TransportResult:
        raise TransportError("no mail transport configured")


def build_transport(settings: QueueSettings) -> MailTransport:
    """Pick the transport described by the settings.

    ``auto`` uses SendGrid when an API key is set, SMTP when a host is set,
    and both (SendGrid first) when both are set.
    """
    smtp = (
        SmtpTransport(
            settings.smtp_host,
            settings.smtp_port,
            user=settings.smtp_user,
            password=settings.smtp_password,
            use_tls=settings.smtp_use_tls,
            sender=settings.default_from,
            timeout=settings.smtp_timeout,
        )
        if settings.smtp_host
        else None
    )
    sendgrid = (
        SendGridTransport(settings.sendgrid_api_key, sender=settings.default_from)
        if settings.sendgrid_api_key
        else None
    )
    kind = settings.transport
    if kind == "none":
        return UnconfiguredTransport()
    if kind == "smtp":
        if smtp is None:
            raise ValueError("smtp transport selected but smtp_host is not set")
        return smtp
    if kind == "sendgrid":
        if sendgrid is None:
            raise ValueError("sendgrid transport selected but sendgrid_api_key is not set")
        return sendgrid
    available = [t for t in (sendgrid, smtp) if t is not None]
    if kind == "fallback" and not available:
        raise ValueError("fallback transport selected but neither SendGrid nor SMTP is configured")
    if not available:
        return UnconfiguredTransport()
    if len(available) == 1:
        return available[0]
    return FallbackTransport(available)


__all__ = [
    "FallbackTransport",
    "MailTransport",
    "SENDGRID_URL",
    "SendGridTransport",
    "SmtpTransport",
    "TransportResult",
    "UnconfiguredTransport",
    "build_email",
    "build_transport",
]
