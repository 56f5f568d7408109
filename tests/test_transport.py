import asyncio
from datetime import datetime, timezone

import aiohttp
import aiosmtplib
import pytest

from delivery_queue.config import QueueSettings
from delivery_queue.errors import TransportError
from delivery_queue.models import QueueEntry
from delivery_queue.transport import (
    FallbackTransport,
    SendGridTransport,
    SmtpTransport,
    TransportResult,
    UnconfiguredTransport,
    build_email,
    build_transport,
)

NOW = datetime(2025, 6, 2, 8, 0, tzinfo=timezone.utc)


def make_entry(**overrides) -> QueueEntry:
    data = dict(
        id=7,
        recipient="ranger@example.org",
        cc=["chief@example.org"],
        bcc=["audit@example.org"],
        subject="Roster",
        html_body="<p>Roster</p>",
        text_body="Roster",
        scheduled_for=NOW,
        max_attempts=3,
        created_at=NOW,
        updated_at=NOW,
    )
    data.update(overrides)
    return QueueEntry(**data)


class DummySMTP:
    instances: list["DummySMTP"] = []

    def __init__(self, fail_with=None, delay=0.0, **kwargs):
        self.kwargs = kwargs
        self.fail_with = fail_with
        self.delay = delay
        self.logged_in = None
        self.sent = []
        self.quit_called = False
        DummySMTP.instances.append(self)

    async def connect(self):
        if self.delay:
            await asyncio.sleep(self.delay)

    async def login(self, user, password):
        self.logged_in = (user, password)

    async def send_message(self, msg, sender=None, recipients=None):
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append((msg, sender, recipients))

    async def quit(self):
        self.quit_called = True


@pytest.fixture(autouse=True)
def reset_instances():
    DummySMTP.instances = []


def smtp_factory(**behaviour):
    def factory(**kwargs):
        return DummySMTP(**behaviour, **kwargs)

    return factory


def test_build_email_headers_and_parts():
    msg = build_email(make_entry(), "parks@example.org")

    assert msg["From"] == "parks@example.org"
    assert msg["To"] == "ranger@example.org"
    assert msg["Cc"] == "chief@example.org"
    assert msg["Bcc"] is None
    assert msg["X-Queue-Entry-ID"] == "7"
    assert msg.is_multipart()
    assert msg.get_body(("html",)).get_content().strip() == "<p>Roster</p>"
    assert msg.get_body(("plain",)).get_content().strip() == "Roster"


@pytest.mark.asyncio
async def test_smtp_send_uses_every_recipient_and_logs_in():
    transport = SmtpTransport(
        "smtp.example.org", 587, user="u", password="p", sender="parks@example.org",
        client_factory=smtp_factory(),
    )

    result = await transport.send(make_entry())

    assert result == TransportResult.success()
    client = DummySMTP.instances[0]
    assert client.kwargs["start_tls"] is True
    assert client.kwargs["use_tls"] is False
    assert client.logged_in == ("u", "p")
    _, sender, recipients = client.sent[0]
    assert sender == "parks@example.org"
    assert recipients == ["ranger@example.org", "chief@example.org", "audit@example.org"]
    assert client.quit_called is True


@pytest.mark.parametrize(
    "port,use_tls,expected",
    [
        (465, None, {"use_tls": True, "start_tls": False}),
        (587, None, {"use_tls": False, "start_tls": False}),
        (587, True, {"use_tls": False, "start_tls": True}),
        (25, False, {"use_tls": False, "start_tls": False}),
    ],
)
def test_smtp_tls_selection(port, use_tls, expected):
    transport = SmtpTransport("smtp.example.org", port, use_tls=use_tls, client_factory=smtp_factory())

    client = transport._client()

    assert {k: client.kwargs[k] for k in expected} == expected


@pytest.mark.asyncio
async def test_smtp_rejection_becomes_failure_with_code():
    error = aiosmtplib.SMTPResponseException(550, "mailbox unavailable")
    transport = SmtpTransport("smtp.example.org", client_factory=smtp_factory(fail_with=error))

    result = await transport.send(make_entry())

    assert result.ok is False
    assert result.reason == "550 mailbox unavailable"
    assert DummySMTP.instances[0].quit_called is True


@pytest.mark.asyncio
async def test_smtp_connection_error_becomes_failure():
    transport = SmtpTransport(
        "smtp.example.org", client_factory=smtp_factory(fail_with=ConnectionRefusedError("refused"))
    )

    result = await transport.send(make_entry())

    assert result.ok is False
    assert "refused" in result.reason


@pytest.mark.asyncio
async def test_smtp_timeout_becomes_failure():
    transport = SmtpTransport("smtp.example.org", timeout=0.05, client_factory=smtp_factory(delay=1.0))

    result = await transport.send(make_entry())

    assert result.ok is False
    assert result.reason == "SMTP timeout after 0.05s"


class DummyResponse:
    def __init__(self, status, body=""):
        self.status = status
        self.body = body

    async def text(self):
        return self.body

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class DummySession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.posts = []

    def post(self, url, json=None, headers=None):
        self.posts.append((url, json, headers))
        if self.error is not None:
            raise self.error
        return self.response

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


@pytest.mark.asyncio
async def test_sendgrid_accepted():
    session = DummySession(DummyResponse(202))
    transport = SendGridTransport("SG.key", sender="parks@example.org", session_factory=lambda: session)

    result = await transport.send(make_entry())

    assert result.ok is True
    url, payload, headers = session.posts[0]
    assert url == "https://api.sendgrid.com/v3/mail/send"
    assert headers == {"Authorization": "Bearer SG.key"}
    assert payload["personalizations"][0]["bcc"] == [{"email": "audit@example.org"}]
    assert [c["type"] for c in payload["content"]] == ["text/plain", "text/html"]
    assert payload["custom_args"] == {"queue_entry_id": "7"}


@pytest.mark.asyncio
async def test_sendgrid_error_status():
    session = DummySession(DummyResponse(400, '{"errors": ["bad from"]}'))
    transport = SendGridTransport("SG.key", session_factory=lambda: session)

    result = await transport.send(make_entry(html_body=None))

    assert result.ok is False
    assert result.reason.startswith("SendGrid HTTP 400")
    assert "bad from" in result.reason


@pytest.mark.asyncio
async def test_sendgrid_client_error():
    session = DummySession(error=aiohttp.ClientConnectionError("dns failure"))
    transport = SendGridTransport("SG.key", session_factory=lambda: session)

    result = await transport.send(make_entry())

    assert result.ok is False
    assert "dns failure" in result.reason


class ScriptedTransport:
    def __init__(self, outcome):
        self.outcome = outcome
        self.calls = 0

    async def send(self, entry):
        self.calls += 1
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


@pytest.mark.asyncio
async def test_fallback_tries_next_transport():
    first = ScriptedTransport(TransportResult.failure("quota exceeded"))
    second = ScriptedTransport(TransportResult.success())

    result = await FallbackTransport([first, second]).send(make_entry())

    assert result.ok is True
    assert (first.calls, second.calls) == (1, 1)


@pytest.mark.asyncio
async def test_fallback_joins_reasons_when_all_fail():
    first = ScriptedTransport(TransportResult.failure("quota exceeded"))
    second = ScriptedTransport(TransportError("relay down"))

    result = await FallbackTransport([first, second]).send(make_entry())

    assert result.ok is False
    assert result.reason == "ScriptedTransport: quota exceeded; ScriptedTransport: relay down"


def test_fallback_needs_transports():
    with pytest.raises(ValueError):
        FallbackTransport([])


@pytest.mark.asyncio
async def test_unconfigured_transport_raises():
    with pytest.raises(TransportError, match="no mail transport configured"):
        await UnconfiguredTransport().send(make_entry())


def test_build_transport_choices():
    assert isinstance(build_transport(QueueSettings()), UnconfiguredTransport)
    assert isinstance(build_transport(QueueSettings(transport="none", smtp_host="h")), UnconfiguredTransport)

    smtp = build_transport(QueueSettings(smtp_host="smtp.example.org", smtp_port=465))
    assert isinstance(smtp, SmtpTransport)
    assert smtp.use_tls is True

    sendgrid = build_transport(QueueSettings(transport="sendgrid", sendgrid_api_key="SG.key"))
    assert isinstance(sendgrid, SendGridTransport)

    both = build_transport(QueueSettings(smtp_host="smtp.example.org", sendgrid_api_key="SG.key"))
    assert isinstance(both, FallbackTransport)
    assert [type(t) for t in both.transports] == [SendGridTransport, SmtpTransport]

    with pytest.raises(ValueError):
        build_transport(QueueSettings(transport="smtp"))
    with pytest.raises(ValueError):
        build_transport(QueueSettings(transport="sendgrid"))
    with pytest.raises(ValueError):
        build_transport(QueueSettings(transport="fallback"))
