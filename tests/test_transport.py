import asyncio
import base64

import aiosmtplib
import pytest

from campaign_mailer.transport import (
    FailureKind,
    MailTransport,
    SendResult,
    build_message,
    classify_error,
)

CONFIG = {
    "host": "smtp.example.com",
    "port": 587,
    "secure": True,
    "user": "sender@example.com",
    "password": "secret",
    "from_name": "Jane Sender",
}


class DummyPool:
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    async def send_message(self, params, message):
        self.calls.append((params, message))
        if self.error is not None:
            raise self.error
        return {}, "OK"


@pytest.mark.parametrize(
    "exc",
    [
        asyncio.TimeoutError(),
        ConnectionRefusedError("refused"),
        ConnectionResetError("reset"),
        aiosmtplib.SMTPServerDisconnected("Server disconnected"),
        OSError("connect ETIMEDOUT 10.0.0.1:587"),
        OSError("getaddrinfo ECONNREFUSED"),
        RuntimeError("Connection reset by peer"),
        aiosmtplib.SMTPConnectTimeoutError("Timed out connecting; timeout exceeded"),
    ],
)
def test_network_errors_are_retryable(exc):
    failure = classify_error(exc)
    assert failure.kind is FailureKind.RETRYABLE
    assert failure.retryable


def test_authentication_error_is_permanent_with_hint():
    failure = classify_error(aiosmtplib.SMTPAuthenticationError(535, "5.7.8 Username and Password not accepted"))
    assert failure.kind is FailureKind.PERMANENT
    assert failure.code == 535
    assert failure.detail == "Authentication failed (535). Check SMTP username and password."


@pytest.mark.parametrize(
    "exc",
    [
        aiosmtplib.SMTPResponseException(550, "Mailbox unavailable"),
        aiosmtplib.SMTPResponseException(451, "Try again later"),
        ValueError("bad address"),
    ],
)
def test_other_errors_are_permanent(exc):
    assert classify_error(exc).kind is FailureKind.PERMANENT


def test_build_message_sets_headers_and_alternatives():
    msg = build_message("rcpt@example.com", "Hello", "plain", "<p>html</p>", CONFIG)

    assert msg["From"] == "Jane Sender <sender@example.com>"
    assert msg["To"] == "rcpt@example.com"
    assert msg["Subject"] == "Hello"
    assert msg["Message-ID"].endswith("@example.com>")
    assert msg.get_body(("plain",)).get_content().strip() == "plain"
    assert msg.get_body(("html",)).get_content().strip() == "<p>html</p>"


def test_build_message_without_from_name_uses_bare_address():
    msg = build_message("rcpt@example.com", "Hello", "plain", None, {**CONFIG, "from_name": None})
    assert msg["From"] == "sender@example.com"
    assert not msg.is_multipart()


def test_build_message_decodes_attachments():
    content = base64.b64encode(b"%PDF-1.4 test").decode("ascii")
    msg = build_message(
        "rcpt@example.com",
        "Offer",
        "see attached",
        None,
        CONFIG,
        [{"filename": "offer.pdf", "content": content, "content_type": "application/pdf"}],
    )

    (attachment,) = list(msg.iter_attachments())
    assert attachment.get_filename() == "offer.pdf"
    assert attachment.get_content_type() == "application/pdf"
    assert attachment.get_content() == b"%PDF-1.4 test"


@pytest.mark.asyncio
async def test_send_success_returns_message_id():
    pool = DummyPool()
    transport = MailTransport(pool)

    result = await transport.send("rcpt@example.com", "Hi", "text", "<p>text</p>", CONFIG)

    assert result.success is True
    assert result.message_id
    (params, message) = pool.calls[0]
    assert params.host == "smtp.example.com"
    assert params.port == 587
    assert params.secure is True
    assert params.user == "sender@example.com"
    assert message["Message-ID"] == result.message_id


@pytest.mark.asyncio
async def test_send_never_raises_on_smtp_errors():
    transport = MailTransport(DummyPool(aiosmtplib.SMTPAuthenticationError(535, "denied")))

    result = await transport.send("rcpt@example.com", "Hi", "text", None, CONFIG)

    assert isinstance(result, SendResult)
    assert result.success is False
    assert result.failure.kind is FailureKind.PERMANENT
    assert "535" in result.failure.detail


@pytest.mark.asyncio
async def test_invalid_attachment_is_permanent_failure_without_send():
    pool = DummyPool()
    transport = MailTransport(pool)

    result = await transport.send(
        "rcpt@example.com",
        "Hi",
        "text",
        None,
        CONFIG,
        [{"filename": "x.bin", "content": "not base64!!", "content_type": "application/octet-stream"}],
    )

    assert result.success is False
    assert result.failure.kind is FailureKind.PERMANENT
    assert pool.calls == []
