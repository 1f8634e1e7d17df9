# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Outgoing mail transport built on the SMTP connection pool.

:class:`MailTransport` turns a rendered message into an
:class:`email.message.EmailMessage`, sends it through :class:`SMTPPool` and
reports the outcome as a :class:`SendResult`. SMTP and network errors never
escape ``send``: they are classified into a typed :class:`TransportFailure`
so the processor can decide between retry and permanent failure without
parsing strings.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from enum import Enum
from typing import Any, Iterable, Mapping

import aiosmtplib

from .logger import get_logger
from .smtp_pool import SMTPPool, SmtpParams

logger = get_logger("MailTransport")

_RETRYABLE_MARKERS = ("timeout", "etimedout", "econnrefused", "econnreset", "connection refused", "connection reset")


class FailureKind(str, Enum):
    RETRYABLE = "retryable"
    PERMANENT = "permanent"


@dataclass(frozen=True)
class TransportFailure:
    """Why a send failed.

    Attributes:
        kind: Whether retrying later may succeed.
        detail: Human readable error stored on the job.
        code: SMTP reply code when the server produced one.
    """

    kind: FailureKind
    detail: str
    code: int | None = None

    @property
    def retryable(self) -> bool:
        return self.kind is FailureKind.RETRYABLE


@dataclass(frozen=True)
class SendResult:
    success: bool
    message_id: str | None = None
    failure: TransportFailure | None = None

    @classmethod
    def ok(cls, message_id: str | None) -> "SendResult":
        return cls(success=True, message_id=message_id)

    @classmethod
    def failed(cls, failure: TransportFailure) -> "SendResult":
        return cls(success=False, failure=failure)


def classify_error(exc: BaseException) -> TransportFailure:
    """Classify a send exception as retryable or permanent.

    Timeouts, refused or reset connections and server disconnects are
    retryable, as is any error whose text mentions a timeout or a refused or
    reset connection. Everything else (authentication, rejected recipients,
    TLS misconfiguration, DNS failures) is permanent.
    """
    code = getattr(exc, "code", None) if isinstance(exc, aiosmtplib.SMTPException) else None
    if not isinstance(code, int):
        code = None
    detail = str(exc) or type(exc).__name__

    if code == 535:
        return TransportFailure(
            FailureKind.PERMANENT,
            "Authentication failed (535). Check SMTP username and password.",
            code,
        )

    if isinstance(
        exc,
        (
            asyncio.TimeoutError,
            TimeoutError,
            ConnectionRefusedError,
            ConnectionResetError,
            aiosmtplib.SMTPServerDisconnected,
        ),
    ):
        return TransportFailure(FailureKind.RETRYABLE, detail, code)

    lowered = detail.lower()
    if any(marker in lowered for marker in _RETRYABLE_MARKERS):
        return TransportFailure(FailureKind.RETRYABLE, detail, code)

    return TransportFailure(FailureKind.PERMANENT, detail, code)


def build_message(
    to: str,
    subject: str,
    text: str,
    html: str | None,
    config: Mapping[str, Any],
    attachments: Iterable[Mapping[str, Any]] = (),
) -> EmailMessage:
    """Build the MIME message sent for one job.

    ``config`` carries ``user`` (also the sender address) and an optional
    ``from_name``. Attachment ``content`` is base64 text or raw bytes.

    Raises:
        ValueError: If an attachment carries invalid base64 content.
    """
    msg = EmailMessage()
    sender = config["user"]
    from_name = config.get("from_name")
    msg["From"] = formataddr((from_name, sender)) if from_name else sender
    msg["To"] = to
    msg["Subject"] = subject
    msg["Message-ID"] = make_msgid(domain=sender.rpartition("@")[2] or None)
    msg.set_content(text or "")
    if html:
        msg.add_alternative(html, subtype="html")

    for att in attachments:
        content = att["content"]
        if isinstance(content, str):
            try:
                content = base64.b64decode(content, validate=True)
            except (binascii.Error, ValueError):
                raise ValueError(f"Attachment {att.get('filename')!r} is not valid base64") from None
        content_type = att.get("content_type") or "application/octet-stream"
        if "/" in content_type:
            maintype, subtype = content_type.split("/", 1)
        else:
            maintype, subtype = "application", "octet-stream"
        msg.add_attachment(content, maintype=maintype, subtype=subtype, filename=att.get("filename") or "file.bin")
    return msg


class MailTransport:
    """Sends rendered messages through an injected :class:`SMTPPool`."""

    def __init__(self, pool: SMTPPool):
        self.pool = pool

    async def send(
        self,
        to: str,
        subject: str,
        text: str,
        html: str | None,
        config: Mapping[str, Any],
        attachments: Iterable[Mapping[str, Any]] = (),
    ) -> SendResult:
        """Send one message.

        Args:
            to: Recipient address.
            subject: Subject line.
            text: Plain-text alternative.
            html: HTML alternative, or None for a text-only message.
            config: ``host``, ``port``, ``user``, ``password``, ``secure`` and
                optional ``from_name``.
            attachments: Items with ``filename``, ``content``, ``content_type``.
        """
        try:
            msg = build_message(to, subject, text, html, config, attachments)
        except ValueError as exc:
            return SendResult.failed(TransportFailure(FailureKind.PERMANENT, str(exc)))

        params = SmtpParams(
            host=config["host"],
            port=int(config["port"]),
            user=config.get("user"),
            password=config.get("password"),
            secure=bool(config.get("secure")),
        )
        try:
            await self.pool.send_message(params, msg)
        except Exception as exc:
            failure = classify_error(exc)
            logger.warning(
                "SMTP send via %s:%s failed (%s): %s",
                params.host, params.port, failure.kind.value, failure.detail,
            )
            return SendResult.failed(failure)
        return SendResult.ok(msg["Message-ID"])
