# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Pydantic models and enumerations shared across the campaign mailer.

Models:
    - JobStatus: lifecycle of a single email job
    - CampaignKind: scheduled campaign or fire-and-forget direct send
    - SmtpSettings: SMTP endpoint and credentials supplied with a campaign
    - RecipientIn: one recipient of a campaign
    - AttachmentIn: one attachment (base64 content)
    - CampaignCreate: payload accepted when creating a campaign
"""

from __future__ import annotations

import base64
import binascii
import re
from enum import Enum
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_MAX_RETRIES = 3

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class JobStatus(str, Enum):
    """Status of an email job.

    ``SENDING`` is a transient lock state held only while a worker owns the
    job; every other value is either waiting (``PENDING``) or final.
    """

    PENDING = "PENDING"
    SENDING = "SENDING"
    SENT = "SENT"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


FINISHED_STATUSES = {JobStatus.SENT, JobStatus.FAILED, JobStatus.CANCELLED}


class CampaignKind(str, Enum):
    """Distinguishes planned campaigns from immediate direct sends.

    Direct sends are processed after scheduled campaign jobs in each batch.
    """

    SCHEDULED = "scheduled"
    DIRECT = "direct"


class SmtpSettings(BaseModel):
    """SMTP endpoint used by every job of a campaign."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    host: Annotated[str, Field(min_length=1, description="SMTP server hostname")]
    port: Annotated[int, Field(default=587, ge=1, le=65535, description="SMTP server port")]
    user: Annotated[str, Field(min_length=1, description="SMTP username (also the sender address)")]
    password: Annotated[str, Field(alias="pass", min_length=1, description="SMTP password")]
    secure: Annotated[bool, Field(default=False, description="Use TLS (implicit on 465, STARTTLS otherwise)")]
    from_name: Annotated[str | None, Field(default=None, alias="fromName", description="Display name of the sender")]


class RecipientIn(BaseModel):
    """A single recipient."""

    email: str
    name: str | None = None

    @field_validator("email")
    @classmethod
    def email_must_look_valid(cls, v: str) -> str:
        v = v.strip()
        if not EMAIL_RE.match(v):
            raise ValueError(f"invalid email address: {v!r}")
        return v


class AttachmentIn(BaseModel):
    """Attachment supplied inline as base64."""

    model_config = ConfigDict(populate_by_name=True)

    filename: Annotated[str, Field(min_length=1)]
    content: Annotated[str, Field(description="Base64 encoded file content")]
    content_type: Annotated[str, Field(default="application/octet-stream", alias="contentType")]

    @field_validator("content")
    @classmethod
    def content_must_be_base64(cls, v: str) -> str:
        try:
            base64.b64decode(v, validate=True)
        except (binascii.Error, ValueError):
            raise ValueError("content must be valid base64") from None
        return v


class CampaignCreate(BaseModel):
    """Payload for creating a campaign (or a direct send).

    Attributes:
        recipients: Addresses, either plain strings or ``{email, name}`` objects.
        subject: Message subject, may contain company placeholders.
        body: Message body (plain text or HTML), may contain placeholders.
        smtp_settings: SMTP endpoint and credentials.
        duration_minutes: Window over which sends are spread linearly.
        name: Optional campaign name.
        direct: True for an immediate direct send.
        start_at: Epoch seconds of the first send (defaults to now).
        max_retries: Retry ceiling for automatic processing (service default
            when omitted).
        attachments: Files attached to every message.
    """

    model_config = ConfigDict(populate_by_name=True)

    recipients: Annotated[list[RecipientIn], Field(min_length=1)]
    subject: Annotated[str, Field(min_length=1)]
    body: Annotated[str, Field(min_length=1)]
    smtp_settings: Annotated[SmtpSettings, Field(alias="smtpSettings")]
    duration_minutes: Annotated[float, Field(default=0, ge=0, alias="durationMinutes")]
    name: str | None = None
    direct: bool = False
    start_at: Annotated[int | None, Field(default=None, alias="startAt")]
    max_retries: Annotated[int | None, Field(default=None, ge=0, alias="maxRetries")]
    attachments: list[AttachmentIn] = Field(default_factory=list)

    @field_validator("recipients", mode="before")
    @classmethod
    def normalise_recipients(cls, v):
        if isinstance(v, list):
            return [{"email": item} if isinstance(item, str) else item for item in v]
        return v
