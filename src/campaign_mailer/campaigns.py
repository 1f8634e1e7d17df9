# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Campaign creation, scheduling and owner-scoped management.

A campaign stores its SMTP settings once and one email job per recipient.
Send times are spread linearly across the requested window: with N
recipients and a window of D minutes the first job is due at the start, the
last at start + D, and the others evenly in between.

Everything secret or user-authored (SMTP credentials, names, recipients,
subjects, bodies, attachments) is encrypted before it reaches the database.
"""

from __future__ import annotations

import secrets
import uuid
from typing import Any

from .encryption import DecryptionError, decrypt_maybe_legacy, encrypt, encrypt_optional
from .models import DEFAULT_MAX_RETRIES, FINISHED_STATUSES, CampaignCreate, CampaignKind, JobStatus
from .persistence import Persistence


class CampaignNotFound(LookupError):
    """Campaign or job does not exist or belongs to another user."""

    def __init__(self, message: str = "Campaign not found"):
        super().__init__(message)


class JobAlreadyFinished(ValueError):
    """The job reached a final status and can no longer be cancelled."""

    def __init__(self, message: str = "Job already finished"):
        super().__init__(message)


def compute_schedule(count: int, start: int, duration_minutes: float) -> list[int]:
    """Return ``count`` send times spread linearly from ``start``."""
    if count <= 0:
        return []
    if duration_minutes <= 0 or count == 1:
        return [start] * count
    step = duration_minutes * 60 / (count - 1)
    return [start + int(round(i * step)) for i in range(count)]


def new_tracking_id() -> str:
    return secrets.token_urlsafe(18)


async def create_campaign(
    persistence: Persistence,
    owner_id: str | None,
    payload: CampaignCreate,
    key: str,
    now: int,
    default_max_retries: int = DEFAULT_MAX_RETRIES,
) -> dict[str, Any]:
    """Store a campaign with one scheduled job per recipient.

    Direct sends ignore ``start_at`` and ``duration_minutes``: every job is
    due immediately. Jobs take the payload's ``max_retries`` or, when it is
    omitted, ``default_max_retries``.

    Returns:
        Summary with ``id``, ``kind``, ``jobs`` count and the first and last
        send time.
    """
    kind = CampaignKind.DIRECT if payload.direct else CampaignKind.SCHEDULED
    if kind is CampaignKind.DIRECT:
        schedule = compute_schedule(len(payload.recipients), now, 0)
    else:
        start = payload.start_at if payload.start_at is not None else now
        schedule = compute_schedule(len(payload.recipients), start, payload.duration_minutes)

    max_retries = payload.max_retries if payload.max_retries is not None else default_max_retries
    smtp = payload.smtp_settings
    campaign_id = uuid.uuid4().hex
    campaign = {
        "id": campaign_id,
        "user_id": owner_id,
        "kind": kind,
        "name": encrypt_optional(payload.name, key),
        "host": smtp.host,
        "port": smtp.port,
        "secure": smtp.secure,
        "user": encrypt(smtp.user, key),
        "password": encrypt(smtp.password, key),
        "from_name": encrypt_optional(smtp.from_name, key),
        "created_at": now,
    }
    # subject and body are encrypted per job: placeholder substitution later
    # rewrites them individually
    jobs = [
        {
            "id": uuid.uuid4().hex,
            "recipient": encrypt(recipient.email, key),
            "subject": encrypt(payload.subject, key),
            "body": encrypt(payload.body, key),
            "scheduled_for": scheduled_for,
            "max_retries": max_retries,
            "tracking_id": new_tracking_id(),
        }
        for recipient, scheduled_for in zip(payload.recipients, schedule)
    ]
    attachments = [
        {
            "filename": encrypt(att.filename, key),
            "content": encrypt(att.content, key),
            "content_type": att.content_type,
        }
        for att in payload.attachments
    ]
    await persistence.create_campaign(campaign, jobs, attachments)
    return {
        "id": campaign_id,
        "kind": kind.value,
        "jobs": len(jobs),
        "first_send_at": schedule[0],
        "last_send_at": schedule[-1],
    }


def _reveal(value: str | None, key: str) -> str | None:
    if not value:
        return value
    try:
        return decrypt_maybe_legacy(value, key)
    except DecryptionError:
        return None


async def get_owned_campaign(persistence: Persistence, owner_id: str, campaign_id: str) -> dict[str, Any]:
    campaign = await persistence.get_campaign(campaign_id)
    if not campaign or campaign.get("user_id") != owner_id:
        raise CampaignNotFound()
    return campaign


def campaign_view(campaign: dict[str, Any], key: str) -> dict[str, Any]:
    """Public representation of a campaign row, without credentials."""
    view = {
        "id": campaign["id"],
        "kind": campaign["kind"],
        "name": _reveal(campaign.get("name"), key),
        "host": campaign["host"],
        "port": campaign["port"],
        "secure": bool(campaign["secure"]),
        "created_at": campaign["created_at"],
    }
    for counter in ("total", "pending", "sending", "sent", "failed", "cancelled", "opened"):
        if counter in campaign:
            view[counter] = campaign[counter]
    return view


def job_view(job: dict[str, Any], key: str) -> dict[str, Any]:
    return {
        "id": job["id"],
        "recipient": _reveal(job["recipient"], key),
        "status": job["status"],
        "scheduled_for": job["scheduled_for"],
        "original_scheduled_for": job.get("original_scheduled_for"),
        "sent_at": job.get("sent_at"),
        "error": job.get("error"),
        "retry_count": job.get("retry_count", 0),
        "max_retries": job.get("max_retries"),
        "next_retry_at": job.get("next_retry_at"),
        "open_count": job.get("open_count", 0),
        "opened_at": job.get("opened_at"),
        "survey_choice": job.get("survey_choice"),
    }


async def list_campaigns(persistence: Persistence, owner_id: str, key: str) -> list[dict[str, Any]]:
    return [campaign_view(c, key) for c in await persistence.list_campaigns(owner_id)]


async def list_campaign_jobs(
    persistence: Persistence, owner_id: str, campaign_id: str, key: str
) -> list[dict[str, Any]]:
    await get_owned_campaign(persistence, owner_id, campaign_id)
    return [job_view(job, key) for job in await persistence.list_jobs(campaign_id)]


async def cancel_campaign(persistence: Persistence, owner_id: str, campaign_id: str) -> int:
    """Cancel the still pending jobs of a campaign. Returns how many."""
    await get_owned_campaign(persistence, owner_id, campaign_id)
    return await persistence.cancel_campaign(campaign_id)


async def delete_campaign(persistence: Persistence, owner_id: str, campaign_id: str) -> None:
    await get_owned_campaign(persistence, owner_id, campaign_id)
    await persistence.delete_campaign(campaign_id)


async def cancel_job(persistence: Persistence, owner_id: str, job_id: str) -> None:
    """Cancel a single job.

    Raises:
        CampaignNotFound: Unknown job or owned by another user.
        JobAlreadyFinished: The job was already sent, failed or cancelled.
    """
    job = await persistence.get_job(job_id)
    if not job or job.get("campaign_user_id") != owner_id:
        raise CampaignNotFound("Job not found")
    if JobStatus(job["status"]) in FINISHED_STATUSES:
        raise JobAlreadyFinished()
    if not await persistence.cancel_job(job_id):
        # claimed by a worker between the read and the update
        raise JobAlreadyFinished("Job is being sent")
