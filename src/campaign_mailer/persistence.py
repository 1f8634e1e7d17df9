# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SQLite-backed persistence layer for the campaign mailer.

This module provides the Persistence class that handles all database
operations, including:

- Users and login sessions (owners of campaigns)
- Campaigns, their attachments and one email job per recipient
- The queue operations used by the processor: tiered selection of due
  jobs, the atomic claim and outcome recording
- Open, click and survey tracking

The persistence layer uses aiosqlite. Each operation opens and closes its own
connection, so the class is safe to share between concurrent tasks; the claim
is a single conditional ``UPDATE`` and is therefore atomic across them.

Timestamps are UTC epoch seconds. Columns holding user content or SMTP
credentials store ciphertext produced by :mod:`campaign_mailer.encryption`;
this layer never sees plaintext for them.

Example:
    Basic usage of the persistence layer::

        persistence = Persistence("/data/campaigns.db")
        await persistence.init_db()

        jobs = await persistence.fetch_due_jobs(CampaignKind.SCHEDULED, now=now, limit=10)
        for job in jobs:
            if await persistence.claim_job(job["id"], now):
                ...
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import aiosqlite

from .models import CampaignKind, JobStatus

_JOB_COLUMNS = """
    j.id, j.campaign_id, j.recipient, j.subject, j.body, j.status,
    j.scheduled_for, j.original_scheduled_for, j.sent_at, j.error,
    j.retry_count, j.max_retries, j.next_retry_at, j.claimed_at,
    j.tracking_id, j.open_count, j.opened_at, j.survey_choice,
    j.sent_via_cron, j.bounced
"""

_QUEUE_COLUMNS = _JOB_COLUMNS + """,
    c.user_id AS campaign_user_id, c.kind AS campaign_kind, c.host AS smtp_host,
    c.port AS smtp_port, c.secure AS smtp_secure, c.user AS smtp_user,
    c.password AS smtp_password, c.from_name AS smtp_from_name
"""


class Persistence:
    """Async SQLite persistence layer for campaigns and the email job queue.

    Attributes:
        db_path: Path to the SQLite database file, or ":memory:" for an
            in-memory database.
    """

    def __init__(self, db_path: str = "/data/campaigns.db"):
        """Initialize the persistence layer with a database path.

        Args:
            db_path: Path to the SQLite database file.
        """
        self.db_path = db_path or ":memory:"

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA foreign_keys = ON")
            yield db

    @staticmethod
    def _rows_to_dicts(rows: Iterable[Tuple[Any, ...]], columns: Sequence[str]) -> List[Dict[str, Any]]:
        return [dict(zip(columns, row)) for row in rows]

    @staticmethod
    def _decode_job(job: Dict[str, Any]) -> Dict[str, Any]:
        for flag in ("sent_via_cron", "bounced", "smtp_secure"):
            if flag in job and job[flag] is not None:
                job[flag] = bool(job[flag])
        return job

    async def init_db(self) -> None:
        """Create the schema. Idempotent."""
        async with self._connect() as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    email TEXT UNIQUE NOT NULL,
                    password_hash TEXT NOT NULL,
                    created_at INTEGER NOT NULL
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS sessions (
                    token TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    expires_at INTEGER NOT NULL,
                    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS campaigns (
                    id TEXT PRIMARY KEY,
                    user_id TEXT,
                    kind TEXT NOT NULL DEFAULT 'scheduled',
                    name TEXT,
                    host TEXT NOT NULL,
                    port INTEGER NOT NULL,
                    secure INTEGER NOT NULL DEFAULT 0,
                    user TEXT NOT NULL,
                    password TEXT NOT NULL,
                    from_name TEXT,
                    created_at INTEGER NOT NULL,
                    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS attachments (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    campaign_id TEXT NOT NULL,
                    filename TEXT NOT NULL,
                    content TEXT NOT NULL,
                    content_type TEXT NOT NULL,
                    FOREIGN KEY (campaign_id) REFERENCES campaigns(id) ON DELETE CASCADE
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS email_jobs (
                    id TEXT PRIMARY KEY,
                    campaign_id TEXT NOT NULL,
                    recipient TEXT NOT NULL,
                    subject TEXT NOT NULL,
                    body TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'PENDING',
                    scheduled_for INTEGER NOT NULL,
                    original_scheduled_for INTEGER,
                    sent_at INTEGER,
                    error TEXT,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    max_retries INTEGER NOT NULL DEFAULT 3,
                    next_retry_at INTEGER,
                    claimed_at INTEGER,
                    tracking_id TEXT UNIQUE NOT NULL,
                    open_count INTEGER NOT NULL DEFAULT 0,
                    opened_at INTEGER,
                    ip_address TEXT,
                    survey_choice TEXT,
                    survey_clicked_at INTEGER,
                    sent_via_cron INTEGER NOT NULL DEFAULT 0,
                    bounced INTEGER NOT NULL DEFAULT 0,
                    FOREIGN KEY (campaign_id) REFERENCES campaigns(id) ON DELETE CASCADE
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS clicks (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    job_id TEXT NOT NULL,
                    url TEXT NOT NULL,
                    clicked_at INTEGER NOT NULL,
                    FOREIGN KEY (job_id) REFERENCES email_jobs(id) ON DELETE CASCADE
                )
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_jobs_status_scheduled ON email_jobs(status, scheduled_for)"
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_jobs_campaign ON email_jobs(campaign_id)"
            )
            await db.commit()

    # Users and sessions -------------------------------------------------------
    async def add_user(self, user: Dict[str, Any]) -> None:
        """Insert a user. Raises ``aiosqlite.IntegrityError`` on duplicate email."""
        async with self._connect() as db:
            await db.execute(
                "INSERT INTO users (id, email, password_hash, created_at) VALUES (?, ?, ?, ?)",
                (user["id"], user["email"].lower(), user["password_hash"], user["created_at"]),
            )
            await db.commit()

    async def get_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        async with self._connect() as db:
            async with db.execute("SELECT * FROM users WHERE email=?", (email.lower(),)) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                cols = [c[0] for c in cur.description]
        return dict(zip(cols, row))

    async def create_session(self, token: str, user_id: str, expires_at: int) -> None:
        async with self._connect() as db:
            await db.execute(
                "INSERT INTO sessions (token, user_id, expires_at) VALUES (?, ?, ?)",
                (token, user_id, expires_at),
            )
            await db.commit()

    async def get_session_user(self, token: str, now: int) -> Optional[Dict[str, Any]]:
        """Return the user owning a non-expired session token, or None."""
        async with self._connect() as db:
            async with db.execute(
                """
                SELECT u.id, u.email
                FROM sessions s JOIN users u ON u.id = s.user_id
                WHERE s.token=? AND s.expires_at > ?
                """,
                (token, now),
            ) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                cols = [c[0] for c in cur.description]
        return dict(zip(cols, row))

    async def delete_session(self, token: str) -> None:
        async with self._connect() as db:
            await db.execute("DELETE FROM sessions WHERE token=?", (token,))
            await db.commit()

    # Campaigns ----------------------------------------------------------------
    async def create_campaign(
        self,
        campaign: Dict[str, Any],
        jobs: Sequence[Dict[str, Any]],
        attachments: Sequence[Dict[str, Any]] = (),
    ) -> None:
        """Persist a campaign with its jobs and attachments in one transaction."""
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO campaigns
                (id, user_id, kind, name, host, port, secure, user, password, from_name, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    campaign["id"],
                    campaign.get("user_id"),
                    CampaignKind(campaign.get("kind", CampaignKind.SCHEDULED)).value,
                    campaign.get("name"),
                    campaign["host"],
                    int(campaign["port"]),
                    1 if campaign.get("secure") else 0,
                    campaign["user"],
                    campaign["password"],
                    campaign.get("from_name"),
                    campaign["created_at"],
                ),
            )
            await db.executemany(
                """
                INSERT INTO attachments (campaign_id, filename, content, content_type)
                VALUES (?, ?, ?, ?)
                """,
                [
                    (campaign["id"], att["filename"], att["content"], att["content_type"])
                    for att in attachments
                ],
            )
            await db.executemany(
                """
                INSERT INTO email_jobs
                (id, campaign_id, recipient, subject, body, status, scheduled_for, max_retries, tracking_id)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        job["id"],
                        campaign["id"],
                        job["recipient"],
                        job["subject"],
                        job["body"],
                        JobStatus.PENDING.value,
                        job["scheduled_for"],
                        int(job.get("max_retries", 3)),
                        job["tracking_id"],
                    )
                    for job in jobs
                ],
            )
            await db.commit()

    async def get_campaign(self, campaign_id: str) -> Optional[Dict[str, Any]]:
        async with self._connect() as db:
            async with db.execute("SELECT * FROM campaigns WHERE id=?", (campaign_id,)) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                cols = [c[0] for c in cur.description]
        campaign = dict(zip(cols, row))
        campaign["secure"] = bool(campaign["secure"])
        return campaign

    async def list_campaigns(self, user_id: str) -> List[Dict[str, Any]]:
        """Return the user's campaigns, newest first, with per-status job counts."""
        async with self._connect() as db:
            async with db.execute(
                """
                SELECT c.id, c.kind, c.name, c.host, c.port, c.secure, c.created_at,
                       COUNT(j.id) AS total,
                       COALESCE(SUM(CASE WHEN j.status='PENDING' THEN 1 ELSE 0 END), 0) AS pending,
                       COALESCE(SUM(CASE WHEN j.status='SENDING' THEN 1 ELSE 0 END), 0) AS sending,
                       COALESCE(SUM(CASE WHEN j.status='SENT' THEN 1 ELSE 0 END), 0) AS sent,
                       COALESCE(SUM(CASE WHEN j.status='FAILED' THEN 1 ELSE 0 END), 0) AS failed,
                       COALESCE(SUM(CASE WHEN j.status='CANCELLED' THEN 1 ELSE 0 END), 0) AS cancelled,
                       COALESCE(SUM(CASE WHEN j.open_count > 0 THEN 1 ELSE 0 END), 0) AS opened
                FROM campaigns c
                LEFT JOIN email_jobs j ON j.campaign_id = c.id
                WHERE c.user_id = ?
                GROUP BY c.id
                ORDER BY c.created_at DESC, c.id ASC
                """,
                (user_id,),
            ) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        result = self._rows_to_dicts(rows, cols)
        for campaign in result:
            campaign["secure"] = bool(campaign["secure"])
        return result

    async def delete_campaign(self, campaign_id: str) -> bool:
        """Delete a campaign; jobs, attachments and clicks cascade."""
        async with self._connect() as db:
            cursor = await db.execute("DELETE FROM campaigns WHERE id=?", (campaign_id,))
            await db.commit()
            return cursor.rowcount > 0

    async def cancel_campaign(self, campaign_id: str) -> int:
        """Cancel every still pending job of a campaign. Returns the count."""
        async with self._connect() as db:
            cursor = await db.execute(
                "UPDATE email_jobs SET status=? WHERE campaign_id=? AND status=?",
                (JobStatus.CANCELLED.value, campaign_id, JobStatus.PENDING.value),
            )
            await db.commit()
            return cursor.rowcount

    async def get_attachments(self, campaign_id: str) -> List[Dict[str, Any]]:
        async with self._connect() as db:
            async with db.execute(
                "SELECT id, filename, content, content_type FROM attachments WHERE campaign_id=? ORDER BY id",
                (campaign_id,),
            ) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return self._rows_to_dicts(rows, cols)

    # Jobs ---------------------------------------------------------------------
    async def list_jobs(self, campaign_id: str) -> List[Dict[str, Any]]:
        async with self._connect() as db:
            async with db.execute(
                f"""
                SELECT {_JOB_COLUMNS}
                FROM email_jobs j
                WHERE j.campaign_id=?
                ORDER BY j.scheduled_for ASC, j.id ASC
                """,
                (campaign_id,),
            ) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [self._decode_job(job) for job in self._rows_to_dicts(rows, cols)]

    async def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Return a job joined with its campaign columns."""
        async with self._connect() as db:
            async with db.execute(
                f"""
                SELECT {_QUEUE_COLUMNS}
                FROM email_jobs j JOIN campaigns c ON c.id = j.campaign_id
                WHERE j.id=?
                """,
                (job_id,),
            ) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                cols = [c[0] for c in cur.description]
        return self._decode_job(dict(zip(cols, row)))

    async def cancel_job(self, job_id: str) -> bool:
        """Cancel a job that has not been claimed yet."""
        async with self._connect() as db:
            cursor = await db.execute(
                "UPDATE email_jobs SET status=? WHERE id=? AND status=?",
                (JobStatus.CANCELLED.value, job_id, JobStatus.PENDING.value),
            )
            await db.commit()
            return cursor.rowcount > 0

    # Queue selection ------------------------------------------------------------
    async def _select_queue(
        self, where: str, params: Tuple[Any, ...], limit: int, order_by: str = "j.scheduled_for ASC, j.id ASC"
    ) -> List[Dict[str, Any]]:
        if limit <= 0:
            return []
        async with self._connect() as db:
            async with db.execute(
                f"""
                SELECT {_QUEUE_COLUMNS}
                FROM email_jobs j JOIN campaigns c ON c.id = j.campaign_id
                WHERE {where}
                ORDER BY {order_by}
                LIMIT ?
                """,
                (*params, limit),
            ) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [self._decode_job(job) for job in self._rows_to_dicts(rows, cols)]

    async def fetch_due_jobs(self, kind: CampaignKind, *, now: int, limit: int) -> List[Dict[str, Any]]:
        """Pending first attempts that are due, for campaigns of ``kind``."""
        return await self._select_queue(
            "j.status=? AND j.scheduled_for <= ? AND j.next_retry_at IS NULL AND c.kind=?",
            (JobStatus.PENDING.value, now, CampaignKind(kind).value),
            limit,
        )

    async def fetch_due_retries(self, *, now: int, limit: int) -> List[Dict[str, Any]]:
        """Pending jobs whose retry backoff has elapsed."""
        return await self._select_queue(
            "j.status=? AND j.next_retry_at IS NOT NULL AND j.next_retry_at <= ?",
            (JobStatus.PENDING.value, now),
            limit,
        )

    async def fetch_failed_jobs(self, *, limit: int) -> List[Dict[str, Any]]:
        """Failed jobs regardless of retry count (manual retry-all), least retried first."""
        return await self._select_queue(
            "j.status=?",
            (JobStatus.FAILED.value,),
            limit,
            order_by="j.retry_count ASC, j.scheduled_for ASC, j.id ASC",
        )

    # Claim and outcome --------------------------------------------------------
    async def claim_job(self, job_id: str, now: int) -> bool:
        """Atomically move a job from PENDING/FAILED to SENDING.

        Returns:
            True if this caller now owns the job, False if another worker
            claimed it first or it was cancelled/sent meanwhile.
        """
        async with self._connect() as db:
            cursor = await db.execute(
                """
                UPDATE email_jobs
                SET status=?, claimed_at=?
                WHERE id=? AND status IN (?, ?)
                """,
                (JobStatus.SENDING.value, now, job_id, JobStatus.PENDING.value, JobStatus.FAILED.value),
            )
            await db.commit()
            return cursor.rowcount == 1

    async def mark_sent(self, job_id: str, sent_at: int, *, sent_via_cron: bool = False) -> None:
        async with self._connect() as db:
            await db.execute(
                """
                UPDATE email_jobs
                SET status=?, sent_at=?, error=NULL, next_retry_at=NULL, claimed_at=NULL, sent_via_cron=?
                WHERE id=? AND status=?
                """,
                (JobStatus.SENT.value, sent_at, 1 if sent_via_cron else 0, job_id, JobStatus.SENDING.value),
            )
            await db.commit()

    async def mark_failed(self, job_id: str, error: str, *, increment_retry: bool = False) -> None:
        """Mark a claimed job as FAILED, optionally consuming one retry."""
        async with self._connect() as db:
            await db.execute(
                """
                UPDATE email_jobs
                SET status=?, error=?, next_retry_at=NULL, claimed_at=NULL,
                    retry_count = retry_count + ?
                WHERE id=? AND status=?
                """,
                (JobStatus.FAILED.value, error, 1 if increment_retry else 0, job_id, JobStatus.SENDING.value),
            )
            await db.commit()

    async def schedule_retry(self, job_id: str, next_retry_at: int, error: str) -> None:
        """Return a claimed job to PENDING with backoff.

        ``original_scheduled_for`` keeps the first planned send time across
        every retry of the job.
        """
        async with self._connect() as db:
            await db.execute(
                """
                UPDATE email_jobs
                SET status=?, retry_count = retry_count + 1, next_retry_at=?, error=?, claimed_at=NULL,
                    original_scheduled_for = COALESCE(original_scheduled_for, scheduled_for)
                WHERE id=? AND status=?
                """,
                (JobStatus.PENDING.value, next_retry_at, error, job_id, JobStatus.SENDING.value),
            )
            await db.commit()

    async def update_job_content(self, job_id: str, subject: str, body: str) -> None:
        """Store (encrypted) subject and body after placeholder substitution."""
        async with self._connect() as db:
            await db.execute(
                "UPDATE email_jobs SET subject=?, body=? WHERE id=?",
                (subject, body, job_id),
            )
            await db.commit()

    async def reclaim_stale_sending(self, claimed_before: int) -> int:
        """Return SENDING jobs claimed before ``claimed_before`` to PENDING."""
        async with self._connect() as db:
            cursor = await db.execute(
                """
                UPDATE email_jobs
                SET status=?, claimed_at=NULL
                WHERE status=? AND claimed_at IS NOT NULL AND claimed_at < ?
                """,
                (JobStatus.PENDING.value, JobStatus.SENDING.value, claimed_before),
            )
            await db.commit()
            return cursor.rowcount

    # Counters -----------------------------------------------------------------
    async def _count(self, where: str, params: Tuple[Any, ...]) -> int:
        async with self._connect() as db:
            async with db.execute(f"SELECT COUNT(*) FROM email_jobs WHERE {where}", params) as cur:
                row = await cur.fetchone()
        return int(row[0] if row else 0)

    async def count_future_pending(self, now: int) -> int:
        return await self._count("status=? AND scheduled_for > ?", (JobStatus.PENDING.value, now))

    async def count_retryable_failed(self) -> int:
        return await self._count("status=? AND retry_count < max_retries", (JobStatus.FAILED.value,))

    async def count_active_jobs(self) -> int:
        """Jobs still waiting for or undergoing delivery."""
        return await self._count(
            "status IN (?, ?)", (JobStatus.PENDING.value, JobStatus.SENDING.value)
        )

    async def count_by_status(self) -> Dict[str, int]:
        async with self._connect() as db:
            async with db.execute("SELECT status, COUNT(*) FROM email_jobs GROUP BY status") as cur:
                rows = await cur.fetchall()
        return {row[0]: int(row[1]) for row in rows}

    # Tracking -----------------------------------------------------------------
    async def get_job_by_tracking_id(self, tracking_id: str) -> Optional[Dict[str, Any]]:
        async with self._connect() as db:
            async with db.execute(
                "SELECT id, status, sent_at, opened_at, open_count FROM email_jobs WHERE tracking_id=?",
                (tracking_id,),
            ) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                cols = [c[0] for c in cur.description]
        return dict(zip(cols, row))

    async def record_open(self, tracking_id: str, now: int, ip_address: str | None) -> None:
        async with self._connect() as db:
            await db.execute(
                """
                UPDATE email_jobs
                SET opened_at = COALESCE(opened_at, ?), open_count = open_count + 1, ip_address=?
                WHERE tracking_id=?
                """,
                (now, ip_address, tracking_id),
            )
            await db.commit()

    async def record_click(self, job_id: str, url: str, now: int) -> None:
        async with self._connect() as db:
            await db.execute(
                "INSERT INTO clicks (job_id, url, clicked_at) VALUES (?, ?, ?)",
                (job_id, url, now),
            )
            await db.commit()

    async def list_clicks(self, job_id: str) -> List[Dict[str, Any]]:
        async with self._connect() as db:
            async with db.execute(
                "SELECT id, url, clicked_at FROM clicks WHERE job_id=? ORDER BY id", (job_id,)
            ) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return self._rows_to_dicts(rows, cols)

    async def record_survey_choice(self, tracking_id: str, choice: str, now: int) -> bool:
        async with self._connect() as db:
            cursor = await db.execute(
                "UPDATE email_jobs SET survey_choice=?, survey_clicked_at=? WHERE tracking_id=?",
                (choice, now, tracking_id),
            )
            await db.commit()
            return cursor.rowcount > 0
