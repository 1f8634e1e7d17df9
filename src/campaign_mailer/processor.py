# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Queue processor: drains due email jobs in priority order.

One invocation of :meth:`QueueProcessor.process` selects a batch, handles its
jobs one after the other and records every outcome:

1. Scheduled campaign jobs that are due (oldest first)
2. Due direct-send jobs
3. Jobs whose retry backoff has elapsed
4. Manual triggers only: FAILED jobs regardless of their retry count, least
   retried first; skipped by continuation rounds

Each job is claimed with a conditional update before anything else happens,
so overlapping invocations (scheduler tick, manual trigger, continuation)
never deliver the same job twice. When a full batch was selected the
processor hands the next round to a :class:`~campaign_mailer.continuation.Continuation`
and returns without waiting for it.

Example:
    Running one round::

        processor = QueueProcessor(persistence, transport, encryption_key)
        summary = await processor.process(Trigger(manual=False, source="scheduler"))
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Protocol

from .continuation import Continuation, LocalContinuation
from .encryption import DecryptionError, decrypt_maybe_legacy, decrypt_strict, encrypt
from .enrichment import has_placeholder, replace_placeholders
from .logger import get_logger
from .models import DEFAULT_MAX_RETRIES, CampaignKind, JobStatus
from .persistence import Persistence
from .prometheus import MailerMetrics
from .tracking import html_to_text, inject_tracking, looks_like_html, text_to_html_with_tracking
from .transport import MailTransport

BATCH_SIZE = 10
RETRY_DELAY_SECONDS = 60

IDLE_MESSAGE = "No pending jobs due."
CONTINUATION_SOURCE = "continuation"


class CompanyResolver(Protocol):
    async def lookup(self, address: str) -> Optional[str]: ...


@dataclass(frozen=True)
class Trigger:
    """Who started a processing round.

    Attributes:
        manual: True for a user-initiated round; lifts the retry ceiling and
            includes FAILED jobs in the batch of the round it starts.
        source: Free-form label (``scheduler``, ``manual``, ``bypass``,
            ``continuation``...) used in logs and metrics.
    """

    manual: bool = False
    source: str = "scheduler"

    @property
    def is_continuation(self) -> bool:
        return self.source == CONTINUATION_SOURCE


class QueueProcessor:
    """Selects, claims and delivers email jobs.

    Attributes:
        persistence: Job store.
        transport: Mail transport used for every send.
        lookup: Optional company-name resolver for placeholder enrichment.
        continuation: Strategy that starts the next round after a full batch,
            or None to disable continuation.
        metrics: Prometheus collectors.
        batch_size: Maximum jobs selected per round.
        retry_delay: Seconds before a retryable failure is attempted again.
    """

    def __init__(
        self,
        persistence: Persistence,
        transport: MailTransport,
        encryption_key: str,
        *,
        lookup: CompanyResolver | None = None,
        continuation: Continuation | None = None,
        metrics: MailerMetrics | None = None,
        base_url: str = "http://localhost:8000",
        batch_size: int = BATCH_SIZE,
        retry_delay: int = RETRY_DELAY_SECONDS,
        stale_sending_seconds: int | None = None,
        log_delivery_activity: bool = False,
        logger=None,
        clock: Callable[[], int] | None = None,
    ):
        self.persistence = persistence
        self.transport = transport
        self.encryption_key = encryption_key
        self.lookup = lookup
        self.continuation = continuation if continuation is not None else LocalContinuation()
        self.metrics = metrics or MailerMetrics()
        self.base_url = base_url
        self.batch_size = max(1, int(batch_size))
        self.retry_delay = max(0, int(retry_delay))
        self.stale_sending_seconds = stale_sending_seconds or None
        self.logger = logger or get_logger("QueueProcessor")
        self._log_delivery_activity = bool(log_delivery_activity)
        self._clock = clock or self._utc_now_epoch

    @staticmethod
    def _utc_now_epoch() -> int:
        return int(datetime.now(timezone.utc).timestamp())

    # ------------------------------------------------------------------ round
    async def process(self, trigger: Trigger | None = None) -> dict[str, Any]:
        """Run one processing round.

        Returns:
            ``{"processed", "batchSize", "results"}`` when jobs were selected,
            otherwise ``{"processed": 0, "message", "futurePendingCount",
            "failedRetryableCount"}``.
        """
        trigger = trigger or Trigger()
        now = self._clock()

        if self.stale_sending_seconds:
            reclaimed = await self.persistence.reclaim_stale_sending(now - self.stale_sending_seconds)
            if reclaimed:
                self.logger.warning("Returned %d stale SENDING jobs to PENDING", reclaimed)

        batch = await self.select_batch(now, manual=trigger.manual, include_failed=not trigger.is_continuation)
        if not batch:
            future_pending = await self.persistence.count_future_pending(now)
            failed_retryable = await self.persistence.count_retryable_failed()
            self.logger.debug(
                "Nothing due (future pending=%d, retryable failed=%d)", future_pending, failed_retryable
            )
            return {
                "processed": 0,
                "message": IDLE_MESSAGE,
                "futurePendingCount": future_pending,
                "failedRetryableCount": failed_retryable,
            }

        self.logger.info(
            "Processing %d jobs (trigger=%s, manual=%s)", len(batch), trigger.source, trigger.manual
        )
        results: list[dict[str, Any]] = []
        for job in batch:
            try:
                outcome = await self._process_job(job, trigger)
            except Exception as exc:
                self.logger.exception("Unexpected error while processing job %s", job["id"])
                await self.persistence.mark_failed(job["id"], f"Unexpected error: {exc}")
                self.metrics.inc_failed("unexpected")
                outcome = {"id": job["id"], "success": False}
            if outcome is not None:
                results.append(outcome)

        if len(batch) >= self.batch_size and self.continuation is not None:
            self.logger.info("Full batch processed, scheduling continuation")
            self.continuation.submit(Trigger(manual=trigger.manual, source=CONTINUATION_SOURCE), self.process)

        await self._refresh_pending_gauge()
        return {"processed": len(results), "batchSize": len(batch), "results": results}

    async def select_batch(self, now: int, *, manual: bool, include_failed: bool = True) -> list[dict[str, Any]]:
        """Build the prioritised batch for one round.

        FAILED jobs join only when ``manual`` and ``include_failed`` are both
        set. Continuation rounds pass ``include_failed=False``, so one manual
        trigger retries each failed job at most once.
        """
        batch = await self.persistence.fetch_due_jobs(CampaignKind.SCHEDULED, now=now, limit=self.batch_size)
        remaining = self.batch_size - len(batch)
        if remaining > 0:
            batch += await self.persistence.fetch_due_jobs(CampaignKind.DIRECT, now=now, limit=remaining)
            remaining = self.batch_size - len(batch)
        if remaining > 0:
            batch += await self.persistence.fetch_due_retries(now=now, limit=remaining)
            remaining = self.batch_size - len(batch)
        if remaining > 0 and manual and include_failed:
            batch += await self.persistence.fetch_failed_jobs(limit=remaining)
        return batch

    # -------------------------------------------------------------------- job
    async def _process_job(self, job: dict[str, Any], trigger: Trigger) -> dict[str, Any] | None:
        job_id = job["id"]
        if not await self.persistence.claim_job(job_id, self._clock()):
            self.metrics.inc_claim_conflict()
            self.logger.debug("Job %s already claimed elsewhere, skipping", job_id)
            return None

        retry_count = int(job.get("retry_count") or 0)
        max_retries = int(job.get("max_retries") if job.get("max_retries") is not None else DEFAULT_MAX_RETRIES)
        if not trigger.manual and retry_count >= max_retries:
            await self.persistence.mark_failed(job_id, f"Max retries exceeded ({retry_count}/{max_retries})")
            self.metrics.inc_failed("max_retries")
            return {"id": job_id, "success": False}

        key = self.encryption_key
        try:
            password = decrypt_strict(job["smtp_password"], key)
        except DecryptionError as exc:
            self.logger.error("Credential decryption failed for job %s", job_id)
            await self.persistence.mark_failed(job_id, f"Credential error: {exc}")
            self.metrics.inc_failed("credentials")
            return {"id": job_id, "success": False}

        try:
            recipient = decrypt_maybe_legacy(job["recipient"], key)
            subject = decrypt_maybe_legacy(job["subject"], key)
            body = decrypt_maybe_legacy(job["body"], key)
            attachments = [
                {
                    "filename": decrypt_maybe_legacy(att["filename"], key),
                    "content": decrypt_maybe_legacy(att["content"], key),
                    "content_type": att["content_type"],
                }
                for att in await self.persistence.get_attachments(job["campaign_id"])
            ]
        except DecryptionError as exc:
            self.logger.error("Content decryption failed for job %s", job_id)
            await self.persistence.mark_failed(job_id, f"Content decryption error: {exc}")
            self.metrics.inc_failed("content")
            return {"id": job_id, "success": False}

        if has_placeholder(subject) or has_placeholder(body):
            company = await self._resolve_company(recipient)
            subject = replace_placeholders(subject, company)
            body = replace_placeholders(body, company)
            await self.persistence.update_job_content(job_id, encrypt(subject, key), encrypt(body, key))

        if looks_like_html(body):
            html = inject_tracking(body, job["tracking_id"], self.base_url)
            text = html_to_text(body)
        else:
            html = text_to_html_with_tracking(body, job["tracking_id"], self.base_url)
            text = body

        config = {
            "host": job["smtp_host"],
            "port": job["smtp_port"],
            "secure": bool(job["smtp_secure"]),
            "user": self._decrypt_or_raw(job["smtp_user"]),
            "password": password,
            "from_name": self._decrypt_or_raw(job.get("smtp_from_name")),
        }
        if self._log_delivery_activity:
            self.logger.info("Attempting delivery for job %s to %s", job_id, recipient)

        result = await self.transport.send(recipient, subject, text, html, config, attachments)

        if result.success:
            was_failed = job.get("status") == JobStatus.FAILED.value
            await self.persistence.mark_sent(
                job_id, self._clock(), sent_via_cron=trigger.manual and was_failed
            )
            self.metrics.inc_sent(trigger.source)
            if self._log_delivery_activity:
                self.logger.info("Delivery succeeded for job %s (message-id=%s)", job_id, result.message_id)
            return {"id": job_id, "success": True}

        failure = result.failure
        detail = failure.detail if failure else "Unknown transport error"
        if failure is not None and failure.retryable:
            attempt = retry_count + 1
            await self.persistence.schedule_retry(
                job_id,
                self._clock() + self.retry_delay,
                f"{detail} (retry {attempt}/{max_retries})",
            )
            self.metrics.inc_retried()
            self.logger.warning(
                "Temporary error for job %s (attempt %d/%d): %s - retrying in %ds",
                job_id, attempt, max_retries, detail, self.retry_delay,
            )
            return {"id": job_id, "success": False, "retrying": True}

        await self.persistence.mark_failed(job_id, detail, increment_retry=True)
        self.metrics.inc_failed("permanent")
        self.logger.warning("Permanent error for job %s: %s", job_id, detail)
        return {"id": job_id, "success": False}

    async def _resolve_company(self, recipient: str) -> Optional[str]:
        if self.lookup is None:
            return None
        try:
            return await self.lookup.lookup(recipient)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.logger.debug("Company lookup failed: %s", exc)
            return None

    def _decrypt_or_raw(self, value: str | None) -> str | None:
        if not value:
            return value
        try:
            return decrypt_maybe_legacy(value, self.encryption_key)
        except DecryptionError:
            return value

    async def _refresh_pending_gauge(self) -> None:
        try:
            count = await self.persistence.count_active_jobs()
        except Exception:  # pragma: no cover
            self.logger.exception("Failed to refresh pending gauge")
            return
        self.metrics.set_pending(count)
