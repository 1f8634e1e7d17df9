# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Core orchestration for the campaign mailer service.

:class:`CampaignMailerCore` wires the subsystems together and owns their
lifecycle:

- Persistence of users, campaigns and email jobs
- The queue processor and its continuation strategy
- SMTP delivery through the pooled, rate-limited transport
- Company lookup for placeholder enrichment
- A scheduler loop that runs the processor periodically (the in-process
  stand-in for an external cron), woken early by ``run now`` and by direct
  sends

Example:
    Running the service::

        core = CampaignMailerCore(load_settings())
        await core.start()
        ...
        await core.stop()
"""

from __future__ import annotations

import asyncio
import math
import uuid
from datetime import datetime, timezone
from typing import Any, Callable

from .auth import MIN_PASSWORD_LENGTH, hash_password, new_session_token, verify_password
from .campaigns import create_campaign
from .config_loader import ServiceSettings
from .continuation import Continuation, HttpContinuation, LocalContinuation
from .enrichment import CompanyLookup
from .logger import get_logger
from .models import CampaignCreate, CampaignKind, EMAIL_RE
from .persistence import Persistence
from .processor import QueueProcessor, Trigger
from .prometheus import MailerMetrics
from .rate_limit import RateLimiter
from .smtp_pool import SMTPPool
from .transport import MailTransport

POOL_CLEANUP_INTERVAL = 150


class RegistrationError(ValueError):
    """Registration rejected (invalid input or email already in use)."""


class CampaignMailerCore:
    """Central coordinator of the campaign mailer.

    Attributes:
        settings: Effective service settings.
        persistence: Database layer.
        pool: SMTP connection pool.
        transport: Mail transport built on ``pool``.
        lookup: Company-name resolver.
        continuation: Strategy used after full batches.
        processor: The queue processor.
        metrics: Prometheus collectors.
    """

    def __init__(
        self,
        settings: ServiceSettings | None = None,
        *,
        logger=None,
        metrics: MailerMetrics | None = None,
        pool: SMTPPool | None = None,
        transport: MailTransport | None = None,
        lookup: CompanyLookup | None = None,
        continuation: Continuation | None = None,
        clock: Callable[[], int] | None = None,
    ):
        self.settings = settings or ServiceSettings()
        s = self.settings
        self.logger = logger or get_logger()
        self.metrics = metrics or MailerMetrics()
        self.persistence = Persistence(s.db_path or ":memory:")
        self.pool = pool or SMTPPool(
            ttl=s.smtp_pool_ttl,
            rate_limiter=RateLimiter(max_per_window=max(1, s.smtp_rate_per_second), window_seconds=1.0),
        )
        self.transport = transport or MailTransport(self.pool)
        self.lookup = lookup or CompanyLookup(timeout=s.company_lookup_timeout)
        if continuation is None:
            if s.self_url:
                continuation = HttpContinuation(
                    s.self_url,
                    cron_secret=s.cron_secret,
                    bypass_header=s.bypass_header,
                    bypass_secret=s.bypass_secret,
                )
            else:
                continuation = LocalContinuation()
        self.continuation = continuation
        self._clock = clock or self._utc_now_epoch
        self.processor = QueueProcessor(
            self.persistence,
            self.transport,
            s.encryption_key or "",
            lookup=self.lookup,
            continuation=self.continuation,
            metrics=self.metrics,
            base_url=s.base_url,
            batch_size=s.batch_size,
            retry_delay=s.retry_delay_seconds,
            stale_sending_seconds=s.stale_sending_seconds,
            log_delivery_activity=s.log_delivery_activity,
            logger=self.logger,
            clock=self._clock,
        )

        self._active = bool(s.scheduler_active)
        self._poll_interval = float(s.poll_interval) if s.poll_interval else math.inf
        self._stop = asyncio.Event()
        self._wake_event = asyncio.Event()
        self._task_scheduler: asyncio.Task | None = None
        self._task_cleanup: asyncio.Task | None = None

    @staticmethod
    def _utc_now_epoch() -> int:
        return int(datetime.now(timezone.utc).timestamp())

    @property
    def encryption_key(self) -> str:
        """The server secret; raises ConfigurationError when unset."""
        return self.settings.require_encryption_key()

    async def init(self) -> None:
        await self.persistence.init_db()
        await self._refresh_queue_gauge()

    # ----------------------------------------------------------------- lifecycle
    async def start(self) -> None:
        """Initialise storage and start the scheduler and pool cleanup loops."""
        await self.init()
        self._stop.clear()
        self._task_scheduler = asyncio.create_task(self._scheduler_loop(), name="campaign-scheduler-loop")
        self._task_cleanup = asyncio.create_task(self._cleanup_loop(), name="smtp-cleanup-loop")
        self.logger.info("Campaign mailer started (scheduler active=%s)", self._active)

    async def stop(self) -> None:
        self._stop.set()
        self._wake_event.set()
        if self._task_cleanup:
            self._task_cleanup.cancel()
        tasks = [task for task in (self._task_scheduler, self._task_cleanup) if task]
        await asyncio.gather(*tasks, return_exceptions=True)
        await self.continuation.aclose()
        await self.lookup.close()
        await self.pool.close()

    # ---------------------------------------------------------------- commands
    async def handle_command(self, cmd: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        """Execute a control command.

        Supported commands: ``run now``, ``suspend``, ``activate``,
        ``process`` (payload ``manual``) and ``stats``.
        """
        payload = payload or {}
        match cmd:
            case "run now":
                self._wake_event.set()
                return {"ok": True}
            case "suspend":
                self._active = False
                return {"ok": True, "active": False}
            case "activate":
                self._active = True
                self._wake_event.set()
                return {"ok": True, "active": True}
            case "process":
                manual = bool(payload.get("manual", False))
                result = await self.process(Trigger(manual=manual, source="manual" if manual else "command"))
                return {"ok": True, **result}
            case "stats":
                return {"ok": True, "active": self._active, "jobs": await self.persistence.count_by_status()}
            case _:
                return {"ok": False, "error": "unknown command"}

    async def process(self, trigger: Trigger | None = None) -> dict[str, Any]:
        """Run one processing round. Raises ConfigurationError without a key."""
        self.processor.encryption_key = self.encryption_key
        return await self.processor.process(trigger or Trigger())

    async def create_campaign(self, owner_id: str | None, payload: CampaignCreate) -> dict[str, Any]:
        summary = await create_campaign(
            self.persistence,
            owner_id,
            payload,
            self.encryption_key,
            self._clock(),
            default_max_retries=self.settings.default_max_retries,
        )
        self.logger.info(
            "Campaign %s created (%s, %d jobs)", summary["id"], summary["kind"], summary["jobs"]
        )
        await self._refresh_queue_gauge()
        if summary["kind"] == CampaignKind.DIRECT.value:
            self._wake_event.set()
        return summary

    # -------------------------------------------------------------------- users
    async def register_user(self, email: str, password: str) -> dict[str, Any]:
        email = (email or "").strip().lower()
        if not EMAIL_RE.match(email):
            raise RegistrationError("Invalid email address")
        if len(password or "") < MIN_PASSWORD_LENGTH:
            raise RegistrationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        if await self.persistence.get_user_by_email(email):
            raise RegistrationError("Email already registered")
        user = {
            "id": uuid.uuid4().hex,
            "email": email,
            "password_hash": hash_password(password),
            "created_at": self._clock(),
        }
        await self.persistence.add_user(user)
        return {"id": user["id"], "email": email}

    async def login(self, email: str, password: str) -> str | None:
        """Return a new session token, or None for bad credentials."""
        user = await self.persistence.get_user_by_email((email or "").strip())
        if not user or not verify_password(password or "", user["password_hash"]):
            return None
        token = new_session_token()
        await self.persistence.create_session(token, user["id"], self._clock() + self.settings.session_ttl_seconds)
        return token

    async def session_user(self, token: str | None) -> dict[str, Any] | None:
        if not token:
            return None
        return await self.persistence.get_session_user(token, self._clock())

    async def logout(self, token: str | None) -> None:
        if token:
            await self.persistence.delete_session(token)

    # ---------------------------------------------------------------- scheduler
    async def _scheduler_loop(self) -> None:
        while not self._stop.is_set():
            if self._active:
                try:
                    await self.process(Trigger(manual=False, source="scheduler"))
                except Exception as exc:
                    self.logger.exception("Unhandled error in scheduler loop: %s", exc)
            await self._wait_for_wakeup(self._poll_interval)

    async def _wait_for_wakeup(self, timeout: float | None) -> None:
        if self._stop.is_set():
            return
        if timeout is None or math.isinf(timeout):
            await self._wake_event.wait()
            self._wake_event.clear()
            return
        try:
            await asyncio.wait_for(self._wake_event.wait(), timeout=max(0.0, timeout))
        except asyncio.TimeoutError:
            return
        self._wake_event.clear()

    async def _cleanup_loop(self) -> None:
        while not self._stop.is_set():
            await asyncio.sleep(POOL_CLEANUP_INTERVAL)
            await self.pool.cleanup()

    async def _refresh_queue_gauge(self) -> None:
        try:
            count = await self.persistence.count_active_jobs()
        except Exception:  # pragma: no cover
            self.logger.exception("Failed to refresh queue gauge")
            return
        self.metrics.set_pending(count)
