# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Asyncio-friendly SMTP connection pool keyed by credential set.

Every distinct ``(host, port, user, password, secure)`` combination gets one
cached :class:`aiosmtplib.SMTP` connection. Use of a connection is serialised
with a per-key lock, so a campaign never opens more than one concurrent
connection to its server, and each key is throttled by a
:class:`~campaign_mailer.rate_limit.RateLimiter`.

The pool handles the connection lifecycle:

- TTL-based expiration of idle connections
- Health checking via SMTP NOOP before reuse
- Eviction when a send fails with a connection-level error
- Graceful cleanup of expired connections

Example:
    Sending through the pool::

        pool = SMTPPool(ttl=300)
        params = SmtpParams("smtp.example.com", 465, "me@example.com", "secret", True)
        await pool.send_message(params, message)

        # Periodically clean up stale connections
        await pool.cleanup()
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Any, NamedTuple

import aiosmtplib

from .logger import get_logger
from .rate_limit import RateLimiter

logger = get_logger("SMTPPool")

# Errors after which a cached connection cannot be trusted anymore
CONNECTION_ERRORS = (
    aiosmtplib.SMTPServerDisconnected,
    aiosmtplib.SMTPConnectError,
    aiosmtplib.SMTPTimeoutError,
    asyncio.TimeoutError,
    ConnectionError,
    OSError,
)


class SmtpParams(NamedTuple):
    """Credential set identifying one pooled connection."""

    host: str
    port: int
    user: str | None
    password: str | None
    secure: bool


@dataclass(frozen=True)
class SmtpTimeouts:
    """Timeouts in seconds applied to pooled connections."""

    connection: float = 60.0
    greeting: float = 30.0
    socket: float = 60.0


@dataclass
class _Entry:
    smtp: aiosmtplib.SMTP | None = None
    last_used: float = 0.0
    lock: asyncio.Lock | None = None


class SMTPPool:
    """SMTP connection pool with one serialised connection per credential set.

    Attributes:
        ttl: Maximum idle time in seconds before a connection is replaced.
        timeouts: Connection, greeting and socket timeouts.
        rate_limiter: Per-key send throttle.
    """

    def __init__(
        self,
        ttl: int = 300,
        *,
        timeouts: SmtpTimeouts | None = None,
        rate_limiter: RateLimiter | None = None,
    ):
        self.ttl = ttl
        self.timeouts = timeouts or SmtpTimeouts()
        self.rate_limiter = rate_limiter or RateLimiter(max_per_window=3, window_seconds=1.0)
        self.pool: dict[SmtpParams, _Entry] = {}
        self.lock = asyncio.Lock()

    async def _entry(self, params: SmtpParams) -> _Entry:
        async with self.lock:
            entry = self.pool.get(params)
            if entry is None:
                entry = _Entry(lock=asyncio.Lock())
                self.pool[params] = entry
            return entry

    async def _connect(self, params: SmtpParams) -> aiosmtplib.SMTP:
        """Open and authenticate a new connection.

        TLS behaviour:
        - port 465 with ``secure``: implicit TLS
        - other ports with ``secure``: STARTTLS
        - ``secure`` false: plain SMTP
        """
        if params.secure and params.port == 465:
            smtp = aiosmtplib.SMTP(
                hostname=params.host, port=params.port, use_tls=True, start_tls=False,
                timeout=self.timeouts.greeting,
            )
        elif params.secure:
            smtp = aiosmtplib.SMTP(
                hostname=params.host, port=params.port, use_tls=False, start_tls=True,
                timeout=self.timeouts.greeting,
            )
        else:
            smtp = aiosmtplib.SMTP(
                hostname=params.host, port=params.port, use_tls=False, start_tls=False,
                timeout=self.timeouts.greeting,
            )

        async def _do_connect():
            await smtp.connect()
            if params.user and params.password:
                await smtp.login(params.user, params.password)

        try:
            await asyncio.wait_for(_do_connect(), timeout=self.timeouts.connection)
        except Exception:
            # not in the pool yet, _evict cannot reach it
            await self._quit(smtp)
            raise
        return smtp

    async def _is_alive(self, smtp: aiosmtplib.SMTP) -> bool:
        """Return True if the connection answers NOOP with 250."""
        try:
            code, _ = await asyncio.wait_for(smtp.noop(), timeout=5.0)
            return code == 250
        except Exception:
            return False

    @staticmethod
    async def _quit(smtp: aiosmtplib.SMTP) -> None:
        try:
            await smtp.quit()
        except Exception as exc:
            logger.debug("Ignoring error while closing SMTP connection: %s", exc)

    async def _get_connection(self, params: SmtpParams, entry: _Entry) -> aiosmtplib.SMTP:
        # caller holds entry.lock
        if entry.smtp is not None:
            fresh_enough = (time.time() - entry.last_used) < self.ttl
            if fresh_enough and await self._is_alive(entry.smtp):
                return entry.smtp
            stale, entry.smtp = entry.smtp, None
            await self._quit(stale)
        entry.smtp = await self._connect(params)
        entry.last_used = time.time()
        return entry.smtp

    async def send_message(self, params: SmtpParams, message: EmailMessage) -> Any:
        """Send ``message`` over the pooled connection for ``params``.

        Waits for the key's lock and rate-limit slot, reuses or opens the
        connection and evicts it if the send fails at connection level.

        Returns:
            Whatever :meth:`aiosmtplib.SMTP.send_message` returns.

        Raises:
            aiosmtplib.SMTPException, OSError, asyncio.TimeoutError: Propagated
                to the transport, which classifies them.
        """
        entry = await self._entry(params)
        assert entry.lock is not None
        async with entry.lock:
            await self.rate_limiter.acquire(params)
            try:
                smtp = await self._get_connection(params, entry)
                result = await asyncio.wait_for(smtp.send_message(message), timeout=self.timeouts.socket)
            except CONNECTION_ERRORS:
                await self._evict(entry)
                raise
            except aiosmtplib.SMTPAuthenticationError:
                await self._evict(entry)
                raise
            entry.last_used = time.time()
            return result

    async def _evict(self, entry: _Entry) -> None:
        smtp, entry.smtp = entry.smtp, None
        if smtp is not None:
            await self._quit(smtp)

    async def cleanup(self) -> None:
        """Close connections that exceeded the TTL or fail the health check."""
        now = time.time()
        async with self.lock:
            items = list(self.pool.items())

        for params, entry in items:
            assert entry.lock is not None
            if entry.lock.locked():
                continue
            async with entry.lock:
                if entry.smtp is None:
                    continue
                if (now - entry.last_used) > self.ttl or not await self._is_alive(entry.smtp):
                    await self._evict(entry)
            if entry.smtp is None:
                async with self.lock:
                    if self.pool.get(params) is entry and not entry.lock.locked():
                        self.pool.pop(params, None)
                        self.rate_limiter.forget(params)

    async def close(self) -> None:
        """Close every pooled connection."""
        async with self.lock:
            entries = list(self.pool.values())
            self.pool.clear()
        for entry in entries:
            await self._evict(entry)
