# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Batch continuation strategies for the queue processor.

When a processor invocation handled a full batch, more due work may remain.
Instead of waiting for the next scheduler tick the processor hands a
:class:`~campaign_mailer.processor.Trigger` to a continuation, which starts
the next round in the background and lets the current invocation return.

- :class:`LocalContinuation` re-runs the processor in-process as an asyncio
  task. This is the default.
- :class:`HttpContinuation` POSTs to the service's own ``/cron/process``
  endpoint, for deployments where another replica should pick the work up.

Both retry a failed round up to three times with a one second pause.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, Set

import aiohttp

from .logger import get_logger

if TYPE_CHECKING:
    from .processor import Trigger

logger = get_logger("Continuation")

Runner = Callable[["Trigger"], Awaitable[Any]]

CONTINUATION_HEADER = "x-continuation"

DEFAULT_ATTEMPTS = 3
DEFAULT_BACKOFF = 1.0


class Continuation(ABC):
    """Base class: schedules the next processing round in the background."""

    def __init__(self, attempts: int = DEFAULT_ATTEMPTS, backoff: float = DEFAULT_BACKOFF):
        self.attempts = attempts
        self.backoff = backoff
        self._tasks: Set[asyncio.Task] = set()

    def submit(self, trigger: "Trigger", runner: Runner) -> asyncio.Task:
        """Start the next round without waiting for it."""
        task = asyncio.create_task(self._run_with_retries(trigger, runner))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @abstractmethod
    async def _attempt(self, trigger: "Trigger", runner: Runner) -> None:
        """Run or request one round; raise to have it retried."""

    async def _run_with_retries(self, trigger: "Trigger", runner: Runner) -> bool:
        for attempt in range(1, self.attempts + 1):
            try:
                await self._attempt(trigger, runner)
                return True
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning(
                    "Continuation attempt %d/%d failed: %s", attempt, self.attempts, exc
                )
                if attempt < self.attempts:
                    await asyncio.sleep(self.backoff)
        logger.error("Continuation gave up after %d attempts", self.attempts)
        return False

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait until every scheduled round, including chained ones, finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        """Cancel rounds still running."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()


class LocalContinuation(Continuation):
    """Runs the next round in this process."""

    async def _attempt(self, trigger: "Trigger", runner: Runner) -> None:
        await runner(trigger)


class HttpContinuation(Continuation):
    """Runs the next round by calling the service's own trigger endpoint.

    Attributes:
        self_url: Base URL of the service, e.g. ``https://mailer.example.com``.
        cron_secret: Sent as ``Authorization: Bearer``.
        bypass_header: Name of the automation bypass header.
        bypass_secret: Value for the bypass header, omitted when empty.
        timeout: Client-side timeout in seconds for each request.
    """

    def __init__(
        self,
        self_url: str,
        *,
        cron_secret: Optional[str] = None,
        bypass_header: str = "x-vercel-protection-bypass",
        bypass_secret: Optional[str] = None,
        timeout: float = 5.0,
        attempts: int = DEFAULT_ATTEMPTS,
        backoff: float = DEFAULT_BACKOFF,
    ):
        super().__init__(attempts=attempts, backoff=backoff)
        self.self_url = self_url.rstrip("/")
        self.cron_secret = cron_secret
        self.bypass_header = bypass_header
        self.bypass_secret = bypass_secret
        self.timeout = timeout

    @property
    def endpoint(self) -> str:
        return f"{self.self_url}/cron/process"

    def headers_for(self, trigger: "Trigger") -> dict[str, str]:
        headers: dict[str, str] = {}
        if self.cron_secret:
            headers["Authorization"] = f"Bearer {self.cron_secret}"
        if trigger.manual:
            headers["x-manual-trigger"] = "true"
        if trigger.is_continuation:
            headers[CONTINUATION_HEADER] = "true"
        if self.bypass_secret:
            headers[self.bypass_header] = self.bypass_secret
        return headers

    async def _attempt(self, trigger: "Trigger", runner: Runner) -> None:
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
            async with session.post(self.endpoint, headers=self.headers_for(trigger)) as resp:
                resp.raise_for_status()
        logger.info("Continuation request accepted by %s", self.endpoint)
