# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Sliding-window rate limiter for outgoing SMTP messages.

The limiter tracks, per key (one key per SMTP credential set), the timestamps
of the sends inside the current window. When the window is full, callers wait
until the oldest send leaves it, so sends are spread evenly instead of
bursting at window boundaries.

State is in memory only: the limit protects a single SMTP server from one
process, it is not a quota that must survive restarts.

Example:
    Using the rate limiter::

        limiter = RateLimiter(max_per_window=3, window_seconds=1.0)
        await limiter.acquire(pool_key)
        await smtp.send_message(message)
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from typing import Awaitable, Callable, Deque, Dict, Hashable


class RateLimiter:
    """Per-key sliding-window rate limiter.

    Attributes:
        max_per_window: Sends allowed per key inside one window.
        window_seconds: Length of the sliding window.
    """

    def __init__(
        self,
        max_per_window: int = 3,
        window_seconds: float = 1.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_per_window < 1:
            raise ValueError("max_per_window must be at least 1")
        self.max_per_window = max_per_window
        self.window_seconds = window_seconds
        self._clock = clock
        self._sleep = sleep
        self._sent: Dict[Hashable, Deque[float]] = {}
        self._lock = asyncio.Lock()

    def _prune(self, key: Hashable, now: float) -> Deque[float]:
        window = self._sent.setdefault(key, deque())
        while window and now - window[0] >= self.window_seconds:
            window.popleft()
        return window

    def check_and_plan(self, key: Hashable) -> float:
        """Return seconds to wait before the next send for ``key`` (0 if none)."""
        now = self._clock()
        window = self._prune(key, now)
        if len(window) < self.max_per_window:
            return 0.0
        return max(0.0, window[0] + self.window_seconds - now)

    def log_send(self, key: Hashable) -> None:
        """Record a send for ``key`` at the current time."""
        now = self._clock()
        self._prune(key, now).append(now)

    async def acquire(self, key: Hashable) -> None:
        """Wait until a send is allowed for ``key`` and record it."""
        while True:
            async with self._lock:
                delay = self.check_and_plan(key)
                if delay <= 0:
                    self.log_send(key)
                    return
            await self._sleep(delay)

    def forget(self, key: Hashable) -> None:
        self._sent.pop(key, None)
