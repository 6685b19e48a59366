#!/usr/bin/env python3
"""
Utility classes and functions shared by the ingestion and summary stages.

Includes the rate limiter that gates AI calls, retry backoff, the bounded
background task pool used for author upserts, and small text helpers.
"""

from asyncio import Lock, Semaphore, Task, create_task, gather, sleep, CancelledError
from time import monotonic
from typing import Awaitable, Optional, Set
import re

from config import get_logger

logger = get_logger("utils")


class RateLimiter:
    """Enforce a minimum interval between acquisitions, shared by any number of tasks.

    Waiters are served one at a time under a lock, so two acquisitions are
    always at least ``min_interval`` seconds apart no matter how many workers
    share the limiter.
    """

    def __init__(self, min_interval: float):
        """Initialize the rate limiter.

        Args:
            min_interval: Minimum seconds between two acquisitions. 0 or
                          negative disables limiting.
        """
        self.min_interval = max(0.0, float(min_interval))
        self.last_request_time: Optional[float] = None
        self._lock = Lock()

    async def acquire(self):
        """Wait until the next slot is available, then claim it."""
        if self.min_interval <= 0:
            return

        async with self._lock:
            if self.last_request_time is not None:
                time_since_last = monotonic() - self.last_request_time
                if time_since_last < self.min_interval:
                    wait_time = self.min_interval - time_since_last
                    logger.debug(f"Rate limiting: waiting {wait_time:.2f} seconds")
                    await sleep(wait_time)
            self.last_request_time = monotonic()


class RetryHelper:
    """Helper class for implementing retry logic with exponential backoff."""

    def __init__(self, max_retries: int = 3, base_delay: float = 1.0, max_delay: float = 60.0):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay

    def calculate_delay(self, attempt: int) -> float:
        """Delay in seconds before retrying after the given 0-based attempt."""
        return min(self.base_delay * (2 ** attempt), self.max_delay)


class BackgroundTaskPool:
    """Run fire-and-forget coroutines with a cap on how many run at once.

    ``submit`` never waits: the coroutine is wrapped in a task that first
    takes a semaphore slot. Failures are logged and dropped. ``drain`` waits
    for everything submitted so far.
    """

    def __init__(self, limit: int, name: str = "background"):
        self.name = name
        self._semaphore = Semaphore(max(1, limit))
        self._tasks: Set[Task] = set()
        self.failures = 0

    def __len__(self) -> int:
        return len(self._tasks)

    async def _run(self, coro: Awaitable, label: str):
        async with self._semaphore:
            try:
                await coro
            except CancelledError:
                raise
            except Exception as e:
                self.failures += 1
                logger.warning(f"{self.name} task {label} failed: {e}")

    def submit(self, coro: Awaitable, label: str = "") -> Task:
        task = create_task(self._run(coro, label))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self):
        while self._tasks:
            await gather(*list(self._tasks), return_exceptions=True)


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string (e.g. "1h 23m 45s")."""
    if seconds < 0:
        return "0s"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:
        parts.append(f"{secs}s")
    return " ".join(parts)


def truncate_content(text: str, max_chars: int, suffix: str = "...") -> str:
    """Cut ``text`` to ``max_chars`` characters and append ``suffix`` when cut."""
    if not text or len(text) <= max_chars:
        return text
    return text[:max_chars] + suffix


_FENCE_RE = re.compile(r"^\s*```[\w-]*\s*\n?(.*?)\n?\s*```\s*$", re.DOTALL)


def strip_code_fences(text: str) -> str:
    """Remove a surrounding Markdown code fence (```json ... ```) if present."""
    if not text:
        return ""
    match = _FENCE_RE.match(text)
    return (match.group(1) if match else text).strip()


def collapse_whitespace(text: str) -> str:
    return re.sub(r"\s+", " ", text or "").strip()
