"""
RequestDeduplicator - single-flight for upstream loads keyed by cache key.

Concurrent cache misses for one key share a single upstream call, and a
stale entry gets at most one background refresh at a time.
"""

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

T = TypeVar("T")


class RequestDeduplicator:
    """
    Deduplicates concurrent async loads.

    Usage:
        dedup = RequestDeduplicator()
        value = await dedup.dedupe(cache_key, lambda: load(cache_key))
    """

    def __init__(self, debug: bool = False):
        self._in_flight: dict[str, asyncio.Task[Any]] = {}
        self._debug = debug
        self._stats = DeduplicatorStats()

    def is_in_flight(self, key: str) -> bool:
        """True while a load for key has not finished."""
        task = self._in_flight.get(key)
        return task is not None and not task.done()

    def start(self, key: str, request_fn: Callable[[], Awaitable[T]]) -> asyncio.Task[T]:
        """
        Return the in-flight task for key, creating it if needed.

        Never suspends, so check-and-insert cannot interleave with another
        coroutine on the same loop.
        """
        task = self._in_flight.get(key)
        if task is not None and not task.done():
            self._stats.deduplicated += 1
            self._log(f"DEDUPE: joining in-flight load: {key[:60]}")
            return task

        self._stats.total += 1
        self._log(f"NEW: starting load: {key[:60]}")
        task = asyncio.ensure_future(request_fn())
        self._in_flight[key] = task
        task.add_done_callback(lambda t, k=key: self._cleanup(k, t))
        return task

    async def dedupe(self, key: str, request_fn: Callable[[], Awaitable[T]]) -> T:
        """
        Execute request with deduplication.

        If a load with the same key is already in flight, wait for and
        return its result (or its exception) instead of starting another.
        """
        task = self.start(key, request_fn)
        return await asyncio.shield(task)

    def _cleanup(self, key: str, task: asyncio.Task[Any]) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
        if not task.cancelled():
            # Mark retrieved; waiters re-raise it themselves.
            task.exception()
        self._log(f"DONE: {key[:60]}")

    async def cancel_all(self) -> int:
        """Cancel all in-flight loads."""
        tasks = list(self._in_flight.values())
        self._in_flight.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            self._log(f"CANCEL_ALL: {len(tasks)} loads cancelled")
        return len(tasks)

    async def wait_idle(self) -> None:
        """Wait until every in-flight load has finished."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight.values()), return_exceptions=True)

    def get_in_flight_count(self) -> int:
        """Get number of in-flight loads."""
        return len(self._in_flight)

    def get_stats(self) -> "DeduplicatorStats":
        """Get deduplication statistics."""
        self._stats.in_flight = len(self._in_flight)
        return self._stats

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[Deduplicator] {message}")


class DeduplicatorStats:
    """Statistics for request deduplication."""

    def __init__(self):
        self.total: int = 0  # Unique loads started
        self.deduplicated: int = 0  # Callers that joined an in-flight load
        self.in_flight: int = 0

    @property
    def dedup_rate(self) -> float:
        """Calculate deduplication rate."""
        total = self.total + self.deduplicated
        if total == 0:
            return 0.0
        return self.deduplicated / total

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "total_requests": self.total,
            "deduplicated": self.deduplicated,
            "in_flight": self.in_flight,
            "dedup_rate": f"{self.dedup_rate:.2%}",
        }
