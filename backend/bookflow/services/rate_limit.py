"""
Bookflow Backend — In-Memory Rate Limiter
===========================================

What:  Sliding-window request counter keyed by an arbitrary string
       ("ip:203.0.113.9", a user id, ...).
Why:   Caps abusive traffic per IP and per-user write bursts (author
       additions) without an external store.
How:   Each key owns a list of request timestamps. Checks prune timestamps
       that fell out of the window and compare the remainder to the limit.
       A background task sweeps idle keys so memory stays bounded.
Who:   One instance per application, created in the lifespan and shared by
       RateLimitMiddleware and the routes (via `get_rate_limiter`).

Algorithm: Sliding Window Log
    1. check_rate_limit(key, limit, window_ms) drops timestamps older than
       now - window and answers "is the key at or over the limit?"
    2. record_request(key) appends now; callers record only after the
       guarded action succeeded, so failed attempts do not count.

    Known race: check and record are two steps. Two concurrent requests can
    both pass the check before either records, overshooting the limit by the
    number of in-flight requests. Acceptable for abuse protection; a strict
    quota would need an atomic store (Redis INCR) instead.

Scope:
    Process-local. With several workers each keeps its own counters.
"""

import asyncio
import logging
import time
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Sliding-window rate limiter.

    Args:
        clock:          Returns the current time in seconds (monotonic by
                        default; tests pass a fake clock)
        sweep_interval: Seconds between background sweeps
        max_age:        Timestamps older than this many seconds are dropped by
                        a sweep, whatever window they were checked against
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        sweep_interval: float = 300.0,
        max_age: float = 3600.0,
    ):
        self._clock = clock
        self.sweep_interval = sweep_interval
        self.max_age = max_age
        self._requests: Dict[str, List[float]] = {}
        self._task: Optional[asyncio.Task] = None

    # ── Window checks ─────────────────────────────────────────────────────
    def _prune(self, key: str, window_ms: int) -> List[float]:
        cutoff = self._clock() - window_ms / 1000
        timestamps = [ts for ts in self._requests.get(key, []) if ts > cutoff]
        self._requests[key] = timestamps
        return timestamps

    def check_rate_limit(self, key: str, limit: int, window_ms: int) -> bool:
        """True when `key` already made `limit` requests within the window."""
        return len(self._prune(key, window_ms)) >= limit

    def record_request(self, key: str) -> None:
        self._requests.setdefault(key, []).append(self._clock())

    def get_remaining_requests(self, key: str, limit: int, window_ms: int) -> int:
        """Requests still allowed in the current window, never negative."""
        if key not in self._requests:
            return limit
        return max(0, limit - len(self._prune(key, window_ms)))

    def retry_after(self, key: str, window_ms: int) -> int:
        """
        Whole seconds until the oldest timestamp in the window expires.

        Used for the Retry-After header; 0 when the key has no history.
        """
        timestamps = self._requests.get(key)
        if not timestamps:
            return 0
        remaining = timestamps[0] + window_ms / 1000 - self._clock()
        return max(0, int(remaining)) + 1

    # ── Housekeeping ──────────────────────────────────────────────────────
    def sweep(self) -> int:
        """
        Drop timestamps older than `max_age` and delete keys left empty.

        Returns:
            Number of keys removed.
        """
        cutoff = self._clock() - self.max_age
        removed = 0
        for key in list(self._requests):
            fresh = [ts for ts in self._requests[key] if ts > cutoff]
            if fresh:
                self._requests[key] = fresh
            else:
                del self._requests[key]
                removed += 1
        if removed:
            logger.debug("Rate limiter sweep removed %d idle keys", removed)
        return removed

    def clear(self) -> None:
        self._requests.clear()

    def __len__(self) -> int:
        return len(self._requests)

    # ── Background sweep task ─────────────────────────────────────────────
    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            self.sweep()

    def start(self) -> None:
        """Start the periodic sweep on the running event loop (idempotent)."""
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.get_running_loop().create_task(self._sweep_forever())

    async def stop(self) -> None:
        """Cancel the sweep task and drop all state (idempotent)."""
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.clear()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()
