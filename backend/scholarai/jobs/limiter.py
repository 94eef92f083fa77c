"""
Throughput limiter — at most `max_jobs` job starts per `window_seconds`.

Backed by pyrate_limiter's in-memory bucket. Workers call acquire() after a
claim returns a job; a full window only delays work (backpressure), it never
rejects, and idle polls never consume a slot.
"""

from __future__ import annotations

import asyncio
import logging

from pyrate_limiter import BucketFullException, Limiter, Rate

logger = logging.getLogger(__name__)

_BUCKET_NAME = "ingestion-jobs"


class ThroughputLimiter:

    def __init__(
        self,
        max_jobs:       int,
        window_seconds: float,
        poll_interval:  float = 0.5,
    ) -> None:
        self.max_jobs       = max_jobs
        self.window_seconds = window_seconds
        self._poll_interval = poll_interval
        # raise_when_fail=False: try_acquire returns False instead of raising
        self._limiter = Limiter(
            Rate(max_jobs, int(window_seconds * 1000)),
            raise_when_fail=False,
        )

    def try_acquire(self) -> bool:
        """Take a slot if the current window has one."""
        try:
            return bool(self._limiter.try_acquire(_BUCKET_NAME))
        except BucketFullException:
            return False

    async def acquire(self) -> None:
        """Wait (without blocking the event loop) until a slot is free."""
        waited = False
        while not self.try_acquire():
            if not waited:
                logger.info(
                    "Throughput limit reached | max_jobs=%d window_s=%.0f",
                    self.max_jobs, self.window_seconds,
                )
                waited = True
            await asyncio.sleep(self._poll_interval)
