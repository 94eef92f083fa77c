"""
In-process job queue.

A dict of jobs guarded by a threading.Lock: every operation is a single
critical section, so claim() is atomic across asyncio tasks and threads.
Used for single-process deployments (queue_backend="memory") and tests.
State is lost on restart; use jobs/sql.py for durability.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
import uuid
from datetime import timedelta

from scholarai.core.errors import StaleLeaseError
from scholarai.jobs.base import FailOutcome, Job, JobQueue, JobState, Lease

logger = logging.getLogger(__name__)


class InMemoryJobQueue(JobQueue):

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self._jobs: dict[str, Job] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    async def enqueue(self, job: Job) -> Job:
        with self._lock:
            existing = self._jobs.get(job.id)
            if existing is not None:
                logger.info(
                    "Enqueue no-op | job=%s state=%s", job.id, existing.state.value,
                )
                return dataclasses.replace(existing)
            stored = dataclasses.replace(job, state=JobState.QUEUED, lease=None)
            self._jobs[job.id] = stored
            logger.info("Job enqueued | job=%s priority=%d", job.id, job.priority)
            return dataclasses.replace(stored)

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    async def claim(self, worker_id: str, lease_seconds: float) -> Job | None:
        now = self._now()
        with self._lock:
            eligible = [j for j in self._jobs.values() if self._is_eligible(j, now)]
            if not eligible:
                return None
            job = min(eligible, key=lambda j: (-j.priority, j.sequence))

            if job.state is JobState.LEASED:
                job.stall_count += 1
                logger.warning(
                    "Stalled job reclaimed | job=%s previous_worker=%s stalls=%d",
                    job.id, job.lease.worker_id if job.lease else "?", job.stall_count,
                )

            job.state = JobState.LEASED
            job.lease = Lease(
                job_id=job.id,
                token=uuid.uuid4().hex,
                worker_id=worker_id,
                expires_at=now + timedelta(seconds=lease_seconds),
            )
            return dataclasses.replace(job)

    async def renew(self, job_id: str, token: str, lease_seconds: float) -> Lease:
        with self._lock:
            job = self._owned(job_id, token)
            job.lease = dataclasses.replace(
                job.lease, expires_at=self._now() + timedelta(seconds=lease_seconds),
            )
            return job.lease

    async def ack(self, job_id: str, token: str | None = None) -> None:
        with self._lock:
            if job_id not in self._jobs:
                logger.info("Ack for unknown job ignored | job=%s", job_id)
                return
            if token is not None:
                self._owned(job_id, token)
            del self._jobs[job_id]
        logger.info("Job acked | job=%s", job_id)

    async def fail(
        self,
        job_id:    str,
        error:     str,
        retryable: bool = True,
        token:     str | None = None,
    ) -> FailOutcome:
        with self._lock:
            if job_id not in self._jobs:
                logger.info("Fail for unknown job discarded | job=%s", job_id)
                return FailOutcome.DISCARDED
            job = self._owned(job_id, token) if token is not None else self._jobs[job_id]

            job.attempts += 1
            job.last_error = error
            job.lease = None

            if not retryable or job.attempts >= self.max_attempts:
                job.state = JobState.DEAD
                logger.error(
                    "Job dead-lettered | job=%s attempts=%d retryable=%s error=%s",
                    job_id, job.attempts, retryable, error,
                )
                return FailOutcome.DEAD_LETTERED

            job.state = JobState.QUEUED
            job.available_at = self._retry_at(job.attempts)
            logger.warning(
                "Job retry scheduled | job=%s attempts=%d available_at=%s error=%s",
                job_id, job.attempts, job.available_at.isoformat(), error,
            )
            return FailOutcome.RETRY_SCHEDULED

    # ------------------------------------------------------------------
    # Maintenance / reads
    # ------------------------------------------------------------------

    async def requeue_expired(self) -> int:
        now = self._now()
        moved = 0
        with self._lock:
            for job in self._jobs.values():
                if job.state is JobState.LEASED and job.lease and job.lease.expires_at <= now:
                    job.state = JobState.QUEUED
                    job.lease = None
                    job.stall_count += 1
                    moved += 1
        if moved:
            logger.warning("Requeued stalled jobs | count=%d", moved)
        return moved

    async def cancel(self, job_id: str) -> bool:
        with self._lock:
            removed = self._jobs.pop(job_id, None) is not None
        if removed:
            logger.info("Job cancelled | job=%s", job_id)
        return removed

    async def get(self, job_id: str) -> Job | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return dataclasses.replace(job) if job else None

    async def dead_letters(self) -> list[Job]:
        with self._lock:
            dead = [j for j in self._jobs.values() if j.state is JobState.DEAD]
            return [dataclasses.replace(j) for j in sorted(dead, key=lambda j: j.sequence)]

    async def stats(self) -> dict[str, int]:
        counts = {state.value: 0 for state in JobState}
        with self._lock:
            for job in self._jobs.values():
                counts[job.state.value] += 1
        return counts

    # ------------------------------------------------------------------
    # Helpers (call with the lock held)
    # ------------------------------------------------------------------

    @staticmethod
    def _is_eligible(job: Job, now) -> bool:
        if job.state is JobState.QUEUED:
            return job.available_at <= now
        if job.state is JobState.LEASED:
            return job.lease is not None and job.lease.expires_at <= now
        return False

    def _owned(self, job_id: str, token: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None or job.lease is None or job.lease.token != token:
            raise StaleLeaseError(f"lease on job {job_id} is no longer held by this worker")
        return job
