"""
Worker Pool — N asyncio workers draining the job queue
══════════════════════════════════════════════════════

Each worker loops:
  1. claim a job; if none, sleep poll_interval
  2. start a heartbeat that renews the lease every renew_interval
     (lease_seconds / 3 unless configured)
  3. wait for a throughput-limiter slot (backpressure, never rejection);
     idle polls take no slot
  4. run the pipeline (which acks / fails the job)
  5. stop the heartbeat

A worker that crashes mid-job simply stops renewing; once the lease expires
another worker re-claims the job and the pipeline starts it over.

Hosts:
  run_until_idle()  drain what is eligible now, then return (tests, Celery task)
  start() / stop()  long-running service; stop() lets in-flight jobs finish
"""

from __future__ import annotations

import asyncio
import logging
import os
import socket

from scholarai.core.errors import StaleLeaseError, classify
from scholarai.jobs.base import Job, JobQueue
from scholarai.jobs.limiter import ThroughputLimiter
from scholarai.workers.pipeline import IngestionPipeline, OutcomeStatus, PipelineOutcome

logger = logging.getLogger(__name__)


class WorkerPool:

    def __init__(
        self,
        queue:         JobQueue,
        pipeline:      IngestionPipeline,
        concurrency:   int = 2,
        lease_seconds: float = 120.0,
        poll_interval: float = 1.0,
        limiter:       ThroughputLimiter | None = None,
        name:          str | None = None,
        renew_interval: float | None = None,
    ) -> None:
        if concurrency <= 0:
            raise ValueError("concurrency must be positive")
        if renew_interval is not None and renew_interval <= 0:
            raise ValueError("renew_interval must be positive")
        self._queue         = queue
        self._pipeline      = pipeline
        self._concurrency   = concurrency
        self._lease_seconds = lease_seconds
        self._renew_interval = renew_interval or lease_seconds / 3
        self._poll_interval = poll_interval
        self._limiter       = limiter
        self._name          = name or f"{socket.gethostname()}-{os.getpid()}"
        self._stopping      = asyncio.Event()
        self._tasks: list[asyncio.Task] = []
        self.processed: dict[OutcomeStatus, int] = {}

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def _worker_id(self, index: int) -> str:
        return f"{self._name}-w{index}"

    # ------------------------------------------------------------------
    # Hosts
    # ------------------------------------------------------------------

    async def run_until_idle(self) -> int:
        """Drain every currently eligible job; returns how many were run."""
        counts = await asyncio.gather(
            *[self._drain(self._worker_id(i)) for i in range(self._concurrency)]
        )
        total = sum(counts)
        logger.info("WorkerPool idle | pool=%s jobs_run=%d", self._name, total)
        return total

    async def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(self._loop(self._worker_id(i)), name=self._worker_id(i))
            for i in range(self._concurrency)
        ]
        logger.info("WorkerPool started | pool=%s concurrency=%d", self._name, self._concurrency)

    async def stop(self, timeout: float | None = None) -> None:
        """Stop claiming; wait for in-flight jobs (cancel them after `timeout`)."""
        self._stopping.set()
        if not self._tasks:
            return
        done, pending = await asyncio.wait(self._tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning("WorkerPool stop timed out | cancelled=%d", len(pending))
        self._tasks = []
        logger.info("WorkerPool stopped | pool=%s", self._name)

    # ------------------------------------------------------------------
    # Worker loops
    # ------------------------------------------------------------------

    async def _drain(self, worker_id: str) -> int:
        count = 0
        while True:
            job = await self._queue.claim(worker_id, self._lease_seconds)
            if job is None:
                return count
            await self._process(job, worker_id)
            count += 1

    async def _loop(self, worker_id: str) -> None:
        while not self._stopping.is_set():
            job = await self._queue.claim(worker_id, self._lease_seconds)
            if job is None:
                try:
                    await asyncio.wait_for(self._stopping.wait(), timeout=self._poll_interval)
                except asyncio.TimeoutError:
                    pass
                continue
            await self._process(job, worker_id)

    async def _process(self, job: Job, worker_id: str) -> PipelineOutcome | None:
        logger.info(
            "Job claimed | worker=%s job=%s priority=%d attempts=%d stalls=%d",
            worker_id, job.id, job.priority, job.attempts, job.stall_count,
        )
        heartbeat = asyncio.create_task(self._heartbeat(job, worker_id))
        try:
            if self._limiter is not None:
                await self._limiter.acquire()
            outcome = await self._pipeline.run(job)
        except Exception as exc:
            # The pipeline handles its own failures; this is a bug guard
            err = classify(exc)
            logger.exception("Unhandled pipeline error | worker=%s job=%s", worker_id, job.id)
            try:
                await self._queue.fail(job.id, err.message, retryable=err.retryable, token=job.lease.token)
            except StaleLeaseError:
                logger.warning("Lease already gone for failed job | job=%s", job.id)
            return None
        finally:
            heartbeat.cancel()
            try:
                await heartbeat
            except asyncio.CancelledError:
                pass

        self.processed[outcome.status] = self.processed.get(outcome.status, 0) + 1
        logger.info(
            "Job finished | worker=%s job=%s outcome=%s", worker_id, job.id, outcome.status.value,
        )
        return outcome

    async def _heartbeat(self, job: Job, worker_id: str) -> None:
        while True:
            await asyncio.sleep(self._renew_interval)
            try:
                await self._queue.renew(job.id, job.lease.token, self._lease_seconds)
            except StaleLeaseError:
                logger.warning("Heartbeat lost lease | worker=%s job=%s", worker_id, job.id)
                return
            except Exception as exc:
                logger.warning("Heartbeat renew failed | worker=%s job=%s: %s", worker_id, job.id, exc)
            else:
                logger.debug("Lease renewed | worker=%s job=%s", worker_id, job.id)
