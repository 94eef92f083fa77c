"""
Unit Tests — WorkerPool
═══════════════════════

Coverage targets:
  ✅ run_until_idle() drains every eligible job across N workers
  ✅ Heartbeat renews the lease while a job runs
  ✅ Unexpected pipeline exception still reaches queue.fail()
  ✅ start() / stop() long-running mode
  ✅ Idle polls take no throughput-limiter slot; job starts do
"""

from __future__ import annotations

import asyncio
import uuid
from unittest.mock import MagicMock

import pytest

from scholarai.jobs import InMemoryJobQueue, Job, JobState
from scholarai.jobs.limiter import ThroughputLimiter
from scholarai.schemas.documents import ProcessingState
from scholarai.workers.pipeline import OutcomeStatus, PipelineOutcome
from scholarai.workers.pool import WorkerPool


class RenewCountingQueue(InMemoryJobQueue):

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.renewals = 0

    async def renew(self, job_id, token, lease_seconds):
        self.renewals += 1
        return await super().renew(job_id, token, lease_seconds)


def _job() -> Job:
    return Job.for_document(uuid.uuid4(), uuid.uuid4(), "notes.txt", "text/plain", "notes.txt")


def _slow_pipeline(seconds: float) -> MagicMock:
    async def run(job):
        await asyncio.sleep(seconds)
        return PipelineOutcome(OutcomeStatus.INDEXED, job.document_id)

    pipeline = MagicMock()
    pipeline.run = run
    return pipeline


@pytest.mark.unit
class TestWorkerPool:

    async def test_run_until_idle_drains_queue(self, service, make_pipeline, queue, store, owner_id, write_source, sample_text):
        ids = [
            await service.accept_upload(owner_id, write_source(f"notes-{i}.txt", sample_text))
            for i in range(3)
        ]
        pool = WorkerPool(queue, make_pipeline(), concurrency=2, poll_interval=0.01)

        assert await pool.run_until_idle() == 3

        assert pool.processed == {OutcomeStatus.INDEXED: 3}
        for document_id in ids:
            assert (await store.get(document_id)).state is ProcessingState.INDEXED
        assert await queue.stats() == {"queued": 0, "leased": 0, "dead": 0}

    async def test_idle_queue(self, queue, make_pipeline):
        pool = WorkerPool(queue, make_pipeline(), concurrency=3)
        assert await pool.run_until_idle() == 0
        assert pool.processed == {}

    async def test_heartbeat_renews_lease(self, clock):
        queue = RenewCountingQueue(backoff_base=0.0, clock=clock)
        await queue.enqueue(_job())
        pool = WorkerPool(queue, _slow_pipeline(0.25), concurrency=1, lease_seconds=0.15)

        assert await pool.run_until_idle() == 1

        assert queue.renewals >= 2

    async def test_unexpected_pipeline_error_fails_job(self, queue):
        job = await queue.enqueue(_job())
        pipeline = MagicMock()

        async def explode(_job):
            raise RuntimeError("bug in pipeline")

        pipeline.run = explode
        pool = WorkerPool(queue, pipeline, concurrency=1)

        # Retried with zero backoff until max_attempts, then dead-lettered
        assert await pool.run_until_idle() == 3

        stored = await queue.get(job.id)
        assert stored.state is JobState.DEAD
        assert stored.attempts == 3
        assert "bug in pipeline" in stored.last_error
        assert pool.processed == {}

    async def test_start_and_stop(self, service, make_pipeline, queue, store, owner_id, write_source, sample_text):
        pool = WorkerPool(queue, make_pipeline(), concurrency=2, poll_interval=0.01)
        await pool.start()
        assert pool.running

        document_id = await service.accept_upload(owner_id, write_source("notes.txt", sample_text))
        for _ in range(200):
            if (await store.get(document_id)).state is ProcessingState.INDEXED:
                break
            await asyncio.sleep(0.01)

        await pool.stop(timeout=5)

        assert not pool.running
        assert (await store.get(document_id)).state is ProcessingState.INDEXED
        assert pool.processed == {OutcomeStatus.INDEXED: 1}

    async def test_stop_without_start(self, queue, make_pipeline):
        await WorkerPool(queue, make_pipeline()).stop()

    def test_concurrency_must_be_positive(self, queue, make_pipeline):
        with pytest.raises(ValueError):
            WorkerPool(queue, make_pipeline(), concurrency=0)

    def test_renew_interval_must_be_positive(self, queue, make_pipeline):
        with pytest.raises(ValueError):
            WorkerPool(queue, make_pipeline(), renew_interval=0)

    async def test_configured_renew_interval(self, clock):
        queue = RenewCountingQueue(backoff_base=0.0, clock=clock)
        await queue.enqueue(_job())
        pool = WorkerPool(
            queue, _slow_pipeline(0.25), concurrency=1, lease_seconds=30, renew_interval=0.05,
        )

        assert await pool.run_until_idle() == 1

        assert queue.renewals >= 2


# ─────────────────────────────────────────────────────────────────────────────
# Throughput limiter integration
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestPoolLimiter:

    async def test_idle_drain_takes_no_slot(self, queue, make_pipeline):
        limiter = ThroughputLimiter(max_jobs=1, window_seconds=60)
        pool = WorkerPool(queue, make_pipeline(), concurrency=3, limiter=limiter)

        assert await pool.run_until_idle() == 0

        assert limiter.try_acquire() is True

    async def test_idle_polling_takes_no_slot(self, queue, make_pipeline):
        limiter = ThroughputLimiter(max_jobs=1, window_seconds=60)
        pool = WorkerPool(queue, make_pipeline(), concurrency=2, poll_interval=0.01, limiter=limiter)

        await pool.start()
        await asyncio.sleep(0.1)
        await pool.stop(timeout=5)

        assert limiter.try_acquire() is True

    async def test_each_job_start_takes_a_slot(self, clock):
        queue = InMemoryJobQueue(backoff_base=0.0, clock=clock)
        await queue.enqueue(_job())
        limiter = ThroughputLimiter(max_jobs=1, window_seconds=60)
        pool = WorkerPool(queue, _slow_pipeline(0), concurrency=1, limiter=limiter)

        assert await pool.run_until_idle() == 1

        assert limiter.try_acquire() is False
