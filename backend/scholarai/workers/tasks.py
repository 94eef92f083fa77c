"""
Celery Tasks — hosting the ingestion WorkerPool

Task: drain_ingestion_queue
  Builds a Runtime, runs the WorkerPool until no job is eligible, returns
  per-outcome counts. Safe to run on many Celery workers at once: claims are
  atomic in the SQL queue.

Task: requeue_stalled_jobs
  Beat task (every 30 s). Returns jobs whose lease expired (crashed or
  frozen worker) to the queue so the next drain re-runs them.

Task: health_check
  Database ping + queue depth.

Each task builds and disposes its own Runtime: asyncio.run() gives every
invocation a fresh event loop and async engines cannot cross loops.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from scholarai.core.config import get_settings
from scholarai.db.session import check_db_health
from scholarai.workers.celery_app import celery_app
from scholarai.workers.runtime import build_runtime

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Async task helper
# Run async coroutines inside Celery's synchronous task context.
# ---------------------------------------------------------------------------

def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    # Called from inside a running loop (e.g. eager mode in an async test)
    import concurrent.futures
    with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
        return pool.submit(asyncio.run, coro).result()


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------

@celery_app.task(
    name="scholarai.workers.tasks.drain_ingestion_queue",
    acks_late=True,
    reject_on_worker_lost=True,
)
def drain_ingestion_queue() -> dict[str, Any]:
    return run_async(_drain_async())


async def _drain_async() -> dict[str, Any]:
    runtime = await build_runtime(get_settings())
    try:
        jobs_run = await runtime.pool.run_until_idle()
        outcomes = {status.value: n for status, n in runtime.pool.processed.items()}
    finally:
        await runtime.close()
    logger.info("Drain finished | jobs=%d outcomes=%s", jobs_run, outcomes)
    return {"jobs": jobs_run, "outcomes": outcomes}


@celery_app.task(name="scholarai.workers.tasks.requeue_stalled_jobs")
def requeue_stalled_jobs() -> dict[str, int]:
    return run_async(_requeue_stalled_async())


async def _requeue_stalled_async() -> dict[str, int]:
    runtime = await build_runtime(get_settings())
    try:
        moved = await runtime.queue.requeue_expired()
    finally:
        await runtime.close()
    if moved:
        logger.warning("Stalled jobs requeued | count=%d", moved)
    return {"requeued": moved}


@celery_app.task(name="scholarai.workers.tasks.health_check")
def health_check() -> dict[str, Any]:
    return run_async(_health_async())


async def _health_async() -> dict[str, Any]:
    runtime = await build_runtime(get_settings())
    try:
        db = await check_db_health(runtime.engine) if runtime.engine else {"status": "ok"}
        queue = await runtime.queue.stats()
    finally:
        await runtime.close()
    status = "ok" if db["status"] == "ok" else "degraded"
    return {"status": status, "database": db, "queue": queue}
