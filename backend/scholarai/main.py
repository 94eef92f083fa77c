"""
Worker process entry point.

    python -m scholarai.main            # long-running pool (SIGINT/SIGTERM → graceful stop)
    python -m scholarai.main --drain    # run until the queue is idle, then exit

Startup: configure logging, build the Runtime (validates settings; a bad
configuration fails here, not mid-job), check the database, start the
WorkerPool. Shutdown: stop claiming, let in-flight jobs finish, dispose the
engine.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal

from scholarai.core.config import Settings, get_settings
from scholarai.db.session import check_db_health
from scholarai.workers.runtime import build_runtime

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    level = logging.DEBUG if settings.debug else getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    # Provider SDKs are chatty at DEBUG
    for noisy in ("httpx", "openai", "botocore", "aiobotocore"):
        logging.getLogger(noisy).setLevel(max(level, logging.WARNING))


async def run(settings: Settings, drain: bool = False) -> int:
    logger.info(
        "Starting ScholarAI ingestion | env=%s backend=%s concurrency=%d",
        settings.app_env, settings.queue_backend, settings.worker_concurrency,
    )
    runtime = await build_runtime(settings, create_schema=not settings.is_production)

    if runtime.engine is not None:
        db_health = await check_db_health(runtime.engine)
        if db_health["status"] != "ok":
            logger.critical("Database health check failed at startup: %s", db_health)
            await runtime.close()
            raise RuntimeError(f"DB unavailable: {db_health}")

    try:
        if drain:
            jobs = await runtime.pool.run_until_idle()
            logger.info("Drain complete | jobs=%d", jobs)
            return jobs

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)

        await runtime.pool.start()
        await stop.wait()
        logger.info("Shutdown requested; finishing in-flight jobs")
        await runtime.pool.stop(timeout=settings.job_lease_seconds)
        return 0
    finally:
        await runtime.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="ScholarAI ingestion worker")
    parser.add_argument("--drain", action="store_true", help="process eligible jobs, then exit")
    args = parser.parse_args()

    settings = get_settings()
    configure_logging(settings)
    asyncio.run(run(settings, drain=args.drain))


if __name__ == "__main__":
    main()
