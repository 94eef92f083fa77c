"""
Unit Tests — Runtime wiring, Celery task hosts, worker entry point

Everything runs on QUEUE_BACKEND=memory; Celery tasks are called directly
(synchronously), the way a worker child would execute them.
"""

from __future__ import annotations

import logging
from unittest.mock import patch

import pytest

from scholarai.core.errors import ConfigurationError
from scholarai.jobs.memory import InMemoryJobQueue
from scholarai.main import configure_logging, run
from scholarai.schemas.documents import ProcessingState
from scholarai.vectorstore.memory import InMemoryVectorIndex
from scholarai.workers import tasks
from scholarai.workers.celery_app import TASK_ROUTES, celery_app
from scholarai.workers.runtime import build_runtime


@pytest.mark.unit
class TestBuildRuntime:

    async def test_memory_backend(self, settings, provider, storage):
        runtime = await build_runtime(settings, provider=provider, storage=storage)
        try:
            assert isinstance(runtime.queue, InMemoryJobQueue)
            assert isinstance(runtime.index, InMemoryVectorIndex)
            assert runtime.engine is None
            assert runtime.queue.max_attempts == settings.job_max_attempts
            assert runtime.pool._renew_interval == settings.lease_renew_interval
        finally:
            await runtime.close()

    async def test_end_to_end_upload_to_retrieval(
        self, settings, provider, storage, owner_id, write_source, sample_text,
    ):
        runtime = await build_runtime(settings, provider=provider, storage=storage)
        try:
            document_id = await runtime.service.accept_upload(
                owner_id, write_source("notes.txt", sample_text),
            )
            assert await runtime.pool.run_until_idle() == 1

            status = await runtime.service.get_status(document_id)
            assert status.state is ProcessingState.INDEXED
            assert status.progress == 100

            context = await runtime.service.retrieve(
                "sorting algorithms pivot", [document_id], similarity_threshold=0.0,
            )
            assert context.chunks
            assert all(c.document_id == document_id for c in context.chunks)
        finally:
            await runtime.close()

    async def test_unknown_backend(self, settings, provider):
        tuned = settings.model_copy(update={"queue_backend": "kafka"})
        with pytest.raises(ConfigurationError):
            await build_runtime(tuned, provider=provider)


@pytest.mark.unit
class TestCeleryTasks:

    def test_task_routes(self):
        assert set(TASK_ROUTES) <= set(celery_app.tasks)

    def test_drain_on_empty_queue(self, settings, provider):
        with patch.object(tasks, "get_settings", return_value=settings), \
             patch("scholarai.workers.runtime.build_embedding_provider", return_value=provider):
            result = tasks.drain_ingestion_queue()
        assert result == {"jobs": 0, "outcomes": {}}

    def test_requeue_stalled(self, settings, provider):
        with patch.object(tasks, "get_settings", return_value=settings), \
             patch("scholarai.workers.runtime.build_embedding_provider", return_value=provider):
            assert tasks.requeue_stalled_jobs() == {"requeued": 0}

    def test_health_check(self, settings, provider):
        with patch.object(tasks, "get_settings", return_value=settings), \
             patch("scholarai.workers.runtime.build_embedding_provider", return_value=provider):
            result = tasks.health_check()
        assert result["status"] == "ok"
        assert result["queue"] == {"queued": 0, "leased": 0, "dead": 0}

    async def test_run_async_inside_running_loop(self):
        async def answer():
            return 42
        assert tasks.run_async(answer()) == 42


@pytest.mark.unit
class TestEntryPoint:

    async def test_drain_mode(self, settings, provider):
        with patch("scholarai.workers.runtime.build_embedding_provider", return_value=provider):
            assert await run(settings, drain=True) == 0

    def test_configure_logging_quiets_sdks(self, settings):
        configure_logging(settings.model_copy(update={"log_level": "DEBUG"}))
        assert logging.getLogger("openai").level == logging.WARNING
