"""
Unit Tests — IngestionService facade
════════════════════════════════════

Coverage targets:
  ✅ accept_upload(): Document QUEUED + exactly one job, ids match
  ✅ Enqueue failure rolls the Document back
  ✅ get_status(): pure read; unknown id → DocumentNotFoundError
  ✅ delete_document(): job cancelled, chunks and Document removed
  ✅ retrieve() delegates to the ContextAssembler
"""

from __future__ import annotations

import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest

from scholarai.core.errors import DocumentNotFoundError
from scholarai.jobs import job_id_for
from scholarai.schemas.documents import ProcessingState, RetrievalContext
from scholarai.services.ingestion import IngestionService


@pytest.mark.unit
class TestAcceptUpload:

    async def test_creates_queued_document_and_job(self, service, store, queue, owner_id, write_source):
        source = write_source("lecture.md", "# Lecture", "text/markdown")

        document_id = await service.accept_upload(owner_id, source, priority=3)

        record = await store.get(document_id)
        assert record.state is ProcessingState.QUEUED
        assert record.progress == 0
        assert record.owner_id == owner_id
        assert record.storage_location == "lecture.md"

        job = await queue.get(job_id_for(document_id))
        assert job.document_id == document_id
        assert job.priority == 3
        assert job.content_type == "text/markdown"
        assert (await queue.stats())["queued"] == 1

    async def test_each_upload_gets_its_own_document(self, service, owner_id, write_source):
        source = write_source("a.txt", "same bytes")
        first = await service.accept_upload(owner_id, source)
        second = await service.accept_upload(owner_id, source)
        assert first != second

    async def test_enqueue_failure_rolls_back(self, store, index, owner_id, write_source):
        queue = MagicMock()
        queue.enqueue = AsyncMock(side_effect=ConnectionError("queue down"))
        service = IngestionService(store, queue, index)

        with pytest.raises(ConnectionError):
            await service.accept_upload(owner_id, write_source("a.txt", "text"))

        assert store._docs == {}


@pytest.mark.unit
class TestStatusAndDelete:

    async def test_get_status(self, service, owner_id, write_source):
        document_id = await service.accept_upload(owner_id, write_source("a.txt", "text"))

        status = await service.get_status(document_id)

        assert status.document_id == document_id
        assert status.state is ProcessingState.QUEUED
        assert status.error is None
        assert status.attempts == 0

    async def test_get_status_unknown(self, service):
        with pytest.raises(DocumentNotFoundError):
            await service.get_status(uuid.uuid4())

    async def test_delete_after_indexing(
        self, service, make_pipeline, queue, store, index, owner_id, write_source, sample_text,
    ):
        document_id = await service.accept_upload(owner_id, write_source("a.txt", sample_text))
        await make_pipeline().run(await queue.claim("w", 30))
        assert await index.count(document_id) > 0

        assert await service.delete_document(document_id) is True

        assert await store.get(document_id) is None
        assert await index.count(document_id) == 0

    async def test_delete_queued_cancels_job(self, service, queue, owner_id, write_source):
        document_id = await service.accept_upload(owner_id, write_source("a.txt", "text"))

        await service.delete_document(document_id)

        assert await queue.get(job_id_for(document_id)) is None
        assert await queue.claim("w", 30) is None

    async def test_delete_unknown_document(self, service):
        assert await service.delete_document(uuid.uuid4()) is False


@pytest.mark.unit
class TestRetrieve:

    async def test_delegates_to_assembler(self, store, queue, index):
        context = RetrievalContext.empty("q")
        assembler = MagicMock()
        assembler.retrieve = AsyncMock(return_value=context)
        service = IngestionService(store, queue, index, assembler)
        scope = [uuid.uuid4()]

        result = await service.retrieve("q", scope, k=2)

        assert result is context
        assembler.retrieve.assert_awaited_once_with(
            "q", scope, k=2, similarity_threshold=None, token_budget=None,
        )

    async def test_without_assembler(self, service):
        with pytest.raises(RuntimeError):
            await service.retrieve("q", [uuid.uuid4()])
