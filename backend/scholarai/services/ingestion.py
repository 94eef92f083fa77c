"""
Document Ingestion Service — the facade the web layer calls
═══════════════════════════════════════════════════════════

  accept_upload(owner_id, source)  → document_id
      1. insert the Document (state=queued, progress=0)
      2. enqueue Job(job_id_for(document_id))   (idempotent on the id)
      If the enqueue fails the Document is removed again, so no Document is
      ever left QUEUED without a job.

  get_status(document_id)          → DocumentStatus   (pure read)

  delete_document(document_id)
      cancel job → delete chunks → delete Document. A worker mid-run sees
      DocumentNotFoundError on its next write, acks and stops.

  retrieve(query, document_ids, …) → RetrievalContext (ContextAssembler)

The service never touches file bytes: the upload is already in storage and
workers load it from `source.location`.
"""

from __future__ import annotations

import logging
import uuid
from typing import Sequence

from scholarai.core.errors import DocumentNotFoundError
from scholarai.jobs.base import Job, JobQueue, job_id_for
from scholarai.rag.context import ContextAssembler
from scholarai.schemas.documents import DocumentStatus, RetrievalContext, SourceFile
from scholarai.state.store import DocumentRecord, DocumentStore
from scholarai.vectorstore.base import VectorIndex

logger = logging.getLogger(__name__)


class IngestionService:

    def __init__(
        self,
        store:     DocumentStore,
        queue:     JobQueue,
        index:     VectorIndex,
        assembler: ContextAssembler | None = None,
    ) -> None:
        self._store     = store
        self._queue     = queue
        self._index     = index
        self._assembler = assembler

    async def accept_upload(
        self,
        owner_id: uuid.UUID,
        source:   SourceFile,
        priority: int = 0,
    ) -> uuid.UUID:
        record = await self._store.create(DocumentRecord.new(owner_id, source))

        try:
            job = await self._queue.enqueue(Job.for_document(
                document_id=record.id,
                owner_id=owner_id,
                location=source.location,
                content_type=source.content_type,
                filename=source.filename,
                priority=priority,
            ))
        except Exception:
            logger.exception("Enqueue failed, rolling back document | doc=%s", record.id)
            await self._store.delete(record.id)
            raise

        logger.info(
            "Upload accepted | doc=%s owner=%s job=%s type=%s size=%d",
            record.id, owner_id, job.id, source.content_type, source.size_bytes,
        )
        return record.id

    async def get_status(self, document_id: uuid.UUID) -> DocumentStatus:
        record = await self._store.get(document_id)
        if record is None:
            raise DocumentNotFoundError(document_id)
        return record.to_status()

    async def delete_document(self, document_id: uuid.UUID) -> bool:
        cancelled = await self._queue.cancel(job_id_for(document_id))
        removed_chunks = await self._index.delete_document(document_id)
        deleted = await self._store.delete(document_id)
        logger.info(
            "Document deleted | doc=%s job_cancelled=%s chunks=%d found=%s",
            document_id, cancelled, removed_chunks, deleted,
        )
        return deleted

    async def retrieve(
        self,
        query:                str,
        document_ids:         Sequence[uuid.UUID],
        k:                    int | None = None,
        similarity_threshold: float | None = None,
        token_budget:         int | None = None,
    ) -> RetrievalContext:
        if self._assembler is None:
            raise RuntimeError("IngestionService was built without a ContextAssembler")
        return await self._assembler.retrieve(
            query,
            document_ids,
            k=k,
            similarity_threshold=similarity_threshold,
            token_budget=token_budget,
        )
