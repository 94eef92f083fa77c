"""
Ingestion Pipeline — one attempt of one job
═══════════════════════════════════════════

  begin_attempt ──► load bytes ──► EXTRACTING(15) ──► extract ──► (30)
       ──► chunk + derive ──► VECTORIZING(50) ──► embed (70)
       ──► confirm ownership ──► annotate chunks (topics, entities)
       ──► replace chunks (85) ──► INDEXED(100) ──► ack

Failure handling (the pipeline boundary):
  - every exception is classified (core/errors.classify)
  - the Document is marked FAILED {kind, message, attempt}
  - chunks written by THIS attempt are removed
  - queue.fail(retryable=...) decides retry vs dead-letter; on dead-letter
    the Document's error is finalized (final=True, EXHAUSTED if retryable)

Coordination outcomes (not failures):
  - DocumentNotFoundError  document deleted mid-run   → ack, no more writes
  - StaleLeaseError        another worker owns the job → stop, no ack/fail
  - already terminal       INDEXED / final FAILED     → ack, nothing to do
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from scholarai.core.errors import (
    DocumentNotFoundError,
    IngestionError,
    InvalidTransitionError,
    StaleLeaseError,
    classify,
)
from scholarai.jobs.base import Clock, FailOutcome, Job, JobQueue, utcnow
from scholarai.processing.chunking import TextChunker
from scholarai.processing.embeddings import EmbeddingBatcher
from scholarai.processing.extractor import TextExtractorOrchestrator
from scholarai.processing.metadata import derive_metadata, extract_entities, extract_key_topics
from scholarai.schemas.documents import ProcessingError, ProcessingState
from scholarai.state.machine import DerivedMetadata, DocumentStateMachine
from scholarai.state.store import DocumentStore
from scholarai.storage.files import FileStorage
from scholarai.vectorstore.base import StoredChunk, VectorIndex

logger = logging.getLogger(__name__)


class OutcomeStatus(str, Enum):
    INDEXED         = "indexed"
    RETRY_SCHEDULED = "retry_scheduled"
    DEAD_LETTERED   = "dead_lettered"
    DISCARDED       = "discarded"        # job cancelled while we were failing it
    SKIPPED         = "skipped"          # document already terminal
    DELETED         = "deleted"          # document removed mid-run
    LEASE_LOST      = "lease_lost"


@dataclass
class PipelineOutcome:
    status:      OutcomeStatus
    document_id: object
    chunk_count: int = 0
    error:       ProcessingError | None = None
    elapsed_ms:  float = 0.0


class IngestionPipeline:
    """
    Stateless apart from its injected collaborators; one instance serves
    every worker task of a pool.
    """

    def __init__(
        self,
        *,
        store:          DocumentStore,
        queue:          JobQueue,
        storage:        FileStorage,
        extractor:      TextExtractorOrchestrator,
        chunker:        TextChunker,
        batcher:        EmbeddingBatcher,
        index:          VectorIndex,
        derive:         Callable[[str], DerivedMetadata] = derive_metadata,
        excerpt_chars:  int = 50_000,
        chunk_topics_max:   int = 10,
        chunk_entities_max: int = 20,
        clock:          Clock = utcnow,
    ) -> None:
        self._store     = store
        self._queue     = queue
        self._storage   = storage
        self._extractor = extractor
        self._chunker   = chunker
        self._batcher   = batcher
        self._index     = index
        self._derive    = derive
        self._excerpt_chars = excerpt_chars
        self._chunk_topics_max   = chunk_topics_max
        self._chunk_entities_max = chunk_entities_max
        self._clock     = clock

    async def run(self, job: Job) -> PipelineOutcome:
        if job.lease is None:
            raise ValueError(f"job {job.id} has no lease; claim it first")

        t0 = time.monotonic()
        token = job.lease.token
        doc_id = job.document_id
        sm = DocumentStateMachine(self._store, doc_id, token, clock=self._clock)
        chunks_written = False

        logger.info("Pipeline start | job=%s doc=%s attempt=%d", job.id, doc_id, job.attempts + 1)

        try:
            try:
                record = await sm.begin_attempt()
            except InvalidTransitionError as exc:
                logger.info("Document already terminal, skipping | doc=%s (%s)", doc_id, exc)
                await self._ack(job, token)
                return PipelineOutcome(OutcomeStatus.SKIPPED, doc_id)

            # ── Load ────────────────────────────────────────────────────
            data = await self._storage.read(job.location or record.storage_location)

            # ── Extract ─────────────────────────────────────────────────
            await sm.advance(ProcessingState.EXTRACTING, 15)
            extraction = await self._extractor.extract(
                data, record.content_type or job.content_type, record.filename,
            )
            await sm.record_extraction(
                page_count=extraction.page_count,
                word_count=extraction.word_count,
                language=extraction.language,
                raw_text_excerpt=extraction.full_text[:self._excerpt_chars],
                used_ocr=extraction.used_ocr,
                strategy=extraction.strategy_used,
            )
            await sm.update_progress(30)

            # ── Chunk + derived attributes ──────────────────────────────
            chunks = self._chunker.chunk(extraction.full_text, doc_id, extraction.page_map)
            derived = self._derive(extraction.full_text)
            await sm.advance(ProcessingState.VECTORIZING, 50)

            # ── Embed ───────────────────────────────────────────────────
            vectors = await self._batcher.embed_batch([c.text for c in chunks])
            await sm.update_progress(70)

            # ── Index ───────────────────────────────────────────────────
            # Last ownership check before the only write outside the store
            await sm.confirm_ownership()
            stored = [
                StoredChunk(
                    chunk_id=c.chunk_id,
                    document_id=doc_id,
                    chunk_index=c.chunk_index,
                    text=c.text,
                    embedding=vector,
                    start_char=c.start_char,
                    end_char=c.end_char,
                    page_number=c.page_number,
                    topics=extract_key_topics(c.text, self._chunk_topics_max),
                    entities=extract_entities(c.text, self._chunk_entities_max),
                )
                for c, vector in zip(chunks, vectors)
            ]
            await self._index.replace_document(doc_id, stored)
            chunks_written = True
            await sm.update_progress(85)

            # ── Done ────────────────────────────────────────────────────
            await sm.complete(len(stored), derived)

        except DocumentNotFoundError:
            logger.info("Document deleted during processing | doc=%s job=%s", doc_id, job.id)
            await self._index.delete_document(doc_id)
            await self._ack(job, token)
            return PipelineOutcome(OutcomeStatus.DELETED, doc_id)

        except StaleLeaseError as exc:
            logger.warning("Lease lost, abandoning attempt | job=%s doc=%s: %s", job.id, doc_id, exc)
            return PipelineOutcome(OutcomeStatus.LEASE_LOST, doc_id)

        except Exception as exc:
            err = classify(exc)
            logger.error(
                "Pipeline error | job=%s doc=%s kind=%s error=%s",
                job.id, doc_id, err.kind.value, err.message,
                exc_info=not isinstance(exc, IngestionError),
            )
            outcome = await self._handle_failure(job, sm, err, chunks_written)
            outcome.elapsed_ms = (time.monotonic() - t0) * 1000
            return outcome

        await self._ack(job, token)
        elapsed_ms = (time.monotonic() - t0) * 1000
        logger.info(
            "Pipeline done | job=%s doc=%s chunks=%d elapsed_ms=%.0f",
            job.id, doc_id, len(stored), elapsed_ms,
        )
        return PipelineOutcome(
            OutcomeStatus.INDEXED, doc_id, chunk_count=len(stored), elapsed_ms=elapsed_ms,
        )

    # ------------------------------------------------------------------
    # Failure path
    # ------------------------------------------------------------------

    async def _handle_failure(
        self,
        job:            Job,
        sm:             DocumentStateMachine,
        err:            IngestionError,
        chunks_written: bool,
    ) -> PipelineOutcome:
        doc_id = job.document_id
        token = job.lease.token
        payload: ProcessingError | None = None

        try:
            if chunks_written:
                await self._index.delete_document(doc_id)
            if sm.started:
                payload = await sm.fail(err)
        except StaleLeaseError:
            return PipelineOutcome(OutcomeStatus.LEASE_LOST, doc_id)
        except DocumentNotFoundError:
            await self._ack(job, token)
            return PipelineOutcome(OutcomeStatus.DELETED, doc_id)
        except Exception as exc:
            # The queue still has to hear about the failure
            logger.error("Could not record failure | doc=%s: %s", doc_id, exc, exc_info=True)

        try:
            outcome = await self._queue.fail(
                job.id, err.message, retryable=err.retryable, token=token,
            )
        except StaleLeaseError:
            return PipelineOutcome(OutcomeStatus.LEASE_LOST, doc_id, error=payload)

        if outcome is FailOutcome.DEAD_LETTERED:
            if payload is not None:
                try:
                    payload = await sm.finalize_failure()
                except (StaleLeaseError, DocumentNotFoundError) as exc:
                    logger.warning("Could not finalize failure | doc=%s: %s", doc_id, exc)
            logger.error("Job dead-lettered | job=%s doc=%s error=%s", job.id, doc_id, err.message)
            return PipelineOutcome(OutcomeStatus.DEAD_LETTERED, doc_id, error=payload)

        if outcome is FailOutcome.DISCARDED:
            return PipelineOutcome(OutcomeStatus.DISCARDED, doc_id, error=payload)

        return PipelineOutcome(OutcomeStatus.RETRY_SCHEDULED, doc_id, error=payload)

    async def _ack(self, job: Job, token: str) -> None:
        try:
            await self._queue.ack(job.id, token)
        except StaleLeaseError as exc:
            logger.warning("Ack refused, lease taken over | job=%s: %s", job.id, exc)
