"""
Integration Tests — SQL backends on aiosqlite
═════════════════════════════════════════════

The same contracts the in-memory backends satisfy, exercised against real
SQL: SQLJobQueue (CAS claim / lease tokens), SQLDocumentStore (conditional
update) and SQLVectorIndex (replace-as-a-set), then a full pipeline run.

Coverage targets:
  ✅ Idempotent enqueue, priority/FIFO claim, one holder per job
  ✅ Stale lease tokens rejected on renew / ack / fail
  ✅ Backoff, dead-letter, expired-lease reclaim, requeue_expired
  ✅ Conditional document update: stale owner vs. deleted document
  ✅ Chunk replace / search / delete
  ✅ Upload → INDEXED → retrieval on the SQL stack, and via build_runtime()
"""

from __future__ import annotations

import uuid
from datetime import timedelta

import pytest

from scholarai.core.errors import (
    DocumentNotFoundError,
    ErrorKind,
    InvalidTransitionError,
    StaleLeaseError,
    TransientError,
)
from scholarai.db.session import check_db_health
from scholarai.jobs.base import FailOutcome, Job, JobState
from scholarai.jobs.sql import SQLJobQueue
from scholarai.processing.chunking import make_chunk_id
from scholarai.processing.embeddings import EmbeddingBatcher
from scholarai.rag.context import ContextAssembler
from scholarai.schemas.documents import ProcessingState, SourceFile
from scholarai.services.ingestion import IngestionService
from scholarai.state.machine import DerivedMetadata, DocumentStateMachine
from scholarai.state.sql import SQLDocumentStore
from scholarai.state.store import DocumentRecord
from scholarai.vectorstore.base import StoredChunk
from scholarai.vectorstore.sql import SQLVectorIndex
from scholarai.workers.pipeline import OutcomeStatus
from scholarai.workers.pool import WorkerPool
from scholarai.workers.runtime import build_runtime

pytestmark = pytest.mark.integration

LEASE = 30.0
DIMENSION = 8


# ─────────────────────────────────────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def sql_queue(session_factory, clock) -> SQLJobQueue:
    return SQLJobQueue(session_factory, max_attempts=3, backoff_base=0.0, backoff_max=300.0, clock=clock)


@pytest.fixture
def sql_store(session_factory) -> SQLDocumentStore:
    return SQLDocumentStore(session_factory)


@pytest.fixture
def sql_index(session_factory) -> SQLVectorIndex:
    return SQLVectorIndex(session_factory, DIMENSION)


@pytest.fixture
def sql_service(sql_store, sql_queue, sql_index) -> IngestionService:
    return IngestionService(sql_store, sql_queue, sql_index)


def _job(priority: int = 0, document_id: uuid.UUID | None = None) -> Job:
    return Job.for_document(
        document_id or uuid.uuid4(), uuid.uuid4(), "notes.txt", "text/plain", "notes.txt", priority,
    )


def _source(location: str = "thermo.txt") -> SourceFile:
    return SourceFile(filename=location, size_bytes=12, content_type="text/plain", location=location)


# ─────────────────────────────────────────────────────────────────────────────
# SQLJobQueue
# ─────────────────────────────────────────────────────────────────────────────

class TestSQLJobQueue:

    async def test_enqueue_is_idempotent(self, sql_queue):
        document_id = uuid.uuid4()
        first = await sql_queue.enqueue(_job(document_id=document_id))
        second = await sql_queue.enqueue(_job(priority=7, document_id=document_id))

        assert first.id == second.id
        assert second.priority == 0
        assert second.state is JobState.QUEUED
        assert await sql_queue.stats() == {"queued": 1, "leased": 0, "dead": 0}

    async def test_claim_order_and_single_holder(self, sql_queue):
        low = await sql_queue.enqueue(_job(priority=0))
        high = await sql_queue.enqueue(_job(priority=9))

        first = await sql_queue.claim("w1", LEASE)
        second = await sql_queue.claim("w2", LEASE)

        assert (first.id, second.id) == (high.id, low.id)
        assert first.lease.worker_id == "w1"
        assert first.lease.token != second.lease.token
        assert await sql_queue.claim("w3", LEASE) is None

    async def test_lease_tokens(self, sql_queue, clock):
        await sql_queue.enqueue(_job())
        job = await sql_queue.claim("w", LEASE)

        lease = await sql_queue.renew(job.id, job.lease.token, LEASE)
        assert lease.expires_at == clock.now + timedelta(seconds=LEASE)
        assert lease.worker_id == "w"

        with pytest.raises(StaleLeaseError):
            await sql_queue.renew(job.id, "wrong", LEASE)
        with pytest.raises(StaleLeaseError):
            await sql_queue.ack(job.id, "wrong")
        with pytest.raises(StaleLeaseError):
            await sql_queue.fail(job.id, "boom", token="wrong")

        await sql_queue.ack(job.id, job.lease.token)
        assert await sql_queue.get(job.id) is None
        await sql_queue.ack(job.id, job.lease.token)

    async def test_retry_then_dead_letter(self, sql_queue):
        await sql_queue.enqueue(_job())

        outcomes = []
        for _ in range(3):
            job = await sql_queue.claim("w", LEASE)
            outcomes.append(await sql_queue.fail(job.id, "timeout", token=job.lease.token))

        assert outcomes == [
            FailOutcome.RETRY_SCHEDULED,
            FailOutcome.RETRY_SCHEDULED,
            FailOutcome.DEAD_LETTERED,
        ]
        dead = await sql_queue.dead_letters()
        assert len(dead) == 1
        assert dead[0].attempts == 3
        assert dead[0].last_error == "timeout"
        assert await sql_queue.claim("w", LEASE) is None

    async def test_backoff_delays_next_claim(self, session_factory, clock):
        queue = SQLJobQueue(session_factory, max_attempts=3, backoff_base=5.0, clock=clock)
        await queue.enqueue(_job())
        job = await queue.claim("w", LEASE)

        await queue.fail(job.id, "timeout", token=job.lease.token)

        assert await queue.claim("w", LEASE) is None
        clock.advance(10)
        assert (await queue.claim("w", LEASE)).attempts == 1

    async def test_non_retryable_is_dead_immediately(self, sql_queue):
        await sql_queue.enqueue(_job())
        job = await sql_queue.claim("w", LEASE)
        assert await sql_queue.fail(job.id, "bad", retryable=False, token=job.lease.token) is FailOutcome.DEAD_LETTERED
        assert (await sql_queue.get(job.id)).state is JobState.DEAD

    async def test_expired_lease_reclaimed(self, sql_queue, clock):
        await sql_queue.enqueue(_job())
        first = await sql_queue.claim("w1", LEASE)

        clock.advance(LEASE + 1)
        second = await sql_queue.claim("w2", LEASE)

        assert second.id == first.id
        assert second.stall_count == 1
        assert (await sql_queue.get(first.id)).stall_count == 1
        with pytest.raises(StaleLeaseError):
            await sql_queue.ack(first.id, first.lease.token)

    async def test_requeue_expired_and_cancel(self, sql_queue, clock):
        await sql_queue.enqueue(_job())
        job = await sql_queue.claim("w", LEASE)

        clock.advance(LEASE)
        assert await sql_queue.requeue_expired() == 1
        assert (await sql_queue.get(job.id)).state is JobState.QUEUED

        assert await sql_queue.cancel(job.id) is True
        assert await sql_queue.cancel(job.id) is False
        assert await sql_queue.fail(job.id, "late") is FailOutcome.DISCARDED


# ─────────────────────────────────────────────────────────────────────────────
# SQLDocumentStore
# ─────────────────────────────────────────────────────────────────────────────

class TestSQLDocumentStore:

    async def test_create_and_get(self, sql_store):
        record = await sql_store.create(DocumentRecord.new(uuid.uuid4(), _source()))

        loaded = await sql_store.get(record.id)

        assert loaded.id == record.id
        assert loaded.state is ProcessingState.QUEUED
        assert loaded.subjects == []
        assert loaded.created_at.tzinfo is not None

    async def test_conditional_update(self, sql_store):
        record = await sql_store.create(DocumentRecord.new(uuid.uuid4(), _source()))
        await sql_store.update(record.id, {"lease_owner": "token-a"})

        updated = await sql_store.update(record.id, {"progress": 10}, expected_owner="token-a")
        assert updated.progress == 10

        with pytest.raises(StaleLeaseError):
            await sql_store.update(record.id, {"progress": 20}, expected_owner="token-b")
        assert (await sql_store.get(record.id)).progress == 10

    async def test_update_deleted_document(self, sql_store):
        record = await sql_store.create(DocumentRecord.new(uuid.uuid4(), _source()))
        assert await sql_store.delete(record.id) is True

        with pytest.raises(DocumentNotFoundError):
            await sql_store.update(record.id, {"progress": 10}, expected_owner="token-a")
        assert await sql_store.delete(record.id) is False

    async def test_state_machine_on_sql(self, sql_store):
        record = await sql_store.create(DocumentRecord.new(uuid.uuid4(), _source()))

        sm = DocumentStateMachine(sql_store, record.id, "token-a")
        await sm.begin_attempt()
        await sm.advance(ProcessingState.EXTRACTING, 15)
        await sm.fail(TransientError("provider timeout"))
        final = await sm.finalize_failure()

        loaded = await sql_store.get(record.id)
        assert loaded.state is ProcessingState.FAILED
        assert loaded.error == final
        assert loaded.error.kind is ErrorKind.EXHAUSTED

        sm2 = DocumentStateMachine(sql_store, record.id, "token-b")
        with pytest.raises(InvalidTransitionError):
            await sm2.begin_attempt()

    async def test_complete_writes_derived_attributes(self, sql_store):
        record = await sql_store.create(DocumentRecord.new(uuid.uuid4(), _source()))
        sm = DocumentStateMachine(sql_store, record.id, "token-a")
        await sm.begin_attempt()
        await sm.advance(ProcessingState.EXTRACTING, 15)
        await sm.advance(ProcessingState.VECTORIZING, 50)
        await sm.complete(3, DerivedMetadata(
            difficulty="Advanced", subjects=["Physics", "Chemistry"], summary="s",
            key_topics=["entropy", "enthalpy"],
        ))

        loaded = await sql_store.get(record.id)
        assert loaded.state is ProcessingState.INDEXED
        assert loaded.subjects == ["Physics", "Chemistry"]
        assert loaded.key_topics == ["entropy", "enthalpy"]
        assert loaded.chunk_count == 3
        assert loaded.completed_at is not None


# ─────────────────────────────────────────────────────────────────────────────
# SQLVectorIndex
# ─────────────────────────────────────────────────────────────────────────────

class TestSQLVectorIndex:

    def _chunks(self, document_id, vectors, prefix="chunk"):
        return [
            StoredChunk(
                chunk_id=make_chunk_id(document_id, i),
                document_id=document_id,
                chunk_index=i,
                text=f"{prefix} {i}",
                embedding=v,
                start_char=i * 10,
                end_char=i * 10 + 9,
                page_number=i + 1,
                topics=[f"{prefix}-topic"],
                entities=["Kelvin"],
            )
            for i, v in enumerate(vectors)
        ]

    async def test_replace_search_delete(self, sql_index):
        doc_a, doc_b = uuid.uuid4(), uuid.uuid4()
        e0 = [1.0] + [0.0] * 7
        e1 = [0.0, 1.0] + [0.0] * 6

        await sql_index.replace_document(doc_a, self._chunks(doc_a, [e0, e1], "old"))
        await sql_index.replace_document(doc_a, self._chunks(doc_a, [e1, e0], "new"))
        await sql_index.replace_document(doc_b, self._chunks(doc_b, [e0]))

        assert await sql_index.count(doc_a) == 2

        results = await sql_index.similarity_search([doc_a], e0, k=5)
        assert [r.chunk.chunk_index for r in results] == [1, 0]
        assert results[0].text == "new 1"
        assert results[0].chunk.page_number == 2
        assert results[0].chunk.topics == ["new-topic"]
        assert results[0].chunk.entities == ["Kelvin"]
        assert results[0].score == pytest.approx(1.0)

        assert await sql_index.delete_document(doc_a) == 2
        assert await sql_index.count(doc_a) == 0
        assert await sql_index.count(doc_b) == 1

    async def test_empty_scope(self, sql_index):
        assert await sql_index.similarity_search([], [1.0] * DIMENSION, k=3) == []


# ─────────────────────────────────────────────────────────────────────────────
# End to end
# ─────────────────────────────────────────────────────────────────────────────

class TestSQLPipeline:

    async def test_upload_to_indexed(
        self, sql_service, sql_store, sql_queue, sql_index, make_pipeline, make_provider,
        owner_id, write_source, sample_text,
    ):
        provider = make_provider()
        batcher = EmbeddingBatcher(provider, dimension=DIMENSION)
        pipeline = make_pipeline(batcher=batcher, store=sql_store, queue=sql_queue, index=sql_index)
        document_id = await sql_service.accept_upload(owner_id, write_source("notes.txt", sample_text))

        pool = WorkerPool(sql_queue, pipeline, concurrency=1, poll_interval=0.01)
        assert await pool.run_until_idle() == 1

        status = await sql_service.get_status(document_id)
        assert status.state is ProcessingState.INDEXED
        assert status.progress == 100
        assert status.chunk_count == await sql_index.count(document_id) > 0
        assert pool.processed == {OutcomeStatus.INDEXED: 1}

        context = await ContextAssembler(batcher, sql_index, similarity_threshold=0.0).retrieve(
            "sorting algorithms pivot", [document_id],
        )
        assert context.chunks and context.citations

        assert await sql_service.delete_document(document_id) is True
        assert await sql_index.count(document_id) == 0

    async def test_build_runtime_sql(self, settings, provider, storage, tmp_path, owner_id, write_source, sample_text):
        tuned = settings.model_copy(update={
            "queue_backend": "sql",
            "database_url": f"sqlite+aiosqlite:///{tmp_path / 'scholarai.db'}",
            "worker_concurrency": 1,
        })
        runtime = await build_runtime(tuned, provider=provider, storage=storage, create_schema=True)
        try:
            assert isinstance(runtime.queue, SQLJobQueue)
            assert (await check_db_health(runtime.engine))["status"] == "ok"

            document_id = await runtime.service.accept_upload(owner_id, write_source("notes.txt", sample_text))
            assert await runtime.pool.run_until_idle() == 1
            assert (await runtime.service.get_status(document_id)).state is ProcessingState.INDEXED
        finally:
            await runtime.close()
