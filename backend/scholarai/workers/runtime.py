"""
Process wiring — builds every handle of the ingestion core from Settings.

One Runtime per process (main.py, a Celery worker child, a test). Nothing is
created at import time; the engine and stores are passed down explicitly.

  QUEUE_BACKEND=sql     SQLJobQueue + SQLDocumentStore + SQLVectorIndex
                        on one engine (postgresql+asyncpg in production)
  QUEUE_BACKEND=memory  in-process queue / store / index, no database I/O
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from scholarai.core.config import Settings, get_settings
from scholarai.core.errors import ConfigurationError
from scholarai.db.session import build_engine, build_session_factory, init_models
from scholarai.jobs.base import JobQueue
from scholarai.jobs.limiter import ThroughputLimiter
from scholarai.jobs.memory import InMemoryJobQueue
from scholarai.processing.chunking import TextChunker
from scholarai.processing.embeddings import (
    EmbeddingBatcher,
    EmbeddingProvider,
    build_embedding_provider,
)
from scholarai.processing.extractor import TextExtractorOrchestrator
from scholarai.processing.metadata import derive_metadata_from_settings
from scholarai.rag.context import ContextAssembler
from scholarai.services.ingestion import IngestionService
from scholarai.state.store import DocumentStore, InMemoryDocumentStore
from scholarai.storage.files import FileStorage
from scholarai.vectorstore.base import VectorIndex
from scholarai.vectorstore.factory import build_vector_index
from scholarai.workers.pipeline import IngestionPipeline
from scholarai.workers.pool import WorkerPool

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    settings:        Settings
    queue:           JobQueue
    store:           DocumentStore
    index:           VectorIndex
    pipeline:        IngestionPipeline
    pool:            WorkerPool
    assembler:       ContextAssembler
    service:         IngestionService
    engine:          AsyncEngine | None = None
    session_factory: async_sessionmaker[AsyncSession] | None = None

    async def close(self) -> None:
        if self.pool.running:
            await self.pool.stop()
        if self.engine is not None:
            await self.engine.dispose()
        logger.info("Runtime closed")


def _queue_kwargs(settings: Settings) -> dict:
    return {
        "max_attempts": settings.job_max_attempts,
        "backoff_base": settings.job_backoff_base_seconds,
        "backoff_max":  settings.job_backoff_max_seconds,
    }


async def build_runtime(
    settings:      Settings | None = None,
    *,
    provider:      EmbeddingProvider | None = None,
    storage:       FileStorage | None = None,
    extractor:     TextExtractorOrchestrator | None = None,
    create_schema: bool = False,
) -> Runtime:
    """
    Build all handles. `provider`, `storage` and `extractor` can be injected
    (tests, alternative hosts); otherwise they come from settings.
    """
    settings = settings or get_settings()
    backend = settings.queue_backend.lower()

    engine = None
    session_factory = None
    if backend == "sql":
        from scholarai.jobs.sql import SQLJobQueue
        from scholarai.state.sql import SQLDocumentStore

        engine = build_engine(settings)
        session_factory = build_session_factory(engine)
        if create_schema:
            await init_models(engine)
        queue: JobQueue = SQLJobQueue(session_factory, **_queue_kwargs(settings))
        store: DocumentStore = SQLDocumentStore(session_factory)
    elif backend == "memory":
        queue = InMemoryJobQueue(**_queue_kwargs(settings))
        store = InMemoryDocumentStore()
    else:
        raise ConfigurationError(f"unknown queue backend: {settings.queue_backend}")

    index = build_vector_index(settings, session_factory)
    batcher = EmbeddingBatcher.from_settings(
        settings, provider or build_embedding_provider(settings),
    )

    pipeline = IngestionPipeline(
        store=store,
        queue=queue,
        storage=storage or FileStorage.from_settings(settings),
        extractor=extractor or TextExtractorOrchestrator.from_settings(settings),
        chunker=TextChunker(
            chunk_size=settings.chunk_size,
            chunk_overlap=settings.chunk_overlap,
            min_chunk_chars=settings.chunk_min_chars,
        ),
        batcher=batcher,
        index=index,
        derive=lambda text: derive_metadata_from_settings(text, settings),
        excerpt_chars=settings.raw_text_excerpt_chars,
        chunk_topics_max=settings.key_topics_max,
        chunk_entities_max=settings.chunk_entities_max,
    )
    pool = WorkerPool(
        queue,
        pipeline,
        concurrency=settings.worker_concurrency,
        lease_seconds=settings.job_lease_seconds,
        poll_interval=settings.queue_poll_interval_seconds,
        renew_interval=settings.lease_renew_interval,
        limiter=ThroughputLimiter(settings.limiter_max_jobs, settings.limiter_window_seconds),
    )
    assembler = ContextAssembler.from_settings(settings, batcher, index, store)

    logger.info(
        "Runtime built | backend=%s embeddings=%s dim=%d concurrency=%d",
        backend, batcher.provider_name, settings.embedding_dimension, settings.worker_concurrency,
    )
    return Runtime(
        settings=settings,
        queue=queue,
        store=store,
        index=index,
        pipeline=pipeline,
        pool=pool,
        assembler=assembler,
        service=IngestionService(store, queue, index, assembler),
        engine=engine,
        session_factory=session_factory,
    )
