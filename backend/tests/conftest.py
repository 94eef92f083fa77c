"""
Root conftest.py — Shared fixtures for ALL tests (unit + integration)

Fixture hierarchy:
  function-scoped : settings, clock, queue, store, index, provider, batcher,
                    storage, extractor, chunker, make_pipeline, service
  integration     : db_engine, session_factory (in-memory aiosqlite)

Environment strategy:
  - Unit tests run on the in-memory backends (queue, store, vector index).
  - Integration tests run the SQL backends on aiosqlite with a StaticPool,
    so every session shares one in-memory database.
  - Embeddings come from FakeEmbeddingProvider: deterministic vectors, no API.
  - Source files are written to tmp_path and read through the real FileStorage.

How to run:
  pytest                          # all tests
  pytest -m unit                  # unit tests only (fast, no I/O)
  pytest -m integration           # SQL backends on aiosqlite
  pytest backend/tests/unit/test_pipeline.py
"""

from __future__ import annotations

import hashlib
import os
import uuid
from datetime import datetime, timedelta
from typing import AsyncGenerator, Awaitable, Callable

import pytest
import pytest_asyncio

# ─────────────────────────────────────────────────────────────────────────────
# Patch settings BEFORE any scholarai imports so modules read test config
# ─────────────────────────────────────────────────────────────────────────────

os.environ.setdefault("DATABASE_URL",          "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("QUEUE_BACKEND",         "memory")
os.environ.setdefault("OPENAI_API_KEY",        "sk-test-key")
os.environ.setdefault("CELERY_BROKER_URL",     "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")
os.environ.setdefault("APP_ENV",               "development")

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from scholarai.core.config import Settings
from scholarai.jobs.base import utcnow
from scholarai.jobs.memory import InMemoryJobQueue
from scholarai.models.documents import Base
from scholarai.processing.chunking import TextChunker
from scholarai.processing.embeddings import EmbeddingBatcher, EmbeddingProvider
from scholarai.processing.extractor import TextExtractorOrchestrator
from scholarai.schemas.documents import SourceFile
from scholarai.services.ingestion import IngestionService
from scholarai.state.store import InMemoryDocumentStore
from scholarai.storage.files import FileStorage
from scholarai.vectorstore.memory import InMemoryVectorIndex
from scholarai.workers.pipeline import IngestionPipeline

TEST_DIMENSION = 8


# ─────────────────────────────────────────────────────────────────────────────
# Test doubles
# ─────────────────────────────────────────────────────────────────────────────

class FakeClock:
    """
    Frozen clock for the job queue. Starts an hour ahead of real time so jobs
    created with a real `available_at` are eligible immediately.
    """

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or utcnow() + timedelta(hours=1)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeEmbeddingProvider(EmbeddingProvider):
    """
    Deterministic embeddings.

    vectors      : exact text → vector overrides (retrieval tests)
    fail_times   : raise `error` on the first N calls
    before_embed : async hook run on every call (simulates concurrent writers)
    """

    def __init__(
        self,
        dimension:    int = TEST_DIMENSION,
        vectors:      dict[str, list[float]] | None = None,
        fail_times:   int = 0,
        error:        Exception | None = None,
        before_embed: Callable[[list[str]], Awaitable[None]] | None = None,
    ) -> None:
        self._dimension   = dimension
        self.vectors      = vectors or {}
        self.fail_times   = fail_times
        self.error        = error
        self.before_embed = before_embed
        self.calls: list[list[str]] = []

    @property
    def name(self) -> str:
        return "fake"

    @property
    def dimension(self) -> int:
        return self._dimension

    async def embed(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        if self.before_embed is not None:
            await self.before_embed(texts)
        if len(self.calls) <= self.fail_times:
            raise self.error or RuntimeError("provider unavailable")
        return [self.vectors.get(t) or hashed_vector(t, self._dimension) for t in texts]


def hashed_vector(text: str, dimension: int = TEST_DIMENSION) -> list[float]:
    """Bag-of-words hashed into `dimension` buckets; similar text → similar vector."""
    vector = [0.0] * dimension
    for word in text.lower().split():
        bucket = int(hashlib.sha256(word.encode()).hexdigest(), 16) % dimension
        vector[bucket] += 1.0
    if not any(vector):
        vector[0] = 1.0
    return vector


async def no_sleep(_seconds: float) -> None:
    return None


# ─────────────────────────────────────────────────────────────────────────────
# Settings
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        queue_backend="memory",
        embedding_backend="openai",
        embedding_dimension=TEST_DIMENSION,
        openai_api_key="sk-test-key",
        job_backoff_base_seconds=0.0,
        queue_poll_interval_seconds=0.01,
        worker_concurrency=2,
        limiter_max_jobs=100,
    )


# ─────────────────────────────────────────────────────────────────────────────
# In-memory backends
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def queue(clock) -> InMemoryJobQueue:
    """Backoff base 0 so a retried job is eligible again on the next claim."""
    return InMemoryJobQueue(max_attempts=3, backoff_base=0.0, backoff_max=300.0, clock=clock)


@pytest.fixture
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def index() -> InMemoryVectorIndex:
    return InMemoryVectorIndex(TEST_DIMENSION)


@pytest.fixture
def provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture
def make_provider():
    """Factory: FakeEmbeddingProvider with custom behaviour."""
    return FakeEmbeddingProvider


@pytest.fixture
def batcher(provider) -> EmbeddingBatcher:
    return EmbeddingBatcher(provider, dimension=TEST_DIMENSION, max_retries=0, sleep=no_sleep)


@pytest.fixture
def chunker() -> TextChunker:
    return TextChunker(chunk_size=1000, chunk_overlap=200, min_chunk_chars=50)


@pytest.fixture
def extractor() -> TextExtractorOrchestrator:
    return TextExtractorOrchestrator()


@pytest.fixture
def storage(tmp_path) -> FileStorage:
    return FileStorage(root=str(tmp_path))


# ─────────────────────────────────────────────────────────────────────────────
# Source files
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def sample_text() -> str:
    """~3 KB of paragraph-structured prose that classifies as Computer Science."""
    paragraphs = [
        "Sorting algorithms are a classic topic in computer science. "
        "Every programming course covers them because the code is short "
        "and the analysis is instructive.",
    ]
    for i in range(1, 13):
        paragraphs.append(
            f"Section {i}. The algorithm partitions the data around a pivot and "
            f"recurses on both halves. A theorem bounds the expected number of "
            f"comparisons, and the proof uses a simple equation over indicator "
            f"variables. In practice the software runs fast on random input."
        )
    return "\n\n".join(paragraphs)


@pytest.fixture
def write_source(tmp_path):
    """Factory: write bytes under tmp_path and return a SourceFile for them."""
    def _write(
        filename:     str,
        content:      bytes | str,
        content_type: str = "text/plain",
    ) -> SourceFile:
        data = content.encode("utf-8") if isinstance(content, str) else content
        (tmp_path / filename).write_bytes(data)
        return SourceFile(
            filename=filename,
            size_bytes=len(data),
            content_type=content_type,
            location=filename,
        )
    return _write


@pytest.fixture
def owner_id() -> uuid.UUID:
    return uuid.UUID("11111111-1111-4111-8111-111111111111")


# ─────────────────────────────────────────────────────────────────────────────
# Pipeline + service
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def make_pipeline(store, queue, storage, extractor, chunker, index):
    """Factory: IngestionPipeline over the in-memory backends."""
    def _build(batcher: EmbeddingBatcher | None = None, **overrides) -> IngestionPipeline:
        kwargs = dict(
            store=store,
            queue=queue,
            storage=storage,
            extractor=extractor,
            chunker=chunker,
            batcher=batcher or EmbeddingBatcher(
                FakeEmbeddingProvider(), dimension=TEST_DIMENSION, max_retries=0, sleep=no_sleep,
            ),
            index=index,
        )
        kwargs.update(overrides)
        return IngestionPipeline(**kwargs)
    return _build


@pytest.fixture
def service(store, queue, index) -> IngestionService:
    return IngestionService(store, queue, index)


# ─────────────────────────────────────────────────────────────────────────────
# Database (integration)
# ─────────────────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def db_engine() -> AsyncGenerator[AsyncEngine, None]:
    """One in-memory SQLite database shared by every session of a test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=db_engine, class_=AsyncSession, expire_on_commit=False)
