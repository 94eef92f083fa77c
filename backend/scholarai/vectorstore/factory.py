"""
Vector Index Factory

Selects the backend from QUEUE_BACKEND: "sql" keeps chunks next to the
documents and the job queue; "memory" is the single-process backend used in
tests and local runs. Callers only see VectorIndex.
"""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from scholarai.core.config import Settings
from scholarai.core.errors import ConfigurationError
from scholarai.vectorstore.base import VectorIndex


def build_vector_index(
    settings:        Settings,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> VectorIndex:
    backend = settings.queue_backend.lower()

    if backend == "memory":
        from scholarai.vectorstore.memory import InMemoryVectorIndex
        return InMemoryVectorIndex(settings.embedding_dimension)

    if backend == "sql":
        if session_factory is None:
            raise ConfigurationError("the sql vector index needs a session factory")
        from scholarai.vectorstore.sql import SQLVectorIndex
        return SQLVectorIndex(session_factory, settings.embedding_dimension)

    raise ConfigurationError(
        f"Unknown storage backend: '{backend}'. Valid options: 'sql', 'memory'"
    )
