"""
In-process vector index: dict of document_id → chunk tuple under one lock.

Used by tests and single-process deployments (QUEUE_BACKEND=memory).
Replacing a document swaps one tuple, so readers never see a partial set.
"""

from __future__ import annotations

import logging
import threading
from typing import Sequence
from uuid import UUID

from scholarai.vectorstore.base import ScoredChunk, StoredChunk, VectorIndex, rank_by_cosine

logger = logging.getLogger(__name__)


class InMemoryVectorIndex(VectorIndex):

    def __init__(self, dimension: int) -> None:
        super().__init__(dimension)
        self._chunks: dict[UUID, tuple[StoredChunk, ...]] = {}
        self._lock = threading.Lock()

    async def replace_document(self, document_id: UUID, chunks: Sequence[StoredChunk]) -> int:
        self._validate(document_id, chunks)
        with self._lock:
            if chunks:
                self._chunks[document_id] = tuple(chunks)
            else:
                self._chunks.pop(document_id, None)
        logger.info("InMemoryVectorIndex | doc=%s replaced chunks=%d", document_id, len(chunks))
        return len(chunks)

    async def similarity_search(
        self,
        document_ids: Sequence[UUID],
        query_vector: Sequence[float],
        k: int,
    ) -> list[ScoredChunk]:
        if k <= 0 or not document_ids:
            return []
        self._validate_query(query_vector)
        with self._lock:
            candidates = [c for doc_id in set(document_ids) for c in self._chunks.get(doc_id, ())]
        return rank_by_cosine(candidates, query_vector, k)

    async def delete_document(self, document_id: UUID) -> int:
        with self._lock:
            removed = self._chunks.pop(document_id, ())
        return len(removed)

    async def count(self, document_id: UUID) -> int:
        with self._lock:
            return len(self._chunks.get(document_id, ()))
